"""
Loan Lifecycle Module

Loan status transitions (active -> closed, one way) and the derived balances
read off the aggregate at any time without mutation, plus the repayment
projections staff use to chase collections.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import ValidationError
from .gold_returns import initialize_gold_return_status
from .interest import as_datetime
from .models import Loan, LoanStatus
from .money import ZERO
from .schedule import Installment, InstallmentStatus


logger = logging.getLogger("gold_lending.lifecycle")


def total_paid(loan: Loan) -> Decimal:
    """Sum of all payments, pending online payments included"""
    return sum((payment.amount for payment in loan.payments), ZERO)


def remaining_balance(loan: Loan) -> Decimal:
    return max(ZERO, loan.total_payment - total_paid(loan))


def next_unpaid_installment(loan: Loan) -> Optional[Installment]:
    for installment in sorted(loan.installments, key=lambda i: i.number):
        if installment.status != InstallmentStatus.PAID:
            return installment
    return None


def monthly_payment(loan: Loan) -> Decimal:
    """Amount of the next unpaid installment, zero when none remain"""
    installment = next_unpaid_installment(loan)
    return installment.amount if installment else ZERO


def overdue_installments(loan: Loan, as_of: Optional[datetime] = None) -> List[Installment]:
    """Unpaid installments whose due date is strictly before `as_of`"""
    as_of = as_datetime(as_of or datetime.now(timezone.utc))
    return [
        installment
        for installment in sorted(loan.installments, key=lambda i: i.number)
        if installment.status != InstallmentStatus.PAID
        and as_datetime(installment.due_date) < as_of
    ]


def is_settled(loan: Loan) -> bool:
    """
    Every installment is paid, or payments have reached the total owed.

    Overpayment of one installment is not cascaded to the next, so the second
    arm settles loans whose schedule still shows unpaid rows.
    """
    if loan.installments and all(i.status == InstallmentStatus.PAID for i in loan.installments):
        return True
    return total_paid(loan) >= loan.total_payment


def close_if_settled(loan: Loan, now: Optional[datetime] = None) -> bool:
    """
    Close a settled loan

    Closure stamps closed_date with the latest payment date (creation date
    when there are no payments), marks every installment paid, zeroes the
    remaining balance and initializes the gold return state.

    Returns:
        True only on the active -> closed transition
    """
    if loan.status == LoanStatus.CLOSED or not is_settled(loan):
        return False

    loan.status = LoanStatus.CLOSED
    if loan.payments:
        loan.closed_date = max(as_datetime(p.date) for p in loan.payments)
    else:
        loan.closed_date = as_datetime(loan.created_at)

    for installment in loan.installments:
        installment.status = InstallmentStatus.PAID

    loan.total_paid = total_paid(loan)
    loan.remaining_balance = ZERO
    initialize_gold_return_status(loan, now)

    logger.info(f"Loan {loan.loan_id} closed on {loan.closed_date.isoformat()}")
    return True


PENDING_FILTERS = ("all", "upcoming", "unpaid")


def _installment_entry(loan: Loan, installment: Installment) -> Dict[str, Any]:
    return {
        'id': loan.id,
        'loan_id': loan.loan_id,
        'customer_name': loan.customer_name,
        'customer_email': loan.customer_email,
        'customer_mobile': loan.customer_mobile,
        'installment_number': installment.number,
        'due_date': as_datetime(installment.due_date),
        'amount': installment.amount,
    }


def pending_repayments(
    loans: Iterable[Loan],
    status_filter: str = "all",
    now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """
    Next unpaid installment of each active loan

    Args:
        loans: Loans to scan, closed loans are ignored
        status_filter: "all" takes the earliest unpaid installment, "unpaid"
            the earliest one already past due and "upcoming" the earliest
            one not yet due
        now: Reference time, defaults to now

    Returns:
        One entry per matching loan. Past due entries have status "unpaid"
        and count whole days unpaid; the rest are "upcoming" with 0 days.

    Raises:
        ValidationError: If the filter is not recognized
    """
    if status_filter not in PENDING_FILTERS:
        raise ValidationError(
            f"Invalid repayment filter: {status_filter}",
            {"allowed": list(PENDING_FILTERS)}
        )
    now = as_datetime(now or datetime.now(timezone.utc))

    pending = []
    for loan in loans:
        if loan.status != LoanStatus.ACTIVE:
            continue
        unpaid = sorted(
            (i for i in loan.installments if i.status != InstallmentStatus.PAID),
            key=lambda i: as_datetime(i.due_date)
        )
        if status_filter == "unpaid":
            unpaid = [i for i in unpaid if as_datetime(i.due_date) < now]
        elif status_filter == "upcoming":
            unpaid = [i for i in unpaid if as_datetime(i.due_date) >= now]
        if not unpaid:
            continue

        installment = unpaid[0]
        entry = _installment_entry(loan, installment)
        overdue = entry['due_date'] < now
        entry['status'] = "unpaid" if overdue else "upcoming"
        entry['days_unpaid'] = (now - entry['due_date']).days if overdue else 0
        pending.append(entry)
    return pending


def weekly_dues(loans: Iterable[Loan], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Unpaid installments of active loans due in the Monday-to-Sunday week containing `now`"""
    now = as_datetime(now or datetime.now(timezone.utc))
    monday = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    next_monday = monday + timedelta(days=7)

    dues = []
    for loan in loans:
        if loan.status != LoanStatus.ACTIVE:
            continue
        for installment in sorted(loan.installments, key=lambda i: i.number):
            if installment.status == InstallmentStatus.PAID:
                continue
            if monday <= as_datetime(installment.due_date) < next_monday:
                entry = _installment_entry(loan, installment)
                entry['status'] = installment.status.value
                dues.append(entry)
    return dues
