"""
Interest Rate Upgrade Module

Progressive penalty rates for overdue loans originated at 18%:

    level 0 -> 1: 18% -> 24%, 3-month loans at least 90 days old
    level 1 -> 2: 24% -> 30%, loans at least 180 days old

An upgrade re-prices the loan from its start date to a new term end (3 months
per level) and spreads what is still owed over the remaining months. Paid
installments are never touched; unpaid ones are re-priced and re-dated, and
new ones are appended when the remaining months outnumber them.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

from .exceptions import LendingError, StateConflictError
from .interest import DAYS_PER_YEAR, as_datetime, elapsed_days
from .jobs import JobResult
from .lifecycle import total_paid
from .models import Loan, LoanStatus, RateUpgrade
from .money import ZERO, format_amount, round_amount
from .providers import DispatchResult, OutboundMessage
from .schedule import Installment, InstallmentStatus, add_months, split_evenly

if TYPE_CHECKING:
    from .loans import LoanManager


logger = logging.getLogger("gold_lending.rate_upgrades")

BASE_RATE = Decimal('18')
MONTHS_PER_LEVEL = 3
DAYS_PER_MONTH = 30

# current level -> (rate before, rate after, minimum loan age in days)
UPGRADE_STEPS: Dict[int, Tuple[Decimal, Decimal, int]] = {
    0: (Decimal('18'), Decimal('24'), 90),
    1: (Decimal('24'), Decimal('30'), 180),
}


@dataclass
class RateUpgradeDetails:
    """What an upgrade changed"""
    loan_id: str
    old_rate: Decimal
    new_rate: Decimal
    upgrade_level: int
    old_total_payment: Decimal
    new_total_payment: Decimal
    new_term_end_date: datetime
    total_days: int
    months_remaining: int
    monthly_payment: Decimal
    days_since_start: int
    dispatch_results: List[DispatchResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'old_rate': str(self.old_rate),
            'new_rate': str(self.new_rate),
            'upgrade_level': self.upgrade_level,
            'old_total_payment': str(self.old_total_payment),
            'new_total_payment': str(self.new_total_payment),
            'new_term_end_date': self.new_term_end_date.isoformat(),
            'total_days': self.total_days,
            'months_remaining': self.months_remaining,
            'monthly_payment': str(self.monthly_payment),
            'days_since_start': self.days_since_start,
            'dispatch_results': [r.to_dict() for r in self.dispatch_results],
        }


def next_upgrade(loan: Loan) -> Optional[Tuple[Decimal, int]]:
    """(new rate, new level) for the loan's next upgrade, None if exhausted"""
    if loan.original_interest_rate != BASE_RATE:
        return None
    step = UPGRADE_STEPS.get(loan.current_upgrade_level)
    if step is None:
        return None
    rate_before, rate_after, _ = step
    if loan.interest_rate != rate_before:
        return None
    return rate_after, loan.current_upgrade_level + 1


def is_eligible(loan: Loan, now: Optional[datetime] = None) -> bool:
    """Whether the upgrade job should upgrade this loan now"""
    if loan.status != LoanStatus.ACTIVE or next_upgrade(loan) is None:
        return False
    # Only 3-month loans enter the progression
    if loan.current_upgrade_level == 0 and loan.term != MONTHS_PER_LEVEL:
        return False
    _, _, minimum_age = UPGRADE_STEPS[loan.current_upgrade_level]
    now = now or datetime.now(timezone.utc)
    return elapsed_days(loan.created_at, now) >= minimum_age


def _reprice_installments(
    loan: Loan,
    amount_owed: Decimal,
    months_remaining: int,
    now: datetime
) -> None:
    unpaid = sorted(
        (i for i in loan.installments if i.status != InstallmentStatus.PAID),
        key=lambda i: i.number
    )
    slots = max(months_remaining, len(unpaid))
    amounts = split_evenly(amount_owed, slots)
    next_number = max((i.number for i in loan.installments), default=0) + 1

    for position, share in enumerate(amounts):
        due_date = add_months(now, position + 1)
        if position < len(unpaid):
            installment = unpaid[position]
            installment.amount = installment.amount_paid + share
            installment.due_date = due_date
            if installment.amount_paid >= installment.amount:
                installment.status = InstallmentStatus.PAID
        else:
            loan.installments.append(Installment(number=next_number, due_date=due_date, amount=share))
            next_number += 1


def upgrade_interest_rate(
    loan: Loan,
    now: Optional[datetime] = None,
    reason: str = "overdue_upgrade"
) -> RateUpgradeDetails:
    """
    Apply the loan's next rate upgrade in place

    Raises:
        StateConflictError: If the loan is closed or has no upgrade left
    """
    if loan.is_closed:
        raise StateConflictError(
            f"Cannot upgrade interest rate for closed loan {loan.loan_id}",
            {"loan_id": loan.loan_id}
        )
    upgrade = next_upgrade(loan)
    if upgrade is None:
        raise StateConflictError(
            f"No further upgrades available for loan {loan.loan_id}",
            {"loan_id": loan.loan_id, "current_upgrade_level": loan.current_upgrade_level}
        )
    new_rate, new_level = upgrade

    now = as_datetime(now or datetime.now(timezone.utc))
    start = as_datetime(loan.created_at)
    old_rate = loan.interest_rate
    old_total_payment = loan.total_payment

    new_term_end = add_months(start, MONTHS_PER_LEVEL * (new_level + 1))
    total_days = (new_term_end - start).days
    daily_rate = new_rate / Decimal('100') / DAYS_PER_YEAR
    new_total_payment = round_amount(loan.amount + loan.amount * daily_rate * total_days)

    paid = total_paid(loan)
    amount_owed = max(ZERO, new_total_payment - paid)
    days_left = elapsed_days(now, new_term_end)
    months_remaining = max(1, math.ceil(days_left / DAYS_PER_MONTH))

    _reprice_installments(loan, amount_owed, months_remaining, now)

    loan.interest_rate = new_rate
    loan.interest_rate_upgraded = True
    loan.interest_rate_upgrade_date = now
    loan.current_upgrade_level = new_level
    loan.daily_interest_rate = daily_rate
    loan.daily_interest_amount = loan.amount * daily_rate
    loan.total_payment = new_total_payment
    loan.total_paid = paid
    loan.remaining_balance = amount_owed
    loan.term = math.ceil(total_days / DAYS_PER_MONTH)
    loan.upgrade_history.append(RateUpgrade(
        from_rate=old_rate,
        to_rate=new_rate,
        upgrade_date=now,
        reason=reason,
        new_term_end_date=new_term_end,
    ))

    logger.info(
        f"Loan {loan.loan_id} interest rate upgraded {old_rate}% -> {new_rate}% "
        f"(level {new_level}), new total {new_total_payment}"
    )

    return RateUpgradeDetails(
        loan_id=loan.loan_id,
        old_rate=old_rate,
        new_rate=new_rate,
        upgrade_level=new_level,
        old_total_payment=old_total_payment,
        new_total_payment=new_total_payment,
        new_term_end_date=new_term_end,
        total_days=total_days,
        months_remaining=months_remaining,
        monthly_payment=round_amount(amount_owed / months_remaining),
        days_since_start=int(elapsed_days(start, now)),
    )


def upgrade_message(loan: Loan, details: RateUpgradeDetails) -> OutboundMessage:
    level_text = "First" if details.upgrade_level == 1 else "Second"
    if details.upgrade_level == 1:
        warning = "If not paid within the next 3 months, the interest rate will be upgraded to 30%."
    else:
        warning = "This is the final upgrade level."
    return OutboundMessage(
        subject=f"{level_text} Interest Rate Upgrade - Loan {loan.loan_id}",
        body=(
            f"Dear {loan.customer_name},\n\n"
            f"The interest rate on loan {loan.loan_id} has been upgraded from "
            f"{details.old_rate}% to {details.new_rate}% due to overdue payment.\n"
            f"Previous total: {format_amount(details.old_total_payment)}. "
            f"New total: {format_amount(details.new_total_payment)}.\n"
            f"New term end date: {details.new_term_end_date.date().isoformat()}. "
            f"Months remaining: {details.months_remaining}.\n\n"
            f"{warning}"
        ),
        recipient_name=loan.customer_name,
        recipient_email=loan.customer_email,
        recipient_mobile=loan.customer_mobile,
        category="interest_rate_upgrade",
        metadata={'loan_id': loan.loan_id, 'upgrade_level': details.upgrade_level},
    )


def get_upgrade_statistics(loans: Iterable[Loan], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Eligibility counts and upgrade history across active loans"""
    now = now or datetime.now(timezone.utc)
    loans = list(loans)
    eligible = [loan for loan in loans if is_eligible(loan, now)]
    first = [loan for loan in eligible if loan.current_upgrade_level == 0]

    history = {'18to24': 0, '24to30': 0}
    for loan in loans:
        if loan.status != LoanStatus.ACTIVE:
            continue
        for upgrade in loan.upgrade_history:
            key = f"{upgrade.from_rate.normalize():f}to{upgrade.to_rate.normalize():f}"
            if key in history:
                history[key] += 1

    ages = [int(elapsed_days(loan.created_at, now)) for loan in eligible]
    return {
        'total_eligible': len(eligible),
        'first_upgrade_eligible': len(first),
        'second_upgrade_eligible': len(eligible) - len(first),
        'total_amount': sum((loan.amount for loan in eligible), ZERO),
        'average_days_since_start': round(sum(ages) / len(ages)) if ages else 0,
        'upgrade_history': history,
    }


class InterestRateUpgradeService:
    """
    The interest rate upgrades job
    """

    def __init__(self, loan_manager: 'LoanManager'):
        self.loan_manager = loan_manager

    def find_eligible(self, now: Optional[datetime] = None) -> List[Loan]:
        return [
            loan for loan in self.loan_manager.list_loans(LoanStatus.ACTIVE)
            if is_eligible(loan, now)
        ]

    def process(self, now: Optional[datetime] = None) -> JobResult:
        now = now or datetime.now(timezone.utc)
        result = JobResult()
        upgraded = []
        for loan in self.find_eligible(now):
            try:
                details = self.loan_manager.upgrade_interest_rate(loan.id, now=now)
            except LendingError as e:
                logger.error(f"Failed to upgrade loan {loan.loan_id}: {e}")
                result.record(False)
                continue
            result.record(True)
            upgraded.append({
                'loan_id': details.loan_id,
                'old_rate': str(details.old_rate),
                'new_rate': str(details.new_rate),
            })
        result.details['upgraded'] = upgraded
        logger.info(
            f"Interest rate upgrades: {result.records_successful} upgraded, "
            f"{result.records_failed} failed"
        )
        return result

    def get_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return get_upgrade_statistics(self.loan_manager.list_loans(LoanStatus.ACTIVE), now)
