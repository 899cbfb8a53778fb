"""
Payment Ledger Module

Records repayments against a loan's installment schedule. The full amount of
a payment goes to the first installment that is not yet paid; it is never
split across installments.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

from .exceptions import LoanClosedError, NotFoundError, StateConflictError, ValidationError
from .interest import as_datetime
from .lifecycle import close_if_settled, next_unpaid_installment, remaining_balance, total_paid
from .models import Actor, Loan, Payment, PaymentMethod, PaymentStatus
from .money import Numeric, ZERO, to_decimal
from .schedule import InstallmentStatus


logger = logging.getLogger("gold_lending.payments")


def _parse_method(method: Union[PaymentMethod, str]) -> PaymentMethod:
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(method)
    except ValueError:
        raise ValidationError(
            f"Invalid payment method: {method}",
            {"allowed": [m.value for m in PaymentMethod]}
        )


def record_payment(
    loan: Loan,
    amount: Numeric,
    method: Union[PaymentMethod, str],
    entered_by: Actor,
    transaction_id: Optional[str] = None,
    bank_name: Optional[str] = None,
    paid_at: Optional[datetime] = None
) -> Payment:
    """
    Apply a repayment to the loan

    Args:
        loan: Loan aggregate, mutated in place
        amount: Positive payment amount
        method: handcash or online
        entered_by: Staff member recording the payment
        transaction_id: Required for online payments
        bank_name: Required for online payments
        paid_at: Payment date, defaults to now

    Returns:
        The recorded Payment

    Raises:
        LoanClosedError: If the loan is already closed
        ValidationError: If the amount, online payment details or payment
            date are invalid
        StateConflictError: If no unpaid installment is left to allocate to
    """
    # All checks run before the aggregate is touched
    if loan.is_closed:
        raise LoanClosedError(loan.loan_id)

    method = _parse_method(method)
    try:
        amount = to_decimal(amount)
    except ArithmeticError:
        raise ValidationError(f"Invalid payment amount: {amount}")
    if not amount.is_finite() or amount <= ZERO:
        raise ValidationError("Payment amount must be positive", {"amount": str(amount)})

    if method == PaymentMethod.ONLINE:
        missing = [
            name for name, value in (("transaction_id", transaction_id), ("bank_name", bank_name))
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValidationError(
                "Online payments require a transaction id and bank name",
                {"missing": missing}
            )

    paid_at = as_datetime(paid_at or datetime.now(timezone.utc))
    if paid_at < as_datetime(loan.created_at):
        raise ValidationError(
            "Payment date cannot be before the loan start",
            {"paid_at": paid_at.isoformat(), "loan_start": as_datetime(loan.created_at).isoformat()}
        )

    installment = next_unpaid_installment(loan)
    if installment is None:
        raise StateConflictError(
            f"Loan {loan.loan_id} has no unpaid installment to allocate to",
            {"loan_id": loan.loan_id}
        )

    installment.amount_paid += amount
    if installment.amount_paid >= installment.amount:
        installment.status = InstallmentStatus.PAID
    else:
        installment.status = InstallmentStatus.PARTIAL

    payment = Payment(
        id=str(uuid.uuid4()),
        amount=amount,
        method=method,
        installment_number=installment.number,
        remaining_balance=ZERO,
        date=paid_at,
        status=PaymentStatus.SUCCESS if method == PaymentMethod.HANDCASH else PaymentStatus.PENDING,
        transaction_id=transaction_id,
        bank_name=bank_name,
        entered_by=entered_by,
    )
    loan.payments.append(payment)

    loan.total_paid = total_paid(loan)
    loan.remaining_balance = remaining_balance(loan)
    payment.remaining_balance = loan.remaining_balance

    logger.info(
        f"Payment {payment.id} of {amount} recorded against installment "
        f"{installment.number} of loan {loan.loan_id}"
    )

    close_if_settled(loan, payment.date)
    return payment


def approve_payment(loan: Loan, payment_id: str, now: Optional[datetime] = None) -> Payment:
    """
    Flip a pending online payment to success

    Allocation already happened when the payment was recorded; approval only
    changes the status and re-runs the closure check.
    """
    payment = loan.get_payment(payment_id)
    if payment is None:
        raise NotFoundError("payment", payment_id)
    if payment.status == PaymentStatus.SUCCESS:
        raise StateConflictError(
            f"Payment {payment_id} is already approved",
            {"loan_id": loan.loan_id, "payment_id": payment_id}
        )

    payment.status = PaymentStatus.SUCCESS
    payment.approved_at = as_datetime(now or datetime.now(timezone.utc))
    logger.info(f"Payment {payment_id} on loan {loan.loan_id} approved")

    close_if_settled(loan, payment.approved_at)
    return payment
