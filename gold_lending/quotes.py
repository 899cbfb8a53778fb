"""
Early Repayment Quote Module

What a borrower would owe to settle a loan on a given date: simple interest
on the original principal at the original rate from the loan start.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from .exceptions import ValidationError
from .interest import as_datetime, calculate_repayment_amount
from .lifecycle import total_paid
from .models import Loan
from .money import ZERO


@dataclass(frozen=True)
class EarlyRepaymentQuote:
    """Settlement figures as of a date"""
    loan_id: str
    principal: Decimal
    interest: Decimal
    total_amount: Decimal
    rate: Decimal
    days: Decimal
    years: Decimal
    start_date: datetime
    as_of: datetime
    total_paid: Decimal
    amount_outstanding: Decimal     # Still owed after payments so far

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'principal': str(self.principal),
            'interest': str(self.interest),
            'total_amount': str(self.total_amount),
            'rate': str(self.rate),
            'days': str(self.days),
            'years': str(self.years),
            'start_date': self.start_date.isoformat(),
            'as_of': self.as_of.isoformat(),
            'total_paid': str(self.total_paid),
            'amount_outstanding': str(self.amount_outstanding),
        }


def calculate_early_repayment_amount(
    loan: Loan,
    as_of: Optional[datetime] = None
) -> EarlyRepaymentQuote:
    """
    Quote the settlement amount as of a date

    Upgraded rates are ignored; the quote always uses the rate the loan was
    originated at. Closed loans can be quoted too.

    Raises:
        ValidationError: If as_of falls before the loan start
    """
    start = as_datetime(loan.created_at)
    as_of = as_datetime(as_of or datetime.now(timezone.utc))
    if as_of < start:
        raise ValidationError(
            "Quote date cannot be before the loan start date",
            {"loan_id": loan.loan_id, "start_date": start.isoformat(), "as_of": as_of.isoformat()}
        )

    result = calculate_repayment_amount(loan.amount, loan.original_interest_rate, start, as_of)
    paid = total_paid(loan)
    return EarlyRepaymentQuote(
        loan_id=loan.loan_id,
        principal=result.principal,
        interest=result.interest,
        total_amount=result.total_amount,
        rate=result.rate,
        days=result.time_in_days,
        years=result.time_in_years,
        start_date=start,
        as_of=as_of,
        total_paid=paid,
        amount_outstanding=max(ZERO, result.total_amount - paid),
    )
