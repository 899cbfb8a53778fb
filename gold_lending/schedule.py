"""
Installment Schedule Module

Derives the fixed monthly installment schedule of a loan. Installments carry
principal only; interest is settled through the repayment quote.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, TypeVar
import calendar

from .money import Numeric, to_decimal, round_amount, ZERO


D = TypeVar('D', date, datetime)


class InstallmentStatus(Enum):
    """Installment repayment states"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


@dataclass
class Installment:
    """One scheduled repayment unit of a loan's term"""
    number: int
    due_date: datetime
    amount: Decimal
    status: InstallmentStatus = InstallmentStatus.PENDING
    amount_paid: Decimal = ZERO

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def amount_outstanding(self) -> Decimal:
        return max(ZERO, self.amount - self.amount_paid)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'number': self.number,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount),
            'status': self.status.value,
            'amount_paid': str(self.amount_paid),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            number=data['number'],
            due_date=datetime.fromisoformat(data['due_date']),
            amount=Decimal(data['amount']),
            status=InstallmentStatus(data['status']),
            amount_paid=Decimal(data['amount_paid']),
        )


def add_months(start: D, months: int) -> D:
    """Add calendar months, clamping the day to the target month's length"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def schedule_end_date(start: D, term_months: int) -> D:
    """Natural end of the loan term"""
    return add_months(start, term_months)


def split_evenly(total: Numeric, parts: int) -> List[Decimal]:
    """
    Split a total into whole-unit parts that sum exactly to the total.

    Every part is round(total / parts); the last part absorbs the rounding
    remainder.
    """
    if parts < 1:
        raise ValueError("Cannot split an amount into fewer than one part")
    total = to_decimal(total)
    share = round_amount(total / Decimal(parts))
    amounts = [share] * (parts - 1)
    amounts.append(total - share * (parts - 1))
    return amounts


def build_schedule(
    principal: Numeric,
    term_months: int,
    annual_rate_percent: Numeric,
    start_date: datetime
) -> List[Installment]:
    """
    Generate the installment schedule for a new loan

    Args:
        principal: Loan principal
        term_months: Number of monthly installments
        annual_rate_percent: Annual rate; does not affect installment amounts,
            which carry principal only
        start_date: Origination date; installment i falls due i months later

    Returns:
        List of pending installments numbered 1..term_months
    """
    amounts = split_evenly(principal, term_months)
    return [
        Installment(
            number=number,
            due_date=add_months(start_date, number),
            amount=amount,
        )
        for number, amount in enumerate(amounts, start=1)
    ]
