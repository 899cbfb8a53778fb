"""
Interest Calculation Module

Simple interest over exact elapsed time: SI = P x R x T, with T measured in
days / 365 rather than calendar months, so accrual does not depend on how
long the months in the period are.
"""

from decimal import Decimal
from datetime import datetime, date, timezone, timedelta
from dataclasses import dataclass
from typing import Union

from .money import Numeric, to_decimal, round_amount
from .schedule import add_months


SECONDS_PER_DAY = Decimal('86400')
MICROSECONDS_PER_DAY = Decimal('86400000000')
DAYS_PER_YEAR = Decimal('365')

DateLike = Union[date, datetime]


@dataclass(frozen=True)
class SimpleInterestResult:
    """Outcome of a simple interest calculation"""
    principal: Decimal
    interest: Decimal           # Rounded to whole units
    total_amount: Decimal       # Rounded to whole units
    rate: Decimal               # Annual rate in percent
    time_in_days: Decimal       # Exact, may be fractional
    time_in_years: Decimal
    start_date: datetime
    end_date: datetime


@dataclass(frozen=True)
class LoanDetails:
    """Simple interest over a whole loan term"""
    interest: SimpleInterestResult
    term_months: int
    monthly_payment: Decimal
    end_date: datetime


def as_datetime(value: DateLike) -> datetime:
    """Promote dates to midnight UTC and naive datetimes to UTC"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def elapsed_days(start: DateLike, end: DateLike) -> Decimal:
    """Exact days between two instants, fractional part included"""
    delta: timedelta = as_datetime(end) - as_datetime(start)
    return (
        Decimal(delta.days)
        + Decimal(delta.seconds) / SECONDS_PER_DAY
        + Decimal(delta.microseconds) / MICROSECONDS_PER_DAY
    )


def simple_interest(
    principal: Numeric,
    annual_rate_percent: Numeric,
    start_date: DateLike,
    end_date: DateLike
) -> SimpleInterestResult:
    """
    Calculate simple interest using exact elapsed days

    Args:
        principal: Principal amount (P)
        annual_rate_percent: Annual rate as a percentage, e.g. 18 for 18%
        start_date: Start of accrual
        end_date: End of accrual; callers must ensure end_date >= start_date

    Returns:
        SimpleInterestResult with interest and total rounded half-up
    """
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)
    start = as_datetime(start_date)
    end = as_datetime(end_date)

    time_in_days = elapsed_days(start, end)
    time_in_years = time_in_days / DAYS_PER_YEAR

    interest = principal * (rate / Decimal('100')) * time_in_years
    total_amount = principal + interest

    return SimpleInterestResult(
        principal=principal,
        interest=round_amount(interest),
        total_amount=round_amount(total_amount),
        rate=rate,
        time_in_days=time_in_days,
        time_in_years=time_in_years,
        start_date=start,
        end_date=end
    )


def calculate_loan_details(
    principal: Numeric,
    annual_rate_percent: Numeric,
    term_months: int,
    start_date: DateLike
) -> LoanDetails:
    """Simple interest from start to start + term calendar months"""
    start = as_datetime(start_date)
    end = add_months(start, term_months)
    result = simple_interest(principal, annual_rate_percent, start, end)
    return LoanDetails(
        interest=result,
        term_months=term_months,
        monthly_payment=round_amount(result.total_amount / Decimal(term_months)),
        end_date=end
    )


def calculate_repayment_amount(
    principal: Numeric,
    annual_rate_percent: Numeric,
    loan_start_date: DateLike,
    repayment_date: DateLike
) -> SimpleInterestResult:
    """Amount owed if the loan is repaid on repayment_date"""
    return simple_interest(principal, annual_rate_percent, loan_start_date, repayment_date)
