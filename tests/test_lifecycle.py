"""
Test suite for loan lifecycle module
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from gold_lending.storage import InMemoryStorage
from gold_lending.audit import AuditTrail
from gold_lending.config import LendingConfig
from gold_lending.exceptions import ValidationError
from gold_lending.gold_returns import NO_GOLD_ITEMS_NOTE
from gold_lending.lifecycle import (
    close_if_settled, is_settled, monthly_payment, next_unpaid_installment,
    overdue_installments, pending_repayments, remaining_balance, total_paid, weekly_dues
)
from gold_lending.loans import LoanManager
from gold_lending.models import (
    Actor, GoldItem, GoldReturnStatus, LoanStatus, PaymentMethod, SYSTEM_ACTOR
)
from gold_lending.payments import record_payment
from gold_lending.schedule import InstallmentStatus


START = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
STAFF = Actor(id="emp-1", name="Anita Desai")


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def loan_manager(storage, audit_trail):
    return LoanManager(storage, audit_trail, LendingConfig())


def originate(loan_manager, gold_items=None):
    return loan_manager.originate_loan(
        customer_id="cust-1",
        customer_name="Ravi Kumar",
        customer_email="ravi@example.com",
        customer_mobile="9876543210",
        amount=Decimal('30000'),
        term=3,
        interest_rate=18,
        gold_items=gold_items,
        created_by=STAFF,
        now=START,
    )


@pytest.fixture
def loan(loan_manager):
    return originate(loan_manager, [GoldItem("Bangle", Decimal('20'), Decimal('18.5'))])


class TestDerivedBalances:
    """Test read-only balance helpers"""

    def test_fresh_loan(self, loan):
        assert total_paid(loan) == Decimal('0')
        assert remaining_balance(loan) == Decimal('30000')
        assert monthly_payment(loan) == Decimal('10000')
        assert next_unpaid_installment(loan).number == 1

    def test_after_first_installment(self, loan):
        record_payment(loan, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        assert total_paid(loan) == Decimal('10000')
        assert remaining_balance(loan) == Decimal('20000')
        assert next_unpaid_installment(loan).number == 2

    def test_remaining_balance_never_negative(self, loan):
        loan.total_payment = Decimal('5000')
        record_payment(loan, 6000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        assert remaining_balance(loan) == Decimal('0')

    def test_overdue_installments(self, loan):
        """Installments are overdue strictly after their due date"""
        first_due = loan.installments[0].due_date

        assert overdue_installments(loan, first_due) == []
        overdue = overdue_installments(loan, first_due + timedelta(days=9))
        assert [i.number for i in overdue] == [1]

    def test_paid_installments_not_overdue(self, loan):
        record_payment(loan, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        as_of = loan.installments[1].due_date + timedelta(days=1)
        assert [i.number for i in overdue_installments(loan, as_of)] == [2]


class TestClosure:
    """Test the active -> closed transition"""

    def test_not_settled_not_closed(self, loan):
        record_payment(loan, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        assert not is_settled(loan)
        assert close_if_settled(loan, START) is False
        assert loan.status == LoanStatus.ACTIVE

    def test_closes_exactly_once(self, loan):
        """Only the first settled check reports the transition"""
        for installment in loan.installments:
            installment.status = InstallmentStatus.PAID

        assert close_if_settled(loan, START) is True
        assert loan.status == LoanStatus.CLOSED
        assert close_if_settled(loan, START + timedelta(days=1)) is False
        assert loan.status == LoanStatus.CLOSED

    def test_closed_date_without_payments_is_creation_date(self, loan):
        for installment in loan.installments:
            installment.status = InstallmentStatus.PAID

        close_if_settled(loan, START + timedelta(days=5))

        assert loan.closed_date == START

    def test_closed_date_is_latest_payment(self, loan):
        record_payment(loan, 20000, PaymentMethod.HANDCASH, STAFF, paid_at=START + timedelta(days=40))
        record_payment(loan, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START + timedelta(days=20))

        assert loan.status == LoanStatus.CLOSED
        assert loan.closed_date == START + timedelta(days=40)

    def test_closure_with_gold_starts_pending(self, loan):
        record_payment(loan, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        assert loan.gold_return_status == GoldReturnStatus.PENDING
        assert loan.gold_returned_by is None

    def test_closure_without_gold_is_returned_by_system(self, loan_manager):
        """Loans with no pledged gold are returned automatically"""
        loan = originate(loan_manager, gold_items=[])
        record_payment(loan, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        assert loan.gold_return_status == GoldReturnStatus.RETURNED
        assert loan.gold_returned_by == SYSTEM_ACTOR
        assert loan.gold_return_notes == NO_GOLD_ITEMS_NOTE
        assert loan.gold_return_date is not None

    def test_zero_weight_items_count_as_no_gold(self, loan_manager):
        loan = originate(loan_manager, [GoldItem("Empty box", Decimal('0'), Decimal('0'))])
        record_payment(loan, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        assert loan.gold_return_status == GoldReturnStatus.RETURNED


class TestPendingRepayments:
    """Test the next-unpaid-installment projection"""

    # Installments fall due 15 Feb, 15 Mar and 15 Apr 2025
    AFTER_SECOND_DUE = datetime(2025, 3, 20, 10, 0, tzinfo=timezone.utc)

    def test_all_before_first_due(self, loan):
        pending = pending_repayments([loan], now=START)

        assert len(pending) == 1
        assert pending[0]['loan_id'] == loan.loan_id
        assert pending[0]['customer_name'] == "Ravi Kumar"
        assert pending[0]['installment_number'] == 1
        assert pending[0]['amount'] == Decimal('10000')
        assert pending[0]['status'] == "upcoming"
        assert pending[0]['days_unpaid'] == 0

    def test_unpaid_counts_days_since_due(self, loan):
        pending = pending_repayments([loan], "unpaid", self.AFTER_SECOND_DUE)

        assert pending[0]['installment_number'] == 1
        assert pending[0]['status'] == "unpaid"
        assert pending[0]['days_unpaid'] == 33
        assert pending_repayments([loan], "unpaid", START) == []

    def test_upcoming_skips_past_due(self, loan):
        pending = pending_repayments([loan], "upcoming", self.AFTER_SECOND_DUE)

        assert pending[0]['installment_number'] == 3
        assert pending[0]['status'] == "upcoming"
        assert pending[0]['days_unpaid'] == 0

    def test_paid_installments_skipped(self, loan):
        record_payment(loan, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        pending = pending_repayments([loan], "all", self.AFTER_SECOND_DUE)

        assert pending[0]['installment_number'] == 2
        assert pending[0]['days_unpaid'] == 5

    def test_closed_loans_excluded(self, loan_manager, loan):
        other = originate(loan_manager)
        loan_manager.record_payment(other.id, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        pending = loan_manager.get_pending_repayments("unpaid", self.AFTER_SECOND_DUE)

        assert [p['id'] for p in pending] == [loan.id]

    def test_invalid_filter(self, loan):
        with pytest.raises(ValidationError):
            pending_repayments([loan], "overdue", START)


class TestWeeklyDues:
    """Test installments due in the current Monday-to-Sunday week"""

    def test_installment_due_this_week(self, loan_manager, loan):
        # Wednesday of the week starting Monday 10 Feb
        dues = loan_manager.get_weekly_dues(datetime(2025, 2, 12, 8, 0, tzinfo=timezone.utc))

        assert len(dues) == 1
        assert dues[0]['installment_number'] == 1
        assert dues[0]['due_date'] == datetime(2025, 2, 15, 10, 0, tzinfo=timezone.utc)
        assert dues[0]['status'] == "pending"

    def test_week_boundaries(self, loan):
        sunday_night = datetime(2025, 2, 16, 23, 59, tzinfo=timezone.utc)
        next_monday = datetime(2025, 2, 17, 0, 0, tzinfo=timezone.utc)

        assert len(weekly_dues([loan], sunday_night)) == 1
        assert weekly_dues([loan], next_monday) == []

    def test_paid_installment_not_due(self, loan):
        record_payment(loan, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        assert weekly_dues([loan], datetime(2025, 2, 12, tzinfo=timezone.utc)) == []
