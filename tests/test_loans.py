"""
Test suite for loan management module

Tests origination, persisted payments and receipts, optimistic versioning,
concurrent payments and both storage backends.
"""

import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from gold_lending.storage import InMemoryStorage, SQLiteStorage
from gold_lending.audit import AuditTrail, AuditEventType
from gold_lending.config import LendingConfig
from gold_lending.exceptions import (
    ExternalDependencyFailure, LoanClosedError, NotFoundError, StateConflictError,
    ValidationError
)
from gold_lending.loans import LoanManager
from gold_lending.models import (
    Actor, GoldItem, GoldReturnStatus, LoanStatus, PaymentMethod, PaymentStatus
)
from gold_lending.providers import DispatchResult, NotificationProvider


START = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
STAFF = Actor(id="emp-1", name="Anita Desai")


class RecordingProvider(NotificationProvider):
    """Mock provider for testing"""

    name = "recording"

    def __init__(self, should_succeed: bool = True):
        self.should_succeed = should_succeed
        self.sent_messages = []
        self.call_count = 0

    def send(self, message):
        self.call_count += 1
        if not self.should_succeed:
            raise ExternalDependencyFailure("Provider unavailable")
        self.sent_messages.append(message)
        return DispatchResult(provider=self.name, success=True, category=message.category)


@pytest.fixture
def storage():
    """Create test storage"""
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    """Create audit trail"""
    return AuditTrail(storage)


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def loan_manager(storage, audit_trail, provider):
    """Create loan manager"""
    return LoanManager(storage, audit_trail, LendingConfig(), provider=provider)


def originate(loan_manager, amount=Decimal('30000'), term=3, rate=18, now=START, customer_id="cust-1"):
    return loan_manager.originate_loan(
        customer_id=customer_id,
        customer_name="Ravi Kumar",
        customer_email="ravi@example.com",
        customer_mobile="9876543210",
        amount=amount,
        term=term,
        interest_rate=rate,
        purpose="Business",
        gold_items=[
            GoldItem("Chain", Decimal('12.5'), Decimal('11.8')),
            GoldItem("Ring", Decimal('4.2'), Decimal('4.0')),
        ],
        created_by=STAFF,
        now=now,
    )


@pytest.fixture
def loan(loan_manager):
    return originate(loan_manager)


class TestLoanOrigination:
    """Test creating loans"""

    def test_originate_loan(self, loan):
        assert loan.status == LoanStatus.ACTIVE
        assert loan.amount == Decimal('30000')
        assert loan.total_payment == Decimal('30000')
        assert loan.remaining_balance == Decimal('30000')
        assert loan.interest_rate == Decimal('18')
        assert loan.original_interest_rate == Decimal('18')
        assert loan.total_days == 90
        assert loan.daily_interest_rate == Decimal('18') / Decimal('100') / Decimal('365')
        assert loan.total_gold_weight == Decimal('15.8')
        assert len(loan.installments) == 3
        assert loan.gold_return_status is None
        assert loan.created_by == STAFF
        assert loan.version == 1

    def test_loan_ids_sequence_per_month(self, loan_manager, loan):
        """CY<yy><mm><seq>, the sequence restarting each month"""
        second = originate(loan_manager)
        next_month = originate(loan_manager, now=datetime(2025, 2, 3, tzinfo=timezone.utc))

        assert loan.loan_id == "CY250101"
        assert second.loan_id == "CY250102"
        assert next_month.loan_id == "CY250201"

    def test_concurrent_originations_get_distinct_ids(self, loan_manager):
        barrier = threading.Barrier(6)
        loan_ids = []

        def create():
            barrier.wait()
            loan_ids.append(originate(loan_manager).loan_id)

        threads = [threading.Thread(target=create) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(loan_ids) == [f"CY2501{n:02d}" for n in range(1, 7)]

    @pytest.mark.parametrize("kwargs", [
        {'amount': Decimal('50')},
        {'term': 4},
        {'rate': 20},
    ])
    def test_invalid_terms_rejected(self, loan_manager, storage, kwargs):
        with pytest.raises(ValidationError):
            originate(loan_manager, **kwargs)

        assert storage.count("loans") == 0

    def test_blank_customer_name_rejected(self, loan_manager):
        with pytest.raises(ValidationError):
            loan_manager.originate_loan(
                customer_id="cust-1", customer_name="  ", customer_email="", customer_mobile="",
                amount=1000, term=3, interest_rate=18,
            )

    def test_negative_gold_weight_rejected(self, loan_manager):
        with pytest.raises(ValidationError):
            loan_manager.originate_loan(
                customer_id="cust-1", customer_name="Ravi Kumar", customer_email="",
                customer_mobile="", amount=1000, term=3, interest_rate=18,
                gold_items=[GoldItem("Chain", Decimal('-1'), Decimal('-1'))],
            )

    def test_origination_audited(self, loan, audit_trail):
        events = audit_trail.get_events_for_entity("loan", loan.id)

        assert [e.event_type for e in events] == [AuditEventType.LOAN_ORIGINATED]
        assert events[0].metadata['loan_id'] == "CY250101"
        assert events[0].user_id == STAFF.id


class TestLoanQueries:
    """Test loan lookups"""

    def test_stored_loan_matches(self, loan_manager, loan):
        assert loan_manager.get_loan(loan.id).to_dict() == loan.to_dict()

    def test_get_by_loan_id(self, loan_manager, loan):
        assert loan_manager.get_loan_by_loan_id("CY250101").id == loan.id

    def test_unknown_loan(self, loan_manager):
        with pytest.raises(NotFoundError):
            loan_manager.get_loan("missing")
        with pytest.raises(NotFoundError):
            loan_manager.get_loan_by_loan_id("CY999999")

    def test_list_by_status_and_customer(self, loan_manager, loan):
        other = originate(loan_manager, customer_id="cust-2")
        loan_manager.record_payment(other.id, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        assert [l.id for l in loan_manager.list_loans(LoanStatus.ACTIVE)] == [loan.id]
        assert [l.id for l in loan_manager.list_loans(LoanStatus.CLOSED)] == [other.id]
        assert len(loan_manager.list_loans()) == 2
        assert [l.id for l in loan_manager.get_customer_loans("cust-2")] == [other.id]


class TestPersistedPayments:
    """Test recording payments through the manager"""

    def test_receipt(self, loan_manager, loan, provider):
        receipt = loan_manager.record_payment(
            loan.id, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START + timedelta(days=30)
        )

        assert receipt.payment.status == PaymentStatus.SUCCESS
        assert not receipt.closed_now
        assert receipt.loan.total_paid == Decimal('10000')
        # 30,000 at 18% for 30 days is 444 interest
        assert receipt.quote.total_amount == Decimal('30444')
        assert receipt.amount_still_owed == Decimal('20444')
        assert receipt.dispatch_results[0].success
        assert provider.sent_messages[0].category == "payment_receipt"
        assert "Rs. 20,444" in provider.sent_messages[0].body
        assert receipt.to_dict()['amount_still_owed'] == "20444"

    def test_payment_persisted_with_version_bump(self, loan_manager, loan):
        loan_manager.record_payment(loan.id, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        stored = loan_manager.get_loan(loan.id)
        assert stored.version == 2
        assert len(stored.payments) == 1
        assert stored.total_paid == Decimal('10000')

    def test_closing_payment(self, loan_manager, loan, audit_trail, provider):
        receipt = loan_manager.record_payment(
            loan.id, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=START + timedelta(days=45)
        )

        assert receipt.closed_now
        stored = loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.CLOSED
        assert stored.gold_return_status == GoldReturnStatus.PENDING
        assert "now closed" in provider.sent_messages[-1].body
        assert [e.event_type for e in audit_trail.get_events_for_entity("loan", loan.id)] == [
            AuditEventType.LOAN_ORIGINATED,
            AuditEventType.PAYMENT_RECORDED,
            AuditEventType.LOAN_CLOSED,
            AuditEventType.GOLD_RETURN_INITIALIZED,
        ]
        assert audit_trail.verify_integrity()["valid"]

    def test_payment_on_closed_loan(self, loan_manager, loan):
        loan_manager.record_payment(loan.id, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        with pytest.raises(LoanClosedError):
            loan_manager.record_payment(loan.id, 100, PaymentMethod.HANDCASH, STAFF)
        assert len(loan_manager.get_loan(loan.id).payments) == 1

    def test_invalid_payment_not_saved(self, loan_manager, loan):
        with pytest.raises(ValidationError):
            loan_manager.record_payment(loan.id, 10000, PaymentMethod.ONLINE, STAFF)

        stored = loan_manager.get_loan(loan.id)
        assert stored.version == 1
        assert stored.payments == []

    def test_back_dated_payment_not_saved(self, loan_manager, loan, provider):
        with pytest.raises(ValidationError):
            loan_manager.record_payment(
                loan.id, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START - timedelta(hours=1)
            )

        stored = loan_manager.get_loan(loan.id)
        assert stored.version == 1
        assert stored.payments == []
        assert provider.sent_messages == []

    def test_failed_receipt_keeps_payment(self, storage, audit_trail, loan):
        """A lost receipt never undoes the payment"""
        manager = LoanManager(storage, audit_trail, LendingConfig(),
                              provider=RecordingProvider(should_succeed=False))

        receipt = manager.record_payment(loan.id, 10000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        assert not receipt.dispatch_results[0].success
        assert "Provider unavailable" in receipt.dispatch_results[0].error
        assert manager.get_loan(loan.id).total_paid == Decimal('10000')

    def test_approve_online_payment(self, loan_manager, loan, audit_trail):
        receipt = loan_manager.record_payment(
            loan.id, 10000, PaymentMethod.ONLINE, STAFF,
            transaction_id="TXN123", bank_name="SBI", paid_at=START
        )

        loan_manager.approve_payment(loan.id, receipt.payment.id, approved_by=STAFF, now=START)

        stored = loan_manager.get_loan(loan.id)
        assert stored.get_payment(receipt.payment.id).status == PaymentStatus.SUCCESS
        assert len(audit_trail.get_events_by_type(AuditEventType.PAYMENT_APPROVED)) == 1

    def test_concurrent_payments_all_recorded(self, loan_manager):
        """Parallel payments on one loan never overwrite each other"""
        loan = originate(loan_manager, amount=Decimal('120000'), term=12)
        barrier = threading.Barrier(10)
        errors = []

        def pay():
            barrier.wait()
            try:
                loan_manager.record_payment(loan.id, 1000, PaymentMethod.HANDCASH, STAFF, paid_at=START)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stored = loan_manager.get_loan(loan.id)
        assert errors == []
        assert len(stored.payments) == 10
        assert stored.total_paid == Decimal('10000')
        assert stored.installments[0].amount_paid == Decimal('10000')
        assert stored.version == 11


class TestVersioning:
    """Test optimistic concurrency on save"""

    def test_stale_save_rejected(self, loan_manager, loan):
        stale = loan_manager.get_loan(loan.id)
        loan_manager.record_payment(loan.id, 1000, PaymentMethod.HANDCASH, STAFF, paid_at=START)

        stale.purpose = "Overwritten"
        with pytest.raises(StateConflictError):
            loan_manager._save_loan(stale)

        assert loan_manager.get_loan(loan.id).purpose == "Business"

    def test_initialize_gold_return_is_noop_when_set(self, loan_manager, loan):
        loan_manager.record_payment(loan.id, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=START)
        version = loan_manager.get_loan(loan.id).version

        result = loan_manager.initialize_gold_return_status(loan.id)

        assert result.gold_return_status == GoldReturnStatus.PENDING
        assert loan_manager.get_loan(loan.id).version == version


class TestSQLiteBackend:
    """Test the manager over SQLite"""

    def test_round_trip(self):
        storage = SQLiteStorage(":memory:")
        manager = LoanManager(storage, AuditTrail(storage), LendingConfig(), provider=RecordingProvider())

        loan = originate(manager)
        manager.record_payment(loan.id, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=START)
        manager.mark_gold_returned(loan.id, STAFF, now=START + timedelta(days=2))

        stored = manager.get_loan(loan.id)
        assert stored.status == LoanStatus.CLOSED
        assert stored.gold_return_status == GoldReturnStatus.RETURNED
        assert stored.gold_returned_by == STAFF
        assert stored.version == 3
        storage.close()
