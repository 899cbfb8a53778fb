"""
Test suite for gold return module

Tests the post-closure collateral states, the time-based overdue rule and
the gold return reminders job.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from gold_lending.storage import InMemoryStorage
from gold_lending.audit import AuditTrail, AuditEventType
from gold_lending.config import LendingConfig
from gold_lending.exceptions import ExternalDependencyFailure, StateConflictError
from gold_lending.gold_returns import (
    GoldReturnReminderService, days_since_closure, due_reminder_types, effective_status,
    get_gold_return_stats, initialize_gold_return_status, mark_gold_returned,
    record_reminder, reminder_sent, schedule_gold_return
)
from gold_lending.loans import LoanManager
from gold_lending.models import (
    Actor, GoldItem, GoldReturnStatus, PaymentMethod, ReminderRecipient, ReminderType
)
from gold_lending.providers import DispatchResult, NotificationProvider


START = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
CLOSED_ON = START + timedelta(days=30)
STAFF = Actor(id="emp-1", name="Anita Desai")
SCHEDULE = {"initial": 3, "followup": 7, "urgent": 15, "final": 30}


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
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def config():
    return LendingConfig()


@pytest.fixture
def loan_manager(storage, audit_trail, config):
    return LoanManager(storage, audit_trail, config)


def originate(loan_manager, gold_items=None):
    if gold_items is None:
        gold_items = [GoldItem("Chain", Decimal('12.5'), Decimal('11.8'))]
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
def active_loan(loan_manager):
    return originate(loan_manager)


@pytest.fixture
def closed_loan(loan_manager, active_loan):
    """Loan settled in full on CLOSED_ON, gold still held"""
    receipt = loan_manager.record_payment(
        active_loan.id, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=CLOSED_ON
    )
    return receipt.loan


class TestGoldReturnStates:
    """Test collateral state transitions"""

    def test_initialized_pending_on_closure(self, closed_loan):
        assert closed_loan.gold_return_status == GoldReturnStatus.PENDING
        assert closed_loan.closed_date == CLOSED_ON

    def test_initialize_is_idempotent(self, closed_loan):
        schedule_gold_return(closed_loan, CLOSED_ON + timedelta(days=5))

        assert initialize_gold_return_status(closed_loan, CLOSED_ON) is False
        assert closed_loan.gold_return_status == GoldReturnStatus.SCHEDULED

    def test_initialize_requires_closed_loan(self, active_loan):
        with pytest.raises(StateConflictError):
            initialize_gold_return_status(active_loan, START)

    def test_schedule_return(self, closed_loan):
        pickup = CLOSED_ON + timedelta(days=5)

        schedule_gold_return(closed_loan, pickup, notes="Customer visits Saturday")

        assert closed_loan.gold_return_status == GoldReturnStatus.SCHEDULED
        assert closed_loan.gold_return_scheduled_date == pickup
        assert closed_loan.gold_return_notes == "Customer visits Saturday"

    def test_schedule_requires_closed_loan(self, active_loan):
        with pytest.raises(StateConflictError):
            schedule_gold_return(active_loan, START + timedelta(days=5))

    def test_mark_returned(self, closed_loan):
        returned_at = CLOSED_ON + timedelta(days=6)

        mark_gold_returned(closed_loan, STAFF, notes="Collected in person", now=returned_at)

        assert closed_loan.gold_return_status == GoldReturnStatus.RETURNED
        assert closed_loan.gold_return_date == returned_at
        assert closed_loan.gold_returned_by == STAFF

    def test_returned_is_terminal(self, closed_loan):
        """Neither scheduling nor returning again is allowed once returned"""
        mark_gold_returned(closed_loan, STAFF, now=CLOSED_ON)

        with pytest.raises(StateConflictError):
            mark_gold_returned(closed_loan, STAFF, now=CLOSED_ON)
        with pytest.raises(StateConflictError):
            schedule_gold_return(closed_loan, CLOSED_ON + timedelta(days=1))

    def test_reminder_does_not_change_state(self, closed_loan):
        record_reminder(closed_loan, ReminderType.INITIAL, now=CLOSED_ON)

        assert closed_loan.gold_return_status == GoldReturnStatus.PENDING
        assert reminder_sent(closed_loan, ReminderType.INITIAL)
        assert not reminder_sent(closed_loan, ReminderType.INITIAL, ReminderRecipient.ADMIN)


class TestOverdueRule:
    """Test the time-based overdue status"""

    def test_pending_within_window(self, closed_loan):
        assert effective_status(closed_loan, CLOSED_ON + timedelta(days=30)) == GoldReturnStatus.PENDING

    def test_pending_past_window(self, closed_loan):
        assert effective_status(closed_loan, CLOSED_ON + timedelta(days=31)) == GoldReturnStatus.OVERDUE

    def test_scheduled_date_passed(self, closed_loan):
        pickup = CLOSED_ON + timedelta(days=5)
        schedule_gold_return(closed_loan, pickup)

        assert effective_status(closed_loan, pickup) == GoldReturnStatus.SCHEDULED
        assert effective_status(closed_loan, pickup + timedelta(hours=1)) == GoldReturnStatus.OVERDUE

    def test_future_scheduled_date_not_overdue(self, closed_loan):
        """A booked collection date still ahead outlasts the closure window"""
        schedule_gold_return(closed_loan, CLOSED_ON + timedelta(days=40))

        assert effective_status(closed_loan, CLOSED_ON + timedelta(days=35)) == GoldReturnStatus.SCHEDULED
        assert effective_status(closed_loan, CLOSED_ON + timedelta(days=41)) == GoldReturnStatus.OVERDUE

    def test_returned_never_overdue(self, closed_loan):
        mark_gold_returned(closed_loan, STAFF, now=CLOSED_ON)

        assert effective_status(closed_loan, CLOSED_ON + timedelta(days=90)) == GoldReturnStatus.RETURNED

    def test_active_loan_has_no_status(self, active_loan):
        assert effective_status(active_loan, START) is None
        assert days_since_closure(active_loan, START) == 0


class TestReminderSchedule:
    """Test which reminder tiers are due"""

    def test_nothing_due_before_three_days(self, closed_loan):
        assert due_reminder_types(closed_loan, SCHEDULE, CLOSED_ON + timedelta(days=2)) == []

    def test_tiers_accumulate(self, closed_loan):
        assert due_reminder_types(closed_loan, SCHEDULE, CLOSED_ON + timedelta(days=16)) == [
            ReminderType.INITIAL, ReminderType.FOLLOWUP, ReminderType.URGENT
        ]

    def test_sent_tiers_excluded(self, closed_loan):
        record_reminder(closed_loan, ReminderType.INITIAL, now=CLOSED_ON)

        assert due_reminder_types(closed_loan, SCHEDULE, CLOSED_ON + timedelta(days=8)) == [
            ReminderType.FOLLOWUP
        ]


class TestGoldReturnManager:
    """Test persisted gold return operations"""

    def test_schedule_and_return_persisted(self, loan_manager, closed_loan, audit_trail):
        loan_manager.schedule_gold_return(closed_loan.id, CLOSED_ON + timedelta(days=3), scheduled_by=STAFF)
        loan_manager.mark_gold_returned(closed_loan.id, STAFF, now=CLOSED_ON + timedelta(days=3))

        stored = loan_manager.get_loan(closed_loan.id)
        assert stored.gold_return_status == GoldReturnStatus.RETURNED
        assert stored.gold_returned_by == STAFF
        assert len(audit_trail.get_events_by_type(AuditEventType.GOLD_RETURNED)) == 1

    def test_failed_transition_not_saved(self, loan_manager, closed_loan):
        loan_manager.mark_gold_returned(closed_loan.id, STAFF, now=CLOSED_ON)
        version = loan_manager.get_loan(closed_loan.id).version

        with pytest.raises(StateConflictError):
            loan_manager.schedule_gold_return(closed_loan.id, CLOSED_ON + timedelta(days=1))

        assert loan_manager.get_loan(closed_loan.id).version == version

    def test_overdue_not_persisted_before_scheduled_date(self, loan_manager, closed_loan, audit_trail):
        loan_manager.schedule_gold_return(closed_loan.id, CLOSED_ON + timedelta(days=40), scheduled_by=STAFF)

        loan = loan_manager.mark_gold_return_overdue(closed_loan.id, now=CLOSED_ON + timedelta(days=35))

        assert loan.gold_return_status == GoldReturnStatus.SCHEDULED
        assert loan_manager.get_loan(closed_loan.id).gold_return_status == GoldReturnStatus.SCHEDULED
        assert audit_trail.get_events_by_type(AuditEventType.GOLD_RETURN_OVERDUE) == []

    def test_summary(self, loan_manager, closed_loan):
        summary = loan_manager.get_gold_return_summary(closed_loan.id, CLOSED_ON + timedelta(days=40))

        assert summary['loan_id'] == closed_loan.loan_id
        assert summary['gold_return_status'] == "overdue"
        assert summary['days_since_closure'] == 40
        assert summary['total_gold_weight'] == Decimal('11.8')

    def test_stats(self, loan_manager, closed_loan):
        no_gold = originate(loan_manager, gold_items=[])
        loan_manager.record_payment(no_gold.id, 30000, PaymentMethod.HANDCASH, STAFF, paid_at=CLOSED_ON)
        originate(loan_manager)

        stats = get_gold_return_stats(loan_manager.list_loans())

        assert stats['total_closed_loans'] == 2
        assert stats['by_status']['pending']['count'] == 1
        assert stats['by_status']['returned']['count'] == 1
        assert stats['overdue_loans'] == 0


class TestGoldReturnReminderService:
    """Test the gold return reminders job"""

    def test_sends_due_tiers_once(self, loan_manager, closed_loan, config):
        provider = RecordingProvider()
        service = GoldReturnReminderService(loan_manager, provider, config)

        result = service.process(CLOSED_ON + timedelta(days=10))

        assert result.details['reminders_sent'] == 2
        assert result.records_processed == 1
        assert [m.category for m in provider.sent_messages] == [
            "gold_return_initial", "gold_return_followup"
        ]

        again = service.process(CLOSED_ON + timedelta(days=10))
        assert again.details['reminders_sent'] == 0
        assert provider.call_count == 2

    def test_reminder_history_persisted(self, loan_manager, closed_loan, config):
        service = GoldReturnReminderService(loan_manager, RecordingProvider(), config)

        service.process(CLOSED_ON + timedelta(days=4))

        stored = loan_manager.get_loan(closed_loan.id)
        assert [r.type for r in stored.gold_return_reminders] == [ReminderType.INITIAL]
        assert stored.gold_return_status == GoldReturnStatus.PENDING

    def test_overdue_loan_alerts_admin_once(self, loan_manager, closed_loan, config):
        """Past the window the loan is marked overdue with one admin alert"""
        provider = RecordingProvider()
        service = GoldReturnReminderService(loan_manager, provider, config)

        result = service.process(CLOSED_ON + timedelta(days=31))

        stored = loan_manager.get_loan(closed_loan.id)
        assert stored.gold_return_status == GoldReturnStatus.OVERDUE
        assert result.details['admin_alerts_sent'] == 1
        assert result.details['reminders_sent'] == 4
        admin = [m for m in provider.sent_messages if m.category == "gold_return_admin_alert"]
        assert len(admin) == 1
        assert admin[0].recipient_email == config.admin_email
        assert reminder_sent(stored, ReminderType.URGENT, ReminderRecipient.ADMIN)

        later = service.process(CLOSED_ON + timedelta(days=45))
        assert later.records_processed == 0
        assert later.details['admin_alerts_sent'] == 0

    def test_rescheduled_overdue_loan(self, loan_manager, closed_loan, config):
        """Rescheduling stays in force until the new date, and the admin hears once"""
        provider = RecordingProvider()
        service = GoldReturnReminderService(loan_manager, provider, config)
        service.process(CLOSED_ON + timedelta(days=31))

        loan_manager.schedule_gold_return(closed_loan.id, CLOSED_ON + timedelta(days=40), scheduled_by=STAFF)
        result = service.process(CLOSED_ON + timedelta(days=33))

        assert loan_manager.get_loan(closed_loan.id).gold_return_status == GoldReturnStatus.SCHEDULED
        assert result.records_processed == 1
        assert result.details['admin_alerts_sent'] == 0

        lapsed = service.process(CLOSED_ON + timedelta(days=41))

        assert loan_manager.get_loan(closed_loan.id).gold_return_status == GoldReturnStatus.OVERDUE
        assert lapsed.details['admin_alerts_sent'] == 0
        admin = [m for m in provider.sent_messages if m.category == "gold_return_admin_alert"]
        assert len(admin) == 1

    def test_failed_dispatch_not_recorded(self, loan_manager, closed_loan, config):
        service = GoldReturnReminderService(loan_manager, RecordingProvider(should_succeed=False), config)

        result = service.process(CLOSED_ON + timedelta(days=10))

        assert result.details['reminders_sent'] == 0
        assert loan_manager.get_loan(closed_loan.id).gold_return_reminders == []

    def test_returned_loans_skipped(self, loan_manager, closed_loan, config):
        loan_manager.mark_gold_returned(closed_loan.id, STAFF, now=CLOSED_ON)
        provider = RecordingProvider()
        service = GoldReturnReminderService(loan_manager, provider, config)

        result = service.process(CLOSED_ON + timedelta(days=20))

        assert result.records_processed == 0
        assert provider.sent_messages == []

    def test_manual_reminder(self, loan_manager, closed_loan, config):
        provider = RecordingProvider()
        service = GoldReturnReminderService(loan_manager, provider, config)

        outcome = service.send_manual_reminder(closed_loan.id, ReminderType.URGENT, CLOSED_ON)

        assert outcome.success
        assert provider.sent_messages[0].subject.startswith("URGENT")

    def test_manual_reminder_requires_closed_loan(self, loan_manager, active_loan, config):
        service = GoldReturnReminderService(loan_manager, RecordingProvider(), config)

        with pytest.raises(StateConflictError):
            service.send_manual_reminder(active_loan.id)
