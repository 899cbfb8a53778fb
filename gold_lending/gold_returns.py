"""
Gold Return Module

Post-closure lifecycle of the pledged collateral:

    pending -> scheduled -> returned

`overdue` is reachable from pending and scheduled by the passage of time;
`returned` is terminal. All operations mutate the loan aggregate in place and
leave persistence to the caller.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from .config import LendingConfig
from .exceptions import LendingError, StateConflictError, ValidationError
from .interest import as_datetime
from .jobs import JobResult
from .money import ZERO
from .models import (
    Actor, GoldReturnReminder, GoldReturnStatus, Loan, LoanStatus,
    ReminderRecipient, ReminderType, SYSTEM_ACTOR
)
from .providers import DispatchResult, NotificationProvider, OutboundMessage, dispatch

if TYPE_CHECKING:
    from .loans import LoanManager


logger = logging.getLogger("gold_lending.gold_returns")

NO_GOLD_ITEMS_NOTE = "Auto-marked as returned - no gold items"

OPEN_STATUSES = (GoldReturnStatus.PENDING, GoldReturnStatus.SCHEDULED)


def _require_closed(loan: Loan, operation: str) -> None:
    if not loan.is_closed:
        raise StateConflictError(
            f"Cannot {operation} for loan {loan.loan_id}: loan is not closed",
            {"loan_id": loan.loan_id, "status": loan.status.value}
        )


def has_gold_items(loan: Loan) -> bool:
    """True if any pledged item carries positive net weight"""
    return any(item.net_weight and item.net_weight > ZERO for item in loan.gold_items)


def initialize_gold_return_status(loan: Loan, now: Optional[datetime] = None) -> bool:
    """
    Set the initial return state when a loan closes

    Loans holding gold start pending; loans without gold are returned
    immediately by the system actor. Calling this again after the state is
    set leaves it untouched.

    Returns:
        True if the state was initialized by this call
    """
    _require_closed(loan, "initialize gold return")
    if loan.gold_return_status is not None:
        return False

    now = as_datetime(now or datetime.now(timezone.utc))
    if has_gold_items(loan):
        loan.gold_return_status = GoldReturnStatus.PENDING
    else:
        loan.gold_return_status = GoldReturnStatus.RETURNED
        loan.gold_return_date = now
        loan.gold_returned_by = SYSTEM_ACTOR
        loan.gold_return_notes = NO_GOLD_ITEMS_NOTE

    logger.info(
        f"Gold return for loan {loan.loan_id} initialized as "
        f"{loan.gold_return_status.value}"
    )
    return True


def schedule_gold_return(loan: Loan, scheduled_date: datetime, notes: str = "") -> Loan:
    """Book a collection date for the customer"""
    _require_closed(loan, "schedule gold return")
    if loan.gold_return_status == GoldReturnStatus.RETURNED:
        raise StateConflictError(
            f"Gold for loan {loan.loan_id} has already been returned",
            {"loan_id": loan.loan_id}
        )
    if scheduled_date is None:
        raise ValidationError("Scheduled date is required")

    loan.gold_return_status = GoldReturnStatus.SCHEDULED
    loan.gold_return_scheduled_date = as_datetime(scheduled_date)
    if notes:
        loan.gold_return_notes = notes
    return loan


def mark_gold_returned(
    loan: Loan,
    returned_by: Actor,
    notes: str = "",
    now: Optional[datetime] = None
) -> Loan:
    """Record the hand-over of the collateral. Terminal."""
    _require_closed(loan, "mark gold returned")
    if loan.gold_return_status == GoldReturnStatus.RETURNED:
        raise StateConflictError(
            f"Gold for loan {loan.loan_id} has already been returned",
            {"loan_id": loan.loan_id}
        )

    loan.gold_return_status = GoldReturnStatus.RETURNED
    loan.gold_return_date = as_datetime(now or datetime.now(timezone.utc))
    loan.gold_returned_by = returned_by
    if notes:
        loan.gold_return_notes = notes
    return loan


def record_reminder(
    loan: Loan,
    reminder_type: ReminderType,
    sent_to: ReminderRecipient = ReminderRecipient.CUSTOMER,
    message: str = "",
    now: Optional[datetime] = None
) -> GoldReturnReminder:
    """Append a reminder to the loan's history; the return state is unchanged"""
    reminder = GoldReturnReminder(
        type=reminder_type,
        sent_to=sent_to,
        sent_at=as_datetime(now or datetime.now(timezone.utc)),
        message=message,
    )
    loan.gold_return_reminders.append(reminder)
    return reminder


def reminder_sent(
    loan: Loan,
    reminder_type: ReminderType,
    sent_to: Optional[ReminderRecipient] = ReminderRecipient.CUSTOMER
) -> bool:
    return any(
        r.type == reminder_type and (sent_to is None or r.sent_to == sent_to)
        for r in loan.gold_return_reminders
    )


def days_since_closure(loan: Loan, now: Optional[datetime] = None) -> int:
    """Whole days elapsed since the loan closed, 0 for open loans"""
    if loan.closed_date is None:
        return 0
    now = as_datetime(now or datetime.now(timezone.utc))
    return max(0, (now - as_datetime(loan.closed_date)).days)


def effective_status(
    loan: Loan,
    now: Optional[datetime] = None,
    overdue_days: int = 30
) -> Optional[GoldReturnStatus]:
    """
    Return state with the time-based overdue rule applied

    A scheduled return is overdue once its scheduled date has passed; a
    booked collection date still ahead keeps it scheduled however long ago
    the loan closed. A pending return is overdue once more than
    `overdue_days` days have elapsed since closure.
    """
    status = loan.gold_return_status
    if status not in OPEN_STATUSES:
        return status

    now = as_datetime(now or datetime.now(timezone.utc))
    if status == GoldReturnStatus.SCHEDULED and loan.gold_return_scheduled_date:
        if now > as_datetime(loan.gold_return_scheduled_date):
            return GoldReturnStatus.OVERDUE
        return status
    if days_since_closure(loan, now) > overdue_days:
        return GoldReturnStatus.OVERDUE
    return status


def due_reminder_types(
    loan: Loan,
    schedule: Dict[str, int],
    now: Optional[datetime] = None
) -> List[ReminderType]:
    """Reminder tiers whose day threshold has passed and that were never sent"""
    elapsed = days_since_closure(loan, now)
    due = []
    for reminder_type in ReminderType:
        days_required = schedule.get(reminder_type.value)
        if days_required is None or elapsed < days_required:
            continue
        if not reminder_sent(loan, reminder_type):
            due.append(reminder_type)
    return due


def get_gold_return_summary(
    loan: Loan,
    now: Optional[datetime] = None,
    overdue_days: int = 30
) -> Dict[str, Any]:
    """Read-only projection for reporting and notification collaborators"""
    status = effective_status(loan, now, overdue_days)
    return {
        'loan_id': loan.loan_id,
        'customer_id': loan.customer_id,
        'customer_name': loan.customer_name,
        'customer_email': loan.customer_email,
        'customer_mobile': loan.customer_mobile,
        'loan_status': loan.status.value,
        'gold_return_status': status.value if status else None,
        'closed_date': loan.closed_date,
        'scheduled_date': loan.gold_return_scheduled_date,
        'return_date': loan.gold_return_date,
        'returned_by': loan.gold_returned_by.to_dict() if loan.gold_returned_by else None,
        'notes': loan.gold_return_notes,
        'days_since_closure': days_since_closure(loan, now),
        'total_gold_weight': loan.total_gold_weight,
        'gold_items': [item.to_dict() for item in loan.gold_items],
        'reminders_sent': len(loan.gold_return_reminders),
    }


def get_gold_return_stats(loans: Iterable[Loan]) -> Dict[str, Any]:
    """Count and gold weight of closed loans grouped by stored return state"""
    by_status: Dict[str, Dict[str, Any]] = {}
    total_closed = 0
    for loan in loans:
        if not loan.is_closed:
            continue
        total_closed += 1
        key = loan.gold_return_status.value if loan.gold_return_status else "unknown"
        bucket = by_status.setdefault(key, {'count': 0, 'total_gold_weight': Decimal('0')})
        bucket['count'] += 1
        bucket['total_gold_weight'] += loan.total_gold_weight

    return {
        'total_closed_loans': total_closed,
        'overdue_loans': by_status.get(GoldReturnStatus.OVERDUE.value, {}).get('count', 0),
        'by_status': by_status,
    }


def reminder_subject(loan: Loan, reminder_type: ReminderType) -> str:
    subjects = {
        ReminderType.INITIAL: "Gold Return Reminder",
        ReminderType.FOLLOWUP: "Follow-up: Gold Collection Reminder",
        ReminderType.URGENT: "URGENT: Gold Collection Required",
        ReminderType.FINAL: "FINAL NOTICE: Gold Collection",
    }
    return f"{subjects[reminder_type]} - Loan {loan.loan_id}"


def reminder_body(loan: Loan, reminder_type: ReminderType, now: Optional[datetime] = None) -> str:
    elapsed = days_since_closure(loan, now)
    details = (
        f"Total gold weight: {loan.total_gold_weight}g across "
        f"{len(loan.gold_items)} item(s)."
    )
    if reminder_type == ReminderType.INITIAL:
        lead = (
            f"Your loan {loan.loan_id} has been closed and your gold items are "
            f"ready for collection. Please bring a valid ID proof and the "
            f"loan closure receipt."
        )
    elif reminder_type == ReminderType.FOLLOWUP:
        lead = (
            f"Your gold items from loan {loan.loan_id} are still waiting for "
            f"collection. It has been {elapsed} days since the loan was closed."
        )
    elif reminder_type == ReminderType.URGENT:
        lead = (
            f"Your gold items from loan {loan.loan_id} have been waiting for "
            f"{elapsed} days. Please collect them immediately."
        )
    else:
        lead = (
            f"FINAL NOTICE: your gold items from loan {loan.loan_id} have been "
            f"waiting for {elapsed} days. Please collect them within 7 days."
        )
    return f"Dear {loan.customer_name},\n\n{lead}\n\n{details}"


def admin_alert_body(loan: Loan, now: Optional[datetime] = None) -> str:
    items = "\n".join(f"- {item.description}: {item.net_weight}g" for item in loan.gold_items)
    return (
        f"Customer {loan.customer_name} has not collected their gold items for "
        f"{days_since_closure(loan, now)} days.\n\n"
        f"Loan ID: {loan.loan_id}\n"
        f"Mobile: {loan.customer_mobile}\n"
        f"Email: {loan.customer_email}\n"
        f"Total gold weight: {loan.total_gold_weight}g\n\n"
        f"{items}"
    )


def reminder_message(loan: Loan, reminder_type: ReminderType, now: Optional[datetime] = None) -> OutboundMessage:
    return OutboundMessage(
        subject=reminder_subject(loan, reminder_type),
        body=reminder_body(loan, reminder_type, now),
        recipient_name=loan.customer_name,
        recipient_email=loan.customer_email,
        recipient_mobile=loan.customer_mobile,
        category=f"gold_return_{reminder_type.value}",
        metadata={'loan_id': loan.loan_id, 'reminder_type': reminder_type.value},
    )


class GoldReturnReminderService:
    """
    The gold return reminders job

    For every closed loan whose gold is still pending or scheduled it sends
    each reminder tier once its day threshold has passed, and moves loans
    past the collection window to overdue with a single admin alert.
    """

    def __init__(
        self,
        loan_manager: 'LoanManager',
        provider: NotificationProvider,
        config: LendingConfig
    ):
        self.loan_manager = loan_manager
        self.provider = provider
        self.schedule = dict(config.gold_return_reminder_schedule)
        self.overdue_days = config.gold_return_overdue_days
        self.admin_email = config.admin_email

    def process(self, now: Optional[datetime] = None) -> JobResult:
        now = as_datetime(now or datetime.now(timezone.utc))
        result = JobResult()
        reminders_sent = 0
        admin_alerts_sent = 0

        for loan in self.loan_manager.list_loans(LoanStatus.CLOSED):
            if loan.gold_return_status not in OPEN_STATUSES:
                continue
            try:
                reminders, alerts = self._process_loan(loan, now)
            except LendingError as e:
                logger.error(f"Gold return reminders failed for loan {loan.loan_id}: {e}")
                result.record(False)
                continue
            reminders_sent += reminders
            admin_alerts_sent += alerts
            result.record(True)

        result.details['reminders_sent'] = reminders_sent
        result.details['admin_alerts_sent'] = admin_alerts_sent
        logger.info(
            f"Gold return reminders: {reminders_sent} customer reminders, "
            f"{admin_alerts_sent} admin alerts over {result.records_processed} loans"
        )
        return result

    def _process_loan(self, loan: Loan, now: datetime):
        reminders = 0
        alerts = 0

        if effective_status(loan, now, self.overdue_days) == GoldReturnStatus.OVERDUE:
            loan = self.loan_manager.mark_gold_return_overdue(loan.id, now=now)
            # One alert per loan, even if it is rescheduled and lapses again
            if not reminder_sent(loan, ReminderType.URGENT, ReminderRecipient.ADMIN):
                if self.send_admin_alert(loan, now).success:
                    alerts += 1

        for reminder_type in due_reminder_types(loan, self.schedule, now):
            if self.send_reminder(loan, reminder_type, now).success:
                reminders += 1
        return reminders, alerts

    def send_reminder(
        self,
        loan: Loan,
        reminder_type: ReminderType,
        now: Optional[datetime] = None
    ) -> DispatchResult:
        """Send one customer reminder and record it on the loan if delivered"""
        message = reminder_message(loan, reminder_type, now)
        outcome = dispatch(self.provider, message)
        if outcome.success:
            self.loan_manager.record_gold_return_reminder(
                loan.id, reminder_type, ReminderRecipient.CUSTOMER, message.body, now=now
            )
        return outcome

    def send_admin_alert(self, loan: Loan, now: Optional[datetime] = None) -> DispatchResult:
        body = admin_alert_body(loan, now)
        outcome = dispatch(self.provider, OutboundMessage(
            subject=f"ADMIN ALERT: Overdue Gold Return - Loan {loan.loan_id}",
            body=body,
            recipient_name="Administrator",
            recipient_email=self.admin_email,
            category="gold_return_admin_alert",
            metadata={'loan_id': loan.loan_id},
        ))
        if outcome.success:
            self.loan_manager.record_gold_return_reminder(
                loan.id, ReminderType.URGENT, ReminderRecipient.ADMIN, body, now=now
            )
        return outcome

    def send_manual_reminder(
        self,
        loan_id: str,
        reminder_type: ReminderType = ReminderType.URGENT,
        now: Optional[datetime] = None
    ) -> DispatchResult:
        """Send a reminder outside the schedule, e.g. on staff request"""
        loan = self.loan_manager.get_loan(loan_id)
        _require_closed(loan, "send gold return reminder")
        return self.send_reminder(loan, reminder_type, now)

    def get_stats(self) -> Dict[str, Any]:
        return get_gold_return_stats(self.loan_manager.list_loans(LoanStatus.CLOSED))
