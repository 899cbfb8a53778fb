"""
Payment Reminder Module

Daily customer reminders for upcoming and overdue installments, plus a
Monday summary for installments due within the week. Each reminder is sent
at most once per (loan, installment, kind, day): the run claims the key with
an atomic insert-if-absent before dispatching.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from .config import LendingConfig
from .jobs import JobResult
from .lifecycle import next_unpaid_installment, overdue_installments
from .models import Loan
from .money import format_amount
from .notifications import start_of_day
from .providers import DispatchResult, NotificationProvider, OutboundMessage, dispatch
from .schedule import Installment
from .storage import StorageInterface


logger = logging.getLogger("gold_lending.reminders")

UPCOMING = "upcoming"
OVERDUE = "overdue"
WEEKLY = "weekly"

MONDAY = 0


def days_until_due(installment: Installment, now: datetime) -> int:
    """Calendar days from today to the due day, negative once past due"""
    return (start_of_day(installment.due_date) - start_of_day(now)).days


class PaymentReminderService:
    """
    Sends payment reminders through the configured provider
    """

    def __init__(
        self,
        storage: StorageInterface,
        provider: NotificationProvider,
        config: LendingConfig
    ):
        self.storage = storage
        self.provider = provider
        self.days_before_due = list(config.reminder_days_before_due)
        self.weekly_window_days = config.weekly_summary_window_days
        self.table_name = "payment_reminder_log"

    def send_upcoming_reminders(self, loans: Iterable[Loan], now: Optional[datetime] = None) -> JobResult:
        """Remind customers a configured number of days before the next due date"""
        now = now or datetime.now(timezone.utc)
        result = JobResult()
        for loan in loans:
            installment = next_unpaid_installment(loan)
            if loan.is_closed or installment is None:
                continue
            days = days_until_due(installment, now)
            if days not in self.days_before_due:
                continue
            self._send(loan, installment, f"{UPCOMING}_{days}", self._upcoming_message(loan, installment, days), now, result)
        return result

    def send_overdue_reminders(self, loans: Iterable[Loan], now: Optional[datetime] = None) -> JobResult:
        """One reminder per overdue installment per day"""
        now = now or datetime.now(timezone.utc)
        result = JobResult()
        for loan in loans:
            if loan.is_closed:
                continue
            for installment in overdue_installments(loan, start_of_day(now)):
                days_overdue = -days_until_due(installment, now)
                if days_overdue <= 0:
                    continue
                self._send(loan, installment, OVERDUE, self._overdue_message(loan, installment, days_overdue), now, result)
        return result

    def send_weekly_summaries(self, loans: Iterable[Loan], now: Optional[datetime] = None) -> JobResult:
        """Mondays only: summary for loans whose next installment is due within the window"""
        now = now or datetime.now(timezone.utc)
        result = JobResult()
        if start_of_day(now).weekday() != MONDAY:
            result.details['skipped'] = "not monday"
            return result
        for loan in loans:
            installment = next_unpaid_installment(loan)
            if loan.is_closed or installment is None:
                continue
            days = days_until_due(installment, now)
            if days > self.weekly_window_days:
                continue
            self._send(loan, installment, WEEKLY, self._upcoming_message(loan, installment, days), now, result)
        return result

    def process(self, loans: Iterable[Loan], now: Optional[datetime] = None) -> JobResult:
        """The payment reminders job"""
        now = now or datetime.now(timezone.utc)
        loans = list(loans)
        result = JobResult()
        result.merge(self.send_upcoming_reminders(loans, now), key=UPCOMING)
        result.merge(self.send_overdue_reminders(loans, now), key=OVERDUE)
        result.merge(self.send_weekly_summaries(loans, now), key=WEEKLY)
        logger.info(
            f"Payment reminders: {result.records_successful} sent, "
            f"{result.records_failed} failed"
        )
        return result

    def _claim(self, loan: Loan, installment: Installment, kind: str, now: datetime) -> Optional[str]:
        key = f"{loan.id}:{installment.number}:{kind}:{start_of_day(now).date().isoformat()}"
        claimed = self.storage.insert_if_absent(self.table_name, key, {
            'id': key,
            'loan_id': loan.id,
            'installment_number': installment.number,
            'kind': kind,
            'sent_at': now.isoformat(),
        })
        return key if claimed else None

    def _send(
        self,
        loan: Loan,
        installment: Installment,
        kind: str,
        message: OutboundMessage,
        now: datetime,
        result: JobResult
    ) -> Optional[DispatchResult]:
        key = self._claim(loan, installment, kind, now)
        if key is None:
            logger.debug(f"Reminder {kind} for loan {loan.loan_id} already sent today")
            return None

        outcome = dispatch(self.provider, message)
        if not outcome.success:
            # Free the key so a later run can retry
            self.storage.delete(self.table_name, key)
        result.record(outcome.success)
        return outcome

    def _upcoming_message(self, loan: Loan, installment: Installment, days: int) -> OutboundMessage:
        if days == 0:
            when = "today"
        elif days == 1:
            when = "tomorrow"
        else:
            when = f"in {days} days"
        return OutboundMessage(
            subject=f"Payment Reminder - Loan {loan.loan_id}",
            body=(
                f"Dear {loan.customer_name},\n\n"
                f"Installment {installment.number} of {loan.term} for loan {loan.loan_id}, "
                f"amount {format_amount(installment.amount_outstanding)}, is due {when} "
                f"({installment.due_date.date().isoformat()}).\n"
                f"Total paid: {format_amount(loan.total_paid)}. "
                f"Remaining balance: {format_amount(loan.remaining_balance)}."
            ),
            recipient_name=loan.customer_name,
            recipient_email=loan.customer_email,
            recipient_mobile=loan.customer_mobile,
            category="payment_reminder",
            metadata={'loan_id': loan.loan_id, 'installment_number': installment.number, 'days_until_due': days},
        )

    def _overdue_message(self, loan: Loan, installment: Installment, days_overdue: int) -> OutboundMessage:
        return OutboundMessage(
            subject=f"Payment Overdue - Loan {loan.loan_id}",
            body=(
                f"Dear {loan.customer_name},\n\n"
                f"Installment {installment.number} for loan {loan.loan_id}, amount "
                f"{format_amount(installment.amount_outstanding)}, is {days_overdue} days overdue. "
                f"Please pay at the earliest to avoid an interest rate upgrade."
            ),
            recipient_name=loan.customer_name,
            recipient_email=loan.customer_email,
            recipient_mobile=loan.customer_mobile,
            category="payment_overdue",
            metadata={'loan_id': loan.loan_id, 'installment_number': installment.number, 'days_overdue': days_overdue},
        )
