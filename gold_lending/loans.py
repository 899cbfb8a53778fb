"""
Loan Management Module

Entry point for every loan operation. Each mutation loads the aggregate under
a per-loan lock, applies the change, checks the stored version and saves
with the version bumped. Notifications are created and messages dispatched
only after the save; a failed dispatch is reported in the result and never
undoes the change.
"""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .exceptions import NotFoundError, StateConflictError, ValidationError
from .gold_returns import (
    OPEN_STATUSES, effective_status, get_gold_return_summary as gold_return_summary,
    initialize_gold_return_status as init_gold_return, mark_gold_returned as mark_returned,
    record_reminder, reminder_sent, schedule_gold_return as schedule_return
)
from .interest import as_datetime
from .lifecycle import pending_repayments, weekly_dues
from .logging_config import log_action
from .models import (
    Actor, GoldItem, GoldReturnStatus, Loan, LoanStatus, Payment, PaymentMethod,
    ReminderRecipient, ReminderType
)
from .money import Numeric, ZERO, format_amount, to_decimal
from .notifications import NotificationService
from .payments import approve_payment as approve, record_payment as record
from .providers import DispatchResult, LogNotificationProvider, NotificationProvider, OutboundMessage, dispatch
from .quotes import EarlyRepaymentQuote, calculate_early_repayment_amount as quote_early_repayment
from .rate_upgrades import RateUpgradeDetails, upgrade_interest_rate as upgrade_rate, upgrade_message
from .schedule import build_schedule
from .storage import StorageInterface


logger = logging.getLogger("gold_lending.loans")

DAYS_PER_TERM_MONTH = 30


@dataclass
class PaymentReceipt:
    """Result of recording a payment"""
    payment: Payment
    loan: Loan
    closed_now: bool
    quote: EarlyRepaymentQuote
    dispatch_results: List[DispatchResult] = field(default_factory=list)

    @property
    def amount_still_owed(self) -> Decimal:
        """Early settlement amount as of the payment, less everything paid"""
        return self.quote.amount_outstanding

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment': self.payment.to_dict(),
            'loan_id': self.loan.loan_id,
            'loan_status': self.loan.status.value,
            'total_paid': str(self.loan.total_paid),
            'remaining_balance': str(self.loan.remaining_balance),
            'closed_now': self.closed_now,
            'amount_still_owed': str(self.amount_still_owed),
            'dispatch_results': [r.to_dict() for r in self.dispatch_results],
        }


class LoanManager:
    """
    Originates, services and closes gold loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None,
        notifications: Optional[NotificationService] = None,
        provider: Optional[NotificationProvider] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.notifications = notifications or NotificationService(storage, audit_trail, self.config)
        self.provider = provider or LogNotificationProvider()
        self.table_name = "loans"
        self.loan_ids_table = "loan_ids"

    def originate_loan(
        self,
        customer_id: str,
        customer_name: str,
        customer_email: str,
        customer_mobile: str,
        amount: Numeric,
        term: int,
        interest_rate: Numeric,
        purpose: str = "",
        gold_items: Optional[List[GoldItem]] = None,
        created_by: Optional[Actor] = None,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Create a new active loan with its installment schedule

        Raises:
            ValidationError: If the amount, term, rate or customer details are invalid
        """
        amount = to_decimal(amount)
        rate = to_decimal(interest_rate)
        gold_items = list(gold_items or [])

        if not customer_name or not customer_name.strip():
            raise ValidationError("Customer name is required")
        if not amount.is_finite() or amount < self.config.minimum_loan_amount:
            raise ValidationError(
                f"Loan amount must be at least {self.config.minimum_loan_amount}",
                {"amount": str(amount)}
            )
        if term not in self.config.allowed_terms:
            raise ValidationError(
                f"Invalid loan term: {term}", {"allowed": list(self.config.allowed_terms)}
            )
        if rate not in [to_decimal(r) for r in self.config.allowed_rates]:
            raise ValidationError(
                f"Invalid interest rate: {interest_rate}", {"allowed": list(self.config.allowed_rates)}
            )
        for item in gold_items:
            if item.gross_weight < ZERO or item.net_weight < ZERO:
                raise ValidationError(
                    "Gold item weights cannot be negative", {"description": item.description}
                )

        now = as_datetime(now or datetime.now(timezone.utc))
        daily_rate = rate / Decimal('100') / Decimal('365')

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=self._next_loan_id(now),
            customer_id=customer_id,
            customer_name=customer_name.strip(),
            customer_email=customer_email,
            customer_mobile=customer_mobile,
            amount=amount,
            purpose=purpose,
            term=term,
            interest_rate=rate,
            original_interest_rate=rate,
            daily_interest_rate=daily_rate,
            total_days=term * DAYS_PER_TERM_MONTH,
            daily_interest_amount=amount * daily_rate,
            total_payment=amount,
            remaining_balance=amount,
            installments=build_schedule(amount, term, rate, now),
            gold_items=gold_items,
            created_by=created_by,
        )

        loan.version = 1
        self.storage.save(self.table_name, loan.id, loan.to_dict())

        self.audit_trail.log_event(
            AuditEventType.LOAN_ORIGINATED,
            "loan",
            loan.id,
            {
                'loan_id': loan.loan_id,
                'customer_id': customer_id,
                'amount': amount,
                'term': term,
                'interest_rate': rate,
                'gold_weight': loan.total_gold_weight,
            },
            user_id=created_by.id if created_by else None
        )
        log_action(
            logger, "info", f"Originated loan {loan.loan_id} for {format_amount(amount)}",
            user_id=created_by.id if created_by else None,
            action="originate_loan", resource=loan.id
        )

        self.notifications.notify_new_loan(loan)
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """Load a loan by record id"""
        data = self.storage.load(self.table_name, loan_id)
        if data is None:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def get_loan_by_loan_id(self, loan_id: str) -> Loan:
        """Load a loan by its display id, e.g. CY250701"""
        records = self.storage.find(self.table_name, {'loan_id': loan_id})
        if not records:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(records[0])

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {'status': status.value} if status else {}
        loans = [Loan.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        records = self.storage.find(self.table_name, {'customer_id': customer_id})
        return sorted((Loan.from_dict(data) for data in records), key=lambda loan: loan.created_at)

    def get_pending_repayments(
        self,
        status_filter: str = "all",
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Next unpaid installment per active loan, filtered to all, upcoming or unpaid"""
        return pending_repayments(self.list_loans(LoanStatus.ACTIVE), status_filter, now)

    def get_weekly_dues(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return weekly_dues(self.list_loans(LoanStatus.ACTIVE), now)

    def record_payment(
        self,
        loan_id: str,
        amount: Numeric,
        method: Union[PaymentMethod, str],
        entered_by: Actor,
        transaction_id: Optional[str] = None,
        bank_name: Optional[str] = None,
        paid_at: Optional[datetime] = None
    ) -> PaymentReceipt:
        """
        Record a repayment, closing the loan if it settles it

        Returns:
            PaymentReceipt with the payment, the updated loan, the amount
            still owed and the outcome of the receipt dispatch
        """
        with self._locked_loan(loan_id) as loan:
            payment = record(
                loan, amount, method, entered_by,
                transaction_id=transaction_id, bank_name=bank_name, paid_at=paid_at
            )
            closed_now = loan.is_closed

        self.audit_trail.log_event(
            AuditEventType.PAYMENT_RECORDED,
            "loan",
            loan.id,
            {
                'loan_id': loan.loan_id,
                'payment_id': payment.id,
                'amount': payment.amount,
                'method': payment.method,
                'status': payment.status,
                'installment_number': payment.installment_number,
                'total_paid': loan.total_paid,
                'remaining_balance': loan.remaining_balance,
            },
            user_id=entered_by.id if entered_by else None
        )
        if closed_now:
            self._log_closure(loan)

        self.notifications.notify_repayment(loan, payment.amount, now=payment.date)
        if closed_now:
            self.notifications.notify_loan_closed(loan, now=payment.date)

        quote = quote_early_repayment(loan, payment.date)
        receipt = PaymentReceipt(payment=payment, loan=loan, closed_now=closed_now, quote=quote)
        receipt.dispatch_results.append(dispatch(self.provider, self._receipt_message(receipt)))
        return receipt

    def approve_payment(
        self,
        loan_id: str,
        payment_id: str,
        approved_by: Optional[Actor] = None,
        now: Optional[datetime] = None
    ) -> Payment:
        """Approve a pending online payment"""
        with self._locked_loan(loan_id) as loan:
            was_closed = loan.is_closed
            payment = approve(loan, payment_id, now)
            closed_now = loan.is_closed and not was_closed

        self.audit_trail.log_event(
            AuditEventType.PAYMENT_APPROVED,
            "loan",
            loan.id,
            {'loan_id': loan.loan_id, 'payment_id': payment_id, 'amount': payment.amount},
            user_id=approved_by.id if approved_by else None
        )
        if closed_now:
            self._log_closure(loan)
            self.notifications.notify_loan_closed(loan, now=payment.approved_at)
        return payment

    def calculate_early_repayment_amount(
        self,
        loan_id: str,
        as_of: Optional[datetime] = None
    ) -> EarlyRepaymentQuote:
        return quote_early_repayment(self.get_loan(loan_id), as_of)

    def initialize_gold_return_status(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        """Idempotent; a loan whose return state is already set is returned unchanged"""
        with self.storage.lock(self.table_name, loan_id):
            loan = self.get_loan(loan_id)
            if not init_gold_return(loan, now):
                return loan
            self._save_loan(loan)

        self.audit_trail.log_event(
            AuditEventType.GOLD_RETURN_INITIALIZED,
            "loan",
            loan.id,
            {'loan_id': loan.loan_id, 'gold_return_status': loan.gold_return_status}
        )
        return loan

    def schedule_gold_return(
        self,
        loan_id: str,
        scheduled_date: datetime,
        notes: str = "",
        scheduled_by: Optional[Actor] = None
    ) -> Loan:
        with self._locked_loan(loan_id) as loan:
            schedule_return(loan, scheduled_date, notes)

        self.audit_trail.log_event(
            AuditEventType.GOLD_RETURN_SCHEDULED,
            "loan",
            loan.id,
            {'loan_id': loan.loan_id, 'scheduled_date': loan.gold_return_scheduled_date},
            user_id=scheduled_by.id if scheduled_by else None
        )
        return loan

    def mark_gold_returned(
        self,
        loan_id: str,
        returned_by: Actor,
        notes: str = "",
        now: Optional[datetime] = None
    ) -> Loan:
        with self._locked_loan(loan_id) as loan:
            mark_returned(loan, returned_by, notes, now)

        self.audit_trail.log_event(
            AuditEventType.GOLD_RETURNED,
            "loan",
            loan.id,
            {'loan_id': loan.loan_id, 'return_date': loan.gold_return_date, 'notes': notes},
            user_id=returned_by.id
        )
        log_action(
            logger, "info", f"Gold for loan {loan.loan_id} returned",
            user_id=returned_by.id, action="mark_gold_returned", resource=loan.id
        )
        return loan

    def mark_gold_return_overdue(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        """Persist the overdue state for a return past the collection window"""
        with self.storage.lock(self.table_name, loan_id):
            loan = self.get_loan(loan_id)
            if loan.gold_return_status not in OPEN_STATUSES:
                return loan
            if effective_status(loan, now, self.config.gold_return_overdue_days) != GoldReturnStatus.OVERDUE:
                return loan
            loan.gold_return_status = GoldReturnStatus.OVERDUE
            self._save_loan(loan, now)

        self.audit_trail.log_event(
            AuditEventType.GOLD_RETURN_OVERDUE,
            "loan",
            loan.id,
            {'loan_id': loan.loan_id, 'closed_date': loan.closed_date}
        )
        logger.warning(f"Gold return for loan {loan.loan_id} is overdue")
        return loan

    def record_gold_return_reminder(
        self,
        loan_id: str,
        reminder_type: ReminderType,
        sent_to: ReminderRecipient = ReminderRecipient.CUSTOMER,
        message: str = "",
        now: Optional[datetime] = None
    ) -> Loan:
        with self.storage.lock(self.table_name, loan_id):
            loan = self.get_loan(loan_id)
            if reminder_sent(loan, reminder_type, sent_to):
                return loan
            record_reminder(loan, reminder_type, sent_to, message, now)
            self._save_loan(loan, now)

        self.audit_trail.log_event(
            AuditEventType.GOLD_RETURN_REMINDER_SENT,
            "loan",
            loan.id,
            {'loan_id': loan.loan_id, 'reminder_type': reminder_type, 'sent_to': sent_to}
        )
        return loan

    def get_gold_return_summary(self, loan_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        return gold_return_summary(self.get_loan(loan_id), now, self.config.gold_return_overdue_days)

    def upgrade_interest_rate(
        self,
        loan_id: str,
        now: Optional[datetime] = None,
        reason: str = "overdue_upgrade"
    ) -> RateUpgradeDetails:
        """Apply the loan's next penalty rate and notify the customer"""
        with self._locked_loan(loan_id) as loan:
            details = upgrade_rate(loan, now, reason)

        self.audit_trail.log_event(
            AuditEventType.INTEREST_RATE_UPGRADED,
            "loan",
            loan.id,
            {
                'loan_id': loan.loan_id,
                'old_rate': details.old_rate,
                'new_rate': details.new_rate,
                'upgrade_level': details.upgrade_level,
                'old_total_payment': details.old_total_payment,
                'new_total_payment': details.new_total_payment,
                'reason': reason,
            }
        )
        details.dispatch_results.append(dispatch(self.provider, upgrade_message(loan, details)))
        return details

    @contextmanager
    def _locked_loan(self, loan_id: str) -> Iterator[Loan]:
        """Load, yield for mutation, then save; nothing is saved if the block raises"""
        with self.storage.lock(self.table_name, loan_id):
            loan = self.get_loan(loan_id)
            yield loan
            self._save_loan(loan)

    def _save_loan(self, loan: Loan, now: Optional[datetime] = None) -> None:
        stored = self.storage.load(self.table_name, loan.id)
        if stored is not None and stored.get('version', 0) != loan.version:
            raise StateConflictError(
                f"Loan {loan.loan_id} was modified concurrently",
                {"loan_id": loan.loan_id, "expected_version": loan.version,
                 "stored_version": stored.get('version')}
            )
        loan.version += 1
        loan.updated_at = as_datetime(now or datetime.now(timezone.utc))
        self.storage.save(self.table_name, loan.id, loan.to_dict())

    def _next_loan_id(self, now: datetime) -> str:
        """CY<yy><mm><seq>, seq counting loans created in the month from 1"""
        month_key = now.strftime("%y%m")
        prefix = f"{self.config.loan_id_prefix}{month_key}"
        sequence = len(self.storage.find(self.loan_ids_table, {'month': month_key})) + 1
        while True:
            candidate = f"{prefix}{sequence:02d}"
            if self.storage.insert_if_absent(self.loan_ids_table, candidate, {
                'id': candidate,
                'month': month_key,
                'sequence': sequence,
            }):
                return candidate
            sequence += 1

    def _log_closure(self, loan: Loan) -> None:
        self.audit_trail.log_event(
            AuditEventType.LOAN_CLOSED,
            "loan",
            loan.id,
            {'loan_id': loan.loan_id, 'closed_date': loan.closed_date, 'total_paid': loan.total_paid}
        )
        self.audit_trail.log_event(
            AuditEventType.GOLD_RETURN_INITIALIZED,
            "loan",
            loan.id,
            {'loan_id': loan.loan_id, 'gold_return_status': loan.gold_return_status}
        )
        log_action(logger, "info", f"Loan {loan.loan_id} closed", action="close_loan", resource=loan.id)

    def _receipt_message(self, receipt: PaymentReceipt) -> OutboundMessage:
        loan = receipt.loan
        payment = receipt.payment
        lines = [
            f"Dear {loan.customer_name},",
            "",
            f"We have received {format_amount(payment.amount)} ({payment.method.value}) "
            f"towards loan {loan.loan_id}.",
            f"Total paid: {format_amount(loan.total_paid)}.",
            f"Amount still owed as of {payment.date.date().isoformat()}: "
            f"{format_amount(receipt.amount_still_owed)}.",
        ]
        if receipt.closed_now:
            lines.append("Your loan is now closed. Your gold items are ready for collection.")
        return OutboundMessage(
            subject=f"Payment Receipt - Loan {loan.loan_id}",
            body="\n".join(lines),
            recipient_name=loan.customer_name,
            recipient_email=loan.customer_email,
            recipient_mobile=loan.customer_mobile,
            category="payment_receipt",
            metadata={'loan_id': loan.loan_id, 'payment_id': payment.id},
        )
