"""
Notification Module

Staff-facing notification records: new loans, repayments, closures, and due
and overdue installments.

Due and overdue notices are generated by a daily job and deduplicated: the
existence check and the insert run under a per-loan lock so parallel workers
cannot both create the same notice.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .audit import AuditTrail, AuditEventType
from .config import LendingConfig
from .exceptions import NotFoundError
from .interest import as_datetime
from .jobs import JobResult
from .lifecycle import overdue_installments
from .models import Loan
from .money import Numeric, format_amount, to_decimal
from .schedule import InstallmentStatus
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("gold_lending.notifications")


class NotificationType(Enum):
    """Types of staff notifications"""
    NEW_LOAN = "new_loan"
    NEW_REPAYMENT = "new_repayment"
    LOAN_CLOSED = "loan_closed"
    PAYMENT_DUE = "payment_due"
    PAYMENT_OVERDUE = "payment_overdue"


def start_of_day(value: datetime) -> datetime:
    return as_datetime(value).replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class Notification(StorageRecord):
    """Notification shown on the staff dashboard"""
    type: NotificationType
    title: str
    message: str
    loan_id: str                    # Loan record id, not the display id
    customer_name: str
    customer_mobile: str
    amount: Decimal
    due_date: Optional[datetime] = None
    is_read: bool = False
    is_active: bool = True
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'type': self.type.value,
            'title': self.title,
            'message': self.message,
            'loan_id': self.loan_id,
            'customer_name': self.customer_name,
            'customer_mobile': self.customer_mobile,
            'amount': str(self.amount),
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'is_read': self.is_read,
            'is_active': self.is_active,
            'read_at': self.read_at.isoformat() if self.read_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            type=NotificationType(data['type']),
            title=data['title'],
            message=data['message'],
            loan_id=data['loan_id'],
            customer_name=data['customer_name'],
            customer_mobile=data['customer_mobile'],
            amount=Decimal(data['amount']),
            due_date=datetime.fromisoformat(data['due_date']) if data.get('due_date') else None,
            is_read=data.get('is_read', False),
            is_active=data.get('is_active', True),
            read_at=datetime.fromisoformat(data['read_at']) if data.get('read_at') else None,
        )


class NotificationService:
    """
    Creates, deduplicates and queries staff notifications
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.overdue_window = timedelta(
            hours=config.overdue_notice_window_hours if config else 24
        )
        self.table_name = "notifications"

    def create_notification(
        self,
        notification_type: NotificationType,
        loan: Loan,
        title: str,
        message: str,
        amount: Numeric,
        due_date: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> Notification:
        now = now or datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            type=notification_type,
            title=title,
            message=message,
            loan_id=loan.id,
            customer_name=loan.customer_name,
            customer_mobile=loan.customer_mobile,
            amount=to_decimal(amount),
            due_date=due_date,
        )
        self._save_notification(notification)

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.NOTIFICATION_CREATED,
                "notification",
                notification.id,
                {'type': notification_type.value, 'loan_id': loan.loan_id, 'amount': notification.amount}
            )
        logger.debug(f"Created {notification_type.value} notification for loan {loan.loan_id}")
        return notification

    def notify_new_loan(self, loan: Loan) -> Notification:
        return self.create_notification(
            NotificationType.NEW_LOAN, loan,
            "New Loan Approved",
            f"New loan of {format_amount(loan.amount)} has been approved for {loan.customer_name}",
            loan.amount,
            now=loan.created_at
        )

    def notify_repayment(self, loan: Loan, amount: Numeric, now: Optional[datetime] = None) -> Notification:
        return self.create_notification(
            NotificationType.NEW_REPAYMENT, loan,
            "Payment Received",
            f"Payment of {format_amount(amount)} received from {loan.customer_name}",
            amount,
            now=now
        )

    def notify_loan_closed(self, loan: Loan, now: Optional[datetime] = None) -> Notification:
        return self.create_notification(
            NotificationType.LOAN_CLOSED, loan,
            "Loan Closed",
            f"Loan of {loan.customer_name} has been fully paid and closed",
            loan.total_payment,
            now=now
        )

    def create_payment_due_notification(
        self,
        loan: Loan,
        amount: Numeric,
        now: Optional[datetime] = None
    ) -> Optional[Notification]:
        """
        Create today's payment-due notice for a loan unless one already exists

        Returns:
            The new notification, or None if an active one exists for the day
        """
        now = now or datetime.now(timezone.utc)
        today = start_of_day(now)
        with self.storage.lock(self.table_name, loan.id):
            for existing in self._find(loan.id, NotificationType.PAYMENT_DUE):
                if existing.due_date and start_of_day(existing.due_date) == today:
                    logger.debug(f"Skipping duplicate payment_due notice for loan {loan.loan_id}")
                    return None
            return self.create_notification(
                NotificationType.PAYMENT_DUE, loan,
                "Payment Due Today",
                f"Payment of {format_amount(amount)} is due today for {loan.customer_name}",
                amount,
                due_date=today,
                now=now
            )

    def create_overdue_notification(
        self,
        loan: Loan,
        amount: Numeric,
        days_overdue: int,
        now: Optional[datetime] = None
    ) -> Optional[Notification]:
        """
        Create an overdue notice unless an active one with the same amount was
        created for the loan within the overdue window
        """
        now = now or datetime.now(timezone.utc)
        amount = to_decimal(amount)
        window_start = now - self.overdue_window
        with self.storage.lock(self.table_name, loan.id):
            for existing in self._find(loan.id, NotificationType.PAYMENT_OVERDUE):
                if existing.amount == amount and existing.created_at >= window_start:
                    logger.debug(f"Skipping duplicate payment_overdue notice for loan {loan.loan_id}")
                    return None
            return self.create_notification(
                NotificationType.PAYMENT_OVERDUE, loan,
                "Payment Overdue",
                f"Payment of {format_amount(amount)} is {days_overdue} days overdue for {loan.customer_name}",
                amount,
                now=now
            )

    def generate_due_notifications(
        self,
        loans: Iterable[Loan],
        now: Optional[datetime] = None
    ) -> JobResult:
        """Notices for unpaid installments falling due today on active loans"""
        now = now or datetime.now(timezone.utc)
        today = start_of_day(now).date()
        result = JobResult()
        created = 0
        for loan in loans:
            if loan.is_closed:
                continue
            due_today = [
                i for i in loan.installments
                if i.status != InstallmentStatus.PAID and as_datetime(i.due_date).date() == today
            ]
            if not due_today:
                continue
            try:
                notification = self.create_payment_due_notification(loan, due_today[0].amount, now)
            except Exception as e:
                logger.error(f"Failed to create due notice for loan {loan.loan_id}: {e}")
                result.record(False)
                continue
            result.record(True)
            if notification:
                created += 1
        result.details['created'] = created
        result.details['skipped'] = result.records_successful - created
        return result

    def generate_overdue_notifications(
        self,
        loans: Iterable[Loan],
        now: Optional[datetime] = None
    ) -> JobResult:
        """Notices for each installment still unpaid after its due day"""
        now = now or datetime.now(timezone.utc)
        today = start_of_day(now)
        result = JobResult()
        created = 0
        for loan in loans:
            if loan.is_closed:
                continue
            for installment in overdue_installments(loan, today):
                days_overdue = (today - start_of_day(installment.due_date)).days
                try:
                    notification = self.create_overdue_notification(
                        loan, installment.amount, days_overdue, now
                    )
                except Exception as e:
                    logger.error(f"Failed to create overdue notice for loan {loan.loan_id}: {e}")
                    result.record(False)
                    continue
                result.record(True)
                if notification:
                    created += 1
        result.details['created'] = created
        result.details['skipped'] = result.records_successful - created
        return result

    def generate_all(self, loans: Iterable[Loan], now: Optional[datetime] = None) -> JobResult:
        """The daily admin notifications job"""
        loans = list(loans)
        result = JobResult()
        result.merge(self.generate_due_notifications(loans, now), key="payment_due")
        result.merge(self.generate_overdue_notifications(loans, now), key="payment_overdue")
        logger.info(
            f"Notification generation processed {result.records_processed} records, "
            f"{result.records_failed} failed"
        )
        return result

    def get_notification(self, notification_id: str) -> Notification:
        data = self.storage.load(self.table_name, notification_id)
        if data is None:
            raise NotFoundError("notification", notification_id)
        return Notification.from_dict(data)

    def get_notifications(
        self,
        unread_only: bool = False,
        notification_type: Optional[NotificationType] = None,
        limit: Optional[int] = None
    ) -> List[Notification]:
        """Active notifications, newest first"""
        filters: Dict[str, Any] = {'is_active': True}
        if unread_only:
            filters['is_read'] = False
        if notification_type:
            filters['type'] = notification_type.value
        notifications = [
            Notification.from_dict(data) for data in self.storage.find(self.table_name, filters)
        ]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit] if limit else notifications

    def mark_as_read(self, notification_id: str, now: Optional[datetime] = None) -> Notification:
        with self.storage.lock(self.table_name, notification_id):
            notification = self.get_notification(notification_id)
            if not notification.is_read:
                notification.is_read = True
                notification.read_at = now or datetime.now(timezone.utc)
                notification.updated_at = notification.read_at
                self._save_notification(notification)
            return notification

    def mark_all_as_read(self, now: Optional[datetime] = None) -> int:
        """Returns the number of notifications marked"""
        unread = self.get_notifications(unread_only=True)
        for notification in unread:
            self.mark_as_read(notification.id, now)
        return len(unread)

    def deactivate(self, notification_id: str) -> Notification:
        with self.storage.lock(self.table_name, notification_id):
            notification = self.get_notification(notification_id)
            notification.is_active = False
            notification.updated_at = datetime.now(timezone.utc)
            self._save_notification(notification)
            return notification

    def get_unread_count(self) -> int:
        return len(self.storage.find(self.table_name, {'is_read': False, 'is_active': True}))

    def get_todays_due_payments(self, now: Optional[datetime] = None) -> List[Notification]:
        today = start_of_day(now or datetime.now(timezone.utc))
        due = [
            n for n in self.get_notifications(notification_type=NotificationType.PAYMENT_DUE)
            if n.due_date and start_of_day(n.due_date) == today
        ]
        due.sort(key=lambda n: n.due_date)
        return due

    def _find(self, loan_id: str, notification_type: NotificationType) -> List[Notification]:
        records = self.storage.find(self.table_name, {
            'loan_id': loan_id,
            'type': notification_type.value,
            'is_active': True,
        })
        return [Notification.from_dict(data) for data in records]

    def _save_notification(self, notification: Notification) -> None:
        self.storage.save(self.table_name, notification.id, notification.to_dict())
