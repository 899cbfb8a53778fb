"""
Loan Aggregate Module

Entities owned by a gold loan: the loan itself, its installments and
payments, the pledged gold items and the collateral return state. The loan
is the unit of persistence; installments and payments are indexed
collections inside it, addressed by number and id.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

from .money import ZERO
from .schedule import Installment
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"


class PaymentMethod(Enum):
    """How a repayment was made"""
    HANDCASH = "handcash"
    ONLINE = "online"


class PaymentStatus(Enum):
    """Payment approval states"""
    PENDING = "pending"     # Online payment awaiting approval
    SUCCESS = "success"


class GoldReturnStatus(Enum):
    """Collateral return states"""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    OVERDUE = "overdue"
    RETURNED = "returned"


class ReminderType(Enum):
    """Gold return reminder tiers, in escalation order"""
    INITIAL = "initial"
    FOLLOWUP = "followup"
    URGENT = "urgent"
    FINAL = "final"


class ReminderRecipient(Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    BOTH = "both"


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Actor:
    """Who performed an action"""
    id: str
    name: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {'id': self.id, 'name': self.name}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Actor']:
        if not data:
            return None
        return cls(id=data['id'], name=data.get('name', ''))


SYSTEM_ACTOR = Actor(id="system", name="System (No Gold Items)")


@dataclass
class GoldItem:
    """A pledged gold item; weights in grams"""
    description: str
    gross_weight: Decimal
    net_weight: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'description': self.description,
            'gross_weight': str(self.gross_weight),
            'net_weight': str(self.net_weight),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GoldItem':
        return cls(
            description=data['description'],
            gross_weight=Decimal(data['gross_weight']),
            net_weight=Decimal(data['net_weight']),
        )


@dataclass
class Payment:
    """A repayment recorded against one installment"""
    id: str
    amount: Decimal
    method: PaymentMethod
    installment_number: int
    remaining_balance: Decimal
    date: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    bank_name: Optional[str] = None
    entered_by: Optional[Actor] = None
    approved_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.status == PaymentStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': str(self.amount),
            'method': self.method.value,
            'installment_number': self.installment_number,
            'remaining_balance': str(self.remaining_balance),
            'date': self.date.isoformat(),
            'status': self.status.value,
            'transaction_id': self.transaction_id,
            'bank_name': self.bank_name,
            'entered_by': self.entered_by.to_dict() if self.entered_by else None,
            'approved_at': _iso(self.approved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            amount=Decimal(data['amount']),
            method=PaymentMethod(data['method']),
            installment_number=data['installment_number'],
            remaining_balance=Decimal(data['remaining_balance']),
            date=datetime.fromisoformat(data['date']),
            status=PaymentStatus(data['status']),
            transaction_id=data.get('transaction_id'),
            bank_name=data.get('bank_name'),
            entered_by=Actor.from_dict(data.get('entered_by')),
            approved_at=_dt(data.get('approved_at')),
        )


@dataclass
class GoldReturnReminder:
    """A reminder sent about uncollected collateral"""
    type: ReminderType
    sent_to: ReminderRecipient
    sent_at: datetime
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'sent_to': self.sent_to.value,
            'sent_at': self.sent_at.isoformat(),
            'message': self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GoldReturnReminder':
        return cls(
            type=ReminderType(data['type']),
            sent_to=ReminderRecipient(data['sent_to']),
            sent_at=datetime.fromisoformat(data['sent_at']),
            message=data.get('message', ''),
        )


@dataclass
class RateUpgrade:
    """One step of the progressive overdue rate upgrade"""
    from_rate: Decimal
    to_rate: Decimal
    upgrade_date: datetime
    reason: str
    new_term_end_date: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from_rate': str(self.from_rate),
            'to_rate': str(self.to_rate),
            'upgrade_date': self.upgrade_date.isoformat(),
            'reason': self.reason,
            'new_term_end_date': self.new_term_end_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RateUpgrade':
        return cls(
            from_rate=Decimal(data['from_rate']),
            to_rate=Decimal(data['to_rate']),
            upgrade_date=datetime.fromisoformat(data['upgrade_date']),
            reason=data['reason'],
            new_term_end_date=datetime.fromisoformat(data['new_term_end_date']),
        )


@dataclass
class Loan(StorageRecord):
    """Gold-backed loan aggregate"""
    loan_id: str                        # Human-readable, CY<yy><mm><seq>
    customer_id: str
    customer_name: str
    customer_email: str
    customer_mobile: str
    amount: Decimal                     # Principal
    purpose: str
    term: int                           # Months
    interest_rate: Decimal              # Current annual rate, percent
    original_interest_rate: Decimal     # Rate at origination, never upgraded
    daily_interest_rate: Decimal
    total_days: int
    daily_interest_amount: Decimal
    total_payment: Decimal              # Principal at creation, not interest-inclusive
    status: LoanStatus = LoanStatus.ACTIVE
    total_paid: Decimal = ZERO
    remaining_balance: Decimal = ZERO
    closed_date: Optional[datetime] = None
    installments: List[Installment] = field(default_factory=list)
    payments: List[Payment] = field(default_factory=list)
    gold_items: List[GoldItem] = field(default_factory=list)
    created_by: Optional[Actor] = None

    # Collateral return, only meaningful once closed
    gold_return_status: Optional[GoldReturnStatus] = None
    gold_return_scheduled_date: Optional[datetime] = None
    gold_return_date: Optional[datetime] = None
    gold_returned_by: Optional[Actor] = None
    gold_return_notes: str = ""
    gold_return_reminders: List[GoldReturnReminder] = field(default_factory=list)

    # Interest rate upgrades
    interest_rate_upgraded: bool = False
    interest_rate_upgrade_date: Optional[datetime] = None
    current_upgrade_level: int = 0
    upgrade_history: List[RateUpgrade] = field(default_factory=list)

    # Optimistic concurrency counter, bumped on every save
    version: int = 0

    @property
    def is_closed(self) -> bool:
        return self.status == LoanStatus.CLOSED

    @property
    def total_gold_weight(self) -> Decimal:
        return sum((item.net_weight or ZERO for item in self.gold_items), ZERO)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        for payment in self.payments:
            if payment.id == payment_id:
                return payment
        return None

    def get_installment(self, number: int) -> Optional[Installment]:
        for installment in self.installments:
            if installment.number == number:
                return installment
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'customer_id': self.customer_id,
            'customer_name': self.customer_name,
            'customer_email': self.customer_email,
            'customer_mobile': self.customer_mobile,
            'amount': str(self.amount),
            'purpose': self.purpose,
            'term': self.term,
            'interest_rate': str(self.interest_rate),
            'original_interest_rate': str(self.original_interest_rate),
            'daily_interest_rate': str(self.daily_interest_rate),
            'total_days': self.total_days,
            'daily_interest_amount': str(self.daily_interest_amount),
            'total_payment': str(self.total_payment),
            'status': self.status.value,
            'total_paid': str(self.total_paid),
            'remaining_balance': str(self.remaining_balance),
            'closed_date': _iso(self.closed_date),
            'installments': [i.to_dict() for i in self.installments],
            'payments': [p.to_dict() for p in self.payments],
            'gold_items': [g.to_dict() for g in self.gold_items],
            'created_by': self.created_by.to_dict() if self.created_by else None,
            'gold_return_status': self.gold_return_status.value if self.gold_return_status else None,
            'gold_return_scheduled_date': _iso(self.gold_return_scheduled_date),
            'gold_return_date': _iso(self.gold_return_date),
            'gold_returned_by': self.gold_returned_by.to_dict() if self.gold_returned_by else None,
            'gold_return_notes': self.gold_return_notes,
            'gold_return_reminders': [r.to_dict() for r in self.gold_return_reminders],
            'interest_rate_upgraded': self.interest_rate_upgraded,
            'interest_rate_upgrade_date': _iso(self.interest_rate_upgrade_date),
            'current_upgrade_level': self.current_upgrade_level,
            'upgrade_history': [u.to_dict() for u in self.upgrade_history],
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        gold_return_status = data.get('gold_return_status')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            customer_name=data['customer_name'],
            customer_email=data['customer_email'],
            customer_mobile=data['customer_mobile'],
            amount=Decimal(data['amount']),
            purpose=data['purpose'],
            term=data['term'],
            interest_rate=Decimal(data['interest_rate']),
            original_interest_rate=Decimal(data['original_interest_rate']),
            daily_interest_rate=Decimal(data['daily_interest_rate']),
            total_days=data['total_days'],
            daily_interest_amount=Decimal(data['daily_interest_amount']),
            total_payment=Decimal(data['total_payment']),
            status=LoanStatus(data['status']),
            total_paid=Decimal(data['total_paid']),
            remaining_balance=Decimal(data['remaining_balance']),
            closed_date=_dt(data.get('closed_date')),
            installments=[Installment.from_dict(i) for i in data.get('installments', [])],
            payments=[Payment.from_dict(p) for p in data.get('payments', [])],
            gold_items=[GoldItem.from_dict(g) for g in data.get('gold_items', [])],
            created_by=Actor.from_dict(data.get('created_by')),
            gold_return_status=GoldReturnStatus(gold_return_status) if gold_return_status else None,
            gold_return_scheduled_date=_dt(data.get('gold_return_scheduled_date')),
            gold_return_date=_dt(data.get('gold_return_date')),
            gold_returned_by=Actor.from_dict(data.get('gold_returned_by')),
            gold_return_notes=data.get('gold_return_notes', ''),
            gold_return_reminders=[
                GoldReturnReminder.from_dict(r) for r in data.get('gold_return_reminders', [])
            ],
            interest_rate_upgraded=data.get('interest_rate_upgraded', False),
            interest_rate_upgrade_date=_dt(data.get('interest_rate_upgrade_date')),
            current_upgrade_level=data.get('current_upgrade_level', 0),
            upgrade_history=[RateUpgrade.from_dict(u) for u in data.get('upgrade_history', [])],
            version=data.get('version', 0),
        )
