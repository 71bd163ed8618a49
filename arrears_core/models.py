"""
Arrears Domain Model

Dataclass entities for installments, collection alerts, contacts, promises,
payment agreements and collection tiers. Enum values are the integer codes
persisted by the production database and must not be renumbered.

Every versioned entity embeds an AuditInfo and an integer ``version``. The
version is owned by the storage layer: it is only advanced by a successful
compare-and-swap commit.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Convert to Decimal rounded half-up to cents"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _money_or_none(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


class InstallmentStatus(Enum):
    """Status of a credit installment"""
    PENDING = 1
    PAID = 2
    OVERDUE = 3
    PARTIALLY_PAID = 4
    CANCELLED = 5


class RateType(Enum):
    """How the late-fee rate is expressed"""
    DAILY = 1
    MONTHLY = 2


class CalculationBase(Enum):
    """Amount the late-fee rate is applied to"""
    CAPITAL = 1
    CAPITAL_PLUS_INTEREST = 2


class CapType(Enum):
    """Kind of late-fee cap"""
    PERCENTAGE = 1
    FIXED_AMOUNT = 2


class AlertSeverity(Enum):
    """Collection alert severity, ordered by value"""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    def escalated(self) -> "AlertSeverity":
        """One level up, capped at CRITICAL"""
        return AlertSeverity(min(self.value + 1, AlertSeverity.CRITICAL.value))


class AlertStatus(Enum):
    """Collection alert lifecycle"""
    PENDING = 1
    IN_PROGRESS = 2
    RESOLVED = 3
    IGNORED = 4


class ContactType(Enum):
    """Channel of a customer contact attempt"""
    PHONE_CALL = 1
    WHATSAPP = 2
    EMAIL = 3
    VISIT = 4
    SMS = 5
    INTERNAL_NOTE = 6


class ContactOutcome(Enum):
    """Result of a customer contact attempt"""
    SUCCEEDED = 1
    NO_ANSWER = 2
    WRONG_NUMBER = 3
    PROMISE = 4
    REFUSAL = 5
    REQUESTS_AGREEMENT = 6
    MESSAGE_LEFT = 7
    PROMISE_BROKEN = 8
    PAID = 9


class PromiseStatus(Enum):
    """Payment promise lifecycle"""
    ACTIVE = 1
    FULFILLED = 2
    EXPIRED = 3


class AgreementStatus(Enum):
    """Payment agreement lifecycle"""
    DRAFT = 1
    ACTIVE = 2
    FULFILLED = 3
    BROKEN = 4
    CANCELLED = 5


class AgreementInstallmentStatus(Enum):
    """Status of one agreement installment"""
    PENDING = 1
    PAID = 2
    OVERDUE = 3
    PARTIAL = 4


class NotificationChannel(Enum):
    """Customer notification channel"""
    WHATSAPP = 1
    EMAIL = 2
    BOTH = 3


class BlockType(Enum):
    """Scope of a client block"""
    NEW_CREDIT_ONLY = 1
    ALL_OPERATIONS = 2
    CREDIT_SALES_ONLY = 3


class TierActionType(Enum):
    """Actions a collection tier can execute"""
    GENERATE_ALERT = 1
    SEND_NOTIFICATION = 2
    CHANGE_INSTALLMENT_STATUS = 3
    ESCALATE_PRIORITY = 4
    BLOCK_CLIENT = 5
    RECORD_NOTE = 6
    ASSIGN_MANAGER = 7
    MARK_PROMISE_BROKEN = 8


@dataclass
class AuditInfo:
    """Creation and last-modification stamp embedded in every entity"""
    created_at: datetime = field(default_factory=utc_now)
    created_by: str = "SYSTEM"
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def touch(self, user_id: str, when: Optional[datetime] = None) -> None:
        self.updated_at = when or utc_now()
        self.updated_by = user_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
            "updated_at": _iso(self.updated_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AuditInfo":
        if not data:
            return cls()
        return cls(
            created_at=datetime.fromisoformat(data["created_at"]),
            created_by=data.get("created_by", "SYSTEM"),
            updated_at=_parse_datetime(data.get("updated_at")),
            updated_by=data.get("updated_by"),
        )


@dataclass
class Installment:
    """A scheduled credit installment. The engine only ever changes its status."""
    id: str
    credit_id: str
    customer_id: str
    number: int
    due_date: date
    capital: Decimal
    interest: Decimal
    paid_amount: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING
    audit: AuditInfo = field(default_factory=AuditInfo)
    version: int = 0

    @property
    def outstanding_balance(self) -> Decimal:
        return to_money(self.capital + self.interest - self.paid_amount)

    @property
    def is_open(self) -> bool:
        return self.status not in (InstallmentStatus.PAID, InstallmentStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "credit_id": self.credit_id,
            "customer_id": self.customer_id,
            "number": self.number,
            "due_date": self.due_date.isoformat(),
            "capital": str(self.capital),
            "interest": str(self.interest),
            "paid_amount": str(self.paid_amount),
            "status": self.status.value,
            "audit": self.audit.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Installment":
        return cls(
            id=data["id"],
            credit_id=data["credit_id"],
            customer_id=data["customer_id"],
            number=data["number"],
            due_date=date.fromisoformat(data["due_date"]),
            capital=Decimal(data["capital"]),
            interest=Decimal(data["interest"]),
            paid_amount=Decimal(data.get("paid_amount", "0")),
            status=InstallmentStatus(data["status"]),
            audit=AuditInfo.from_dict(data.get("audit")),
            version=data.get("version", 0),
        )


@dataclass
class CollectionAlert:
    """Overdue snapshot of one credit, worked by collection managers"""
    id: str
    credit_id: str
    customer_id: str
    days_late: int
    overdue_amount: Decimal
    severity: AlertSeverity
    alert_date: date
    installment_id: Optional[str] = None
    arrears_amount: Decimal = ZERO
    overdue_installments: int = 1
    status: AlertStatus = AlertStatus.PENDING
    assigned_manager_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    observations: str = ""
    notifications_sent: int = 0
    last_notification_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_reason: Optional[str] = None
    audit: AuditInfo = field(default_factory=AuditInfo)
    version: int = 0

    @property
    def total_amount(self) -> Decimal:
        return to_money(self.overdue_amount + self.arrears_amount)

    @property
    def is_active(self) -> bool:
        return self.status in (AlertStatus.PENDING, AlertStatus.IN_PROGRESS)

    def add_observation(self, text: str, when: Optional[datetime] = None) -> None:
        stamp = (when or utc_now()).strftime("%Y-%m-%d %H:%M")
        line = f"[{stamp}] {text}"
        self.observations = f"{self.observations}\n{line}" if self.observations else line

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "credit_id": self.credit_id,
            "customer_id": self.customer_id,
            "installment_id": self.installment_id,
            "days_late": self.days_late,
            "overdue_amount": str(self.overdue_amount),
            "arrears_amount": str(self.arrears_amount),
            "overdue_installments": self.overdue_installments,
            "severity": self.severity.value,
            "status": self.status.value,
            "alert_date": self.alert_date.isoformat(),
            "assigned_manager_id": self.assigned_manager_id,
            "assigned_at": _iso(self.assigned_at),
            "observations": self.observations,
            "notifications_sent": self.notifications_sent,
            "last_notification_at": _iso(self.last_notification_at),
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_reason": self.resolution_reason,
            "audit": self.audit.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionAlert":
        return cls(
            id=data["id"],
            credit_id=data["credit_id"],
            customer_id=data["customer_id"],
            installment_id=data.get("installment_id"),
            days_late=data["days_late"],
            overdue_amount=Decimal(data["overdue_amount"]),
            arrears_amount=Decimal(data.get("arrears_amount", "0")),
            overdue_installments=data.get("overdue_installments", 1),
            severity=AlertSeverity(data["severity"]),
            status=AlertStatus(data["status"]),
            alert_date=date.fromisoformat(data["alert_date"]),
            assigned_manager_id=data.get("assigned_manager_id"),
            assigned_at=_parse_datetime(data.get("assigned_at")),
            observations=data.get("observations", ""),
            notifications_sent=data.get("notifications_sent", 0),
            last_notification_at=_parse_datetime(data.get("last_notification_at")),
            resolved_at=_parse_datetime(data.get("resolved_at")),
            resolved_by=data.get("resolved_by"),
            resolution_reason=data.get("resolution_reason"),
            audit=AuditInfo.from_dict(data.get("audit")),
            version=data.get("version", 0),
        )


@dataclass
class ContactRecord:
    """One customer contact attempt. Append-only."""
    id: str
    alert_id: str
    credit_id: str
    customer_id: str
    manager_id: str
    contact_type: ContactType
    contact_at: datetime
    outcome: Optional[ContactOutcome] = None
    notes: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    promise_id: Optional[str] = None
    automatic: bool = False
    audit: AuditInfo = field(default_factory=AuditInfo)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "credit_id": self.credit_id,
            "customer_id": self.customer_id,
            "manager_id": self.manager_id,
            "contact_type": self.contact_type.value,
            "contact_at": self.contact_at.isoformat(),
            "outcome": self.outcome.value if self.outcome else None,
            "notes": self.notes,
            "phone": self.phone,
            "email": self.email,
            "promise_id": self.promise_id,
            "automatic": self.automatic,
            "audit": self.audit.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContactRecord":
        return cls(
            id=data["id"],
            alert_id=data["alert_id"],
            credit_id=data["credit_id"],
            customer_id=data["customer_id"],
            manager_id=data["manager_id"],
            contact_type=ContactType(data["contact_type"]),
            contact_at=datetime.fromisoformat(data["contact_at"]),
            outcome=ContactOutcome(data["outcome"]) if data.get("outcome") else None,
            notes=data.get("notes", ""),
            phone=data.get("phone"),
            email=data.get("email"),
            promise_id=data.get("promise_id"),
            automatic=data.get("automatic", False),
            audit=AuditInfo.from_dict(data.get("audit")),
            version=data.get("version", 0),
        )


@dataclass
class PaymentPromise:
    """Customer promise to pay an amount by a date"""
    id: str
    alert_id: str
    credit_id: str
    customer_id: str
    manager_id: str
    promised_date: date
    promised_amount: Decimal
    deadline: date
    status: PromiseStatus = PromiseStatus.ACTIVE
    contact_id: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    fulfilled_at: Optional[datetime] = None
    expired_on: Optional[date] = None
    notes: str = ""
    audit: AuditInfo = field(default_factory=AuditInfo)
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == PromiseStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "credit_id": self.credit_id,
            "customer_id": self.customer_id,
            "manager_id": self.manager_id,
            "promised_date": self.promised_date.isoformat(),
            "promised_amount": str(self.promised_amount),
            "deadline": self.deadline.isoformat(),
            "status": self.status.value,
            "contact_id": self.contact_id,
            "paid_amount": str(self.paid_amount) if self.paid_amount is not None else None,
            "fulfilled_at": _iso(self.fulfilled_at),
            "expired_on": _iso(self.expired_on),
            "notes": self.notes,
            "audit": self.audit.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentPromise":
        return cls(
            id=data["id"],
            alert_id=data["alert_id"],
            credit_id=data["credit_id"],
            customer_id=data["customer_id"],
            manager_id=data["manager_id"],
            promised_date=date.fromisoformat(data["promised_date"]),
            promised_amount=Decimal(data["promised_amount"]),
            deadline=date.fromisoformat(data["deadline"]),
            status=PromiseStatus(data["status"]),
            contact_id=data.get("contact_id"),
            paid_amount=_money_or_none(data.get("paid_amount")),
            fulfilled_at=_parse_datetime(data.get("fulfilled_at")),
            expired_on=_parse_date(data.get("expired_on")),
            notes=data.get("notes", ""),
            audit=AuditInfo.from_dict(data.get("audit")),
            version=data.get("version", 0),
        )


@dataclass
class AgreementInstallment:
    """One scheduled payment of an agreement, independent of credit installments"""
    number: int
    due_date: date
    amount: Decimal
    paid_amount: Decimal = ZERO
    status: AgreementInstallmentStatus = AgreementInstallmentStatus.PENDING
    paid_on: Optional[date] = None

    @property
    def outstanding(self) -> Decimal:
        return to_money(max(ZERO, self.amount - self.paid_amount))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "due_date": self.due_date.isoformat(),
            "amount": str(self.amount),
            "paid_amount": str(self.paid_amount),
            "status": self.status.value,
            "paid_on": _iso(self.paid_on),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgreementInstallment":
        return cls(
            number=data["number"],
            due_date=date.fromisoformat(data["due_date"]),
            amount=Decimal(data["amount"]),
            paid_amount=Decimal(data.get("paid_amount", "0")),
            status=AgreementInstallmentStatus(data["status"]),
            paid_on=_parse_date(data.get("paid_on")),
        )


@dataclass
class PaymentAgreement:
    """Negotiated repayment plan for an overdue credit"""
    id: str
    alert_id: str
    credit_id: str
    customer_id: str
    manager_id: str
    original_debt: Decimal
    original_arrears: Decimal
    condoned_amount: Decimal
    initial_payment: Decimal
    total_amount: Decimal
    installment_count: int
    first_installment_date: date
    status: AgreementStatus = AgreementStatus.DRAFT
    installments: List[AgreementInstallment] = field(default_factory=list)
    initial_payment_received: Decimal = ZERO
    confirmed_at: Optional[datetime] = None
    fulfilled_at: Optional[datetime] = None
    broken_on: Optional[date] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    notes: str = ""
    audit: AuditInfo = field(default_factory=AuditInfo)
    version: int = 0

    @property
    def amount_paid(self) -> Decimal:
        return to_money(self.initial_payment_received + sum(
            (inst.paid_amount for inst in self.installments), ZERO
        ))

    @property
    def balance(self) -> Decimal:
        return to_money(max(ZERO, self.total_amount - self.amount_paid))

    @property
    def is_open(self) -> bool:
        return self.status in (AgreementStatus.DRAFT, AgreementStatus.ACTIVE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "credit_id": self.credit_id,
            "customer_id": self.customer_id,
            "manager_id": self.manager_id,
            "original_debt": str(self.original_debt),
            "original_arrears": str(self.original_arrears),
            "condoned_amount": str(self.condoned_amount),
            "initial_payment": str(self.initial_payment),
            "total_amount": str(self.total_amount),
            "installment_count": self.installment_count,
            "first_installment_date": self.first_installment_date.isoformat(),
            "status": self.status.value,
            "installments": [inst.to_dict() for inst in self.installments],
            "initial_payment_received": str(self.initial_payment_received),
            "confirmed_at": _iso(self.confirmed_at),
            "fulfilled_at": _iso(self.fulfilled_at),
            "broken_on": _iso(self.broken_on),
            "cancelled_at": _iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "notes": self.notes,
            "audit": self.audit.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentAgreement":
        return cls(
            id=data["id"],
            alert_id=data["alert_id"],
            credit_id=data["credit_id"],
            customer_id=data["customer_id"],
            manager_id=data["manager_id"],
            original_debt=Decimal(data["original_debt"]),
            original_arrears=Decimal(data["original_arrears"]),
            condoned_amount=Decimal(data["condoned_amount"]),
            initial_payment=Decimal(data["initial_payment"]),
            total_amount=Decimal(data["total_amount"]),
            installment_count=data["installment_count"],
            first_installment_date=date.fromisoformat(data["first_installment_date"]),
            status=AgreementStatus(data["status"]),
            installments=[AgreementInstallment.from_dict(i) for i in data.get("installments", [])],
            initial_payment_received=Decimal(data.get("initial_payment_received", "0")),
            confirmed_at=_parse_datetime(data.get("confirmed_at")),
            fulfilled_at=_parse_datetime(data.get("fulfilled_at")),
            broken_on=_parse_date(data.get("broken_on")),
            cancelled_at=_parse_datetime(data.get("cancelled_at")),
            cancellation_reason=data.get("cancellation_reason"),
            notes=data.get("notes", ""),
            audit=AuditInfo.from_dict(data.get("audit")),
            version=data.get("version", 0),
        )


@dataclass
class TierAction:
    """An action a tier executes, optionally on one specific day late"""
    action_type: TierActionType
    day_of_execution: Optional[int] = None
    channel: Optional[NotificationChannel] = None
    template: Optional[str] = None
    block_type: Optional[BlockType] = None
    target_status: Optional[InstallmentStatus] = None
    manager_id: Optional[str] = None
    note: Optional[str] = None
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type.value,
            "day_of_execution": self.day_of_execution,
            "channel": self.channel.value if self.channel else None,
            "template": self.template,
            "block_type": self.block_type.value if self.block_type else None,
            "target_status": self.target_status.value if self.target_status else None,
            "manager_id": self.manager_id,
            "note": self.note,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TierAction":
        return cls(
            action_type=TierActionType(data["action_type"]),
            day_of_execution=data.get("day_of_execution"),
            channel=NotificationChannel(data["channel"]) if data.get("channel") else None,
            template=data.get("template"),
            block_type=BlockType(data["block_type"]) if data.get("block_type") else None,
            target_status=InstallmentStatus(data["target_status"]) if data.get("target_status") else None,
            manager_id=data.get("manager_id"),
            note=data.get("note"),
            active=data.get("active", True),
        )


@dataclass
class CollectionTier:
    """A day band ("tramo") and the actions it triggers"""
    id: str
    name: str
    days_from: int
    days_to: Optional[int]
    priority: AlertSeverity
    order: int = 0
    actions: List[TierAction] = field(default_factory=list)
    description: str = ""
    active: bool = True
    audit: AuditInfo = field(default_factory=AuditInfo)
    version: int = 0

    def contains(self, days_late: int) -> bool:
        if days_late < self.days_from:
            return False
        return self.days_to is None or days_late <= self.days_to

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "days_from": self.days_from,
            "days_to": self.days_to,
            "priority": self.priority.value,
            "order": self.order,
            "actions": [action.to_dict() for action in self.actions],
            "description": self.description,
            "active": self.active,
            "audit": self.audit.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionTier":
        return cls(
            id=data["id"],
            name=data["name"],
            days_from=data["days_from"],
            days_to=data.get("days_to"),
            priority=AlertSeverity(data["priority"]),
            order=data.get("order", 0),
            actions=[TierAction.from_dict(a) for a in data.get("actions", [])],
            description=data.get("description", ""),
            active=data.get("active", True),
            audit=AuditInfo.from_dict(data.get("audit")),
            version=data.get("version", 0),
        )


@dataclass
class NotificationLog:
    """Ledger of notifications handed to the sender, used for rate caps"""
    id: str
    customer_id: str
    alert_id: str
    channel: NotificationChannel
    template: str
    sent_at: datetime
    sent_on: date
    succeeded: bool
    installment_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "alert_id": self.alert_id,
            "installment_id": self.installment_id,
            "channel": self.channel.value,
            "template": self.template,
            "sent_at": self.sent_at.isoformat(),
            "sent_on": self.sent_on.isoformat(),
            "succeeded": self.succeeded,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationLog":
        return cls(
            id=data["id"],
            customer_id=data["customer_id"],
            alert_id=data["alert_id"],
            installment_id=data.get("installment_id"),
            channel=NotificationChannel(data["channel"]),
            template=data["template"],
            sent_at=datetime.fromisoformat(data["sent_at"]),
            sent_on=date.fromisoformat(data["sent_on"]),
            succeeded=data["succeeded"],
            error=data.get("error"),
        )


@dataclass
class ClientBlock:
    """Operational block applied to a customer"""
    id: str
    customer_id: str
    block_type: BlockType
    reason: str
    blocked_at: datetime
    alert_id: Optional[str] = None
    active: bool = True
    released_at: Optional[datetime] = None
    audit: AuditInfo = field(default_factory=AuditInfo)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "block_type": self.block_type.value,
            "reason": self.reason,
            "blocked_at": self.blocked_at.isoformat(),
            "alert_id": self.alert_id,
            "active": self.active,
            "released_at": _iso(self.released_at),
            "audit": self.audit.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientBlock":
        return cls(
            id=data["id"],
            customer_id=data["customer_id"],
            block_type=BlockType(data["block_type"]),
            reason=data["reason"],
            blocked_at=datetime.fromisoformat(data["blocked_at"]),
            alert_id=data.get("alert_id"),
            active=data.get("active", True),
            released_at=_parse_datetime(data.get("released_at")),
            audit=AuditInfo.from_dict(data.get("audit")),
            version=data.get("version", 0),
        )
