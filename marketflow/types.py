"""
Shared record types for marketflow.

All marketplace records are plain dataclasses. They are the contract between
the workflow core and the entity store: the engine builds and mutates them,
the store persists them, and the cache router and notification dispatcher
read them after commit.

Records reference each other by integer id only. Nothing is embedded.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string (``Z`` suffix accepted)."""
    if not s:
        return None
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def conversation_id(user_a: int, user_b: int) -> str:
    """Canonical identity of the conversation between two users.

    The ids are sorted ascending and joined with a dash, so the key does not
    depend on who sent the message: ``conversation_id(5, 2) == "2-5"``.
    """
    low, high = sorted((int(user_a), int(user_b)))
    return f"{low}-{high}"


# === Enums ===


class EntityType(str, Enum):
    """Kinds of records held in the entity store."""

    USER = "user"
    JOB = "job"
    SKILL = "skill"
    PAYMENT = "payment"
    REVIEW = "review"
    MESSAGE = "message"

    @property
    def collection_tag(self) -> str:
        """Cache tag covering every record of this type (``jobs``, ``users``...)."""
        return f"{self.value}s"


class JobStatus(str, Enum):
    """Job lifecycle status."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    """Escrow-style payment status."""

    PENDING = "pending"
    HELD = "held"  # Funds held by the platform
    RELEASED = "released"  # Paid out to the payee
    REFUNDED = "refunded"  # Returned to the payer
    FAILED = "failed"  # Processor error
    DISPUTED = "disputed"


class BudgetType(str, Enum):
    """How a job's budget is expressed."""

    HOURLY = "hourly"
    FIXED = "fixed"
    NEGOTIABLE = "negotiable"


class MutationKind(str, Enum):
    """What a committed write did to a record."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


# === Records ===


@dataclass
class User:
    """A marketplace account."""

    id: Optional[int]
    name: str
    email: str
    is_active: bool = True
    is_admin: bool = False
    email_verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_verified_active(self) -> bool:
        """Active account with a verified email address."""
        return self.is_active and self.email_verified_at is not None


@dataclass
class Job:
    """A job listing posted by ``owner_id``."""

    id: Optional[int]
    owner_id: int
    title: str
    description: str = ""
    category_id: Optional[int] = None
    budget_min: Optional[Decimal] = None
    budget_max: Optional[Decimal] = None
    budget_type: str = BudgetType.FIXED.value
    status: str = JobStatus.OPEN.value
    assigned_to: Optional[int] = None
    deadline: Optional[datetime] = None
    is_urgent: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        if self.budget_type not in {b.value for b in BudgetType}:
            raise ValueError(f"Invalid budget type: {self.budget_type}")
        if self.status not in {s.value for s in JobStatus}:
            raise ValueError(f"Invalid job status: {self.status}")
        for name in ("budget_min", "budget_max"):
            value = getattr(self, name)
            if value is not None:
                value = Decimal(str(value))
                if value < 0:
                    raise ValueError(f"{name} cannot be negative")
                setattr(self, name, value)
        if (
            self.budget_min is not None
            and self.budget_max is not None
            and self.budget_max < self.budget_min
        ):
            raise ValueError("budget_max must be greater than or equal to budget_min")
        if self.deadline is not None and self.deadline.tzinfo is None:
            self.deadline = self.deadline.replace(tzinfo=timezone.utc)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def participants(self) -> Tuple[int, ...]:
        """Owner and, when set, the assigned user."""
        if self.assigned_to is None:
            return (self.owner_id,)
        return (self.owner_id, self.assigned_to)

    def is_overdue(self, now: datetime) -> bool:
        """Open job whose deadline has passed."""
        return (
            self.status == JobStatus.OPEN
            and self.deadline is not None
            and self.deadline < now
        )


@dataclass
class Skill:
    """A skill offering listed by ``owner_id``."""

    id: Optional[int]
    owner_id: int
    title: str
    category_id: Optional[int] = None
    is_active: bool = True
    is_available: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1


@dataclass
class Payment:
    """Escrow-style payment from the job owner to the assigned user."""

    id: Optional[int]
    job_id: int
    payer_id: int
    payee_id: int
    amount: Decimal
    platform_fee: Decimal = Decimal("0.00")
    status: str = PaymentStatus.PENDING.value
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        self.amount = Decimal(str(self.amount))
        self.platform_fee = Decimal(str(self.platform_fee))
        if self.amount <= 0:
            raise ValueError("Payment amount must be positive")
        if self.status not in {s.value for s in PaymentStatus}:
            raise ValueError(f"Invalid payment status: {self.status}")
        if self.payer_id == self.payee_id:
            raise ValueError("Payer and payee must be different users")

    @property
    def net_amount(self) -> Decimal:
        """Amount the payee receives after the platform fee."""
        return self.amount - self.platform_fee


@dataclass
class Review:
    """A rating left by ``reviewer_id`` about ``reviewee_id`` for a job."""

    id: Optional[int]
    job_id: int
    reviewer_id: int
    reviewee_id: int
    rating: int
    comment: Optional[str] = None
    is_public: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1


@dataclass
class Message:
    """A direct message between two users, optionally about a job."""

    id: Optional[int]
    sender_id: int
    recipient_id: int
    content: str
    job_id: Optional[int] = None
    is_read: bool = False
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        if self.sender_id == self.recipient_id:
            raise ValueError("Sender and recipient must be different users")

    @property
    def conversation_id(self) -> str:
        return conversation_id(self.sender_id, self.recipient_id)


@dataclass
class UserBlock:
    """Directed block: ``blocker_id`` no longer wants contact from ``blocked_id``."""

    blocker_id: int
    blocked_id: int
    reason: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class StateTransition:
    """Audit log entry for a job or payment status change."""

    id: Optional[int]
    entity_type: str
    entity_id: int
    from_status: Optional[str]
    to_status: str
    actor_id: Optional[int] = None
    created_at: Optional[datetime] = field(default_factory=utc_now)


ENTITY_CLASSES: Dict[EntityType, Type[Any]] = {
    EntityType.USER: User,
    EntityType.JOB: Job,
    EntityType.SKILL: Skill,
    EntityType.PAYMENT: Payment,
    EntityType.REVIEW: Review,
    EntityType.MESSAGE: Message,
}


def entity_type_of(record: Any) -> EntityType:
    """Resolve the EntityType of a record instance."""
    for entity_type, cls in ENTITY_CLASSES.items():
        if isinstance(record, cls):
            return entity_type
    raise ValueError(f"Not a marketplace record: {type(record).__name__}")


# === Serialization ===


def record_to_dict(record: Any) -> Dict[str, Any]:
    """Convert a record to a JSON-safe dict."""
    data: Dict[str, Any] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, Enum):
            value = value.value
        data[f.name] = value
    return data


_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "deleted_at",
    "deadline",
    "email_verified_at",
    "released_at",
    "refunded_at",
}


def record_from_dict(entity_type: EntityType, data: Dict[str, Any]) -> Any:
    """Rebuild a record from :func:`record_to_dict` output."""
    cls = ENTITY_CLASSES[entity_type]
    names = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        if key not in names:
            continue
        if key in _DATETIME_FIELDS and isinstance(value, str):
            value = parse_datetime(value)
        kwargs[key] = value
    return cls(**kwargs)


def quantize_money(value: Any) -> Decimal:
    """Round a money amount to cents."""
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
