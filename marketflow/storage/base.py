"""Entity store interface.

The workflow engine never writes a record directly. It builds a list of
:class:`Write` objects and hands them to :meth:`EntityStore.commit`, which
applies them atomically: either every write lands or none does.

Updates are compare-and-set on the record's ``version``. A write whose
``expected_version`` no longer matches the stored version raises
:class:`~marketflow.errors.ConflictError` and the whole commit is rejected.
This is what makes "check the transition, then write it" atomic: two
concurrent assigns both read version N, both pass the guard, and only the
first commit to land finds version N still stored.
"""

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, runtime_checkable

from marketflow.cache import Mutation
from marketflow.errors import DuplicatePaymentError, DuplicateReviewError
from marketflow.types import (
    EntityType,
    Job,
    MutationKind,
    Payment,
    Review,
    StateTransition,
    entity_type_of,
)


@dataclass
class Write:
    """One record write inside a commit.

    Attributes:
        record: Record to store. For creates, ``id`` is None and assigned by
            the store.
        kind: Created, updated or deleted (soft delete: the record is kept
            with ``deleted_at`` set).
        expected_version: Version the caller loaded. Required for updates
            and deletes; ignored for creates.
        changed_fields: Fields the write changes, forwarded to cache routing.
        previous: Prior values of ``changed_fields``.
        transition: Audit entry to append in the same commit. Its
            ``entity_id`` is filled in for created records.
    """

    record: Any
    kind: MutationKind = MutationKind.UPDATED
    expected_version: Optional[int] = None
    changed_fields: FrozenSet[str] = frozenset()
    previous: Dict[str, Any] = field(default_factory=dict)
    transition: Optional[StateTransition] = None

    def __post_init__(self):
        if self.kind != MutationKind.CREATED and self.expected_version is None:
            raise ValueError(f"{self.kind.value} writes require an expected_version")

    @property
    def entity_type(self) -> EntityType:
        return entity_type_of(self.record)


@dataclass
class CommitResult:
    """What a successful commit stored."""

    records: List[Any] = field(default_factory=list)
    mutations: List[Mutation] = field(default_factory=list)
    transitions: List[StateTransition] = field(default_factory=list)

    @property
    def record(self) -> Any:
        """The first stored record (most commits write exactly one)."""
        return self.records[0]


def unique_key(record: Any) -> Optional[str]:
    """Per-type uniqueness key, or None if the type has none.

    - one payment per job
    - one review per (job, reviewer)
    - one account per email address
    """
    entity_type = entity_type_of(record)
    if entity_type == EntityType.PAYMENT:
        return str(record.job_id)
    if entity_type == EntityType.REVIEW:
        return f"{record.job_id}:{record.reviewer_id}"
    if entity_type == EntityType.USER:
        return record.email.strip().lower()
    return None


def duplicate_error(record: Any) -> Exception:
    """Exception for a uniqueness violation by ``record``."""
    if isinstance(record, Payment):
        return DuplicatePaymentError(record.job_id)
    if isinstance(record, Review):
        return DuplicateReviewError(record.job_id, record.reviewer_id)
    return ValueError(f"Email already registered: {record.email}")


def build_mutation(write: Write, stored: Any) -> Mutation:
    return Mutation(
        entity=stored,
        kind=write.kind,
        changed_fields=frozenset(write.changed_fields),
        previous=dict(write.previous),
    )


@runtime_checkable
class EntityStore(Protocol):
    """Protocol for marketplace record storage.

    Implementations: :class:`~marketflow.storage.memory.InMemoryEntityStore`
    and :class:`~marketflow.storage.sqlite.SQLiteEntityStore`.
    """

    @abstractmethod
    def get(self, entity_type: EntityType, entity_id: int) -> Any:
        """Load a record, soft-deleted ones included.

        Raises:
            EntityNotFoundError: If no such record exists.
        """
        ...

    @abstractmethod
    def commit(self, writes: List[Write]) -> CommitResult:
        """Apply ``writes`` atomically.

        Raises:
            ConflictError: A write's expected_version is stale.
            DuplicatePaymentError: A second payment for a job.
            DuplicateReviewError: A second review by the same reviewer.
        """
        ...

    # === Finders ===

    @abstractmethod
    def find_payment_for_job(self, job_id: int) -> Optional[Payment]:
        ...

    @abstractmethod
    def find_review(self, job_id: int, reviewer_id: int) -> Optional[Review]:
        ...

    @abstractmethod
    def list_reviews_for_user(self, reviewee_id: int) -> List[Review]:
        """Reviews received by a user, oldest first."""
        ...

    @abstractmethod
    def list_open_jobs(self) -> List[Job]:
        """Open jobs that are not soft-deleted."""
        ...

    @abstractmethod
    def list_transitions(self, entity_type: EntityType, entity_id: int) -> List[StateTransition]:
        """Audit trail for one job or payment, oldest first."""
        ...
