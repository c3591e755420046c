"""In-memory entity store for testing and local development."""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from marketflow.errors import ConflictError, EntityNotFoundError
from marketflow.types import EntityType, Job, JobStatus, MutationKind, Payment, Review, StateTransition

from .base import CommitResult, Write, build_mutation, duplicate_error, unique_key

logger = logging.getLogger(__name__)


class InMemoryEntityStore:
    """Dict-backed :class:`~marketflow.storage.base.EntityStore`.

    A single lock serializes every commit, so version checks and writes for
    one commit happen with no other writer in between. Records are copied on
    the way in and out; callers never share state with the store.
    """

    def __init__(self):
        self._records: Dict[Tuple[EntityType, int], Any] = {}
        self._unique: Dict[Tuple[EntityType, str], int] = {}
        self._next_ids: Dict[EntityType, int] = {t: 1 for t in EntityType}
        self._transitions: List[StateTransition] = []
        self._lock = threading.Lock()

    def get(self, entity_type: EntityType, entity_id: int) -> Any:
        entity_type = EntityType(entity_type)
        with self._lock:
            record = self._records.get((entity_type, entity_id))
            if record is None:
                raise EntityNotFoundError(entity_type.value, entity_id)
            return copy.deepcopy(record)

    def commit(self, writes: List[Write]) -> CommitResult:
        with self._lock:
            self._check(writes)
            return self._apply(writes)

    def _check(self, writes: List[Write]) -> None:
        """Validate every write before applying any of them."""
        pending_keys = set()
        for write in writes:
            entity_type = write.entity_type
            record = write.record
            key = unique_key(record)

            if write.kind == MutationKind.CREATED:
                if key is not None:
                    if (entity_type, key) in self._unique or (entity_type, key) in pending_keys:
                        raise duplicate_error(record)
                    pending_keys.add((entity_type, key))
                continue

            stored = self._records.get((entity_type, record.id))
            if stored is None:
                raise EntityNotFoundError(entity_type.value, record.id)
            if stored.version != write.expected_version:
                raise ConflictError(entity_type.value, record.id, write.expected_version, stored.version)
            if key is not None and self._unique.get((entity_type, key), record.id) != record.id:
                raise duplicate_error(record)

    def _apply(self, writes: List[Write]) -> CommitResult:
        result = CommitResult()
        for write in writes:
            entity_type = write.entity_type
            stored = copy.deepcopy(write.record)

            if write.kind == MutationKind.CREATED:
                stored.id = self._next_ids[entity_type]
                self._next_ids[entity_type] += 1
                stored.version = 1
            else:
                old = self._records[(entity_type, stored.id)]
                old_key = unique_key(old)
                if old_key is not None:
                    self._unique.pop((entity_type, old_key), None)
                stored.version = write.expected_version + 1

            self._records[(entity_type, stored.id)] = stored
            key = unique_key(stored)
            if key is not None:
                self._unique[(entity_type, key)] = stored.id

            if write.transition is not None:
                transition = copy.deepcopy(write.transition)
                transition.id = len(self._transitions) + 1
                if transition.entity_id is None:
                    transition.entity_id = stored.id
                self._transitions.append(transition)
                result.transitions.append(copy.deepcopy(transition))

            snapshot = copy.deepcopy(stored)
            result.records.append(snapshot)
            result.mutations.append(build_mutation(write, snapshot))
            logger.debug(f"Stored {entity_type.value}/{stored.id} v{stored.version} ({write.kind.value})")
        return result

    # === Finders ===

    def _all(self, entity_type: EntityType) -> List[Any]:
        with self._lock:
            records = [r for (t, _), r in self._records.items() if t == entity_type]
        return [copy.deepcopy(r) for r in sorted(records, key=lambda r: r.id)]

    def find_payment_for_job(self, job_id: int) -> Optional[Payment]:
        for payment in self._all(EntityType.PAYMENT):
            if payment.job_id == job_id:
                return payment
        return None

    def find_review(self, job_id: int, reviewer_id: int) -> Optional[Review]:
        for review in self._all(EntityType.REVIEW):
            if review.job_id == job_id and review.reviewer_id == reviewer_id:
                return review
        return None

    def list_reviews_for_user(self, reviewee_id: int) -> List[Review]:
        return [r for r in self._all(EntityType.REVIEW) if r.reviewee_id == reviewee_id]

    def list_open_jobs(self) -> List[Job]:
        return [
            j for j in self._all(EntityType.JOB)
            if j.status == JobStatus.OPEN and not j.is_deleted
        ]

    def list_transitions(self, entity_type: EntityType, entity_id: int) -> List[StateTransition]:
        entity_type = EntityType(entity_type)
        with self._lock:
            return [
                copy.deepcopy(t)
                for t in self._transitions
                if t.entity_type == entity_type.value and t.entity_id == entity_id
            ]
