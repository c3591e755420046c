"""Cache invalidation routing.

After a mutation commits, :class:`CacheInvalidationRouter` works out which
cache tags are now stale: the global ``search`` tag, the record's own tag,
and the tags of every related record whose cached views embed it (cascade
invalidation). Routing dispatches on :class:`~marketflow.types.EntityType`.

The router never runs before commit: invalidating on a write that is later
rolled back would only evict fresh data, but a reader could re-cache the
uncommitted view in between.

Tag scheme::

    search                    all search results
    {type}:{id}               one record (user:7, job:12, category:3 ...)
    {type}s                   any listing of that type (jobs, skills ...)
    ratings, conversations    aggregate views
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Set, Tuple

from marketflow.types import EntityType, MutationKind, entity_type_of

logger = logging.getLogger(__name__)

SEARCH_TAG = "search"
RATINGS_TAG = "ratings"
CONVERSATIONS_TAG = "conversations"


def entity_tag(entity_type: EntityType, entity_id: int) -> str:
    return f"{entity_type.value}:{entity_id}"


def user_tag(user_id: int) -> str:
    return entity_tag(EntityType.USER, user_id)


def job_tag(job_id: int) -> str:
    return entity_tag(EntityType.JOB, job_id)


def category_tag(category_id: int) -> str:
    return f"category:{category_id}"


@dataclass
class Mutation:
    """A committed change to one record.

    Attributes:
        entity: The record as committed (for deletes, as it was last stored).
        kind: Created, updated or deleted.
        changed_fields: Names of the fields the write changed.
        previous: Prior values of the changed fields, when known.
    """

    entity: Any
    kind: MutationKind
    changed_fields: FrozenSet[str] = frozenset()
    previous: Dict[str, Any] = field(default_factory=dict)

    @property
    def entity_type(self) -> EntityType:
        return entity_type_of(self.entity)

    @property
    def entity_id(self) -> int:
        return self.entity.id


class CacheBackend(Protocol):
    """Protocol for the tag-aware cache the router feeds."""

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        ...


class CacheInvalidationRouter:
    """Maps committed mutations to the ordered set of tags to invalidate."""

    def __init__(self):
        self._routes: Dict[EntityType, Callable[[Mutation], List[str]]] = {
            EntityType.USER: self._user_tags,
            EntityType.JOB: self._job_tags,
            EntityType.SKILL: self._skill_tags,
            EntityType.REVIEW: self._review_tags,
            EntityType.PAYMENT: self._payment_tags,
            EntityType.MESSAGE: self._message_tags,
        }

    def route(self, mutation: Mutation) -> Tuple[str, ...]:
        """Return de-duplicated tags in invalidation order."""
        entity_type = mutation.entity_type
        tags = [SEARCH_TAG, entity_tag(entity_type, mutation.entity_id)]
        tags.extend(self._routes[entity_type](mutation))
        if mutation.kind != MutationKind.CREATED:
            tags.append(entity_type.collection_tag)
        return tuple(dict.fromkeys(tags))

    def route_all(self, mutations: Iterable[Mutation]) -> Tuple[str, ...]:
        tags: List[str] = []
        for mutation in mutations:
            tags.extend(self.route(mutation))
        return tuple(dict.fromkeys(tags))

    # === Per-type routes ===

    def _user_tags(self, mutation: Mutation) -> List[str]:
        # Coarse: a user's name or rating shows up in every job/skill listing
        return [EntityType.JOB.collection_tag, EntityType.SKILL.collection_tag]

    def _job_tags(self, mutation: Mutation) -> List[str]:
        job = mutation.entity
        tags = [user_tag(job.owner_id)]
        if job.assigned_to is not None:
            tags.append(user_tag(job.assigned_to))
        if "assigned_to" in mutation.changed_fields:
            previous = mutation.previous.get("assigned_to")
            if previous is not None:
                tags.append(user_tag(previous))
        if job.category_id is not None:
            tags.append(category_tag(job.category_id))
        return tags

    def _skill_tags(self, mutation: Mutation) -> List[str]:
        skill = mutation.entity
        tags = [user_tag(skill.owner_id)]
        if skill.category_id is not None:
            tags.append(category_tag(skill.category_id))
        return tags

    def _review_tags(self, mutation: Mutation) -> List[str]:
        review = mutation.entity
        return [
            user_tag(review.reviewer_id),
            user_tag(review.reviewee_id),
            job_tag(review.job_id),
            RATINGS_TAG,
        ]

    def _payment_tags(self, mutation: Mutation) -> List[str]:
        payment = mutation.entity
        return [user_tag(payment.payer_id), user_tag(payment.payee_id), job_tag(payment.job_id)]

    def _message_tags(self, mutation: Mutation) -> List[str]:
        message = mutation.entity
        return [
            user_tag(message.sender_id),
            user_tag(message.recipient_id),
            CONVERSATIONS_TAG,
            f"conversation:{message.conversation_id}",
        ]


def invalidate_after_commit(backend: Optional[CacheBackend], tags: Iterable[str]) -> bool:
    """Invalidate ``tags`` on ``backend``, logging instead of raising.

    Returns False if the backend failed. The triggering write stays committed
    either way.
    """
    tags = list(tags)
    if backend is None or not tags:
        return True
    try:
        backend.invalidate_tags(tags)
    except Exception as e:
        logger.warning(f"Cache invalidation failed for tags {tags}: {e}")
        return False
    logger.debug(f"Invalidated cache tags: {', '.join(tags)}")
    return True


class InMemoryTagCache:
    """Tag-aware in-process cache for testing and local development.

    Every entry is stored under one or more tags; invalidating any of its tags
    evicts it.
    """

    def __init__(self):
        self._entries: Dict[str, Any] = {}
        self._tags: Dict[str, Set[str]] = {}  # tag -> keys
        self._generations: Dict[str, int] = {}  # tag -> invalidation count
        self._lock = threading.Lock()
        self.invalidations: List[Tuple[str, ...]] = []

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._entries.get(key, default)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def put(self, key: str, value: Any, tags: Iterable[str] = ()) -> None:
        with self._lock:
            self._entries[key] = value
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)

    def remember(self, key: str, tags: Iterable[str], factory: Callable[[], Any]) -> Any:
        """Return the cached value for ``key``, computing and storing it on a miss.

        The factory runs without the lock held. If any of ``tags`` is
        invalidated while it runs, the value is returned but not stored.
        """
        tags = tuple(tags)
        with self._lock:
            if key in self._entries:
                return self._entries[key]
            seen = [self._generations.get(tag, 0) for tag in tags]
        value = factory()
        with self._lock:
            if [self._generations.get(tag, 0) for tag in tags] != seen:
                logger.debug(f"Not caching {key}: invalidated while computing")
                return value
            self._entries[key] = value
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)
        return value

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        tags = tuple(tags)
        with self._lock:
            for tag in tags:
                self._generations[tag] = self._generations.get(tag, 0) + 1
                for key in self._tags.pop(tag, set()):
                    self._entries.pop(key, None)
            self.invalidations.append(tags)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tags.clear()
