"""
Block relationships between users.

Blocks are directed: ``block(a, b)`` means *a* no longer wants contact from
*b*. Message policies treat a block in either direction as closing the
conversation; notification delivery only looks at whether the recipient
blocked the sender.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from marketflow.types import UserBlock

logger = logging.getLogger(__name__)


@runtime_checkable
class BlockRelationshipService(Protocol):
    """Protocol for block relationship lookups."""

    def is_blocked(self, blocker_id: int, blocked_id: int) -> bool:
        """Whether ``blocker_id`` has blocked ``blocked_id``."""
        ...

    def is_mutually_blocked(self, user_a: int, user_b: int) -> bool:
        """Whether either user has blocked the other."""
        ...


class InMemoryBlockService:
    """In-memory block relationships for testing and local development."""

    def __init__(self):
        self._blocks: Dict[Tuple[int, int], UserBlock] = {}
        self._lock = threading.Lock()

    def block(self, blocker_id: int, blocked_id: int, reason: Optional[str] = None) -> UserBlock:
        """Block a user. Re-blocking only updates the reason."""
        if blocker_id == blocked_id:
            raise ValueError("Users cannot block themselves")
        with self._lock:
            key = (blocker_id, blocked_id)
            existing = self._blocks.get(key)
            if existing is not None:
                existing.reason = reason
                return existing
            record = UserBlock(
                blocker_id=blocker_id,
                blocked_id=blocked_id,
                reason=reason,
                created_at=datetime.now(timezone.utc),
            )
            self._blocks[key] = record
        logger.info(f"User {blocker_id} blocked user {blocked_id}")
        return record

    def unblock(self, blocker_id: int, blocked_id: int) -> bool:
        """Remove a block. Returns False if there was none."""
        with self._lock:
            removed = self._blocks.pop((blocker_id, blocked_id), None)
        if removed is not None:
            logger.info(f"User {blocker_id} unblocked user {blocked_id}")
        return removed is not None

    def is_blocked(self, blocker_id: int, blocked_id: int) -> bool:
        with self._lock:
            return (blocker_id, blocked_id) in self._blocks

    def is_mutually_blocked(self, user_a: int, user_b: int) -> bool:
        return self.is_blocked(user_a, user_b) or self.is_blocked(user_b, user_a)

    def blocked_by(self, blocker_id: int) -> List[UserBlock]:
        """All blocks created by ``blocker_id``."""
        with self._lock:
            return [b for (blocker, _), b in self._blocks.items() if blocker == blocker_id]
