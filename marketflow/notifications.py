"""Domain events and asynchronous notification delivery.

The engine emits events only after the triggering write has committed.
:class:`NotificationDispatcher` hands each event to every registered
transport on a worker pool, so callers never wait on mail or realtime
publishing.

Delivery is at-least-once from the core's point of view: a failing transport
is logged and skipped, and the other transports still receive the event.
Duplicate suppression is left to the transports.
"""

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from marketflow.blocks import BlockRelationshipService
from marketflow.config import get_settings
from marketflow.types import Message, Payment, Review, User, conversation_id, utc_now

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Events
# =============================================================================


@dataclass
class MessageSent:
    """A direct message was stored."""

    message: Message
    name: str = field(default="message.sent", init=False)

    @property
    def channels(self) -> Tuple[str, ...]:
        return (
            f"user.{self.message.recipient_id}",
            f"conversation.{self.message.conversation_id}",
        )

    @property
    def sender_id(self) -> int:
        return self.message.sender_id

    @property
    def recipient_id(self) -> int:
        return self.message.recipient_id

    def to_dict(self) -> Dict[str, Any]:
        m = self.message
        return {
            "id": m.id,
            "content": m.content,
            "sender_id": m.sender_id,
            "recipient_id": m.recipient_id,
            "job_id": m.job_id,
            "is_read": m.is_read,
            "created_at": _iso(m.created_at),
        }


@dataclass
class UserTyping:
    """Typing indicator within a conversation. Never persisted."""

    user_id: int
    recipient_id: int
    is_typing: bool = True
    timestamp: datetime = field(default_factory=utc_now)
    name: str = field(default="user.typing", init=False)

    @property
    def channels(self) -> Tuple[str, ...]:
        return (f"conversation.{conversation_id(self.user_id, self.recipient_id)}",)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "is_typing": self.is_typing,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class PaymentReleased:
    """Held funds were paid out to the payee."""

    payment: Payment
    name: str = field(default="payment.released", init=False)

    @property
    def channels(self) -> Tuple[str, ...]:
        return (f"user.{self.payment.payee_id}", f"user.{self.payment.payer_id}")

    def to_dict(self) -> Dict[str, Any]:
        p = self.payment
        return {
            "payment_id": p.id,
            "job_id": p.job_id,
            "payer_id": p.payer_id,
            "payee_id": p.payee_id,
            "amount": str(p.amount),
            "platform_fee": str(p.platform_fee),
            "net_amount": str(p.net_amount),
            "released_at": _iso(p.released_at),
        }


@dataclass
class PaymentRefunded:
    """Funds were returned to the payer."""

    payment: Payment
    name: str = field(default="payment.refunded", init=False)

    @property
    def channels(self) -> Tuple[str, ...]:
        return (f"user.{self.payment.payer_id}", f"user.{self.payment.payee_id}")

    def to_dict(self) -> Dict[str, Any]:
        p = self.payment
        return {
            "payment_id": p.id,
            "job_id": p.job_id,
            "payer_id": p.payer_id,
            "payee_id": p.payee_id,
            "amount": str(p.amount),
            "refunded_at": _iso(p.refunded_at),
        }


@dataclass
class ReviewCreated:
    review: Review
    name: str = field(default="review.created", init=False)

    @property
    def channels(self) -> Tuple[str, ...]:
        return (f"user.{self.review.reviewee_id}",)

    def to_dict(self) -> Dict[str, Any]:
        r = self.review
        return {
            "review_id": r.id,
            "job_id": r.job_id,
            "reviewer_id": r.reviewer_id,
            "reviewee_id": r.reviewee_id,
            "rating": r.rating,
            "is_public": r.is_public,
        }


@dataclass
class UserRegistered:
    user: User
    name: str = field(default="user.registered", init=False)

    @property
    def channels(self) -> Tuple[str, ...]:
        return (f"user.{self.user.id}",)

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user.id, "name": self.user.name, "email": self.user.email}


@dataclass
class JobAssigned:
    job_id: int
    owner_id: int
    assigned_to: int
    name: str = field(default="job.assigned", init=False)

    @property
    def channels(self) -> Tuple[str, ...]:
        return (f"user.{self.assigned_to}", f"user.{self.owner_id}")

    def to_dict(self) -> Dict[str, Any]:
        return {"job_id": self.job_id, "owner_id": self.owner_id, "assigned_to": self.assigned_to}


# =============================================================================
# Transports
# =============================================================================


@runtime_checkable
class NotificationTransport(Protocol):
    """Protocol for event sinks (mail, realtime broadcast, ...)."""

    def publish(self, event: Any) -> None:
        ...


class RecordingTransport:
    """Keeps every published event in memory. Used by tests."""

    def __init__(self):
        self.events: List[Any] = []
        self._lock = threading.Lock()

    def publish(self, event: Any) -> None:
        with self._lock:
            self.events.append(event)

    def names(self) -> List[str]:
        with self._lock:
            return [e.name for e in self.events]

    def of_type(self, event_type: type) -> List[Any]:
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]


class LoggingTransport:
    """Writes each event to the log instead of delivering it."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def publish(self, event: Any) -> None:
        logger.log(self.level, f"[{event.name}] -> {', '.join(event.channels)}: {event.to_dict()}")


# =============================================================================
# Dispatcher
# =============================================================================


class NotificationDispatcher:
    """Delivers events to transports on a thread pool.

    Args:
        transports: Sinks that receive every delivered event.
        blocks: Block relationships, consulted at delivery time.
        max_workers: Size of the delivery pool. Defaults to the
            ``notification_workers`` setting.
    """

    def __init__(
        self,
        transports: Iterable[NotificationTransport],
        blocks: BlockRelationshipService,
        max_workers: Optional[int] = None,
    ):
        if max_workers is None:
            max_workers = get_settings().notification_workers
        self.transports = list(transports)
        self.blocks = blocks
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="marketflow-notify"
        )
        self._pending: List[concurrent.futures.Future] = []
        self._lock = threading.Lock()

    def dispatch(self, event: Any) -> concurrent.futures.Future:
        """Queue ``event`` for delivery and return immediately."""
        future = self._executor.submit(self._deliver, event)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return future

    def should_deliver(self, event: Any) -> bool:
        """Whether ``event`` may be delivered right now.

        A message whose recipient has blocked the sender is dropped. Block
        status can change between send and delivery, so this runs on the
        delivery thread rather than when the message is created.
        """
        if isinstance(event, MessageSent):
            return not self.blocks.is_blocked(event.recipient_id, event.sender_id)
        return True

    def _deliver(self, event: Any) -> int:
        """Publish to every transport. Returns how many accepted the event."""
        try:
            allowed = self.should_deliver(event)
        except Exception as e:
            logger.error(f"Block lookup failed for {event.name}, dropping event: {e}")
            return 0
        if not allowed:
            logger.debug(f"Suppressed {event.name}: recipient has blocked the sender")
            return 0

        delivered = 0
        for transport in self.transports:
            try:
                transport.publish(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Transport {type(transport).__name__} failed for {event.name}: {e}")
        return delivered

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued deliveries. Returns False if the timeout expired."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
