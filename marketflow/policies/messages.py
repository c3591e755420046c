"""Message authorization predicates."""

from datetime import datetime

from marketflow.blocks import BlockRelationshipService
from marketflow.types import Message, User

MESSAGE_DELETE_WINDOW_HOURS = 24


def hours_between(start: datetime, end: datetime) -> float:
    """Elapsed hours from ``start`` to ``end`` (absolute)."""
    return abs((end - start).total_seconds()) / 3600


def can_view_message(actor: User, message: Message) -> bool:
    return actor.id in (message.sender_id, message.recipient_id) or actor.is_admin


def can_delete_message(
    actor: User,
    message: Message,
    now: datetime,
    window_hours: int = MESSAGE_DELETE_WINDOW_HOURS,
) -> bool:
    """Sender within ``window_hours`` of sending, or an admin."""
    own_recent = (
        actor.id == message.sender_id
        and message.created_at is not None
        and hours_between(message.created_at, now) < window_hours
    )
    return own_recent or actor.is_admin


def can_send_message_to(actor: User, recipient: User, blocks: BlockRelationshipService) -> bool:
    """Whether ``actor`` may start or continue a conversation with ``recipient``.

    Denied for self-messages, inactive recipients, unverified senders and
    whenever either user blocks the other.
    """
    if actor.id == recipient.id or not recipient.is_active:
        return False
    if blocks.is_mutually_blocked(actor.id, recipient.id):
        return False
    return actor.is_verified_active


def can_mark_message_read(actor: User, message: Message) -> bool:
    return actor.id == message.recipient_id


def can_view_conversation(actor: User, other: User, blocks: BlockRelationshipService) -> bool:
    return (
        actor.id != other.id
        and not blocks.is_mutually_blocked(actor.id, other.id)
        and actor.is_verified_active
    )


def can_report_message(actor: User, message: Message) -> bool:
    return actor.id == message.recipient_id
