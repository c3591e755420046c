"""Authorization policy evaluator.

Pure predicates over (actor, record, optional context). Each returns a plain
bool; none reads the clock (time-dependent checks take ``now``) and none
writes anything. Collaborator lookups (blocks, existing reviews) are passed
in explicitly.

Use :func:`authorize` to turn a denied predicate into
:class:`~marketflow.errors.PermissionDeniedError`.
"""

from marketflow.errors import PermissionDeniedError
from marketflow.policies.jobs import (
    can_apply_to_job,
    can_assign_job,
    can_cancel_job,
    can_complete_job,
    can_create_job,
    can_delete_job,
    can_restore_job,
    can_update_job,
    can_view_job,
)
from marketflow.policies.messages import (
    can_delete_message,
    can_mark_message_read,
    can_report_message,
    can_send_message_to,
    can_view_conversation,
    can_view_message,
)
from marketflow.policies.payments import (
    can_create_payment,
    can_dispute_payment,
    can_process_refund,
    can_refund_payment,
    can_release_payment,
    can_view_payment,
)
from marketflow.policies.reviews import (
    can_create_review,
    can_delete_review,
    can_report_review,
    can_respond_to_review,
    can_update_review,
    can_view_review,
)
from marketflow.policies.skills import (
    can_contact_skill_provider,
    can_delete_skill,
    can_update_skill,
    can_view_skill,
)
from marketflow.policies.users import can_block_user, can_update_user, can_view_user


def authorize(allowed: bool, action: str, actor=None) -> None:
    """Raise PermissionDeniedError unless ``allowed``.

    Args:
        allowed: Result of a policy predicate.
        action: Human-readable action name for the error message.
        actor: Acting user (only its id is reported).
    """
    if not allowed:
        raise PermissionDeniedError(action, getattr(actor, "id", None))


__all__ = [
    "authorize",
    # Jobs
    "can_view_job",
    "can_create_job",
    "can_update_job",
    "can_delete_job",
    "can_restore_job",
    "can_apply_to_job",
    "can_assign_job",
    "can_complete_job",
    "can_cancel_job",
    # Messages
    "can_view_message",
    "can_delete_message",
    "can_send_message_to",
    "can_mark_message_read",
    "can_view_conversation",
    "can_report_message",
    # Payments
    "can_view_payment",
    "can_create_payment",
    "can_release_payment",
    "can_refund_payment",
    "can_process_refund",
    "can_dispute_payment",
    # Reviews
    "can_view_review",
    "can_create_review",
    "can_update_review",
    "can_delete_review",
    "can_respond_to_review",
    "can_report_review",
    # Skills
    "can_view_skill",
    "can_update_skill",
    "can_delete_skill",
    "can_contact_skill_provider",
    # Users
    "can_view_user",
    "can_update_user",
    "can_block_user",
]
