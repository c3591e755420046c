"""Payment authorization predicates."""

from datetime import datetime

from marketflow.types import Job, JobStatus, Payment, PaymentStatus, User

REFUND_WINDOW_DAYS = 7


def days_between(start: datetime, end: datetime) -> int:
    """Whole days elapsed from ``start`` to ``end`` (absolute, floored)."""
    return abs(end - start).days


def can_view_payment(actor: User, payment: Payment) -> bool:
    return actor.id in (payment.payer_id, payment.payee_id) or actor.is_admin


def can_create_payment(actor: User, job: Job) -> bool:
    """Only the owner of a completed, assigned job."""
    return (
        actor.id == job.owner_id
        and job.status == JobStatus.COMPLETED
        and job.assigned_to is not None
    )


def can_release_payment(actor: User, payment: Payment) -> bool:
    return actor.id == payment.payer_id and payment.status == PaymentStatus.HELD


def can_refund_payment(
    actor: User,
    payment: Payment,
    now: datetime,
    window_days: int = REFUND_WINDOW_DAYS,
) -> bool:
    """Payer may refund a held payment, or a released one inside the dispute window.

    The window is counted in whole days since the payment was last updated,
    which for a released payment is the release.
    """
    if actor.id != payment.payer_id:
        return False
    if payment.status == PaymentStatus.HELD:
        return True
    if payment.status == PaymentStatus.RELEASED:
        if payment.updated_at is None:
            return False
        return days_between(payment.updated_at, now) <= window_days
    return False


def can_process_refund(actor: User, payment: Payment) -> bool:
    return actor.is_admin and payment.status in (PaymentStatus.HELD, PaymentStatus.RELEASED)


def can_dispute_payment(actor: User, payment: Payment) -> bool:
    # Only held payments can move to disputed
    return (
        actor.id in (payment.payer_id, payment.payee_id)
        and payment.status == PaymentStatus.HELD
    )
