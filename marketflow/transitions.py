"""Status transition guard for jobs and payments.

Holds the two lifecycle tables and the pure checks over them. The checks
never write anything: :class:`~marketflow.engine.WorkflowEngine` applies the
returned state through a compare-and-set commit so the check and the write
are atomic.

Job lifecycle::

    open        -> in_progress, cancelled, expired
    in_progress -> completed, cancelled
    completed   -> (terminal)
    cancelled   -> open
    expired     -> open

Payment lifecycle::

    pending -> held, failed
    held    -> released, refunded, disputed, failed
    released -> refunded   (inside the dispute window, see policies.payments)
"""

import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional

from marketflow.errors import (
    AlreadyAssignedError,
    InvalidPaymentTransitionError,
    InvalidTransitionError,
    SelfAssignmentDeniedError,
)
from marketflow.types import Job, JobStatus, Payment, PaymentStatus, quantize_money

logger = logging.getLogger(__name__)

VALID_JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.OPEN: frozenset({JobStatus.IN_PROGRESS, JobStatus.CANCELLED, JobStatus.EXPIRED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset({JobStatus.OPEN}),
    JobStatus.EXPIRED: frozenset({JobStatus.OPEN}),
}

VALID_PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.HELD, PaymentStatus.FAILED}),
    PaymentStatus.HELD: frozenset(
        {
            PaymentStatus.RELEASED,
            PaymentStatus.REFUNDED,
            PaymentStatus.DISPUTED,
            PaymentStatus.FAILED,
        }
    ),
    PaymentStatus.RELEASED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.DISPUTED: frozenset(),
}


def _job_status(value) -> JobStatus:
    try:
        return JobStatus(value)
    except ValueError:
        raise ValueError(f"Unknown job status: {value}") from None


def _payment_status(value) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError:
        raise ValueError(f"Unknown payment status: {value}") from None


def can_transition_job(current, new) -> bool:
    """Whether the job table allows ``current -> new``."""
    return _job_status(new) in VALID_JOB_TRANSITIONS[_job_status(current)]


def can_transition_payment(current, new) -> bool:
    """Whether the payment table allows ``current -> new``."""
    return _payment_status(new) in VALID_PAYMENT_TRANSITIONS[_payment_status(current)]


def is_terminal_payment(status) -> bool:
    return not VALID_PAYMENT_TRANSITIONS[_payment_status(status)]


def plan_job_transition(job: Job, new_status, now: Optional[datetime] = None) -> Job:
    """Validate a job status change and return the job as it should be stored.

    Side effects applied to the returned copy:
    - moving to ``cancelled`` clears ``assigned_to``
    - moving to ``in_progress`` requires an assigned user

    Raises:
        InvalidTransitionError: If the move is not in the job table, or the
            job would start without an assignee.
    """
    target = _job_status(new_status)
    if not can_transition_job(job.status, target):
        raise InvalidTransitionError(job.status, target.value)
    if target == JobStatus.IN_PROGRESS and job.assigned_to is None:
        raise InvalidTransitionError(job.status, target.value, reason="job has no assigned user")

    changes = {"status": target.value, "updated_at": now}
    if target == JobStatus.CANCELLED:
        changes["assigned_to"] = None
    return replace(job, **changes)


def plan_assignment(job: Job, user_id: Optional[int], now: Optional[datetime] = None) -> Job:
    """Validate assigning (or unassigning, with ``None``) a job.

    Assigning a user moves the job to ``in_progress``; unassigning keeps it
    open. Both require the job to still be open.

    Raises:
        AlreadyAssignedError: If the job is not open.
        SelfAssignmentDeniedError: If ``user_id`` is the job owner.
    """
    if job.status != JobStatus.OPEN:
        raise AlreadyAssignedError(job.id, job.status)
    if user_id is None:
        return replace(job, assigned_to=None, updated_at=now)
    if user_id == job.owner_id:
        raise SelfAssignmentDeniedError(job.id, user_id)
    return replace(
        job,
        assigned_to=user_id,
        status=JobStatus.IN_PROGRESS.value,
        updated_at=now,
    )


def plan_payment_transition(payment: Payment, new_status, now: Optional[datetime] = None) -> Payment:
    """Validate a payment status change and return the updated payment.

    Raises:
        InvalidPaymentTransitionError: If the move is not in the payment table.
    """
    target = _payment_status(new_status)
    if not can_transition_payment(payment.status, target):
        raise InvalidPaymentTransitionError(payment.status, target.value)

    changes = {"status": target.value, "updated_at": now}
    if target == PaymentStatus.RELEASED:
        changes["released_at"] = now
    elif target == PaymentStatus.REFUNDED:
        changes["refunded_at"] = now
    return replace(payment, **changes)


def overdue_jobs(jobs: List[Job], now: datetime) -> List[Job]:
    """Open, non-deleted jobs whose deadline is before ``now``."""
    return [j for j in jobs if not j.is_deleted and j.is_overdue(now)]


def calculate_platform_fee(amount, fee_percent: float = 5.0) -> Decimal:
    """Platform fee for ``amount``, rounded to cents."""
    if fee_percent < 0:
        raise ValueError("fee_percent cannot be negative")
    return quantize_money(Decimal(str(amount)) * Decimal(str(fee_percent)) / Decimal("100"))
