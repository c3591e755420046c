"""Job authorization predicates."""

from marketflow.types import Job, JobStatus, User


def can_view_job(actor: User, job: Job) -> bool:
    # Cancelled listings are only visible to participants and admins
    return (
        job.status != JobStatus.CANCELLED
        or actor.id in job.participants()
        or actor.is_admin
    )


def can_create_job(actor: User) -> bool:
    return actor.is_active


def can_update_job(actor: User, job: Job) -> bool:
    return actor.id == job.owner_id and job.status not in (
        JobStatus.COMPLETED,
        JobStatus.CANCELLED,
    )


def can_delete_job(actor: User, job: Job) -> bool:
    """Owner may delete while nobody is assigned; admins always."""
    return (actor.id == job.owner_id and job.assigned_to is None) or actor.is_admin


def can_restore_job(actor: User, job: Job) -> bool:
    return actor.is_admin


def can_apply_to_job(actor: User, job: Job) -> bool:
    return (
        actor.id != job.owner_id
        and job.status == JobStatus.OPEN
        and actor.is_verified_active
    )


def can_assign_job(actor: User, job: Job) -> bool:
    return actor.id == job.owner_id and job.status == JobStatus.OPEN


def can_complete_job(actor: User, job: Job) -> bool:
    return actor.id == job.owner_id and job.status == JobStatus.IN_PROGRESS


def can_cancel_job(actor: User, job: Job) -> bool:
    """Owner until completion, the assignee while in progress, or an admin."""
    return (
        (actor.id == job.owner_id and job.status != JobStatus.COMPLETED)
        or (actor.id == job.assigned_to and job.status == JobStatus.IN_PROGRESS)
        or actor.is_admin
    )
