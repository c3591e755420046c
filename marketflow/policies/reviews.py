"""Review authorization predicates."""

from datetime import datetime
from typing import Optional, Protocol

from marketflow.policies.messages import hours_between
from marketflow.types import Job, JobStatus, Review, User

REVIEW_EDIT_WINDOW_HOURS = 24


class ReviewLookup(Protocol):
    """Anything that can find the review a user left for a job."""

    def find_review(self, job_id: int, reviewer_id: int) -> Optional[Review]:
        ...


def can_view_review(actor: User, review: Review) -> bool:
    return (
        review.is_public
        or actor.id in (review.reviewer_id, review.reviewee_id)
        or actor.is_admin
    )


def can_create_review(actor: User, job: Job, reviewee: User, reviews: ReviewLookup) -> bool:
    """Completed job, reviewee is the other participant, first review by ``actor``."""
    if job.status != JobStatus.COMPLETED:
        return False
    if reviewee.id not in (job.owner_id, job.assigned_to):
        return False
    if actor.id == reviewee.id:
        return False
    return reviews.find_review(job.id, actor.id) is None


def can_update_review(
    actor: User,
    review: Review,
    now: datetime,
    window_hours: int = REVIEW_EDIT_WINDOW_HOURS,
) -> bool:
    return (
        actor.id == review.reviewer_id
        and review.created_at is not None
        and hours_between(review.created_at, now) < window_hours
    )


def can_delete_review(
    actor: User,
    review: Review,
    now: datetime,
    window_hours: int = REVIEW_EDIT_WINDOW_HOURS,
) -> bool:
    return can_update_review(actor, review, now, window_hours) or actor.is_admin


def can_respond_to_review(actor: User, review: Review) -> bool:
    return actor.id == review.reviewee_id


def can_report_review(actor: User, review: Review) -> bool:
    return actor.id != review.reviewer_id and actor.is_verified_active
