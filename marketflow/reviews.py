"""Review eligibility and rating statistics.

The eligibility checker enforces the workflow rules for leaving a review:

- the job must be completed when the review is created
- the reviewee must be the other participant of the job
- a reviewer may review a job only once

Rating and comment bounds are validated here too, even though the boundary
schema (:class:`marketflow.schemas.ReviewCreate`) already checks them.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from marketflow.errors import (
    DuplicateReviewError,
    InvalidRevieweeError,
    ReviewNotEligibleError,
)
from marketflow.policies.reviews import ReviewLookup
from marketflow.types import Job, JobStatus, Review

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
COMMENT_MIN_LENGTH = 10
COMMENT_MAX_LENGTH = 1000

# Neutral credibility for reviewers with no ratings of their own
DEFAULT_REVIEWER_RATING = 3.0


class ReviewEligibilityChecker:
    """Checks whether a reviewer may review a job participant."""

    def __init__(
        self,
        reviews: ReviewLookup,
        min_rating: int = MIN_RATING,
        max_rating: int = MAX_RATING,
        comment_min_length: int = COMMENT_MIN_LENGTH,
        comment_max_length: int = COMMENT_MAX_LENGTH,
    ):
        self.reviews = reviews
        self.min_rating = min_rating
        self.max_rating = max_rating
        self.comment_min_length = comment_min_length
        self.comment_max_length = comment_max_length

    def validate_rating(self, rating) -> int:
        if isinstance(rating, bool) or not isinstance(rating, int):
            raise ValueError(f"Rating must be an integer, got {type(rating).__name__}")
        if not self.min_rating <= rating <= self.max_rating:
            raise ValueError(
                f"Rating must be between {self.min_rating} and {self.max_rating}, got {rating}"
            )
        return rating

    def validate_comment(self, comment: Optional[str]) -> Optional[str]:
        if comment is None:
            return None
        length = len(comment)
        if length < self.comment_min_length or length > self.comment_max_length:
            raise ValueError(
                f"Comment must be between {self.comment_min_length} and "
                f"{self.comment_max_length} characters, got {length}"
            )
        return comment

    def check(
        self,
        job: Job,
        reviewer_id: int,
        reviewee_id: int,
        rating,
        comment: Optional[str] = None,
    ) -> None:
        """Raise if ``reviewer_id`` may not review ``reviewee_id`` for ``job``.

        Raises:
            ReviewNotEligibleError: Job is not completed, or the reviewer
                did not take part in it.
            InvalidRevieweeError: Reviewee is not the other participant.
            DuplicateReviewError: Reviewer already reviewed this job.
            ValueError: Rating or comment out of bounds.
        """
        if job.status != JobStatus.COMPLETED:
            raise ReviewNotEligibleError(
                f"Job {job.id} is {job.status}; reviews require a completed job"
            )

        participants = job.participants()
        if reviewee_id not in participants:
            raise InvalidRevieweeError(f"User {reviewee_id} did not take part in job {job.id}")
        if reviewee_id == reviewer_id:
            raise InvalidRevieweeError("Users cannot review themselves")
        if reviewer_id not in participants:
            raise ReviewNotEligibleError(
                f"User {reviewer_id} did not take part in job {job.id} and cannot review it"
            )

        self.validate_rating(rating)
        self.validate_comment(comment)

        if self.reviews.find_review(job.id, reviewer_id) is not None:
            raise DuplicateReviewError(job.id, reviewer_id)


# =============================================================================
# Rating statistics
# =============================================================================


@dataclass
class RatingStats:
    """Aggregate rating numbers for one user."""

    average_rating: float = 0.0
    total_reviews: int = 0
    distribution: Dict[int, int] = field(
        default_factory=lambda: {r: 0 for r in range(MIN_RATING, MAX_RATING + 1)}
    )
    weighted_average: float = 0.0

    def to_dict(self) -> dict:
        return {
            "average_rating": self.average_rating,
            "total_reviews": self.total_reviews,
            "rating_distribution": dict(self.distribution),
            "weighted_average": self.weighted_average,
        }


def reviewer_weight(reviewer_average: Optional[float], reviewer_review_count: int) -> float:
    """Credibility weight of a reviewer.

    Starts at 1.0, moves 0.2 per star away from a neutral 3.0 average and
    gains up to 0.5 for experience (one tenth per review received).
    """
    if reviewer_average is None or reviewer_review_count == 0:
        reviewer_average = DEFAULT_REVIEWER_RATING
    return 1.0 + (reviewer_average - 3.0) * 0.2 + min(reviewer_review_count / 10, 0.5)


def calculate_rating_stats(
    reviews: Iterable[Review],
    reviewer_stats: Optional[Dict[int, Tuple[Optional[float], int]]] = None,
) -> RatingStats:
    """Compute rating statistics over the public reviews in ``reviews``.

    Args:
        reviews: Reviews received by one user.
        reviewer_stats: ``reviewer_id -> (average_rating, review_count)`` used
            for weighting; missing reviewers count as neutral newcomers.
    """
    reviewer_stats = reviewer_stats or {}
    public = [r for r in reviews if r.is_public]
    stats = RatingStats()
    if not public:
        return stats

    total_weighted = 0.0
    total_weight = 0.0
    for review in public:
        stats.distribution[review.rating] = stats.distribution.get(review.rating, 0) + 1
        avg, count = reviewer_stats.get(review.reviewer_id, (None, 0))
        weight = reviewer_weight(avg, count)
        total_weighted += review.rating * weight
        total_weight += weight

    stats.total_reviews = len(public)
    stats.average_rating = round(sum(r.rating for r in public) / len(public), 2)
    stats.weighted_average = round(total_weighted / total_weight, 2) if total_weight > 0 else 0.0
    return stats
