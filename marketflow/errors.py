"""Error taxonomy for the marketflow workflow core.

Every failure the core raises is a local, synchronous rejection surfaced to
the immediate caller:

- PermissionDeniedError: an authorization predicate denied the action
- InvalidTransitionError / InvalidPaymentTransitionError: the state machine
  rejected the requested move
- DuplicateReviewError / DuplicatePaymentError: a uniqueness rule was violated
- ConflictError: a concurrent writer changed the record first; the caller may
  retry once with fresh state
- ReviewNotEligibleError, InvalidRevieweeError, SelfAssignmentDeniedError:
  workflow preconditions

Invalid argument values raise ValueError.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base for all marketflow errors."""

    pass


class PermissionDeniedError(WorkflowError):
    """Raised when an actor is not allowed to perform an action."""

    def __init__(self, action: str, actor_id: Optional[int] = None):
        self.action = action
        self.actor_id = actor_id
        who = f"user {actor_id}" if actor_id is not None else "actor"
        super().__init__(f"Permission denied: {who} may not {action}")


class EntityNotFoundError(WorkflowError):
    """Raised when a record does not exist in the entity store."""

    def __init__(self, entity_type: str, entity_id: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class InvalidTransitionError(WorkflowError):
    """Raised when a job status transition is not allowed."""

    def __init__(self, from_status: str, to_status: str, reason: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot transition job from {from_status} to {to_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class AlreadyAssignedError(InvalidTransitionError):
    """Raised when assigning a job that is no longer open."""

    def __init__(self, job_id: int, status: str):
        self.job_id = job_id
        super().__init__(status, "in_progress", reason=f"job {job_id} is not open")


class InvalidPaymentTransitionError(WorkflowError):
    """Raised when a payment status transition is not allowed."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Cannot transition payment from {from_status} to {to_status}")


class SelfAssignmentDeniedError(WorkflowError):
    """Raised when a job owner tries to assign their own job to themselves."""

    def __init__(self, job_id: int, user_id: int):
        self.job_id = job_id
        self.user_id = user_id
        super().__init__(f"User {user_id} owns job {job_id} and cannot be assigned to it")


class DuplicatePaymentError(WorkflowError):
    """Raised when a job already has a payment."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Payment already exists for job {job_id}")


class DuplicateReviewError(WorkflowError):
    """Raised when a reviewer already reviewed a job."""

    def __init__(self, job_id: int, reviewer_id: int):
        self.job_id = job_id
        self.reviewer_id = reviewer_id
        super().__init__(f"User {reviewer_id} has already reviewed job {job_id}")


class ReviewNotEligibleError(WorkflowError):
    """Raised when a review is requested for a job that is not completed."""

    pass


class InvalidRevieweeError(WorkflowError):
    """Raised when the reviewee is not the other participant of the job."""

    pass


class ConflictError(WorkflowError):
    """Raised when a compare-and-set commit loses a race.

    Safe to retry once with freshly loaded state. The core never retries on
    its own.
    """

    def __init__(self, entity_type: str, entity_id: int, expected_version: int, actual_version: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {entity_type}/{entity_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


class StorageError(WorkflowError):
    """Raised by entity store implementations on storage failures."""

    pass
