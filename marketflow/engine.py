"""Workflow engine.

:class:`WorkflowEngine` runs every marketplace operation through the same
steps:

1. load the records involved from the entity store
2. run the state guard (transition table, review eligibility)
3. authorize the actor against the policy predicates
4. commit the new state with the version that was loaded
5. invalidate cache tags for what was committed
6. dispatch domain events

Steps 5 and 6 only run after step 4 succeeds and neither can undo it: a
cache or notification failure is logged and the operation still returns
the committed record.

The guard runs before the policy for status changes, so a request that the
state machine would reject anyway (assigning a job that is already in
progress, completing a completed job) reports the transition error rather
than a permission error.
"""

import logging
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from marketflow.blocks import InMemoryBlockService
from marketflow.cache import (
    CONVERSATIONS_TAG,
    RATINGS_TAG,
    CacheBackend,
    CacheInvalidationRouter,
    invalidate_after_commit,
    user_tag,
)
from marketflow.config import WorkflowSettings, get_settings
from marketflow.errors import (
    ConflictError,
    DuplicatePaymentError,
    EntityNotFoundError,
)
from marketflow.notifications import (
    JobAssigned,
    MessageSent,
    NotificationDispatcher,
    PaymentRefunded,
    PaymentReleased,
    ReviewCreated,
    UserRegistered,
    UserTyping,
)
from marketflow.policies import (
    authorize,
    can_assign_job,
    can_block_user,
    can_cancel_job,
    can_complete_job,
    can_create_job,
    can_create_payment,
    can_create_review,
    can_delete_job,
    can_delete_message,
    can_dispute_payment,
    can_mark_message_read,
    can_process_refund,
    can_refund_payment,
    can_release_payment,
    can_restore_job,
    can_send_message_to,
    can_update_job,
    can_update_review,
    can_update_skill,
)
from marketflow.reviews import RatingStats, ReviewEligibilityChecker, calculate_rating_stats
from marketflow.schemas import JobCreate, MessageCreate, PaymentCreate
from marketflow.storage import create_store
from marketflow.storage.base import CommitResult, EntityStore, Write
from marketflow.transitions import (
    calculate_platform_fee,
    overdue_jobs,
    plan_assignment,
    plan_job_transition,
    plan_payment_transition,
)
from marketflow.types import (
    EntityType,
    Job,
    JobStatus,
    Message,
    MutationKind,
    Payment,
    PaymentStatus,
    Review,
    Skill,
    StateTransition,
    User,
    utc_now,
)

logger = logging.getLogger(__name__)

JOB_EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "category_id",
        "budget_min",
        "budget_max",
        "budget_type",
        "deadline",
        "is_urgent",
    }
)
SKILL_EDITABLE_FIELDS = frozenset({"title", "category_id", "is_active", "is_available"})

_UNTRACKED_FIELDS = frozenset({"updated_at", "version"})

EventFactory = Callable[[CommitResult], Iterable[Any]]


def _diff(old: Any, new: Any) -> Tuple[FrozenSet[str], Dict[str, Any]]:
    """Changed field names and their previous values."""
    changed = {}
    for f in fields(old):
        if f.name in _UNTRACKED_FIELDS:
            continue
        before = getattr(old, f.name)
        if before != getattr(new, f.name):
            changed[f.name] = before
    return frozenset(changed), changed


def _validation_message(error: ValidationError) -> str:
    return "; ".join(e["msg"] for e in error.errors())


class WorkflowEngine:
    """Marketplace workflow operations over an entity store.

    Args:
        store: Entity store (in-memory or SQLite). Defaults to one built
            from ``settings.db_path``.
        blocks: Block relationship service. Must support ``block``/``unblock``
            for :meth:`block_user` and :meth:`unblock_user`.
        cache: Tag-aware cache to invalidate after commits. Optional.
        dispatcher: Notification dispatcher for domain events. Optional.
        settings: Windows, bounds and fees. Defaults to :func:`get_settings`.
        clock: Source of "now" when an operation is not given one.
    """

    def __init__(
        self,
        store: Optional[EntityStore] = None,
        blocks: Optional[InMemoryBlockService] = None,
        cache: Optional[CacheBackend] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: Optional[WorkflowSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.store = store if store is not None else create_store(self.settings.db_path)
        self.blocks = blocks if blocks is not None else InMemoryBlockService()
        self.cache = cache
        self.dispatcher = dispatcher
        self.router = CacheInvalidationRouter()
        self.reviews = ReviewEligibilityChecker(
            self.store,
            min_rating=self.settings.min_rating,
            max_rating=self.settings.max_rating,
            comment_min_length=self.settings.review_comment_min_length,
            comment_max_length=self.settings.review_comment_max_length,
        )
        self._clock = clock

    # =========================================================================
    # Internals
    # =========================================================================

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self._clock()

    def _user(self, user_id: int) -> User:
        return self.store.get(EntityType.USER, user_id)

    def _job(self, job_id: int) -> Job:
        job = self.store.get(EntityType.JOB, job_id)
        if job.is_deleted:
            raise EntityNotFoundError(EntityType.JOB.value, job_id)
        return job

    def _payment(self, payment_id: int) -> Payment:
        return self.store.get(EntityType.PAYMENT, payment_id)

    def _message(self, message_id: int) -> Message:
        message = self.store.get(EntityType.MESSAGE, message_id)
        if message.deleted_at is not None:
            raise EntityNotFoundError(EntityType.MESSAGE.value, message_id)
        return message

    def _authorize(self, allowed: bool, action: str, actor: User) -> None:
        if not allowed:
            logger.debug(f"Denied: user {actor.id} may not {action}")
        authorize(allowed, action, actor)

    def _commit(self, writes: List[Write], events: Optional[EventFactory] = None) -> CommitResult:
        """Commit, then invalidate cache tags, then dispatch events."""
        result = self.store.commit(writes)
        invalidate_after_commit(self.cache, self.router.route_all(result.mutations))
        if events is not None:
            self._emit(events(result))
        return result

    def _emit(self, events: Iterable[Any]) -> None:
        if self.dispatcher is None:
            return
        for event in events:
            try:
                self.dispatcher.dispatch(event)
            except Exception as e:
                logger.error(f"Failed to queue {event.name}: {e}")

    def _update_write(self, old: Any, new: Any, transition: Optional[StateTransition] = None) -> Write:
        changed, previous = _diff(old, new)
        return Write(
            record=new,
            kind=MutationKind.UPDATED,
            expected_version=old.version,
            changed_fields=changed,
            previous=previous,
            transition=transition,
        )

    # =========================================================================
    # Users
    # =========================================================================

    def register_user(
        self,
        name: str,
        email: str,
        is_admin: bool = False,
        verified: bool = False,
        now: Optional[datetime] = None,
    ) -> User:
        """Create an account. ``verified`` marks the email as confirmed."""
        if not name or not name.strip():
            raise ValueError("Name cannot be empty")
        if not email or "@" not in email:
            raise ValueError(f"Invalid email address: {email!r}")
        now = self._now(now)
        user = User(
            id=None,
            name=name.strip(),
            email=email.strip().lower(),
            is_admin=is_admin,
            email_verified_at=now if verified else None,
            created_at=now,
            updated_at=now,
        )
        result = self._commit(
            [Write(record=user, kind=MutationKind.CREATED)],
            events=lambda r: [UserRegistered(r.record)],
        )
        logger.info(f"Registered user {result.record.id}")
        return result.record

    def verify_email(self, user_id: int, now: Optional[datetime] = None) -> User:
        user = self._user(user_id)
        if user.email_verified_at is not None:
            return user
        now = self._now(now)
        verified = replace(user, email_verified_at=now, updated_at=now)
        return self._commit([self._update_write(user, verified)]).record

    def block_user(self, actor_id: int, target_id: int, reason: Optional[str] = None) -> None:
        actor = self._user(actor_id)
        target = self._user(target_id)
        self._authorize(can_block_user(actor, target), "block this user", actor)
        self.blocks.block(actor.id, target.id, reason)
        invalidate_after_commit(self.cache, (user_tag(actor.id), user_tag(target.id), CONVERSATIONS_TAG))

    def unblock_user(self, actor_id: int, target_id: int) -> bool:
        """Remove a block. Returns False if there was none."""
        actor = self._user(actor_id)
        removed = self.blocks.unblock(actor.id, target_id)
        if removed:
            invalidate_after_commit(self.cache, (user_tag(actor.id), user_tag(target_id), CONVERSATIONS_TAG))
        return removed

    # =========================================================================
    # Jobs
    # =========================================================================

    def create_job(
        self,
        actor_id: int,
        title: str,
        description: str = "",
        category_id: Optional[int] = None,
        budget_min=None,
        budget_max=None,
        budget_type: str = "fixed",
        deadline: Optional[datetime] = None,
        is_urgent: bool = False,
        now: Optional[datetime] = None,
    ) -> Job:
        """Post a job listing. New jobs start ``open``."""
        actor = self._user(actor_id)
        self._authorize(can_create_job(actor), "create jobs", actor)
        now = self._now(now)
        try:
            data = JobCreate.model_validate(
                {
                    "title": title,
                    "description": description,
                    "category_id": category_id,
                    "budget_min": budget_min,
                    "budget_max": budget_max,
                    "budget_type": budget_type,
                    "deadline": deadline,
                    "is_urgent": is_urgent,
                },
                context={"now": now},
            )
        except ValidationError as e:
            raise ValueError(f"Invalid job: {_validation_message(e)}") from e

        job = Job(id=None, owner_id=actor.id, created_at=now, updated_at=now, **data.model_dump())
        transition = StateTransition(
            id=None,
            entity_type=EntityType.JOB.value,
            entity_id=None,
            from_status=None,
            to_status=JobStatus.OPEN.value,
            actor_id=actor.id,
            created_at=now,
        )
        result = self._commit([Write(record=job, kind=MutationKind.CREATED, transition=transition)])
        logger.info(f"User {actor.id} created job {result.record.id}")
        return result.record

    def update_job(self, actor_id: int, job_id: int, now: Optional[datetime] = None, **changes) -> Job:
        """Edit listing fields. Status and assignment have their own operations.

        A new ``deadline`` must be in the future; an unchanged past deadline
        does not block other edits.
        """
        unknown = set(changes) - JOB_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        actor = self._user(actor_id)
        job = self._job(job_id)
        self._authorize(can_update_job(actor, job), "update this job", actor)

        merged = {name: getattr(job, name) for name in JOB_EDITABLE_FIELDS}
        merged.update(changes)
        now = self._now(now)
        context = {"now": now} if "deadline" in changes else None
        try:
            data = JobCreate.model_validate(merged, context=context)
        except ValidationError as e:
            raise ValueError(f"Invalid job: {_validation_message(e)}") from e

        updated = replace(job, updated_at=now, **data.model_dump())
        write = self._update_write(job, updated)
        if not write.changed_fields:
            return job
        return self._commit([write]).record

    def assign_user(
        self, actor_id: int, job_id: int, user_id: Optional[int], now: Optional[datetime] = None
    ) -> Job:
        """Assign ``user_id`` to an open job, moving it to ``in_progress``.

        Passing ``None`` clears the assignment and keeps the job open.

        Raises:
            AlreadyAssignedError: The job is no longer open. Also what the
                loser of two concurrent assigns gets when it reloads.
            ConflictError: Another write to the job committed first.
            SelfAssignmentDeniedError: ``user_id`` owns the job.
        """
        actor = self._user(actor_id)
        job = self._job(job_id)
        now = self._now(now)

        planned = plan_assignment(job, user_id, now)
        self._authorize(can_assign_job(actor, job), "assign this job", actor)
        if user_id is not None:
            assignee = self._user(user_id)
            if not assignee.is_active:
                raise ValueError(f"User {user_id} is not active")

        transition = None
        if planned.status != job.status:
            transition = StateTransition(
                id=None,
                entity_type=EntityType.JOB.value,
                entity_id=job.id,
                from_status=job.status,
                to_status=planned.status,
                actor_id=actor.id,
                created_at=now,
            )

        def events(result: CommitResult) -> List[Any]:
            stored = result.record
            if stored.assigned_to is None:
                return []
            return [JobAssigned(job_id=stored.id, owner_id=stored.owner_id, assigned_to=stored.assigned_to)]

        result = self._commit([self._update_write(job, planned, transition)], events=events)
        logger.info(f"Job {job.id} assigned to {user_id} by user {actor.id}")
        return result.record

    def _job_transition_allowed(self, actor: User, job: Job, target: JobStatus) -> bool:
        if target == JobStatus.CANCELLED:
            return can_cancel_job(actor, job)
        if target == JobStatus.COMPLETED:
            return can_complete_job(actor, job)
        if target == JobStatus.EXPIRED:
            return actor.is_admin
        return actor.id == job.owner_id or actor.is_admin

    def request_transition(
        self, actor_id: int, job_id: int, new_status, now: Optional[datetime] = None
    ) -> Job:
        """Move a job to ``new_status`` if the lifecycle table allows it.

        Raises:
            InvalidTransitionError: Not an allowed move.
            PermissionDeniedError: The actor may not make this move.
            ConflictError: Another write to the job committed first.
        """
        actor = self._user(actor_id)
        job = self._job(job_id)
        now = self._now(now)

        planned = plan_job_transition(job, new_status, now)
        target = JobStatus(planned.status)
        self._authorize(
            self._job_transition_allowed(actor, job, target),
            f"move this job to {target.value}",
            actor,
        )

        transition = StateTransition(
            id=None,
            entity_type=EntityType.JOB.value,
            entity_id=job.id,
            from_status=job.status,
            to_status=target.value,
            actor_id=actor.id,
            created_at=now,
        )
        result = self._commit([self._update_write(job, planned, transition)])
        logger.info(f"Job {job.id}: {job.status} -> {target.value} by user {actor.id}")
        return result.record

    def complete_job(self, actor_id: int, job_id: int, now: Optional[datetime] = None) -> Job:
        return self.request_transition(actor_id, job_id, JobStatus.COMPLETED, now)

    def cancel_job(self, actor_id: int, job_id: int, now: Optional[datetime] = None) -> Job:
        """Cancel a job. The assignment is cleared."""
        return self.request_transition(actor_id, job_id, JobStatus.CANCELLED, now)

    def reopen_job(self, actor_id: int, job_id: int, now: Optional[datetime] = None) -> Job:
        """Reopen a cancelled or expired job."""
        return self.request_transition(actor_id, job_id, JobStatus.OPEN, now)

    def delete_job(self, actor_id: int, job_id: int, now: Optional[datetime] = None) -> Job:
        """Soft delete. The record is kept with ``deleted_at`` set."""
        actor = self._user(actor_id)
        job = self._job(job_id)
        self._authorize(can_delete_job(actor, job), "delete this job", actor)

        now = self._now(now)
        deleted = replace(job, deleted_at=now, updated_at=now)
        write = self._update_write(job, deleted)
        write.kind = MutationKind.DELETED
        result = self._commit([write])
        logger.info(f"Job {job.id} deleted by user {actor.id}")
        return result.record

    def restore_job(self, actor_id: int, job_id: int, now: Optional[datetime] = None) -> Job:
        actor = self._user(actor_id)
        job = self.store.get(EntityType.JOB, job_id)
        self._authorize(can_restore_job(actor, job), "restore this job", actor)
        if not job.is_deleted:
            return job
        restored = replace(job, deleted_at=None, updated_at=self._now(now))
        return self._commit([self._update_write(job, restored)]).record

    def expire_overdue_jobs(self, now: Optional[datetime] = None) -> List[Job]:
        """Move open jobs past their deadline to ``expired``.

        Jobs changed by another writer in the meantime are skipped; the next
        run sees their fresh state.
        """
        now = self._now(now)
        expired = []
        for job in overdue_jobs(self.store.list_open_jobs(), now):
            planned = plan_job_transition(job, JobStatus.EXPIRED, now)
            transition = StateTransition(
                id=None,
                entity_type=EntityType.JOB.value,
                entity_id=job.id,
                from_status=job.status,
                to_status=JobStatus.EXPIRED.value,
                actor_id=None,
                created_at=now,
            )
            try:
                result = self._commit([self._update_write(job, planned, transition)])
            except ConflictError as e:
                logger.warning(f"Skipped expiring job {job.id}: {e}")
                continue
            expired.append(result.record)
        if expired:
            logger.info(f"Expired {len(expired)} overdue job(s)")
        return expired

    # =========================================================================
    # Skills
    # =========================================================================

    def create_skill(
        self,
        actor_id: int,
        title: str,
        category_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Skill:
        actor = self._user(actor_id)
        self._authorize(actor.is_active, "list skills", actor)
        if not title or not title.strip():
            raise ValueError("Skill title cannot be empty")
        now = self._now(now)
        skill = Skill(
            id=None,
            owner_id=actor.id,
            title=title.strip(),
            category_id=category_id,
            created_at=now,
            updated_at=now,
        )
        return self._commit([Write(record=skill, kind=MutationKind.CREATED)]).record

    def update_skill(self, actor_id: int, skill_id: int, now: Optional[datetime] = None, **changes) -> Skill:
        unknown = set(changes) - SKILL_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update skill fields: {', '.join(sorted(unknown))}")
        if "title" in changes and not (changes["title"] or "").strip():
            raise ValueError("Skill title cannot be empty")

        actor = self._user(actor_id)
        skill = self.store.get(EntityType.SKILL, skill_id)
        self._authorize(can_update_skill(actor, skill), "update this skill", actor)

        updated = replace(skill, updated_at=self._now(now), **changes)
        write = self._update_write(skill, updated)
        if not write.changed_fields:
            return skill
        return self._commit([write]).record

    # =========================================================================
    # Payments
    # =========================================================================

    def create_payment(self, actor_id: int, job_id: int, amount, now: Optional[datetime] = None) -> Payment:
        """Create the pending payment for a completed job.

        The owner pays the assigned user. The platform fee is taken from the
        amount.

        Raises:
            DuplicatePaymentError: The job already has a payment.
            PermissionDeniedError: Not the owner, or the job is not completed
                with an assigned user.
        """
        actor = self._user(actor_id)
        job = self._job(job_id)
        self._authorize(can_create_payment(actor, job), "pay for this job", actor)

        try:
            data = PaymentCreate.model_validate(
                {"job_id": job.id, "amount": amount},
                context={"job_budget_max": job.budget_max},
            )
        except ValidationError as e:
            raise ValueError(f"Invalid payment: {_validation_message(e)}") from e
        if self.store.find_payment_for_job(job.id) is not None:
            raise DuplicatePaymentError(job.id)

        now = self._now(now)
        payment = Payment(
            id=None,
            job_id=job.id,
            payer_id=job.owner_id,
            payee_id=job.assigned_to,
            amount=data.amount,
            platform_fee=calculate_platform_fee(data.amount, self.settings.platform_fee_percent),
            created_at=now,
            updated_at=now,
        )
        transition = StateTransition(
            id=None,
            entity_type=EntityType.PAYMENT.value,
            entity_id=None,
            from_status=None,
            to_status=PaymentStatus.PENDING.value,
            actor_id=actor.id,
            created_at=now,
        )
        result = self._commit([Write(record=payment, kind=MutationKind.CREATED, transition=transition)])
        logger.info(f"Payment {result.record.id} created for job {job.id}: {data.amount}")
        return result.record

    def _transition_payment(
        self,
        actor_id: int,
        payment_id: int,
        new_status: PaymentStatus,
        check: Callable[[User, Payment, datetime], bool],
        action: str,
        now: Optional[datetime],
        events: Optional[EventFactory] = None,
    ) -> Payment:
        actor = self._user(actor_id)
        payment = self._payment(payment_id)
        now = self._now(now)

        planned = plan_payment_transition(payment, new_status, now)
        self._authorize(check(actor, payment, now), action, actor)

        transition = StateTransition(
            id=None,
            entity_type=EntityType.PAYMENT.value,
            entity_id=payment.id,
            from_status=payment.status,
            to_status=new_status.value,
            actor_id=actor.id,
            created_at=now,
        )
        result = self._commit([self._update_write(payment, planned, transition)], events=events)
        logger.info(f"Payment {payment.id}: {payment.status} -> {new_status.value} by user {actor.id}")
        return result.record

    def hold_payment(self, actor_id: int, payment_id: int, now: Optional[datetime] = None) -> Payment:
        """Funds received from the payer; the platform now holds them."""
        return self._transition_payment(
            actor_id,
            payment_id,
            PaymentStatus.HELD,
            lambda actor, payment, _: actor.id == payment.payer_id or actor.is_admin,
            "fund this payment",
            now,
        )

    def release_payment(self, actor_id: int, payment_id: int, now: Optional[datetime] = None) -> Payment:
        return self._transition_payment(
            actor_id,
            payment_id,
            PaymentStatus.RELEASED,
            lambda actor, payment, _: can_release_payment(actor, payment),
            "release this payment",
            now,
            events=lambda r: [PaymentReleased(r.record)],
        )

    def refund_payment(self, actor_id: int, payment_id: int, now: Optional[datetime] = None) -> Payment:
        """Refund the payer.

        The payer may refund a held payment, or a released one within the
        dispute window. Admins may refund either at any time.
        """
        window = self.settings.refund_window_days
        return self._transition_payment(
            actor_id,
            payment_id,
            PaymentStatus.REFUNDED,
            lambda actor, payment, at: (
                can_refund_payment(actor, payment, at, window) or can_process_refund(actor, payment)
            ),
            "refund this payment",
            now,
            events=lambda r: [PaymentRefunded(r.record)],
        )

    def dispute_payment(self, actor_id: int, payment_id: int, now: Optional[datetime] = None) -> Payment:
        return self._transition_payment(
            actor_id,
            payment_id,
            PaymentStatus.DISPUTED,
            lambda actor, payment, _: can_dispute_payment(actor, payment),
            "dispute this payment",
            now,
        )

    def fail_payment(self, actor_id: int, payment_id: int, now: Optional[datetime] = None) -> Payment:
        """Record a processor failure. Admin only."""
        return self._transition_payment(
            actor_id,
            payment_id,
            PaymentStatus.FAILED,
            lambda actor, payment, _: actor.is_admin,
            "mark this payment failed",
            now,
        )

    # =========================================================================
    # Reviews
    # =========================================================================

    def create_review(
        self,
        actor_id: int,
        job_id: int,
        reviewee_id: int,
        rating: int,
        comment: Optional[str] = None,
        is_public: bool = True,
        now: Optional[datetime] = None,
    ) -> Review:
        """Review the other participant of a completed job.

        Raises:
            ReviewNotEligibleError: The job is not completed, or the actor
                did not take part in it.
            InvalidRevieweeError: The reviewee is not the other participant.
            DuplicateReviewError: The actor already reviewed this job.
            ValueError: Rating or comment out of bounds.
        """
        actor = self._user(actor_id)
        job = self._job(job_id)
        reviewee = self._user(reviewee_id)

        self.reviews.check(job, actor.id, reviewee.id, rating, comment)
        self._authorize(can_create_review(actor, job, reviewee, self.store), "review this job", actor)

        now = self._now(now)
        review = Review(
            id=None,
            job_id=job.id,
            reviewer_id=actor.id,
            reviewee_id=reviewee.id,
            rating=rating,
            comment=comment,
            is_public=is_public,
            created_at=now,
            updated_at=now,
        )
        result = self._commit(
            [Write(record=review, kind=MutationKind.CREATED)],
            events=lambda r: [ReviewCreated(r.record)],
        )
        logger.info(f"User {actor.id} reviewed user {reviewee.id} for job {job.id}: {rating}/5")
        return result.record

    def update_review(
        self,
        actor_id: int,
        review_id: int,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
        is_public: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> Review:
        """Edit a review. Only the reviewer, and only within the edit window."""
        actor = self._user(actor_id)
        review = self.store.get(EntityType.REVIEW, review_id)
        now = self._now(now)
        self._authorize(
            can_update_review(actor, review, now, self.settings.review_edit_window_hours),
            "edit this review",
            actor,
        )

        changes: Dict[str, Any] = {}
        if rating is not None:
            changes["rating"] = self.reviews.validate_rating(rating)
        if comment is not None:
            changes["comment"] = self.reviews.validate_comment(comment)
        if is_public is not None:
            changes["is_public"] = is_public

        updated = replace(review, updated_at=now, **changes)
        write = self._update_write(review, updated)
        if not write.changed_fields:
            return review
        return self._commit([write]).record

    def get_rating_stats(self, user_id: int) -> RatingStats:
        """Rating statistics for a user, cached under ``user:{id}`` and ``ratings``."""

        def compute() -> RatingStats:
            reviews = self.store.list_reviews_for_user(user_id)
            reviewer_stats = {}
            for reviewer_id in {r.reviewer_id for r in reviews}:
                received = [r for r in self.store.list_reviews_for_user(reviewer_id) if r.is_public]
                if received:
                    reviewer_stats[reviewer_id] = (
                        sum(r.rating for r in received) / len(received),
                        len(received),
                    )
            return calculate_rating_stats(reviews, reviewer_stats)

        self._user(user_id)
        remember = getattr(self.cache, "remember", None)
        if remember is None:
            return compute()
        return remember(f"rating_stats:{user_id}", (user_tag(user_id), RATINGS_TAG), compute)

    # =========================================================================
    # Messages
    # =========================================================================

    def send_message(
        self,
        actor_id: int,
        recipient_id: int,
        content: str,
        job_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Message:
        """Send a direct message.

        Refused when either user has blocked the other. Delivery of the
        resulting notification re-checks the block at dispatch time.
        """
        try:
            data = MessageCreate(recipient_id=recipient_id, content=content, job_id=job_id)
        except ValidationError as e:
            raise ValueError(f"Invalid message: {_validation_message(e)}") from e
        if len(data.content) > self.settings.message_max_length:
            raise ValueError(f"Message cannot exceed {self.settings.message_max_length} characters")

        actor = self._user(actor_id)
        recipient = self._user(recipient_id)
        self._authorize(can_send_message_to(actor, recipient, self.blocks), "message this user", actor)
        if job_id is not None:
            self._job(job_id)

        message = Message(
            id=None,
            sender_id=actor.id,
            recipient_id=recipient.id,
            content=data.content,
            job_id=job_id,
            created_at=self._now(now),
        )
        result = self._commit(
            [Write(record=message, kind=MutationKind.CREATED)],
            events=lambda r: [MessageSent(r.record)],
        )
        return result.record

    def mark_message_read(self, actor_id: int, message_id: int) -> Message:
        actor = self._user(actor_id)
        message = self._message(message_id)
        self._authorize(can_mark_message_read(actor, message), "mark this message read", actor)
        if message.is_read:
            return message
        read = replace(message, is_read=True)
        return self._commit([self._update_write(message, read)]).record

    def delete_message(self, actor_id: int, message_id: int, now: Optional[datetime] = None) -> Message:
        """Soft delete. Senders have a limited window; admins do not."""
        actor = self._user(actor_id)
        message = self._message(message_id)
        now = self._now(now)
        self._authorize(
            can_delete_message(actor, message, now, self.settings.message_delete_window_hours),
            "delete this message",
            actor,
        )
        deleted = replace(message, deleted_at=now)
        write = self._update_write(message, deleted)
        write.kind = MutationKind.DELETED
        return self._commit([write]).record

    def send_typing_indicator(self, actor_id: int, recipient_id: int, is_typing: bool = True) -> None:
        """Broadcast a typing indicator. Nothing is stored."""
        actor = self._user(actor_id)
        recipient = self._user(recipient_id)
        self._authorize(can_send_message_to(actor, recipient, self.blocks), "message this user", actor)
        self._emit([UserTyping(user_id=actor.id, recipient_id=recipient.id, is_typing=is_typing)])

    # =========================================================================
    # Audit
    # =========================================================================

    def get_transitions(self, entity_type, entity_id: int) -> List[StateTransition]:
        """Status history of a job or payment, oldest first."""
        entity_type = EntityType(entity_type)
        if entity_type not in (EntityType.JOB, EntityType.PAYMENT):
            raise ValueError(f"No status history for {entity_type.value} records")
        return self.store.list_transitions(entity_type, entity_id)
