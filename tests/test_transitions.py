"""Tests for the job and payment lifecycle tables."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketflow.errors import (
    AlreadyAssignedError,
    InvalidPaymentTransitionError,
    InvalidTransitionError,
    SelfAssignmentDeniedError,
)
from marketflow.transitions import (
    VALID_JOB_TRANSITIONS,
    calculate_platform_fee,
    can_transition_job,
    can_transition_payment,
    is_terminal_payment,
    overdue_jobs,
    plan_assignment,
    plan_job_transition,
    plan_payment_transition,
)
from marketflow.types import Job, JobStatus, Payment, PaymentStatus

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


def make_job(**overrides) -> Job:
    fields = {"id": 1, "owner_id": 1, "title": "Write docs"}
    fields.update(overrides)
    return Job(**fields)


def make_payment(status: str = "pending") -> Payment:
    return Payment(id=1, job_id=1, payer_id=1, payee_id=2, amount=Decimal("100"), status=status)


class TestJobTable:
    """Tests for the job lifecycle table."""

    @pytest.mark.parametrize(
        "current,new",
        [
            ("open", "in_progress"),
            ("open", "cancelled"),
            ("open", "expired"),
            ("in_progress", "completed"),
            ("in_progress", "cancelled"),
            ("cancelled", "open"),
            ("expired", "open"),
        ],
    )
    def test_allowed_moves(self, current, new):
        assert can_transition_job(current, new)

    @pytest.mark.parametrize(
        "current,new",
        [
            ("open", "completed"),
            ("in_progress", "open"),
            ("in_progress", "expired"),
            ("cancelled", "in_progress"),
            ("expired", "completed"),
        ],
    )
    def test_rejected_moves(self, current, new):
        assert not can_transition_job(current, new)

    def test_completed_is_terminal(self):
        """No move out of completed is allowed."""
        assert VALID_JOB_TRANSITIONS[JobStatus.COMPLETED] == frozenset()
        for status in JobStatus:
            assert not can_transition_job("completed", status)

    def test_unknown_status_raises(self):
        with pytest.raises(ValueError, match="Unknown job status"):
            can_transition_job("open", "archived")


class TestPlanJobTransition:
    """Tests for job transition planning."""

    def test_returns_updated_copy(self):
        job = make_job(status="in_progress", assigned_to=2)
        planned = plan_job_transition(job, "completed", NOW)

        assert planned.status == "completed"
        assert planned.updated_at == NOW
        assert job.status == "in_progress"

    def test_cancel_clears_assignee(self):
        job = make_job(status="in_progress", assigned_to=2)
        planned = plan_job_transition(job, JobStatus.CANCELLED, NOW)

        assert planned.status == "cancelled"
        assert planned.assigned_to is None

    def test_in_progress_requires_assignee(self):
        with pytest.raises(InvalidTransitionError, match="no assigned user"):
            plan_job_transition(make_job(), "in_progress", NOW)

    def test_invalid_move_raises(self):
        job = make_job(status="completed", assigned_to=2)
        with pytest.raises(InvalidTransitionError, match="completed to cancelled"):
            plan_job_transition(job, "cancelled", NOW)


class TestPlanAssignment:
    """Tests for assignment planning."""

    def test_assign_moves_to_in_progress(self):
        planned = plan_assignment(make_job(), 2, NOW)

        assert planned.assigned_to == 2
        assert planned.status == "in_progress"

    def test_unassign_keeps_job_open(self):
        planned = plan_assignment(make_job(), None, NOW)

        assert planned.assigned_to is None
        assert planned.status == "open"

    def test_owner_cannot_be_assigned(self):
        with pytest.raises(SelfAssignmentDeniedError):
            plan_assignment(make_job(owner_id=5), 5, NOW)

    def test_assigning_non_open_job_fails(self):
        job = make_job(status="in_progress", assigned_to=2)

        with pytest.raises(AlreadyAssignedError) as exc_info:
            plan_assignment(job, 3, NOW)

        assert isinstance(exc_info.value, InvalidTransitionError)
        assert exc_info.value.from_status == "in_progress"


class TestPaymentTable:
    """Tests for the payment lifecycle table."""

    def test_pending_moves(self):
        assert can_transition_payment("pending", "held")
        assert can_transition_payment("pending", "failed")
        assert not can_transition_payment("pending", "released")

    def test_held_moves(self):
        for target in ("released", "refunded", "disputed", "failed"):
            assert can_transition_payment("held", target)
        assert not can_transition_payment("held", "pending")

    def test_released_can_only_be_refunded(self):
        assert can_transition_payment("released", "refunded")
        assert not can_transition_payment("released", "disputed")
        assert not can_transition_payment("released", "held")

    @pytest.mark.parametrize("status", ["refunded", "failed", "disputed"])
    def test_terminal_statuses(self, status):
        assert is_terminal_payment(status)
        for target in PaymentStatus:
            assert not can_transition_payment(status, target)

    def test_plan_release_sets_timestamp(self):
        planned = plan_payment_transition(make_payment("held"), "released", NOW)

        assert planned.status == "released"
        assert planned.released_at == NOW
        assert planned.refunded_at is None

    def test_plan_refund_sets_timestamp(self):
        planned = plan_payment_transition(make_payment("released"), PaymentStatus.REFUNDED, NOW)
        assert planned.refunded_at == NOW

    def test_plan_invalid_move_raises(self):
        with pytest.raises(InvalidPaymentTransitionError, match="pending to released"):
            plan_payment_transition(make_payment("pending"), "released", NOW)


class TestHelpers:
    """Tests for overdue detection and fee calculation."""

    def test_overdue_jobs(self):
        jobs = [
            make_job(id=1, deadline=NOW - timedelta(hours=1)),
            make_job(id=2, deadline=NOW + timedelta(hours=1)),
            make_job(id=3),
            make_job(id=4, deadline=NOW - timedelta(days=1), status="in_progress", assigned_to=2),
            make_job(id=5, deadline=NOW - timedelta(days=1), deleted_at=NOW),
        ]

        assert [j.id for j in overdue_jobs(jobs, NOW)] == [1]

    def test_platform_fee(self):
        assert calculate_platform_fee(Decimal("150")) == Decimal("7.50")
        assert calculate_platform_fee("99.99", 5.0) == Decimal("5.00")
        assert calculate_platform_fee(100, 0) == Decimal("0.00")

    def test_negative_fee_percent_rejected(self):
        with pytest.raises(ValueError):
            calculate_platform_fee(100, -1)
