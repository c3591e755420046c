"""Tests for boundary validation models."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from marketflow.schemas import JobCreate, MessageCreate, PaymentCreate, ReviewCreate


class TestJobCreate:
    def test_defaults(self):
        job = JobCreate(title="  Tutor needed  ")

        assert job.title == "Tutor needed"
        assert job.budget_type == "fixed"
        assert job.is_urgent is False

    def test_budget_range(self):
        with pytest.raises(ValidationError, match="budget_max"):
            JobCreate(title="t", budget_min=Decimal("50"), budget_max=Decimal("10"))

    def test_budget_ceiling(self):
        with pytest.raises(ValidationError):
            JobCreate(title="t", budget_max=Decimal("1000000"))

    def test_budget_type_choices(self):
        with pytest.raises(ValidationError):
            JobCreate(title="t", budget_type="monthly")

    def test_blank_title(self):
        with pytest.raises(ValidationError, match="blank"):
            JobCreate(title="   ")

    def test_description_limit(self):
        with pytest.raises(ValidationError):
            JobCreate(title="t", description="x" * 5001)

    def test_naive_deadline_is_utc(self):
        job = JobCreate(title="t", deadline=datetime(2025, 3, 5, 12, 0))

        assert job.deadline == datetime(2025, 3, 5, 12, 0, tzinfo=timezone.utc)

    def test_deadline_must_follow_now(self):
        now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        context = {"now": now}

        JobCreate.model_validate({"title": "t", "deadline": now + timedelta(hours=1)}, context=context)
        with pytest.raises(ValidationError, match="future"):
            JobCreate.model_validate({"title": "t", "deadline": now}, context=context)
        with pytest.raises(ValidationError, match="future"):
            JobCreate.model_validate({"title": "t", "deadline": now - timedelta(days=30)}, context=context)

    def test_deadline_unchecked_without_now(self):
        past = datetime(2020, 1, 1, tzinfo=timezone.utc)
        assert JobCreate(title="t", deadline=past).deadline == past


class TestMessageCreate:
    def test_valid(self):
        assert MessageCreate(recipient_id=2, content="Hello there").content == "Hello there"

    def test_ten_repeats_allowed_eleven_rejected(self):
        MessageCreate(recipient_id=2, content="Wow" + "!" * 10)

        with pytest.raises(ValidationError, match="spam"):
            MessageCreate(recipient_id=2, content="Wow" + "!" * 11)


class TestReviewCreate:
    def test_bounds(self):
        ReviewCreate(job_id=1, reviewee_id=2, rating=5, comment="Fast and friendly")

        with pytest.raises(ValidationError):
            ReviewCreate(job_id=1, reviewee_id=2, rating=0)
        with pytest.raises(ValidationError):
            ReviewCreate(job_id=1, reviewee_id=2, rating=3, comment="short")


class TestPaymentCreate:
    def test_cap_needs_context(self):
        assert PaymentCreate(job_id=1, amount=Decimal("5000")).amount == Decimal("5000")

    def test_cap_at_110_percent(self):
        context = {"job_budget_max": Decimal("100")}

        ok = PaymentCreate.model_validate({"job_id": 1, "amount": "110.00"}, context=context)
        assert ok.amount == Decimal("110.00")

        with pytest.raises(ValidationError, match="110%"):
            PaymentCreate.model_validate({"job_id": 1, "amount": "110.01"}, context=context)

    def test_more_than_two_decimals_rejected(self):
        with pytest.raises(ValidationError):
            PaymentCreate(job_id=1, amount=Decimal("10.001"))
