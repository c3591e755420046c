"""Tests for the entity store backends.

Every test runs against both the in-memory and the SQLite store.
"""

import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from marketflow.errors import ConflictError, DuplicatePaymentError, DuplicateReviewError, EntityNotFoundError
from marketflow.storage import InMemoryEntityStore, SQLiteEntityStore, Write
from marketflow.types import (
    EntityType,
    Job,
    MutationKind,
    Payment,
    Review,
    StateTransition,
    User,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def entity_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryEntityStore()
    return SQLiteEntityStore(tmp_path / "entities.db")


def create(store, record, transition=None):
    return store.commit([Write(record=record, kind=MutationKind.CREATED, transition=transition)]).record


def update(store, old, new, **kwargs):
    return store.commit([Write(record=new, expected_version=old.version, **kwargs)]).record


class TestCreateAndGet:
    """Tests for creating and loading records."""

    def test_ids_assigned_per_type(self, entity_store):
        first = create(entity_store, Job(id=None, owner_id=1, title="First"))
        second = create(entity_store, Job(id=None, owner_id=1, title="Second"))
        user = create(entity_store, User(id=None, name="A", email="a@example.com"))

        assert (first.id, second.id) == (1, 2)
        assert user.id == 1
        assert first.version == 1

    def test_round_trip_preserves_types(self, entity_store):
        job = create(
            entity_store,
            Job(
                id=None,
                owner_id=1,
                title="Logo",
                budget_min=Decimal("100.50"),
                budget_max=Decimal("200"),
                deadline=NOW,
                created_at=NOW,
            ),
        )

        loaded = entity_store.get(EntityType.JOB, job.id)

        assert loaded == job
        assert loaded.budget_min == Decimal("100.50")
        assert loaded.deadline == NOW

    def test_get_missing_raises(self, entity_store):
        with pytest.raises(EntityNotFoundError, match="job 99 not found"):
            entity_store.get(EntityType.JOB, 99)

    def test_returned_records_are_copies(self, entity_store):
        job = create(entity_store, Job(id=None, owner_id=1, title="Original"))
        job.title = "Mutated locally"

        assert entity_store.get(EntityType.JOB, job.id).title == "Original"


class TestCompareAndSet:
    """Tests for versioned updates."""

    def test_update_bumps_version(self, entity_store):
        job = create(entity_store, Job(id=None, owner_id=1, title="t"))

        updated = update(entity_store, job, replace(job, title="new"))

        assert updated.version == 2
        assert entity_store.get(EntityType.JOB, job.id).title == "new"

    def test_stale_version_conflicts(self, entity_store):
        job = create(entity_store, Job(id=None, owner_id=1, title="t"))
        update(entity_store, job, replace(job, title="first"))

        with pytest.raises(ConflictError) as exc_info:
            update(entity_store, job, replace(job, title="second"))

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert entity_store.get(EntityType.JOB, job.id).title == "first"

    def test_failed_commit_applies_nothing(self, entity_store):
        a = create(entity_store, Job(id=None, owner_id=1, title="a"))
        b = create(entity_store, Job(id=None, owner_id=1, title="b"))
        update(entity_store, b, replace(b, title="b2"))

        with pytest.raises(ConflictError):
            entity_store.commit(
                [
                    Write(record=replace(a, title="a2"), expected_version=a.version),
                    Write(record=replace(b, title="b3"), expected_version=b.version),
                ]
            )

        assert entity_store.get(EntityType.JOB, a.id).title == "a"

    def test_updates_require_expected_version(self):
        with pytest.raises(ValueError, match="expected_version"):
            Write(record=Job(id=1, owner_id=1, title="t"), kind=MutationKind.UPDATED)

    def test_concurrent_updates_one_winner(self, entity_store):
        job = create(entity_store, Job(id=None, owner_id=1, title="t"))
        results, errors = [], []
        start = threading.Barrier(5)

        def writer(n):
            start.wait()
            try:
                results.append(update(entity_store, job, replace(job, title=f"writer {n}")))
            except ConflictError as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 4


class TestUniqueness:
    """Tests for per-type uniqueness rules."""

    def test_one_payment_per_job(self, entity_store):
        create(entity_store, Payment(id=None, job_id=7, payer_id=1, payee_id=2, amount=Decimal("50")))

        with pytest.raises(DuplicatePaymentError, match="job 7"):
            create(entity_store, Payment(id=None, job_id=7, payer_id=1, payee_id=2, amount=Decimal("60")))

    def test_one_review_per_job_and_reviewer(self, entity_store):
        create(entity_store, Review(id=None, job_id=7, reviewer_id=1, reviewee_id=2, rating=5))
        create(entity_store, Review(id=None, job_id=7, reviewer_id=2, reviewee_id=1, rating=4))

        with pytest.raises(DuplicateReviewError):
            create(entity_store, Review(id=None, job_id=7, reviewer_id=1, reviewee_id=2, rating=1))

    def test_email_unique(self, entity_store):
        create(entity_store, User(id=None, name="A", email="same@example.com"))

        with pytest.raises(ValueError, match="already registered"):
            create(entity_store, User(id=None, name="B", email="Same@Example.com"))

    def test_updating_unique_record_is_allowed(self, entity_store):
        payment = create(entity_store, Payment(id=None, job_id=7, payer_id=1, payee_id=2, amount=Decimal("50")))

        updated = update(entity_store, payment, replace(payment, status="held"))

        assert updated.status == "held"


class TestFinders:
    """Tests for store queries."""

    def test_find_payment_and_review(self, entity_store):
        payment = create(entity_store, Payment(id=None, job_id=3, payer_id=1, payee_id=2, amount=Decimal("10")))
        review = create(entity_store, Review(id=None, job_id=3, reviewer_id=1, reviewee_id=2, rating=4))

        assert entity_store.find_payment_for_job(3) == payment
        assert entity_store.find_payment_for_job(4) is None
        assert entity_store.find_review(3, 1) == review
        assert entity_store.find_review(3, 2) is None

    def test_list_reviews_for_user(self, entity_store):
        create(entity_store, Review(id=None, job_id=1, reviewer_id=1, reviewee_id=2, rating=4))
        create(entity_store, Review(id=None, job_id=2, reviewer_id=3, reviewee_id=2, rating=5))
        create(entity_store, Review(id=None, job_id=1, reviewer_id=2, reviewee_id=1, rating=3))

        assert [r.rating for r in entity_store.list_reviews_for_user(2)] == [4, 5]

    def test_list_open_jobs_skips_deleted_and_closed(self, entity_store):
        open_job = create(entity_store, Job(id=None, owner_id=1, title="open"))
        deleted = create(entity_store, Job(id=None, owner_id=1, title="deleted"))
        create(entity_store, Job(id=None, owner_id=1, title="done", status="completed", assigned_to=2))
        entity_store.commit(
            [
                Write(
                    record=replace(deleted, deleted_at=NOW),
                    kind=MutationKind.DELETED,
                    expected_version=deleted.version,
                )
            ]
        )

        assert [j.id for j in entity_store.list_open_jobs()] == [open_job.id]

    def test_transitions_recorded_with_commit(self, entity_store):
        opened = StateTransition(
            id=None, entity_type="job", entity_id=None, from_status=None, to_status="open",
            actor_id=1, created_at=NOW,
        )
        job = create(entity_store, Job(id=None, owner_id=1, title="t"), transition=opened)
        started = StateTransition(
            id=None, entity_type="job", entity_id=job.id, from_status="open", to_status="in_progress",
            actor_id=1, created_at=NOW,
        )
        update(entity_store, job, replace(job, status="in_progress", assigned_to=2), transition=started)

        history = entity_store.list_transitions(EntityType.JOB, job.id)

        assert [(t.from_status, t.to_status) for t in history] == [(None, "open"), ("open", "in_progress")]
        assert all(t.entity_id == job.id for t in history)
        assert history[0].created_at == NOW

    def test_commit_result_carries_mutations(self, entity_store):
        job = create(entity_store, Job(id=None, owner_id=1, title="t"))

        result = entity_store.commit(
            [
                Write(
                    record=replace(job, title="renamed"),
                    expected_version=job.version,
                    changed_fields=frozenset({"title"}),
                    previous={"title": "t"},
                )
            ]
        )

        mutation = result.mutations[0]
        assert mutation.entity_type == EntityType.JOB
        assert mutation.kind == MutationKind.UPDATED
        assert mutation.previous == {"title": "t"}


def test_sqlite_store_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "entities.db"
    job = create(SQLiteEntityStore(path), Job(id=None, owner_id=1, title="durable"))

    reopened = SQLiteEntityStore(path)

    assert reopened.get(EntityType.JOB, job.id).title == "durable"
