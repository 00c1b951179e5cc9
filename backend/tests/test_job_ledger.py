from __future__ import annotations

from datetime import timedelta

import pytest

from storefront.api.errors import NotFound, StateConflict
from storefront.core.config import settings
from storefront.enums import JobStatus, JobType
from storefront.models import Job, ensure_utc, utc_now
from storefront.services import job_ledger
from storefront.services.job_ledger import JobOutcome


def _enqueue(db, key: str = "order-1", **kwargs):
    job = job_ledger.enqueue(
        db, JobType.send_receipt_email, {"order_id": 1}, idempotency_key=key, **kwargs
    )
    db.commit()
    return job


def test_enqueue_is_idempotent_per_type_and_key(db):
    first = _enqueue(db)
    second = _enqueue(db)
    other_type = job_ledger.enqueue(db, JobType.issue_license, {"order_id": 1}, idempotency_key="order-1")
    db.commit()

    assert first.id == second.id
    assert other_type.id != first.id
    _, count = job_ledger.list_jobs(db)
    assert count == 2


def test_claim_leases_each_job_to_one_worker(db):
    for i in range(3):
        _enqueue(db, key=f"order-{i}")
    now = utc_now()

    first = job_ledger.claim(db, "worker-a", 2, now=now)
    second = job_ledger.claim(db, "worker-b", 10, now=now)

    assert len(first) == 2
    assert len(second) == 1
    assert {j.id for j in first}.isdisjoint({j.id for j in second})
    assert all(j.status == JobStatus.running and j.locked_by == "worker-a" for j in first)
    assert job_ledger.claim(db, "worker-c", 10, now=now) == []


def test_future_jobs_are_not_claimed(db):
    _enqueue(db, run_at=utc_now() + timedelta(hours=1))
    assert job_ledger.claim(db, "worker-a", now=utc_now()) == []


def test_stale_lease_is_reclaimed(db):
    job = _enqueue(db)
    now = utc_now()
    job_ledger.claim(db, "worker-a", now=now)

    assert job_ledger.claim(db, "worker-b", now=now + timedelta(seconds=10)) == []
    later = now + timedelta(seconds=settings.JOB_LEASE_SECONDS + 1)
    reclaimed = job_ledger.claim(db, "worker-b", now=later)
    assert [j.id for j in reclaimed] == [job.id]
    assert reclaimed[0].locked_by == "worker-b"

    # the crashed worker finishing late cannot overwrite the new owner's lease
    stale = job_ledger.complete(db, job.id, JobOutcome.success(), worker_id="worker-a", now=later)
    assert stale.status == JobStatus.running
    assert stale.locked_by == "worker-b"


def test_success_finishes_the_job(db):
    job = _enqueue(db)
    now = utc_now()
    job_ledger.claim(db, "w", now=now)

    done = job_ledger.complete(db, job.id, JobOutcome.success(), worker_id="w", now=now)
    assert done.status == JobStatus.succeeded
    assert done.finished_at is not None


def test_retry_backs_off_exponentially_then_dies(db):
    job = _enqueue(db, max_attempts=3)
    now = utc_now()

    for attempt in (1, 2):
        claimed = job_ledger.claim(db, "w", now=now)
        assert [j.id for j in claimed] == [job.id]
        job = job_ledger.complete(db, job.id, JobOutcome.retry("smtp down"), worker_id="w", now=now)
        assert job.status == JobStatus.queued
        assert job.attempts == attempt
        delay = job_ledger.backoff_seconds(attempt)
        assert ensure_utc(job.run_at) == now + timedelta(seconds=delay)
        assert job_ledger.claim(db, "w", now=now) == []
        now = now + timedelta(seconds=delay)

    job_ledger.claim(db, "w", now=now)
    job = job_ledger.complete(db, job.id, JobOutcome.retry("smtp down"), worker_id="w", now=now)
    assert job.status == JobStatus.dead
    assert job.attempts == 3
    assert job.last_error == "smtp down"
    assert job_ledger.claim(db, "w", now=now + timedelta(days=365)) == []


def test_crash_looping_job_ends_dead(db):
    job = _enqueue(db, max_attempts=3)
    now = utc_now()

    for _ in range(10):
        job_ledger.claim(db, "w", now=now)
        now = now + timedelta(seconds=settings.JOB_LEASE_SECONDS + 1)

    db.expire_all()
    job = db.get(Job, job.id)
    assert job.status == JobStatus.dead
    assert job.attempts == 3
    assert job.last_error == "lease expired"
    assert job.locked_by is None
    assert job_ledger.claim(db, "w", now=now + timedelta(days=365)) == []


def test_backoff_is_capped():
    assert job_ledger.backoff_seconds(0) == settings.JOB_BACKOFF_BASE_SECONDS
    assert job_ledger.backoff_seconds(1) == settings.JOB_BACKOFF_BASE_SECONDS * 2
    assert job_ledger.backoff_seconds(40) == settings.JOB_BACKOFF_MAX_SECONDS


def test_dead_outcome_skips_retries(db):
    job = _enqueue(db)
    now = utc_now()
    job_ledger.claim(db, "w", now=now)

    job = job_ledger.complete(db, job.id, JobOutcome.dead("no such user"), worker_id="w", now=now)
    assert job.status == JobStatus.dead
    assert job.attempts == 1


def test_parked_job_is_failed_not_dead(db):
    job = job_ledger.enqueue(db, "legacy_job", {}, idempotency_key="x")
    db.commit()
    now = utc_now()
    job_ledger.claim(db, "w", now=now)

    job = job_ledger.complete(db, job.id, JobOutcome.park("no handler"), worker_id="w", now=now)
    assert job.status == JobStatus.failed
    assert job.attempts == 0


def test_operator_retry_and_mark_dead(db):
    job = _enqueue(db)
    now = utc_now()
    job_ledger.claim(db, "w", now=now)
    job_ledger.complete(db, job.id, JobOutcome.dead("boom"), worker_id="w", now=now)

    retried = job_ledger.retry_job(db, job.id, now=now)
    assert retried.status == JobStatus.queued
    assert retried.attempts == 0
    assert retried.last_error is None
    with pytest.raises(StateConflict):
        job_ledger.retry_job(db, job.id)

    dead = job_ledger.mark_dead(db, job.id, reason="customer asked")
    assert dead.status == JobStatus.dead
    assert dead.last_error == "customer asked"
    # marking again is a no-op
    assert job_ledger.mark_dead(db, job.id).last_error == "customer asked"


def test_succeeded_job_cannot_be_marked_dead(db):
    job = _enqueue(db)
    now = utc_now()
    job_ledger.claim(db, "w", now=now)
    job_ledger.complete(db, job.id, JobOutcome.success(), worker_id="w", now=now)

    with pytest.raises(StateConflict):
        job_ledger.mark_dead(db, job.id)


def test_unknown_job(db):
    with pytest.raises(NotFound):
        job_ledger.get_job(db, 42)
    with pytest.raises(NotFound):
        job_ledger.complete(db, 42, JobOutcome.success())


def test_list_jobs_filters_by_status(db):
    _enqueue(db, key="a")
    job = _enqueue(db, key="b")
    job_ledger.mark_dead(db, job.id)

    dead, count = job_ledger.list_jobs(db, status=JobStatus.dead)
    assert count == 1
    assert [j.id for j in dead] == [job.id]
    _, queued = job_ledger.list_jobs(db, status=JobStatus.queued, job_type=JobType.send_receipt_email.value)
    assert queued == 1
