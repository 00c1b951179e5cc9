"""
Job ledger: a claim-based work queue on the relational store.

- enqueue: insert a queued job inside the caller's transaction; an
  idempotency key that already exists for the job type returns that job
- claim: lease up to N due jobs to one worker. Candidates are selected
  with SELECT ... FOR UPDATE SKIP LOCKED (rows locked by a concurrent claim
  are skipped, not waited on), then each is stamped by a conditional UPDATE
  that only matches while the row is still claimable. A row counts as
  claimed only if that UPDATE hit it, so two workers never hold the same
  job even where the database ignores FOR UPDATE (SQLite)
- complete: succeed, retry with exponential backoff, or dead-letter

Running jobs whose lease (locked_at) is older than JOB_LEASE_SECONDS are
claimable again: that is the only crash recovery. A reclaim counts as a
spent attempt, and the reclaim that would exhaust max_attempts dead-letters
the job instead ("lease expired"). A lease is not a kill switch, so
handlers must stay idempotent.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Literal

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from storefront.api.errors import NotFound, StateConflict
from storefront.core.config import settings
from storefront.enums import JobStatus
from storefront.models import Job, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobOutcome:
    """
    Result of one job run.

    kind:
    - success: job done
    - retry: transient failure, back off and requeue (or dead when exhausted)
    - dead: terminal rejection, never retried
    - park: no handler for the job type, park as failed
    """
    kind: Literal["success", "retry", "dead", "park"]
    error: str | None = None

    @classmethod
    def success(cls) -> JobOutcome:
        return cls("success")

    @classmethod
    def retry(cls, error: str) -> JobOutcome:
        return cls("retry", error)

    @classmethod
    def dead(cls, error: str) -> JobOutcome:
        return cls("dead", error)

    @classmethod
    def park(cls, error: str) -> JobOutcome:
        return cls("park", error)


def backoff_seconds(attempts: int) -> int:
    """base * 2^attempts, capped at JOB_BACKOFF_MAX_SECONDS."""
    delay = settings.JOB_BACKOFF_BASE_SECONDS * (2 ** attempts)
    return min(delay, settings.JOB_BACKOFF_MAX_SECONDS)


def _type_name(job_type: str | Enum) -> str:
    return job_type.value if isinstance(job_type, Enum) else str(job_type)


def enqueue(
    session: Session,
    job_type: str | Enum,
    payload: dict[str, Any] | None = None,
    *,
    idempotency_key: str | None = None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
) -> Job:
    """
    Add a queued job to the current transaction.

    Args:
        session: caller's session; the job commits with the caller's writes
        job_type: handler name
        payload: handler arguments (JSON serializable)
        idempotency_key: dedupe key, unique per job type
        run_at: earliest claim time, defaults to now
        max_attempts: defaults to JOB_MAX_ATTEMPTS

    Returns:
        The new job, or the existing one when the key was already used
    """
    name = _type_name(job_type)
    if idempotency_key is not None:
        existing = session.exec(
            select(Job).where(Job.job_type == name, Job.idempotency_key == idempotency_key)
        ).first()
        if existing:
            logger.debug(f"Job {name}/{idempotency_key} already enqueued as {existing.id}")
            return existing

    now = utc_now()
    job = Job(
        job_type=name,
        payload=payload or {},
        status=JobStatus.queued,
        run_at=run_at or now,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
        idempotency_key=idempotency_key,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    session.flush()
    logger.info(f"Enqueued job {job.id} type={name} key={idempotency_key}")
    return job


def _claimable(now: datetime, stale_before: datetime) -> Any:
    return or_(
        and_(Job.status == JobStatus.queued, Job.run_at <= now),
        and_(Job.status == JobStatus.running, Job.locked_at < stale_before),
    )


def _expire_lease(session: Session, job_id: int, stale_before: datetime, now: datetime) -> bool:
    """
    Dead-letter a stale running job whose reclaim would use its last attempt.

    Returns:
        True if the job went dead instead of being reclaimed
    """
    result = session.exec(
        update(Job)
        .where(
            col(Job.id) == job_id,
            Job.status == JobStatus.running,
            Job.locked_at < stale_before,
            Job.attempts + 1 >= Job.max_attempts,
        )
        .values(
            attempts=Job.attempts + 1,
            status=JobStatus.dead,
            last_error="lease expired",
            locked_by=None,
            locked_at=None,
            finished_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    logger.warning(f"Job {job_id} dead: lease expired on its last attempt")
    return True


@retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, max=1),
    reraise=True,
)
def claim(
    session: Session,
    worker_id: str,
    batch_size: int | None = None,
    *,
    now: datetime | None = None,
) -> list[Job]:
    """
    Lease up to ``batch_size`` due jobs to ``worker_id`` and commit.

    Returns:
        The claimed jobs, status running, locked_by=worker_id, locked_at=now
    """
    now = now or utc_now()
    batch_size = batch_size or settings.JOB_CLAIM_BATCH_SIZE
    stale_before = now - timedelta(seconds=settings.JOB_LEASE_SECONDS)

    try:
        candidates = session.exec(
            select(Job.id, Job.status, Job.locked_by)
            .where(_claimable(now, stale_before))
            .order_by(col(Job.run_at))
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        ).all()

        claimed: list[int] = []
        for job_id, status, previous_owner in candidates:
            if status == JobStatus.running and _expire_lease(session, job_id, stale_before, now):
                continue
            result = session.exec(
                update(Job)
                .where(col(Job.id) == job_id, _claimable(now, stale_before))
                .values(
                    # a reclaimed lease is a run that never reported back
                    attempts=Job.attempts + case((Job.status == JobStatus.running, 1), else_=0),
                    status=JobStatus.running,
                    locked_by=worker_id,
                    locked_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            if status == JobStatus.running:
                logger.warning(
                    f"Reclaimed job {job_id} from stale lease held by {previous_owner}"
                )
            claimed.append(job_id)
        session.commit()
    except OperationalError:
        session.rollback()
        raise

    if not claimed:
        return []
    jobs = session.exec(
        select(Job)
        .where(col(Job.id).in_(claimed))
        .order_by(col(Job.run_at))
        .execution_options(populate_existing=True)
    ).all()
    logger.info(f"Worker {worker_id} claimed {len(jobs)} job(s)")
    return list(jobs)


def complete(
    session: Session,
    job_id: int,
    outcome: JobOutcome,
    *,
    worker_id: str | None = None,
    now: datetime | None = None,
) -> Job:
    """
    Record the outcome of a run and commit (together with any pending
    handler writes in the same session).

    A worker that lost its lease (the job was reclaimed by someone else, or
    an operator intervened) cannot overwrite the current state; its
    completion is logged and ignored.

    Raises:
        NotFound: unknown job id
    """
    now = now or utc_now()
    job = session.exec(
        select(Job)
        .where(Job.id == job_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if not job:
        raise NotFound(f"Job {job_id} not found")

    if job.status != JobStatus.running or (worker_id and job.locked_by != worker_id):
        logger.warning(
            f"Ignoring completion of job {job_id} by {worker_id}: "
            f"status={JobStatus(job.status).value} locked_by={job.locked_by}"
        )
        session.commit()
        return job

    if outcome.kind == "success":
        job.status = JobStatus.succeeded
        job.finished_at = now
        logger.info(f"Job {job.id} ({job.job_type}) succeeded")
    elif outcome.kind == "park":
        job.status = JobStatus.failed
        job.last_error = outcome.error
        job.locked_at = None
        logger.warning(f"Job {job.id} ({job.job_type}) parked: {outcome.error}")
    else:
        job.attempts += 1
        job.last_error = outcome.error
        if outcome.kind == "dead" or job.attempts >= job.max_attempts:
            job.status = JobStatus.dead
            job.finished_at = now
            logger.warning(
                f"Job {job.id} ({job.job_type}) dead after {job.attempts} attempt(s): "
                f"{outcome.error}"
            )
        else:
            delay = backoff_seconds(job.attempts)
            job.status = JobStatus.queued
            job.run_at = now + timedelta(seconds=delay)
            job.locked_by = None
            job.locked_at = None
            logger.info(
                f"Job {job.id} ({job.job_type}) failed attempt {job.attempts}, "
                f"retry in {delay}s: {outcome.error}"
            )
    job.updated_at = now
    session.add(job)
    session.commit()
    session.refresh(job)
    return job


# ---------------------------------------------------------------------------
# Operator surface
# ---------------------------------------------------------------------------


def get_job(session: Session, job_id: int) -> Job:
    job = session.get(Job, job_id)
    if not job:
        raise NotFound(f"Job {job_id} not found")
    return job


def list_jobs(
    session: Session,
    *,
    status: JobStatus | None = None,
    job_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Job], int]:
    """Jobs newest first, with the total count for paging."""
    filters = []
    if status is not None:
        filters.append(Job.status == status)
    if job_type:
        filters.append(Job.job_type == job_type)

    count = session.exec(select(func.count()).select_from(Job).where(*filters)).one()
    rows = session.exec(
        select(Job)
        .where(*filters)
        .order_by(col(Job.created_at).desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return list(rows), count


def retry_job(session: Session, job_id: int, *, now: datetime | None = None) -> Job:
    """
    Manually requeue a dead or parked job with a fresh attempt budget.

    Raises:
        StateConflict: the job is not dead/failed
    """
    now = now or utc_now()
    job = get_job(session, job_id)
    if job.status not in (JobStatus.dead, JobStatus.failed):
        raise StateConflict(f"Job {job_id} is {JobStatus(job.status).value}, only dead or failed jobs can be retried")
    job.status = JobStatus.queued
    job.attempts = 0
    job.last_error = None
    job.run_at = now
    job.locked_by = None
    job.locked_at = None
    job.finished_at = None
    job.updated_at = now
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.info(f"Job {job.id} requeued by operator")
    return job


def mark_dead(
    session: Session, job_id: int, *, reason: str | None = None, now: datetime | None = None
) -> Job:
    """
    Manually dead-letter a job that has not finished.

    Raises:
        StateConflict: the job already succeeded
    """
    now = now or utc_now()
    job = get_job(session, job_id)
    if job.status == JobStatus.dead:
        return job
    if job.status == JobStatus.succeeded:
        raise StateConflict(f"Job {job_id} already succeeded")
    job.status = JobStatus.dead
    job.last_error = reason or "marked dead by operator"
    job.finished_at = now
    job.updated_at = now
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.warning(f"Job {job.id} marked dead by operator: {job.last_error}")
    return job
