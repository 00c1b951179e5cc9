"""
Job ledger table.

A job is a tagged variant: job_type selects the handler, payload carries
that handler's arguments. Jobs are never deleted; the table is the audit
trail of every side effect the engine attempted.
"""
from datetime import datetime

from sqlalchemy import JSON, Column, Index, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from storefront.enums import JobStatus

from .base import created_field, id_field, timestamp_field


class Job(SQLModel, table=True):
    """
    Unit of background work.

    Fields:
    - job_type: handler name (see storefront.enums.JobType)
    - payload: handler arguments
    - status: queued / running / succeeded / failed / dead
    - run_at: earliest time the job may be claimed
    - locked_by / locked_at: lease of the worker that claimed it
    - attempts / max_attempts: failed runs so far and the ceiling
    - last_error: error of the most recent failed run
    - idempotency_key: unique per job_type; re-enqueueing is a no-op
    """
    __tablename__ = "jobs"
    __table_args__ = (
        UniqueConstraint("job_type", "idempotency_key", name="uq_jobs_type_idempotency_key"),
        Index("ix_jobs_status_run_at", "status", "run_at"),
    )
    id: int = id_field()
    job_type: str = Field(sa_column=Column(String(64), index=True, nullable=False))
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    status: JobStatus = Field(
        default=JobStatus.queued, sa_column=Column(String(16), nullable=False)
    )
    run_at: datetime = created_field()
    locked_by: str | None = Field(default=None, max_length=128)
    locked_at: datetime | None = timestamp_field()

    attempts: int = Field(default=0)
    max_attempts: int = Field(default=8)
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    idempotency_key: str | None = Field(default=None, max_length=255)

    created_at: datetime = created_field()
    updated_at: datetime = created_field()
    finished_at: datetime | None = timestamp_field()
