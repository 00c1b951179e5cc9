"""
Job worker - runs fulfillment jobs from the job ledger.

Any number of workers can run against the same database: claiming uses
FOR UPDATE SKIP LOCKED plus a conditional update, so a job is leased to one
worker at a time. A worker that dies mid-job loses its lease after
JOB_LEASE_SECONDS and the job is claimed again elsewhere.
"""

import logging
import os
import signal
import socket
import time
import uuid
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from storefront.core.config import settings
from storefront.core.db import engine as default_engine
from storefront.enums import JobStatus
from storefront.services import job_ledger
from storefront.services.executors import run_job

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class JobWorker:
    def __init__(
        self,
        engine: Engine | None = None,
        *,
        worker_id: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.engine = engine or default_engine
        self.worker_id = worker_id or default_worker_id()
        self.batch_size = batch_size or settings.JOB_CLAIM_BATCH_SIZE
        self.poll_interval = (
            settings.JOB_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self._running = False

    def run_once(self, now: datetime | None = None) -> int:
        """
        Claim one batch and run it.

        Each job runs in its own session so one job's rollback never touches
        another's writes.

        Returns:
            Number of jobs run
        """
        with Session(self.engine) as session:
            jobs = job_ledger.claim(session, self.worker_id, self.batch_size, now=now)
            job_ids = [job.id for job in jobs]
        for job_id in job_ids:
            with Session(self.engine) as session:
                job = job_ledger.get_job(session, job_id)
                logger.info(f"Running job {job_id} ({job.job_type}, attempt {job.attempts + 1})")
                result = run_job(session, job, worker_id=self.worker_id, now=now)
                logger.info(f"Job {job_id} -> {JobStatus(result.status).value}")
        return len(job_ids)

    def run_forever(self) -> None:
        self._running = True
        logger.info(f"Worker {self.worker_id} started")
        while self._running:
            try:
                ran = self.run_once()
            except OperationalError as e:
                logger.error(f"Worker {self.worker_id}: database error: {e}")
                ran = 0
            if not ran:
                time.sleep(self.poll_interval)
        logger.info(f"Worker {self.worker_id} stopped")

    def stop(self, *_: object) -> None:
        self._running = False


def main() -> None:
    worker = JobWorker()
    signal.signal(signal.SIGTERM, worker.stop)
    signal.signal(signal.SIGINT, worker.stop)
    worker.run_forever()


if __name__ == "__main__":
    main()
