"""
Scheduled sweeps.

Each sweep opens its own session and commits its own work. All of them are
safe to run concurrently on several hosts: the underlying services lock rows
with SKIP LOCKED or use conditional updates.
"""

import logging
from datetime import datetime, timezone

from sqlmodel import Session

from storefront.core.db import engine
from storefront.enums import JobType
from storefront.services import (
    affiliate_service,
    checkout_service,
    event_store,
    job_ledger,
    license_service,
    webhook_service,
)

logger = logging.getLogger(__name__)


def release_held_commissions() -> None:
    with Session(engine) as session:
        affiliate_service.release_held_commissions(session)


def prune_stale_activations() -> None:
    with Session(engine) as session:
        license_service.prune_stale_activations(session)


def retry_webhook_deliveries() -> None:
    with Session(engine) as session:
        webhook_service.retry_due_deliveries(session)


def replay_pending_events() -> None:
    with Session(engine) as session:
        event_store.replay_pending_events(session)


def expire_stale_checkouts() -> None:
    with Session(engine) as session:
        checkout_service.expire_stale_attempts(session)


def enqueue_daily_payout(now: datetime | None = None) -> None:
    """
    Enqueue the affiliate payout job once per UTC day.

    The date is the idempotency key, so extra scheduler instances or a
    restart on the same day do not add a second payout run.
    """
    now = now or datetime.now(timezone.utc)
    payout_day = now.strftime("%Y-%m-%d")
    with Session(engine) as session:
        job = job_ledger.enqueue(
            session,
            JobType.affiliate_payout,
            {"day": payout_day},
            idempotency_key=f"payout:{payout_day}",
        )
        session.commit()
        logger.info(f"Affiliate payout job {job.id} queued for {payout_day}")
