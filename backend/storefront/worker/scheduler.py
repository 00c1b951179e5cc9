"""
Sweep scheduler
"""

import logging
from datetime import timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from storefront.worker.tasks import (
    enqueue_daily_payout,
    expire_stale_checkouts,
    prune_stale_activations,
    release_held_commissions,
    replay_pending_events,
    retry_webhook_deliveries,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    jobs = [
        (replay_pending_events, IntervalTrigger(minutes=1), "replay_pending_events"),
        (retry_webhook_deliveries, IntervalTrigger(minutes=1), "retry_webhook_deliveries"),
        (expire_stale_checkouts, IntervalTrigger(minutes=15), "expire_stale_checkouts"),
        (release_held_commissions, IntervalTrigger(hours=1), "release_held_commissions"),
        (prune_stale_activations, CronTrigger(hour=3, minute=0), "prune_stale_activations"),
        (enqueue_daily_payout, CronTrigger(hour=0, minute=30), "affiliate_payout"),
    ]
    for func, trigger, job_id in jobs:
        # max_instances=1: a slow sweep is never overlapped by its next tick
        scheduler.add_job(
            func, trigger, id=job_id, replace_existing=True, max_instances=1, coalesce=True
        )
    return scheduler


def main() -> None:
    scheduler = build_scheduler()
    logger.info("Scheduler started. Sweeps run on UTC intervals; payouts at 00:30 UTC daily.")
    scheduler.start()


if __name__ == "__main__":
    main()
