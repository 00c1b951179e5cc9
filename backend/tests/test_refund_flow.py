from __future__ import annotations

from datetime import timedelta

import pytest
from factories import dispute_event, ingest, paid_event, refund_event
from sqlmodel import select

from storefront.api.errors import LicenseRevoked
from storefront.core.config import settings
from storefront.enums import (
    CommissionStatus,
    EntitlementStatus,
    JobType,
    LicenseStatus,
    OrderStatus,
)
from storefront.models import AffiliateCommission, Entitlement, Job, License, Order, utc_now
from storefront.services import affiliate_service, executors, license_service
from storefront.worker.job_worker import JobWorker


class _NullMailer:
    def send(self, *, to: str, subject: str, text: str) -> None:
        pass


@pytest.fixture(autouse=True)
def _quiet_mailer(monkeypatch):
    monkeypatch.setattr(executors, "get_mailer", lambda: _NullMailer())


@pytest.fixture
def worker(engine) -> JobWorker:
    return JobWorker(engine, worker_id="test-worker", batch_size=50, poll_interval=0)


def _drain(worker: JobWorker) -> None:
    while worker.run_once():
        pass


def _order(db) -> Order:
    db.expire_all()
    return db.exec(select(Order)).one()


def _entitlement_status(db, order: Order) -> str:
    return db.exec(select(Entitlement).where(Entitlement.order_id == order.id)).one().status


def _webhook_event_ids(db) -> list[str]:
    jobs = db.exec(
        select(Job).where(Job.job_type == JobType.deliver_outbound_webhooks.value)
    ).all()
    return sorted(job.idempotency_key for job in jobs)


def test_full_refund_revokes_everything(db, start_checkout, worker):
    attempt = start_checkout(affiliate="ally")
    ingest(db, paid_event(attempt))
    _drain(worker)

    license = db.exec(select(License)).one()
    license_service.activate(db, license.license_key, "device-a")
    commission = db.exec(select(AffiliateCommission)).one()
    assert commission.status == CommissionStatus.pending
    past_holding = utc_now() + timedelta(days=settings.AFFILIATE_HOLDING_DAYS + 1)
    assert affiliate_service.release_held_commissions(db, now=past_holding) == 1
    db.refresh(commission)
    assert commission.status == CommissionStatus.available

    ingest(db, refund_event(f"pi_{attempt.id}", 2000, event_id="evt_refund", full=True))
    order = _order(db)
    assert order.status == OrderStatus.refunded
    assert _entitlement_status(db, order) == EntitlementStatus.revoked

    _drain(worker)

    db.expire_all()
    assert db.get(License, license.id).status == LicenseStatus.revoked
    assert db.get(AffiliateCommission, commission.id).status == CommissionStatus.reversed
    with pytest.raises(LicenseRevoked):
        license_service.validate(db, license.license_key, "device-a")
    with pytest.raises(LicenseRevoked):
        license_service.activate(db, license.license_key, "device-b")
    assert _webhook_event_ids(db) == sorted(
        [f"order.paid:{order.id}:0", f"order.refunded:{order.id}:2000"]
    )


def test_refund_replay_changes_nothing(db, start_checkout, worker):
    attempt = start_checkout()
    ingest(db, paid_event(attempt))
    payload = refund_event(f"pi_{attempt.id}", 500, event_id="evt_partial")

    ingest(db, payload)
    jobs_after_first = len(db.exec(select(Job)).all())
    # same refund reported again under a new event id
    ingest(db, {**payload, "id": "evt_partial_again"})

    assert len(db.exec(select(Job)).all()) == jobs_after_first
    assert _order(db).refunded_cents == 500


def test_partial_refund_revokes_by_default(db, start_checkout):
    attempt = start_checkout()
    ingest(db, paid_event(attempt))

    ingest(db, refund_event(f"pi_{attempt.id}", 500, event_id="evt_partial"))

    order = _order(db)
    assert order.status == OrderStatus.partially_refunded
    assert order.refunded_cents == 500
    assert _entitlement_status(db, order) == EntitlementStatus.revoked


def test_partial_refund_keeps_access_when_configured(db, start_checkout, monkeypatch):
    monkeypatch.setattr(settings, "PARTIAL_REFUND_REVOKES", False)
    attempt = start_checkout()
    ingest(db, paid_event(attempt))

    ingest(db, refund_event(f"pi_{attempt.id}", 500, event_id="evt_partial"))

    order = _order(db)
    assert order.status == OrderStatus.partially_refunded
    assert _entitlement_status(db, order) == EntitlementStatus.active
    reversals = db.exec(select(Job).where(Job.job_type == JobType.reverse_on_refund.value)).all()
    assert reversals == []


def test_version_override_beats_the_default(db, start_checkout):
    attempt = start_checkout(product="kit", version="source")
    ingest(db, paid_event(attempt, github_username="octo"))
    payment = f"pi_{attempt.id}"

    ingest(db, refund_event(payment, 1000, event_id="evt_r1"))
    ingest(db, refund_event(payment, 3000, event_id="evt_r2"))

    order = _order(db)
    assert order.status == OrderStatus.partially_refunded
    assert order.refunded_cents == 3000
    assert _entitlement_status(db, order) == EntitlementStatus.active
    # two partial refunds are two outbound events
    assert _webhook_event_ids(db) == sorted(
        [
            f"order.paid:{order.id}:0",
            f"order.partially_refunded:{order.id}:1000",
            f"order.partially_refunded:{order.id}:3000",
        ]
    )

    ingest(db, refund_event(payment, 9900, event_id="evt_r3"))
    order = _order(db)
    assert order.status == OrderStatus.refunded
    assert _entitlement_status(db, order) == EntitlementStatus.revoked


def test_dispute_revokes_and_is_terminal(db, start_checkout):
    attempt = start_checkout()
    ingest(db, paid_event(attempt))
    payment = f"pi_{attempt.id}"

    ingest(db, dispute_event(payment, event_id="evt_dispute"))
    order = _order(db)
    assert order.status == OrderStatus.disputed
    assert _entitlement_status(db, order) == EntitlementStatus.revoked

    result = ingest(db, refund_event(payment, 2000, event_id="evt_refund"))
    assert result.status == "processed"
    assert _order(db).status == OrderStatus.disputed
