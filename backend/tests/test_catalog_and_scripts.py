from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from factories import TEST_CATALOG
from sqlmodel import select

from storefront import backend_pre_start, initial_data
from storefront.api.errors import ValidationError
from storefront.enums import CheckoutAttemptStatus, JobType, PricingMode
from storefront.models import CheckoutAttempt, Discount, Job, Product, ProductVersion
from storefront.services import catalog_service
from storefront.worker import tasks
from storefront.worker.scheduler import build_scheduler


@pytest.fixture
def task_engine(engine, monkeypatch):
    monkeypatch.setattr(tasks, "engine", engine)
    return engine


def test_default_catalog_loads_and_syncs(db):
    data = catalog_service.load_catalog()
    assert data["products"]

    counts = catalog_service.sync_catalog(db, data)

    assert counts["products"] == len(data["products"])
    timer = db.exec(select(Product).where(Product.slug == "menubar-timer")).one()
    versions = db.exec(select(ProductVersion).where(ProductVersion.product_id == timer.id)).all()
    assert {v.slug: v.pricing_mode for v in versions} == {
        "v2": PricingMode.fixed,
        "v2-supporter": PricingMode.pwyw,
    }


def test_missing_catalog_file_seeds_nothing(tmp_path):
    assert catalog_service.load_catalog(tmp_path / "absent.json") == {}


def test_catalog_file_path(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(TEST_CATALOG), encoding="utf-8")
    assert catalog_service.load_catalog(path) == TEST_CATALOG


def test_sync_is_an_upsert(db):
    catalog_service.sync_catalog(db, TEST_CATALOG)
    changed = json.loads(json.dumps(TEST_CATALOG))
    changed["products"][0]["versions"][0]["price_cents"] = 2500

    counts = catalog_service.sync_catalog(db, changed)

    assert counts["products"] == 2
    assert len(db.exec(select(Product)).all()) == 2
    assert len(db.exec(select(Discount)).all()) == 1
    prices = {v.slug: v.price_cents for v in db.exec(select(ProductVersion)).all()}
    assert prices["pro"] == 2500


@pytest.mark.parametrize(
    "document",
    [
        {"products": [{"name": "No slug"}]},
        {"products": [{"slug": "x", "versions": [{"name": "No slug"}]}]},
        {"discounts": [{"code": "GHOST", "product": "missing", "value": 10}]},
        {"affiliates": [{"name": "No code"}]},
        {"webhook_subscriptions": [{"url": "https://x.example"}]},
    ],
)
def test_bad_catalog_entries_are_rejected(db, document):
    with pytest.raises(ValidationError):
        catalog_service.sync_catalog(db, document)


def test_scheduler_registers_every_sweep():
    scheduler = build_scheduler()
    assert {job.id for job in scheduler.get_jobs()} == {
        "replay_pending_events",
        "retry_webhook_deliveries",
        "expire_stale_checkouts",
        "release_held_commissions",
        "prune_stale_activations",
        "affiliate_payout",
    }


def test_daily_payout_is_enqueued_once_per_day(db, task_engine):
    day = datetime(2026, 3, 1, 0, 30, tzinfo=timezone.utc)

    tasks.enqueue_daily_payout(now=day)
    tasks.enqueue_daily_payout(now=day + timedelta(hours=2))
    tasks.enqueue_daily_payout(now=day + timedelta(days=1))

    db.expire_all()
    jobs = db.exec(select(Job).where(Job.job_type == JobType.affiliate_payout.value)).all()
    assert sorted(job.idempotency_key for job in jobs) == ["payout:2026-03-01", "payout:2026-03-02"]


def test_stale_checkout_sweep(db, start_checkout, task_engine):
    attempt = start_checkout()
    attempt.created_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
    db.add(attempt)
    db.commit()
    fresh = start_checkout("click-2")

    tasks.expire_stale_checkouts()

    db.expire_all()
    assert db.get(CheckoutAttempt, attempt.id).status == CheckoutAttemptStatus.expired
    assert db.get(CheckoutAttempt, fresh.id).status == CheckoutAttemptStatus.redirected


def test_sweeps_run_on_an_empty_database(task_engine):
    tasks.replay_pending_events()
    tasks.retry_webhook_deliveries()
    tasks.release_held_commissions()
    tasks.prune_stale_activations()


def test_pre_start_check_connects(engine):
    backend_pre_start.init(engine)


def test_initial_data_seeds_the_default_catalog(db, engine, monkeypatch):
    monkeypatch.setattr(initial_data, "engine", engine)

    initial_data.init()
    initial_data.init()

    slugs = {p.slug for p in db.exec(select(Product)).all()}
    assert {"menubar-timer", "starter-kit"} <= slugs
