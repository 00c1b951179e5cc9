from __future__ import annotations

import json
import time
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from storefront.api.errors import SignatureInvalid, StateConflict, ValidationError
from storefront.core.config import settings
from storefront.core.security import build_signature_header
from storefront.enums import CheckoutAttemptStatus, EntitlementStatus, EventStatus, JobType, OrderStatus
from storefront.models import Entitlement, InboundEvent, Job, Order, utc_now
from storefront.services import event_store

from factories import ingest, paid_event, refund_event


def _jobs(db, job_type: JobType) -> list[Job]:
    return list(db.exec(select(Job).where(Job.job_type == job_type.value)).all())


def test_payment_event_creates_order_and_queues_fulfillment(db, start_checkout):
    attempt = start_checkout()

    result = ingest(db, paid_event(attempt))
    assert result.status == "processed"
    assert result.duplicate is False

    orders = db.exec(select(Order)).all()
    assert len(orders) == 1
    order = orders[0]
    assert order.status == OrderStatus.paid
    assert order.total_cents == 2000
    assert order.customer_email == "buyer@example.com"
    assert order.checkout_attempt_id == attempt.id

    entitlements = db.exec(select(Entitlement).where(Entitlement.order_id == order.id)).all()
    assert [e.status for e in entitlements] == [EntitlementStatus.active]

    db.refresh(attempt)
    assert attempt.status == CheckoutAttemptStatus.completed
    assert len(_jobs(db, JobType.issue_license)) == 1
    assert len(_jobs(db, JobType.send_receipt_email)) == 1
    assert len(_jobs(db, JobType.deliver_outbound_webhooks)) == 1
    assert _jobs(db, JobType.github_invite) == []


def test_duplicate_delivery_is_a_noop(db, start_checkout):
    attempt = start_checkout()
    payload = paid_event(attempt)

    ingest(db, payload)
    again = ingest(db, payload)

    assert again.duplicate is True
    assert again.status == "processed"
    assert len(db.exec(select(Order)).all()) == 1
    assert len(db.exec(select(InboundEvent)).all()) == 1
    assert len(_jobs(db, JobType.send_receipt_email)) == 1


def test_second_event_for_same_payment_creates_no_second_order(db, start_checkout):
    attempt = start_checkout()

    ingest(db, paid_event(attempt, event_id="evt_a"))
    result = ingest(db, paid_event(attempt, event_id="evt_b"))

    assert result.status == "processed"
    assert result.duplicate is False
    assert len(db.exec(select(Order)).all()) == 1
    assert len(_jobs(db, JobType.issue_license)) == 1


def test_second_payment_for_same_attempt_is_absorbed(db, start_checkout):
    attempt = start_checkout()

    ingest(db, paid_event(attempt, event_id="evt_a", payment_id="pi_first"))
    result = ingest(db, paid_event(attempt, event_id="evt_b", payment_id="pi_second"))

    assert result.status == "processed"
    [order] = db.exec(select(Order)).all()
    assert order.provider_payment_id == "pi_first"
    assert len(_jobs(db, JobType.send_receipt_email)) == 1


def test_an_attempt_holds_at_most_one_order(db, start_checkout):
    attempt = start_checkout()
    ingest(db, paid_event(attempt))
    order = db.exec(select(Order)).one()

    db.add(
        Order(
            user_id=order.user_id,
            checkout_attempt_id=attempt.id,
            status=OrderStatus.paid,
            customer_email=order.customer_email,
        )
    )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_refund_before_payment_is_deferred_then_replayed(db, start_checkout):
    attempt = start_checkout()
    t0 = utc_now()

    early = ingest(db, refund_event(f"pi_{attempt.id}", 2000, event_id="evt_refund"))
    assert early.status == "received"
    stored = event_store.get_by_event_id(db, "evt_refund")
    assert "No order for payment" in stored.error

    ingest(db, paid_event(attempt))
    counts = event_store.replay_pending_events(db, now=t0 + timedelta(minutes=2))
    assert counts == {"replayed": 1, "processed": 1, "anomalies": 0}

    order = db.exec(select(Order)).one()
    db.refresh(order)
    assert order.status == OrderStatus.refunded
    assert order.refunded_cents == 2000
    entitlement = db.exec(select(Entitlement).where(Entitlement.order_id == order.id)).one()
    assert entitlement.status == EntitlementStatus.revoked


def test_unreconciled_event_becomes_anomaly(db, catalog):
    long_ago = utc_now() - timedelta(hours=settings.EVENT_ANOMALY_AFTER_HOURS + 1)
    ingest_result = event_store.ingest(
        db,
        json.dumps(refund_event("pi_unknown", 100, event_id="evt_orphan")).encode(),
        None,
        now=long_ago,
    )
    assert ingest_result.status == "received"

    counts = event_store.replay_pending_events(db)
    assert counts["anomalies"] == 1

    event = event_store.get_by_event_id(db, "evt_orphan")
    db.refresh(event)
    assert event.status == EventStatus.failed
    assert event.error.startswith("anomaly:")


def test_malformed_body_stores_nothing(db):
    with pytest.raises(ValidationError):
        event_store.ingest(db, b"not json", None)
    with pytest.raises(ValidationError):
        event_store.ingest(db, json.dumps({"type": "charge.refunded"}).encode(), None)
    assert db.exec(select(InboundEvent)).all() == []


def test_unknown_event_type_is_accepted(db):
    result = ingest(db, {"id": "evt_new", "type": "customer.created", "data": {"object": {}}})
    assert result.status == "processed"


def test_bad_signature_is_stored_as_failed_and_never_processed(db, start_checkout, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test")
    attempt = start_checkout()
    body = json.dumps(paid_event(attempt)).encode()

    with pytest.raises(SignatureInvalid):
        event_store.ingest(db, body, "t=1,v1=deadbeef")

    event = event_store.get_by_event_id(db, f"evt_paid_{attempt.id}")
    assert event.status == EventStatus.failed
    assert event.error == event_store.SIGNATURE_INVALID
    assert db.exec(select(Order)).all() == []
    with pytest.raises(StateConflict):
        event_store.replay(db, event.id)

    header = build_signature_header("whsec_test", int(time.time()), body)
    result = event_store.ingest(db, body, header)
    assert result.status == "processed"
    assert len(db.exec(select(Order)).all()) == 1


def test_stale_signature_timestamp_is_rejected(db, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test")
    body = json.dumps({"id": "evt_old", "type": "customer.created"}).encode()
    header = build_signature_header(
        "whsec_test", int(time.time()) - settings.PAYMENT_WEBHOOK_TOLERANCE_SECONDS - 10, body
    )
    with pytest.raises(SignatureInvalid):
        event_store.ingest(db, body, header)


def test_operator_replay_is_idempotent(db, start_checkout):
    attempt = start_checkout()
    ingest(db, paid_event(attempt))
    event = event_store.get_by_event_id(db, f"evt_paid_{attempt.id}")

    for _ in range(2):
        result = event_store.replay(db, event.id)
        assert result.status == "processed"

    assert len(db.exec(select(Order)).all()) == 1
    assert len(_jobs(db, JobType.issue_license)) == 1


def test_payment_for_unknown_attempt_is_rejected(db, catalog):
    payload = {
        "id": "evt_stray",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_stray",
                "payment_intent": "pi_stray",
                "customer_details": {"email": "a@example.com"},
                "metadata": {"checkout_attempt_ref": "12345"},
            }
        },
    }
    result = ingest(db, payload)
    assert result.status == "failed"
    assert "Unknown checkout attempt" in result.error
