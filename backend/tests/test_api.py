from __future__ import annotations

import json
import time
from datetime import timedelta

import pytest
from factories import ingest, paid_event
from sqlmodel import select

from storefront.core import rate_limit, security
from storefront.core.config import settings
from storefront.enums import JobType
from storefront.models import Job, Order, ProductVersion
from storefront.services import job_ledger, license_service

API = settings.API_V1_STR


class _FakePipeline:
    def __init__(self, counters: dict[str, int]) -> None:
        self.counters = counters
        self.keys: list[str] = []

    def incr(self, key: str) -> None:
        self.keys.append(key)

    def expire(self, key: str, seconds: int) -> None:
        pass

    def execute(self) -> list:
        key = self.keys.pop()
        self.counters[key] = self.counters.get(key, 0) + 1
        return [self.counters[key], True]


class _FakeRedis:
    def __init__(self) -> None:
        self.counters: dict[str, int] = {}

    def pipeline(self) -> _FakePipeline:
        return _FakePipeline(self.counters)


def _operator_headers(subject: str | None = None) -> dict[str, str]:
    token = security.create_access_token(subject or settings.OPERATOR_SUBJECT, timedelta(minutes=5))
    return {"Authorization": f"Bearer {token}"}


def _checkout_body(attempt_id: str = "click-1", **kwargs) -> dict:
    body = {
        "productSlug": "app",
        "versionSlug": "pro",
        "pricing": "fixed",
        "checkoutAttemptId": attempt_id,
        "customerEmail": "buyer@example.com",
    }
    body.update(kwargs)
    return body


def test_health_check(client):
    r = client.get(f"{API}/utils/health-check/")
    assert r.status_code == 200
    assert r.json() is True


def test_create_checkout_session(client, catalog):
    r = client.post(f"{API}/checkout/sessions", json=_checkout_body())
    assert r.status_code == 200
    body = r.json()
    assert body["code"] == 0
    assert body["message"] == "success"
    assert body["data"]["checkoutSessionId"].startswith("cs_mock_")
    assert body["data"]["checkoutUrl"].endswith(body["data"]["checkoutSessionId"])

    again = client.post(f"{API}/checkout/sessions", json=_checkout_body())
    assert again.json()["data"] == body["data"]


def test_checkout_errors_use_the_envelope(client, catalog):
    r = client.post(f"{API}/checkout/sessions", json=_checkout_body(productSlug="nope"))
    assert r.status_code == 404
    assert r.json() == {"code": 404001, "message": "Product nope/pro not found", "data": None}

    r = client.post(
        f"{API}/checkout/sessions",
        json=_checkout_body(versionSlug="pwyw", pricing="pwyw", pwywAmountCents=1),
    )
    assert r.status_code == 400
    assert r.json()["code"] == 400001


def test_discount_quote(client, catalog):
    body = {"productSlug": "app", "versionSlug": "pro", "pricing": "fixed", "coupon": "save10"}

    r = client.post(f"{API}/checkout/discount-quote", json=body)
    assert r.status_code == 200
    assert r.json()["data"] == {
        "code": "SAVE10",
        "subtotalCents": 2000,
        "discountCents": 200,
        "totalCents": 1800,
    }

    r = client.post(f"{API}/checkout/discount-quote", json={**body, "coupon": "NOPE"})
    assert r.status_code == 400
    assert r.json()["code"] == 400001


def test_request_validation_error(client):
    r = client.post(f"{API}/checkout/sessions", json={"productSlug": "app"})
    assert r.status_code == 422
    body = r.json()
    assert body["code"] == 422000
    missing = {tuple(e["loc"])[-1] for e in body["data"]["errors"]}
    assert {"versionSlug", "pricing", "checkoutAttemptId"} <= missing


def test_checkout_rate_limit(client, catalog, monkeypatch):
    fake = _FakeRedis()
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(settings, "RATE_LIMIT_CHECKOUT_PER_WINDOW", 2)
    monkeypatch.setattr(rate_limit, "get_redis", lambda: fake)

    codes = [
        client.post(f"{API}/checkout/sessions", json=_checkout_body(f"click-{i}")).status_code
        for i in range(3)
    ]
    assert codes == [200, 200, 429]
    r = client.post(f"{API}/checkout/sessions", json=_checkout_body("click-9"))
    assert r.json()["code"] == 429001

    # other products have their own budget
    r = client.post(
        f"{API}/checkout/sessions",
        json=_checkout_body("click-10", productSlug="kit", versionSlug="source"),
    )
    assert r.status_code == 200


def test_rate_limiter_fails_open(monkeypatch):
    import redis

    class _Down:
        def pipeline(self):
            raise redis.ConnectionError("down")

    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(rate_limit, "get_redis", lambda: _Down())
    assert rate_limit.hit("checkout", "1.2.3.4", limit=0) is True


def test_payment_webhook(client, db, start_checkout):
    attempt = start_checkout()
    payload = paid_event(attempt)

    r = client.post(f"{API}/webhooks/payments", content=json.dumps(payload))
    assert r.status_code == 200
    assert r.json()["data"] == {
        "received": True,
        "duplicate": False,
        "eventId": payload["id"],
        "status": "processed",
    }

    r = client.post(f"{API}/webhooks/payments", content=json.dumps(payload))
    assert r.json()["data"]["duplicate"] is True
    db.expire_all()
    assert len(db.exec(select(Order)).all()) == 1


def test_payment_webhook_signature(client, catalog, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_api")
    body = json.dumps({"id": "evt_ping", "type": "customer.created"}).encode()

    r = client.post(f"{API}/webhooks/payments", content=body, headers={"Payment-Signature": "t=1,v1=00"})
    assert r.status_code == 400
    assert r.json()["code"] == 400101

    header = security.build_signature_header("whsec_api", int(time.time()), body)
    r = client.post(f"{API}/webhooks/payments", content=body, headers={"Payment-Signature": header})
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "processed"


def test_payment_webhook_rejects_garbage(client):
    r = client.post(f"{API}/webhooks/payments", content=b"{oops")
    assert r.status_code == 400
    assert r.json()["code"] == 400001


@pytest.fixture
def license_key(db, start_checkout) -> str:
    attempt = start_checkout()
    ingest(db, paid_event(attempt))
    order = db.exec(select(Order)).one()
    license = license_service.issue_license(db, order, db.get(ProductVersion, attempt.version_id))
    db.commit()
    return license.license_key


def test_license_endpoints(client, db, license_key):
    device = {"licenseKey": license_key, "deviceIdHash": "sha256-of-device"}

    r = client.post(f"{API}/licenses/activate", json=device)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["licenseKey"] == license_key
    assert data["activationsUsed"] == 1
    assert data["activationLimit"] == 2
    claims = security.decode_license_grant(data["grantToken"])
    assert claims["dev"] == "sha256-of-device"

    r = client.post(f"{API}/licenses/validate", json=device)
    assert r.status_code == 200

    r = client.post(f"{API}/licenses/deactivate", json=device)
    assert r.json()["data"] == {"licenseKey": license_key, "activeActivations": 0}

    r = client.post(f"{API}/licenses/validate", json=device)
    assert r.status_code == 403
    assert r.json()["code"] == 403103


def test_revoked_license_over_http(client, db, license_key):
    order = db.exec(select(Order)).one()
    license_service.revoke_licenses_for_order(db, order.id)
    db.commit()

    r = client.post(
        f"{API}/licenses/activate", json={"licenseKey": license_key, "deviceIdHash": "d"}
    )
    assert r.status_code == 403
    assert r.json() == {"code": 403101, "message": "License has been revoked", "data": None}


def test_unknown_license_over_http(client):
    r = client.post(
        f"{API}/licenses/activate", json={"licenseKey": "XXXXX-XXXXX-XXXXX-XXXXX", "deviceIdHash": "d"}
    )
    assert r.status_code == 404
    assert r.json()["code"] == 404001


def test_admin_requires_an_operator_token(client):
    r = client.get(f"{API}/admin/jobs")
    assert r.status_code in (401, 403)

    r = client.get(f"{API}/admin/jobs", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["code"] == 401000

    r = client.get(f"{API}/admin/jobs", headers=_operator_headers(subject="buyer"))
    assert r.status_code == 401
    assert r.json()["message"] == "Not an operator"


def test_admin_job_actions(client, db):
    job = job_ledger.enqueue(db, JobType.send_receipt_email, {"order_id": 1}, idempotency_key="1")
    db.commit()
    job_id = job.id
    headers = _operator_headers()

    r = client.post(f"{API}/admin/jobs/{job_id}/dead", headers=headers, json={"reason": "bounced"})
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "dead"
    assert r.json()["data"]["lastError"] == "bounced"

    r = client.get(f"{API}/admin/jobs", headers=headers, params={"status": "dead"})
    data = r.json()["data"]
    assert data["count"] == 1
    assert data["data"][0]["id"] == job_id
    assert data["data"][0]["jobType"] == "send_receipt_email"

    r = client.post(f"{API}/admin/jobs/{job_id}/retry", headers=headers)
    assert r.json()["data"]["status"] == "queued"

    r = client.post(f"{API}/admin/jobs/{job_id}/retry", headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == 409001

    r = client.post(f"{API}/admin/jobs/1/retry", headers=headers)
    assert r.status_code == 404

    db.expire_all()
    assert db.exec(select(Job)).one().attempts == 0


def test_admin_event_replay(client, db, start_checkout):
    attempt = start_checkout()
    ingest(db, paid_event(attempt))
    headers = _operator_headers()

    r = client.get(f"{API}/admin/events", headers=headers, params={"event_type": "checkout.session.completed"})
    events = r.json()["data"]
    assert events["count"] == 1
    event_pk = events["data"][0]["id"]
    assert events["data"][0]["status"] == "processed"

    r = client.post(f"{API}/admin/events/{event_pk}/replay", headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "processed"
    db.expire_all()
    assert len(db.exec(select(Order)).all()) == 1
