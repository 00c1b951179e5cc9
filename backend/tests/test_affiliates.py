from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from factories import ingest, paid_event, refund_event
from sqlmodel import select

from storefront.core.config import settings
from storefront.enums import CommissionStatus
from storefront.models import (
    Affiliate,
    AffiliateAttribution,
    AffiliateCommission,
    AffiliatePayout,
    Order,
    ensure_utc,
    utc_now,
)
from storefront.services import affiliate_service


def _paid_order(db, start_checkout, attempt_id: str = "click-1", **kwargs) -> Order:
    attempt = start_checkout(attempt_id, **kwargs)
    ingest(db, paid_event(attempt))
    return db.exec(select(Order).where(Order.checkout_attempt_id == attempt.id)).one()


@pytest.mark.parametrize(
    ("percent", "cap", "total", "expected"),
    [
        ("30.00", None, 2000, 600),
        ("12.50", None, 999, 125),
        ("30.00", 500, 2000, 500),
        ("0", None, 2000, 0),
    ],
)
def test_compute_commission_cents(percent, cap, total, expected):
    affiliate = Affiliate(code="x", name="x", payout_percent=Decimal(percent), commission_cap_cents=cap)
    assert affiliate_service.compute_commission_cents(affiliate, total) == expected


def test_last_click_wins(db, start_checkout):
    db.add(Affiliate(code="later", name="Later", payout_percent=Decimal("10.00")))
    db.commit()
    attempt = start_checkout(affiliate="ally")

    affiliate_service.attribute(db, attempt, "later")
    db.commit()

    attributions = db.exec(select(AffiliateAttribution)).all()
    assert len(attributions) == 1
    assert attributions[0].referral_code == "later"
    assert attempt.affiliate_id == affiliate_service.get_affiliate_by_code(db, "later").id


def test_unknown_referral_does_not_block_checkout(db, start_checkout):
    attempt = start_checkout(affiliate="nobody")
    assert attempt.affiliate_id is None
    assert attempt.provider_session_id


def test_paid_order_accrues_commission_once(db, start_checkout):
    order = _paid_order(db, start_checkout, affiliate="ally")
    now = utc_now()

    first = affiliate_service.accrue_commission(db, order.id, now=now)
    second = affiliate_service.accrue_commission(db, order.id, now=now)
    db.commit()

    assert first.id == second.id
    assert first.amount_cents == 600
    assert first.status == CommissionStatus.pending
    assert ensure_utc(first.available_at) == now + timedelta(days=settings.AFFILIATE_HOLDING_DAYS)


def test_unattributed_order_has_no_commission(db, start_checkout):
    order = _paid_order(db, start_checkout)
    assert affiliate_service.accrue_commission(db, order.id) is None


def test_holding_period_then_single_payout(db, start_checkout):
    now = utc_now()
    for i in range(2):
        order = _paid_order(db, start_checkout, f"click-{i}", affiliate="ally")
        affiliate_service.accrue_commission(db, order.id, now=now)
    db.commit()

    assert affiliate_service.release_held_commissions(db, now=now + timedelta(days=1)) == 0
    later = now + timedelta(days=settings.AFFILIATE_HOLDING_DAYS)
    assert affiliate_service.release_held_commissions(db, now=later) == 2

    payouts = affiliate_service.create_payouts(db, now=later)
    db.commit()
    assert len(payouts) == 1
    assert payouts[0].amount_cents == 1200
    assert payouts[0].commission_count == 2

    # a second run finds nothing left to pay
    assert affiliate_service.create_payouts(db, now=later) == []
    db.commit()
    assert len(db.exec(select(AffiliatePayout)).all()) == 1
    commissions = db.exec(select(AffiliateCommission)).all()
    assert {c.status for c in commissions} == {CommissionStatus.paid}
    assert {c.payout_id for c in commissions} == {payouts[0].id}


def test_payout_respects_minimum(db, start_checkout, monkeypatch):
    monkeypatch.setattr(settings, "AFFILIATE_MIN_PAYOUT_CENTS", 1000)
    now = utc_now()
    order = _paid_order(db, start_checkout, affiliate="ally")
    affiliate_service.accrue_commission(db, order.id, now=now)
    db.commit()
    later = now + timedelta(days=settings.AFFILIATE_HOLDING_DAYS)
    affiliate_service.release_held_commissions(db, now=later)

    assert affiliate_service.create_payouts(db, now=later) == []


def test_reversal_is_idempotent(db, start_checkout):
    order = _paid_order(db, start_checkout, affiliate="ally")
    affiliate_service.accrue_commission(db, order.id)
    db.commit()

    reversed_now = affiliate_service.reverse_commission(db, order.id)
    db.commit()
    assert [c.status for c in reversed_now] == [CommissionStatus.reversed]
    assert affiliate_service.reverse_commission(db, order.id) == []


def test_partial_refund_keeping_access_reduces_the_commission(db, start_checkout, monkeypatch):
    monkeypatch.setattr(settings, "PARTIAL_REFUND_REVOKES", False)
    order = _paid_order(db, start_checkout, affiliate="ally")
    now = utc_now()
    commission = affiliate_service.accrue_commission(db, order.id, now=now)
    db.commit()

    ingest(db, refund_event(order.provider_payment_id, 500, event_id="evt_partial"))

    db.expire_all()
    assert db.get(AffiliateCommission, commission.id).amount_cents == 450
    later = now + timedelta(days=settings.AFFILIATE_HOLDING_DAYS + 1)
    assert affiliate_service.release_held_commissions(db, now=later) == 1
    assert db.get(AffiliateCommission, commission.id).status == CommissionStatus.available


def test_commission_accrued_after_a_partial_refund(db, start_checkout, monkeypatch):
    monkeypatch.setattr(settings, "PARTIAL_REFUND_REVOKES", False)
    order = _paid_order(db, start_checkout, affiliate="ally")
    ingest(db, refund_event(order.provider_payment_id, 1000, event_id="evt_partial"))

    commission = affiliate_service.accrue_commission(db, order.id)

    assert commission.amount_cents == 300


def test_partial_refund_that_revokes_earns_nothing(db, start_checkout):
    order = _paid_order(db, start_checkout, affiliate="ally")
    ingest(db, refund_event(order.provider_payment_id, 500, event_id="evt_partial"))

    assert affiliate_service.accrue_commission(db, order.id) is None
