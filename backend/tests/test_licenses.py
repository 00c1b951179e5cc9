from __future__ import annotations

import re
from datetime import timedelta

import pytest
from factories import ingest, paid_event
from sqlmodel import select

from storefront.api.errors import (
    ActivationLimitExceeded,
    DeviceNotActivated,
    LicenseRevoked,
    NotFound,
)
from storefront.core.config import settings
from storefront.core.security import decode_license_grant
from storefront.enums import ActivationStatus, PricingMode
from storefront.models import LicenseActivation, Order, ProductVersion, utc_now
from storefront.services import license_service


def _issue(db, start_checkout, attempt_id: str = "click-1", **kwargs) -> str:
    attempt = start_checkout(attempt_id, **kwargs)
    ingest(db, paid_event(attempt))
    order = db.exec(select(Order).where(Order.checkout_attempt_id == attempt.id)).one()
    version = db.get(ProductVersion, attempt.version_id)
    license = license_service.issue_license(db, order, version)
    db.commit()
    return license.license_key


@pytest.fixture
def license_key(db, start_checkout) -> str:
    return _issue(db, start_checkout)


def test_license_key_format():
    key = license_service.generate_license_key()
    assert re.fullmatch(r"[A-Z2-9]{5}(-[A-Z2-9]{5}){3}", key)
    assert not set(key) & set("01ILO")


def test_activate_up_to_the_limit(db, license_key):
    first = license_service.activate(db, license_key, "device-a")
    assert first.activations_used == 1
    assert first.activation_limit == 2

    # re-activating the same device does not take a second slot
    again = license_service.activate(db, license_key, "device-a")
    assert again.activations_used == 1

    second = license_service.activate(db, license_key, "device-b")
    assert second.activations_used == 2

    with pytest.raises(ActivationLimitExceeded):
        license_service.activate(db, license_key, "device-c")

    active = db.exec(
        select(LicenseActivation).where(LicenseActivation.status == ActivationStatus.active)
    ).all()
    assert len(active) == 2


def test_replace_oldest_overflow(db, start_checkout):
    key = _issue(db, start_checkout, pricing=PricingMode.pwyw, version="pwyw", pwyw_amount_cents=800)
    now = utc_now()

    license_service.activate(db, key, "laptop", now=now)
    grant = license_service.activate(db, key, "desktop", now=now + timedelta(minutes=1))

    assert grant.activations_used == 1
    assert grant.activation_limit == 1
    with pytest.raises(DeviceNotActivated):
        license_service.validate(db, key, "laptop")
    assert license_service.validate(db, key, "desktop").activations_used == 1


def test_validate_returns_offline_grant(db, license_key):
    license_service.activate(db, license_key, "device-a")
    now = utc_now()

    grant = license_service.validate(db, license_key.lower(), "device-a", now=now)

    assert grant.expires_at == now + timedelta(days=settings.LICENSE_OFFLINE_GRACE_DAYS)
    claims = decode_license_grant(grant.grant_token)
    assert claims["sub"] == license_key
    assert claims["dev"] == "device-a"
    assert claims["ver"] == str(grant.version_id)


def test_validate_unknown_device(db, license_key):
    with pytest.raises(DeviceNotActivated):
        license_service.validate(db, license_key, "never-seen")


def test_unknown_license(db, catalog):
    with pytest.raises(NotFound):
        license_service.activate(db, "AAAAA-BBBBB-CCCCC-DDDDD", "device-a")


def test_deactivate_frees_the_slot(db, license_key):
    license_service.activate(db, license_key, "device-a")
    license_service.activate(db, license_key, "device-b")

    assert license_service.deactivate(db, license_key, "device-a") == 1
    assert license_service.deactivate(db, license_key, "device-a") == 1

    grant = license_service.activate(db, license_key, "device-c")
    assert grant.activations_used == 2
    # a deactivated device can come back once a slot is free
    license_service.deactivate(db, license_key, "device-c")
    assert license_service.activate(db, license_key, "device-a").activations_used == 2


def test_revoked_license_is_refused(db, license_key):
    license_service.activate(db, license_key, "device-a")
    order = db.exec(select(Order)).one()
    assert license_service.revoke_licenses_for_order(db, order.id) == 1
    db.commit()
    assert license_service.revoke_licenses_for_order(db, order.id) == 0

    with pytest.raises(LicenseRevoked):
        license_service.validate(db, license_key, "device-a")
    with pytest.raises(LicenseRevoked):
        license_service.activate(db, license_key, "device-b")

    db.expire_all()
    statuses = {a.status for a in db.exec(select(LicenseActivation)).all()}
    assert statuses == {ActivationStatus.revoked}


def test_prune_stale_activations(db, license_key):
    now = utc_now()
    stale_at = now - timedelta(days=settings.LICENSE_STALE_ACTIVATION_DAYS + 1)
    license_service.activate(db, license_key, "old-phone", now=stale_at)
    license_service.activate(db, license_key, "laptop", now=now)

    assert license_service.prune_stale_activations(db, now=now) == 1

    # the pruned slot is free again
    assert license_service.activate(db, license_key, "tablet", now=now).activations_used == 2
