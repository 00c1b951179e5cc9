"""
License subsystem.

- issue_license / revoke_licenses_for_order run inside the reconciler's or a
  job's transaction and only flush
- activate / validate / deactivate serve the public license endpoints and
  commit; the license row is locked while the activation set changes so
  concurrent activations cannot overshoot the cap
- prune_stale_activations is a scheduler sweep and commits

Every successful activate/validate returns a LicenseGrant whose signed token
lets the client keep working offline for LICENSE_OFFLINE_GRACE_DAYS.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlmodel import Session, col, select

from storefront.api.errors import (
    ActivationLimitExceeded,
    DeviceNotActivated,
    LicenseRevoked,
    NotFound,
    ValidationError,
)
from storefront.core.config import settings
from storefront.core.security import create_license_grant
from storefront.enums import ActivationOverflow, ActivationStatus, LicenseStatus
from storefront.models import License, LicenseActivation, Order, ProductVersion, utc_now

logger = logging.getLogger(__name__)

# Crockford-like alphabet: no 0/O, 1/I/L
KEY_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
KEY_GROUPS = 4
KEY_GROUP_SIZE = 5


@dataclass(frozen=True)
class LicenseGrant:
    license_key: str
    device_id_hash: str
    version_id: int
    activations_used: int
    activation_limit: int
    expires_at: datetime
    grant_token: str


def generate_license_key() -> str:
    """XXXXX-XXXXX-XXXXX-XXXXX"""
    return "-".join(
        "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_GROUP_SIZE))
        for _ in range(KEY_GROUPS)
    )


def normalize_license_key(license_key: str) -> str:
    return license_key.strip().upper()


def activation_limit_for(version: ProductVersion) -> int:
    if version.activation_limit is not None:
        return version.activation_limit
    return settings.LICENSE_DEFAULT_ACTIVATION_LIMIT


def overflow_mode_for(version: ProductVersion) -> ActivationOverflow:
    return ActivationOverflow(version.activation_overflow or settings.LICENSE_ACTIVATION_OVERFLOW)


def issue_license(
    session: Session, order: Order, version: ProductVersion, *, now: datetime | None = None
) -> License:
    """
    Issue the license for (order, version); returns the existing one if
    it was already issued.
    """
    existing = session.exec(
        select(License).where(License.order_id == order.id, License.version_id == version.id)
    ).first()
    if existing:
        return existing

    license = License(
        order_id=order.id,
        user_id=order.user_id,
        version_id=version.id,
        license_key=generate_license_key(),
        status=LicenseStatus.active,
        created_at=now or utc_now(),
    )
    session.add(license)
    session.flush()
    logger.info(f"Issued license {license.id} for order {order.id} version {version.id}")
    return license


def get_licenses_for_order(session: Session, order_id: int) -> list[License]:
    return list(session.exec(select(License).where(License.order_id == order_id)).all())


def _lock_license(session: Session, license_key: str) -> License:
    if not license_key or not license_key.strip():
        raise ValidationError("licenseKey is required")
    license = session.exec(
        select(License)
        .where(License.license_key == normalize_license_key(license_key))
        .with_for_update()
    ).first()
    if not license:
        raise NotFound("License not found")
    return license


def _active_activations(session: Session, license_id: int) -> list[LicenseActivation]:
    return list(
        session.exec(
            select(LicenseActivation)
            .where(
                LicenseActivation.license_id == license_id,
                LicenseActivation.status == ActivationStatus.active,
            )
            .order_by(col(LicenseActivation.last_seen_at))
        ).all()
    )


def _grant(
    license: License,
    device_id_hash: str,
    *,
    activations_used: int,
    activation_limit: int,
    now: datetime,
) -> LicenseGrant:
    expires_at = now + timedelta(days=settings.LICENSE_OFFLINE_GRACE_DAYS)
    token = create_license_grant(
        license_key=license.license_key,
        device_id_hash=device_id_hash,
        version_id=license.version_id,
        issued_at=now,
        expires_at=expires_at,
    )
    return LicenseGrant(
        license_key=license.license_key,
        device_id_hash=device_id_hash,
        version_id=license.version_id,
        activations_used=activations_used,
        activation_limit=activation_limit,
        expires_at=expires_at,
        grant_token=token,
    )


def activate(
    session: Session,
    license_key: str,
    device_id_hash: str,
    *,
    now: datetime | None = None,
) -> LicenseGrant:
    """
    Activate a device for a license.

    Re-activating an already active device only refreshes last_seen_at.
    A new device at the cap either fails or, in replace_oldest mode, takes
    the slot of the least recently seen device.

    Raises:
        NotFound: unknown license key
        LicenseRevoked: the license was revoked
        ActivationLimitExceeded: new device at the cap in reject mode
    """
    now = now or utc_now()
    if not device_id_hash:
        raise ValidationError("deviceIdHash is required")
    license = _lock_license(session, license_key)
    if license.status == LicenseStatus.revoked:
        raise LicenseRevoked()

    version = session.get(ProductVersion, license.version_id)
    limit = activation_limit_for(version)
    active = _active_activations(session, license.id)

    activation = session.exec(
        select(LicenseActivation).where(
            LicenseActivation.license_id == license.id,
            LicenseActivation.device_id_hash == device_id_hash,
        )
    ).first()

    if activation is None or activation.status != ActivationStatus.active:
        if len(active) >= limit:
            if overflow_mode_for(version) != ActivationOverflow.replace_oldest:
                raise ActivationLimitExceeded()
            oldest = active.pop(0)
            oldest.status = ActivationStatus.inactive
            oldest.deactivated_at = now
            session.add(oldest)
            logger.info(
                f"License {license.id}: replaced activation {oldest.id} to make room"
            )
        if activation is None:
            activation = LicenseActivation(
                license_id=license.id,
                device_id_hash=device_id_hash,
                activated_at=now,
            )
        activation.status = ActivationStatus.active
        activation.activated_at = now
        activation.deactivated_at = None
        active.append(activation)
        logger.info(f"License {license.id} activated on a new device ({len(active)}/{limit})")

    activation.last_seen_at = now
    session.add(activation)
    session.commit()
    return _grant(
        license,
        device_id_hash,
        activations_used=len(active),
        activation_limit=limit,
        now=now,
    )


def validate(
    session: Session,
    license_key: str,
    device_id_hash: str,
    *,
    now: datetime | None = None,
) -> LicenseGrant:
    """
    Check a license from an activated device and renew its offline grant.

    Raises:
        NotFound: unknown license key
        LicenseRevoked: the license was revoked
        DeviceNotActivated: the device holds no active activation
    """
    now = now or utc_now()
    license = _lock_license(session, license_key)
    if license.status == LicenseStatus.revoked:
        raise LicenseRevoked()

    activation = session.exec(
        select(LicenseActivation).where(
            LicenseActivation.license_id == license.id,
            LicenseActivation.device_id_hash == device_id_hash,
            LicenseActivation.status == ActivationStatus.active,
        )
    ).first()
    if activation is None:
        raise DeviceNotActivated()

    activation.last_seen_at = now
    session.add(activation)
    session.commit()

    version = session.get(ProductVersion, license.version_id)
    return _grant(
        license,
        device_id_hash,
        activations_used=len(_active_activations(session, license.id)),
        activation_limit=activation_limit_for(version),
        now=now,
    )


def deactivate(
    session: Session,
    license_key: str,
    device_id_hash: str,
    *,
    now: datetime | None = None,
) -> int:
    """
    Free the device's slot. Idempotent.

    Returns:
        Number of devices still active on the license
    """
    now = now or utc_now()
    license = _lock_license(session, license_key)
    activation = session.exec(
        select(LicenseActivation).where(
            LicenseActivation.license_id == license.id,
            LicenseActivation.device_id_hash == device_id_hash,
            LicenseActivation.status == ActivationStatus.active,
        )
    ).first()
    if activation:
        activation.status = ActivationStatus.inactive
        activation.deactivated_at = now
        session.add(activation)
        logger.info(f"License {license.id}: deactivated activation {activation.id}")
    session.commit()
    return len(_active_activations(session, license.id))


def revoke_licenses_for_order(
    session: Session, order_id: int, *, now: datetime | None = None
) -> int:
    """
    Revoke every license of an order and all of their activations.

    Returns:
        Number of licenses that were active
    """
    now = now or utc_now()
    revoked = 0
    for license in get_licenses_for_order(session, order_id):
        if license.status != LicenseStatus.revoked:
            license.status = LicenseStatus.revoked
            license.revoked_at = now
            session.add(license)
            revoked += 1
        session.exec(
            update(LicenseActivation)
            .where(
                col(LicenseActivation.license_id) == license.id,
                col(LicenseActivation.status) != ActivationStatus.revoked,
            )
            .values(status=ActivationStatus.revoked, deactivated_at=now)
            .execution_options(synchronize_session=False)
        )
    session.flush()
    if revoked:
        logger.info(f"Revoked {revoked} license(s) of order {order_id}")
    return revoked


def prune_stale_activations(session: Session, *, now: datetime | None = None) -> int:
    """Mark activations unseen for LICENSE_STALE_ACTIVATION_DAYS inactive."""
    now = now or utc_now()
    cutoff = now - timedelta(days=settings.LICENSE_STALE_ACTIVATION_DAYS)
    result = session.exec(
        update(LicenseActivation)
        .where(
            col(LicenseActivation.status) == ActivationStatus.active,
            col(LicenseActivation.last_seen_at) < cutoff,
        )
        .values(status=ActivationStatus.inactive, deactivated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if result.rowcount:
        logger.info(f"Pruned {result.rowcount} stale license activation(s)")
    return result.rowcount
