"""
Licenses and device activations.
"""
from datetime import datetime

from sqlalchemy import Column, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from storefront.enums import ActivationStatus, LicenseStatus

from .base import created_field, fk_field, id_field, timestamp_field


class License(SQLModel, table=True):
    """
    License key issued for one order and version.

    At most one per (order, version); issuance is idempotent on that pair.
    active → revoked is terminal.
    """
    __tablename__ = "licenses"
    __table_args__ = (
        UniqueConstraint("order_id", "version_id", name="uq_licenses_order_version"),
    )
    id: int = id_field()
    order_id: int = fk_field("orders.id", ondelete="CASCADE")
    user_id: int = fk_field("users.id", ondelete="CASCADE")
    version_id: int = fk_field("product_versions.id")
    license_key: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))
    status: LicenseStatus = Field(
        default=LicenseStatus.active, sa_column=Column(String(16), nullable=False)
    )
    created_at: datetime = created_field()
    revoked_at: datetime | None = timestamp_field()


class LicenseActivation(SQLModel, table=True):
    """
    One (license, device) pair.

    last_seen_at is stamped on every activate/validate and drives both the
    replace-oldest overflow mode and the staleness pruning sweep.
    """
    __tablename__ = "license_activations"
    __table_args__ = (
        UniqueConstraint("license_id", "device_id_hash", name="uq_license_activations_device"),
    )
    id: int = id_field()
    license_id: int = fk_field("licenses.id", ondelete="CASCADE")
    device_id_hash: str = Field(max_length=128)
    status: ActivationStatus = Field(
        default=ActivationStatus.active,
        sa_column=Column(String(16), index=True, nullable=False),
    )
    activated_at: datetime = created_field()
    last_seen_at: datetime = created_field()
    deactivated_at: datetime | None = timestamp_field()
