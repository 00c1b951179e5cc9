"""
Orders, order items and entitlements.

Only the Reconciler creates these. The provider session id and payment id
are each globally unique: they are the idempotency anchor for duplicate
payment events. Order, items and entitlements always commit together.
"""
from datetime import datetime

from sqlalchemy import Column, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from storefront.enums import EntitlementStatus, OrderStatus

from .base import created_field, fk_field, id_field, timestamp_field


class Order(SQLModel, table=True):
    """
    Paid checkout.

    Fields:
    - user_id: owning buyer
    - checkout_attempt_id: attempt this order completed (at most one order each)
    - provider_session_id / provider_payment_id: unique provider ids
    - subtotal_cents / discount_cents / total_cents: money, in minor units
    - refunded_cents: cumulative refunded amount reported by the provider
    - status: paid → partially_refunded → refunded, or disputed / canceled
    - github_username: collected at checkout for repository invites
    """
    __tablename__ = "orders"
    id: int = id_field()
    user_id: int = fk_field("users.id", ondelete="CASCADE")
    checkout_attempt_id: int | None = fk_field("checkout_attempts.id", nullable=True, unique=True)

    provider_session_id: str | None = Field(
        default=None, sa_column=Column(String(255), unique=True, nullable=True)
    )
    provider_payment_id: str | None = Field(
        default=None, sa_column=Column(String(255), unique=True, index=True, nullable=True)
    )

    subtotal_cents: int = Field(default=0)
    discount_cents: int = Field(default=0)
    total_cents: int = Field(default=0)
    refunded_cents: int = Field(default=0)
    currency: str = Field(default="usd", max_length=8)

    status: OrderStatus = Field(sa_column=Column(String(24), index=True, nullable=False))
    customer_email: str = Field(max_length=320)
    github_username: str | None = Field(default=None, max_length=64)

    paid_at: datetime | None = timestamp_field()
    created_at: datetime = created_field()
    updated_at: datetime = created_field()


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"
    id: int = id_field()
    order_id: int = fk_field("orders.id", ondelete="CASCADE")
    product_id: int = fk_field("products.id")
    version_id: int = fk_field("product_versions.id")
    unit_price_cents: int = Field(default=0)
    quantity: int = Field(default=1)


class Entitlement(SQLModel, table=True):
    """
    Download/license rights for one (user, order, version).

    Revoked in lockstep with refunds and disputes.
    """
    __tablename__ = "entitlements"
    __table_args__ = (
        UniqueConstraint("order_id", "version_id", name="uq_entitlements_order_version"),
    )
    id: int = id_field()
    user_id: int = fk_field("users.id", ondelete="CASCADE")
    order_id: int = fk_field("orders.id", ondelete="CASCADE")
    version_id: int = fk_field("product_versions.id")
    status: EntitlementStatus = Field(
        default=EntitlementStatus.active, sa_column=Column(String(16), nullable=False)
    )
    created_at: datetime = created_field()
    revoked_at: datetime | None = timestamp_field()
