"""
Checkout attempts.

An attempt is created from the client-generated attempt id before any
provider session exists. The unique (attempt_id, product_id, version_id)
constraint is the only defense against duplicate sessions from double clicks.
"""
from datetime import datetime

from sqlalchemy import Column, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from storefront.enums import CheckoutAttemptStatus, PricingMode

from .base import created_field, fk_field, id_field


class CheckoutAttempt(SQLModel, table=True):
    """
    Checkout attempt.

    Fields:
    - attempt_id: client-generated id, unique per (product, version)
    - pricing_mode / amount_cents / currency: price the session was created for
    - discount_id / discount_cents: reserved coupon and its amount
    - affiliate_id: attributed affiliate (last click)
    - provider_session_id / checkout_url: set once the session exists
    - status: created → redirected → completed | expired | failed
    """
    __tablename__ = "checkout_attempts"
    __table_args__ = (
        UniqueConstraint(
            "attempt_id", "product_id", "version_id", name="uq_checkout_attempts_attempt"
        ),
    )
    id: int = id_field()
    attempt_id: str = Field(max_length=128)
    product_id: int = fk_field("products.id")
    version_id: int = fk_field("product_versions.id")

    pricing_mode: PricingMode = Field(sa_column=Column(String(16), nullable=False))
    subtotal_cents: int = Field(default=0)
    amount_cents: int = Field(default=0)
    currency: str = Field(default="usd", max_length=8)

    discount_id: int | None = fk_field("discounts.id", nullable=True)
    discount_cents: int = Field(default=0)
    affiliate_id: int | None = fk_field("affiliates.id", nullable=True)
    customer_email: str | None = Field(default=None, max_length=320)

    success_url: str | None = Field(default=None, max_length=1024)
    cancel_url: str | None = Field(default=None, max_length=1024)
    provider_session_id: str | None = Field(
        default=None, sa_column=Column(String(255), unique=True, nullable=True)
    )
    checkout_url: str | None = Field(default=None, max_length=2048)

    status: CheckoutAttemptStatus = Field(
        default=CheckoutAttemptStatus.created,
        sa_column=Column(String(16), index=True, nullable=False),
    )
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: datetime = created_field()
    updated_at: datetime = created_field()
