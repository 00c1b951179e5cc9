"""
Discount codes and redemptions.

redemption_count is only ever changed by a conditional UPDATE gated on
max_redemptions, so "redemptions <= max" holds under concurrent checkouts.
"""
from datetime import datetime

from sqlalchemy import Column, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from storefront.enums import DiscountStatus, DiscountType, RedemptionStatus

from .base import created_field, fk_field, id_field, timestamp_field


class Discount(SQLModel, table=True):
    """
    Discount code scoped to a product (optionally one version).

    Fields:
    - code: upper-cased code (unique)
    - discount_type / value: percent (0-100) or fixed amount in cents
    - expires_at: None for no expiry
    - max_redemptions: None for unlimited
    - redemption_count: reserved + applied redemptions
    """
    __tablename__ = "discounts"
    id: int = id_field()
    code: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))
    product_id: int = fk_field("products.id", ondelete="CASCADE")
    version_id: int | None = fk_field("product_versions.id", nullable=True)

    discount_type: DiscountType = Field(sa_column=Column(String(16), nullable=False))
    value: int = Field(default=0)
    expires_at: datetime | None = timestamp_field()
    max_redemptions: int | None = Field(default=None)
    redemption_count: int = Field(default=0)
    status: DiscountStatus = Field(
        default=DiscountStatus.active, sa_column=Column(String(16), nullable=False)
    )
    created_at: datetime = created_field()


class DiscountRedemption(SQLModel, table=True):
    """
    One redemption of a discount.

    Reserved against the checkout attempt, linked to the order once paid.
    """
    __tablename__ = "discount_redemptions"
    __table_args__ = (
        UniqueConstraint(
            "discount_id", "checkout_attempt_id", name="uq_discount_redemptions_attempt"
        ),
        UniqueConstraint("discount_id", "order_id", name="uq_discount_redemptions_order"),
    )
    id: int = id_field()
    discount_id: int = fk_field("discounts.id", ondelete="CASCADE")
    checkout_attempt_id: int = fk_field("checkout_attempts.id")
    order_id: int | None = fk_field("orders.id", nullable=True)
    amount_cents: int = Field(default=0)
    status: RedemptionStatus = Field(
        default=RedemptionStatus.reserved, sa_column=Column(String(16), nullable=False)
    )
    created_at: datetime = created_field()
    released_at: datetime | None = timestamp_field()
