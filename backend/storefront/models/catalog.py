"""
Catalog models: products and their sellable versions.

Per-version settings drive fulfillment: whether a license is issued, how
many devices it may activate, which GitHub repository buyers are invited to,
and the partial-refund override.
"""
from datetime import datetime

from sqlalchemy import Column, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from storefront.enums import PricingMode

from .base import created_field, fk_field, id_field


class Product(SQLModel, table=True):
    __tablename__ = "products"
    id: int = id_field()
    slug: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))
    name: str = Field(max_length=128)
    is_active: bool = Field(default=True)
    created_at: datetime = created_field()


class ProductVersion(SQLModel, table=True):
    """
    Sellable version of a product.

    Fields:
    - slug: unique within the product
    - pricing_mode: fixed or pay-what-you-want
    - price_cents: fixed price, or the suggested price for pwyw
    - min_price_cents: pwyw floor
    - licensing_enabled: issue a license key per order
    - activation_limit: device cap (None → LICENSE_DEFAULT_ACTIVATION_LIMIT)
    - activation_overflow: "reject"/"replace_oldest" (None → setting)
    - github_repo: "owner/repo" to invite buyers to, if any
    - revoke_on_partial_refund: partial refund policy override
    """
    __tablename__ = "product_versions"
    __table_args__ = (
        UniqueConstraint("product_id", "slug", name="uq_product_versions_product_slug"),
    )
    id: int = id_field()
    product_id: int = fk_field("products.id", ondelete="CASCADE")
    slug: str = Field(max_length=64)
    name: str = Field(max_length=128)

    pricing_mode: PricingMode = Field(
        default=PricingMode.fixed, sa_column=Column(String(16), nullable=False)
    )
    price_cents: int = Field(default=0)
    min_price_cents: int = Field(default=0)
    currency: str = Field(default="usd", max_length=8)

    licensing_enabled: bool = Field(default=False)
    activation_limit: int | None = Field(default=None)
    activation_overflow: str | None = Field(default=None, max_length=16)
    github_repo: str | None = Field(default=None, max_length=200)
    revoke_on_partial_refund: bool | None = Field(default=None)

    is_active: bool = Field(default=True)
    created_at: datetime = created_field()
