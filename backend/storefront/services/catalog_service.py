"""
Catalog seeding.

The creator's catalog (products, versions, discounts, affiliates, webhook
subscriptions) lives in a JSON file and is upserted by natural key:
product slug, (product, version slug), discount code, affiliate code and
subscription url. Rows missing from the file are left alone.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from sqlmodel import Session, select

from storefront.api.errors import ValidationError
from storefront.core.config import settings
from storefront.enums import DiscountType, PricingMode
from storefront.models import (
    Affiliate,
    Discount,
    Product,
    ProductVersion,
    WebhookSubscription,
)
from storefront.services.discount_service import normalize_code

logger = logging.getLogger(__name__)

VERSION_FIELDS = (
    "name",
    "price_cents",
    "min_price_cents",
    "currency",
    "licensing_enabled",
    "activation_limit",
    "activation_overflow",
    "github_repo",
    "revoke_on_partial_refund",
    "is_active",
)


def load_catalog(path: str | Path | None = None) -> dict[str, Any]:
    default = Path(__file__).resolve().parents[1] / "config" / "catalog.json"
    path = Path(path or settings.CATALOG_PATH or default)
    if not path.exists():
        logger.warning(f"Catalog file {path} not found, nothing to seed")
        return {}
    return json.loads(path.read_text(encoding="utf-8"))


def _apply(row: Any, values: dict[str, Any], fields: tuple[str, ...]) -> None:
    for field in fields:
        if field in values:
            setattr(row, field, values[field])


def _upsert_product(session: Session, data: dict[str, Any]) -> Product:
    slug = data.get("slug")
    if not slug:
        raise ValidationError("Catalog product without a slug")
    product = session.exec(select(Product).where(Product.slug == slug)).first()
    if product is None:
        product = Product(slug=slug, name=data.get("name") or slug)
    _apply(product, data, ("name", "is_active"))
    session.add(product)
    session.flush()

    for version_data in data.get("versions", []):
        version_slug = version_data.get("slug")
        if not version_slug:
            raise ValidationError(f"Catalog version of {slug} without a slug")
        version = session.exec(
            select(ProductVersion).where(
                ProductVersion.product_id == product.id,
                ProductVersion.slug == version_slug,
            )
        ).first()
        if version is None:
            version = ProductVersion(
                product_id=product.id, slug=version_slug, name=version_data.get("name") or version_slug
            )
        _apply(version, version_data, VERSION_FIELDS)
        version.pricing_mode = PricingMode(version_data.get("pricing_mode", version.pricing_mode))
        session.add(version)
    session.flush()
    return product


def _resolve_scope(session: Session, data: dict[str, Any]) -> tuple[int, int | None]:
    product = session.exec(select(Product).where(Product.slug == data.get("product"))).first()
    if product is None:
        raise ValidationError(f"Discount {data.get('code')}: unknown product {data.get('product')}")
    version_slug = data.get("version")
    if not version_slug:
        return product.id, None
    version = session.exec(
        select(ProductVersion).where(
            ProductVersion.product_id == product.id, ProductVersion.slug == version_slug
        )
    ).first()
    if version is None:
        raise ValidationError(f"Discount {data.get('code')}: unknown version {version_slug}")
    return product.id, version.id


def _upsert_discount(session: Session, data: dict[str, Any]) -> Discount:
    code = normalize_code(data.get("code") or "")
    if not code:
        raise ValidationError("Catalog discount without a code")
    product_id, version_id = _resolve_scope(session, data)
    discount_type = DiscountType(data.get("discount_type", DiscountType.percent))
    value = int(data.get("value", 0))
    if discount_type == DiscountType.percent and not 0 <= value <= 100:
        raise ValidationError(f"Discount {code}: percent must be between 0 and 100")

    discount = session.exec(select(Discount).where(Discount.code == code)).first()
    if discount is None:
        discount = Discount(code=code, product_id=product_id, discount_type=discount_type)
    discount.product_id = product_id
    discount.version_id = version_id
    discount.discount_type = discount_type
    discount.value = value
    # redemption_count is runtime state, never seeded
    discount.max_redemptions = data.get("max_redemptions")
    expires_at = data.get("expires_at")
    discount.expires_at = datetime.fromisoformat(expires_at) if expires_at else None
    if "status" in data:
        discount.status = data["status"]
    session.add(discount)
    return discount


def _upsert_affiliate(session: Session, data: dict[str, Any]) -> Affiliate:
    code = data.get("code")
    if not code:
        raise ValidationError("Catalog affiliate without a code")
    affiliate = session.exec(select(Affiliate).where(Affiliate.code == code)).first()
    if affiliate is None:
        affiliate = Affiliate(code=code, name=data.get("name") or code)
    _apply(affiliate, data, ("name", "email", "commission_cap_cents", "status"))
    if "payout_percent" in data:
        affiliate.payout_percent = Decimal(str(data["payout_percent"]))
    session.add(affiliate)
    return affiliate


def _upsert_subscription(session: Session, data: dict[str, Any]) -> WebhookSubscription:
    url = data.get("url")
    if not url or not data.get("secret"):
        raise ValidationError("Webhook subscription needs a url and a secret")
    subscription = session.exec(
        select(WebhookSubscription).where(WebhookSubscription.url == url)
    ).first()
    if subscription is None:
        subscription = WebhookSubscription(url=url, secret=data["secret"])
    _apply(subscription, data, ("secret", "event_types", "status"))
    session.add(subscription)
    return subscription


def sync_catalog(session: Session, data: dict[str, Any]) -> dict[str, int]:
    """
    Upsert a catalog document and commit.

    Returns:
        Number of rows written per section

    Raises:
        ValidationError: an entry lacks its key or points at an unknown product
    """
    products = [_upsert_product(session, p) for p in data.get("products", [])]
    discounts = [_upsert_discount(session, d) for d in data.get("discounts", [])]
    affiliates = [_upsert_affiliate(session, a) for a in data.get("affiliates", [])]
    subscriptions = [
        _upsert_subscription(session, s) for s in data.get("webhook_subscriptions", [])
    ]
    session.commit()
    counts = {
        "products": len(products),
        "discounts": len(discounts),
        "affiliates": len(affiliates),
        "webhook_subscriptions": len(subscriptions),
    }
    logger.info(f"Catalog synced: {counts}")
    return counts
