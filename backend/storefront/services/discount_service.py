"""
Discount guard.

A code is reserved when the checkout session is created (one redemption per
checkout attempt), applied to the order once the payment is reconciled and
released again if the attempt expires unpaid.

The redemption counter never goes through read-modify-write in Python: the
increment is a single conditional UPDATE gated on max_redemptions, and a
zero row count means another checkout took the last slot. Callers own the
transaction; nothing here commits.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, update
from sqlmodel import Session, col, select

from storefront.api.errors import RedemptionLimitExceeded, ValidationError
from storefront.enums import DiscountStatus, DiscountType, RedemptionStatus
from storefront.models import (
    CheckoutAttempt,
    Discount,
    DiscountRedemption,
    Order,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscountQuote:
    discount_id: int
    code: str
    discount_cents: int
    total_cents: int


def normalize_code(code: str) -> str:
    return code.strip().upper()


def compute_discount_cents(discount: Discount, amount_cents: int) -> int:
    """Discount amount for ``amount_cents``; never more than the amount itself."""
    if discount.discount_type == DiscountType.percent:
        cents = (amount_cents * discount.value + 50) // 100
    else:
        cents = discount.value
    return max(0, min(cents, amount_cents))


def get_by_code(session: Session, code: str) -> Discount | None:
    return session.exec(select(Discount).where(Discount.code == normalize_code(code))).first()


def _check_usable(
    discount: Discount | None, product_id: int, version_id: int, now: datetime
) -> Discount:
    if discount is None:
        raise ValidationError("Unknown discount code")
    if discount.status != DiscountStatus.active:
        raise ValidationError("Discount code is no longer active")
    expires_at = ensure_utc(discount.expires_at)
    if expires_at is not None and expires_at <= now:
        raise ValidationError("Discount code has expired")
    if discount.product_id != product_id or (
        discount.version_id is not None and discount.version_id != version_id
    ):
        raise ValidationError("Discount code does not apply to this product")
    return discount


def quote(
    session: Session,
    code: str,
    product_id: int,
    version_id: int,
    amount_cents: int,
    *,
    now: datetime | None = None,
) -> DiscountQuote:
    """
    Read-only price check for a code.

    The redemption count is only advisory here; redeem() is the authority.

    Raises:
        ValidationError: unknown, inactive, expired or out-of-scope code
        RedemptionLimitExceeded: no redemptions left
    """
    now = now or utc_now()
    discount = _check_usable(get_by_code(session, code), product_id, version_id, now)
    if (
        discount.max_redemptions is not None
        and discount.redemption_count >= discount.max_redemptions
    ):
        raise RedemptionLimitExceeded()
    cents = compute_discount_cents(discount, amount_cents)
    return DiscountQuote(
        discount_id=discount.id,
        code=discount.code,
        discount_cents=cents,
        total_cents=amount_cents - cents,
    )


def redeem(
    session: Session,
    code: str,
    product_id: int,
    version_id: int,
    attempt: CheckoutAttempt,
    amount_cents: int,
    *,
    now: datetime | None = None,
) -> DiscountRedemption:
    """
    Reserve one redemption of ``code`` for a checkout attempt.

    Re-reserving for the same attempt returns the existing redemption.

    Raises:
        ValidationError: unusable code
        RedemptionLimitExceeded: a concurrent checkout took the last slot
        OperationalError: lock timeout or deadlock; the caller rolls back
            and may retry
    """
    now = now or utc_now()
    discount = _check_usable(get_by_code(session, code), product_id, version_id, now)

    existing = session.exec(
        select(DiscountRedemption).where(
            DiscountRedemption.discount_id == discount.id,
            DiscountRedemption.checkout_attempt_id == attempt.id,
            DiscountRedemption.status != RedemptionStatus.released,
        )
    ).first()
    if existing:
        return existing

    result = session.exec(
        update(Discount)
        .where(
            col(Discount.id) == discount.id,
            col(Discount.status) == DiscountStatus.active,
            or_(
                col(Discount.max_redemptions).is_(None),
                col(Discount.redemption_count) < col(Discount.max_redemptions),
            ),
        )
        .values(redemption_count=col(Discount.redemption_count) + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"Discount {discount.code} exhausted for attempt {attempt.id}")
        raise RedemptionLimitExceeded()

    redemption = DiscountRedemption(
        discount_id=discount.id,
        checkout_attempt_id=attempt.id,
        amount_cents=compute_discount_cents(discount, amount_cents),
        status=RedemptionStatus.reserved,
        created_at=now,
    )
    session.add(redemption)
    session.flush()
    session.expire(discount, ["redemption_count"])
    logger.info(f"Reserved discount {discount.code} for attempt {attempt.id}")
    return redemption


def apply_to_order(session: Session, attempt: CheckoutAttempt, order: Order) -> DiscountRedemption | None:
    """
    Link the attempt's reservation to the paid order.

    A reservation released before the payment arrived (the attempt expired
    while the buyer was still paying) is re-counted without the limit check:
    the buyer already paid the discounted price.
    """
    redemption = session.exec(
        select(DiscountRedemption)
        .where(DiscountRedemption.checkout_attempt_id == attempt.id)
        .order_by(col(DiscountRedemption.created_at).desc())
    ).first()
    if redemption is None or redemption.status == RedemptionStatus.applied:
        return redemption

    if redemption.status == RedemptionStatus.released:
        logger.warning(
            f"Discount redemption {redemption.id} was released before payment, re-counting it"
        )
        session.exec(
            update(Discount)
            .where(col(Discount.id) == redemption.discount_id)
            .values(redemption_count=col(Discount.redemption_count) + 1)
            .execution_options(synchronize_session=False)
        )
        redemption.released_at = None

    redemption.status = RedemptionStatus.applied
    redemption.order_id = order.id
    session.add(redemption)
    session.flush()
    return redemption


def release(
    session: Session, attempt: CheckoutAttempt, *, now: datetime | None = None
) -> DiscountRedemption | None:
    """Give a reserved slot back. No-op when nothing is reserved."""
    now = now or utc_now()
    redemption = session.exec(
        select(DiscountRedemption).where(
            DiscountRedemption.checkout_attempt_id == attempt.id,
            DiscountRedemption.status == RedemptionStatus.reserved,
        )
    ).first()
    if redemption is None:
        return None

    session.exec(
        update(Discount)
        .where(col(Discount.id) == redemption.discount_id, col(Discount.redemption_count) > 0)
        .values(redemption_count=col(Discount.redemption_count) - 1)
        .execution_options(synchronize_session=False)
    )
    redemption.status = RedemptionStatus.released
    redemption.released_at = now
    session.add(redemption)
    session.flush()
    logger.info(f"Released discount redemption {redemption.id} of attempt {attempt.id}")
    return redemption
