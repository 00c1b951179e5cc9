"""
Checkout sessions and the attempt tracker.

Flow of create_checkout_session:
1. resolve product/version and price
2. insert the CheckoutAttempt and commit; the unique
   (attempt_id, product_id, version_id) constraint turns a double click into
   a read of the first attempt instead of a second provider session
3. reserve the coupon and record the affiliate attribution
4. create the provider session with an idempotency key derived from the
   attempt, then store its id/url and move the attempt to redirected

A transient provider failure leaves the attempt in created with the error
recorded; calling again with the same attempt id resumes it, and the
provider's idempotency key guarantees a single session.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from storefront.api.errors import (
    CheckoutInProgress,
    NotFound,
    RedemptionLimitExceeded,
    TerminalRejection,
    TransientDependencyError,
    ValidationError,
)
from storefront.core.config import settings
from storefront.enums import CheckoutAttemptStatus, PricingMode
from storefront.integrations.payment_provider import PaymentProviderClient, get_payment_provider
from storefront.models import CheckoutAttempt, Product, ProductVersion, utc_now
from storefront.services import affiliate_service, discount_service

logger = logging.getLogger(__name__)

OPEN_ATTEMPT_STATUSES = (CheckoutAttemptStatus.created, CheckoutAttemptStatus.redirected)


@dataclass
class CheckoutRequest:
    product_slug: str
    version_slug: str
    pricing: PricingMode
    checkout_attempt_id: str
    pwyw_amount_cents: int | None = None
    coupon: str | None = None
    affiliate: str | None = None
    customer_email: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None


@dataclass(frozen=True)
class CheckoutSessionResult:
    checkout_url: str
    checkout_session_id: str
    attempt_pk: int


def resolve_version(
    session: Session, product_slug: str, version_slug: str
) -> tuple[Product, ProductVersion]:
    row = session.exec(
        select(Product, ProductVersion)
        .join(ProductVersion, col(ProductVersion.product_id) == col(Product.id))
        .where(Product.slug == product_slug, ProductVersion.slug == version_slug)
    ).first()
    if row is None:
        raise NotFound(f"Product {product_slug}/{version_slug} not found")
    product, version = row
    if not product.is_active or not version.is_active:
        raise ValidationError(f"Product {product_slug}/{version_slug} is not on sale")
    return product, version


def price_for(version: ProductVersion, pricing: PricingMode, pwyw_amount_cents: int | None) -> int:
    """
    Raises:
        ValidationError: pricing mode mismatch or pwyw amount below the minimum
    """
    if pricing != version.pricing_mode:
        raise ValidationError(
            f"Version is sold as {PricingMode(version.pricing_mode).value}, not {PricingMode(pricing).value}"
        )
    if pricing == PricingMode.fixed:
        return version.price_cents
    if pwyw_amount_cents is None:
        raise ValidationError("pwywAmountCents is required for pay-what-you-want pricing")
    if pwyw_amount_cents < version.min_price_cents:
        raise ValidationError(
            f"pwywAmountCents must be at least {version.min_price_cents}"
        )
    return pwyw_amount_cents


def quote_price(
    session: Session,
    product_slug: str,
    version_slug: str,
    pricing: PricingMode,
    coupon: str,
    *,
    pwyw_amount_cents: int | None = None,
    now: datetime | None = None,
) -> discount_service.DiscountQuote:
    """
    Price a coupon against a version without reserving it.

    Raises:
        NotFound: unknown product/version
        ValidationError: bad pricing or unusable coupon
        RedemptionLimitExceeded: no redemptions left
    """
    product, version = resolve_version(session, product_slug, version_slug)
    amount = price_for(version, pricing, pwyw_amount_cents)
    return discount_service.quote(session, coupon, product.id, version.id, amount, now=now)


def _result(attempt: CheckoutAttempt) -> CheckoutSessionResult:
    return CheckoutSessionResult(
        checkout_url=attempt.checkout_url or "",
        checkout_session_id=attempt.provider_session_id or "",
        attempt_pk=attempt.id,
    )


def create_checkout_session(
    session: Session,
    request: CheckoutRequest,
    *,
    provider: PaymentProviderClient | None = None,
    now: datetime | None = None,
) -> CheckoutSessionResult:
    """
    Create (or return) the provider checkout session for an attempt.

    Raises:
        NotFound: unknown product/version
        ValidationError: bad pricing, unusable coupon, attempt already closed
        RedemptionLimitExceeded: coupon exhausted by a concurrent checkout
        CheckoutInProgress: the same attempt is being created right now
        TransientDependencyError: provider unavailable, retry with the same attempt id
    """
    now = now or utc_now()
    if not request.checkout_attempt_id or not request.checkout_attempt_id.strip():
        raise ValidationError("checkoutAttemptId is required")
    product, version = resolve_version(session, request.product_slug, request.version_slug)
    amount = price_for(version, request.pricing, request.pwyw_amount_cents)

    attempt = CheckoutAttempt(
        attempt_id=request.checkout_attempt_id.strip(),
        product_id=product.id,
        version_id=version.id,
        pricing_mode=request.pricing,
        subtotal_cents=amount,
        amount_cents=amount,
        currency=version.currency,
        customer_email=request.customer_email,
        success_url=request.success_url or settings.CHECKOUT_SUCCESS_URL,
        cancel_url=request.cancel_url or settings.CHECKOUT_CANCEL_URL,
        status=CheckoutAttemptStatus.created,
        created_at=now,
        updated_at=now,
    )
    session.add(attempt)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return _resume_duplicate(session, request, product, version, provider=provider, now=now)

    attempt_pk = attempt.id
    try:
        _reserve_extras(session, attempt, request, amount, now=now)
    except (ValidationError, RedemptionLimitExceeded) as e:
        session.rollback()
        _mark_failed(session, attempt_pk, e.message, now=now)
        raise

    return _create_provider_session(session, attempt, product, version, provider=provider, now=now)


@retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, max=1),
    reraise=True,
)
def _reserve_extras(
    session: Session, attempt: CheckoutAttempt, request: CheckoutRequest, amount: int, *, now: datetime
) -> None:
    """
    Reserve the coupon and record the affiliate attribution, then commit.

    The attempt row is already committed; a lock timeout or deadlock rolls
    back only these writes before they are tried again.
    """
    try:
        if request.coupon:
            redemption = discount_service.redeem(
                session, request.coupon, attempt.product_id, attempt.version_id, attempt, amount, now=now
            )
            attempt.discount_id = redemption.discount_id
            attempt.discount_cents = redemption.amount_cents
            attempt.amount_cents = amount - redemption.amount_cents
        if request.affiliate:
            affiliate_service.attribute(session, attempt, request.affiliate, now=now)
        session.add(attempt)
        session.commit()
    except OperationalError:
        session.rollback()
        raise


def _resume_duplicate(
    session: Session,
    request: CheckoutRequest,
    product: Product,
    version: ProductVersion,
    *,
    provider: PaymentProviderClient | None,
    now: datetime,
) -> CheckoutSessionResult:
    attempt = session.exec(
        select(CheckoutAttempt).where(
            CheckoutAttempt.attempt_id == request.checkout_attempt_id.strip(),
            CheckoutAttempt.product_id == product.id,
            CheckoutAttempt.version_id == version.id,
        )
    ).first()
    if attempt is None:
        # the conflicting row was not ours (e.g. provider session id clash)
        raise TransientDependencyError("Could not record checkout attempt")

    if attempt.status == CheckoutAttemptStatus.redirected:
        logger.info(f"Duplicate checkout attempt {attempt.id}, returning existing session")
        return _result(attempt)
    if attempt.status == CheckoutAttemptStatus.created:
        if attempt.error is None:
            raise CheckoutInProgress()
        logger.info(f"Resuming checkout attempt {attempt.id} after: {attempt.error}")
        return _create_provider_session(session, attempt, product, version, provider=provider, now=now)
    raise ValidationError(f"Checkout attempt is {CheckoutAttemptStatus(attempt.status).value}, start a new checkout")


def _create_provider_session(
    session: Session,
    attempt: CheckoutAttempt,
    product: Product,
    version: ProductVersion,
    *,
    provider: PaymentProviderClient | None,
    now: datetime,
) -> CheckoutSessionResult:
    provider = provider or get_payment_provider()
    attempt_pk = attempt.id
    try:
        provider_session = provider.create_checkout_session(
            idempotency_key=f"checkout-attempt-{attempt.id}",
            amount_cents=attempt.amount_cents,
            currency=attempt.currency,
            product_name=f"{product.name} ({version.name})",
            success_url=attempt.success_url or settings.CHECKOUT_SUCCESS_URL,
            cancel_url=attempt.cancel_url or settings.CHECKOUT_CANCEL_URL,
            customer_email=attempt.customer_email,
            metadata={"checkout_attempt_ref": str(attempt.id)},
            collect_github_username=bool(version.github_repo),
        )
    except TransientDependencyError as e:
        logger.warning(f"Checkout attempt {attempt_pk}: provider unavailable: {e.message}")
        _record_error(session, attempt_pk, e.message, now=now)
        raise
    except TerminalRejection as e:
        _mark_failed(session, attempt_pk, e.message, now=now)
        raise

    attempt.provider_session_id = provider_session.session_id
    attempt.checkout_url = provider_session.url
    attempt.status = CheckoutAttemptStatus.redirected
    attempt.error = None
    attempt.updated_at = now
    session.add(attempt)
    session.commit()
    session.refresh(attempt)
    logger.info(f"Checkout attempt {attempt.id} redirected to {attempt.provider_session_id}")
    return _result(attempt)


def _record_error(session: Session, attempt_pk: int, error: str, *, now: datetime) -> None:
    attempt = session.get(CheckoutAttempt, attempt_pk)
    attempt.error = error
    attempt.updated_at = now
    session.add(attempt)
    session.commit()


def _mark_failed(session: Session, attempt_pk: int, error: str, *, now: datetime) -> None:
    attempt = session.get(CheckoutAttempt, attempt_pk)
    discount_service.release(session, attempt, now=now)
    attempt.status = CheckoutAttemptStatus.failed
    attempt.error = error
    attempt.updated_at = now
    session.add(attempt)
    session.commit()
    logger.info(f"Checkout attempt {attempt_pk} failed: {error}")


def expire_attempt(session: Session, attempt: CheckoutAttempt, *, now: datetime | None = None) -> bool:
    """
    Expire an open attempt and release its coupon reservation.
    Flushes only.

    Returns:
        True if the attempt was open
    """
    now = now or utc_now()
    if attempt.status not in OPEN_ATTEMPT_STATUSES:
        return False
    discount_service.release(session, attempt, now=now)
    attempt.status = CheckoutAttemptStatus.expired
    attempt.updated_at = now
    session.add(attempt)
    session.flush()
    return True


def expire_stale_attempts(session: Session, *, now: datetime | None = None) -> int:
    """Scheduler sweep: expire attempts older than CHECKOUT_ATTEMPT_TTL_MINUTES."""
    now = now or utc_now()
    cutoff = now - timedelta(minutes=settings.CHECKOUT_ATTEMPT_TTL_MINUTES)
    attempts = session.exec(
        select(CheckoutAttempt)
        .where(
            col(CheckoutAttempt.status).in_(OPEN_ATTEMPT_STATUSES),
            col(CheckoutAttempt.created_at) < cutoff,
        )
        .with_for_update(skip_locked=True)
    ).all()
    expired = sum(1 for attempt in attempts if expire_attempt(session, attempt, now=now))
    session.commit()
    if expired:
        logger.info(f"Expired {expired} stale checkout attempt(s)")
    return expired
