"""
Checkout routes.

Creates the payment provider's hosted checkout session for one click of a
buy button. The client generates checkoutAttemptId per click and re-sends it
on retries, so double clicks and network retries map to one session.
"""
from fastapi import APIRouter

from storefront.api.deps import ClientIPDep, SessionDep, enforce_rate_limit
from storefront.api.schemas import (
    ApiEnvelope,
    CheckoutSessionData,
    CheckoutSessionRequest,
    DiscountQuoteData,
    DiscountQuoteRequest,
)
from storefront.core.config import settings
from storefront.services import checkout_service
from storefront.services.checkout_service import CheckoutRequest

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("/sessions", response_model=ApiEnvelope)
def create_checkout_session(
    session: SessionDep, ip: ClientIPDep, body: CheckoutSessionRequest
) -> ApiEnvelope:
    """
    POST /api/v1/checkout/sessions

    Returns:
        ApiEnvelope with {checkoutUrl, checkoutSessionId}
    """
    enforce_rate_limit(
        "checkout",
        ip,
        body.product_slug,
        body.version_slug,
        limit=settings.RATE_LIMIT_CHECKOUT_PER_WINDOW,
    )
    result = checkout_service.create_checkout_session(
        session,
        CheckoutRequest(
            product_slug=body.product_slug,
            version_slug=body.version_slug,
            pricing=body.pricing,
            checkout_attempt_id=body.checkout_attempt_id,
            pwyw_amount_cents=body.pwyw_amount_cents,
            coupon=body.coupon,
            affiliate=body.affiliate,
            customer_email=body.customer_email,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        ),
    )
    return ApiEnvelope(
        data=CheckoutSessionData(
            checkout_url=result.checkout_url,
            checkout_session_id=result.checkout_session_id,
        )
    )


@router.post("/discount-quote", response_model=ApiEnvelope)
def quote_discount(session: SessionDep, ip: ClientIPDep, body: DiscountQuoteRequest) -> ApiEnvelope:
    """
    POST /api/v1/checkout/discount-quote

    Read-only; nothing is reserved until the checkout session is created.
    """
    enforce_rate_limit(
        "discount-quote",
        ip,
        body.product_slug,
        body.version_slug,
        limit=settings.RATE_LIMIT_CHECKOUT_PER_WINDOW,
    )
    quote = checkout_service.quote_price(
        session,
        body.product_slug,
        body.version_slug,
        body.pricing,
        body.coupon,
        pwyw_amount_cents=body.pwyw_amount_cents,
    )
    return ApiEnvelope(
        data=DiscountQuoteData(
            code=quote.code,
            subtotal_cents=quote.discount_cents + quote.total_cents,
            discount_cents=quote.discount_cents,
            total_cents=quote.total_cents,
        )
    )
