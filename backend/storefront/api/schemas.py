"""
API request/response schemas.

These are not tables, only the shapes exchanged over HTTP. Public request
and response bodies use camelCase field names (aliases); Python code keeps
snake_case.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from storefront.enums import EventStatus, JobStatus, PricingMode

# ============================================================
# Common
# ============================================================


class TokenPayload(BaseModel):
    """JWT payload; sub must equal OPERATOR_SUBJECT on operator endpoints."""
    sub: str | None = None


class ApiEnvelope(BaseModel):
    """
    Unified response body.

    - code: 0 on success, the business error code otherwise
    - message: "success" or the error description
    - data: payload, None on errors

    Examples:
        {"code": 0, "message": "success", "data": {...}}
        {"code": 403101, "message": "License has been revoked", "data": null}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


# ============================================================
# Checkout
# ============================================================


class CheckoutSessionRequest(CamelModel):
    product_slug: str = Field(min_length=1, max_length=64)
    version_slug: str = Field(min_length=1, max_length=64)
    pricing: PricingMode
    checkout_attempt_id: str = Field(min_length=1, max_length=128)  # client generated, per click
    pwyw_amount_cents: int | None = Field(default=None, ge=0)
    coupon: str | None = Field(default=None, max_length=64)
    affiliate: str | None = Field(default=None, max_length=64)  # latest ref seen by the client
    customer_email: str | None = Field(default=None, max_length=320)
    success_url: str | None = Field(default=None, max_length=2048)
    cancel_url: str | None = Field(default=None, max_length=2048)


class CheckoutSessionData(CamelModel):
    checkout_url: str
    checkout_session_id: str


class DiscountQuoteRequest(CamelModel):
    product_slug: str = Field(min_length=1, max_length=64)
    version_slug: str = Field(min_length=1, max_length=64)
    pricing: PricingMode
    pwyw_amount_cents: int | None = Field(default=None, ge=0)
    coupon: str = Field(min_length=1, max_length=64)


class DiscountQuoteData(CamelModel):
    """Advisory price; the slot is only reserved by creating the checkout session."""
    code: str
    subtotal_cents: int
    discount_cents: int
    total_cents: int


# ============================================================
# Licenses
# ============================================================


class LicenseRequest(CamelModel):
    license_key: str = Field(min_length=1, max_length=64)
    device_id_hash: str = Field(min_length=1, max_length=128)


class LicenseGrantData(CamelModel):
    """
    Successful activation or validation.

    grant_token is a signed JWT the client may keep for offline use until
    expires_at.
    """
    license_key: str
    device_id_hash: str
    version_id: int
    activations_used: int
    activation_limit: int
    expires_at: datetime
    grant_token: str


class LicenseDeactivateData(CamelModel):
    license_key: str
    active_activations: int


# ============================================================
# Payment webhook
# ============================================================


class EventReceiptData(CamelModel):
    received: bool = True
    duplicate: bool = False
    event_id: str
    status: EventStatus


# ============================================================
# Operator
# ============================================================


class JobPublic(CamelModel):
    id: int
    job_type: str
    status: JobStatus
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    run_at: datetime
    locked_by: str | None = None
    locked_at: datetime | None = None
    last_error: str | None = None
    idempotency_key: str | None = None
    created_at: datetime
    finished_at: datetime | None = None


class JobsData(CamelModel):
    data: list[JobPublic]
    count: int


class MarkDeadRequest(CamelModel):
    reason: str | None = Field(default=None, max_length=500)


class EventPublic(CamelModel):
    id: int
    event_id: str
    event_type: str
    status: EventStatus
    attempts: int
    error: str | None = None
    received_at: datetime
    processed_at: datetime | None = None


class EventsData(CamelModel):
    data: list[EventPublic]
    count: int
