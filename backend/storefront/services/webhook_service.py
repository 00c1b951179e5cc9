"""
Outbound webhooks to creator-owned endpoints.

One WebhookDelivery row per (subscription, event). The body is frozen when
the row is created and re-sent unchanged on every attempt, so receivers can
dedupe on X-Webhook-Id. Signature scheme (same as inbound events):

    X-Webhook-Signature: v1=<hex hmac-sha256(secret, "<timestamp>.<body>")>

Retry schedule is per delivery (WEBHOOK_RETRY_SCHEDULE_SECONDS), independent
of the job ledger's backoff; after WEBHOOK_MAX_ATTEMPTS, or an HTTP 410 from
the receiver, the delivery is dead.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

import httpx
from sqlmodel import Session, col, select

from storefront.core.config import settings
from storefront.core.security import compute_signature
from storefront.enums import DeliveryStatus, OrderStatus, SubscriptionStatus
from storefront.models import (
    Order,
    OrderItem,
    WebhookDelivery,
    WebhookSubscription,
    utc_now,
)

logger = logging.getLogger(__name__)

ORDER_PAID = "order.paid"

DELIVERY_BATCH_SIZE = 100


def order_event_type(status: str) -> str:
    return f"order.{status}"


def outbound_event_id(order: Order, event_type: str) -> str:
    """
    Stable id of an outbound order event.

    Includes the refunded amount so two partial refunds are two events, while
    replays of the same provider event map to the same id.
    """
    return f"{event_type}:{order.id}:{order.refunded_cents}"


def order_event_data(session: Session, order: Order) -> dict[str, Any]:
    items = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
    return {
        "orderId": str(order.id),
        "status": OrderStatus(order.status).value,
        "customerEmail": order.customer_email,
        "currency": order.currency,
        "subtotalCents": order.subtotal_cents,
        "discountCents": order.discount_cents,
        "totalCents": order.total_cents,
        "refundedCents": order.refunded_cents,
        "paidAt": order.paid_at.isoformat() if order.paid_at else None,
        "items": [
            {
                "productId": str(item.product_id),
                "versionId": str(item.version_id),
                "unitPriceCents": item.unit_price_cents,
                "quantity": item.quantity,
            }
            for item in items
        ],
    }


def _subscribed(subscription: WebhookSubscription, event_type: str) -> bool:
    types = subscription.event_types or []
    return "*" in types or event_type in types


def record_deliveries(
    session: Session,
    *,
    event_id: str,
    event_type: str,
    data: dict[str, Any],
    now: datetime | None = None,
) -> list[WebhookDelivery]:
    """
    Create the delivery rows of one outbound event (idempotent per
    subscription). Flushes only.
    """
    now = now or utc_now()
    subscriptions = session.exec(
        select(WebhookSubscription).where(WebhookSubscription.status == SubscriptionStatus.active)
    ).all()

    deliveries: list[WebhookDelivery] = []
    for subscription in subscriptions:
        if not _subscribed(subscription, event_type):
            continue
        delivery = session.exec(
            select(WebhookDelivery).where(
                WebhookDelivery.subscription_id == subscription.id,
                WebhookDelivery.event_id == event_id,
            )
        ).first()
        if delivery is None:
            delivery = WebhookDelivery(
                subscription_id=subscription.id,
                event_id=event_id,
                event_type=event_type,
                payload={"eventId": event_id, "eventType": event_type, "data": data},
                status=DeliveryStatus.pending,
                next_attempt_at=now,
                created_at=now,
            )
            session.add(delivery)
        deliveries.append(delivery)
    session.flush()
    return deliveries


def encode_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()


def signed_headers(secret: str, event_id: str, timestamp: int, body: bytes) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Webhook-Id": event_id,
        "X-Webhook-Timestamp": str(timestamp),
        "X-Webhook-Signature": f"v1={compute_signature(secret, timestamp, body)}",
    }


def next_retry_delay(attempts: int) -> int:
    """Delay after the ``attempts``-th failed attempt; the last entry repeats."""
    schedule = settings.WEBHOOK_RETRY_SCHEDULE_SECONDS or [60]
    return schedule[min(attempts - 1, len(schedule) - 1)]


def attempt_delivery(
    session: Session,
    delivery: WebhookDelivery,
    subscription: WebhookSubscription,
    *,
    client: httpx.Client,
    now: datetime,
) -> WebhookDelivery:
    """POST one delivery and record the outcome on the row."""
    body = encode_body(delivery.payload)
    headers = signed_headers(subscription.secret, delivery.event_id, int(now.timestamp()), body)

    delivery.attempts += 1
    status_code: int | None = None
    error: str | None = None
    try:
        response = client.post(subscription.url, content=body, headers=headers)
        status_code = response.status_code
    except httpx.HTTPError as e:
        error = f"{type(e).__name__}: {e}"

    delivery.last_status_code = status_code
    if status_code is not None and 200 <= status_code < 300:
        delivery.status = DeliveryStatus.succeeded
        delivery.delivered_at = now
        delivery.next_attempt_at = None
        delivery.last_error = None
        logger.info(f"Delivered {delivery.event_id} to subscription {subscription.id}")
    elif status_code == 410:
        delivery.status = DeliveryStatus.dead
        delivery.next_attempt_at = None
        delivery.last_error = "receiver gone (410)"
        logger.warning(f"Subscription {subscription.id} answered 410, delivery {delivery.id} dead")
    else:
        delivery.last_error = error or f"HTTP {status_code}"
        if delivery.attempts >= settings.WEBHOOK_MAX_ATTEMPTS:
            delivery.status = DeliveryStatus.dead
            delivery.next_attempt_at = None
            logger.warning(
                f"Delivery {delivery.id} dead after {delivery.attempts} attempt(s): "
                f"{delivery.last_error}"
            )
        else:
            delay = next_retry_delay(delivery.attempts)
            delivery.next_attempt_at = now + timedelta(seconds=delay)
            logger.info(
                f"Delivery {delivery.id} failed ({delivery.last_error}), retry in {delay}s"
            )
    session.add(delivery)
    return delivery


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)


def deliver_due(
    session: Session,
    *,
    now: datetime | None = None,
    delivery_ids: list[int] | None = None,
    client: httpx.Client | None = None,
) -> int:
    """
    Attempt every pending delivery whose next_attempt_at has passed.

    Rows are locked with SKIP LOCKED so overlapping sweeps split the work.
    Flushes only; the caller commits.

    Returns:
        Number of deliveries attempted
    """
    now = now or utc_now()
    filters = [
        WebhookDelivery.status == DeliveryStatus.pending,
        col(WebhookDelivery.next_attempt_at) <= now,
    ]
    if delivery_ids is not None:
        if not delivery_ids:
            return 0
        filters.append(col(WebhookDelivery.id).in_(delivery_ids))
    deliveries = session.exec(
        select(WebhookDelivery)
        .where(*filters)
        .order_by(col(WebhookDelivery.next_attempt_at))
        .limit(DELIVERY_BATCH_SIZE)
        .with_for_update(skip_locked=True)
    ).all()
    if not deliveries:
        return 0

    owns_client = client is None
    client = client or _http_client()
    try:
        for delivery in deliveries:
            subscription = session.get(WebhookSubscription, delivery.subscription_id)
            if subscription is None or subscription.status != SubscriptionStatus.active:
                delivery.status = DeliveryStatus.dead
                delivery.last_error = "subscription disabled"
                delivery.next_attempt_at = None
                session.add(delivery)
                continue
            attempt_delivery(session, delivery, subscription, client=client, now=now)
    finally:
        if owns_client:
            client.close()
    session.flush()
    return len(deliveries)


def retry_due_deliveries(session: Session, *, now: datetime | None = None) -> int:
    """Scheduler sweep: retry due deliveries and commit."""
    attempted = deliver_due(session, now=now)
    session.commit()
    return attempted
