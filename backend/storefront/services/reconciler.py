"""
Reconciler.

Folds stored provider events into business state. Each handler is an
idempotent function of (current state, event): running it again on the same
event changes nothing, which is what makes replay safe.

Handlers never commit; the event store commits the reconciliation together
with the event's processed mark. Follow-up work with side effects outside
the database (email, license issuance, webhooks, invites, commissions) is
only ever enqueued on the job ledger inside that same transaction.

Provider payloads follow the usual envelope:

    {"id": "evt_...", "type": "checkout.session.completed",
     "data": {"object": {...}}}
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import or_
from sqlmodel import Session, col, select

from storefront import crud
from storefront.api.errors import IdempotencyNoOp, OrderNotFoundYet, ValidationError
from storefront.core.config import settings
from storefront.enums import (
    TERMINAL_ORDER_STATUSES,
    CheckoutAttemptStatus,
    EntitlementStatus,
    JobType,
    OrderStatus,
)
from storefront.models import (
    CheckoutAttempt,
    Entitlement,
    InboundEvent,
    Order,
    OrderItem,
    ProductVersion,
    utc_now,
)
from storefront.services import (
    affiliate_service,
    checkout_service,
    discount_service,
    job_ledger,
    webhook_service,
)

logger = logging.getLogger(__name__)

PAYMENT_COMPLETED_TYPES = frozenset({"checkout.session.completed", "payment_completed"})
REFUND_TYPES = frozenset({"charge.refunded", "refund"})
DISPUTE_TYPES = frozenset({"charge.dispute.created", "dispute"})
SESSION_EXPIRED_TYPES = frozenset({"checkout.session.expired"})

EventHandler = Callable[[Session, dict[str, Any], datetime], None]


def event_object(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    if not isinstance(data, dict):
        return {}
    obj = data.get("object", data)
    return obj if isinstance(obj, dict) else {}


def _payment_id(obj: dict[str, Any]) -> str | None:
    value = obj.get("payment_intent") or obj.get("payment_id")
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _customer_email(obj: dict[str, Any]) -> tuple[str | None, str | None]:
    details = obj.get("customer_details") or {}
    email = details.get("email") or obj.get("customer_email")
    return email, details.get("name")


def _github_username(obj: dict[str, Any]) -> str | None:
    for field in obj.get("custom_fields") or []:
        if field.get("key") == "github_username":
            value = (field.get("text") or {}).get("value")
            if value:
                return str(value).strip().lstrip("@")
    value = (obj.get("metadata") or {}).get("github_username")
    return str(value).strip().lstrip("@") if value else None


def _attempt_ref(obj: dict[str, Any]) -> int:
    ref = (obj.get("metadata") or {}).get("checkout_attempt_ref")
    try:
        return int(ref)
    except (TypeError, ValueError):
        raise ValidationError("Payment event carries no checkout attempt reference")


def find_existing_order(
    session: Session,
    *,
    payment_id: str | None,
    session_id: str | None,
    attempt_pk: int | None,
) -> Order | None:
    conditions = []
    if payment_id:
        conditions.append(col(Order.provider_payment_id) == payment_id)
    if session_id:
        conditions.append(col(Order.provider_session_id) == session_id)
    if attempt_pk is not None:
        conditions.append(col(Order.checkout_attempt_id) == attempt_pk)
    if not conditions:
        return None
    return session.exec(select(Order).where(or_(*conditions))).first()


# ---------------------------------------------------------------------------
# payment completed
# ---------------------------------------------------------------------------


def _raise_if_ordered(
    session: Session,
    *,
    payment_id: str | None,
    session_id: str | None,
    attempt_pk: int | None,
) -> None:
    existing = find_existing_order(
        session, payment_id=payment_id, session_id=session_id, attempt_pk=attempt_pk
    )
    if existing:
        raise IdempotencyNoOp(f"Order {existing.id} already exists for attempt {attempt_pk}")


def handle_payment_completed(session: Session, payload: dict[str, Any], now: datetime) -> None:
    """
    Create the order, its item and entitlement, link the coupon and queue
    fulfillment.

    Raises:
        IdempotencyNoOp: an order already exists for the payment, session
            or attempt
        ValidationError: unusable payload or unknown checkout attempt
    """
    obj = event_object(payload)
    attempt_pk = _attempt_ref(obj)
    payment_id = _payment_id(obj)
    session_id = obj.get("id")

    _raise_if_ordered(session, payment_id=payment_id, session_id=session_id, attempt_pk=attempt_pk)

    attempt = session.exec(
        select(CheckoutAttempt).where(CheckoutAttempt.id == attempt_pk).with_for_update()
    ).first()
    if attempt is None:
        raise ValidationError(f"Unknown checkout attempt {attempt_pk}")
    # a concurrent event for the same attempt may have committed while we waited
    _raise_if_ordered(session, payment_id=payment_id, session_id=session_id, attempt_pk=attempt_pk)

    email, name = _customer_email(obj)
    email = email or attempt.customer_email
    if not email:
        raise ValidationError("Payment event carries no customer email")

    version = session.get(ProductVersion, attempt.version_id)
    total = obj.get("amount_total")
    total = int(total) if total is not None else attempt.amount_cents
    if total != attempt.amount_cents:
        logger.warning(
            f"Attempt {attempt.id}: provider charged {total}, attempt priced {attempt.amount_cents}"
        )

    user = crud.get_or_create_user_by_email(session=session, email=email, name=name)
    order = Order(
        user_id=user.id,
        checkout_attempt_id=attempt.id,
        provider_session_id=session_id,
        provider_payment_id=payment_id,
        subtotal_cents=attempt.subtotal_cents,
        discount_cents=attempt.discount_cents,
        total_cents=total,
        currency=obj.get("currency") or attempt.currency,
        status=OrderStatus.paid,
        customer_email=crud.normalize_email(email),
        github_username=_github_username(obj),
        paid_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(order)
    session.flush()

    session.add(
        OrderItem(
            order_id=order.id,
            product_id=attempt.product_id,
            version_id=attempt.version_id,
            unit_price_cents=attempt.subtotal_cents,
            quantity=1,
        )
    )
    session.add(
        Entitlement(
            user_id=user.id,
            order_id=order.id,
            version_id=attempt.version_id,
            status=EntitlementStatus.active,
            created_at=now,
        )
    )
    discount_service.apply_to_order(session, attempt, order)

    attempt.status = CheckoutAttemptStatus.completed
    attempt.provider_session_id = attempt.provider_session_id or session_id
    attempt.updated_at = now
    session.add(attempt)
    session.flush()

    _enqueue_fulfillment(session, order, attempt, version)
    logger.info(f"Order {order.id} paid: attempt {attempt.id}, total {total} {order.currency}")


def _enqueue_fulfillment(
    session: Session, order: Order, attempt: CheckoutAttempt, version: ProductVersion
) -> None:
    key = str(order.id)
    payload = {"order_id": order.id}
    if version.licensing_enabled:
        job_ledger.enqueue(session, JobType.issue_license, payload, idempotency_key=key)
    job_ledger.enqueue(session, JobType.send_receipt_email, payload, idempotency_key=key)
    _enqueue_webhooks(session, order, webhook_service.ORDER_PAID)
    if version.github_repo:
        job_ledger.enqueue(
            session,
            JobType.github_invite,
            {"order_id": order.id, "repo": version.github_repo},
            idempotency_key=f"{key}:{version.github_repo}",
        )
    if attempt.affiliate_id is not None:
        job_ledger.enqueue(
            session,
            JobType.affiliate_compute_commission,
            {"order_id": order.id, "action": "accrue"},
            idempotency_key=f"accrue:{key}",
        )


def _enqueue_webhooks(session: Session, order: Order, event_type: str) -> None:
    event_id = webhook_service.outbound_event_id(order, event_type)
    job_ledger.enqueue(
        session,
        JobType.deliver_outbound_webhooks,
        {"order_id": order.id, "event_type": event_type, "event_id": event_id},
        idempotency_key=event_id,
    )


# ---------------------------------------------------------------------------
# refunds and disputes
# ---------------------------------------------------------------------------


def partial_refund_revokes(session: Session, order: Order) -> bool:
    """
    Partial refund policy.

    Single-item orders follow the version override, falling back to
    PARTIAL_REFUND_REVOKES. Multi-item orders only revoke when a version
    explicitly asks for it.
    """
    items = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
    overrides = []
    for item in items:
        version = session.get(ProductVersion, item.version_id)
        overrides.append(version.revoke_on_partial_refund if version else None)
    if len(items) == 1:
        return overrides[0] if overrides[0] is not None else settings.PARTIAL_REFUND_REVOKES
    return any(override is True for override in overrides)


def revoke_entitlements(session: Session, order: Order, now: datetime) -> int:
    entitlements = session.exec(
        select(Entitlement).where(
            Entitlement.order_id == order.id,
            Entitlement.status == EntitlementStatus.active,
        )
    ).all()
    for entitlement in entitlements:
        entitlement.status = EntitlementStatus.revoked
        entitlement.revoked_at = now
        session.add(entitlement)
    return len(entitlements)


def _lock_order_by_payment(session: Session, payment_id: str) -> Order:
    order = session.exec(
        select(Order).where(Order.provider_payment_id == payment_id).with_for_update()
    ).first()
    if order is None:
        # refund raced ahead of its payment event; retried by replay
        raise OrderNotFoundYet(f"No order for payment {payment_id} yet")
    return order


def _apply_reversal(
    session: Session, order: Order, status: OrderStatus, refunded_cents: int, revoke: bool, now: datetime
) -> None:
    order.status = status
    order.refunded_cents = refunded_cents
    order.updated_at = now
    session.add(order)
    session.flush()

    if revoke:
        revoked = revoke_entitlements(session, order, now)
        logger.info(f"Order {order.id} {status.value}: revoked {revoked} entitlement(s)")
        job_ledger.enqueue(
            session,
            JobType.reverse_on_refund,
            {"order_id": order.id},
            idempotency_key=str(order.id),
        )
    else:
        logger.info(f"Order {order.id} {status.value}, entitlements kept")
        affiliate_service.adjust_for_partial_refund(session, order)
    _enqueue_webhooks(session, order, webhook_service.order_event_type(status.value))


def handle_refund(session: Session, payload: dict[str, Any], now: datetime) -> None:
    """
    Apply a (possibly partial) refund.

    Refund amounts are treated as cumulative, so replaying the same refund
    event is a no-op.

    Raises:
        IdempotencyNoOp: order already terminal or refund already applied
        ValidationError: no payment id
        OrderNotFoundYet: the payment event has not been reconciled yet
    """
    obj = event_object(payload)
    payment_id = _payment_id(obj)
    if not payment_id:
        raise ValidationError("Refund event carries no payment id")
    order = _lock_order_by_payment(session, payment_id)
    if order.status in TERMINAL_ORDER_STATUSES:
        raise IdempotencyNoOp(f"Order {order.id} already {OrderStatus(order.status).value}, refund ignored")

    reported = obj.get("amount_refunded", obj.get("amount"))
    refunded_cents = max(order.refunded_cents, int(reported or 0))
    full = obj.get("refunded") is True or refunded_cents >= order.total_cents
    if full:
        refunded_cents = max(refunded_cents, order.total_cents)
        status = OrderStatus.refunded
    else:
        status = OrderStatus.partially_refunded

    if status == order.status and refunded_cents == order.refunded_cents:
        raise IdempotencyNoOp(f"Order {order.id} refund already applied")

    revoke = full or partial_refund_revokes(session, order)
    _apply_reversal(session, order, status, refunded_cents, revoke, now)


def handle_dispute(session: Session, payload: dict[str, Any], now: datetime) -> None:
    """
    Raises:
        IdempotencyNoOp: order already terminal
        ValidationError: no payment id
        OrderNotFoundYet: the payment event has not been reconciled yet
    """
    obj = event_object(payload)
    payment_id = _payment_id(obj)
    if not payment_id:
        raise ValidationError("Dispute event carries no payment id")
    order = _lock_order_by_payment(session, payment_id)
    if order.status in TERMINAL_ORDER_STATUSES:
        raise IdempotencyNoOp(f"Order {order.id} already {OrderStatus(order.status).value}, dispute ignored")
    _apply_reversal(session, order, OrderStatus.disputed, order.refunded_cents, True, now)


# ---------------------------------------------------------------------------
# abandoned sessions
# ---------------------------------------------------------------------------


def handle_session_expired(session: Session, payload: dict[str, Any], now: datetime) -> None:
    obj = event_object(payload)
    ref = str((obj.get("metadata") or {}).get("checkout_attempt_ref") or "")
    attempt = session.get(CheckoutAttempt, int(ref)) if ref.isdigit() else None
    if attempt is None and obj.get("id"):
        attempt = session.exec(
            select(CheckoutAttempt).where(CheckoutAttempt.provider_session_id == obj["id"])
        ).first()
    if attempt is None:
        logger.info("Expired session matches no checkout attempt")
        return
    if checkout_service.expire_attempt(session, attempt, now=now):
        logger.info(f"Checkout attempt {attempt.id} expired by provider")


HANDLERS: dict[str, EventHandler] = {
    **{t: handle_payment_completed for t in PAYMENT_COMPLETED_TYPES},
    **{t: handle_refund for t in REFUND_TYPES},
    **{t: handle_dispute for t in DISPUTE_TYPES},
    **{t: handle_session_expired for t in SESSION_EXPIRED_TYPES},
}


def reconcile(session: Session, event: InboundEvent, *, now: datetime | None = None) -> None:
    """
    Apply one stored event. Unknown event types are accepted and ignored
    so new provider event types never block the stream.
    """
    handler = HANDLERS.get(event.event_type)
    if handler is None:
        logger.info(f"No reconciliation for event type {event.event_type}, ignoring")
        return
    handler(session, event.payload or {}, now or utc_now())
