"""
Affiliate ledger.

Commission lifecycle:
1. attribute: last-click attribution recorded on the checkout attempt
2. accrue_commission: pending commission once the order is paid
   (commissionable: paid, or partially refunded with access kept; the
   amount is computed on what the buyer still paid)
3. release_held_commissions: pending -> available after the holding period
4. create_payouts: available -> paid, batched into one payout per affiliate
5. reverse_commission: refunded or disputed orders reverse their commission

Money moves only through conditional UPDATEs, so a commission is never paid
twice even if two payout runs overlap.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import and_, or_, update
from sqlmodel import Session, col, select

from storefront.api.errors import NotFound, RaceLossError
from storefront.core.config import settings
from storefront.enums import (
    AffiliateStatus,
    CommissionStatus,
    EntitlementStatus,
    OrderStatus,
    PayoutStatus,
)
from storefront.models import (
    Affiliate,
    AffiliateAttribution,
    AffiliateCommission,
    AffiliatePayout,
    CheckoutAttempt,
    Entitlement,
    Order,
    utc_now,
)

logger = logging.getLogger(__name__)


def get_affiliate_by_code(session: Session, code: str) -> Affiliate | None:
    return session.exec(select(Affiliate).where(Affiliate.code == code.strip())).first()


def attribute(
    session: Session, attempt: CheckoutAttempt, code: str, *, now: datetime | None = None
) -> AffiliateAttribution | None:
    """
    Attribute a checkout attempt to the affiliate behind ``code``.

    The client always sends the most recent referral, so a later call for the
    same attempt overwrites the earlier one. Unknown or disabled codes are
    ignored; a bad referral link must not block the sale.
    """
    affiliate = get_affiliate_by_code(session, code)
    if affiliate is None or affiliate.status != AffiliateStatus.active:
        logger.info(f"Ignoring unknown or inactive affiliate code {code!r}")
        return None

    attribution = session.exec(
        select(AffiliateAttribution).where(
            AffiliateAttribution.checkout_attempt_id == attempt.id
        )
    ).first()
    if attribution is None:
        attribution = AffiliateAttribution(
            affiliate_id=affiliate.id,
            checkout_attempt_id=attempt.id,
            referral_code=affiliate.code,
            created_at=now or utc_now(),
        )
    else:
        attribution.affiliate_id = affiliate.id
        attribution.referral_code = affiliate.code
    attempt.affiliate_id = affiliate.id
    session.add(attribution)
    session.add(attempt)
    session.flush()
    return attribution


def compute_commission_cents(affiliate: Affiliate, total_cents: int) -> int:
    """order total x payout percent, rounded half up, then capped."""
    raw = (Decimal(total_cents) * Decimal(affiliate.payout_percent) / Decimal(100)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    cents = int(raw)
    cap = affiliate.commission_cap_cents
    if cap is None:
        cap = settings.AFFILIATE_COMMISSION_CAP_CENTS
    if cap is not None:
        cents = min(cents, cap)
    return max(cents, 0)


def _active_entitlement_orders():
    return select(Entitlement.order_id).where(Entitlement.status == EntitlementStatus.active)


def commissionable_orders():
    """Order ids that can still earn commission."""
    return select(Order.id).where(
        or_(
            Order.status == OrderStatus.paid,
            and_(
                Order.status == OrderStatus.partially_refunded,
                col(Order.id).in_(_active_entitlement_orders()),
            ),
        )
    )


def _is_commissionable(session: Session, order: Order) -> bool:
    return session.exec(commissionable_orders().where(Order.id == order.id)).first() is not None


def _net_cents(order: Order) -> int:
    return max(order.total_cents - order.refunded_cents, 0)


def accrue_commission(
    session: Session, order_id: int, *, now: datetime | None = None
) -> AffiliateCommission | None:
    """
    Create the pending commission for an attributed, commissionable order.

    Returns:
        The commission (existing one on re-run), or None when the order is
        unattributed or no longer commissionable
    """
    now = now or utc_now()
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    if not _is_commissionable(session, order):
        logger.info(f"Order {order.id} is {OrderStatus(order.status).value}, no commission accrued")
        return None

    attempt = session.get(CheckoutAttempt, order.checkout_attempt_id) if order.checkout_attempt_id else None
    if attempt is None or attempt.affiliate_id is None:
        return None

    existing = session.exec(
        select(AffiliateCommission).where(
            AffiliateCommission.affiliate_id == attempt.affiliate_id,
            AffiliateCommission.order_id == order.id,
        )
    ).first()
    if existing:
        return existing

    affiliate = session.get(Affiliate, attempt.affiliate_id)
    commission = AffiliateCommission(
        affiliate_id=affiliate.id,
        order_id=order.id,
        amount_cents=compute_commission_cents(affiliate, _net_cents(order)),
        status=CommissionStatus.pending,
        available_at=now + timedelta(days=settings.AFFILIATE_HOLDING_DAYS),
        created_at=now,
    )
    session.add(commission)
    session.flush()
    logger.info(
        f"Accrued commission {commission.id} of {commission.amount_cents} "
        f"for affiliate {affiliate.id} on order {order.id}"
    )
    return commission


def adjust_for_partial_refund(session: Session, order: Order) -> list[AffiliateCommission]:
    """
    Recompute unpaid commissions of an order that kept its access after a
    partial refund. Paid commissions are left alone.
    """
    commissions = session.exec(
        select(AffiliateCommission)
        .where(
            AffiliateCommission.order_id == order.id,
            col(AffiliateCommission.status).in_(
                (CommissionStatus.pending, CommissionStatus.available)
            ),
        )
        .with_for_update()
    ).all()
    for commission in commissions:
        affiliate = session.get(Affiliate, commission.affiliate_id)
        amount = compute_commission_cents(affiliate, _net_cents(order))
        if amount != commission.amount_cents:
            logger.info(
                f"Commission {commission.id} of order {order.id}: "
                f"{commission.amount_cents} -> {amount} after partial refund"
            )
            commission.amount_cents = amount
            session.add(commission)
    session.flush()
    return list(commissions)


def reverse_commission(
    session: Session, order_id: int, *, now: datetime | None = None
) -> list[AffiliateCommission]:
    """Reverse every commission of an order. Already reversed ones are skipped."""
    now = now or utc_now()
    commissions = session.exec(
        select(AffiliateCommission)
        .where(
            AffiliateCommission.order_id == order_id,
            AffiliateCommission.status != CommissionStatus.reversed,
        )
        .with_for_update()
    ).all()
    for commission in commissions:
        if commission.status == CommissionStatus.paid:
            # already in a payout; the creator recovers it manually
            logger.warning(
                f"Commission {commission.id} was paid in payout {commission.payout_id}, "
                f"reversing it requires a clawback"
            )
        commission.status = CommissionStatus.reversed
        commission.reversed_at = now
        session.add(commission)
        logger.info(f"Reversed commission {commission.id} of order {order_id}")
    session.flush()
    return list(commissions)


def release_held_commissions(session: Session, *, now: datetime | None = None) -> int:
    """Move pending commissions past their holding period to available."""
    now = now or utc_now()
    result = session.exec(
        update(AffiliateCommission)
        .where(
            col(AffiliateCommission.status) == CommissionStatus.pending,
            col(AffiliateCommission.available_at) <= now,
            col(AffiliateCommission.order_id).in_(commissionable_orders()),
        )
        .values(status=CommissionStatus.available)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if result.rowcount:
        logger.info(f"Released {result.rowcount} held commission(s)")
    return result.rowcount


def create_payouts(session: Session, *, now: datetime | None = None) -> list[AffiliatePayout]:
    """
    Batch every available commission into one payout per affiliate.

    Runs in the caller's transaction. Commissions are claimed with a
    conditional UPDATE; if a concurrent run already took some of them the
    whole batch is abandoned with RaceLossError and retried later.

    Returns:
        The payouts created
    """
    now = now or utc_now()
    affiliate_ids = session.exec(
        select(AffiliateCommission.affiliate_id)
        .where(AffiliateCommission.status == CommissionStatus.available)
        .distinct()
    ).all()

    payouts: list[AffiliatePayout] = []
    for affiliate_id in affiliate_ids:
        commissions = session.exec(
            select(AffiliateCommission)
            .where(
                AffiliateCommission.affiliate_id == affiliate_id,
                AffiliateCommission.status == CommissionStatus.available,
            )
            .with_for_update()
        ).all()
        total = sum(c.amount_cents for c in commissions)
        if not commissions or total < settings.AFFILIATE_MIN_PAYOUT_CENTS:
            continue

        payout = AffiliatePayout(
            affiliate_id=affiliate_id,
            amount_cents=total,
            commission_count=len(commissions),
            currency=_payout_currency(session, commissions),
            status=PayoutStatus.pending,
            created_at=now,
        )
        session.add(payout)
        session.flush()

        ids = [c.id for c in commissions]
        result = session.exec(
            update(AffiliateCommission)
            .where(
                col(AffiliateCommission.id).in_(ids),
                col(AffiliateCommission.status) == CommissionStatus.available,
            )
            .values(status=CommissionStatus.paid, payout_id=payout.id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            raise RaceLossError(f"Commissions of affiliate {affiliate_id} changed during payout")
        for commission in commissions:
            session.expire(commission)
        payouts.append(payout)
        logger.info(
            f"Payout {payout.id}: {total} to affiliate {affiliate_id} "
            f"for {len(ids)} commission(s)"
        )
    return payouts


def _payout_currency(session: Session, commissions: list[AffiliateCommission]) -> str:
    currencies = session.exec(
        select(Order.currency)
        .where(col(Order.id).in_([c.order_id for c in commissions]))
        .distinct()
    ).all()
    return currencies[0] if len(currencies) == 1 else "usd"

