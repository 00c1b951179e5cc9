"""
Affiliate ledger models.

Attribution is last-click, one per checkout attempt. A commission is one per
(affiliate, order); it sits pending through the holding period, becomes
available, and is paid out exactly once through an AffiliatePayout.
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Column, ForeignKey, Numeric, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from storefront.enums import AffiliateStatus, CommissionStatus, PayoutStatus

from .base import created_field, fk_field, id_field, timestamp_field


class Affiliate(SQLModel, table=True):
    """
    Affiliate.

    Fields:
    - code: referral code carried by links (unique)
    - payout_percent: share of the order total, e.g. 30.00
    - commission_cap_cents: per-order cap (None → AFFILIATE_COMMISSION_CAP_CENTS)
    """
    __tablename__ = "affiliates"
    id: int = id_field()
    code: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))
    name: str = Field(max_length=128)
    email: str | None = Field(default=None, max_length=320)
    payout_percent: Decimal = Field(
        default=Decimal("0.00"), sa_column=Column(Numeric(5, 2), nullable=False)
    )
    commission_cap_cents: int | None = Field(default=None)
    status: AffiliateStatus = Field(
        default=AffiliateStatus.active, sa_column=Column(String(16), nullable=False)
    )
    created_at: datetime = created_field()


class AffiliateAttribution(SQLModel, table=True):
    __tablename__ = "affiliate_attributions"
    id: int = id_field()
    affiliate_id: int = fk_field("affiliates.id", ondelete="CASCADE")
    # one attribution per attempt
    checkout_attempt_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("checkout_attempts.id"), unique=True, nullable=False
        )
    )
    referral_code: str = Field(max_length=64)
    created_at: datetime = created_field()


class AffiliateCommission(SQLModel, table=True):
    """
    Commission for one order.

    Fields:
    - amount_cents: order total × payout percent, capped
    - status: pending → available → paid, or → reversed
    - available_at: end of the holding period
    - payout_id: payout that paid it
    """
    __tablename__ = "affiliate_commissions"
    __table_args__ = (
        UniqueConstraint("affiliate_id", "order_id", name="uq_affiliate_commissions_order"),
    )
    id: int = id_field()
    affiliate_id: int = fk_field("affiliates.id", ondelete="CASCADE")
    order_id: int = fk_field("orders.id", ondelete="CASCADE")
    amount_cents: int = Field(default=0)
    status: CommissionStatus = Field(
        default=CommissionStatus.pending,
        sa_column=Column(String(16), index=True, nullable=False),
    )
    available_at: datetime = created_field()
    payout_id: int | None = fk_field("affiliate_payouts.id", nullable=True)
    created_at: datetime = created_field()
    reversed_at: datetime | None = timestamp_field()


class AffiliatePayout(SQLModel, table=True):
    """One transfer record batching many commissions of one affiliate."""
    __tablename__ = "affiliate_payouts"
    id: int = id_field()
    affiliate_id: int = fk_field("affiliates.id", ondelete="CASCADE")
    amount_cents: int = Field(default=0)
    commission_count: int = Field(default=0)
    currency: str = Field(default="usd", max_length=8)
    status: PayoutStatus = Field(
        default=PayoutStatus.pending, sa_column=Column(String(16), nullable=False)
    )
    created_at: datetime = created_field()
    sent_at: datetime | None = timestamp_field()
