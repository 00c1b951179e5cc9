"""
Outbound webhook subscriptions and deliveries.

Each delivery row is one (subscription, event) pair with its own retry
schedule, independent of the generic job backoff.
"""
from datetime import datetime

from sqlalchemy import JSON, Column, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from storefront.enums import DeliveryStatus, SubscriptionStatus

from .base import created_field, fk_field, id_field, timestamp_field


class WebhookSubscription(SQLModel, table=True):
    """
    Creator-owned endpoint.

    event_types lists the outbound event types to send ("*" for all).
    """
    __tablename__ = "webhook_subscriptions"
    id: int = id_field()
    url: str = Field(max_length=2048)
    secret: str = Field(max_length=255)
    event_types: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    status: SubscriptionStatus = Field(
        default=SubscriptionStatus.active, sa_column=Column(String(16), nullable=False)
    )
    created_at: datetime = created_field()


class WebhookDelivery(SQLModel, table=True):
    """
    Delivery of one outbound event to one subscription.

    Fields:
    - event_id: outbound event id; receivers dedupe on it
    - payload: the exact JSON body, re-sent unchanged on retries
    - attempts / next_attempt_at: retry schedule position
    - last_status_code / last_error: outcome of the latest attempt
    """
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("subscription_id", "event_id", name="uq_webhook_deliveries_event"),
    )
    id: int = id_field()
    subscription_id: int = fk_field("webhook_subscriptions.id", ondelete="CASCADE")
    event_id: str = Field(max_length=255)
    event_type: str = Field(max_length=64)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    status: DeliveryStatus = Field(
        default=DeliveryStatus.pending,
        sa_column=Column(String(16), index=True, nullable=False),
    )
    attempts: int = Field(default=0)
    next_attempt_at: datetime | None = timestamp_field(index=True)
    last_status_code: int | None = Field(default=None)
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: datetime = created_field()
    delivered_at: datetime | None = timestamp_field()
