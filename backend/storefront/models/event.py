"""
Inbound payment-provider events.

The event store is the source of truth for replay: every delivery is kept,
deduplicated by the provider's event id.
"""
from datetime import datetime

from sqlalchemy import JSON, Column, String, Text
from sqlmodel import Field, SQLModel

from storefront.enums import EventStatus

from .base import created_field, id_field, timestamp_field


class InboundEvent(SQLModel, table=True):
    """
    Stored provider event.

    Fields:
    - event_id: provider event id (unique, dedupe key)
    - event_type: provider event type, e.g. "checkout.session.completed"
    - payload: full decoded event body
    - status: received / processed / failed
    - error: last reconciliation error, "signature_invalid" for rejected deliveries
    - attempts: number of reconciliation attempts
    - received_at / processed_at: timestamps
    """
    __tablename__ = "inbound_events"
    id: int = id_field()
    event_id: str = Field(sa_column=Column(String(255), unique=True, index=True, nullable=False))
    event_type: str = Field(max_length=128)
    payload: dict | None = Field(default=None, sa_column=Column(JSON))

    status: EventStatus = Field(
        default=EventStatus.received,
        sa_column=Column(String(16), index=True, nullable=False),
    )
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    attempts: int = Field(default=0)

    received_at: datetime = created_field()
    processed_at: datetime | None = timestamp_field()
