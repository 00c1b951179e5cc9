"""
Shared model helpers.

Column factories used by every table model, plus UTC time helpers.
"""
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey
from sqlmodel import Field, SQLModel

from storefront.core.snowflake import generate_id


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    Attach UTC to naive datetimes.

    SQLite hands DateTime(timezone=True) columns back without tzinfo; every
    stored value is UTC, so comparisons in Python go through this.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def id_field() -> Any:
    """Snowflake primary key."""
    return Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )


def fk_field(
    target: str, *, nullable: bool = False, ondelete: str | None = None, unique: bool = False
) -> Any:
    """BigInteger foreign key, indexed (unique index when ``unique``)."""
    return Field(
        default=None,
        sa_column=Column(
            BigInteger,
            ForeignKey(target, ondelete=ondelete),
            index=True,
            unique=unique,
            nullable=nullable,
        ),
    )


def created_field() -> Any:
    return Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


def timestamp_field(*, index: bool = False) -> Any:
    """Optional timestamp column."""
    return Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=index),
    )


__all__ = [
    "SQLModel",
    "utc_now",
    "ensure_utc",
    "id_field",
    "fk_field",
    "created_field",
    "timestamp_field",
]
