"""
Buyer model.

Buyers are identified by the email the payment provider reports; the
Reconciler creates them on first purchase.
"""
from datetime import datetime

from sqlalchemy import Column, String
from sqlmodel import Field, SQLModel

from .base import created_field, id_field


class User(SQLModel, table=True):
    """
    Buyer.

    Fields:
    - id: snowflake primary key
    - email: lower-cased buyer email (unique)
    - name: display name reported at checkout, if any
    """
    __tablename__ = "users"
    id: int = id_field()
    email: str = Field(sa_column=Column(String(320), unique=True, index=True, nullable=False))
    name: str | None = Field(default=None, max_length=128)

    created_at: datetime = created_field()
    updated_at: datetime = created_field()
