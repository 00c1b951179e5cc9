"""
Database engine.

Builds the SQLModel engine (connection pool) from settings.

Notes:
- Table DDL is owned by Alembic migrations; do not create tables here
- Import storefront.models before use so every table is registered on the
  metadata and relationships resolve
"""
from sqlmodel import Session, create_engine

from storefront.core.config import settings

# pool_pre_ping: workers hold connections across long idle polls
engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


def init_db(session: Session) -> None:
    """
    Seed reference data after migrations.

    Loads the creator's catalog file (products, versions, discounts,
    affiliates, webhook subscriptions) and upserts it.

    Args:
        session: database session
    """
    from storefront.services.catalog_service import load_catalog, sync_catalog

    sync_catalog(session, load_catalog())
