"""
Seed data.

Upserts the creator's catalog (CATALOG_PATH, default config/catalog.json)
after migrations. Safe to run on every deploy.
"""
import logging

from sqlmodel import Session

from storefront.core.db import engine, init_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def init() -> None:
    with Session(engine) as session:
        init_db(session)


def main() -> None:
    logger.info("Creating initial data")
    init()
    logger.info("Initial data created")


if __name__ == "__main__":  # pragma: no cover
    main()
