"""
Pre-start check.

Blocks until the database accepts connections, so that migrations and the
API/worker processes do not crash-loop while the database container is
still starting. Run before `alembic upgrade head`.
"""
import logging

from sqlalchemy import Engine
from sqlmodel import Session, select
from tenacity import after_log, before_log, retry, stop_after_attempt, wait_fixed

from storefront.core.config import settings
from storefront.core.db import engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

max_tries = 60 * 5  # five minutes
wait_seconds = 1


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def init(db_engine: Engine) -> None:
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(e)
        raise e


def main() -> None:
    logger.info("Initializing service")
    init(engine)
    if not settings.PAYMENT_WEBHOOK_SECRET:
        logger.warning("PAYMENT_WEBHOOK_SECRET is not set, inbound events are not verified")
    logger.info("Service finished initializing")


if __name__ == "__main__":  # pragma: no cover
    main()
