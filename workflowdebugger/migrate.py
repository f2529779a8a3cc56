"""Create the database schema: python -m workflowdebugger.migrate"""
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from . import config
from .db import init_db
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def main() -> int:
    configure_logging()
    if not config.DATABASE_URL:
        logger.error("DATABASE_URL required")
        return 1
    logger.info("Running migrations...")
    try:
        init_db()
    except SQLAlchemyError as exc:
        logger.error("Migration failed: %s", exc)
        return 1
    logger.info("Migrations complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
