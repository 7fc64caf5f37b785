import argparse
import sys

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import get_settings
from app.core.log import configure_logging
from app.db import connect_with_retries, init_db, session_scope
from app.repositories import EventRepository


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the events table if it does not exist")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for this run",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    configure_logging(settings.log_level, serialize=settings.log_serialize)

    try:
        engine, session_factory = connect_with_retries(settings)
    except SQLAlchemyError as exc:
        logger.error("Could not reach the store: {}", exc.__class__.__name__)
        return 1

    try:
        init_db(engine)
        with session_scope(session_factory) as session:
            existing = EventRepository(session).count()
    finally:
        engine.dispose()

    logger.info("Schema ready on {} ({} events stored)", engine.dialect.name, existing)
    return 0


if __name__ == "__main__":
    sys.exit(main())
