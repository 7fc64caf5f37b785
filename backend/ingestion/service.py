from __future__ import annotations

from loguru import logger
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import StoreUnavailable
from app.db import ping, session_scope
from app.domain import FeedResponse, PersistSummary
from app.repositories import EventRepository


class EventStore:
    """Write feed batches with insert-if-absent semantics.

    Each record commits in its own session so one bad row cannot roll back
    the rest of the batch. Only an unreachable store fails the whole call.
    """

    def __init__(self, engine: Engine, session_factory: sessionmaker[Session]) -> None:
        self._engine = engine
        self._session_factory = session_factory

    def save(self, feed: FeedResponse) -> PersistSummary:
        try:
            ping(self._engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"store unreachable: {exc.__class__.__name__}") from exc

        summary = PersistSummary(received=len(feed.events), rejected=feed.rejected)
        for event in feed.events:
            try:
                with session_scope(self._session_factory) as session:
                    inserted = EventRepository(session).insert_if_absent(event)
            except SQLAlchemyError as exc:
                summary.failed += 1
                summary.failed_ids.append(event.id)
                logger.error(
                    "Failed to insert event {}: {}: {}",
                    event.id,
                    exc.__class__.__name__,
                    str(exc).splitlines()[0] if str(exc) else "",
                )
                continue

            if inserted:
                summary.inserted += 1
                logger.debug("Event {} stored", event.id)
            else:
                summary.skipped += 1
                logger.debug("Event {} already present", event.id)

        logger.info(
            "Persisted batch received={} inserted={} skipped={} failed={} rejected={}",
            summary.received,
            summary.inserted,
            summary.skipped,
            summary.failed,
            summary.rejected,
        )
        return summary
