"""Event persistence helpers."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.domain import FeedEvent
from app.models import Event

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _event_row(event: FeedEvent) -> dict[str, object]:
    return {
        "id": event.id,
        "parent_id": event.parent_id,
        "name": event.name,
        "sport_id": event.sport_id,
        "start_time": event.start_time,
        "place": event.place,
        "priority": event.priority,
    }


class EventRepository:
    """Insert-only access to the ``events`` table."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def insert_if_absent(self, event: FeedEvent) -> bool:
        """Insert ``event`` unless a row with the same id exists.

        Returns True when a row was written. Existing rows are never touched.
        """

        dialect = self._session.get_bind().dialect.name
        insert_fn = _DIALECT_INSERTS.get(dialect)
        if insert_fn is None:
            raise NotImplementedError(f"insert-if-absent is not supported for dialect {dialect!r}")

        statement = (
            insert_fn(Event)
            .values(**_event_row(event))
            .on_conflict_do_nothing(index_elements=[Event.id])
        )
        result = self._session.execute(statement)
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Queries

    def get(self, event_id: int) -> Event | None:
        return self._session.get(Event, event_id)

    def count(self) -> int:
        return int(self._session.execute(select(func.count()).select_from(Event)).scalar_one())

    def list_ids(self) -> list[int]:
        return list(self._session.execute(select(Event.id).order_by(Event.id)).scalars())
