from __future__ import annotations

import json
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.errors import FeedDecodeError
from app.domain import FeedEvent, FeedResponse


class _EventPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: int
    parent_id: int = Field(default=0, alias="parentId")
    name: str = ""
    sport_id: int = Field(default=0, alias="sportId")
    start_time: int = Field(default=0, alias="startTime")
    place: str = ""
    priority: int = 0


def _drop_nulls(raw_event: Any) -> Any:
    """Upstream sends explicit nulls for unset fields; treat them as absent."""
    if not isinstance(raw_event, dict):
        return raw_event
    return {key: value for key, value in raw_event.items() if value is not None or key == "id"}


def _to_event(item: _EventPayload) -> FeedEvent:
    return FeedEvent(
        id=item.id,
        parent_id=item.parent_id,
        name=item.name,
        sport_id=item.sport_id,
        start_time=item.start_time,
        place=item.place,
        priority=item.priority,
    )


def decode_feed(payload: Any) -> FeedResponse:
    """Validate an already-parsed JSON document into a :class:`FeedResponse`.

    Only a malformed envelope fails the call. Records that do not validate are
    logged, counted in ``rejected`` and left out of the result.
    """

    if not isinstance(payload, dict):
        raise FeedDecodeError(f"feed payload must be a JSON object, got {type(payload).__name__}")

    raw_events = payload.get("events")
    if raw_events is None:
        return FeedResponse()
    if not isinstance(raw_events, list):
        raise FeedDecodeError(f"feed events must be a list, got {type(raw_events).__name__}")

    feed = FeedResponse()
    for position, raw_event in enumerate(raw_events):
        try:
            item = _EventPayload.model_validate(_drop_nulls(raw_event))
        except ValidationError as exc:
            feed.rejected += 1
            logger.warning(
                "Skipping feed record #{}: {} validation error(s) ({})",
                position,
                exc.error_count(),
                ", ".join(".".join(str(part) for part in error["loc"]) for error in exc.errors()),
            )
            continue
        feed.events.append(_to_event(item))
    return feed


def decode_feed_bytes(body: bytes | str) -> FeedResponse:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FeedDecodeError(f"feed body is not valid JSON: {exc}") from exc
    return decode_feed(payload)
