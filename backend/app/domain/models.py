"""Typed domain representations shared by ingestion, persistence and the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class FeedEvent:
    """One scheduled fixture as reported by the upstream feed."""

    id: int
    parent_id: int = 0
    name: str = ""
    sport_id: int = 0
    start_time: int = 0
    place: str = ""
    priority: int = 0


@dataclass(slots=True)
class FeedResponse:
    """Decoded feed payload. ``rejected`` counts records dropped during decoding."""

    events: list[FeedEvent] = field(default_factory=list)
    rejected: int = 0

    def __len__(self) -> int:
        return len(self.events)


@dataclass(slots=True)
class PersistSummary:
    """Outcome of writing one feed batch."""

    received: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    rejected: int = 0
    failed_ids: list[int | None] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "received": self.received,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "failed": self.failed,
            "rejected": self.rejected,
            "failed_ids": list(self.failed_ids),
        }
