"""Repository abstractions for database interactions."""

from .event_repository import EventRepository

__all__ = [
    "EventRepository",
]
