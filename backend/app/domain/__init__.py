"""Domain models representing normalized feed data."""

from .models import FeedEvent, FeedResponse, PersistSummary

__all__ = [
    "FeedEvent",
    "FeedResponse",
    "PersistSummary",
]
