from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from app.core.config import Settings
from app.core.errors import FeedHTTPError
from app.domain import FeedResponse

from .normalize import decode_feed_bytes

DEFAULT_FEED_PATH = "/events/list"
DEFAULT_FEED_PARAMS: dict[str, Any] = {"lang": "ru", "scopeMarket": 1600}


class EventFeedClient:
    """Thin wrapper around the rotating-host events feed."""

    def __init__(
        self,
        *,
        feed_path: str = DEFAULT_FEED_PATH,
        params: dict[str, Any] | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.feed_path = feed_path
        self.params = dict(DEFAULT_FEED_PARAMS if params is None else params)
        self.timeout = timeout
        self.client = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> "EventFeedClient":
        return cls(
            feed_path=settings.feed_path,
            params={"lang": settings.feed_lang, "scopeMarket": settings.feed_scope_market},
            timeout=settings.feed_timeout_seconds,
            transport=transport,
        )

    def build_feed_url(self, host: str) -> str:
        url = httpx.URL(f"https://{host}{self.feed_path}")
        return str(url.copy_merge_params({key: str(value) for key, value in self.params.items()}))

    def fetch_events(self, url: str) -> FeedResponse:
        logger.info("Feed GET {}", url)
        try:
            response = self.client.get(url)
        except httpx.HTTPError as exc:
            raise FeedHTTPError(f"feed request failed: {exc.__class__.__name__}: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            logger.error("Feed responded with status {}", response.status_code)
            raise FeedHTTPError(
                f"feed responded with status {response.status_code}",
                status_code=response.status_code,
            )

        feed = decode_feed_bytes(response.content)
        logger.info("Feed returned {} events ({} rejected)", len(feed.events), feed.rejected)
        return feed

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "EventFeedClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
