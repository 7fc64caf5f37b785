from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, ContextManager, Protocol

from loguru import logger

from app.core.errors import ErrorKind, HarvestError, PageLoadError
from app.domain import FeedResponse, PersistSummary
from ingestion.browser import BrowserError, BrowserSession
from ingestion.host_discovery import DEFAULT_DOMAIN_SUFFIX, discover_host

from .context import PipelineContext


class ChallengeResolver(Protocol):
    def resolve(self, page_url: str, *, stop_event=None) -> bool: ...


class FeedSource(Protocol):
    def build_feed_url(self, host: str) -> str: ...

    def fetch_events(self, url: str) -> FeedResponse: ...


class EventSink(Protocol):
    def save(self, feed: FeedResponse) -> PersistSummary: ...


@dataclass(slots=True)
class IterationOutcome:
    """Result of one pass through the pipeline: success, or a tagged failure."""

    iteration: int
    attempt: int
    host: str | None = None
    captcha_solved: bool = False
    persisted: PersistSummary | None = None
    error: HarvestError | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None


class PipelineRunner:
    """Runs captcha → page markup → host discovery → feed → store, in that order."""

    def __init__(
        self,
        *,
        page_url: str,
        open_session: Callable[[], ContextManager[BrowserSession]],
        resolver_factory: Callable[[BrowserSession], ChallengeResolver],
        feed_client: FeedSource,
        store: EventSink,
        domain_suffix: str = DEFAULT_DOMAIN_SUFFIX,
    ) -> None:
        self.page_url = page_url
        self._open_session = open_session
        self._resolver_factory = resolver_factory
        self._feed_client = feed_client
        self._store = store
        self._domain_suffix = domain_suffix

    def _fetch_markup(self, session: BrowserSession) -> str:
        try:
            session.navigate(self.page_url)
            session.wait_visible("html")
            return session.read_outer_markup("html")
        except BrowserError as exc:
            raise PageLoadError(f"could not load {self.page_url}: {exc}") from exc

    def run_iteration(self, context: PipelineContext) -> IterationOutcome:
        outcome = IterationOutcome(iteration=context.iteration, attempt=context.attempt)
        started = time.monotonic()
        try:
            with self._open_session() as session:
                resolver = self._resolver_factory(session)
                outcome.captcha_solved = resolver.resolve(
                    self.page_url, stop_event=context.stop_event
                )
                markup = self._fetch_markup(session)

            outcome.host = discover_host(markup, self._domain_suffix)
            feed_url = self._feed_client.build_feed_url(outcome.host)
            feed = self._feed_client.fetch_events(feed_url)
            outcome.persisted = self._store.save(feed)
        except HarvestError as exc:
            outcome.error = exc
        except BrowserError as exc:
            outcome.error = PageLoadError(f"browser session failed: {exc}")
        finally:
            outcome.elapsed = time.monotonic() - started

        if outcome.ok:
            logger.debug(
                "Iteration {} attempt {} finished in {:.2f}s host={}",
                context.iteration,
                context.attempt,
                outcome.elapsed,
                outcome.host,
            )
        return outcome
