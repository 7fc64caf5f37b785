from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable
from uuid import uuid4

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.core.errors import (
    ErrorKind,
    FatalHarvestError,
    HarvestError,
    PipelineCancelled,
    RetriesExhausted,
)
from app.core.log import configure_logging
from app.db import connect_with_retries, init_db
from ingestion.browser import BrowserError, open_browser
from ingestion.captcha import AntiCaptchaClient, CaptchaResolver
from ingestion.client import EventFeedClient
from ingestion.service import EventStore

from .context import PipelineContext
from .runner import IterationOutcome, PipelineRunner

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

FAILURE_HISTORY_LIMIT = 50


@dataclass(slots=True)
class HarvestSummary:
    run_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    iterations: int = 0
    succeeded: int = 0
    exhausted: int = 0
    captchas_solved: int = 0
    events_received: int = 0
    events_inserted: int = 0
    events_failed: int = 0
    events_rejected: int = 0
    stop_reason: str | None = None
    failures: deque[dict[str, object]] = field(
        default_factory=lambda: deque(maxlen=FAILURE_HISTORY_LIMIT)
    )
    failure_counts: Counter[str] = field(default_factory=Counter)

    def record_success(self, outcome: IterationOutcome) -> None:
        self.succeeded += 1
        if outcome.captcha_solved:
            self.captchas_solved += 1
        if outcome.persisted is not None:
            self.events_received += outcome.persisted.received
            self.events_inserted += outcome.persisted.inserted
            self.events_failed += outcome.persisted.failed
            self.events_rejected += outcome.persisted.rejected

    def record_failure(self, iteration: int, error: HarvestError) -> None:
        """Count the failure by its root kind and keep it in the bounded history."""
        cause = getattr(error, "cause", None)
        cause_kind = cause.kind.value if isinstance(cause, HarvestError) else None
        self.failure_counts[cause_kind or error.kind.value] += 1
        self.failures.append(
            {
                "iteration": iteration,
                "kind": error.kind.value,
                "cause_kind": cause_kind,
                "message": str(error),
            }
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "iterations": self.iterations,
            "succeeded": self.succeeded,
            "exhausted": self.exhausted,
            "captchas_solved": self.captchas_solved,
            "events_received": self.events_received,
            "events_inserted": self.events_inserted,
            "events_failed": self.events_failed,
            "events_rejected": self.events_rejected,
            "stop_reason": self.stop_reason,
            "failure_counts": dict(self.failure_counts),
            "failures": list(self.failures),
        }


def run_with_retries(
    run_once: Callable[[PipelineContext], IterationOutcome],
    context: PipelineContext,
    *,
    max_attempts: int = 3,
    retry_delay: float = 0.0,
) -> IterationOutcome:
    """Run one iteration with a bounded number of attempts.

    Fatal kinds raise :class:`FatalHarvestError` straight away, transient
    ones are retried and end in :class:`RetriesExhausted` once the bound is
    reached. A stop request surfaces as :class:`PipelineCancelled`.
    """

    last_error: HarvestError | None = None
    for attempt in range(1, max_attempts + 1):
        context.attempt = attempt
        outcome = run_once(context)
        error = outcome.error
        if error is None:
            return outcome
        if error.kind is ErrorKind.CANCELLED:
            raise error

        logger.warning(
            "Iteration {} attempt {}/{} failed kind={} fatal={}: {}",
            context.iteration,
            attempt,
            max_attempts,
            error.kind.value,
            error.fatal,
            error,
        )
        if error.fatal:
            raise FatalHarvestError(error, attempt=attempt)

        last_error = error
        if attempt < max_attempts and retry_delay > 0:
            if context.stop_event.wait(retry_delay):
                raise PipelineCancelled("stopped between attempts")

    if last_error is None:
        raise ValueError("max_attempts must be at least 1")
    raise RetriesExhausted(max_attempts, last_error)


def run_forever(
    runner: PipelineRunner,
    settings: Settings,
    *,
    stop_event: threading.Event,
    max_iterations: int | None = None,
    run_id: str | None = None,
) -> HarvestSummary:
    """Drive iterations until stopped, a fatal error, or ``max_iterations``.

    Exhausted retries are logged and the loop moves on to the next iteration.
    """

    summary = HarvestSummary(run_id=run_id or str(uuid4()))
    logger.info(
        "Starting harvest run {} (max_attempts={}, delay={}s, max_iterations={})",
        summary.run_id,
        settings.pipeline_max_attempts,
        settings.pipeline_iteration_delay_seconds,
        max_iterations or "unbounded",
    )

    while True:
        if stop_event.is_set():
            summary.stop_reason = "stopped"
            break
        if max_iterations is not None and summary.iterations >= max_iterations:
            summary.stop_reason = "limit"
            break

        summary.iterations += 1
        context = PipelineContext(
            run_id=summary.run_id,
            iteration=summary.iterations,
            settings=settings,
            stop_event=stop_event,
        )

        try:
            outcome = run_with_retries(
                runner.run_iteration,
                context,
                max_attempts=settings.pipeline_max_attempts,
                retry_delay=settings.pipeline_retry_delay_seconds,
            )
        except FatalHarvestError as exc:
            logger.error(
                "Fatal error in iteration {} (attempt {}), stopping: {}",
                context.iteration,
                exc.attempt,
                exc,
            )
            summary.record_failure(context.iteration, exc)
            summary.stop_reason = "fatal"
            break
        except RetriesExhausted as exc:
            logger.error("Iteration {} abandoned: {}", context.iteration, exc)
            summary.exhausted += 1
            summary.record_failure(context.iteration, exc)
        except PipelineCancelled:
            logger.info("Iteration {} cancelled by stop request", context.iteration)
            summary.stop_reason = "stopped"
            break
        else:
            summary.record_success(outcome)

        if stop_event.wait(settings.pipeline_iteration_delay_seconds):
            summary.stop_reason = "stopped"
            break

    summary.finished_at = datetime.now(timezone.utc)
    logger.info(
        "Harvest run {} finished reason={} iterations={} succeeded={} exhausted={} inserted={}",
        summary.run_id,
        summary.stop_reason,
        summary.iterations,
        summary.succeeded,
        summary.exhausted,
        summary.events_inserted,
    )
    return summary


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Harvest live event listings into the store")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single iteration (with retries) and exit",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Stop after N iterations (default: run until stopped)",
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON run summary to the specified path",
    )
    return parser.parse_args(argv)


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum, _frame) -> None:
        logger.info("Received signal {}, stopping after the current step", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _write_summary(path: Path, summary: HarvestSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(summary.to_dict(), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, serialize=settings.log_serialize)

    missing = settings.missing_required()
    if missing:
        logger.error("Missing required configuration: {}", ", ".join(missing))
        return EXIT_CONFIG

    max_iterations = 1 if args.once else args.max_iterations

    try:
        engine, session_factory = connect_with_retries(settings)
        init_db(engine)
    except SQLAlchemyError as exc:
        logger.error("Could not reach the store, giving up: {}", exc.__class__.__name__)
        return EXIT_FATAL

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)

    store = EventStore(engine, session_factory)
    try:
        with AntiCaptchaClient.from_settings(settings) as solver, EventFeedClient.from_settings(
            settings
        ) as feed_client, open_browser(settings, headed=args.headed) as browser:
            runner = PipelineRunner(
                page_url=settings.live_football_url or "",
                open_session=browser.new_session,
                resolver_factory=lambda session: CaptchaResolver.from_settings(
                    session, solver, settings
                ),
                feed_client=feed_client,
                store=store,
                domain_suffix=settings.host_domain_suffix,
            )
            summary = run_forever(
                runner,
                settings,
                stop_event=stop_event,
                max_iterations=max_iterations,
            )
    except BrowserError as exc:
        logger.error("Browser unavailable, giving up: {}", exc)
        return EXIT_FATAL
    finally:
        engine.dispose()

    if args.summary_path:
        _write_summary(args.summary_path, summary)
        logger.info("Wrote run summary to {}", args.summary_path)

    return EXIT_FATAL if summary.stop_reason == "fatal" else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
