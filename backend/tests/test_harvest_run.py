from __future__ import annotations

import json
import threading
from contextlib import contextmanager

import httpx
import pytest

from app.core.config import Settings
from app.core.errors import (
    ErrorKind,
    FatalHarvestError,
    FeedHTTPError,
    HostNotFound,
    PipelineCancelled,
    RetriesExhausted,
)
from app.db import session_scope
from app.domain import PersistSummary
from app.repositories import EventRepository
from ingestion.client import EventFeedClient
from ingestion.service import EventStore
from pipelines import harvest_run
from pipelines.context import PipelineContext
from pipelines.harvest_run import HarvestSummary, run_forever, run_with_retries
from pipelines.runner import IterationOutcome, PipelineRunner


class ScriptedRunner:
    """Returns canned outcomes; the last entry repeats once the script runs out."""

    def __init__(self, *errors) -> None:
        self.errors = list(errors)
        self.contexts: list[tuple[int, int]] = []

    def run_iteration(self, context: PipelineContext) -> IterationOutcome:
        self.contexts.append((context.iteration, context.attempt))
        error = self.errors.pop(0) if len(self.errors) > 1 else self.errors[0]
        outcome = IterationOutcome(iteration=context.iteration, attempt=context.attempt)
        if error is None:
            outcome.persisted = PersistSummary(received=1, inserted=1)
        else:
            outcome.error = error
        return outcome

    @property
    def calls(self) -> int:
        return len(self.contexts)


def _context(test_settings, stop_event=None) -> PipelineContext:
    return PipelineContext(
        run_id="run-1",
        iteration=1,
        settings=test_settings,
        stop_event=stop_event or threading.Event(),
    )


def test_transient_failure_retried_exactly_max_attempts(test_settings):
    runner = ScriptedRunner(FeedHTTPError("boom", status_code=502))

    with pytest.raises(RetriesExhausted) as excinfo:
        run_with_retries(runner.run_iteration, _context(test_settings), max_attempts=3)

    assert runner.calls == 3
    assert [attempt for _, attempt in runner.contexts] == [1, 2, 3]
    assert excinfo.value.attempts == 3
    assert excinfo.value.cause.kind is ErrorKind.FEED_HTTP


def test_fatal_failure_is_not_retried(test_settings):
    runner = ScriptedRunner(HostNotFound())

    with pytest.raises(FatalHarvestError) as excinfo:
        run_with_retries(runner.run_iteration, _context(test_settings), max_attempts=3)

    assert runner.calls == 1
    assert excinfo.value.kind is ErrorKind.HOST_NOT_FOUND
    assert excinfo.value.attempt == 1


def test_success_after_transient_failure(test_settings):
    runner = ScriptedRunner(FeedHTTPError("boom"), None)

    outcome = run_with_retries(runner.run_iteration, _context(test_settings), max_attempts=3)

    assert outcome.ok
    assert outcome.attempt == 2
    assert runner.calls == 2


def test_cancellation_is_not_retried(test_settings):
    runner = ScriptedRunner(PipelineCancelled("stop"))

    with pytest.raises(PipelineCancelled):
        run_with_retries(runner.run_iteration, _context(test_settings), max_attempts=3)

    assert runner.calls == 1


def test_stop_between_attempts_cancels(test_settings):
    stop_event = threading.Event()
    stop_event.set()
    runner = ScriptedRunner(FeedHTTPError("boom"))

    with pytest.raises(PipelineCancelled):
        run_with_retries(
            runner.run_iteration,
            _context(test_settings, stop_event),
            max_attempts=3,
            retry_delay=0.5,
        )

    assert runner.calls == 1


def test_run_forever_continues_after_exhausted_iteration(test_settings):
    runner = ScriptedRunner(
        FeedHTTPError("a"), FeedHTTPError("b"), FeedHTTPError("c"), None
    )

    summary = run_forever(runner, test_settings, stop_event=threading.Event(), max_iterations=2)

    assert summary.stop_reason == "limit"
    assert summary.iterations == 2
    assert summary.exhausted == 1
    assert summary.succeeded == 1
    assert summary.failures[0]["kind"] == "retries_exhausted"
    assert summary.failures[0]["cause_kind"] == "feed_http"


def test_run_forever_keeps_bounded_failure_history(test_settings):
    runner = ScriptedRunner(FeedHTTPError("upstream down", status_code=503))
    settings = test_settings.model_copy(update={"pipeline_max_attempts": 1})
    iterations = harvest_run.FAILURE_HISTORY_LIMIT + 25

    summary = run_forever(
        runner, settings, stop_event=threading.Event(), max_iterations=iterations
    )

    assert summary.exhausted == iterations
    assert len(summary.failures) == harvest_run.FAILURE_HISTORY_LIMIT
    assert summary.failures[-1]["iteration"] == iterations
    assert summary.failure_counts == {"feed_http": iterations}
    assert summary.to_dict()["failure_counts"] == {"feed_http": iterations}


def test_run_forever_stops_on_fatal(test_settings):
    runner = ScriptedRunner(HostNotFound())

    summary = run_forever(runner, test_settings, stop_event=threading.Event(), max_iterations=5)

    assert summary.stop_reason == "fatal"
    assert summary.iterations == 1
    assert runner.calls == 1


def test_run_forever_honours_stop_request(test_settings):
    stop_event = threading.Event()
    stop_event.set()
    runner = ScriptedRunner(None)

    summary = run_forever(runner, test_settings, stop_event=stop_event)

    assert summary.stop_reason == "stopped"
    assert summary.iterations == 0
    assert runner.calls == 0


def test_end_to_end_iterations_keep_single_row(fake_browser, db_components, test_settings):
    engine, session_factory = db_components
    markup = '<html><img src="https://line9w.example-suffix.com/p.gif"></html>'
    feed_hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        feed_hosts.append(request.url.host)
        return httpx.Response(200, json={"events": [{"id": 1001, "name": "A - B"}]})

    @contextmanager
    def open_session():
        yield fake_browser(markup=markup)

    class NoChallenge:
        def resolve(self, page_url, *, stop_event=None) -> bool:
            return False

    with EventFeedClient(transport=httpx.MockTransport(handler)) as feed_client:
        runner = PipelineRunner(
            page_url=test_settings.live_football_url,
            open_session=open_session,
            resolver_factory=lambda _session: NoChallenge(),
            feed_client=feed_client,
            store=EventStore(engine, session_factory),
            domain_suffix=test_settings.host_domain_suffix,
        )
        summary = run_forever(
            runner, test_settings, stop_event=threading.Event(), max_iterations=2
        )

    assert summary.succeeded == 2
    assert summary.events_received == 2
    assert summary.events_inserted == 1
    assert feed_hosts == ["line9w.example-suffix.com"] * 2
    with session_scope(session_factory) as session:
        assert EventRepository(session).list_ids() == [1001]


def test_write_summary_outputs_json(tmp_path):
    summary = HarvestSummary(run_id="abc", iterations=3, stop_reason="limit")
    path = tmp_path / "out" / "summary.json"

    harvest_run._write_summary(path, summary)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["run_id"] == "abc"
    assert data["iterations"] == 3
    assert data["stop_reason"] == "limit"


def test_main_exits_with_config_error(tmp_path, monkeypatch):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'events.db'}",
        anticaptcha_api_key=None,
        live_football_url=None,
    )
    monkeypatch.setattr(harvest_run, "get_settings", lambda: settings)

    assert harvest_run.main([]) == harvest_run.EXIT_CONFIG


def test_parse_args_once_and_summary_path(tmp_path):
    args = harvest_run._parse_args(["--once", "--summary-path", str(tmp_path / "s.json")])

    assert args.once is True
    assert args.max_iterations is None
    assert args.summary_path == tmp_path / "s.json"
