from __future__ import annotations

import io
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from PIL import Image

from app.core.config import Settings
from app.db import build_db_components, init_db
from ingestion.browser import BrowserError, ElementNotFound


class FakeBrowserSession:
    """In-memory stand-in for a browser page with an optional challenge on it."""

    def __init__(
        self,
        *,
        markup: str = "<html><body></body></html>",
        captcha_src: str | None = None,
        screenshot: bytes = b"",
        clears_on_submit: bool = True,
        fail_navigate: bool = False,
        image_selector: str = "#captcha_image",
    ) -> None:
        self.markup = markup
        self.captcha_src = captcha_src
        self.captcha_present = captcha_src is not None
        self.screenshot = screenshot
        self.clears_on_submit = clears_on_submit
        self.fail_navigate = fail_navigate
        self.image_selector = image_selector
        self.visited: list[str] = []
        self.typed: dict[str, str] = {}
        self.clicked: list[str] = []

    def navigate(self, url: str) -> None:
        if self.fail_navigate:
            raise BrowserError("navigate failed: net::ERR_CONNECTION_RESET")
        self.visited.append(url)

    def wait_visible(self, selector: str, *, timeout_ms: int | None = None) -> None:
        if selector == self.image_selector and not self.captcha_present:
            raise ElementNotFound(f"wait_visible {selector} timed out")

    def read_attribute(
        self, selector: str, attribute: str, *, timeout_ms: int | None = None
    ) -> str | None:
        if selector == self.image_selector and self.captcha_present:
            return self.captcha_src
        raise ElementNotFound(f"read_attribute {selector} timed out")

    def read_outer_markup(self, selector: str) -> str:
        return self.markup

    def screenshot_element(self, selector: str) -> bytes:
        return self.screenshot

    def set_value(self, selector: str, text: str) -> None:
        self.typed[selector] = text

    def click(self, selector: str) -> None:
        self.clicked.append(selector)
        if self.clears_on_submit:
            self.captcha_present = False

    def wait_absent(self, selector: str, *, timeout_ms: int | None = None) -> None:
        if selector == self.image_selector and self.captcha_present:
            raise ElementNotFound(f"wait_absent {selector} timed out")


@pytest.fixture
def fake_browser():
    return FakeBrowserSession


@pytest.fixture
def captcha_png() -> bytes:
    image = Image.effect_noise((160, 60), 64).convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'events.db'}",
        anticaptcha_api_key="test-client-key",
        live_football_url="https://example.test/live/football/",
        host_domain_suffix="example-suffix.com",
        captcha_poll_interval_seconds=0.01,
        captcha_max_wait_seconds=5,
        pipeline_iteration_delay_seconds=0.0,
        db_connect_backoff_seconds=0.0,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    return settings


@pytest.fixture
def db_components(test_settings):
    engine, session_factory = build_db_components(test_settings)
    init_db(engine)
    yield engine, session_factory
    engine.dispose()
