"""Page automation capability used by the pipeline.

The pipeline only sees :class:`BrowserSession`; the Playwright-backed
implementation lives here too. Missing elements surface as
:class:`ElementNotFound` so callers can tell "not on the page" apart from a
broken browser.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from loguru import logger
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from app.core.config import Settings

_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
]


class BrowserError(Exception):
    """Page automation call failed."""


class ElementNotFound(BrowserError):
    """Selector did not match (or did not reach the wanted state) in time."""


class BrowserSession(Protocol):
    def navigate(self, url: str) -> None: ...

    def wait_visible(self, selector: str, *, timeout_ms: int | None = None) -> None: ...

    def read_attribute(
        self, selector: str, attribute: str, *, timeout_ms: int | None = None
    ) -> str | None: ...

    def read_outer_markup(self, selector: str) -> str: ...

    def screenshot_element(self, selector: str) -> bytes: ...

    def set_value(self, selector: str, text: str) -> None: ...

    def click(self, selector: str) -> None: ...

    def wait_absent(self, selector: str, *, timeout_ms: int | None = None) -> None: ...


class PlaywrightBrowserSession:
    """:class:`BrowserSession` over a single Playwright page."""

    def __init__(self, page: Any, *, timeout_ms: int = 10000) -> None:
        self._page = page
        self._timeout_ms = timeout_ms

    def _timeout(self, timeout_ms: int | None) -> int:
        return self._timeout_ms if timeout_ms is None else timeout_ms

    @contextmanager
    def _translate(self, action: str, selector: str | None = None) -> Iterator[None]:
        try:
            yield
        except PlaywrightTimeoutError as exc:
            target = f" {selector}" if selector else ""
            raise ElementNotFound(f"{action}{target} timed out") from exc
        except PlaywrightError as exc:
            raise BrowserError(f"{action} failed: {exc.message}") from exc

    def navigate(self, url: str) -> None:
        with self._translate("navigate"):
            self._page.goto(url, wait_until="domcontentloaded", timeout=self._timeout_ms)

    def wait_visible(self, selector: str, *, timeout_ms: int | None = None) -> None:
        with self._translate("wait_visible", selector):
            self._page.wait_for_selector(
                selector, state="visible", timeout=self._timeout(timeout_ms)
            )

    def read_attribute(
        self, selector: str, attribute: str, *, timeout_ms: int | None = None
    ) -> str | None:
        with self._translate("read_attribute", selector):
            return self._page.get_attribute(
                selector, attribute, timeout=self._timeout(timeout_ms)
            )

    def read_outer_markup(self, selector: str) -> str:
        with self._translate("read_outer_markup", selector):
            return self._page.locator(selector).first.evaluate(
                "node => node.outerHTML", timeout=self._timeout_ms
            )

    def screenshot_element(self, selector: str) -> bytes:
        with self._translate("screenshot_element", selector):
            return self._page.locator(selector).first.screenshot(
                type="png", timeout=self._timeout_ms
            )

    def set_value(self, selector: str, text: str) -> None:
        with self._translate("set_value", selector):
            self._page.fill(selector, text, timeout=self._timeout_ms)

    def click(self, selector: str) -> None:
        with self._translate("click", selector):
            self._page.click(selector, timeout=self._timeout_ms)

    def wait_absent(self, selector: str, *, timeout_ms: int | None = None) -> None:
        with self._translate("wait_absent", selector):
            self._page.wait_for_selector(
                selector, state="detached", timeout=self._timeout(timeout_ms)
            )


class PlaywrightBrowser:
    """Process-lifetime browser handing out fresh per-iteration sessions."""

    def __init__(self, browser: Any, *, timeout_ms: int = 10000, locale: str = "ru-RU") -> None:
        self._browser = browser
        self._timeout_ms = timeout_ms
        self._locale = locale

    @contextmanager
    def new_session(self) -> Iterator[PlaywrightBrowserSession]:
        """Open an isolated context (cookies, storage) and close it afterwards."""
        try:
            context = self._browser.new_context(
                viewport={"width": 1920, "height": 1080},
                locale=self._locale,
            )
        except PlaywrightError as exc:
            raise BrowserError(f"could not open browser context: {exc.message}") from exc
        try:
            try:
                page = context.new_page()
            except PlaywrightError as exc:
                raise BrowserError(f"could not open page: {exc.message}") from exc
            page.set_default_timeout(self._timeout_ms)
            yield PlaywrightBrowserSession(page, timeout_ms=self._timeout_ms)
        finally:
            try:
                context.close()
            except PlaywrightError as exc:
                logger.warning("Failed to close browser context cleanly: {}", exc.message)


@contextmanager
def open_browser(settings: Settings, *, headed: bool = False) -> Iterator[PlaywrightBrowser]:
    """Launch Chromium for the lifetime of the block."""

    with sync_playwright() as playwright:
        try:
            browser = playwright.chromium.launch(
                headless=settings.browser_headless and not headed,
                args=_LAUNCH_ARGS,
            )
        except PlaywrightError as exc:
            raise BrowserError(f"could not launch Chromium: {exc.message}") from exc
        logger.info("Launched Chromium {}", browser.version)
        try:
            yield PlaywrightBrowser(browser, timeout_ms=settings.browser_timeout_ms)
        finally:
            try:
                browser.close()
            except PlaywrightError as exc:
                logger.warning("Failed to close browser cleanly: {}", exc.message)
