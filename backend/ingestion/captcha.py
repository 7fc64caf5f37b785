"""Challenge detection and solving.

The resolver drives a small state machine: detect the challenge image,
capture it, submit it to the solving service as an async task, poll the
task until it is ready, then type the answer back into the page.
"""

from __future__ import annotations

import base64
import io
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable
from urllib.parse import urljoin

import httpx
from loguru import logger
from PIL import Image

from app.core.config import Settings
from app.core.errors import (
    CaptchaCaptureError,
    CaptchaRejected,
    CaptchaTimeout,
    CaptchaVendorError,
    PipelineCancelled,
)

from .browser import BrowserError, BrowserSession, ElementNotFound


class TaskStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"


@dataclass(slots=True)
class CaptchaTask:
    task_id: int | str
    status: TaskStatus = TaskStatus.PENDING
    solution_text: str | None = None
    error_message: str | None = None


@dataclass(slots=True, frozen=True)
class CaptchaSelectors:
    image: str = "#captcha_image"
    input: str = "#captcha_input"
    submit: str = "#captcha_submit"


class AntiCaptchaClient:
    """Two-call async task API: ``createTask`` then ``getTaskResult``."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.anti-captcha.com",
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self.client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: httpx.BaseTransport | None = None
    ) -> "AntiCaptchaClient":
        return cls(
            api_key=settings.anticaptcha_api_key or "",
            base_url=str(settings.anticaptcha_base_url),
            timeout=settings.anticaptcha_timeout_seconds,
            transport=transport,
        )

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.client.post(path, json={"clientKey": self._api_key, **body})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise CaptchaVendorError(f"{path} request failed: {exc.__class__.__name__}") from exc
        except ValueError as exc:
            raise CaptchaVendorError(f"{path} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise CaptchaVendorError(f"{path} returned an unexpected payload")
        return payload

    @staticmethod
    def _error_id(payload: dict[str, Any]) -> int:
        try:
            return int(payload.get("errorId") or 0)
        except (TypeError, ValueError):
            return -1

    def create_task(self, image_base64: str) -> CaptchaTask:
        payload = self._post(
            "/createTask",
            {"task": {"type": "ImageToTextTask", "body": image_base64}},
        )
        error_id = self._error_id(payload)
        if error_id != 0:
            raise CaptchaVendorError(
                payload.get("errorDescription") or payload.get("errorCode") or "createTask failed",
                error_id=error_id,
            )
        task_id = payload.get("taskId")
        if task_id in (None, ""):
            raise CaptchaVendorError("createTask response carried no taskId")
        return CaptchaTask(task_id=task_id)

    def get_task_result(self, task: CaptchaTask) -> CaptchaTask:
        payload = self._post("/getTaskResult", {"taskId": task.task_id})
        if self._error_id(payload) != 0:
            task.status = TaskStatus.ERROR
            task.error_message = (
                payload.get("errorDescription") or payload.get("errorCode") or "task failed"
            )
            return task

        if payload.get("status") == "ready":
            solution = payload.get("solution") or {}
            task.status = TaskStatus.READY
            task.solution_text = str(solution.get("text") or "")
        else:
            task.status = TaskStatus.PENDING
        return task

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "AntiCaptchaClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _normalize_png(raw: bytes, *, min_bytes: int) -> bytes:
    if len(raw) < min_bytes:
        raise CaptchaCaptureError(f"challenge image too small ({len(raw)} bytes)")
    try:
        with Image.open(io.BytesIO(raw)) as image:
            image.load()
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
    except (OSError, ValueError) as exc:
        raise CaptchaCaptureError(f"challenge image could not be decoded: {exc}") from exc
    return buffer.getvalue()


class CaptchaResolver:
    def __init__(
        self,
        browser: BrowserSession,
        solver: AntiCaptchaClient,
        *,
        selectors: CaptchaSelectors | None = None,
        site_base_url: str = "",
        poll_interval: float = 1.0,
        max_wait_seconds: float = 120.0,
        min_image_bytes: int = 100,
        detect_timeout_ms: int = 3000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._browser = browser
        self._solver = solver
        self._selectors = selectors or CaptchaSelectors()
        self._site_base_url = site_base_url
        self._poll_interval = poll_interval
        self._max_wait_seconds = max_wait_seconds
        self._min_image_bytes = min_image_bytes
        self._detect_timeout_ms = detect_timeout_ms
        self._clock = clock

    @classmethod
    def from_settings(
        cls, browser: BrowserSession, solver: AntiCaptchaClient, settings: Settings
    ) -> "CaptchaResolver":
        return cls(
            browser,
            solver,
            selectors=CaptchaSelectors(
                image=settings.captcha_image_selector,
                input=settings.captcha_input_selector,
                submit=settings.captcha_submit_selector,
            ),
            site_base_url=settings.site_base_url,
            poll_interval=settings.captcha_poll_interval_seconds,
            max_wait_seconds=settings.captcha_max_wait_seconds,
            min_image_bytes=settings.captcha_min_image_bytes,
            detect_timeout_ms=settings.captcha_detect_timeout_ms,
        )

    def resolve(self, page_url: str, *, stop_event: threading.Event | None = None) -> bool:
        """Clear the challenge on ``page_url`` if there is one.

        Returns True when a challenge was solved, False when none was shown.
        """

        if not self._detect(page_url):
            logger.debug("No challenge on {}", page_url)
            return False

        image_png = self._capture()
        encoded = base64.b64encode(image_png).decode("ascii")
        task = self._solver.create_task(encoded)
        logger.info("Submitted challenge task {} ({} bytes)", task.task_id, len(image_png))

        solution = self._await_solution(task, stop_event)
        self._submit_solution(solution)
        logger.info("Challenge cleared (task {})", task.task_id)
        return True

    def _detect(self, page_url: str) -> bool:
        try:
            self._browser.navigate(page_url)
            source = self._browser.read_attribute(
                self._selectors.image, "src", timeout_ms=self._detect_timeout_ms
            )
        except BrowserError as exc:
            # A missing element is the normal "no challenge" case.
            logger.debug("Challenge lookup failed, assuming none: {}", exc)
            return False
        if not source:
            return False
        logger.info("Challenge image detected at {}", urljoin(self._site_base_url, source))
        return True

    def _capture(self) -> bytes:
        selector = self._selectors.image
        try:
            self._browser.wait_visible(selector)
            raw = self._browser.screenshot_element(selector)
        except BrowserError as exc:
            raise CaptchaCaptureError(f"challenge screenshot failed: {exc}") from exc
        return _normalize_png(raw or b"", min_bytes=self._min_image_bytes)

    def _wait(self, stop_event: threading.Event | None, seconds: float) -> bool:
        if stop_event is None:
            time.sleep(seconds)
            return False
        return stop_event.wait(seconds)

    def _await_solution(self, task: CaptchaTask, stop_event: threading.Event | None) -> str:
        deadline = self._clock() + self._max_wait_seconds
        polls = 0
        while True:
            if self._wait(stop_event, self._poll_interval):
                raise PipelineCancelled(f"stopped while waiting for task {task.task_id}")
            if self._clock() >= deadline:
                raise CaptchaTimeout(
                    f"task {task.task_id} not solved within {self._max_wait_seconds:g}s"
                )

            polls += 1
            task = self._solver.get_task_result(task)
            if task.status is TaskStatus.READY:
                logger.debug("Task {} ready after {} polls", task.task_id, polls)
                return task.solution_text or ""
            if task.status is TaskStatus.ERROR:
                raise CaptchaVendorError(task.error_message or f"task {task.task_id} failed")

    def _submit_solution(self, solution: str) -> None:
        try:
            self._browser.set_value(self._selectors.input, solution)
            self._browser.click(self._selectors.submit)
        except BrowserError as exc:
            raise CaptchaRejected(f"could not submit solution: {exc}") from exc

        try:
            self._browser.wait_absent(self._selectors.image)
        except ElementNotFound as exc:
            raise CaptchaRejected("challenge still present after submitting the solution") from exc
        except BrowserError as exc:
            raise CaptchaRejected(f"could not confirm the challenge was cleared: {exc}") from exc
