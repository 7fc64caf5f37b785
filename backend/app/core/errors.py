"""Typed failure taxonomy for the harvesting pipeline.

Every component raises a :class:`HarvestError` subclass carrying an
:class:`ErrorKind`. The retry loop decides what to do from the kind alone.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    HOST_NOT_FOUND = "host_not_found"
    CAPTCHA_CAPTURE = "captcha_capture"
    CAPTCHA_VENDOR = "captcha_vendor"
    CAPTCHA_REJECTED = "captcha_rejected"
    CAPTCHA_TIMEOUT = "captcha_timeout"
    PAGE_LOAD = "page_load"
    FEED_HTTP = "feed_http"
    FEED_DECODE = "feed_decode"
    STORE_UNAVAILABLE = "store_unavailable"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CANCELLED = "cancelled"


FATAL_KINDS = frozenset({ErrorKind.HOST_NOT_FOUND})


def is_fatal(kind: ErrorKind) -> bool:
    return kind in FATAL_KINDS


class HarvestError(Exception):
    """Base class for pipeline failures."""

    kind: ErrorKind = ErrorKind.PAGE_LOAD

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value)

    @property
    def fatal(self) -> bool:
        return is_fatal(self.kind)


class HostNotFound(HarvestError):
    """The page markup no longer embeds a feed host; the site changed."""

    kind = ErrorKind.HOST_NOT_FOUND


class CaptchaCaptureError(HarvestError):
    kind = ErrorKind.CAPTCHA_CAPTURE


class CaptchaVendorError(HarvestError):
    kind = ErrorKind.CAPTCHA_VENDOR

    def __init__(self, message: str = "", *, error_id: int | None = None) -> None:
        super().__init__(message)
        self.error_id = error_id


class CaptchaRejected(HarvestError):
    kind = ErrorKind.CAPTCHA_REJECTED


class CaptchaTimeout(HarvestError):
    kind = ErrorKind.CAPTCHA_TIMEOUT


class PageLoadError(HarvestError):
    kind = ErrorKind.PAGE_LOAD


class FeedHTTPError(HarvestError):
    kind = ErrorKind.FEED_HTTP

    def __init__(self, message: str = "", *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FeedDecodeError(HarvestError):
    kind = ErrorKind.FEED_DECODE


class StoreUnavailable(HarvestError):
    kind = ErrorKind.STORE_UNAVAILABLE


class PipelineCancelled(HarvestError):
    """Raised when the stop signal interrupts a blocking wait."""

    kind = ErrorKind.CANCELLED


class RetriesExhausted(HarvestError):
    kind = ErrorKind.RETRIES_EXHAUSTED

    def __init__(self, attempts: int, cause: HarvestError) -> None:
        super().__init__(f"gave up after {attempts} attempts: {cause.kind.value}: {cause}")
        self.attempts = attempts
        self.cause = cause


class FatalHarvestError(HarvestError):
    """Wraps a fatal-kind failure so the outer loop can stop the worker."""

    def __init__(self, cause: HarvestError, *, attempt: int) -> None:
        super().__init__(f"{cause.kind.value}: {cause}")
        self.kind = cause.kind
        self.cause = cause
        self.attempt = attempt


__all__ = [
    "CaptchaCaptureError",
    "CaptchaRejected",
    "CaptchaTimeout",
    "CaptchaVendorError",
    "ErrorKind",
    "FATAL_KINDS",
    "FatalHarvestError",
    "FeedDecodeError",
    "FeedHTTPError",
    "HarvestError",
    "HostNotFound",
    "PageLoadError",
    "PipelineCancelled",
    "RetriesExhausted",
    "StoreUnavailable",
    "is_fatal",
]
