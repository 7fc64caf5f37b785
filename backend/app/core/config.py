from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    new_query = urlencode(query_params, doseq=True)

    normalized = urlunparse(
        parsed._replace(
            scheme=scheme,
            query=new_query,
        )
    )
    return normalized


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Echo SQL statements")
    log_level: str = Field(default="INFO", description="Minimum loguru level for stderr")
    log_serialize: bool = Field(default=False, description="Emit JSON log records")

    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/events.db",
        description="SQLAlchemy compatible database URL",
    )
    db_connect_attempts: int = Field(
        default=5,
        description="Number of attempts to reach the store at startup",
        ge=1,
    )
    db_connect_backoff_seconds: float = Field(
        default=2.0,
        description="Delay between startup connection attempts",
        ge=0.0,
    )

    anticaptcha_api_key: str | None = Field(
        default=None,
        description="Client key for the Anti-Captcha service",
    )
    anticaptcha_base_url: AnyUrl = Field(
        default="https://api.anti-captcha.com",
        description="Base URL of the Anti-Captcha JSON API",
    )
    anticaptcha_timeout_seconds: float = Field(default=15.0, gt=0)

    live_football_url: str | None = Field(
        default=None,
        description="Page that embeds the rotating feed host",
    )
    site_base_url: str = Field(
        default="https://fon.bet/",
        description="Prefix used to resolve relative captcha image sources",
    )
    host_domain_suffix: str = Field(
        default="bk6bba-resources.com",
        description="Domain the rotating lineNNw feed hosts live under",
    )
    feed_path: str = Field(default="/events/list")
    feed_lang: str = Field(default="ru")
    feed_scope_market: int = Field(default=1600)
    feed_timeout_seconds: float = Field(default=10.0, gt=0)

    captcha_image_selector: str = Field(default="#captcha_image")
    captcha_input_selector: str = Field(default="#captcha_input")
    captcha_submit_selector: str = Field(default="#captcha_submit")
    captcha_poll_interval_seconds: float = Field(default=1.0, gt=0)
    captcha_max_wait_seconds: float = Field(
        default=120.0,
        description="Deadline for a single solving task before giving up",
        gt=0,
    )
    captcha_min_image_bytes: int = Field(
        default=100,
        description="Screenshots smaller than this are treated as broken placeholders",
        ge=0,
    )

    browser_headless: bool = Field(default=True)
    browser_timeout_ms: int = Field(
        default=10000,
        description="Default wait timeout for page automation calls",
        ge=0,
    )
    captcha_detect_timeout_ms: int = Field(
        default=3000,
        description="How long to look for a challenge before assuming there is none",
        ge=0,
    )

    pipeline_max_attempts: int = Field(
        default=3,
        description="Attempts per iteration before giving up on the cycle",
        ge=1,
    )
    pipeline_retry_delay_seconds: float = Field(
        default=0.0,
        description="Pause between attempts of the same iteration",
        ge=0.0,
    )
    pipeline_iteration_delay_seconds: float = Field(
        default=0.2,
        description="Pause between iterations of the outer loop",
        ge=0.0,
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value

        if value.startswith("postgresql+psycopg://") or value.startswith(
            "postgresql+asyncpg://"
        ):
            return value

        normalized = value
        if normalized.startswith("postgres://"):
            normalized = "postgresql://" + normalized[len("postgres://") :]

        return normalized

    @field_validator("log_level", mode="after")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @field_validator("feed_path", mode="after")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith("/"):
            value = "/" + value
        return value

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    def missing_required(self) -> list[str]:
        """Names of settings the harvester cannot run without."""

        missing: list[str] = []
        if not self.anticaptcha_api_key:
            missing.append("ANTICAPTCHA_API_KEY")
        if not self.live_football_url:
            missing.append("LIVE_FOOTBALL_URL")
        return missing


@lru_cache
def get_settings() -> Settings:
    return Settings()
