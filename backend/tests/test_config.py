from __future__ import annotations

from app.core.config import Settings


def test_postgres_url_is_normalized_for_psycopg():
    settings = Settings(database_url="postgres://user:pw@db:5432/events")

    resolved = settings.resolved_database_url

    assert resolved == "postgresql+psycopg://user:pw@db:5432/events"


def test_postgres_url_keeps_caller_query_params():
    settings = Settings(database_url="postgresql://user:pw@db:5432/events?sslmode=require")

    assert settings.resolved_database_url == (
        "postgresql+psycopg://user:pw@db:5432/events?sslmode=require"
    )


def test_sqlite_url_is_left_alone(tmp_path):
    url = f"sqlite:///{tmp_path/'events.db'}"

    assert Settings(database_url=url).resolved_database_url == url


def test_missing_required_lists_unset_keys():
    settings = Settings(anticaptcha_api_key=None, live_football_url=None)

    assert settings.missing_required() == ["ANTICAPTCHA_API_KEY", "LIVE_FOOTBALL_URL"]


def test_missing_required_empty_when_configured(test_settings):
    assert test_settings.missing_required() == []


def test_defaults_match_worker_timings():
    settings = Settings()

    assert settings.db_connect_attempts == 5
    assert settings.db_connect_backoff_seconds == 2.0
    assert settings.pipeline_max_attempts == 3
    assert settings.pipeline_iteration_delay_seconds == 0.2
    assert settings.feed_scope_market == 1600


def test_validators_clean_up_values():
    settings = Settings(log_level=" debug ", feed_path="events/list")

    assert settings.log_level == "DEBUG"
    assert settings.feed_path == "/events/list"


def test_env_vars_override_defaults(monkeypatch):
    monkeypatch.setenv("PIPELINE_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("HOST_DOMAIN_SUFFIX", "example-suffix.com")

    settings = Settings()

    assert settings.pipeline_max_attempts == 7
    assert settings.host_domain_suffix == "example-suffix.com"
