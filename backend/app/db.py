import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.config import Settings

Base = declarative_base()


def _ensure_sqlite_path(url: str) -> None:
    if not url.startswith("sqlite"):
        return

    parsed = make_url(url)
    database = parsed.database
    if not database or database == ":memory:":
        return

    path = Path(database)
    path.parent.mkdir(parents=True, exist_ok=True)


def _create_engine(url: str, *, echo: bool = False) -> Engine:
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {
        "echo": echo,
        "future": True,
        "pool_pre_ping": True,
    }

    parsed = make_url(url)
    backend = parsed.get_backend_name()

    if backend == "sqlite":
        connect_args["check_same_thread"] = False
        _ensure_sqlite_path(url)
    else:
        # Long-running worker: recycle idle connections and rely on pre-ping
        # to revive ones the server dropped between iterations.
        engine_kwargs["pool_recycle"] = 300

        if backend.startswith("postgresql"):
            connect_args.setdefault("keepalives", 1)
            connect_args.setdefault("keepalives_idle", 120)
            connect_args.setdefault("keepalives_interval", 30)
            connect_args.setdefault("keepalives_count", 5)

    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    return create_engine(url, **engine_kwargs)


def _create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=True, autocommit=False, future=True)


def build_db_components(settings: Settings) -> tuple[Engine, sessionmaker[Session]]:
    engine = _create_engine(settings.resolved_database_url, echo=settings.debug)
    return engine, _create_session_factory(engine)


def ping(engine: Engine) -> None:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def connect_with_retries(
    settings: Settings,
    *,
    sleep=time.sleep,
) -> tuple[Engine, sessionmaker[Session]]:
    """Build the engine and wait until the store answers, or re-raise the last error."""

    engine, session_factory = build_db_components(settings)
    attempts = settings.db_connect_attempts
    last_exc: SQLAlchemyError | None = None
    for attempt in range(1, attempts + 1):
        try:
            ping(engine)
        except SQLAlchemyError as exc:
            last_exc = exc
            logger.error(
                "Store unreachable (attempt {}/{}): {}",
                attempt,
                attempts,
                exc.__class__.__name__,
            )
            if attempt < attempts:
                sleep(settings.db_connect_backoff_seconds)
            continue
        logger.info("Connected to store backend={}", engine.dialect.name)
        return engine, session_factory

    engine.dispose()
    if last_exc is not None:
        raise last_exc
    raise RuntimeError("Store connection failed without raising an exception")


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
