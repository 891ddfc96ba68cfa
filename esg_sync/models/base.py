"""Declarative base, the process-wide engine and transactional sessions."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from importlib import import_module
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, close_all_sessions, sessionmaker

from ..utils.config import GlobalSettings, get_settings

DEFAULT_DATABASE_URL = "sqlite:///./esg_sync.db"

# Imported before create_all so every table is registered on Base.metadata.
MODEL_MODULES = (
    "esg_sync.models.connector",
    "esg_sync.models.sync_record",
    "esg_sync.models.sync_run",
    "esg_sync.models.integration_log",
    "esg_sync.models.entity",
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _engine_options(settings: GlobalSettings, database_url: str) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        # Record workers write from worker threads; wait on the file lock instead of failing.
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}

    pool = settings.database
    options: dict[str, Any] = {
        "pool_size": pool.pool_size,
        "max_overflow": pool.max_overflow,
        "pool_timeout": pool.timeout,
        "pool_pre_ping": pool.pre_ping,
    }
    if pool.recycle_seconds > 0:
        options["pool_recycle"] = pool.recycle_seconds
    return options


def get_engine() -> Engine:
    """Return the shared engine, creating it and any missing tables on first use."""

    global _engine
    if _engine is None:
        settings = get_settings()
        database_url = settings.database_url or DEFAULT_DATABASE_URL
        engine = create_engine(database_url, **_engine_options(settings, database_url))
        for module_name in MODEL_MODULES:
            import_module(module_name)
        Base.metadata.create_all(bind=engine)
        _engine = engine
    return _engine


def get_session() -> Session:
    """Open a new session on the shared engine."""

    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)
    return _session_factory()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on any error."""

    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_engine() -> None:
    """Dispose of the shared engine so the next use reads settings again."""

    global _engine, _session_factory
    if _session_factory is not None:
        close_all_sessions()
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
