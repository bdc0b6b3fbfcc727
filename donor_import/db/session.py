import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from donor_import.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None

# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def _report_connection_failure(url: str, exc: Exception) -> None:
    """Log high-signal diagnostics when the application cannot reach the database."""
    logger.warning("Could not connect to database: %s", exc)
    logger.warning(
        "The application will start but database operations will fail until the connection succeeds."
    )

    try:
        parsed = make_url(url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    logger.warning(
        "Database connection settings: dialect=%s driver=%s host=%s port=%s database=%s",
        parsed.get_backend_name(),
        parsed.get_driver_name() or "default",
        parsed.host or "localhost",
        parsed.port or "(default)",
        parsed.database,
    )


def _build_engine(url: str) -> Engine:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    # Import jobs run on worker threads, so SQLite connections must be shareable.
    kwargs = {"connect_args": {"check_same_thread": False}}
    if parsed.database in (None, "", ":memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        url = settings.database_url
        try:
            _engine = _build_engine(url)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(url, e)
            # Create the engine anyway so callers can proceed (may still fail later).
            _engine = _build_engine(url)
    return _engine


def reset_engine(database_url: Optional[str] = None) -> Engine:
    """Dispose the current engine and rebuild it, optionally against a new URL."""
    global _engine, SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    SessionLocal = None
    if database_url is not None:
        settings.database_url = database_url
    return get_engine()


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def init_db() -> None:
    """Create every table registered on the declarative base."""
    # Models register themselves on Base when imported.
    from donor_import.db import models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
