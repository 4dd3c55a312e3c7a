"""
StudioSign - Database Engine & Session Factory
Supports SQLite (local dev) and PostgreSQL (production).
"""

from __future__ import annotations

import logging
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Shared declarative base, all ORM models inherit from this."""

    pass


def _build_engine(database_url: str) -> Engine:
    """Construct SQLAlchemy engine with appropriate settings for URL type."""
    is_sqlite = database_url.startswith("sqlite")

    if is_sqlite:
        # SQLite uses SingletonThreadPool, pool_size/max_overflow are not supported
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

        configure_sqlite(engine)

    else:
        # PostgreSQL / other relational DBs
        engine = create_engine(
            database_url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
        )

    return engine


def configure_sqlite(engine: Engine, journal_mode: str = "WAL") -> None:
    """
    Pragmas plus explicit transaction control. pysqlite's own BEGIN handling
    breaks SAVEPOINTs, which the audit appender relies on, so BEGIN is
    emitted by SQLAlchemy instead.
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragmas(dbapi_conn, _connection_record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute(f"PRAGMA journal_mode={journal_mode}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


# Build the engine once at import time
settings = get_settings()
engine: Engine = _build_engine(settings.DATABASE_URL)

# Session factory
SessionLocal: sessionmaker[Session] = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that yields a SQLAlchemy Session.
    Automatically closes the session after the request.

    Usage:
        @router.get("/example")
        def example(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """
    Create all tables defined in all model modules.
    Call this on application startup.
    """
    # Import all models so their table definitions are registered on Base.metadata
    from app.models import envelopes, users  # noqa: F401

    target = bind if bind is not None else engine
    Base.metadata.create_all(bind=target)

    # Install SQLite triggers (no-op on PostgreSQL)
    if target.dialect.name == "sqlite":
        install_sqlite_triggers(target)


def install_sqlite_triggers(target: Engine) -> None:
    """Install the append-only triggers on the envelope audit table."""
    from app.models.envelopes import SQLITE_TRIGGERS

    with target.connect() as conn:
        for stmt in SQLITE_TRIGGERS.strip().split(";\n\n"):
            stmt = stmt.strip()
            if stmt:
                try:
                    conn.execute(text(stmt))
                except Exception as exc:
                    if "already exists" not in str(exc).lower():
                        raise
        conn.commit()
    logger.debug("SQLite audit triggers installed")
