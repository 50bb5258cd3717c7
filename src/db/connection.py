"""SQLAlchemy engine factory.

Single shared engine with connection pooling.  All report and collaborator
queries run through `readonly_connection`, which puts the connection into
read-only mode before executing:

  postgresql -> SET TRANSACTION READ ONLY
  sqlite     -> PRAGMA query_only (used for demos and tests)
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def make_engine(url: str) -> Engine:
    """Build an engine for *url* with pool settings suited to the dialect."""
    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across calls
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        echo=False,
    )


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = make_engine(settings.database_url)
        logger.info("DB engine created  dialect=%s", _engine.dialect.name)
    return _engine


@contextmanager
def readonly_connection(engine: Engine | None = None) -> Generator[Connection, None, None]:
    """Yield a connection that refuses writes.

    The connection is returned to the pool on exit.
    """
    engine = engine or get_engine()
    conn = engine.connect()
    dialect = engine.dialect.name
    try:
        if dialect == "postgresql":
            conn.execute(text("SET TRANSACTION READ ONLY"))
        elif dialect == "sqlite":
            conn.execute(text("PRAGMA query_only = ON"))
        yield conn
    finally:
        if dialect == "sqlite":
            conn.rollback()
            conn.execute(text("PRAGMA query_only = OFF"))
        conn.close()
