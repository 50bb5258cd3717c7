"""
Read-only SQL executor.

Every query issued by the report repository and the campaign collaborator
runs through `execute_readonly`, which:
  1. Opens a read-only connection (see `readonly_connection`)
  2. Wraps the query in text() with bound parameters
  3. Converts Decimal/date/datetime to JSON-safe Python types
  4. Enforces a per-query timeout on Postgres (statement_timeout)
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine

from src.core.config import get_settings
from src.db.connection import readonly_connection
from src.core.logging import get_logger
from src.core.utils import json_safe

logger = get_logger(__name__)


def execute_readonly(
    sql: str,
    params: dict | None = None,
    timeout_ms: int | None = None,
    engine: Engine | None = None,
) -> list[dict[str, Any]]:
    """Execute a read-only SQL query and return rows as serialisable dicts.

    Raises
    ------
    sqlalchemy.exc.SQLAlchemyError
        If the query fails for any reason.
    """
    if timeout_ms is None:
        timeout_ms = get_settings().query_timeout_ms
    logger.info("Executing SQL (%d chars)", len(sql))

    with readonly_connection(engine) as conn:
        if conn.dialect.name == "postgresql":
            conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))

        result = conn.execute(text(sql), params or {})
        columns = list(result.keys())
        rows = [
            {col: json_safe(val) for col, val in zip(columns, row)}
            for row in result.fetchall()
        ]

    logger.info("Returned %d rows", len(rows))
    return rows


def execute_scalar(
    sql: str,
    params: dict | None = None,
    engine: Engine | None = None,
) -> Any:
    """Execute a read-only query returning a single value."""
    with readonly_connection(engine) as conn:
        value = conn.execute(text(sql), params or {}).scalar()
    return json_safe(value)
