"""
Response composer -- merges intent, SQL or results, explanation and timing
into one ResponseEnvelope.
"""
from __future__ import annotations

from typing import Any

from src.nlq.models import Intent, ResponseEnvelope


def compose(
    original_query: str,
    intent: Intent | str | None,
    sql_or_results: Any,
    explanation: str,
    parameters: dict[str, Any] | None,
    elapsed_ms: int,
    *,
    success: bool = True,
    error: str | None = None,
    debug_info: dict[str, Any] | None = None,
    strategy: str = "rule_based",
    confidence: float = 1.0,
) -> ResponseEnvelope:
    """Build the envelope; *intent* defaults to ``campaigns``.

    *sql_or_results* is a SQL string, a list of row dicts, or a single dict
    (wrapped as one row).  Nothing here raises on its own.
    """
    sql: str | None = None
    results: list[dict[str, Any]] | None = None
    if isinstance(sql_or_results, str):
        sql = sql_or_results or None
    elif isinstance(sql_or_results, dict):
        results = [sql_or_results]
    elif sql_or_results is not None:
        results = list(sql_or_results)

    return ResponseEnvelope(
        original_query=original_query,
        intent=Intent.coerce(intent) if intent else Intent.CAMPAIGNS,
        generated_sql=sql,
        parameters=dict(parameters or {}),
        results=results,
        explanation=explanation,
        success=success,
        error=error,
        debug_info=debug_info,
        processing_time_ms=max(0, int(elapsed_ms)),
        strategy=strategy,
        confidence=confidence,
    )
