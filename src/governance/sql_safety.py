"""
Deterministic SQL safety checks for model-proposed SQL (non-LLM).

Rule-chain SQL is written by us; SQL that comes back from the model is
untrusted text and must pass these checks before it is returned or run.

Checks performed:
  1. SQL must be a single SELECT statement (no DDL / DML / multi-statement)
  2. No dangerous keywords (DROP, ALTER, TRUNCATE, INSERT, UPDATE, DELETE, GRANT …)
  3. No SQL comments (--, /*)
  4. No blocked schemas (pg_catalog, information_schema …)
  5. Only allowed tables may appear
  6. LIMIT, when present, must be ≤ max_rows

`enforce_limit` appends a LIMIT to SQL that has none before it is returned
or executed.
"""
from __future__ import annotations

import re

from src.governance.catalog_loader import load_filter_catalog, FilterCatalog
from src.core.logging import get_logger

logger = get_logger(__name__)

# ── Compiled patterns ────────────────────────────────────

_DANGEROUS_KW = re.compile(
    r"\b(DROP|ALTER|TRUNCATE|INSERT|UPDATE|DELETE|MERGE|GRANT|REVOKE|"
    r"CREATE|REPLACE|EXECUTE|EXEC|CALL|COPY|ATTACH|PRAGMA|SET\s+ROLE|RESET\s+ROLE)\b",
    re.IGNORECASE,
)

_MULTI_STMT = re.compile(r";\s*\S")  # semicolon followed by non-whitespace

_COMMENT_INLINE = re.compile(r"--")
_COMMENT_BLOCK = re.compile(r"/\*")

_LIMIT_RE = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)

_FROM_JOIN_RE = re.compile(
    r"(?:FROM|JOIN)\s+`?([\w]+(?:\.[\w]+)?)`?",
    re.IGNORECASE,
)

_CTE_NAME_RE = re.compile(r"(?:WITH|,)\s*(\w+)\s+AS\s*\(", re.IGNORECASE)

# EXTRACT(MONTH FROM col) and friends use FROM without naming a table
_FUNC_FROM_RE = re.compile(r"\b(EXTRACT|SUBSTRING|TRIM)\s*\([^)]*\)", re.IGNORECASE)


def check_sql_safety(
    sql: str,
    catalog: FilterCatalog | None = None,
) -> list[str]:
    """Return a list of safety violations (empty list = safe).

    Parameters
    ----------
    sql : str
        The SQL query to validate.
    catalog : FilterCatalog, optional
        If None, auto-loads the filter catalog from disk.
    """
    if catalog is None:
        catalog = load_filter_catalog()

    errors: list[str] = []
    sql_stripped = sql.strip().rstrip(";").strip()

    if not sql_stripped:
        return ["SQL is empty."]

    # ── 1. Must start with SELECT (or WITH … SELECT for CTEs) ─────
    upper = sql_stripped.upper()
    if not (upper.startswith("SELECT") or upper.startswith("WITH")):
        errors.append("SQL must be a SELECT statement.")

    if _MULTI_STMT.search(sql_stripped):
        errors.append("Multi-statement SQL is not allowed (found ';' followed by another statement).")

    # ── 2. No dangerous keywords ─────────────────────
    m = _DANGEROUS_KW.search(sql_stripped)
    if m:
        errors.append(f"Dangerous keyword detected: '{m.group(1).upper()}'.")

    # ── 3. No SQL comments (injection vector) ────────
    if _COMMENT_INLINE.search(sql_stripped):
        errors.append("Inline comments (--) are not allowed.")
    if _COMMENT_BLOCK.search(sql_stripped):
        errors.append("Block comments (/* */) are not allowed.")

    # ── 4. Blocked schemas ───────────────────────────
    sql_lower = sql_stripped.lower()
    for schema in catalog.security.blocked_schemas:
        if schema in sql_lower:
            errors.append(f"Blocked schema referenced: '{schema}'.")

    # ── 5. Allowed tables only ───────────────────────
    cte_names = {n.lower() for n in _CTE_NAME_RE.findall(sql_stripped)}
    scan = _FUNC_FROM_RE.sub("__fn__", sql_stripped)
    for ref in _FROM_JOIN_RE.findall(scan):
        table = ref.split(".")[-1].lower()
        if table in cte_names:
            continue
        if table not in catalog.allowed_tables:
            errors.append(f"Table '{ref}' is not in the allowed tables list.")

    # ── 6. LIMIT ≤ max_rows ─────────────────────────
    limit_match = _LIMIT_RE.search(sql_stripped)
    if limit_match:
        limit_val = int(limit_match.group(1))
        if limit_val > catalog.security.max_rows:
            errors.append(
                f"LIMIT {limit_val} exceeds maximum allowed ({catalog.security.max_rows})."
            )

    if errors:
        logger.warning("SQL safety violations: %s", errors)
    return errors


def enforce_limit(sql: str, max_rows: int) -> str:
    """Return *sql* with a trailing ``LIMIT max_rows`` when it has no LIMIT."""
    if _LIMIT_RE.search(sql):
        return sql
    body = sql.strip().rstrip(";").rstrip()
    return f"{body}\nLIMIT {int(max_rows)}"
