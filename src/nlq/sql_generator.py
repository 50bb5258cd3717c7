"""
SQL generation for the intent path, plus the model SQL prompt / parser.

``generate_sql`` renders a per-intent SELECT template with the (already
validated) predicates as bound parameters.  ``parse_sql_response`` reads the
``INTENT: / SQL: / EXPLANATION:`` lines the model is asked to produce.
"""
from __future__ import annotations

import datetime
import re
from typing import Any

from src.core.errors import MalformedResponseError
from src.governance.catalog_loader import FilterCatalog, load_filter_catalog
from src.nlq.models import FilterPredicate, Intent, Operator, QueryIntent

_STATUS_JOIN = (
    "LEFT JOIN webhook_logs w ON w.email_outbox_id = o.email_outbox_id\n"
    "LEFT JOIN email_status s ON s.status_id = w.status_id"
)

_COUNTS = (
    "COUNT(DISTINCT o.email_outbox_id) AS total_emails,\n"
    "  COUNT(DISTINCT CASE WHEN s.name = 'Delivered' THEN o.email_outbox_id END) AS delivered,\n"
    "  COUNT(DISTINCT CASE WHEN s.name = 'Opened' THEN o.email_outbox_id END) AS opened,\n"
    "  COUNT(DISTINCT CASE WHEN s.name = 'Clicked' THEN o.email_outbox_id END) AS clicked"
)

# (select + from, group/order tail) per intent for action=get
_TEMPLATES: dict[Intent, tuple[str, str]] = {
    Intent.CAMPAIGNS: (
        f"SELECT o.strategy_name,\n  {_COUNTS},\n  MAX(o.date_created) AS last_sent\n"
        f"FROM email_outbox o\n{_STATUS_JOIN}",
        "GROUP BY o.strategy_name\nORDER BY last_sent DESC",
    ),
    Intent.RECIPIENTS: (
        f"SELECT o.to_address,\n  {_COUNTS}\nFROM email_outbox o\n{_STATUS_JOIN}",
        "GROUP BY o.to_address\nORDER BY total_emails DESC",
    ),
    Intent.EVENTS: (
        "SELECT o.strategy_name, o.to_address, s.name AS status, w.event_date\n"
        "FROM webhook_logs w\n"
        "JOIN email_outbox o ON o.email_outbox_id = w.email_outbox_id\n"
        "JOIN email_status s ON s.status_id = w.status_id",
        "ORDER BY w.event_date DESC",
    ),
    Intent.METRICS: (
        f"SELECT {_COUNTS},\n"
        "  COUNT(DISTINCT CASE WHEN s.name IN ('Bounced', 'Failed') THEN o.email_outbox_id END) AS bounced\n"
        f"FROM email_outbox o\n{_STATUS_JOIN}",
        "",
    ),
    Intent.LISTS: (
        "SELECT l.name, COUNT(DISTINCT o.email_outbox_id) AS emails_sent,\n"
        "  COUNT(DISTINCT o.to_address) AS recipients\n"
        "FROM email_list l\n"
        "LEFT JOIN email_outbox o ON o.email_list_id = l.email_list_id\n"
        "LEFT JOIN webhook_logs w ON w.email_outbox_id = o.email_outbox_id\n"
        "LEFT JOIN email_status s ON s.status_id = w.status_id",
        "GROUP BY l.email_list_id, l.name\nORDER BY emails_sent DESC",
    ),
}

_COUNT_SELECT: dict[Intent, str] = {
    Intent.CAMPAIGNS: "COUNT(DISTINCT o.strategy_name) AS campaign_count",
    Intent.RECIPIENTS: "COUNT(DISTINCT o.to_address) AS recipient_count",
    Intent.EVENTS: "COUNT(*) AS event_count",
    Intent.METRICS: "COUNT(DISTINCT o.email_outbox_id) AS email_count",
    Intent.LISTS: "COUNT(DISTINCT l.email_list_id) AS list_count",
}


# ── Predicate rendering ──────────────────────────────────

def _render_predicate(
    pred: FilterPredicate,
    column: str,
    key: str,
    params: dict[str, Any],
) -> str:
    op = pred.operator
    if op == Operator.EQUALS:
        params[key] = pred.value
        return f"{column} = :{key}"
    if op == Operator.CONTAINS:
        params[key] = f"%{str(pred.value).lower()}%"
        return f"LOWER({column}) LIKE :{key}"
    if op == Operator.GREATER_THAN:
        params[key] = pred.value
        return f"{column} > :{key}"
    if op == Operator.LESS_THAN:
        params[key] = pred.value
        return f"{column} < :{key}"

    low, high = pred.value
    if isinstance(high, datetime.date) and not isinstance(high, datetime.datetime):
        # date ranges are inclusive of the whole last day
        params[f"{key}_lo"] = low
        params[f"{key}_hi"] = high + datetime.timedelta(days=1)
        return f"{column} >= :{key}_lo AND {column} < :{key}_hi"
    params[f"{key}_lo"] = low
    params[f"{key}_hi"] = high
    return f"{column} BETWEEN :{key}_lo AND :{key}_hi"


def generate_sql(
    intent: QueryIntent,
    catalog: FilterCatalog | None = None,
) -> tuple[str, dict[str, Any]]:
    """Return (sql, params) for a validated QueryIntent."""
    if catalog is None:
        catalog = load_filter_catalog()

    select_from, tail = _TEMPLATES[intent.intent]
    if intent.action == "count":
        from_part = "FROM " + select_from.split("\nFROM ", 1)[1]
        select_from = f"SELECT {_COUNT_SELECT[intent.intent]}\n{from_part}"
        tail = ""

    params: dict[str, Any] = {}
    where: list[str] = []
    for i, pred in enumerate(intent.filters):
        fdef = catalog.get_field(intent.intent.value, pred.field)
        if fdef is None:
            continue
        where.append(_render_predicate(pred, fdef.column, f"p{i}", params))

    parts = [select_from]
    if where:
        parts.append("WHERE " + "\n  AND ".join(where))
    if tail:
        parts.append(tail)
    if intent.action != "count" and intent.intent != Intent.METRICS:
        limit = min(intent.limit or 50, catalog.security.max_rows)
        parts.append(f"LIMIT {int(limit)}")

    return "\n".join(parts), params


# ── Model SQL path ───────────────────────────────────────

SQL_STOP_SEQUENCES = ["Query:", "Examples:", "\n\nQuery", "User:", "Human:", "Assistant:"]

_SQL_PROMPT = """You translate questions about email campaigns into PostgreSQL.

Tables:
- email_outbox(email_outbox_id, communication_id, strategy_name, email_list_id, to_address, subject, date_created)
- webhook_logs(webhook_log_id, email_outbox_id, status_id, event_date)
- email_status(status_id, name)  -- Sent, Delivered, Opened, Clicked, Bounced, Failed, Complained, Unsubscribed
- email_list(email_list_id, name, date_created)
- email_trigger(email_trigger_id, communication_id, description, is_active)

Answer with exactly three lines:
INTENT: one of campaigns, recipients, events, metrics, lists
SQL: a single read-only SELECT statement with a LIMIT
EXPLANATION: one sentence

Examples:
Query: how many emails did each campaign send
INTENT: campaigns
SQL: SELECT strategy_name, COUNT(*) AS emails_sent FROM email_outbox GROUP BY strategy_name ORDER BY emails_sent DESC LIMIT 50
EXPLANATION: Emails sent per campaign.

Query: latest bounces
INTENT: events
SQL: SELECT o.to_address, w.event_date FROM webhook_logs w JOIN email_outbox o ON o.email_outbox_id = w.email_outbox_id JOIN email_status s ON s.status_id = w.status_id WHERE s.name = 'Bounced' ORDER BY w.event_date DESC LIMIT 100
EXPLANATION: Most recent bounced emails."""

_INTENT_LINE_RE = re.compile(r"INTENT:\s*([^\n\r]+)", re.IGNORECASE)
_SQL_LINE_RE = re.compile(
    r"SQL:\s*(SELECT.*?)(?=\s*EXPLANATION:|\s*Query:|\s*$)",
    re.IGNORECASE | re.DOTALL,
)
_EXPLANATION_RE = re.compile(r"EXPLANATION:\s*([^\n\r]+)", re.IGNORECASE)
_ANY_SELECT_RE = re.compile(r"(SELECT\s.+?\sFROM\s.+?)(?:;|\n\n|$)", re.IGNORECASE | re.DOTALL)
_TRAILING_NOISE = (" Query", " Examples", " User", " Human", " Assistant")


def build_sql_prompt(query: str, context: str | None = None) -> str:
    prompt = _SQL_PROMPT
    if context:
        prompt += f"\n\nAdditional context: {context.strip()}"
    return f"{prompt}\n\nQuery: {query.strip()}\nINTENT:"


def _clean_sql(sql: str) -> str:
    sql = sql.replace("```sql", "").replace("```", "")
    sql = " ".join(sql.split())
    for noise in _TRAILING_NOISE:
        idx = sql.find(noise + ":")
        if idx != -1:
            sql = sql[:idx]
    return sql.strip().rstrip(";").strip()


def parse_sql_response(text: str) -> tuple[Intent, str, str]:
    """Parse model output into (intent, sql, explanation).

    The prompt ends with ``INTENT:`` so the output may start directly with
    the intent word.  Unknown intents become ``campaigns``.

    Raises
    ------
    MalformedResponseError
        If no SELECT statement can be found.
    """
    body = text if _INTENT_LINE_RE.search(text) else f"INTENT: {text.lstrip()}"

    m = _INTENT_LINE_RE.search(body)
    intent = Intent.coerce(m.group(1).strip().split()[0] if m and m.group(1).strip() else "")

    m = _SQL_LINE_RE.search(body)
    if m:
        sql = _clean_sql(m.group(1))
    else:
        m = _ANY_SELECT_RE.search(body)
        if not m:
            raise MalformedResponseError("No SELECT statement found in model output", raw_response=text)
        sql = _clean_sql(m.group(1))

    m = _EXPLANATION_RE.search(body)
    explanation = m.group(1).strip() if m else "Generated by the local model"
    return intent, sql, explanation
