"""
Pattern matcher -- ordered keyword / regex rules mapping free text to an
intent plus either a canned SQL template or a collaborator call.

Rules are evaluated top to bottom and the first predicate that fires wins;
there is no scoring and no combination of rules.  Each rule is a
``Rule(name, predicate, action)`` entry in ``RULES`` so the priority order can
be read (and tested) in one place.

Service-call rules invoke a read-only collaborator (duck-typed, see
``src.db.campaign_queries.CampaignQueryService``).  If the collaborator is
missing or raises, the rule answers with its canned SQL instead.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from src.nlq.models import Intent
from src.nlq.text_patterns import (
    HIGH_RATE_THRESHOLDS,
    HIGH_WORDS,
    LOW_RATE_THRESHOLDS,
    MONTH_RE,
    MONTHS,
    RATE_LEVEL_RE,
    RATE_NAMES,
    extract_campaign_name,
    normalise_rate_metric,
)
from src.core.logging import get_logger

logger = get_logger(__name__)

_THRESHOLD_RE = re.compile(
    r"(click|open|deliver|bounce).*?(more than|greater than|above|over).*?(\d+)"
    r"|(click|open|deliver|bounce).*?(less than|below|under).*?(\d+)"
    r"|high.*?(click|open|deliver).*?(rate|count).*?(more than|greater than|above|over).*?(\d+)"
)

_STATUS_FOR_METRIC: dict[str, str] = {
    "click": "Clicked", "open": "Opened", "deliver": "Delivered", "bounce": "Bounced",
}


# ── Result / rule types ──────────────────────────────────

@dataclass(frozen=True)
class MatchResult:
    rule: str
    intent: Intent
    sql: str
    explanation: str
    parameters: dict[str, Any] = field(default_factory=dict)
    results: Any = None


@dataclass(frozen=True)
class QueryText:
    """Case-folded query plus the month it mentions, if any."""

    raw: str
    text: str
    month: int | None

    @classmethod
    def parse(cls, raw: str) -> "QueryText":
        text = (raw or "").strip().lower()
        m = MONTH_RE.search(text)
        return cls(raw=raw, text=text, month=MONTHS[m.group(1)] if m else None)

    def has(self, *words: str) -> bool:
        return any(w in self.text for w in words)


# An action may return None to decline; matching then moves on to the next rule
Action = Callable[[QueryText, Any], "MatchResult | None"]


@dataclass(frozen=True)
class Rule:
    name: str
    predicate: Callable[[QueryText], bool]
    action: Action


# ── SQL templates ────────────────────────────────────────

_STATUS_JOIN = (
    "LEFT JOIN webhook_logs w ON w.email_outbox_id = o.email_outbox_id "
    "LEFT JOIN email_status s ON s.status_id = w.status_id"
)


def _status_count(status: str) -> str:
    if status == "Bounced":
        return "COUNT(DISTINCT CASE WHEN s.name IN ('Bounced', 'Failed') THEN o.email_outbox_id END)"
    return f"COUNT(DISTINCT CASE WHEN s.name = '{status}' THEN o.email_outbox_id END)"


def _rate_expr(metric: str) -> str:
    """Percentage expression for *metric* over the outbox/status join."""
    part = _status_count(_STATUS_FOR_METRIC[metric])
    if metric in ("open", "click"):
        whole = _status_count("Delivered")
    else:
        whole = "COUNT(DISTINCT o.email_outbox_id)"
    return f"100.0 * {part} / NULLIF({whole}, 0)"


def _month_clause(column: str, month: int) -> str:
    return f"EXTRACT(MONTH FROM {column}) = {int(month)}"


SQL_RECENT_CAMPAIGNS = (
    "SELECT o.strategy_name, COUNT(*) AS emails_sent, MAX(o.date_created) AS last_sent "
    "FROM email_outbox o GROUP BY o.strategy_name ORDER BY last_sent DESC LIMIT 20"
)
SQL_CAMPAIGN_PERFORMANCE = (
    "SELECT o.strategy_name, COUNT(DISTINCT o.email_outbox_id) AS total_emails, "
    f"{_status_count('Opened')} AS opened, {_status_count('Clicked')} AS clicked "
    f"FROM email_outbox o {_STATUS_JOIN} GROUP BY o.strategy_name ORDER BY opened DESC LIMIT 10"
)
SQL_CAMPAIGNS_DEFAULT = (
    "SELECT o.strategy_name, COUNT(DISTINCT o.email_outbox_id) AS total_emails, "
    "MIN(o.date_created) AS first_sent, MAX(o.date_created) AS last_sent "
    "FROM email_outbox o GROUP BY o.strategy_name ORDER BY last_sent DESC LIMIT 50"
)
SQL_BOUNCED = (
    "SELECT o.strategy_name, o.to_address, s.name AS status, w.event_date "
    "FROM webhook_logs w JOIN email_outbox o ON o.email_outbox_id = w.email_outbox_id "
    "JOIN email_status s ON s.status_id = w.status_id "
    "WHERE s.name IN ('Bounced', 'Failed') ORDER BY w.event_date DESC LIMIT 100"
)
SQL_ENGAGEMENT = (
    "SELECT o.strategy_name, "
    f"{_status_count('Opened')} AS opened, {_status_count('Clicked')} AS clicked "
    f"FROM email_outbox o {_STATUS_JOIN} GROUP BY o.strategy_name ORDER BY clicked DESC LIMIT 100"
)
SQL_TOP_RECIPIENTS = (
    "SELECT o.to_address, COUNT(*) AS emails_received, MAX(o.date_created) AS last_sent "
    "FROM email_outbox o GROUP BY o.to_address ORDER BY emails_received DESC LIMIT 50"
)
SQL_RECIPIENTS_DEFAULT = (
    "SELECT o.to_address, COUNT(*) AS emails_received "
    "FROM email_outbox o GROUP BY o.to_address ORDER BY o.to_address LIMIT 100"
)
SQL_LISTS = (
    "SELECT l.name, COUNT(DISTINCT o.email_outbox_id) AS emails_sent, "
    "COUNT(DISTINCT o.to_address) AS recipients "
    "FROM email_list l LEFT JOIN email_outbox o ON o.email_list_id = l.email_list_id "
    "GROUP BY l.email_list_id, l.name ORDER BY emails_sent DESC LIMIT 50"
)


def _events_sql(status: str, limit: int = 100) -> str:
    return (
        "SELECT o.strategy_name, o.to_address, w.event_date "
        "FROM webhook_logs w JOIN email_outbox o ON o.email_outbox_id = w.email_outbox_id "
        "JOIN email_status s ON s.status_id = w.status_id "
        f"WHERE s.name = '{status}' ORDER BY w.event_date DESC LIMIT {int(limit)}"
    )


SQL_DASHBOARD = (
    "SELECT COUNT(DISTINCT o.strategy_name) AS campaigns, COUNT(DISTINCT o.to_address) AS recipients, "
    f"COUNT(DISTINCT o.email_outbox_id) AS total_emails, {_status_count('Delivered')} AS delivered, "
    f"{_status_count('Opened')} AS opened, {_status_count('Clicked')} AS clicked, "
    f"{_status_count('Bounced')} AS bounced "
    f"FROM email_outbox o {_STATUS_JOIN}"
)
SQL_EVENT_SUMMARY = (
    "SELECT s.name AS status, COUNT(*) AS events FROM webhook_logs w "
    "JOIN email_status s ON s.status_id = w.status_id GROUP BY s.name ORDER BY events DESC"
)


def _campaigns_by_month_sql(month: int) -> str:
    return (
        "SELECT o.strategy_name, COUNT(DISTINCT o.email_outbox_id) AS total_emails, "
        "MIN(o.date_created) AS first_sent "
        f"FROM email_outbox o WHERE {_month_clause('o.date_created', month)} "
        "GROUP BY o.strategy_name ORDER BY total_emails DESC LIMIT 50"
    )


def _campaigns_by_name_sql(name: str) -> str:
    pattern = name.lower().replace("'", "''")
    return (
        "SELECT o.strategy_name, COUNT(DISTINCT o.email_outbox_id) AS total_emails, "
        "MAX(o.date_created) AS last_sent "
        f"FROM email_outbox o WHERE LOWER(o.strategy_name) LIKE '%{pattern}%' "
        "GROUP BY o.strategy_name ORDER BY last_sent DESC LIMIT 50"
    )


def _recipients_by_month_sql(month: int) -> str:
    return (
        "SELECT o.to_address, COUNT(*) AS emails_received "
        f"FROM email_outbox o WHERE {_month_clause('o.date_created', month)} "
        "GROUP BY o.to_address ORDER BY emails_received DESC LIMIT 50"
    )


# ── Action helpers ───────────────────────────────────────

def _base_params(q: QueryText, explanation: str) -> dict[str, Any]:
    params: dict[str, Any] = {"explanation": explanation}
    if q.month:
        params["month"] = q.month
    return params


def _template(rule: str, intent: Intent, sql: str, explanation: str, q: QueryText,
              **extra: Any) -> MatchResult:
    params = _base_params(q, explanation)
    params["processing_type"] = "sql_template"
    params.update(extra)
    return MatchResult(rule=rule, intent=intent, sql=sql, explanation=explanation, parameters=params)


def _service_call(
    rule: str,
    intent: Intent,
    collaborator: Any,
    method: str,
    args: tuple,
    fallback_sql: str,
    explanation: str,
    q: QueryText,
) -> MatchResult:
    """Call ``collaborator.<method>(*args)``; fall back to *fallback_sql* on any failure."""
    params = _base_params(q, explanation)
    params["service_method"] = method

    if collaborator is None:
        params["processing_type"] = "sql_template"
        return MatchResult(rule, intent, fallback_sql, explanation, params)

    try:
        data = getattr(collaborator, method)(*args)
    except Exception as exc:
        logger.exception("Collaborator %s failed -- using canned SQL", method)
        params["processing_type"] = "sql_fallback"
        params["service_error"] = str(exc)
        return MatchResult(rule, intent, fallback_sql, explanation, params)

    params["processing_type"] = "service_call"
    return MatchResult(rule, intent, fallback_sql, explanation, params, results=data)


# ── Rule actions (priority order) ────────────────────────

def _numeric_threshold(q: QueryText, collaborator: Any) -> MatchResult | None:
    m = _THRESHOLD_RE.search(q.text)
    if m is None:
        return None
    if m.group(1):
        metric, comparison, value = m.group(1), m.group(2), m.group(3)
    elif m.group(4):
        metric, comparison, value = m.group(4), m.group(5), m.group(6)
    else:
        metric, comparison, value = m.group(7), m.group(9), m.group(10)

    threshold = int(value)
    is_greater = comparison in ("more than", "greater than", "above", "over")
    is_rate = "rate" in q.text or "%" in q.text or "percent" in q.text
    op = ">" if is_greater else "<"

    measure = _rate_expr(metric) if is_rate else _status_count(_STATUS_FOR_METRIC[metric])
    label = f"{metric}_rate" if is_rate else f"{metric}_count"
    sql = (
        "SELECT o.strategy_name, COUNT(DISTINCT o.email_outbox_id) AS total_emails, "
        f"{measure} AS {label} "
        f"FROM email_outbox o {_STATUS_JOIN} "
        f"GROUP BY o.strategy_name HAVING {measure} {op} {threshold} "
        f"ORDER BY {label} {'DESC' if is_greater else 'ASC'} LIMIT 100"
    )
    word = "more" if is_greater else "less"
    explanation = (
        f"Campaigns with {metric} {'rate' if is_rate else 'count'} {word} than "
        f"{threshold}{'%' if is_rate else ''}"
    )
    return _template(
        "numeric_threshold", Intent.CAMPAIGNS, sql, explanation, q,
        processing_type="llm_numeric_threshold",
        filter=f"filtered_{metric}",
        metricType=metric,
        threshold=threshold,
        isGreater=is_greater,
        isRate=is_rate,
    )


def _rate_level(q: QueryText, collaborator: Any) -> MatchResult | None:
    m = RATE_LEVEL_RE.search(q.text)
    if m is None:
        return None
    level, metric = m.group(1), m.group(2)
    metric = normalise_rate_metric(metric)
    high = level in HIGH_WORDS
    threshold = (HIGH_RATE_THRESHOLDS if high else LOW_RATE_THRESHOLDS)[metric]

    # "high bounce rate" is the bad direction but still means ">= threshold"
    op = ">=" if high else "<="
    direction = "desc" if high else "asc"
    expr = _rate_expr(metric)
    rate_name = RATE_NAMES[metric]
    bound_key = f"{'Min' if high else 'Max'}{rate_name}Percentage"

    sql = (
        "SELECT o.strategy_name, COUNT(DISTINCT o.email_outbox_id) AS total_emails, "
        f"{expr} AS {metric}_rate "
        f"FROM email_outbox o {_STATUS_JOIN} "
        f"GROUP BY o.strategy_name HAVING {expr} {op} {threshold:g} "
        f"ORDER BY {metric}_rate {direction.upper()} LIMIT 50"
    )
    explanation = (
        f"Campaigns with {'high' if high else 'low'} {metric} rates "
        f"({op} {threshold:g}%), sorted by {metric} rate {direction}"
    )
    return _template(
        "rate_level", Intent.CAMPAIGNS, sql, explanation, q,
        metricType=metric,
        threshold=threshold,
        isGreater=high,
        sortBy=rate_name,
        sortDirection=direction,
        **{bound_key: threshold},
    )


def _campaigns(q: QueryText, c: Any) -> MatchResult:
    if q.month:
        return _service_call("campaigns_by_month", Intent.CAMPAIGNS, c, "get_campaigns_by_month", (q.month,),
                             _campaigns_by_month_sql(q.month), f"Campaigns sent in month {q.month}", q)
    if q.has("performance", "top", "best"):
        return _service_call("campaign_performance", Intent.CAMPAIGNS, c, "get_campaign_performance_metrics",
                             (10,), SQL_CAMPAIGN_PERFORMANCE, "Top performing campaigns by engagement", q)
    if q.has("recent", "latest"):
        return _service_call("recent_campaigns", Intent.CAMPAIGNS, c, "get_recent_campaigns",
                             (30, 20), SQL_RECENT_CAMPAIGNS, "Campaigns sent in the last 30 days", q)
    name = extract_campaign_name(q.raw)
    if name:
        return _service_call("campaigns_by_name", Intent.CAMPAIGNS, c, "get_campaigns_by_name", (name,),
                             _campaigns_by_name_sql(name), f"Campaigns matching '{name}'", q)
    return _template("campaigns", Intent.CAMPAIGNS, SQL_CAMPAIGNS_DEFAULT, "Campaign overview", q)


def _bounces(q: QueryText, c: Any) -> MatchResult:
    return _service_call("bounces", Intent.EVENTS, c, "get_bounced_emails", (q.month, 100),
                         SQL_BOUNCED, "Bounced and failed emails", q)


def _engagement(q: QueryText, c: Any) -> MatchResult:
    return _service_call("engagement", Intent.EVENTS, c, "get_email_engagement", (q.month, 100),
                         SQL_ENGAGEMENT, "Email engagement (opens and clicks) by campaign", q)


def _recipients(q: QueryText, c: Any) -> MatchResult:
    if q.has("top", "most"):
        return _service_call("top_recipients", Intent.RECIPIENTS, c, "get_top_recipients", (50,),
                             SQL_TOP_RECIPIENTS, "Recipients who received the most emails", q)
    if q.month:
        return _service_call("recipients_by_month", Intent.RECIPIENTS, c, "get_recipients_by_month", (q.month,),
                             _recipients_by_month_sql(q.month), f"Recipients emailed in month {q.month}", q)
    return _template("recipients", Intent.RECIPIENTS, SQL_RECIPIENTS_DEFAULT, "Recipient overview", q)


def _lists(q: QueryText, c: Any) -> MatchResult:
    if q.has("performance", "metric"):
        return _service_call("list_performance", Intent.LISTS, c, "get_list_performance_metrics", (20,),
                             SQL_LISTS, "Email list performance", q)
    return _service_call("lists", Intent.LISTS, c, "get_email_lists_summary", (50,),
                         SQL_LISTS, "Email list summary", q)


def _unsubscribes(q: QueryText, c: Any) -> MatchResult:
    return _service_call("unsubscribes", Intent.EVENTS, c, "get_email_events_by_type", ("Unsubscribed", 100),
                         _events_sql("Unsubscribed"), "Unsubscribe events", q)


def _deliveries(q: QueryText, c: Any) -> MatchResult:
    return _service_call("deliveries", Intent.EVENTS, c, "get_email_events_by_type", ("Delivered", 100),
                         _events_sql("Delivered"), "Delivered emails", q)


def _dashboard(q: QueryText, c: Any) -> MatchResult:
    return _service_call("dashboard", Intent.METRICS, c, "get_dashboard_metrics", (),
                         SQL_DASHBOARD, "Dashboard summary metrics", q)


def _analytics(q: QueryText, c: Any) -> MatchResult:
    return _service_call("analytics", Intent.METRICS, c, "get_email_metrics_summary", (30,),
                         SQL_EVENT_SUMMARY, "Email event summary for the last 30 days", q)


def _comparison(q: QueryText, c: Any) -> MatchResult:
    return _service_call("comparison", Intent.CAMPAIGNS, c, "get_campaign_performance_metrics", (20,),
                         SQL_CAMPAIGN_PERFORMANCE, "Campaign comparison by engagement", q)


def _subscribers(q: QueryText, c: Any) -> MatchResult:
    if q.has("growth", "trend"):
        return _service_call("subscriber_growth", Intent.RECIPIENTS, c, "get_engaged_recipients", (100,),
                             SQL_TOP_RECIPIENTS, "Engaged subscribers", q)
    return _service_call("subscribers", Intent.RECIPIENTS, c, "get_top_recipients", (50,),
                         SQL_TOP_RECIPIENTS, "Subscriber overview", q)


def _performance_issues(q: QueryText, c: Any) -> MatchResult:
    return _service_call("performance_issues", Intent.EVENTS, c, "get_bounced_emails", (None, 50),
                         SQL_BOUNCED, "Delivery problems behind poor performance", q)


def _month_only(q: QueryText, c: Any) -> MatchResult | None:
    if q.month is None:
        return None
    return _template("month", Intent.CAMPAIGNS, _campaigns_by_month_sql(q.month),
                     f"Email activity in month {q.month}", q)


def _roi(q: QueryText, c: Any) -> MatchResult:
    return _service_call("roi", Intent.METRICS, c, "get_dashboard_metrics", (30,),
                         SQL_DASHBOARD, "Business impact summary", q)


def _compliance(q: QueryText, c: Any) -> MatchResult:
    return _service_call("compliance", Intent.EVENTS, c, "get_bounced_emails", (None, 100),
                         SQL_BOUNCED, "Deliverability and sender reputation signals", q)


def _segmentation(q: QueryText, c: Any) -> MatchResult:
    return _service_call("segmentation", Intent.LISTS, c, "get_email_lists_summary", (20,),
                         SQL_LISTS, "Audience segments by email list", q)


RULES: tuple[Rule, ...] = (
    Rule("numeric_threshold", lambda q: bool(_THRESHOLD_RE.search(q.text)), _numeric_threshold),
    Rule("rate_level", lambda q: bool(RATE_LEVEL_RE.search(q.text)), _rate_level),
    Rule("campaign", lambda q: q.has("campaign", "strategy"), _campaigns),
    Rule("bounce", lambda q: q.has("bounce", "fail"), _bounces),
    Rule("engagement", lambda q: q.has("open", "click", "engagement"), _engagement),
    Rule("recipient", lambda q: q.has("recipient", "customer"), _recipients),
    Rule("list", lambda q: q.has("list"), _lists),
    Rule("unsubscribe", lambda q: q.has("unsubscribe", "opt out", "opt-out"), _unsubscribes),
    Rule("delivery", lambda q: q.has("deliver") and not q.has("fail"), _deliveries),
    Rule("dashboard", lambda q: q.has("dashboard", "metric", "summary", "overview"), _dashboard),
    Rule("analytics", lambda q: q.has("analytics", "report", "stats"), _analytics),
    Rule("comparison", lambda q: q.has("compare", "comparison", "versus", " vs "), _comparison),
    Rule("subscriber", lambda q: q.has("subscriber", "audience"), _subscribers),
    Rule("performance_issue",
         lambda q: q.has("slow", "poor", "low") and q.has("rate", "performance"),
         _performance_issues),
    Rule("month", lambda q: q.month is not None, _month_only),
    Rule("roi", lambda q: q.has("roi", "return on investment") or (q.has("business") and q.has("impact")), _roi),
    Rule("compliance", lambda q: q.has("compliance", "deliverability", "reputation"), _compliance),
    Rule("segmentation", lambda q: q.has("segment", "target", "audience"), _segmentation),
)


# ── Public API ───────────────────────────────────────────

def match(query: str, collaborator: Any = None, rules: tuple[Rule, ...] = RULES) -> MatchResult | None:
    """Return the first rule's result for *query*, or None when nothing fires."""
    q = QueryText.parse(query)
    if not q.text:
        return None
    for rule in rules:
        if rule.predicate(q):
            result = rule.action(q, collaborator)
            if result is not None:
                logger.info("Pattern rule '%s' matched", rule.name)
                return result
    return None


def generic_fallback(query: str) -> MatchResult:
    """Answer used when no rule fires: the most recent campaigns."""
    explanation = "No specific pattern recognised -- showing the most recent campaigns"
    return MatchResult(
        rule="generic_fallback",
        intent=Intent.CAMPAIGNS,
        sql=SQL_RECENT_CAMPAIGNS,
        explanation=explanation,
        parameters={"explanation": explanation, "processing_type": "generic_fallback"},
    )
