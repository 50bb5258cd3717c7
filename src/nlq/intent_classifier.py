"""
Rule-based intent classifier -- free text -> QueryIntent.

Deterministic keyword extraction used when no model is configured (and
as the model path's fallback).  Predicates are checked against the catalog
whitelist for the chosen intent; anything not whitelisted is dropped with a
warning by ``validate_predicates``.
"""
from __future__ import annotations

import datetime
import re

from src.core.errors import UnknownFilterField
from src.core.logging import get_logger
from src.governance.validator import validate_predicates
from src.nlq.models import FilterPredicate, Intent, Operator, QueryIntent
from src.nlq.text_patterns import extract_campaign_name, find_month, month_range, previous_month_range

logger = get_logger(__name__)

# ── Keyword maps ─────────────────────────────────────────

# Checked in order; first tag with a matching keyword wins.
_INTENT_KEYWORDS: list[tuple[Intent, list[str]]] = [
    (Intent.CAMPAIGNS,  ["campaign", "strategy"]),
    (Intent.RECIPIENTS, ["recipient", "customer", "user", "subscriber"]),
    (Intent.EVENTS,     ["event", "click", "open", "bounce", "unsubscribe", "deliver"]),
    (Intent.LISTS,      ["list", "segment"]),
    (Intent.METRICS,    ["metric", "rate", "performance", "dashboard", "summary"]),
]

_ACTION_KEYWORDS: list[tuple[str, list[str]]] = [
    ("count",  ["how many", "count", "number of"]),
    ("filter", ["filter", "where", "only"]),
    ("get",    ["show", "get", "find", "list", "display"]),
]

_STATUS_KEYWORDS: list[tuple[str, list[str]]] = [
    ("Clicked",      ["clicked", "click"]),
    ("Opened",       ["opened", "open"]),
    ("Bounced",      ["bounced", "bounce"]),
    ("Unsubscribed", ["unsubscribe"]),
    ("Delivered",    ["delivered", "deliver"]),
]

# Date column per intent for month / "last month" predicates
_DATE_FIELD: dict[Intent, str] = {
    Intent.EVENTS: "event_date",
}

_ALL_RE = re.compile(r"\ball\b")
_DEFAULT_LIMIT = 50
_ALL_LIMIT = 1000


def _detect_intent(q: str) -> Intent:
    for tag, keywords in _INTENT_KEYWORDS:
        if any(kw in q for kw in keywords):
            return tag
    return Intent.CAMPAIGNS


def _detect_action(q: str) -> str:
    for action, keywords in _ACTION_KEYWORDS:
        if any(kw in q for kw in keywords):
            return action
    return "get"


def classify(
    query: str,
    today: datetime.date | None = None,
) -> tuple[QueryIntent, list[UnknownFilterField]]:
    """Classify *query*; returns the intent and any dropped predicates."""
    today = today or datetime.date.today()
    q = query.strip().lower()
    intent = _detect_intent(q)
    action = _detect_action(q)

    entities: dict[str, str] = {}
    predicates: list[FilterPredicate] = []
    date_field = _DATE_FIELD.get(intent, "date_created")

    month = find_month(q)
    if month:
        start, end = month_range(month, today.year)
        entities["month"] = str(month)
        predicates.append(FilterPredicate(field=date_field, operator=Operator.BETWEEN, value=(start, end)))
    elif "last month" in q:
        start, end = previous_month_range(today)
        entities["time_range"] = "last_month"
        predicates.append(FilterPredicate(field=date_field, operator=Operator.BETWEEN, value=(start, end)))

    name = extract_campaign_name(query)
    if name:
        entities["campaign_name"] = name
        predicates.append(FilterPredicate(field="strategy_name", operator=Operator.CONTAINS, value=name))

    for status, keywords in _STATUS_KEYWORDS:
        if any(kw in q for kw in keywords):
            entities["status"] = status
            predicates.append(FilterPredicate(field="status", operator=Operator.EQUALS, value=status))
            break

    kept, dropped = validate_predicates(intent.value, predicates)
    limit = _ALL_LIMIT if _ALL_RE.search(q) else _DEFAULT_LIMIT

    result = QueryIntent(
        intent=intent,
        action=action,
        entities=entities,
        filters=tuple(kept),
        limit=limit,
    )
    logger.info("Classified intent=%s action=%s filters=%d", intent.value, action, len(kept))
    return result, dropped
