"""
Human-readable summaries of extracted filters and fallback notes.

Template-based only; used to fill ``filter_summary`` and the explanatory
note attached when the model path could not answer.
"""
from __future__ import annotations

from src.nlq.models import TriggerReportFilter


_FALLBACK_TEMPLATES: dict[str, str] = {
    "modelnotfound": (
        "The local language model is not installed, so your question was "
        "interpreted with keyword rules."
    ),
    "modeltimeout": (
        "The local language model took too long to start, so your question was "
        "interpreted with keyword rules."
    ),
    "modelload": (
        "The local language model could not be loaded, so your question was "
        "interpreted with keyword rules."
    ),
    "malformed": (
        "The language model's answer could not be understood, so your question was "
        "interpreted with keyword rules."
    ),
    "safety": (
        "The SQL proposed by the language model did not pass the read-only safety "
        "checks and was replaced by a rule-based query."
    ),
}

_RATE_LABELS = {
    "click": "click rate",
    "open": "open rate",
    "delivery": "delivery rate",
    "bounce": "bounce rate",
}


def explain_fallback(reason: str) -> str:
    """Pick the note that best matches *reason* (an error type or message)."""
    lower = reason.lower().replace("_", "").replace(" ", "")
    for key, template in _FALLBACK_TEMPLATES.items():
        if key in lower:
            return template
    return "The language model was unavailable, so your question was interpreted with keyword rules."


def summarize_filters(filters: TriggerReportFilter) -> str:
    """One-line, plain-English description of a filter set."""
    parts: list[str] = []
    if filters.strategy_name:
        parts.append(f"campaign name contains '{filters.strategy_name}'")

    start, end = filters.first_email_sent_from, filters.first_email_sent_to
    if start and end:
        parts.append(f"first sent between {start.isoformat()} and {end.isoformat()}")
    elif start:
        parts.append(f"first sent on or after {start.isoformat()}")
    elif end:
        parts.append(f"first sent on or before {end.isoformat()}")

    if filters.min_total_emails is not None:
        parts.append(f"at least {filters.min_total_emails:,} emails")
    if filters.max_total_emails is not None:
        parts.append(f"at most {filters.max_total_emails:,} emails")
    for attr, label in [
        ("min_delivered_count", "deliveries"),
        ("min_opened_count", "opens"),
        ("min_clicked_count", "clicks"),
    ]:
        value = getattr(filters, attr)
        if value is not None:
            parts.append(f"at least {value:,} {label}")

    for metric, label in _RATE_LABELS.items():
        low = getattr(filters, f"min_{metric}_rate_percentage")
        high = getattr(filters, f"max_{metric}_rate_percentage")
        if low is not None:
            parts.append(f"{label} ≥ {low:g}%")
        if high is not None:
            parts.append(f"{label} ≤ {high:g}%")

    head = "; ".join(parts) if parts else "all active campaigns"
    return (
        f"{head[0].upper()}{head[1:]}. Sorted by {filters.sort_by} {filters.sort_direction}, "
        f"page {filters.page_number} ({filters.page_size} per page)."
    )
