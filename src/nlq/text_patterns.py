"""
Shared text helpers for the rule-based paths: campaign-name spotting,
calendar windows and "high/low <metric> rate" phrases.
"""
from __future__ import annotations

import calendar
import datetime
import re

# Percent thresholds used for "high"/"low" <metric> rate phrases
HIGH_RATE_THRESHOLDS: dict[str, float] = {"open": 20.0, "click": 5.0, "deliver": 95.0, "bounce": 5.0}
LOW_RATE_THRESHOLDS: dict[str, float] = {"open": 10.0, "click": 1.0, "deliver": 90.0, "bounce": 2.0}
HIGH_WORDS = frozenset({"high", "higher", "highest", "good", "great", "strong", "best"})

RATE_LEVEL_RE = re.compile(
    r"\b(high|higher|highest|good|great|strong|best|low|lower|lowest|poor|weak|bad)\s+"
    r"(open|click|delivery|deliverability|bounce)\w*\s+rates?\b"
)

# PascalCase stem used by the filter schema / sort whitelist
RATE_NAMES: dict[str, str] = {
    "open": "OpenRate", "click": "ClickRate", "deliver": "DeliveryRate", "bounce": "BounceRate",
}

MONTHS: dict[str, int] = {
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
}
MONTH_RE = re.compile(r"\b(" + "|".join(sorted(MONTHS, key=len, reverse=True)) + r")\b")

_QUOTED_RE = re.compile(r"[\"“]([^\"”]{2,80})[\"”]")
_CAPITALISED_BEFORE_CAMPAIGN_RE = re.compile(r"((?:[A-Z0-9][\w'&-]*\s+)+)campaigns?\b")
_NAMED_RE = re.compile(
    r"\b(?:named|called|titled)\s+([\w][\w\s&'-]*?)(?=\s+(?:from|with|in|that|sent|last|this|and)\b|[?.!,]|$)",
    re.IGNORECASE,
)
_LEADING_NOISE = {
    "find", "show", "get", "list", "give", "display", "fetch", "me", "all", "the",
    "my", "our", "which", "what", "any", "i", "a", "an", "see", "view", "top", "best",
}


def normalise_rate_metric(word: str) -> str:
    """'delivery' / 'deliverability' -> 'deliver'; other metric words unchanged."""
    return "deliver" if word.startswith("deliver") else word


def extract_campaign_name(raw: str) -> str | None:
    """Best-effort campaign name from the original-case query text.

    Order: quoted text, capitalised words right before "campaign(s)",
    then "named/called X".
    """
    m = _QUOTED_RE.search(raw)
    if m:
        return m.group(1).strip()

    m = _CAPITALISED_BEFORE_CAMPAIGN_RE.search(raw)
    if m:
        words = m.group(1).split()
        while words and (words[0].lower() in _LEADING_NOISE or words[0].isdigit()):
            words.pop(0)
        if words:
            return " ".join(words)

    m = _NAMED_RE.search(raw)
    if m:
        return m.group(1).strip()
    return None


def month_range(month: int, year: int) -> tuple[datetime.date, datetime.date]:
    """First and last day of *month* (inclusive)."""
    last = calendar.monthrange(year, month)[1]
    return datetime.date(year, month, 1), datetime.date(year, month, last)


def previous_month_range(today: datetime.date) -> tuple[datetime.date, datetime.date]:
    """First and last day of the calendar month before *today*'s month."""
    last_of_prev = today.replace(day=1) - datetime.timedelta(days=1)
    return month_range(last_of_prev.month, last_of_prev.year)


def current_month_range(today: datetime.date) -> tuple[datetime.date, datetime.date]:
    return today.replace(day=1), today


def last_n_days(n: int, today: datetime.date) -> tuple[datetime.date, datetime.date]:
    return today - datetime.timedelta(days=n), today


def find_month(text: str) -> int | None:
    m = MONTH_RE.search(text.lower())
    return MONTHS[m.group(1)] if m else None
