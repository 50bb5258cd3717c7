"""
Filter extractor -- free text -> TriggerReportFilter.

Pipeline:
  1. Reject empty / whitespace-only input (no model call)
  2. Build a few-shot prompt listing every filter field
  3. Run low-temperature inference through the model session
  4. Locate the first balanced ``{...}`` block and parse it as JSON
  5. Map whitelisted keys onto typed fields; unknown keys / bad values
     are dropped with a warning
  6. On any model failure, fall back to the rule-based extractor

Nothing raised below this boundary escapes ``extract``; failures are
reported through ``ExtractionResult.success`` / ``error`` / ``warnings``.
"""
from __future__ import annotations

import datetime
import json
import math
import re
import time
from typing import Any, Callable

from src.core.config import get_settings
from src.core.errors import (
    EmptyQueryError,
    MalformedResponseError,
    ModelUnavailableError,
    UnknownFilterField,
)
from src.core.logging import get_logger
from src.core.utils import elapsed_ms
from src.governance.catalog_loader import FilterCatalog, load_filter_catalog
from src.nlq.llm_session import ModelSession
from src.nlq.models import ExtractionResult, TriggerReportFilter, filter_field_whitelist
from src.nlq.text_patterns import (
    HIGH_RATE_THRESHOLDS,
    HIGH_WORDS,
    LOW_RATE_THRESHOLDS,
    RATE_LEVEL_RE,
    RATE_NAMES,
    current_month_range,
    extract_campaign_name,
    find_month,
    last_n_days,
    month_range,
    normalise_rate_metric,
    previous_month_range,
)

logger = get_logger(__name__)

STOP_SEQUENCES = ["\n\n", "User:", "Query:", "Human:", "Assistant:"]
_TEMPERATURE = 0.1
_TOP_P = 0.9
_TOP_K = 40
_MAX_TOKENS = 512
_CHAR_CAP = 2048
_RULE_CONFIDENCE = 0.5

_PROMPT = """You convert email campaign report questions into JSON filters.

Available filters:
- StrategyName (string): campaign name, partial match
- FirstEmailSentFrom (date YYYY-MM-DD): first email sent on or after
- FirstEmailSentTo (date YYYY-MM-DD): first email sent on or before
- MinTotalEmails, MaxTotalEmails (integer): total emails sent
- MinDeliveredCount, MinOpenedCount, MinClickedCount (integer)
- MinClickRatePercentage, MaxClickRatePercentage (number 0-100)
- MinOpenRatePercentage, MaxOpenRatePercentage (number 0-100)
- MinDeliveryRatePercentage, MaxDeliveryRatePercentage (number 0-100)
- MinBounceRatePercentage, MaxBounceRatePercentage (number 0-100)
- PageNumber (integer >= 1), PageSize (integer >= 1)
- SortBy (one of: StrategyName, TotalEmails, DeliveredCount, BouncedCount, OpenedCount, ClickedCount, FirstEmailSent, LastEmailSent, OpenRate, ClickRate, DeliveryRate, BounceRate)
- SortDirection (asc or desc)

Today is {today}.  Respond with one JSON object only:
{{"filters": {{...}}, "explanation": "...", "confidence": 0.0-1.0, "extractedParameters": [...]}}

User Query: Show Black Friday campaigns with more than 1000 emails
Extracted Filters (JSON): {{"filters": {{"StrategyName": "Black Friday", "MinTotalEmails": 1000}}, "explanation": "Black Friday campaigns with over 1000 emails", "confidence": 0.95, "extractedParameters": ["StrategyName", "MinTotalEmails"]}}

User Query: campaigns with open rate above 25% sorted by clicks
Extracted Filters (JSON): {{"filters": {{"MinOpenRatePercentage": 25, "SortBy": "ClickedCount", "SortDirection": "desc"}}, "explanation": "Open rate over 25%, most clicks first", "confidence": 0.9, "extractedParameters": ["MinOpenRatePercentage", "SortBy", "SortDirection"]}}

User Query: welcome series sent in March 2026, page 2
Extracted Filters (JSON): {{"filters": {{"StrategyName": "welcome series", "FirstEmailSentFrom": "2026-03-01", "FirstEmailSentTo": "2026-03-31", "PageNumber": 2}}, "explanation": "Welcome series first sent in March 2026, second page", "confidence": 0.9, "extractedParameters": ["StrategyName", "FirstEmailSentFrom", "FirstEmailSentTo", "PageNumber"]}}"""

_JSON_FALLBACK_RE = re.compile(r"\{.*\}", re.DOTALL)


# ── Prompt ───────────────────────────────────────────────

def build_prompt(query: str, context: str | None = None, today: datetime.date | None = None) -> str:
    today = today or datetime.date.today()
    prompt = _PROMPT.format(today=today.isoformat())
    if context:
        prompt += f"\n\nAdditional context: {context.strip()}"
    return f"{prompt}\n\nUser Query: {query.strip()}\n\nExtracted Filters (JSON):"


# ── JSON location / parsing ──────────────────────────────

def find_json_block(text: str) -> str:
    """Return the first balanced ``{...}`` block in *text*.

    Brace matching skips braces inside JSON strings.  If no balanced block
    exists, falls back to the greedy ``{.*}`` regex.

    Raises
    ------
    MalformedResponseError
        If no candidate block is found.
    """
    start = text.find("{")
    if start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]

    m = _JSON_FALLBACK_RE.search(text)
    if m:
        return m.group(0)
    raise MalformedResponseError("No JSON object found in model output")


def parse_model_output(text: str) -> dict[str, Any]:
    """Strip code fences, locate the JSON block and decode it."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[-1]
        cleaned = cleaned.rsplit("```", 1)[0]
    block = find_json_block(cleaned)
    try:
        data = json.loads(block)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"Model output is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise MalformedResponseError("Model output JSON is not an object")
    return data


# ── Typed field mapping ──────────────────────────────────

_WHITELIST = filter_field_whitelist()
_WHITELIST_LOWER = {k.lower(): k for k in _WHITELIST}

_STRING_FIELDS = {"strategy_name"}
_DATE_FIELDS = {"first_email_sent_from", "first_email_sent_to"}
_COUNT_FIELDS = {
    "min_total_emails", "max_total_emails", "min_delivered_count",
    "min_opened_count", "min_clicked_count",
}
_PAGE_FIELDS = {"page_number", "page_size"}


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%").replace(",", "")
    elif not isinstance(value, (int, float)):
        return None
    try:
        num = float(value)
    except (ValueError, OverflowError):
        return None
    return num if math.isfinite(num) else None


def _coerce(attr: str, value: Any, catalog: FilterCatalog) -> tuple[Any, str | None]:
    """Return (typed value, None) or (None, reason)."""
    if attr in _STRING_FIELDS:
        if isinstance(value, str) and value.strip():
            return value.strip(), None
        return None, "expected a non-empty string"

    if attr in _DATE_FIELDS:
        if isinstance(value, str):
            try:
                return datetime.date.fromisoformat(value.strip()[:10]), None
            except ValueError:
                pass
        return None, "expected a YYYY-MM-DD date"

    if attr in _COUNT_FIELDS or attr in _PAGE_FIELDS:
        num = _to_number(value)
        if num is None or num != int(num):
            return None, "expected an integer"
        if attr in _PAGE_FIELDS and num <= 0:
            return None, "must be greater than zero"
        if num < 0:
            return None, "must not be negative"
        if attr == "page_size":
            return min(int(num), get_settings().max_page_size), None
        return int(num), None

    if attr.endswith("_percentage"):
        num = _to_number(value)
        if num is None:
            return None, "expected a number"
        if not 0 <= num <= 100:
            return None, "percentage must be between 0 and 100"
        return num, None

    if attr == "sort_by":
        if isinstance(value, str) and catalog.is_sortable(value):
            return value.strip(), None
        return None, "not a sortable field"

    if attr == "sort_direction":
        if isinstance(value, str) and value.strip().lower() in ("asc", "desc"):
            return value.strip().lower(), None
        return None, "expected 'asc' or 'desc'"

    return None, "unsupported field"


def map_filters(
    raw_filters: dict[str, Any],
    catalog: FilterCatalog | None = None,
) -> tuple[TriggerReportFilter, list[UnknownFilterField]]:
    """Map model-emitted keys onto a TriggerReportFilter.

    Only whitelisted keys whose values parse to the expected type are set;
    everything else is returned as a warning.  Null values are ignored.
    """
    if catalog is None:
        catalog = load_filter_catalog()

    values: dict[str, Any] = {}
    dropped: list[UnknownFilterField] = []
    for key, value in raw_filters.items():
        if value is None:
            continue
        canonical = _WHITELIST_LOWER.get(str(key).lower())
        if canonical is None:
            dropped.append(UnknownFilterField(str(key), value, "unknown filter field"))
            continue
        attr = _WHITELIST[canonical]
        typed, reason = _coerce(attr, value, catalog)
        if reason:
            dropped.append(UnknownFilterField(canonical, value, reason))
            continue
        values[attr] = typed

    for w in dropped:
        logger.warning("Filter extraction: %s value=%r", w, w.value)
    return TriggerReportFilter(**values), dropped


# ── Rule-based extraction ────────────────────────────────

_TOTAL_MIN_RE = re.compile(r"(?:more than|over|above|greater than|at least)\s+([\d,]+)\s+(?:emails?|messages?|sends?)")
_TOTAL_MAX_RE = re.compile(r"(?:less than|fewer than|under|below|at most)\s+([\d,]+)\s+(?:emails?|messages?|sends?)")
_COUNT_MIN_RE = re.compile(
    r"(?:more than|over|above|greater than|at least)\s+([\d,]+)\s+(opens?|opened|clicks?|clicked|deliver(?:ies|ed|y))"
)
_RATE_BOUND_RE = re.compile(
    r"(open|click|delivery|bounce)\s+rates?\s+(?:of\s+)?"
    r"(above|over|greater than|more than|at least|below|under|less than|at most)\s+(\d+(?:\.\d+)?)\s*%?"
)
_LAST_DAYS_RE = re.compile(r"(?:last|past)\s+(\d+)\s+days?")
_PAGE_RE = re.compile(r"\bpage\s+(\d+)\b")
_PAGE_SIZE_RE = re.compile(r"\b(\d+)\s+(?:per page|results|rows)\b|\blimit\s+(\d+)\b")
_SORT_RE = re.compile(r"(?:sorted|sort|order(?:ed)?)\s+by\s+([a-z_ ]+?)(?:\s+(asc|ascending|desc|descending))?(?:$|[,.]|\s+(?:and|with|from)\b)")

_COUNT_ATTR = {"open": "min_opened_count", "click": "min_clicked_count", "deliver": "min_delivered_count"}


def extract_rule_based(
    query: str,
    today: datetime.date | None = None,
    catalog: FilterCatalog | None = None,
) -> TriggerReportFilter:
    """Deterministic keyword / regex extraction of the filter set."""
    if catalog is None:
        catalog = load_filter_catalog()
    today = today or datetime.date.today()
    q = query.lower()
    values: dict[str, Any] = {}

    name = extract_campaign_name(query)
    if name:
        values["strategy_name"] = name

    m = _TOTAL_MIN_RE.search(q)
    if m:
        values["min_total_emails"] = int(m.group(1).replace(",", ""))
    m = _TOTAL_MAX_RE.search(q)
    if m:
        values["max_total_emails"] = int(m.group(1).replace(",", ""))

    for m in _COUNT_MIN_RE.finditer(q):
        word = m.group(2)
        metric = "open" if word.startswith("open") else "click" if word.startswith("click") else "deliver"
        values[_COUNT_ATTR[metric]] = int(m.group(1).replace(",", ""))

    # dates
    window: tuple[datetime.date, datetime.date] | None = None
    m = _LAST_DAYS_RE.search(q)
    if "last month" in q or "previous month" in q:
        window = previous_month_range(today)
    elif "this month" in q:
        window = current_month_range(today)
    elif m:
        window = last_n_days(int(m.group(1)), today)
    else:
        month = find_month(q)
        if month:
            year_m = re.search(r"\b(20\d{2})\b", q)
            window = month_range(month, int(year_m.group(1)) if year_m else today.year)
    if window:
        values["first_email_sent_from"], values["first_email_sent_to"] = window

    # rates
    m = RATE_LEVEL_RE.search(q)
    if m:
        metric = normalise_rate_metric(m.group(2))
        high = m.group(1) in HIGH_WORDS
        bound = "min" if high else "max"
        thresholds = HIGH_RATE_THRESHOLDS if high else LOW_RATE_THRESHOLDS
        values[f"{bound}_{_rate_attr(metric)}_rate_percentage"] = thresholds[metric]
        values["sort_by"] = RATE_NAMES[metric]
        values["sort_direction"] = "desc" if high else "asc"

    for m in _RATE_BOUND_RE.finditer(q):
        metric = normalise_rate_metric(m.group(1))
        value = float(m.group(3))
        if not 0 <= value <= 100:
            continue
        bound = "min" if m.group(2) in ("above", "over", "greater than", "more than", "at least") else "max"
        values[f"{bound}_{_rate_attr(metric)}_rate_percentage"] = value

    if "sort_by" not in values and re.search(r"\b(top|best|most)\b", q):
        values["sort_by"] = "TotalEmails"
        values["sort_direction"] = "desc"

    m = _SORT_RE.search(q)
    if m and catalog.is_sortable(m.group(1).strip()):
        values["sort_by"] = m.group(1).strip()
        if m.group(2):
            values["sort_direction"] = "desc" if m.group(2).startswith("desc") else "asc"

    m = _PAGE_RE.search(q)
    if m and int(m.group(1)) > 0:
        values["page_number"] = int(m.group(1))
    m = _PAGE_SIZE_RE.search(q)
    if m:
        size = int(m.group(1) or m.group(2))
        if size > 0:
            values["page_size"] = min(size, get_settings().max_page_size)

    return TriggerReportFilter(**values)


def _rate_attr(metric: str) -> str:
    return "delivery" if metric == "deliver" else metric


def _describe(filters: TriggerReportFilter) -> str:
    active = filters.active_filters()
    if not active:
        return "No specific filters recognised; showing all campaigns"
    parts = [f"{k}={v}" for k, v in active.items()]
    return "Rule-based filters: " + ", ".join(parts)


# ── Extractor ────────────────────────────────────────────

class FilterExtractor:
    """Turns free text into an ExtractionResult.

    With no session (or ``use_model=False``) only the rule-based path runs.
    """

    def __init__(
        self,
        session: ModelSession | None = None,
        catalog: FilterCatalog | None = None,
        today: Callable[[], datetime.date] = datetime.date.today,
        use_model: bool = True,
    ) -> None:
        self._session = session
        self._catalog = catalog
        self._today = today
        self._use_model = use_model and session is not None

    @property
    def catalog(self) -> FilterCatalog:
        if self._catalog is None:
            self._catalog = load_filter_catalog()
        return self._catalog

    def extract(
        self,
        query: str,
        context: str | None = None,
        allow_fallback: bool = True,
    ) -> ExtractionResult:
        t0 = time.perf_counter()
        if not query or not query.strip():
            err = EmptyQueryError("Empty query: please provide a question to extract filters from")
            return ExtractionResult(success=False, error=str(err), confidence=0.0)

        if not self._use_model:
            result = self._rule_result(query, note=None)
        else:
            try:
                result = self._model_result(query, context)
            except (ModelUnavailableError, MalformedResponseError) as exc:
                logger.warning("Model extraction unavailable (%s) -- using rules", exc)
                if not allow_fallback:
                    result = ExtractionResult(
                        success=False,
                        error=f"{type(exc).__name__}: {exc}",
                        confidence=0.0,
                        raw_llm_response=getattr(exc, "raw_response", None),
                    )
                else:
                    result = self._rule_result(query, note=f"{type(exc).__name__}: {exc}")
                    result.raw_llm_response = getattr(exc, "raw_response", None)

        result.processing_time_ms = elapsed_ms(t0)
        return result

    def _model_result(self, query: str, context: str | None) -> ExtractionResult:
        if self._session is None:
            raise ModelUnavailableError("No model session configured")
        prompt = build_prompt(query, context, today=self._today())
        raw = self._session.infer(
            prompt,
            stop=STOP_SEQUENCES,
            max_tokens=_MAX_TOKENS,
            temperature=_TEMPERATURE,
            top_p=_TOP_P,
            top_k=_TOP_K,
            char_cap=_CHAR_CAP,
        )
        try:
            return self._interpret(raw)
        except MalformedResponseError as exc:
            raise MalformedResponseError(str(exc), raw_response=raw) from exc
        except (ValueError, TypeError, OverflowError) as exc:
            raise MalformedResponseError(f"Unusable model output: {exc}", raw_response=raw) from exc

    def _interpret(self, raw: str) -> ExtractionResult:
        data = parse_model_output(raw)
        raw_filters = data.get("filters")
        if not isinstance(raw_filters, dict):
            # Some outputs put the fields at the top level
            raw_filters = {k: v for k, v in data.items() if k.lower() in _WHITELIST_LOWER}

        filters, dropped = map_filters(raw_filters, self.catalog)
        confidence = _to_number(data.get("confidence"))
        confidence = 1.0 if confidence is None else min(max(confidence, 0.0), 1.0)

        return ExtractionResult(
            filters=filters,
            explanation=str(data.get("explanation") or _describe(filters)),
            success=True,
            raw_llm_response=raw,
            confidence=confidence,
            extracted_parameters=filters.populated_fields(),
            warnings=[str(w) for w in dropped],
            method="model",
        )

    def _rule_result(self, query: str, note: str | None) -> ExtractionResult:
        filters = extract_rule_based(query, today=self._today(), catalog=self.catalog)
        explanation = _describe(filters)
        warnings: list[str] = []
        if note:
            explanation += " (model unavailable, rule-based fallback used)"
            warnings.append(f"Model extraction failed, used rule-based fallback: {note}")
        return ExtractionResult(
            filters=filters,
            explanation=explanation,
            success=True,
            confidence=_RULE_CONFIDENCE,
            extracted_parameters=filters.populated_fields(),
            warnings=warnings,
            method="rule_based",
        )
