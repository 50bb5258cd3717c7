"""
Typed request-scoped objects shared by the query core.

All of these are created per request and discarded afterwards; nothing here
is cached or persisted.
"""
from __future__ import annotations

import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_pascal

DEFAULT_PAGE_NUMBER = 1
DEFAULT_PAGE_SIZE = 50
DEFAULT_SORT_BY = "StrategyName"
DEFAULT_SORT_DIRECTION = "asc"


class Intent(str, Enum):
    CAMPAIGNS = "campaigns"
    RECIPIENTS = "recipients"
    EVENTS = "events"
    METRICS = "metrics"
    LISTS = "lists"

    @classmethod
    def coerce(cls, value: Any) -> "Intent":
        """Map free text onto a tag; anything unknown becomes ``campaigns``."""
        if isinstance(value, Intent):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.CAMPAIGNS


class Operator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"


class FilterPredicate(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: Operator
    value: Any

    @field_validator("value")
    @classmethod
    def _between_needs_pair(cls, v: Any, info) -> Any:
        if info.data.get("operator") == Operator.BETWEEN:
            if not isinstance(v, (tuple, list)) or len(v) != 2:
                raise ValueError("'between' needs a (low, high) pair")
            return tuple(v)
        return v


class QueryIntent(BaseModel):
    """Classified query: tag, extracted entities, predicates, optional limit."""

    model_config = ConfigDict(frozen=True)

    intent: Intent = Intent.CAMPAIGNS
    action: str = "get"
    entities: dict[str, str] = Field(default_factory=dict)
    filters: tuple[FilterPredicate, ...] = ()
    limit: int | None = None


# ── Structured filter set (trigger-report path) ──────────

class TriggerReportFilter(BaseModel):
    """Fixed-schema filter set for campaign trigger reports.

    Field aliases are the PascalCase names the model is prompted with
    (``StrategyName``, ``MinOpenRatePercentage`` ...), which double as the
    extraction whitelist.
    """

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    strategy_name: str | None = None
    first_email_sent_from: datetime.date | None = None
    first_email_sent_to: datetime.date | None = None

    min_total_emails: int | None = Field(None, ge=0)
    max_total_emails: int | None = Field(None, ge=0)
    min_delivered_count: int | None = Field(None, ge=0)
    min_opened_count: int | None = Field(None, ge=0)
    min_clicked_count: int | None = Field(None, ge=0)

    min_click_rate_percentage: float | None = Field(None, ge=0, le=100)
    max_click_rate_percentage: float | None = Field(None, ge=0, le=100)
    min_open_rate_percentage: float | None = Field(None, ge=0, le=100)
    max_open_rate_percentage: float | None = Field(None, ge=0, le=100)
    min_delivery_rate_percentage: float | None = Field(None, ge=0, le=100)
    max_delivery_rate_percentage: float | None = Field(None, ge=0, le=100)
    min_bounce_rate_percentage: float | None = Field(None, ge=0, le=100)
    max_bounce_rate_percentage: float | None = Field(None, ge=0, le=100)

    page_number: int = DEFAULT_PAGE_NUMBER
    page_size: int = DEFAULT_PAGE_SIZE
    sort_by: str = DEFAULT_SORT_BY
    sort_direction: str = DEFAULT_SORT_DIRECTION

    @field_validator("page_number", mode="before")
    @classmethod
    def _default_page_number(cls, v: Any) -> Any:
        if v is None or (isinstance(v, (int, float)) and v <= 0):
            return DEFAULT_PAGE_NUMBER
        return v

    @field_validator("page_size", mode="before")
    @classmethod
    def _default_page_size(cls, v: Any) -> Any:
        if v is None or (isinstance(v, (int, float)) and v <= 0):
            return DEFAULT_PAGE_SIZE
        return v

    @field_validator("sort_direction", mode="before")
    @classmethod
    def _normalise_direction(cls, v: Any) -> str:
        d = str(v or "").strip().lower()
        return d if d in ("asc", "desc") else DEFAULT_SORT_DIRECTION

    @field_validator("sort_by", mode="before")
    @classmethod
    def _default_sort_by(cls, v: Any) -> str:
        s = str(v or "").strip()
        return s or DEFAULT_SORT_BY

    @property
    def offset(self) -> int:
        return (self.page_number - 1) * self.page_size

    def populated_fields(self) -> list[str]:
        """PascalCase names of the fields that were explicitly set."""
        fields = type(self).model_fields
        return [fields[name].alias or name for name in fields if name in self.model_fields_set]

    def active_filters(self) -> dict[str, Any]:
        """Non-null narrowing fields (pagination and sort excluded)."""
        skip = {"page_number", "page_size", "sort_by", "sort_direction"}
        return {
            name: value
            for name, value in self.model_dump().items()
            if name not in skip and value is not None
        }


def filter_field_whitelist() -> dict[str, str]:
    """PascalCase field name -> attribute name."""
    return {
        (info.alias or name): name
        for name, info in TriggerReportFilter.model_fields.items()
    }


class ExtractionResult(BaseModel):
    filters: TriggerReportFilter = Field(default_factory=TriggerReportFilter)
    explanation: str = ""
    success: bool = False
    error: str | None = None
    processing_time_ms: int = 0
    raw_llm_response: str | None = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    extracted_parameters: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    method: str = "model"  # model | rule_based


# ── Envelope ─────────────────────────────────────────────

class ResponseEnvelope(BaseModel):
    original_query: str
    intent: Intent = Intent.CAMPAIGNS
    generated_sql: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    results: list[dict[str, Any]] | None = None
    explanation: str = ""
    success: bool = True
    error: str | None = None
    debug_info: dict[str, Any] | None = None
    processing_time_ms: int = 0
    strategy: str = "rule_based"
    confidence: float = 1.0
