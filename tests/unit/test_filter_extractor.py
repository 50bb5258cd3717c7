"""
Unit tests -- filter extractor: empty input, JSON location, whitelist
mapping, rule-based extraction and model fallback.
"""
from __future__ import annotations

import datetime
import json

import pytest

from src.core.errors import MalformedResponseError, ModelNotFoundError
from src.nlq.filter_extractor import (
    FilterExtractor,
    build_prompt,
    extract_rule_based,
    find_json_block,
    map_filters,
    parse_model_output,
)

TODAY = datetime.date(2026, 10, 17)


class FakeSession:
    """Stands in for ModelSession; returns a canned reply or raises."""

    def __init__(self, reply: str = "", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    def infer(self, prompt, **kwargs):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.reply


def _extractor(session=None, use_model=True):
    return FilterExtractor(session=session, today=lambda: TODAY, use_model=use_model)


# ── Empty input ──────────────────────────────────────────

@pytest.mark.parametrize("query", ["", "   "])
def test_empty_query_fails_without_model_call(query):
    session = FakeSession(reply="{}")
    result = _extractor(session).extract(query)
    assert result.success is False
    assert "empty" in result.error.lower()
    assert session.prompts == []


# ── Model path ───────────────────────────────────────────

def test_model_reply_is_mapped():
    reply = json.dumps({
        "filters": {"StrategyName": "Black Friday", "MinTotalEmails": 1000},
        "explanation": "Black Friday with volume",
        "confidence": 0.9,
    })
    result = _extractor(FakeSession(reply)).extract("Black Friday campaigns over 1000 emails")

    assert result.success is True
    assert result.method == "model"
    assert result.filters.strategy_name == "Black Friday"
    assert result.filters.min_total_emails == 1000
    assert result.confidence == 0.9
    assert result.raw_llm_response == reply


def test_extracted_parameters_match_populated_fields():
    reply = '{"filters": {"MinOpenRatePercentage": 25, "SortBy": "ClickedCount", "SortDirection": "desc"}}'
    result = _extractor(FakeSession(reply)).extract("open rate above 25% sorted by clicks")
    assert sorted(result.extracted_parameters) == ["MinOpenRatePercentage", "SortBy", "SortDirection"]
    assert sorted(result.extracted_parameters) == sorted(result.filters.populated_fields())


def test_page_defaults_when_not_mentioned():
    result = _extractor(FakeSession('{"filters": {"StrategyName": "Spring"}}')).extract("spring campaigns")
    assert result.filters.page_number == 1
    assert result.filters.page_size == 50


def test_unknown_keys_become_warnings():
    reply = '{"filters": {"StrategyName": "Win-back", "Color": "blue", "MinOpenRatePercentage": 140}}'
    result = _extractor(FakeSession(reply)).extract("win-back campaigns")
    assert result.success is True
    assert result.filters.strategy_name == "Win-back"
    assert result.filters.min_open_rate_percentage is None
    assert len(result.warnings) == 2
    assert any("Color" in w for w in result.warnings)


def test_prompt_contains_query_and_context():
    session = FakeSession('{"filters": {}}')
    _extractor(session).extract("welcome series", context="EU customers only")
    prompt = session.prompts[0]
    assert "User Query: welcome series" in prompt
    assert "EU customers only" in prompt
    assert prompt.endswith("Extracted Filters (JSON):")
    assert TODAY.isoformat() in prompt


def test_model_unavailable_falls_back_to_rules():
    session = FakeSession(error=ModelNotFoundError("Model file not found: x.gguf"))
    result = _extractor(session).extract("Find Black Friday campaigns with more than 1000 emails")

    assert result.success is True
    assert result.method == "rule_based"
    assert result.confidence == 0.5
    assert result.filters.strategy_name == "Black Friday"
    assert any("ModelNotFoundError" in w for w in result.warnings)


def test_malformed_reply_falls_back_and_keeps_raw():
    session = FakeSession(reply="Sorry, I cannot help with that.")
    result = _extractor(session).extract("campaigns with high open rates")
    assert result.success is True
    assert result.method == "rule_based"
    assert result.raw_llm_response == "Sorry, I cannot help with that."


def test_no_fallback_reports_error():
    session = FakeSession(error=ModelNotFoundError("missing"))
    result = _extractor(session).extract("spring campaigns", allow_fallback=False)
    assert result.success is False
    assert "ModelNotFoundError" in result.error


@pytest.mark.parametrize("reply", [
    '{"filters": {"MinTotalEmails": Infinity}}',
    '{"filters": {"MinTotalEmails": "inf"}}',
    '{"filters": {"PageSize": NaN}}',
    '{"filters": {"MinClickedCount": 1e400}}',
    '{"filters": {"MinOpenedCount": 1' + "0" * 400 + '}}',
])
def test_non_finite_numbers_are_dropped(reply):
    result = _extractor(FakeSession(reply=reply)).extract("spring campaigns")
    assert result.success is True
    assert result.method == "model"
    assert result.filters.active_filters() == {}
    assert result.filters.page_size == 50
    assert len(result.warnings) == 1


def test_nan_confidence_defaults_to_one():
    reply = '{"filters": {"StrategyName": "Spring Sale"}, "confidence": NaN}'
    result = _extractor(FakeSession(reply=reply)).extract("spring campaigns")
    assert result.success is True
    assert result.confidence == 1.0
    assert result.filters.strategy_name == "Spring Sale"


def test_unusable_reply_takes_rule_fallback(monkeypatch):
    def broken_map(raw_filters, catalog=None):
        raise TypeError("unexpected shape")

    monkeypatch.setattr("src.nlq.filter_extractor.map_filters", broken_map)
    reply = '{"filters": {"StrategyName": "Spring Sale"}}'
    result = _extractor(FakeSession(reply=reply)).extract("Spring Sale campaigns")
    assert result.success is True
    assert result.method == "rule_based"
    assert result.raw_llm_response == reply
    assert any("MalformedResponseError" in w for w in result.warnings)


def test_model_page_size_capped():
    reply = '{"filters": {"PageSize": 50000}}'
    result = _extractor(FakeSession(reply=reply)).extract("all campaigns")
    assert result.filters.page_size == 1000


def test_rules_page_size_capped():
    f = extract_rule_based("campaigns, limit 5000", today=TODAY)
    assert f.page_size == 1000


def test_rule_only_extractor_never_calls_model():
    session = FakeSession(reply="{}")
    result = _extractor(session, use_model=False).extract("Welcome Series campaigns")
    assert result.method == "rule_based"
    assert session.prompts == []


# ── JSON location ────────────────────────────────────────

def test_find_json_block_ignores_surrounding_text():
    text = 'Here you go: {"filters": {"SortBy": "OpenRate"}} trailing } noise'
    assert json.loads(find_json_block(text)) == {"filters": {"SortBy": "OpenRate"}}


def test_find_json_block_handles_braces_in_strings():
    text = '{"explanation": "uses } and { inside", "filters": {}}'
    assert json.loads(find_json_block(text))["filters"] == {}


def test_find_json_block_raises_when_missing():
    with pytest.raises(MalformedResponseError):
        find_json_block("no json here")


def test_parse_model_output_strips_fences():
    data = parse_model_output('```json\n{"filters": {"PageSize": 10}}\n```')
    assert data["filters"]["PageSize"] == 10


def test_parse_model_output_rejects_invalid_json():
    with pytest.raises(MalformedResponseError, match="not valid JSON"):
        parse_model_output("{filters: nope}")


# ── Whitelist mapping ────────────────────────────────────

def test_map_filters_is_case_insensitive():
    filters, dropped = map_filters({"strategyname": "Spring", "MINTOTALEMAILS": "1,500"})
    assert filters.strategy_name == "Spring"
    assert filters.min_total_emails == 1500
    assert dropped == []


def test_map_filters_parses_dates_and_percentages():
    filters, _ = map_filters({
        "FirstEmailSentFrom": "2026-09-01",
        "FirstEmailSentTo": "2026-09-30T00:00:00",
        "MaxBounceRatePercentage": "2.5%",
    })
    assert filters.first_email_sent_from == datetime.date(2026, 9, 1)
    assert filters.first_email_sent_to == datetime.date(2026, 9, 30)
    assert filters.max_bounce_rate_percentage == 2.5


def test_map_filters_drops_bad_values():
    filters, dropped = map_filters({
        "MinTotalEmails": -5,
        "FirstEmailSentFrom": "last tuesday",
        "SortBy": "Revenue",
        "PageNumber": 0,
    })
    assert filters.min_total_emails is None
    assert filters.first_email_sent_from is None
    assert filters.sort_by == "StrategyName"
    assert filters.page_number == 1
    assert {d.field for d in dropped} == {"MinTotalEmails", "FirstEmailSentFrom", "SortBy", "PageNumber"}


def test_map_filters_skips_nulls():
    filters, dropped = map_filters({"StrategyName": None})
    assert filters.strategy_name is None
    assert dropped == []


# ── Rule-based extraction ────────────────────────────────

def test_rules_black_friday_last_month():
    f = extract_rule_based("Find Black Friday campaigns from last month with more than 1000 emails", today=TODAY)
    assert f.strategy_name == "Black Friday"
    assert f.min_total_emails == 1000
    assert f.first_email_sent_from == datetime.date(2026, 9, 1)
    assert f.first_email_sent_to == datetime.date(2026, 9, 30)


def test_rules_high_open_rates():
    f = extract_rule_based("Show me campaigns with high open rates", today=TODAY)
    assert f.min_open_rate_percentage == 20.0
    assert f.sort_by == "OpenRate"
    assert f.sort_direction == "desc"
    assert f.strategy_name is None


def test_rules_low_delivery_rates():
    f = extract_rule_based("campaigns with poor delivery rates", today=TODAY)
    assert f.max_delivery_rate_percentage == 90.0
    assert f.sort_direction == "asc"


def test_rules_explicit_rate_bounds():
    f = extract_rule_based("campaigns with click rate above 4.5% and bounce rate below 2%", today=TODAY)
    assert f.min_click_rate_percentage == 4.5
    assert f.max_bounce_rate_percentage == 2.0


def test_rules_counts_and_paging():
    f = extract_rule_based("campaigns with more than 200 clicks, page 3, 25 per page", today=TODAY)
    assert f.min_clicked_count == 200
    assert f.page_number == 3
    assert f.page_size == 25


def test_rules_month_name_and_year():
    f = extract_rule_based('"Spring Sale" sent in March 2025', today=TODAY)
    assert f.strategy_name == "Spring Sale"
    assert f.first_email_sent_from == datetime.date(2025, 3, 1)
    assert f.first_email_sent_to == datetime.date(2025, 3, 31)


def test_rules_last_n_days():
    f = extract_rule_based("campaigns from the last 7 days", today=TODAY)
    assert f.first_email_sent_from == datetime.date(2026, 10, 10)
    assert f.first_email_sent_to == TODAY


def test_rules_sorted_by_known_column():
    f = extract_rule_based("campaigns sorted by total_emails desc", today=TODAY)
    assert f.sort_by == "total_emails"
    assert f.sort_direction == "desc"


def test_rules_top_campaigns_sort_by_volume():
    f = extract_rule_based("top campaigns", today=TODAY)
    assert f.sort_by == "TotalEmails"
    assert f.sort_direction == "desc"


@pytest.mark.parametrize("query", [
    "show top 10 campaigns",
    "list the 5 campaigns with most opens",
    "Top 3 campaigns",
])
def test_rules_count_before_campaigns_is_not_a_name(query):
    f = extract_rule_based(query, today=TODAY)
    assert f.strategy_name is None


def test_rules_name_keeps_year_and_skips_count():
    f = extract_rule_based("Top 5 Black Friday 2025 campaigns", today=TODAY)
    assert f.strategy_name == "Black Friday 2025"


def test_rules_nothing_recognised():
    f = extract_rule_based("hello", today=TODAY)
    assert f.active_filters() == {}
    assert f.populated_fields() == []
    assert f.sort_by == "StrategyName"


def test_build_prompt_shape():
    prompt = build_prompt("  spring  ", today=TODAY)
    assert prompt.endswith("User Query: spring\n\nExtracted Filters (JSON):")
