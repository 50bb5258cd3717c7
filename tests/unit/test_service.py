"""
Unit tests -- natural-language service: rule path, model path with fakes,
fallbacks and the trigger-report flow.  No database or model is needed.
"""
from __future__ import annotations

import datetime

import pytest

from src.core.errors import EmptyQueryError, ModelNotFoundError
from src.nlq import pattern_matcher
from src.nlq.llm_session import ModelOptions, SessionState
from src.nlq.models import Intent, ResponseEnvelope
from src.nlq.service import NaturalLanguageService, TriggerReportResult
from src.nlq.strategy import ProcessingStrategy

TODAY = datetime.date(2026, 10, 17)


class FakeSession:
    def __init__(self, reply: str = "", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.options = ModelOptions(model_path="models/fake.gguf")
        self.state = SessionState.READY
        self.prompts: list[str] = []

    def infer(self, prompt, **kwargs):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.reply

    def model_info(self):
        return {"state": self.state.value}


class FakeCollaborator:
    def get_recent_campaigns(self, days, limit):
        return [{"strategy_name": "Spring Sale 2026", "total_emails": 10}]

    def get_dashboard_metrics(self):
        return {"campaigns": 3, "total_emails": 120}


class RecordingReports:
    def __init__(self, rows=None, total=0):
        self.rows = rows or []
        self.total = total
        self.seen = []

    def __call__(self, filters):
        self.seen.append(filters)
        return self.rows, self.total


def _rule_service(**kwargs):
    return NaturalLanguageService(today=lambda: TODAY, **kwargs)


def _model_service(session, **kwargs):
    return NaturalLanguageService(
        strategy=ProcessingStrategy.MODEL, session=session, today=lambda: TODAY, **kwargs
    )


# ── Construction / input checks ──────────────────────────

def test_model_strategy_needs_session():
    with pytest.raises(ValueError, match="ModelSession"):
        NaturalLanguageService(strategy=ProcessingStrategy.MODEL)


@pytest.mark.parametrize("query", ["", "   "])
def test_empty_query_rejected(query):
    svc = _rule_service()
    with pytest.raises(EmptyQueryError):
        svc.process_query(query)
    with pytest.raises(EmptyQueryError):
        svc.query_trigger_reports(query)


# ── Rule path ────────────────────────────────────────────

def test_high_open_rates_envelope():
    env = _rule_service().process_query("Show me campaigns with high open rates")
    assert isinstance(env, ResponseEnvelope)
    assert env.intent is Intent.CAMPAIGNS
    assert ">= 20" in env.generated_sql
    assert env.parameters["MinOpenRatePercentage"] == 20
    assert env.parameters["sortBy"] == "OpenRate"
    assert env.parameters["sortDirection"] == "desc"
    assert env.strategy == "rule_based"
    assert env.success is True


def test_clicks_more_than_parameters():
    env = _rule_service().process_query("campaigns with clicks more than 1000")
    assert env.parameters["metricType"] == "click"
    assert env.parameters["threshold"] == 1000
    assert env.parameters["isGreater"] is True


def test_collaborator_results_returned():
    env = _rule_service(collaborator=FakeCollaborator()).process_query(
        "Show me recent campaigns", include_debug_info=True
    )
    assert env.results == [{"strategy_name": "Spring Sale 2026", "total_emails": 10}]
    assert env.generated_sql is None
    assert env.debug_info["rule"] == "recent_campaigns"
    assert env.debug_info["sql_equivalent"] == pattern_matcher.SQL_RECENT_CAMPAIGNS


def test_dict_results_wrapped():
    env = _rule_service(collaborator=FakeCollaborator()).process_query("Dashboard overview")
    assert env.intent is Intent.METRICS
    assert env.results == [{"campaigns": 3, "total_emails": 120}]


def test_collaborator_skipped_for_sql_only():
    env = _rule_service(collaborator=FakeCollaborator()).process_query(
        "Show me recent campaigns", use_collaborator=False
    )
    assert env.results is None
    assert env.generated_sql == pattern_matcher.SQL_RECENT_CAMPAIGNS


def test_intent_classifier_path():
    env = _rule_service().process_query('How did "Spring Sale" do', include_debug_info=True)
    assert env.parameters["processing_type"] == "intent_template"
    assert env.parameters["sql_parameters"] == {"p0": "%spring sale%"}
    assert "LIKE :p0" in env.generated_sql
    assert env.debug_info["rule"] == "intent_classifier"


def test_generic_fallback():
    env = _rule_service().process_query("hello there")
    assert env.generated_sql == pattern_matcher.SQL_RECENT_CAMPAIGNS
    assert env.confidence == 0.3
    assert env.parameters["processing_type"] == "generic_fallback"


def test_debug_info_only_on_request():
    assert _rule_service().process_query("hello there").debug_info is None


def test_execute_runs_readonly(monkeypatch):
    calls = []

    def fake_execute(sql, params):
        calls.append((sql, params))
        return [{"strategy_name": "Welcome Series", "emails_sent": 7}]

    monkeypatch.setattr("src.db.executor.execute_readonly", fake_execute)
    env = _rule_service().process_query("hello there", execute=True, include_debug_info=True)
    assert env.results == [{"strategy_name": "Welcome Series", "emails_sent": 7}]
    assert env.debug_info["sql_equivalent"] == pattern_matcher.SQL_RECENT_CAMPAIGNS
    assert calls[0][0] == pattern_matcher.SQL_RECENT_CAMPAIGNS


def test_execute_failure_reported(monkeypatch):
    def boom(sql, params):
        raise RuntimeError("connection refused")

    monkeypatch.setattr("src.db.executor.execute_readonly", boom)
    env = _rule_service().process_query("hello there", execute=True)
    assert env.success is False
    assert "connection refused" in env.error


# ── Model path ───────────────────────────────────────────

def test_model_sql_used_when_no_rule_fires():
    session = FakeSession("events\nSQL: SELECT to_address FROM email_outbox LIMIT 10\nEXPLANATION: Addresses.")
    env = _model_service(session).process_query("hello there")
    assert env.strategy == "model"
    assert env.intent is Intent.EVENTS
    assert env.generated_sql == "SELECT to_address FROM email_outbox LIMIT 10"
    assert env.explanation == "Addresses."
    assert session.prompts[0].endswith("Query: hello there\nINTENT:")


def test_model_sql_without_limit_gets_row_cap():
    session = FakeSession("events\nSQL: SELECT to_address FROM email_outbox\nEXPLANATION: Addresses.")
    env = _model_service(session).process_query("hello there")
    assert env.strategy == "model"
    assert env.generated_sql == "SELECT to_address FROM email_outbox\nLIMIT 1000"


def test_executed_sql_without_limit_gets_row_cap(monkeypatch):
    calls = []

    def fake_execute(sql, params):
        calls.append(sql)
        return []

    monkeypatch.setattr("src.db.executor.execute_readonly", fake_execute)
    session = FakeSession("events\nSQL: SELECT to_address FROM email_outbox\nEXPLANATION: Addresses.")
    _model_service(session).process_query("hello there", execute=True)
    assert calls == ["SELECT to_address FROM email_outbox\nLIMIT 1000"]


def test_rules_answer_before_model():
    session = FakeSession("campaigns\nSQL: SELECT 1 FROM email_list")
    env = _model_service(session).process_query("Show me campaigns with high open rates")
    assert env.strategy == "rule_based"
    assert session.prompts == []


def test_unsafe_model_sql_rejected():
    session = FakeSession("campaigns\nSQL: SELECT * FROM users LIMIT 5")
    env = _model_service(session).process_query("hello there", include_debug_info=True)
    assert env.strategy == "rule_based"
    assert env.generated_sql == pattern_matcher.SQL_RECENT_CAMPAIGNS
    assert "safety" in env.explanation
    assert env.debug_info["rejected_sql"] == "SELECT * FROM users LIMIT 5"
    assert "fallback_note" in env.parameters


def test_model_unavailable_adds_note():
    session = FakeSession(error=ModelNotFoundError("Model file not found: models/fake.gguf"))
    env = _model_service(session).process_query("hello there", include_debug_info=True)
    assert env.success is True
    assert "not installed" in env.explanation
    assert env.debug_info["fallback_reason"].startswith("ModelNotFoundError")


# ── Trigger-report path ──────────────────────────────────

def test_black_friday_last_month_report():
    reports = RecordingReports(rows=[{"strategy_name": "Black Friday 2026"}], total=1)
    result = _rule_service(report_query=reports).query_trigger_reports(
        "Find Black Friday campaigns from last month with more than 1000 emails"
    )

    assert isinstance(result, TriggerReportResult)
    f = reports.seen[0]
    assert f.strategy_name == "Black Friday"
    assert f.min_total_emails == 1000
    assert f.first_email_sent_from == datetime.date(2026, 9, 1)
    assert f.first_email_sent_to == datetime.date(2026, 9, 30)
    assert result.reports == [{"strategy_name": "Black Friday 2026"}]
    assert result.filter_extraction_successful is True
    assert result.total_pages == 1
    assert "Black Friday" in result.filter_summary


def test_request_paging_overrides():
    reports = RecordingReports(total=230)
    result = _rule_service(report_query=reports).query_trigger_reports(
        "campaigns, page 2", page_number=3, page_size=5000
    )
    assert result.applied_filters.page_number == 3
    assert result.applied_filters.page_size == 1000
    assert result.total_pages == 1


@pytest.mark.parametrize("page_number, page_size", [(0, -5), (-2, 0)])
def test_non_positive_paging_overrides_use_defaults(page_number, page_size):
    reports = RecordingReports(total=10)
    result = _rule_service(report_query=reports).query_trigger_reports(
        "show campaigns", page_number=page_number, page_size=page_size
    )
    seen = reports.seen[0]
    assert seen.page_number == 1
    assert seen.page_size == 50
    assert seen.offset == 0
    assert result.applied_filters == seen


def test_paging_overrides_keep_extracted_filters():
    reports = RecordingReports(total=10)
    result = _rule_service(report_query=reports).query_trigger_reports(
        "Find Black Friday campaigns with more than 1000 emails", page_size=10
    )
    assert result.applied_filters.strategy_name == "Black Friday"
    assert result.applied_filters.min_total_emails == 1000
    assert result.applied_filters.page_size == 10


def test_text_paging_kept_without_overrides():
    reports = RecordingReports(total=230)
    result = _rule_service(report_query=reports).query_trigger_reports("campaigns, page 2")
    assert result.applied_filters.page_number == 2
    assert result.applied_filters.page_size == 50
    assert result.total_pages == 5


def test_report_debug_info():
    result = _rule_service(report_query=RecordingReports()).query_trigger_reports(
        "campaigns sorted by totalemails desc", include_debug_info=True
    )
    assert result.debug_info["resolved_sort_column"] == "total_emails"
    assert result.debug_info["extraction_method"] == "rule_based"


def test_model_failure_warning_on_report():
    session = FakeSession(error=ModelNotFoundError("missing"))
    result = _model_service(session, report_query=RecordingReports()).query_trigger_reports("Spring Sale campaigns")
    assert result.filter_extraction_successful is True
    assert result.has_warnings
    assert result.applied_filters.strategy_name == "Spring Sale"


def test_status():
    status = _rule_service().status()
    assert status["strategy"] == "rule_based"
    assert status["model_enabled"] is False
    assert status["model"] is None
