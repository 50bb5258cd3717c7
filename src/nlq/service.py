"""
Natural-language query service -- orchestrates match -> model -> compose.

``process_query``:
  1. Reject empty input (EmptyQueryError, the only user-facing error)
  2. Pattern matcher (ordered rules, optional collaborator calls)
  3. Model SQL path, when the strategy is ``model`` and no rule fired;
     proposed SQL must pass the read-only safety checks
  4. Rule-based intent classifier, then the generic "recent campaigns" answer
  5. Response composer (intent, SQL/results, explanation, timing)

``query_trigger_reports``:
  1. Filter extraction (model or rules, see FilterExtractor)
  2. Request-level pagination overrides
  3. Filtered report query through the repository
  4. Result with applied filters, summary, warnings and optional debug info

Model failures never escape: they become a rule-based answer plus a note.
"""
from __future__ import annotations

import datetime
import time
from typing import Any, Callable

from src.core.config import get_settings
from src.core.errors import EmptyQueryError, MalformedResponseError, ModelUnavailableError
from src.core.logging import get_logger
from src.core.utils import elapsed_ms, json_safe_dict, timer, utc_now
from src.governance.catalog_loader import FilterCatalog, load_filter_catalog
from src.governance.sql_safety import check_sql_safety, enforce_limit
from src.nlq import pattern_matcher
from src.nlq.composer import compose
from src.nlq.explainer import explain_fallback, summarize_filters
from src.nlq.filter_extractor import FilterExtractor
from src.nlq.intent_classifier import classify
from src.nlq.llm_session import ModelSession
from src.nlq.models import ExtractionResult, Intent, QueryIntent, ResponseEnvelope, TriggerReportFilter
from src.nlq.sql_generator import SQL_STOP_SEQUENCES, build_sql_prompt, generate_sql, parse_sql_response
from src.nlq.strategy import ProcessingStrategy

logger = get_logger(__name__)

_SQL_MAX_TOKENS = 200
_SQL_TEMPERATURE = 0.2
_MODEL_CONFIDENCE = 0.8
_RULE_CONFIDENCE = 0.6
_GENERIC_CONFIDENCE = 0.3

ReportQuery = Callable[[TriggerReportFilter], tuple[list[dict[str, Any]], int]]


def _default_report_query(filters: TriggerReportFilter) -> tuple[list[dict[str, Any]], int]:
    from src.db.trigger_reports import get_reports_filtered

    return get_reports_filtered(filters)


class TriggerReportResult:
    def __init__(
        self,
        original_query: str,
        reports: list[dict[str, Any]],
        total_count: int,
        applied_filters: TriggerReportFilter,
        extraction: ExtractionResult,
        filter_summary: str,
        warnings: list[str],
        processing_time_ms: int = 0,
        debug_info: dict[str, Any] | None = None,
    ):
        self.original_query = original_query
        self.reports = reports
        self.total_count = total_count
        self.applied_filters = applied_filters
        self.extraction = extraction
        self.filter_summary = filter_summary
        self.warnings = warnings
        self.processing_time_ms = processing_time_ms
        self.debug_info = debug_info
        self.processed_at = utc_now()

    @property
    def filter_extraction_successful(self) -> bool:
        return self.extraction.success

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    @property
    def total_pages(self) -> int:
        size = self.applied_filters.page_size
        return (self.total_count + size - 1) // size if size else 0


class NaturalLanguageService:
    """Single entry point for both query paths; strategy is fixed at construction."""

    def __init__(
        self,
        strategy: ProcessingStrategy = ProcessingStrategy.RULE_BASED,
        session: ModelSession | None = None,
        collaborator: Any = None,
        report_query: ReportQuery | None = None,
        catalog: FilterCatalog | None = None,
        today: Callable[[], datetime.date] = datetime.date.today,
    ) -> None:
        if strategy is ProcessingStrategy.MODEL and session is None:
            raise ValueError("The 'model' strategy needs a ModelSession")
        self.strategy = strategy
        self.session = session
        self.collaborator = collaborator
        self._report_query = report_query or _default_report_query
        self._catalog = catalog
        self._today = today
        self.extractor = FilterExtractor(
            session=session,
            catalog=catalog,
            today=today,
            use_model=strategy is ProcessingStrategy.MODEL,
        )

    @property
    def catalog(self) -> FilterCatalog:
        if self._catalog is None:
            self._catalog = load_filter_catalog()
        return self._catalog

    @property
    def uses_model(self) -> bool:
        return self.strategy is ProcessingStrategy.MODEL

    # ── Intent / SQL path ────────────────────────────

    def classify(self, query: str) -> tuple[QueryIntent, list[str]]:
        """Rule-based intent for *query* plus warnings for dropped predicates."""
        _require_text(query)
        intent, dropped = classify(query, today=self._today())
        return intent, [str(d) for d in dropped]

    def process_query(
        self,
        query: str,
        context: str | None = None,
        include_debug_info: bool = False,
        execute: bool = False,
        use_collaborator: bool = True,
    ) -> ResponseEnvelope:
        """End-to-end: free text -> ResponseEnvelope.

        Parameters
        ----------
        query : str
            Natural-language question.
        context : str, optional
            Extra context appended to the model prompt.
        include_debug_info : bool
            Attach rule / model diagnostics to the envelope.
        execute : bool
            Run the chosen SQL read-only when no collaborator results exist.
        use_collaborator : bool
            If False, rules answer with SQL templates only.
        """
        _require_text(query)
        t0 = time.perf_counter()
        logger.info("NLQ.process | query=%s | strategy=%s", query[:80], self.strategy.value)

        debug: dict[str, Any] = {"strategy": self.strategy.value}
        notes: list[str] = []
        params: dict[str, Any] = {}
        sql_params: dict[str, Any] = {}
        confidence = _RULE_CONFIDENCE
        strategy_used = "rule_based"

        collaborator = self.collaborator if use_collaborator else None
        match = pattern_matcher.match(query, collaborator)
        payload: Any = None

        if match is not None:
            intent, explanation = match.intent, match.explanation
            params = dict(match.parameters)
            payload = match.results if match.results is not None else match.sql
            debug["rule"] = match.rule
            if match.results is not None:
                debug["sql_equivalent"] = match.sql
        else:
            model_answer = self._model_sql(query, context, debug, notes) if self.uses_model else None
            if model_answer is not None:
                intent, payload, explanation = model_answer
                params = {"processing_type": "model", "explanation": explanation}
                confidence = _MODEL_CONFIDENCE
                strategy_used = "model"
            else:
                qi, dropped = classify(query, today=self._today())
                if qi.filters:
                    payload, sql_params = generate_sql(qi, self.catalog)
                    intent = qi.intent
                    explanation = f"Rule-based {qi.intent.value} query ({qi.action})"
                    params = {
                        "processing_type": "intent_template",
                        "explanation": explanation,
                        "entities": dict(qi.entities),
                        "sql_parameters": json_safe_dict(sql_params),
                    }
                    debug["rule"] = "intent_classifier"
                    if dropped:
                        debug["dropped_predicates"] = [str(d) for d in dropped]
                else:
                    fb = pattern_matcher.generic_fallback(query)
                    intent, payload, explanation = fb.intent, fb.sql, fb.explanation
                    params = dict(fb.parameters)
                    confidence = _GENERIC_CONFIDENCE
                    debug["rule"] = fb.rule

        if notes:
            explanation = f"{explanation}. {' '.join(notes)}"
            params["fallback_note"] = notes[0]

        error: str | None = None
        success = True
        if execute and isinstance(payload, str) and payload:
            rows, error = self._execute(payload, sql_params)
            if error is None:
                debug["sql_equivalent"] = payload
                payload = rows
            else:
                success = False

        elapsed = elapsed_ms(t0)
        return compose(
            query,
            intent,
            payload,
            explanation,
            params,
            elapsed,
            success=success,
            error=error,
            debug_info=debug if include_debug_info else None,
            strategy=strategy_used,
            confidence=confidence,
        )

    def _model_sql(
        self,
        query: str,
        context: str | None,
        debug: dict[str, Any],
        notes: list[str],
    ) -> tuple[Intent, str, str] | None:
        """Ask the model for SQL; None (plus a note) when it cannot answer."""
        if self.session is None:
            return None
        try:
            raw = self.session.infer(
                build_sql_prompt(query, context),
                stop=SQL_STOP_SEQUENCES,
                max_tokens=_SQL_MAX_TOKENS,
                temperature=_SQL_TEMPERATURE,
                char_cap=self.session.options.max_tokens * 4,
            )
            debug["raw_llm_response"] = raw
            intent, sql, explanation = parse_sql_response(raw)
        except (ModelUnavailableError, MalformedResponseError) as exc:
            logger.warning("Model SQL path unavailable (%s) -- using rules", exc)
            debug["fallback_reason"] = f"{type(exc).__name__}: {exc}"
            notes.append(explain_fallback(type(exc).__name__))
            return None

        errors = check_sql_safety(sql, self.catalog)
        if errors:
            debug["fallback_reason"] = "; ".join(errors)
            debug["rejected_sql"] = sql
            notes.append(explain_fallback("safety"))
            return None
        return intent, enforce_limit(sql, self._row_limit()), explanation

    def _row_limit(self) -> int:
        return min(self.catalog.security.max_rows, get_settings().sql_row_limit)

    def _execute(self, sql: str, params: dict[str, Any]) -> tuple[list[dict[str, Any]], str | None]:
        from src.db.executor import execute_readonly

        errors = check_sql_safety(sql, self.catalog)
        if errors:
            return [], "; ".join(errors)
        try:
            return execute_readonly(enforce_limit(sql, self._row_limit()), params), None
        except Exception as exc:
            logger.exception("SQL execution failed")
            return [], f"Execution error: {exc}"

    # ── Trigger-report path ──────────────────────────

    def extract_filters(self, query: str, context: str | None = None) -> ExtractionResult:
        _require_text(query)
        return self.extractor.extract(query, context)

    def query_trigger_reports(
        self,
        query: str,
        context: str | None = None,
        page_number: int | None = None,
        page_size: int | None = None,
        include_debug_info: bool = False,
    ) -> TriggerReportResult:
        """Free text -> filtered trigger reports.

        Raises
        ------
        EmptyQueryError
            If *query* is blank.
        """
        _require_text(query)
        t0 = time.perf_counter()
        warnings: list[str] = []

        with timer() as t_extract:
            extraction = self.extractor.extract(query, context)

        if extraction.success:
            filters = extraction.filters
        else:
            filters = TriggerReportFilter()
            warnings.append(f"Filter extraction failed, showing unfiltered reports: {extraction.error}")
        warnings.extend(extraction.warnings)

        overrides: dict[str, int] = {}
        if page_number is not None:
            overrides["page_number"] = page_number
        if page_size is not None:
            overrides["page_size"] = min(page_size, get_settings().max_page_size)
        if overrides:
            filters = TriggerReportFilter.model_validate(
                {**filters.model_dump(exclude_unset=True), **overrides}
            )

        resolved_sort = self.catalog.resolve_sort(filters.sort_by)

        with timer() as t_query:
            rows, total = self._report_query(filters)

        elapsed = elapsed_ms(t0)
        logger.info("Trigger reports | query=%s | rows=%d/%d | %dms", query[:80], len(rows), total, elapsed)

        debug = None
        if include_debug_info:
            debug = {
                "raw_llm_response": extraction.raw_llm_response,
                "extraction_method": extraction.method,
                "extraction_time_ms": t_extract["elapsed_ms"],
                "query_time_ms": t_query["elapsed_ms"],
                "extracted_fields": extraction.extracted_parameters,
                "confidence": extraction.confidence,
                "resolved_sort_column": resolved_sort,
                "generated_parameters": json_safe_dict(filters.active_filters()),
                "model_state": self.session.state.value if self.session else None,
            }

        return TriggerReportResult(
            original_query=query,
            reports=rows,
            total_count=total,
            applied_filters=filters,
            extraction=extraction,
            filter_summary=summarize_filters(filters),
            warnings=warnings,
            processing_time_ms=elapsed,
            debug_info=debug,
        )

    # ── Status ───────────────────────────────────────

    def status(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "strategy": self.strategy.value,
            "model_enabled": self.uses_model,
            "collaborator_configured": self.collaborator is not None,
            "catalog_version": self.catalog.version,
        }
        info["model"] = self.session.model_info() if self.session else None
        return info


def _require_text(query: str) -> None:
    if not query or not query.strip():
        raise EmptyQueryError("Query text is empty; please enter a question")
