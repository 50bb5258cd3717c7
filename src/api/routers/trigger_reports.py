"""POST /trigger-reports/query, /trigger-reports/extract -- NL filtered reports."""
from __future__ import annotations

import datetime
from typing import Any

from pydantic import BaseModel, Field
from fastapi import APIRouter, Depends, HTTPException

from src.api.deps import get_service
from src.core.errors import EmptyQueryError
from src.core.logging import get_logger
from src.nlq.models import ExtractionResult, TriggerReportFilter
from src.nlq.service import NaturalLanguageService

logger = get_logger(__name__)
router = APIRouter()


class TriggerReportRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=1000, description="Natural-language report question")
    context: str | None = Field(None, max_length=2000)
    page_number: int | None = Field(None, ge=1, description="Overrides the page found in the text")
    page_size: int | None = Field(None, ge=1, le=1000, description="Overrides the page size found in the text")
    include_debug_info: bool = False


class ExtractRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=1000)
    context: str | None = Field(None, max_length=2000)


class TriggerReportResponse(BaseModel):
    original_query: str
    results: list[dict[str, Any]]
    total_count: int
    page_number: int
    page_size: int
    total_pages: int
    applied_filters: TriggerReportFilter
    filter_summary: str
    filter_extraction_successful: bool
    extraction_method: str
    processing_time_ms: int
    processed_at: datetime.datetime
    has_warnings: bool
    warnings: list[str]
    debug_info: dict[str, Any] | None = None


@router.post("/query", response_model=TriggerReportResponse)
def trigger_report_query(req: TriggerReportRequest, service: NaturalLanguageService = Depends(get_service)):
    """Free text -> extracted filters -> paged trigger reports."""
    try:
        result = service.query_trigger_reports(
            req.query,
            context=req.context,
            page_number=req.page_number,
            page_size=req.page_size,
            include_debug_info=req.include_debug_info,
        )
    except EmptyQueryError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("Trigger report query failed")
        raise HTTPException(status_code=500, detail=str(exc))

    return TriggerReportResponse(
        original_query=result.original_query,
        results=result.reports,
        total_count=result.total_count,
        page_number=result.applied_filters.page_number,
        page_size=result.applied_filters.page_size,
        total_pages=result.total_pages,
        applied_filters=result.applied_filters,
        filter_summary=result.filter_summary,
        filter_extraction_successful=result.filter_extraction_successful,
        extraction_method=result.extraction.method,
        processing_time_ms=result.processing_time_ms,
        processed_at=result.processed_at,
        has_warnings=result.has_warnings,
        warnings=result.warnings,
        debug_info=result.debug_info,
    )


@router.post("/extract", response_model=ExtractionResult)
def extract_filters(req: ExtractRequest, service: NaturalLanguageService = Depends(get_service)):
    """Dry-run: show the filters a question would produce, without querying."""
    try:
        return service.extract_filters(req.query, context=req.context)
    except EmptyQueryError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
