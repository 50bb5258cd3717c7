"""POST /nl/query, /nl/intent, /nl/sql -- GET /nl/status, /nl/examples."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field
from fastapi import APIRouter, Depends, HTTPException

from src.api.deps import get_service
from src.core.errors import EmptyQueryError
from src.core.logging import get_logger
from src.nlq.models import ResponseEnvelope
from src.nlq.service import NaturalLanguageService

logger = get_logger(__name__)
router = APIRouter()


class NLQueryRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=1000, description="Natural-language question")
    context: str | None = Field(None, max_length=2000, description="Extra context for the model prompt")
    include_debug_info: bool = Field(False, description="Attach rule / model diagnostics")
    execute: bool = Field(False, description="Run the chosen SQL read-only and return rows")


class PredicateItem(BaseModel):
    field: str
    operator: str
    value: Any


class IntentResponse(BaseModel):
    query: str
    intent: str
    action: str
    entities: dict[str, str]
    filters: list[PredicateItem]
    limit: int | None
    warnings: list[str]


EXAMPLE_QUERIES: dict[str, list[str]] = {
    "Campaigns": [
        "Show me recent campaigns",
        "Top performing campaigns",
        "Campaigns with high open rates",
        "Campaigns with clicks more than 1000",
        "Black Friday campaigns from last month",
    ],
    "Recipients": [
        "Top recipients",
        "Customers emailed in March",
        "Subscriber growth trend",
    ],
    "Events": [
        "Show bounced emails",
        "Email engagement this month",
        "Recent unsubscribes",
        "Delivered emails",
    ],
    "Metrics": [
        "Dashboard overview",
        "Email analytics report",
        "Compare campaign performance",
        "Deliverability and sender reputation",
    ],
}


@router.post("/query", response_model=ResponseEnvelope)
def query_endpoint(req: NLQueryRequest, service: NaturalLanguageService = Depends(get_service)):
    """Free text -> intent + SQL or collaborator results."""
    try:
        return service.process_query(
            req.query,
            context=req.context,
            include_debug_info=req.include_debug_info,
            execute=req.execute,
        )
    except EmptyQueryError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("NL query failed")
        raise HTTPException(status_code=500, detail=str(exc))


@router.post("/intent", response_model=IntentResponse)
def intent_endpoint(req: NLQueryRequest, service: NaturalLanguageService = Depends(get_service)):
    """Dry-run: rule-based intent, entities and validated predicates."""
    try:
        intent, warnings = service.classify(req.query)
    except EmptyQueryError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return IntentResponse(
        query=req.query,
        intent=intent.intent.value,
        action=intent.action,
        entities=intent.entities,
        filters=[
            PredicateItem(field=p.field, operator=p.operator.value, value=p.value)
            for p in intent.filters
        ],
        limit=intent.limit,
        warnings=warnings,
    )


@router.post("/sql", response_model=ResponseEnvelope)
def sql_endpoint(req: NLQueryRequest, service: NaturalLanguageService = Depends(get_service)):
    """Free text -> proposed SQL only (no collaborator calls, no execution)."""
    try:
        return service.process_query(
            req.query,
            context=req.context,
            include_debug_info=req.include_debug_info,
            use_collaborator=False,
        )
    except EmptyQueryError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("NL sql failed")
        raise HTTPException(status_code=500, detail=str(exc))


@router.get("/status")
def status_endpoint(service: NaturalLanguageService = Depends(get_service)) -> dict:
    """Strategy and model-session state."""
    return service.status()


@router.get("/examples")
def examples_endpoint() -> dict:
    return {"examples": EXAMPLE_QUERIES}
