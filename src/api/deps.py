"""
Request dependencies -- hand the process-wide service to route handlers.

The service (and its model session) is built once by the app lifespan and
stored on ``app.state``; tests replace ``get_service`` through
``app.dependency_overrides``.
"""
from __future__ import annotations

import threading
from typing import Generator

from fastapi import FastAPI, Request

from src.core.config import Settings, get_settings
from src.core.logging import get_logger
from src.db.campaign_queries import CampaignQueryService
from src.nlq.llm_session import build_session
from src.nlq.service import NaturalLanguageService
from src.nlq.strategy import ProcessingStrategy, select_strategy

logger = get_logger(__name__)

_build_lock = threading.Lock()


def build_service(settings: Settings | None = None) -> NaturalLanguageService:
    """Create the service for the configured strategy (model not loaded yet)."""
    settings = settings or get_settings()
    strategy = select_strategy(settings)
    session = build_session(settings) if strategy is ProcessingStrategy.MODEL else None
    logger.info("Building query service  strategy=%s", strategy.value)
    return NaturalLanguageService(
        strategy=strategy,
        session=session,
        collaborator=CampaignQueryService(),
    )


def ensure_service(app: FastAPI) -> NaturalLanguageService:
    service = getattr(app.state, "service", None)
    if service is None:
        with _build_lock:
            service = getattr(app.state, "service", None)
            if service is None:
                service = build_service()
                app.state.service = service
    return service


def get_service(request: Request) -> Generator[NaturalLanguageService, None, None]:
    service = ensure_service(request.app)
    if service.session is None:
        yield service
        return
    with service.session.lease():
        yield service
