"""
FastAPI application entry-point.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.deps import ensure_service
from src.api.routers import catalog, query, trigger_reports
from src.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = ensure_service(app)
    yield
    if service.session is not None:
        service.session.close()
        logger.info("Model session released")


app = FastAPI(
    title="Email Campaign Query Service",
    version="0.1.0",
    description="Natural-language filters and SQL for email campaign reporting",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query.router, prefix="/nl", tags=["Natural language"])
app.include_router(trigger_reports.router, prefix="/trigger-reports", tags=["Trigger reports"])
app.include_router(catalog.router, tags=["Catalog"])


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    from src.core.config import get_settings

    uvicorn.run("src.api.main:app", host="0.0.0.0", port=get_settings().api_port)
