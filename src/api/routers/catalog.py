"""
GET /catalog, GET /catalog/filters -- metadata endpoints.
"""
from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from src.governance.catalog_loader import load_filter_catalog
from src.nlq.models import filter_field_whitelist

router = APIRouter()


class FieldItem(BaseModel):
    name: str
    column: str
    type: str


class CatalogResponse(BaseModel):
    entities: dict[str, list[FieldItem]]
    sort_fields: list[str]
    default_sort: str
    allowed_tables: list[str]
    max_rows: int


@router.get("/catalog", response_model=CatalogResponse)
def full_catalog() -> CatalogResponse:
    """Return per-intent filter whitelists and the report sort whitelist."""
    catalog = load_filter_catalog()
    return CatalogResponse(
        entities={
            name: [FieldItem(name=f.name, column=f.column, type=f.type) for f in ent.fields.values()]
            for name, ent in catalog.entities.items()
        },
        sort_fields=list(catalog.sort.columns),
        default_sort=catalog.sort.default,
        allowed_tables=sorted(catalog.allowed_tables),
        max_rows=catalog.security.max_rows,
    )


@router.get("/catalog/filters")
def list_report_filters() -> dict:
    """Return the field names accepted by the trigger-report filter set."""
    return {"filters": list(filter_field_whitelist())}
