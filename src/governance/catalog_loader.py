"""
Loads, parses, and caches the filter catalog YAML into typed objects.

The catalog is the single source of truth for:
  - which fields each intent may be filtered on (the predicate whitelist)
  - which trigger-report columns may be sorted on, and the default
  - which tables model-proposed SQL may touch
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from functools import lru_cache
from typing import Any

import yaml

_CATALOG_PATH = Path(__file__).resolve().parents[2] / "semantic_layer" / "filter_catalog.yml"


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class FieldDef:
    name: str
    column: str
    type: str  # string | number | date


@dataclass(frozen=True)
class EntityDef:
    name: str
    base_table: str
    fields: dict[str, FieldDef] = field(default_factory=dict)


@dataclass(frozen=True)
class SortRules:
    default: str
    columns: tuple[str, ...]
    aliases: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SecurityRules:
    blocked_schemas: list[str] = field(default_factory=list)
    max_rows: int = 1000


def _sort_key(name: str) -> str:
    return name.replace("_", "").replace(" ", "").lower()


@dataclass
class FilterCatalog:
    """Fully parsed filter catalog."""

    version: int
    entities: dict[str, EntityDef]
    sort: SortRules
    security: SecurityRules
    allowed_tables: set[str]

    def entity(self, name: str) -> EntityDef | None:
        return self.entities.get(name)

    def get_field(self, entity: str, name: str) -> FieldDef | None:
        ent = self.entities.get(entity)
        return ent.fields.get(name) if ent else None

    def get_field_names(self, entity: str) -> list[str]:
        ent = self.entities.get(entity)
        return list(ent.fields) if ent else []

    def resolve_sort(self, requested: str | None) -> str:
        """Map a requested sort field onto a whitelisted report column.

        Matching ignores case and underscores, so ``TotalEmails``,
        ``totalemails`` and ``total_emails`` all resolve the same way.
        Anything unrecognised resolves to the default column.
        """
        if not requested:
            return self.sort.default
        key = _sort_key(requested)
        for col in self.sort.columns:
            if _sort_key(col) == key:
                return col
        alias = self.sort.aliases.get(key)
        if alias in self.sort.columns:
            return alias
        return self.sort.default

    def is_sortable(self, requested: str) -> bool:
        key = _sort_key(requested)
        return any(_sort_key(c) == key for c in self.sort.columns) or key in self.sort.aliases


# ── Parsing ──────────────────────────────────────────────

def _parse_entity(name: str, raw: dict[str, Any]) -> EntityDef:
    fields = {
        fname: FieldDef(name=fname, column=fraw["column"], type=fraw.get("type", "string"))
        for fname, fraw in (raw.get("fields") or {}).items()
    }
    return EntityDef(name=name, base_table=raw["base_table"], fields=fields)


def _parse_sort(raw: dict[str, Any] | None) -> SortRules:
    raw = raw or {}
    columns = tuple(raw.get("columns") or ["strategy_name"])
    default = raw.get("default") or columns[0]
    aliases = {_sort_key(k): v for k, v in (raw.get("aliases") or {}).items()}
    return SortRules(default=default, columns=columns, aliases=aliases)


def _parse_security(raw: dict[str, Any] | None) -> SecurityRules:
    if not raw:
        return SecurityRules()
    return SecurityRules(
        blocked_schemas=[s.lower() for s in raw.get("blocked_schemas", [])],
        max_rows=raw.get("max_rows", 1000),
    )


def _parse_catalog(raw_yaml: dict[str, Any]) -> FilterCatalog:
    entities = {
        name: _parse_entity(name, raw)
        for name, raw in (raw_yaml.get("entities") or {}).items()
    }
    return FilterCatalog(
        version=raw_yaml.get("version", 1),
        entities=entities,
        sort=_parse_sort(raw_yaml.get("report_sort")),
        security=_parse_security(raw_yaml.get("security")),
        allowed_tables={t.lower() for t in raw_yaml.get("allowed_tables", [])},
    )


# ── Public API ───────────────────────────────────────────

@lru_cache
def load_filter_catalog() -> FilterCatalog:
    """Load and cache the filter catalog from YAML."""
    with open(_CATALOG_PATH) as f:
        raw = yaml.safe_load(f)
    return _parse_catalog(raw)
