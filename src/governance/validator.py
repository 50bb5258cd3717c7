"""
Validates filter predicates against the filter catalog.

Checks performed, per predicate:
  1. The intent has an entry in the catalog
  2. The field is whitelisted for that intent
  3. The value matches the field type (string / number / date)
  4. ``contains`` is only used on string fields
  5. ``between`` carries an ordered (low, high) pair

Failing predicates are dropped and reported as ``UnknownFilterField``
warnings; validation never raises.
"""
from __future__ import annotations

import datetime
from typing import Any

from src.core.errors import UnknownFilterField
from src.core.logging import get_logger
from src.governance.catalog_loader import FilterCatalog, FieldDef, load_filter_catalog
from src.nlq.models import FilterPredicate, Operator

logger = get_logger(__name__)


def _value_matches(fdef: FieldDef, value: Any) -> bool:
    if fdef.type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if fdef.type == "date":
        if isinstance(value, datetime.date):
            return True
        if isinstance(value, str):
            try:
                datetime.date.fromisoformat(value[:10])
            except ValueError:
                return False
            return True
        return False
    return isinstance(value, str) and value != ""


def _check_predicate(fdef: FieldDef, pred: FilterPredicate) -> str | None:
    """Return a reason string if *pred* is unusable, else None."""
    if pred.operator == Operator.CONTAINS and fdef.type != "string":
        return f"'contains' is not valid for {fdef.type} field"
    if pred.operator == Operator.BETWEEN:
        low, high = pred.value
        if not (_value_matches(fdef, low) and _value_matches(fdef, high)):
            return f"range values do not match type {fdef.type}"
        if fdef.type == "date":
            low, high = str(low)[:10], str(high)[:10]
        if low > high:
            return "range low bound exceeds high bound"
        return None
    if not _value_matches(fdef, pred.value):
        return f"value does not match type {fdef.type}"
    return None


def validate_predicates(
    entity: str,
    predicates: list[FilterPredicate] | tuple[FilterPredicate, ...],
    catalog: FilterCatalog | None = None,
) -> tuple[list[FilterPredicate], list[UnknownFilterField]]:
    """Split *predicates* into (kept, dropped-with-reason).

    Parameters
    ----------
    entity : str
        Intent tag the predicates will be applied to.
    predicates : sequence of FilterPredicate
    catalog : FilterCatalog, optional
        If None, loads the default catalog from disk.
    """
    if catalog is None:
        catalog = load_filter_catalog()

    kept: list[FilterPredicate] = []
    dropped: list[UnknownFilterField] = []

    ent = catalog.entity(entity)
    for pred in predicates:
        if ent is None:
            dropped.append(UnknownFilterField(pred.field, pred.value, f"unknown entity '{entity}'"))
            continue
        fdef = ent.fields.get(pred.field)
        if fdef is None:
            dropped.append(UnknownFilterField(
                pred.field, pred.value,
                f"not filterable for {entity}; allowed: {', '.join(ent.fields)}",
            ))
            continue
        reason = _check_predicate(fdef, pred)
        if reason:
            dropped.append(UnknownFilterField(pred.field, pred.value, reason))
            continue
        kept.append(pred)

    for w in dropped:
        logger.warning("Dropping predicate on %s: %s", entity, w)
    return kept, dropped
