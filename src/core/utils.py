"""
Small shared helpers: wall-clock timing and JSON-safe value conversion.
"""
from __future__ import annotations

import datetime
import decimal
import time
from contextlib import contextmanager
from typing import Any, Generator, Mapping


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Record elapsed wall-clock milliseconds under ``result["elapsed_ms"]``."""
    start = time.perf_counter()
    result: dict = {"started": start}
    try:
        yield result
    finally:
        result["elapsed_ms"] = elapsed_ms(start)


def elapsed_ms(start: float) -> int:
    return max(0, int((time.perf_counter() - start) * 1000))


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def json_safe(val: Any) -> Any:
    """Convert DB and filter values (Decimal, dates, intervals) to JSON-safe types."""
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (datetime.date, datetime.datetime)):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return str(val)
    return val


def json_safe_dict(values: Mapping[str, Any]) -> dict[str, Any]:
    return {k: json_safe(v) for k, v in values.items()}
