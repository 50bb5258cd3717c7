"""
Error taxonomy for the natural-language query core.

Only ``EmptyQueryError`` is meant to reach API callers.  Everything raised by
the model session is caught by the extractor / service and replaced by the
rule-based path.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class NLQueryError(Exception):
    """Base class for query-core errors."""


class EmptyQueryError(NLQueryError):
    """The query text is empty or whitespace only."""

    def __init__(self, message: str = "Query text is empty") -> None:
        super().__init__(message)


class ModelUnavailableError(NLQueryError):
    """The local model cannot serve requests."""


class ModelNotFoundError(ModelUnavailableError):
    """The configured model file does not exist."""


class ModelLoadError(ModelUnavailableError):
    """Loading the model raised, or the file failed compatibility checks."""


class ModelTimeoutError(ModelUnavailableError):
    """Loading the model exceeded the configured time budget."""


class MalformedResponseError(NLQueryError):
    """Model output did not contain a usable JSON object or SQL statement."""

    def __init__(self, message: str, raw_response: str | None = None) -> None:
        super().__init__(message)
        self.raw_response = raw_response


@dataclass(frozen=True)
class UnknownFilterField:
    """Warning record for a filter key or value that was dropped."""

    field: str
    value: Any
    reason: str

    def __str__(self) -> str:
        return f"Ignored filter '{self.field}' ({self.reason})"
