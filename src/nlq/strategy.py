"""
Processing strategy -- chosen once at startup from configuration.

    rule_based  pattern matcher + rule extractors only; the model is never loaded
    model       model first; rule path answers whenever the model cannot
"""
from __future__ import annotations

from enum import Enum

from src.core.config import Settings, get_settings


class ProcessingStrategy(str, Enum):
    RULE_BASED = "rule_based"
    MODEL = "model"

    @classmethod
    def from_config(cls, value: str) -> "ProcessingStrategy":
        key = (value or "").strip().lower().replace("-", "_")
        try:
            return cls(key)
        except ValueError:
            raise ValueError(
                f"Unknown llm_strategy '{value}'.  "
                f"Choose from: {', '.join(s.value for s in cls)}"
            ) from None


def select_strategy(settings: Settings | None = None) -> ProcessingStrategy:
    return ProcessingStrategy.from_config((settings or get_settings()).llm_strategy)
