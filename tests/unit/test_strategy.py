"""
Unit tests -- processing strategy selection.
"""
import pytest

from src.core.config import Settings
from src.nlq.strategy import ProcessingStrategy, select_strategy


@pytest.mark.parametrize("value, expected", [
    ("rule_based", ProcessingStrategy.RULE_BASED),
    ("Rule-Based", ProcessingStrategy.RULE_BASED),
    (" model ", ProcessingStrategy.MODEL),
])
def test_from_config(value, expected):
    assert ProcessingStrategy.from_config(value) is expected


def test_unknown_strategy_raises():
    with pytest.raises(ValueError, match="Unknown llm_strategy"):
        ProcessingStrategy.from_config("openai")


def test_select_strategy_reads_settings():
    assert select_strategy(Settings(llm_strategy="model")) is ProcessingStrategy.MODEL
    assert select_strategy(Settings()) is ProcessingStrategy.RULE_BASED
