"""Tests for JIT options and modes."""

import pytest
from pydantic import ValidationError

from emberjit.jit.modes import JITMode
from emberjit.jit.options import JITOptions


def test_defaults() -> None:
    options = JITOptions()

    assert options.mode is JITMode.AUTO
    assert options.batch_size == 5
    assert options.score_threshold == 25
    assert options.preserve_stochasticity
    assert not options.batch_requests


@pytest.mark.parametrize("mode", ["llm", "LLM", " llm ", JITMode.LLM])
def test_mode_is_normalized(mode) -> None:
    assert JITOptions(mode=mode).mode is JITMode.LLM


def test_custom_mode_names_are_kept() -> None:
    assert JITOptions(mode="Custom").mode == "custom"


@pytest.mark.parametrize(
    "overrides",
    [
        {"batch_size": 0},
        {"score_threshold": 101},
        {"min_fusion_length": 1},
        {"unknown": True},
        {"strategy_kwargs": {"batch_size": 3}},
    ],
)
def test_invalid_options_are_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        JITOptions(**overrides)


def test_options_are_immutable() -> None:
    options = JITOptions()
    with pytest.raises(ValidationError):
        options.batch_size = 10
