"""Shared fixtures for emberjit tests."""

from __future__ import annotations

import itertools
import threading
from typing import Any, Callable, List

import pytest

from emberjit.operators import LLMOperator, MapOperator, SequenceOperator


class FakeModel:
    """Stand-in model client that counts calls and never repeats an answer."""

    def __init__(self) -> None:
        self.prompts: List[str] = []
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def __call__(self, prompt: str, **_: Any) -> str:
        with self._lock:
            self.prompts.append(prompt)
            return f"answer-{next(self._counter)}:{prompt}"

    @property
    def calls(self) -> int:
        return len(self.prompts)


@pytest.fixture()
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture()
def arithmetic_pipeline() -> SequenceOperator:
    """``value * 2 + 10`` as two dependent map operators."""
    return SequenceOperator(
        [
            MapOperator(lambda x: x * 2, "value", "value", name="double"),
            MapOperator(lambda x: x + 10, "value", "value", name="add_ten"),
        ]
    )


@pytest.fixture()
def qa_pipeline(fake_model: FakeModel) -> Callable[..., SequenceOperator]:
    """Factory for a prompt -> model -> parse pipeline around ``fake_model``."""

    def build() -> SequenceOperator:
        return SequenceOperator(
            [
                MapOperator(str.strip, "question", "question", name="prepare_question"),
                LLMOperator(fake_model, "Q: {question}", output_key="raw", model="fake"),
                MapOperator(lambda raw: raw.split(":", 1)[0], "raw", "answer", name="parse_answer"),
            ]
        )

    return build
