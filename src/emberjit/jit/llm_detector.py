"""Detection of stochastic model calls inside pipelines.

Detection is deliberately conservative. Missing a stochastic unit would let
the optimizer cache or deduplicate a call whose result must vary, while a
false positive only forgoes an optimization. Explicit declarations always
win; heuristics only apply to units that make no claim about themselves.
"""

from __future__ import annotations

import enum
import inspect
import logging
import re
from typing import Any, Iterator

from emberjit.graph.execution_graph import LlmCallKind, Node
from emberjit.operators.base import Operator
from emberjit.operators.basic import FusedOperator, MapOperator
from emberjit.operators.llm import LLMOperator

logger = logging.getLogger(__name__)

LLM_NAME_PATTERN = re.compile(
    r"llm|language_?model|completion|chat|anthropic|openai|claude|gpt|llama|gemini"
    r"|huggingface|embedding|tokeniz",
    re.IGNORECASE,
)
PROMPT_NAME_PATTERN = re.compile(r"prompt|template|format_|prepare_", re.IGNORECASE)
RESULT_NAME_PATTERN = re.compile(r"parse|extract|process_response|handle_result|validat", re.IGNORECASE)
LLM_ATTRIBUTES = ("model", "prompt", "prompt_template", "temperature", "max_tokens")


class NodeRole(enum.Enum):
    """Role of a unit relative to model calls."""

    LLM_CALL = "llm_call"
    PROMPT_PREPARATION = "prompt_preparation"
    RESULT_PROCESSING = "result_processing"
    UNRELATED = "unrelated"


def _name_of(target: Any) -> str:
    parts = [] if inspect.isroutine(target) else [type(target).__name__]
    for attribute in ("name", "__name__"):
        value = getattr(target, attribute, None)
        if isinstance(value, str):
            parts.append(value)
    return " ".join(parts)


class LLMDetector:
    """Classify units as stochastic model calls or deterministic computation."""

    def is_stochastic(self, target: Any) -> bool:
        """Return ``True`` unless ``target`` is known to be deterministic."""
        if isinstance(target, Node):
            if target.preserve_stochasticity or isinstance(target.kind, LlmCallKind):
                return True
            target = target.target

        declared = getattr(target, "stochastic", None)
        if declared is not None:
            return bool(declared)
        if isinstance(target, LLMOperator):
            return True
        if isinstance(target, Operator):
            if target.composite:
                return any(self.is_stochastic(child) for child in target.children())
            if isinstance(target, MapOperator):
                return self._function_is_stochastic(target.function)
            if isinstance(target, FusedOperator):
                return False
            if any(getattr(target, attribute, None) is not None for attribute in LLM_ATTRIBUTES):
                return True
            # Operators that make no claim about themselves are treated as stochastic.
            logger.debug("Treating undeclared operator %s as stochastic", _name_of(target))
            return True
        if callable(target):
            return self._function_is_stochastic(target)
        return True

    def contains_stochastic(self, pipeline: Any) -> bool:
        """Return ``True`` if any leaf of ``pipeline`` is stochastic."""
        return any(self.is_stochastic(leaf) for leaf in iter_leaves(pipeline))

    def classify_role(self, target: Any) -> NodeRole:
        """Classify ``target`` by its role around model calls."""
        if self.is_stochastic(target):
            return NodeRole.LLM_CALL
        unit = target.target if isinstance(target, Node) else target
        name = _name_of(unit)
        function = getattr(unit, "function", None)
        if function is not None:
            name = f"{name} {_name_of(function)}"
        if PROMPT_NAME_PATTERN.search(name):
            return NodeRole.PROMPT_PREPARATION
        if RESULT_NAME_PATTERN.search(name):
            return NodeRole.RESULT_PROCESSING
        return NodeRole.UNRELATED

    def llm_score(self, pipeline: Any) -> int:
        """Score from 0 to 100 for how much ``pipeline`` revolves around model calls."""
        leaves = list(iter_leaves(pipeline))
        if not leaves:
            return 0
        stochastic = sum(1 for leaf in leaves if self.is_stochastic(leaf))
        if not stochastic:
            return 0
        roles = {self.classify_role(leaf) for leaf in leaves}
        score = 60 + min(20, stochastic * 10)
        if NodeRole.PROMPT_PREPARATION in roles:
            score += 10
        if NodeRole.RESULT_PROCESSING in roles:
            score += 10
        return min(100, score)

    @staticmethod
    def _function_is_stochastic(function: Any) -> bool:
        declared = getattr(function, "stochastic", None)
        if declared is not None:
            return bool(declared)
        target = inspect.unwrap(function) if callable(function) else function
        return bool(LLM_NAME_PATTERN.search(_name_of(target)))


def iter_leaves(pipeline: Any) -> Iterator[Any]:
    """Yield the leaf units of an operator tree in declaration order."""
    if isinstance(pipeline, Operator) and pipeline.composite:
        for child in pipeline.children():
            yield from iter_leaves(child)
    else:
        yield pipeline


__all__ = ["LLMDetector", "NodeRole", "iter_leaves"]
