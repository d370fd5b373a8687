"""Operator building blocks for emberjit pipelines."""

from emberjit.operators.base import KeySet, Operator, union_keys
from emberjit.operators.basic import (
    BranchOperator,
    FunctionOperator,
    FusedOperator,
    MapOperator,
    ParallelOperator,
    SequenceOperator,
)
from emberjit.operators.llm import LLMOperator, template_fields

__all__ = [
    "BranchOperator",
    "FunctionOperator",
    "FusedOperator",
    "KeySet",
    "LLMOperator",
    "MapOperator",
    "Operator",
    "ParallelOperator",
    "SequenceOperator",
    "template_fields",
    "union_keys",
]
