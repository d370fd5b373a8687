"""JIT compilation strategies.

Each strategy scores a pipeline and compiles an optimized equivalent.
Structural analysis works from the declared operator tree, the enhanced
strategy adds one traced execution, and the LLM strategy specializes in
pipelines built around stochastic model calls.
"""

from emberjit.jit.strategies.base import (
    AnalysisResult,
    FusionTarget,
    ParallelizationTarget,
    Strategy,
    StructuralProperties,
)
from emberjit.jit.strategies.enhanced import EnhancedStrategy
from emberjit.jit.strategies.llm import LLMStrategy
from emberjit.jit.strategies.structural import StructuralStrategy

__all__ = [
    # Protocol and analysis results
    "Strategy",
    "AnalysisResult",
    "StructuralProperties",
    "FusionTarget",
    "ParallelizationTarget",
    # Concrete strategies
    "StructuralStrategy",
    "EnhancedStrategy",
    "LLMStrategy",
]
