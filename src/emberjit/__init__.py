"""emberjit: adaptive just-in-time optimization for operator pipelines.

Pipelines are trees of operators (or plain ``function(*, inputs)``
callables) over a keyed context. :func:`jit` analyzes a pipeline, picks an
optimization strategy and returns an equivalent callable that fuses
dependent map chains, runs independent units concurrently and caches
deterministic work while leaving stochastic model calls untouched.

Example:
    >>> from emberjit import MapOperator, SequenceOperator, jit
    >>> pipeline = SequenceOperator([
    ...     MapOperator(lambda x: x * 2, "value", "value"),
    ...     MapOperator(lambda x: x + 10, "value", "value"),
    ... ])
    >>> jit(pipeline)(inputs={"value": 5})
    {'value': 20}
"""

from emberjit.config import Config, Presets
from emberjit.errors import (
    CacheError,
    CompilationError,
    DanglingEdgeError,
    GraphCycleError,
    TraceError,
    UnsupportedTargetError,
    XCSError,
)
from emberjit.graph import (
    EnhancedGraphBuilder,
    ExecutionGraph,
    StructuralGraphBuilder,
    TraceGraphBuilder,
)
from emberjit.jit import (
    CachedOperator,
    JITMode,
    JITOptions,
    LLMDetector,
    PartialCache,
    explain_jit_selection,
    get_cache,
    get_jit_stats,
    jit,
    register_strategy,
)
from emberjit.operators import (
    BranchOperator,
    FunctionOperator,
    FusedOperator,
    LLMOperator,
    MapOperator,
    Operator,
    ParallelOperator,
    SequenceOperator,
)

__version__ = "0.1.0"

__all__ = [
    # JIT entry points
    "jit",
    "JITMode",
    "JITOptions",
    "explain_jit_selection",
    "get_jit_stats",
    "register_strategy",
    # Configuration
    "Config",
    "Presets",
    # Operators
    "Operator",
    "MapOperator",
    "FunctionOperator",
    "SequenceOperator",
    "ParallelOperator",
    "BranchOperator",
    "LLMOperator",
    "FusedOperator",
    "CachedOperator",
    # Graphs
    "ExecutionGraph",
    "StructuralGraphBuilder",
    "TraceGraphBuilder",
    "EnhancedGraphBuilder",
    # Caching and detection
    "PartialCache",
    "get_cache",
    "LLMDetector",
    # Errors
    "XCSError",
    "GraphCycleError",
    "DanglingEdgeError",
    "UnsupportedTargetError",
    "TraceError",
    "CompilationError",
    "CacheError",
]
