"""Just-in-time optimization of operator pipelines."""

from emberjit.jit.cache import (
    CachedOperator,
    CacheStats,
    CachingStrategy,
    PartialCache,
    analyze_cacheability,
    determine_caching_strategy,
    get_cache,
)
from emberjit.jit.core import (
    JITFunction,
    StrategySelector,
    explain_jit_selection,
    get_jit_stats,
    jit,
    register_strategy,
)
from emberjit.jit.llm_detector import LLMDetector, NodeRole
from emberjit.jit.modes import JITMode
from emberjit.jit.options import JITOptions

__all__ = [
    "CacheStats",
    "CachedOperator",
    "CachingStrategy",
    "JITFunction",
    "JITMode",
    "JITOptions",
    "LLMDetector",
    "NodeRole",
    "PartialCache",
    "StrategySelector",
    "analyze_cacheability",
    "determine_caching_strategy",
    "explain_jit_selection",
    "get_cache",
    "get_jit_stats",
    "jit",
    "register_strategy",
]
