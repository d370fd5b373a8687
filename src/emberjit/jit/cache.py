"""Signature-keyed result caching for deterministic computations.

Entries are addressed by ``(key, signature)``: ``key`` identifies the
computation (a node, an operator, a jitted function) and ``signature`` is
derived from the inputs. By default the signature covers the full input value;
a caller-supplied key function can sign a subset of fields instead so that
inputs differing only in irrelevant fields share an entry.

The cache is an optimization only. Failing to derive a signature or to store a
value is logged and treated as a miss; the computation always runs.
Values are copied on the way in and on the way out, so callers may mutate what
they get back without touching later hits.
"""

from __future__ import annotations

import copy
import enum
import logging
import threading
import time
import uuid
import weakref
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple

from emberjit.config import DEFAULT_CACHE_CAPACITY
from emberjit.errors import XCSError
from emberjit.fingerprint import fields_key, signature, signature_key, structure_key
from emberjit.jit.llm_detector import LLMDetector, iter_leaves
from emberjit.operators.base import KeySet, Operator

logger = logging.getLogger(__name__)

KeyFunction = Callable[[Any], Hashable]


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A stored result."""

    signature: Hashable
    value: Any
    created_at: float


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Read-only snapshot of cache activity."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def total_calls(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return self.hits / self.total_calls if self.total_calls else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "total_calls": self.total_calls,
            "errors": self.errors,
            "evictions": self.evictions,
            "size": self.size,
        }


class PartialCache:
    """Thread-safe LRU cache keyed by computation and input signature.

    Concurrent misses for the same entry may both compute; the last store wins.

    Args:
        capacity: Maximum number of entries; ``None`` disables eviction.
    """

    def __init__(self, capacity: Optional[int] = DEFAULT_CACHE_CAPACITY) -> None:
        if capacity is not None and capacity <= 0:
            raise XCSError("capacity must be a positive integer when provided")
        self.capacity = capacity
        self._entries: "OrderedDict[Tuple[Hashable, Hashable], CacheEntry]" = OrderedDict()
        self._counters: Dict[Hashable, Dict[str, int]] = {}
        self._evictions = 0
        self._lock = threading.Lock()

    def execute_cached(
        self,
        key: Hashable,
        inputs: Any,
        compute_fn: Callable[[Any], Any],
        key_fn: Optional[KeyFunction] = None,
    ) -> Any:
        """Return the cached result for ``inputs`` or compute and store it.

        Args:
            key: Identity of the computation.
            inputs: Value passed to ``compute_fn``.
            compute_fn: Pure function computing the result from ``inputs``.
            key_fn: Optional signature function; defaults to a digest of the
                full input value.

        Returns:
            The stored or freshly computed result. Exceptions from
            ``compute_fn`` propagate unchanged and nothing is stored.
        """
        try:
            entry_key = (key, (key_fn or signature)(inputs))
            hash(entry_key)
        except Exception as exc:
            logger.warning("Cannot derive cache signature for %r (%s); computing uncached", key, exc)
            self._count(key, "errors", "misses")
            return compute_fn(inputs)

        with self._lock:
            entry = self._entries.get(entry_key)
            if entry is not None:
                self._entries.move_to_end(entry_key)
                self._bump(key, "hits")
        if entry is not None:
            logger.debug("Cache hit for %r", key)
            return copy.deepcopy(entry.value)

        result = compute_fn(inputs)
        try:
            self._store(entry_key, result)
        except Exception as exc:
            logger.warning("Failed to store cache entry for %r: %s", key, exc)
            self._count(key, "errors")
        self._count(key, "misses")
        logger.debug("Cache miss for %r", key)
        return result

    def get(self, key: Hashable, signature_value: Hashable) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get((key, signature_value))

    def put(self, key: Hashable, signature_value: Hashable, value: Any) -> None:
        self._store((key, signature_value), value)

    def stats(self, key: Optional[Hashable] = None) -> CacheStats:
        """Return aggregate statistics, or those of a single ``key``."""
        with self._lock:
            if key is not None:
                counters = self._counters.get(key, {})
                size = sum(1 for entry_key in self._entries if entry_key[0] == key)
                return CacheStats(
                    hits=counters.get("hits", 0),
                    misses=counters.get("misses", 0),
                    errors=counters.get("errors", 0),
                    size=size,
                )
            totals: Dict[str, int] = {"hits": 0, "misses": 0, "errors": 0}
            for counters in self._counters.values():
                for name in totals:
                    totals[name] += counters.get(name, 0)
            return CacheStats(evictions=self._evictions, size=len(self._entries), **totals)

    def get_metrics(self, key: Optional[Hashable] = None) -> Dict[str, Any]:
        return self.stats(key).as_dict()

    def clear(self) -> None:
        """Remove every entry and reset all statistics."""
        with self._lock:
            self._entries.clear()
            self._counters.clear()
            self._evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _store(self, entry_key: Tuple[Hashable, Hashable], value: Any) -> None:
        entry = CacheEntry(entry_key[1], copy.deepcopy(value), time.time())
        with self._lock:
            self._entries[entry_key] = entry
            self._entries.move_to_end(entry_key)
            while self.capacity is not None and len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
                self._evictions += 1

    def _count(self, key: Hashable, *names: str) -> None:
        with self._lock:
            for name in names:
                self._bump(key, name)

    def _bump(self, key: Hashable, name: str) -> None:
        counters = self._counters.setdefault(key, {})
        counters[name] = counters.get(name, 0) + 1


_DEFAULT_CACHE = PartialCache()


def get_cache() -> PartialCache:
    """Return the process-wide default cache."""
    return _DEFAULT_CACHE


class CachingStrategy(enum.Enum):
    """How results of a unit may be cached."""

    FULL = "full"
    PROMPT_ONLY = "prompt_only"
    SIGNATURE_BASED = "signature_based"
    NONE = "none"


_KEY_FUNCTIONS: Mapping[CachingStrategy, Optional[KeyFunction]] = {
    CachingStrategy.FULL: signature,
    CachingStrategy.PROMPT_ONLY: structure_key,
    CachingStrategy.SIGNATURE_BASED: signature_key,
    CachingStrategy.NONE: None,
}


@dataclass(frozen=True, slots=True)
class CacheabilityReport:
    """Result of :func:`analyze_cacheability`."""

    cacheable: bool
    partially_cacheable: bool
    deterministic: bool
    llm_operation: bool


@dataclass(frozen=True, slots=True)
class CachingPlan:
    """Recommended caching strategy and the key function implementing it."""

    strategy: CachingStrategy
    key_function: Optional[KeyFunction]


def analyze_cacheability(target: Any, detector: Optional[LLMDetector] = None) -> CacheabilityReport:
    """Report whether results of ``target`` can be reused across calls.

    Stochastic units are never cacheable. Deterministic composites whose
    leaves are partly stochastic are partially cacheable: their deterministic
    leaves can be cached individually.
    """
    detector = detector or LLMDetector()
    stochastic = detector.is_stochastic(target)
    partial = bool(
        stochastic
        and isinstance(target, Operator)
        and target.composite
        and not all(detector.is_stochastic(leaf) for leaf in iter_leaves(target))
    )
    return CacheabilityReport(
        cacheable=not stochastic,
        partially_cacheable=partial,
        deterministic=not stochastic,
        llm_operation=stochastic,
    )


def determine_caching_strategy(
    target: Any,
    analysis: Optional[CacheabilityReport] = None,
    *,
    prefer: Optional[CachingStrategy] = None,
    detector: Optional[LLMDetector] = None,
) -> CachingPlan:
    """Choose how ``target`` should be cached.

    Stochastic units always get :attr:`CachingStrategy.NONE`. Deterministic
    units default to :attr:`CachingStrategy.FULL`; the lossy keyed strategies
    are only used when requested through ``prefer``, since inputs sharing a
    lossy key must be interchangeable for the caller.
    """
    analysis = analysis or analyze_cacheability(target, detector)
    if not analysis.cacheable:
        return CachingPlan(CachingStrategy.NONE, None)
    strategy = prefer or CachingStrategy.FULL
    return CachingPlan(strategy, _KEY_FUNCTIONS[strategy])


_OPERATOR_TOKENS: "weakref.WeakKeyDictionary[Operator, str]" = weakref.WeakKeyDictionary()
_TOKEN_LOCK = threading.Lock()


def _operator_token(operator: Operator) -> str:
    """Stable per-instance token; unlike ``id()`` it is never reused."""
    with _TOKEN_LOCK:
        token = _OPERATOR_TOKENS.get(operator)
        if token is None:
            token = _OPERATOR_TOKENS[operator] = uuid.uuid4().hex
        return token


class CachedOperator(Operator):
    """Leaf operator whose results are served from a :class:`PartialCache`.

    When the wrapped operator declares the keys it reads, only those keys are
    signed, so unrelated context changes still hit the cache.

    Raises:
        XCSError: If the wrapped operator is stochastic.
    """

    stochastic = False

    def __init__(
        self,
        operator: Operator,
        cache: Optional[PartialCache] = None,
        *,
        key_fn: Optional[KeyFunction] = None,
        detector: Optional[LLMDetector] = None,
    ) -> None:
        if (detector or LLMDetector()).is_stochastic(operator):
            raise XCSError(f"Refusing to cache stochastic operator {operator.display_name}")
        super().__init__(name=f"cached({operator.display_name})", operation_id=operator.operation_id)
        self.operator = operator
        self.cache = cache or get_cache()
        reads = operator.reads()
        self.key_fn = key_fn or (fields_key(*sorted(reads)) if reads is not None else None)
        self.cache_key: Hashable = ("operator", operator.display_name, _operator_token(operator))

    def forward(self, *, inputs: Mapping[str, Any]) -> Any:
        return self.cache.execute_cached(
            self.cache_key,
            inputs,
            lambda value: self.operator.forward(inputs=value),
            self.key_fn,
        )

    def reads(self) -> KeySet:
        return self.operator.reads()

    def writes(self) -> KeySet:
        return self.operator.writes()

    def stats(self) -> CacheStats:
        return self.cache.stats(self.cache_key)

    def __repr__(self) -> str:
        return f"CachedOperator({self.operator!r})"


__all__ = [
    "CacheEntry",
    "CacheStats",
    "CacheabilityReport",
    "CachedOperator",
    "CachingPlan",
    "CachingStrategy",
    "PartialCache",
    "analyze_cacheability",
    "determine_caching_strategy",
    "get_cache",
]
