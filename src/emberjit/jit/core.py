"""Core JIT entry point.

Provides the :func:`jit` decorator, the strategy selection policy and the
executable that runs compiled plans. Compilation happens eagerly when a
sample input is supplied and lazily on the first call otherwise; the first
call's traced execution doubles as the call's real result, so no unit runs
twice for one logical call.
"""

from __future__ import annotations

import functools
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Tuple, Union

from typing_extensions import Unpack

from emberjit.config import Config, ConfigLike, resolve_config
from emberjit.engine.executor import run_concurrently
from emberjit.errors import CompilationError, UnsupportedTargetError, XCSError
from emberjit.fingerprint import Fingerprint, fingerprint
from emberjit.graph.trace_graph_builder import TraceGraphBuilder
from emberjit.jit.cache import PartialCache, get_cache
from emberjit.jit.llm_detector import LLMDetector
from emberjit.jit.modes import JITMode
from emberjit.jit.options import JITOptions, StrategyOptionsDict
from emberjit.jit.profiler import Profiler
from emberjit.jit.strategies import EnhancedStrategy, LLMStrategy, Strategy, StructuralStrategy
from emberjit.jit.strategies.base import AnalysisResult, Traced
from emberjit.jit.strategies.llm import split_batch_request
from emberjit.operators.base import Operator
from emberjit.tracer.trace_context import TraceEvent

logger = logging.getLogger(__name__)

StrategyFactory = Callable[..., Strategy]


class StrategySelector:
    """Registry of strategies and the policy choosing between them.

    In ``auto`` mode every registered strategy analyzes the pipeline and the
    highest score wins; ties go to the strategy registered first.
    """

    def __init__(self) -> None:
        self._factories: Dict[str, StrategyFactory] = {}
        self.register(JITMode.STRUCTURAL.value, StructuralStrategy)
        self.register(JITMode.ENHANCED.value, EnhancedStrategy)
        self.register(JITMode.LLM.value, LLMStrategy)

    def register(self, name: str, factory: StrategyFactory, *, replace: bool = False) -> None:
        """Register ``factory`` under ``name``.

        Args:
            name: Mode name used to request the strategy.
            factory: Strategy class or callable accepting ``options``,
                ``config``, ``cache`` and ``detector`` keywords.
            replace: Allow overriding an existing registration.

        Raises:
            XCSError: If ``name`` is reserved or already registered.
        """
        name = name.lower()
        if name == JITMode.AUTO.value:
            raise XCSError("'auto' is reserved for automatic strategy selection")
        if name in self._factories and not replace:
            raise XCSError(f"Strategy '{name}' is already registered")
        self._factories[name] = factory

    def names(self) -> List[str]:
        return list(self._factories)

    def resolve_mode(self, mode: Union[JITMode, str]) -> str:
        """Return a registered strategy name or ``"auto"``; unknown modes fall back to auto."""
        normalized = JITMode.normalize(mode)
        name = normalized.value if isinstance(normalized, JITMode) else normalized
        if name == JITMode.AUTO.value or name in self._factories:
            return name
        logger.warning("Unknown JIT mode '%s', falling back to AUTO", mode)
        return JITMode.AUTO.value

    def create(self, name: str, **kwargs: Any) -> Strategy:
        return self._factories[name](**kwargs)

    def select(
        self,
        pipeline: Any,
        sample_input: Optional[Mapping[str, Any]] = None,
        *,
        mode: Union[JITMode, str] = JITMode.AUTO,
        traced: Optional[Traced] = None,
        **kwargs: Any,
    ) -> Tuple[Strategy, AnalysisResult]:
        """Choose a strategy for ``pipeline`` and return it with its analysis."""
        name = self.resolve_mode(mode)
        if name != JITMode.AUTO.value:
            strategy = self.create(name, **kwargs)
            return strategy, strategy.analyze(pipeline, sample_input, traced=traced)

        candidates = []
        for candidate_name in self._factories:
            strategy = self.create(candidate_name, **kwargs)
            analysis = strategy.analyze(pipeline, sample_input, traced=traced)
            logger.debug(
                "Strategy %s: score=%d, rationale=%s",
                candidate_name,
                analysis.score,
                analysis.rationale,
            )
            candidates.append((strategy, analysis))
        return max(candidates, key=lambda pair: pair[1].score)


_selector = StrategySelector()
_profiler = Profiler()


def get_selector() -> StrategySelector:
    """Return the process-wide strategy selector."""
    return _selector


def register_strategy(name: str, factory: StrategyFactory, *, replace: bool = False) -> None:
    """Register a custom strategy on the process-wide selector."""
    _selector.register(name, factory, replace=replace)


@dataclass(frozen=True, slots=True)
class CompiledPlan:
    """A compiled pipeline for one input shape."""

    strategy: str
    analysis: AnalysisResult
    executable: Any
    compile_time_ms: float
    cache_results: bool = False


def _name_of(target: Any) -> str:
    if isinstance(target, Operator):
        return target.display_name
    return getattr(target, "__qualname__", None) or type(target).__name__


class JITFunction:
    """Callable running the compiled form of a pipeline.

    Plans are keyed by the shape fingerprint of the inputs and rebuilt when a
    new shape arrives. Pipelines without stochastic units additionally get a
    whole-call result cache.
    """

    def __init__(
        self,
        target: Any,
        *,
        options: JITOptions,
        config: Config,
        cache: PartialCache,
        sample_input: Optional[Mapping[str, Any]] = None,
        selector: Optional[StrategySelector] = None,
        profiler: Optional[Profiler] = None,
        detector: Optional[LLMDetector] = None,
    ) -> None:
        if not callable(target):
            raise UnsupportedTargetError(f"Cannot jit {type(target).__name__} objects")
        if not isinstance(target, Operator):
            functools.update_wrapper(self, target)
        self.target = target
        self.options = options
        self.config = config
        self.cache = cache
        self.name = _name_of(target)
        self.cache_key: Hashable = ("jit", self.name, uuid.uuid4().hex)
        self._selector = selector or _selector
        self._profiler = profiler or _profiler
        self._detector = detector or LLMDetector()
        self._plans: Dict[Fingerprint, CompiledPlan] = {}
        self._last_strategy: Optional[str] = None
        self._lock = threading.Lock()
        self._whole_call_cache = config.cache and self._is_deterministic()
        if sample_input is not None:
            traced = TraceGraphBuilder().trace_execution(target, sample_input)
            self._compile(sample_input, traced)

    @property
    def plans(self) -> Mapping[Fingerprint, CompiledPlan]:
        with self._lock:
            return dict(self._plans)

    @property
    def strategy_name(self) -> Optional[str]:
        """Strategy of the most recently compiled plan."""
        return self._last_strategy

    def __call__(self, *, inputs: Mapping[str, Any]) -> Any:
        if self.options.batch_requests:
            items = split_batch_request(inputs)
            if items is not None:
                return {"results": self._run_batch(items)}

        key = fingerprint(inputs)
        with self._lock:
            plan = None if self.options.force_trace else self._plans.get(key)
        if plan is None:
            result, _ = self._trace_and_compile(inputs)
            return result

        start = time.perf_counter()
        if plan.cache_results:
            result = self.cache.execute_cached(
                self.cache_key, inputs, lambda value: plan.executable(inputs=value)
            )
        else:
            result = plan.executable(inputs=inputs)
        if self.config.profile:
            self._profiler.record(self.name, (time.perf_counter() - start) * 1000)
        return result

    def stats(self) -> Dict[str, Any]:
        """Cache and timing statistics of this pipeline."""
        return {
            "cache": self.cache.get_metrics(self.cache_key),
            "profile": dict(self._profiler.get(self.name)),
            "strategy": self.strategy_name,
            "plans": len(self.plans),
        }

    def clear(self) -> None:
        """Drop all compiled plans; the next call recompiles."""
        with self._lock:
            self._plans.clear()

    def _trace_and_compile(self, inputs: Mapping[str, Any]) -> Tuple[Any, CompiledPlan]:
        traced = TraceGraphBuilder().trace_execution(self.target, inputs)
        plan = self._compile(inputs, traced)
        return traced[0], plan

    def _compile(self, sample_input: Mapping[str, Any], traced: Traced) -> CompiledPlan:
        start = time.perf_counter()
        try:
            strategy, analysis = self._selector.select(
                self.target,
                sample_input,
                mode=self.options.mode,
                traced=traced,
                options=self.options,
                config=self.config,
                cache=self.cache,
                detector=self._detector,
            )
            executable = strategy.compile(self.target, sample_input, analysis)
        except XCSError as exc:
            raise CompilationError(f"Failed to compile {self.name}: {exc}") from exc
        elapsed_ms = (time.perf_counter() - start) * 1000
        cache_results = self._whole_call_cache and not self._saw_stochastic(analysis, traced)
        plan = CompiledPlan(strategy.name, analysis, executable, elapsed_ms, cache_results)
        with self._lock:
            self._plans[fingerprint(sample_input)] = plan
            self._last_strategy = strategy.name
        self._profiler.record_compile(self.name, elapsed_ms)
        logger.debug(
            "Compiled %s with %s strategy (score %d) in %.2fms",
            self.name,
            strategy.name,
            analysis.score,
            elapsed_ms,
        )
        return plan

    def _run_batch(self, items: List[Dict[str, Any]]) -> List[Any]:
        results: List[Any] = []
        size = self.options.batch_size
        for offset in range(0, len(items), size):
            chunk = items[offset:offset + size]
            tasks = [functools.partial(self.__call__, inputs=item) for item in chunk]
            results.extend(
                run_concurrently(
                    tasks, max_workers=self.config.max_workers, parallel=self.config.parallel
                )
            )
        return results

    def _saw_stochastic(self, analysis: AnalysisResult, traced: Traced) -> bool:
        """``True`` if the analysis or the traced execution found a stochastic call."""
        graph = analysis.graph
        if graph is not None and any(node.preserve_stochasticity for node in graph.nodes.values()):
            logger.debug("%s: analysis found stochastic nodes, results are not cached", self.name)
            return True
        _, trace = traced
        for record in trace:
            if record.event is TraceEvent.CALL and self._detector.is_stochastic(record.function):
                logger.debug(
                    "%s: traced call to %r is stochastic, results are not cached",
                    self.name,
                    record.function,
                )
                return True
        return False

    def _is_deterministic(self) -> bool:
        if isinstance(self.target, Operator):
            return not self._detector.contains_stochastic(self.target)
        # Plain functions can reach model calls the detector cannot see.
        return getattr(self.target, "stochastic", None) is False

    def __repr__(self) -> str:
        return f"JITFunction({self.name!r}, mode={self.options.mode!r})"


def _resolve_cache(cache: Optional[PartialCache], config: Config) -> PartialCache:
    if cache is not None:
        return cache
    if config.private_cache:
        return PartialCache(config.cache_capacity)
    return get_cache()


def jit(
    target: Optional[Any] = None,
    *,
    mode: Union[str, JITMode] = JITMode.AUTO,
    sample_input: Optional[Mapping[str, Any]] = None,
    config: ConfigLike = None,
    cache: Optional[PartialCache] = None,
    **options: Unpack[StrategyOptionsDict],
) -> Any:
    """Just-in-time optimize a pipeline.

    Args:
        target: Operator tree or ``function(*, inputs)`` callable.
        mode: ``auto``, ``structural``, ``enhanced``, ``llm`` or the name of a
            registered custom strategy. Unknown names fall back to ``auto``.
        sample_input: Compile eagerly by executing the pipeline once on this
            input; otherwise compilation happens on the first call.
        config: Runtime configuration of the compiled pipeline: a
            :class:`Config`, a mapping of overrides applied to the defaults, or
            a preset name such as ``"serial"``.
        cache: Cache for results of deterministic units.
        **options: Strategy options, see :class:`JITOptions`.

    Returns:
        A :class:`JITFunction`, or a decorator when ``target`` is omitted.

    Example:
        ```python
        pipeline = SequenceOperator([
            MapOperator(lambda x: x * 2, "value", "value"),
            MapOperator(lambda x: x + 10, "value", "value"),
        ])
        fast = jit(pipeline)
        fast(inputs={"value": 5})  # {"value": 20}

        @jit(mode="structural")
        def summarize(*, inputs):
            return {"summary": inputs["text"][:100]}
        ```
    """
    if target is None:
        return lambda inner: jit(
            inner, mode=mode, sample_input=sample_input, config=config, cache=cache, **options
        )
    settings = JITOptions(mode=mode, **options)
    config = resolve_config(config)
    return JITFunction(
        target,
        options=settings,
        config=config,
        cache=_resolve_cache(cache, config),
        sample_input=sample_input,
    )


def get_jit_stats(func: Optional[JITFunction] = None) -> Dict[str, Any]:
    """Get cache and timing statistics.

    Args:
        func: Optional jitted pipeline. If None, returns overall stats.
    """
    if func is None:
        return {"cache": get_cache().get_metrics(), "profile": dict(_profiler.summary())}
    return func.stats()


def explain_jit_selection(
    target: Any,
    sample_input: Optional[Mapping[str, Any]] = None,
    **options: Unpack[StrategyOptionsDict],
) -> Dict[str, Dict[str, Any]]:
    """Explain how each registered strategy scores ``target``.

    With a ``sample_input`` the pipeline is executed once and every strategy
    analyzes that single trace.
    """
    settings = JITOptions(**options)
    traced = None
    if sample_input is not None:
        traced = TraceGraphBuilder().trace_execution(target, sample_input)
    results: Dict[str, Dict[str, Any]] = {}
    for name in _selector.names():
        strategy = _selector.create(name, options=settings)
        results[name] = strategy.analyze(target, sample_input, traced=traced).as_dict()
    return results


__all__ = [
    "CompiledPlan",
    "JITFunction",
    "StrategySelector",
    "explain_jit_selection",
    "get_jit_stats",
    "get_selector",
    "jit",
    "register_strategy",
]
