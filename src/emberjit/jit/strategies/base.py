"""Strategy protocol and the structural analysis shared by all strategies."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from emberjit.config import Config
from emberjit.graph.execution_graph import ExecutionGraph
from emberjit.graph.structural_graph_builder import Path, StructuralGraphBuilder, nodes_by_path
from emberjit.jit.cache import PartialCache, get_cache
from emberjit.jit.llm_detector import LLMDetector
from emberjit.jit.options import JITOptions
from emberjit.jit.rewrite import (
    RewriteOptions,
    RewriteTargets,
    dependency_levels,
    dependent_runs,
    fusion_runs,
    rewrite,
)
from emberjit.operators.base import Operator
from emberjit.operators.basic import FusedOperator, ParallelOperator, SequenceOperator
from emberjit.tracer.trace_context import ExecutionTrace

logger = logging.getLogger(__name__)

Traced = Tuple[Any, ExecutionTrace]


@dataclass(frozen=True, slots=True)
class FusionTarget:
    """A run of sequence members that can execute as one fused unit.

    Attributes:
        node_ids: Structural nodes of the run's leaves.
        parent_path: Tree path of the sequence holding the run.
        reason: Why the run qualifies.
        units: The leaf units behind ``node_ids``.
    """

    node_ids: Tuple[str, ...]
    parent_path: Path
    reason: str = ""
    units: Tuple[Any, ...] = field(default=(), compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class ParallelizationTarget:
    """Sequence members on one dependency level."""

    node_ids: Tuple[str, ...]
    parent_path: Path
    reason: str = ""
    units: Tuple[Any, ...] = field(default=(), compare=False, repr=False)


OptimizationTarget = Union[FusionTarget, ParallelizationTarget]


@dataclass(frozen=True, slots=True)
class StructuralProperties:
    """Shape of a pipeline as seen by the optimizer.

    Attributes:
        complexity: Number of leaf units.
        depth: Maximum nesting depth; a lone leaf has depth 1.
        sequential_chains: Maximal runs of adjacent data-dependent units.
        parallel_sections: Groups of units that can run concurrently, both
            discovered inside sequences and declared as parallel operators.
    """

    complexity: int = 0
    depth: int = 0
    sequential_chains: Tuple[Tuple[str, ...], ...] = ()
    parallel_sections: Tuple[Tuple[str, ...], ...] = ()


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Outcome of :meth:`Strategy.analyze`."""

    strategy: str
    score: int
    rationale: str
    properties: StructuralProperties = field(default_factory=StructuralProperties)
    fusion_targets: Tuple[FusionTarget, ...] = ()
    parallelization_targets: Tuple[ParallelizationTarget, ...] = ()
    graph: Optional[ExecutionGraph] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def optimization_targets(self) -> Tuple[OptimizationTarget, ...]:
        """Every rewrite the analysis found, fusions first."""
        return self.fusion_targets + self.parallelization_targets

    def rewrite_targets(self) -> RewriteTargets:
        """The reported targets as member sets :func:`rewrite` can match."""
        return RewriteTargets(
            fusions=frozenset(_member_set(target) for target in self.fusion_targets),
            groups=frozenset(_member_set(target) for target in self.parallelization_targets),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "score": self.score,
            "rationale": self.rationale,
            "complexity": self.properties.complexity,
            "depth": self.properties.depth,
            "sequential_chains": len(self.properties.sequential_chains),
            "parallel_sections": len(self.properties.parallel_sections),
            "fusion_targets": len(self.fusion_targets),
            "parallelization_targets": len(self.parallelization_targets),
            "optimization_targets": [target.reason for target in self.optimization_targets],
        }


def _member_set(target: OptimizationTarget) -> FrozenSet[int]:
    return frozenset(id(unit) for unit in target.units)


@dataclass(frozen=True, slots=True)
class StructuralAnalysis:
    properties: StructuralProperties
    fusion_targets: Tuple[FusionTarget, ...]
    parallelization_targets: Tuple[ParallelizationTarget, ...]
    graph: ExecutionGraph


def analyze_structure(
    pipeline: Any,
    *,
    detector: LLMDetector,
    options: JITOptions,
) -> StructuralAnalysis:
    """Derive structural properties and rewrite targets of ``pipeline``.

    Raises:
        UnsupportedTargetError: If ``pipeline`` is not callable.
    """
    graph = StructuralGraphBuilder(classify=detector.is_stochastic).build_graph(
        pipeline, recursive=options.recursive
    )
    by_path = nodes_by_path(graph)

    def leaf_ids(prefix: Path) -> Tuple[str, ...]:
        return tuple(
            node_id for path, node_id in sorted(by_path.items())
            if path[: len(prefix)] == prefix
        )

    def units_of(ids: Tuple[str, ...]) -> Tuple[Any, ...]:
        return tuple(graph.get_node(node_id).target for node_id in ids)

    chains: List[Tuple[str, ...]] = []
    sections: List[Tuple[str, ...]] = []
    fusions: List[FusionTarget] = []
    groups: List[ParallelizationTarget] = []

    def visit(unit: Any, path: Path) -> None:
        if not isinstance(unit, Operator) or not unit.composite:
            return
        if path and not options.recursive:
            return
        children = unit.children()
        if isinstance(unit, ParallelOperator) and len(children) >= options.min_parallel_group:
            sections.append(leaf_ids(path))
        if isinstance(unit, SequenceOperator):
            for start, stop in dependent_runs(children):
                chains.append(sum((leaf_ids(path + (i,)) for i in range(start, stop)), ()))
            # Levels are taken over the fused units, as the rewrite sees them.
            units: List[Any] = []
            unit_ids: List[Tuple[str, ...]] = []
            position = 0
            for start, stop in fusion_runs(children, detector, options.min_fusion_length):
                for index in range(position, start):
                    units.append(children[index])
                    unit_ids.append(leaf_ids(path + (index,)))
                ids = sum((leaf_ids(path + (i,)) for i in range(start, stop)), ())
                fusions.append(
                    FusionTarget(
                        ids,
                        path,
                        f"{stop - start} adjacent map operators each reading the previous output",
                        units_of(ids),
                    )
                )
                units.append(FusedOperator(children[start:stop]))
                unit_ids.append(ids)
                position = stop
            for index in range(position, len(children)):
                units.append(children[index])
                unit_ids.append(leaf_ids(path + (index,)))
            for level in dependency_levels(units):
                if len(level) >= options.min_parallel_group:
                    ids = sum((unit_ids[i] for i in level), ())
                    groups.append(
                        ParallelizationTarget(
                            ids,
                            path,
                            f"{len(level)} units on one dependency level share no keys",
                            units_of(ids),
                        )
                    )
                    sections.append(ids)
        for index, child in enumerate(children):
            visit(child, path + (index,))

    visit(pipeline, ())
    depth = max((node.metadata.get("depth", 1) for node in graph.nodes.values()), default=0)
    properties = StructuralProperties(
        complexity=len(graph),
        depth=depth,
        sequential_chains=tuple(chains),
        parallel_sections=tuple(sections),
    )
    return StructuralAnalysis(properties, tuple(fusions), tuple(groups), graph)


def structural_score(analysis: StructuralAnalysis) -> int:
    """Score how much a pipeline is expected to gain from structural rewrites."""
    properties = analysis.properties
    base = min(50, properties.complexity * 5 + properties.depth * 5)
    fusion_bonus = min(25, len(analysis.fusion_targets) * 10)
    parallel_bonus = min(25, len(analysis.parallelization_targets) * 15)
    return base + fusion_bonus + parallel_bonus


class Strategy(abc.ABC):
    """Analyze a pipeline and compile an optimized equivalent.

    Args:
        options: Strategy options.
        config: Runtime configuration for the compiled pipeline.
        cache: Cache used by compiled units that store results.
        detector: Classifier for stochastic units.
    """

    name: ClassVar[str] = "base"
    requires_trace: ClassVar[bool] = False

    def __init__(
        self,
        options: Optional[JITOptions] = None,
        config: Optional[Config] = None,
        cache: Optional[PartialCache] = None,
        detector: Optional[LLMDetector] = None,
    ) -> None:
        self.options = options or JITOptions()
        self.config = config or Config()
        self.cache = cache or get_cache()
        self.detector = detector or LLMDetector()

    @abc.abstractmethod
    def analyze(
        self,
        pipeline: Any,
        sample_input: Optional[Mapping[str, Any]] = None,
        *,
        traced: Optional[Traced] = None,
    ) -> AnalysisResult:
        """Score ``pipeline`` and record the rewrite targets found.

        Args:
            pipeline: Operator tree or ``function(*, inputs)`` callable.
            sample_input: Representative input. Strategies that need a trace
                execute the pipeline on it when ``traced`` is not supplied.
            traced: ``(result, trace)`` of an execution that already happened.
        """

    def compile(
        self,
        pipeline: Any,
        sample_input: Optional[Mapping[str, Any]],
        analysis: AnalysisResult,
    ) -> Any:
        """Return an executable equivalent of ``pipeline``.

        Below the score threshold the pipeline itself is returned.
        """
        if analysis.score < self.options.score_threshold:
            logger.debug(
                "%s strategy: score %d below threshold %d, leaving pipeline unchanged",
                self.name,
                analysis.score,
                self.options.score_threshold,
            )
            return pipeline
        return self._compile(pipeline, sample_input, analysis)

    def _compile(
        self,
        pipeline: Any,
        sample_input: Optional[Mapping[str, Any]],
        analysis: AnalysisResult,
    ) -> Any:
        return rewrite(pipeline, self.rewrite_options(analysis), self.detector)

    def rewrite_options(self, analysis: Optional[AnalysisResult] = None) -> RewriteOptions:
        """Rewrite settings; with an ``analysis`` only its reported targets are applied."""
        return RewriteOptions(
            min_fusion_length=self.options.min_fusion_length,
            min_parallel_group=self.options.min_parallel_group,
            max_workers=self.config.max_workers,
            parallel=self.config.parallel,
            recursive=self.options.recursive,
            targets=analysis.rewrite_targets() if analysis is not None else None,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


__all__ = [
    "AnalysisResult",
    "FusionTarget",
    "OptimizationTarget",
    "ParallelizationTarget",
    "Strategy",
    "StructuralAnalysis",
    "StructuralProperties",
    "analyze_structure",
    "structural_score",
]
