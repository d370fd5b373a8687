"""Semantics-preserving rewrites of operator trees.

Two rewrites are applied inside every :class:`SequenceOperator`:

* **Fusion** replaces a maximal run of adjacent, data-dependent,
  deterministic single-key map operators with one :class:`FusedOperator`.
* **Parallelization** groups the sequence's units into dependency levels
  and runs each level with enough members through a
  :class:`ParallelOperator`, re-ordering the sequence level by level.

Both rewrites keep the context an enclosing sequence observes unchanged, and
neither adds, removes or duplicates a stochastic unit. When
:class:`RewriteTargets` are supplied, only the runs and levels they list are
rewritten; everything else keeps its declared shape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, List, Optional, Sequence, Set, Tuple

from emberjit.graph.execution_graph import ExecutionGraph
from emberjit.graph.structural_graph_builder import (
    conflicts,
    default_node_kind,
    reads_after_write,
)
from emberjit.jit.llm_detector import LLMDetector
from emberjit.operators.base import Operator
from emberjit.operators.basic import (
    FusedOperator,
    MapOperator,
    ParallelOperator,
    SequenceOperator,
)

logger = logging.getLogger(__name__)

Span = Tuple[int, int]
MemberSet = FrozenSet[int]


@dataclass(frozen=True, slots=True)
class RewriteTargets:
    """Member sets an analysis reported as rewritable.

    Each set holds the ``id()`` of the leaf units one rewrite would touch.
    """

    fusions: FrozenSet[MemberSet] = frozenset()
    groups: FrozenSet[MemberSet] = frozenset()


@dataclass(frozen=True, slots=True)
class RewriteOptions:
    """Switches and limits for :func:`rewrite`.

    Attributes:
        recursive: Rewrite nested composites too. When ``False`` only the
            root's own children are fused or grouped.
        targets: Restrict rewrites to these member sets; ``None`` applies
            every rewrite found.
    """

    fuse: bool = True
    parallelize: bool = True
    min_fusion_length: int = 2
    min_parallel_group: int = 2
    max_workers: Optional[int] = None
    parallel: bool = True
    recursive: bool = True
    targets: Optional[RewriteTargets] = None


def is_fusible(unit: Any, detector: LLMDetector) -> bool:
    """``True`` for deterministic map operators reading and writing one key."""
    return isinstance(unit, MapOperator) and unit.single_io and not detector.is_stochastic(unit)


def dependent_runs(units: Sequence[Any], min_length: int = 2) -> List[Span]:
    """Return ``(start, stop)`` spans of adjacent units each reading what the previous wrote."""
    spans: List[Span] = []
    start = 0
    for index in range(1, len(units) + 1):
        chained = (
            index < len(units)
            and isinstance(units[index - 1], Operator)
            and isinstance(units[index], Operator)
            and reads_after_write(units[index - 1], units[index])
        )
        if not chained:
            if index - start >= min_length:
                spans.append((start, index))
            start = index
    return spans


def fusion_runs(units: Sequence[Any], detector: LLMDetector, min_length: int = 2) -> List[Span]:
    """Return spans of fusible units that form data-dependent chains."""
    spans: List[Span] = []
    start = None
    for index, unit in enumerate(list(units) + [None]):
        if unit is not None and is_fusible(unit, detector):
            if start is None:
                start = index
            continue
        if start is not None:
            spans.extend(
                (start + run_start, start + run_stop)
                for run_start, run_stop in dependent_runs(units[start:index], min_length)
            )
            start = None
    return spans


def dependency_levels(units: Sequence[Any]) -> List[List[int]]:
    """Group unit positions into levels of a sequence's dependency graph.

    Units on one level neither read nor write a key another member of the
    level touches, so they can run in any order or concurrently.
    """
    graph = ExecutionGraph.new()
    ids: List[str] = []
    for index in range(len(units)):
        graph, node_id = graph.add_node(default_node_kind(units[index]), node_id=str(index))
        ids.append(node_id)
    for later in range(len(units)):
        for earlier in range(later):
            if _ordered(units[earlier], units[later]):
                graph = graph.add_edge(ids[earlier], ids[later])
    return [sorted(int(node_id) for node_id in level) for level in graph.group_by_level()]


def member_ids(units: Sequence[Any], recursive: bool = True) -> MemberSet:
    """``id()`` of every leaf unit inside ``units``, looking through fused runs."""
    ids: Set[int] = set()
    for unit in units:
        if isinstance(unit, FusedOperator):
            ids.update(id(operator) for operator in unit.operators)
        elif recursive and isinstance(unit, Operator) and unit.composite and unit.children():
            ids.update(member_ids(unit.children(), recursive))
        else:
            ids.add(id(unit))
    return frozenset(ids)


def _ordered(earlier: Any, later: Any) -> bool:
    if not isinstance(earlier, Operator) or not isinstance(later, Operator):
        return True
    return conflicts(earlier, later)


def rewrite(
    pipeline: Any,
    options: Optional[RewriteOptions] = None,
    detector: Optional[LLMDetector] = None,
) -> Any:
    """Return an optimized equivalent of ``pipeline``.

    The root keeps its container type; ``pipeline`` itself is returned when
    nothing could be rewritten.
    """
    options = options or RewriteOptions()
    detector = detector or LLMDetector()
    return _rewrite(pipeline, options, detector, merging_parent=False, root=True)


def _rewrite(
    unit: Any,
    options: RewriteOptions,
    detector: LLMDetector,
    merging_parent: bool,
    root: bool = False,
) -> Any:
    if not isinstance(unit, Operator) or not unit.composite:
        return unit
    if not root and not options.recursive:
        return unit

    merges = isinstance(unit, (SequenceOperator, ParallelOperator))
    children = [_rewrite(child, options, detector, merges) for child in unit.children()]

    if isinstance(unit, SequenceOperator):
        if options.recursive:
            children = _flatten(children)
        if options.fuse:
            children = _fuse(children, options, detector)
        if options.parallelize:
            children = _parallelize(children, options)

    if merging_parent and merges and len(children) == 1:
        return children[0]
    if len(children) == len(unit.children()) and all(
        new is old for new, old in zip(children, unit.children())
    ):
        return unit
    return unit.with_children(children)


def _flatten(children: List[Any]) -> List[Any]:
    flattened: List[Any] = []
    for child in children:
        if type(child) is SequenceOperator:
            flattened.extend(child.children())
        else:
            flattened.append(child)
    return flattened


def _fuse(children: List[Any], options: RewriteOptions, detector: LLMDetector) -> List[Any]:
    spans = fusion_runs(children, detector, options.min_fusion_length)
    if not spans:
        return children
    fused: List[Any] = []
    position = 0
    for start, stop in spans:
        run = children[start:stop]
        if not _reported(run, options, "fusions"):
            logger.debug("Skipping unreported run of %d map operators", len(run))
            continue
        fused.extend(children[position:start])
        fused.append(FusedOperator(run))
        logger.debug("Fused %d map operators", len(run))
        position = stop
    fused.extend(children[position:])
    return fused


def _parallelize(children: List[Any], options: RewriteOptions) -> List[Any]:
    if len(children) < options.min_parallel_group:
        return children
    levels = dependency_levels(children)
    chosen = [
        len(level) >= options.min_parallel_group
        and _reported([children[index] for index in level], options, "groups")
        for level in levels
    ]
    if not any(chosen):
        return children
    grouped: List[Any] = []
    for level, concurrent in zip(levels, chosen):
        members = [children[index] for index in level]
        if concurrent:
            grouped.append(
                ParallelOperator(members, max_workers=options.max_workers, parallel=options.parallel)
            )
            logger.debug("Grouped %d independent units for concurrent execution", len(members))
        else:
            grouped.extend(members)
    return grouped


def _reported(units: Sequence[Any], options: RewriteOptions, kind: str) -> bool:
    if options.targets is None:
        return True
    return member_ids(units, options.recursive) in getattr(options.targets, kind)


def map_leaves(pipeline: Any, transform: Callable[[Any], Any]) -> Any:
    """Apply ``transform`` to every leaf, rebuilding only the containers that change."""
    if not isinstance(pipeline, Operator) or not pipeline.composite:
        return transform(pipeline)
    children = [map_leaves(child, transform) for child in pipeline.children()]
    if all(new is old for new, old in zip(children, pipeline.children())):
        return pipeline
    return pipeline.with_children(children)


__all__ = [
    "RewriteOptions",
    "RewriteTargets",
    "dependency_levels",
    "dependent_runs",
    "fusion_runs",
    "is_fusible",
    "map_leaves",
    "member_ids",
    "rewrite",
]
