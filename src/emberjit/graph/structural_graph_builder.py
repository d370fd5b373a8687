"""Build execution graphs from declared pipeline structure.

The structural builder never runs the pipeline. It walks the operator tree,
creates one node per leaf operator and derives edges from the context keys
each operator declares it reads and writes. Operators that do not declare
their keys are assumed to touch everything, which only ever adds edges.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from emberjit.errors import UnsupportedTargetError
from emberjit.graph.execution_graph import (
    ExecutionGraph,
    FunctionKind,
    LlmCallKind,
    NodeKind,
    NodeSource,
    OperatorKind,
)
from emberjit.operators.base import Operator
from emberjit.operators.basic import BranchOperator, ParallelOperator, SequenceOperator

logger = logging.getLogger(__name__)

Path = Tuple[int, ...]


def reads_after_write(earlier: Operator, later: Operator) -> bool:
    """``True`` if ``later`` may read a key ``earlier`` writes."""
    written, read = earlier.writes(), later.reads()
    if written is None:
        return True
    if read is None:
        return bool(written)
    return bool(written & read)


def conflicts(earlier: Operator, later: Operator) -> bool:
    """``True`` if ``later`` must run after ``earlier`` to keep sequential semantics.

    Read-after-write, write-after-read and write-after-write overlaps on
    context keys are all ordering constraints.
    """
    if reads_after_write(earlier, later):
        return True
    earlier_reads, later_writes = earlier.reads(), later.writes()
    if later_writes is None:
        return True
    if earlier_reads is None:
        if later_writes:
            return True
    elif earlier_reads & later_writes:
        return True
    earlier_writes = earlier.writes()
    return bool(earlier_writes is not None and earlier_writes & later_writes)


def container_kind(operator: Any) -> Optional[str]:
    if isinstance(operator, SequenceOperator):
        return "sequence"
    if isinstance(operator, ParallelOperator):
        return "parallel"
    if isinstance(operator, BranchOperator):
        return "branch"
    if isinstance(operator, Operator) and operator.composite:
        return "composite"
    return None


def default_node_kind(target: Any) -> NodeKind:
    """Node kind for a unit before any stochasticity analysis."""
    if isinstance(target, Operator):
        if target.stochastic:
            return LlmCallKind.from_target(target)
        return OperatorKind.from_operator(target)
    return FunctionKind.from_callable(target)


class StructuralGraphBuilder:
    """Build an :class:`ExecutionGraph` from a pipeline's declared structure.

    Args:
        classify: Optional callable returning ``True`` for units that must be
            treated as stochastic. Defaults to the operators' own declaration.
    """

    def __init__(self, classify: Optional[Callable[[Any], bool]] = None) -> None:
        self._classify = classify

    def build_graph(self, pipeline: Any, *, recursive: bool = True) -> ExecutionGraph:
        """Return the structural graph of ``pipeline``.

        Args:
            pipeline: An operator tree or a plain ``function(*, inputs)`` callable.
            recursive: Expand nested composites. When ``False`` only the root's
                direct children become nodes.

        Raises:
            UnsupportedTargetError: If ``pipeline`` is not callable.
        """
        if not callable(pipeline):
            raise UnsupportedTargetError(
                f"Cannot build a structural graph for {type(pipeline).__name__} objects"
            )
        graph = ExecutionGraph.new({"builder": "structural"})
        graph, _, _ = self._visit(graph, pipeline, (), 1, recursive, expand=True)
        logger.debug(
            "Structural graph for %s: %d nodes, %d edges",
            getattr(pipeline, "display_name", pipeline),
            len(graph.nodes),
            len(graph.edges),
        )
        return graph.with_metadata(node_count=len(graph.nodes), edge_count=len(graph.edges))

    def _visit(
        self,
        graph: ExecutionGraph,
        unit: Any,
        path: Path,
        depth: int,
        recursive: bool,
        expand: bool,
    ) -> Tuple[ExecutionGraph, List[str], List[str]]:
        kind = container_kind(unit)
        if kind is None or not expand or not unit.children():
            return self._add_leaf(graph, unit, path, depth)

        children = unit.children()
        results: List[Tuple[List[str], List[str]]] = []
        for index, child in enumerate(children):
            graph, entries, exits = self._visit(
                graph, child, path + (index,), depth + 1, recursive, expand=recursive
            )
            results.append((entries, exits))

        if kind != "sequence":
            entries = [nid for child_entries, _ in results for nid in child_entries]
            exits = [nid for _, child_exits in results for nid in child_exits]
            return graph, entries, exits

        has_predecessor = [False] * len(children)
        has_successor = [False] * len(children)
        for later in range(len(children)):
            for earlier in range(later):
                if not conflicts(children[earlier], children[later]):
                    continue
                has_predecessor[later] = True
                has_successor[earlier] = True
                for source in results[earlier][1]:
                    for target in results[later][0]:
                        graph = graph.add_edge(source, target)

        entries = [
            nid for index, (child_entries, _) in enumerate(results)
            if not has_predecessor[index] for nid in child_entries
        ]
        exits = [
            nid for index, (_, child_exits) in enumerate(results)
            if not has_successor[index] for nid in child_exits
        ]
        return graph, entries, exits

    def _add_leaf(
        self, graph: ExecutionGraph, unit: Any, path: Path, depth: int
    ) -> Tuple[ExecutionGraph, List[str], List[str]]:
        if self._classify is not None:
            stochastic = self._classify(unit)
        else:
            stochastic = bool(getattr(unit, "stochastic", False))
        if stochastic:
            kind: NodeKind = LlmCallKind.from_target(unit)
        elif isinstance(unit, Operator):
            kind = OperatorKind.from_operator(unit)
        else:
            kind = FunctionKind.from_callable(unit)
        metadata: Dict[str, Any] = {
            "path": path,
            "parent_path": path[:-1] if path else None,
            "position": path[-1] if path else None,
            "depth": depth,
        }
        graph, node_id = graph.add_node(
            kind,
            name=getattr(unit, "display_name", None) or getattr(unit, "__name__", None),
            preserve_stochasticity=stochastic,
            source=NodeSource.STRUCTURAL,
            metadata=metadata,
        )
        return graph, [node_id], [node_id]


def nodes_by_path(graph: ExecutionGraph) -> Dict[Path, str]:
    """Map each structural node's tree path to its node id."""
    return {
        node.metadata["path"]: node_id
        for node_id, node in graph.nodes.items()
        if "path" in node.metadata
    }


__all__ = [
    "StructuralGraphBuilder",
    "conflicts",
    "container_kind",
    "default_node_kind",
    "nodes_by_path",
    "reads_after_write",
]
