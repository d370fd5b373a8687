"""Reconcile structural and traced graphs into one graph.

The trace tells us what actually ran; the structure tells us what could run.
The merged graph keeps every traced node and adds the structural nodes the
sample execution did not exercise, such as untaken branches.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

from emberjit.graph.execution_graph import (
    ExecutionGraph,
    FunctionKind,
    Node,
    NodeSource,
    OperatorKind,
)
from emberjit.graph.structural_graph_builder import StructuralGraphBuilder
from emberjit.graph.trace_graph_builder import TraceGraphBuilder, reaches
from emberjit.tracer.trace_context import ExecutionTrace

logger = logging.getLogger(__name__)


def nodes_equivalent(left: Node, right: Node) -> bool:
    """Return ``True`` if two nodes describe the same computation unit.

    Nodes wrapping the very same object are always equivalent. Function nodes
    compare by defining module, qualified name and arity; operator nodes by
    component type and ``operation_id``. Other pairs compare their kind and
    stochasticity, plus their shape patterns where both sides know them.
    """
    if left.target is not None and left.target is right.target:
        return True
    if isinstance(left.kind, FunctionKind) and isinstance(right.kind, FunctionKind):
        return (left.kind.module, left.kind.qualname, left.kind.arity) == (
            right.kind.module,
            right.kind.qualname,
            right.kind.arity,
        )
    if isinstance(left.kind, OperatorKind) and isinstance(right.kind, OperatorKind):
        return (
            left.kind.component_type is right.kind.component_type
            and left.kind.operation_id == right.kind.operation_id
        )
    if left.kind != right.kind or left.preserve_stochasticity != right.preserve_stochasticity:
        return False
    for attribute in ("inputs_pattern", "result_pattern"):
        mine, theirs = getattr(left, attribute), getattr(right, attribute)
        if mine is not None and theirs is not None and mine != theirs:
            return False
    return True


def _find_equivalent(node: Node, graph: ExecutionGraph) -> Optional[str]:
    if node.target is not None:
        for node_id, candidate in graph.nodes.items():
            if candidate.target is node.target:
                return node_id
    for node_id, candidate in graph.nodes.items():
        if nodes_equivalent(node, candidate):
            return node_id
    return None


def merge_trace_and_structure(
    trace_graph: ExecutionGraph, structural_graph: ExecutionGraph
) -> ExecutionGraph:
    """Merge a traced graph with a structural graph of the same pipeline.

    A non-empty trace graph is primary and copied as is; structural nodes with
    no equivalent traced node are appended with ``source=STRUCTURAL`` and the
    structural edges touching them are carried over. An empty trace graph
    leaves the structural graph as the result.
    """
    structural_count = len(structural_graph.nodes)
    if not trace_graph.nodes:
        logger.warning("Trace produced no nodes; falling back to the structural graph")
        return structural_graph.with_metadata(
            builder="enhanced",
            primary_source=NodeSource.STRUCTURAL.value,
            trace_node_count=0,
            structural_node_count=structural_count,
            structural_nodes_added=structural_count,
        )

    merged = ExecutionGraph(trace_graph.nodes, trace_graph.edges, {})
    translated: Dict[str, str] = {}
    added: Set[str] = set()
    for structural_id, node in structural_graph.nodes.items():
        match = _find_equivalent(node, trace_graph)
        if match is not None:
            translated[structural_id] = match
            continue
        merged, new_id = merged.insert_node(node.evolve(source=NodeSource.STRUCTURAL))
        translated[structural_id] = new_id
        added.add(new_id)

    existing = {(edge.source, edge.target) for edge in merged.edges}
    for edge in structural_graph.edges:
        source, target = translated[edge.source], translated[edge.target]
        if source == target or (source, target) in existing:
            continue
        if source not in added and target not in added:
            continue
        if reaches(merged, target, source):
            continue
        merged = merged.add_edge(source, target)
        existing.add((source, target))

    logger.debug(
        "Merged %d traced nodes with %d structural nodes (%d added)",
        len(trace_graph.nodes),
        structural_count,
        len(added),
    )
    metadata = {
        **structural_graph.metadata,
        **trace_graph.metadata,
        "builder": "enhanced",
        "primary_source": NodeSource.TRACE.value,
        "trace_node_count": len(trace_graph.nodes),
        "structural_node_count": structural_count,
        "structural_nodes_added": len(added),
        "node_count": len(merged.nodes),
        "edge_count": len(merged.edges),
    }
    return ExecutionGraph(merged.nodes, merged.edges, metadata)


class EnhancedGraphBuilder:
    """Build a graph from both the structure and one traced execution.

    Args:
        structural_builder: Builder for the declared structure.
        trace_builder: Builder for the traced execution.
        classify: Stochastic-unit classifier handed to the default builders.
    """

    def __init__(
        self,
        structural_builder: Optional[StructuralGraphBuilder] = None,
        trace_builder: Optional[TraceGraphBuilder] = None,
        *,
        classify: Optional[Callable[[Any], bool]] = None,
    ) -> None:
        self.structural_builder = structural_builder or StructuralGraphBuilder(classify)
        self.trace_builder = trace_builder or TraceGraphBuilder(classify)

    def build_graph(
        self,
        target: Any,
        sample_input: Mapping[str, Any],
        *,
        recursive: bool = True,
        traced: Optional[Tuple[Any, ExecutionTrace]] = None,
    ) -> Tuple[Any, ExecutionGraph]:
        """Return the result of one execution and the merged graph.

        Args:
            target: Pipeline to analyze.
            sample_input: Input for the traced execution.
            recursive: Expand nested composites in the structural graph.
            traced: A ``(result, trace)`` pair from an execution that already
                happened; when given, ``target`` is not executed again.
        """
        structural_graph = self.structural_builder.build_graph(target, recursive=recursive)
        if traced is None:
            traced = self.trace_builder.trace_execution(target, sample_input)
        result, trace = traced
        trace_graph = self.trace_builder.build_graph_from_trace(trace)
        return result, merge_trace_and_structure(trace_graph, structural_graph)


__all__ = ["EnhancedGraphBuilder", "merge_trace_and_structure", "nodes_equivalent"]
