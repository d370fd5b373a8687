"""Tests for reconciling traced and structural graphs."""

from __future__ import annotations

import logging

import pytest

from emberjit.graph.enhanced_graph_builder import (
    EnhancedGraphBuilder,
    merge_trace_and_structure,
    nodes_equivalent,
)
from emberjit.graph.execution_graph import ExecutionGraph, FunctionKind, NodeSource, OperatorKind
from emberjit.graph.structural_graph_builder import StructuralGraphBuilder
from emberjit.graph.trace_graph_builder import TraceGraphBuilder
from emberjit.operators import BranchOperator, MapOperator, SequenceOperator


def _node(kind, **fields):
    graph, node_id = ExecutionGraph.new().add_node(kind, **fields)
    return graph.get_node(node_id)


def test_traced_nodes_are_primary(arithmetic_pipeline: SequenceOperator) -> None:
    result, graph = EnhancedGraphBuilder().build_graph(arithmetic_pipeline, {"value": 5})

    assert result == {"value": 20}
    assert len(graph) == 2, "Structural duplicates of traced nodes must not be added."
    assert {node.source for node in graph.nodes.values()} == {NodeSource.TRACE}
    assert graph.metadata["primary_source"] == "trace"
    assert graph.metadata["trace_node_count"] == 2
    assert graph.metadata["structural_node_count"] == 2
    assert graph.metadata["structural_nodes_added"] == 0


def test_untaken_branch_is_added_from_structure() -> None:
    taken = MapOperator(lambda x: x + 1, "x", "y", name="taken")
    skipped = MapOperator(lambda x: x - 1, "x", "y", name="skipped")
    pipeline = SequenceOperator(
        [
            BranchOperator(lambda inputs: inputs["x"] > 0, taken, skipped),
            MapOperator(lambda y: y * 10, "y", "z", name="scale"),
        ]
    )
    _, graph = EnhancedGraphBuilder().build_graph(pipeline, {"x": 1})
    by_name = {node.name: node for node in graph.nodes.values()}

    assert set(by_name) == {"taken", "skipped", "scale"}
    assert by_name["skipped"].source is NodeSource.STRUCTURAL
    assert graph.metadata["structural_nodes_added"] == 1
    assert by_name["scale"].id in graph.outgoing(by_name["skipped"].id)
    graph.topological_sort()


def test_existing_trace_is_reused(arithmetic_pipeline: SequenceOperator) -> None:
    calls = []
    pipeline = SequenceOperator(
        [MapOperator(lambda x: calls.append(x) or x, "value", "value"), *arithmetic_pipeline.operators]
    )
    traced = TraceGraphBuilder().trace_execution(pipeline, {"value": 1})
    result, graph = EnhancedGraphBuilder().build_graph(pipeline, {"value": 1}, traced=traced)

    assert calls == [1], "The pipeline must not run again when a trace is supplied."
    assert result == {"value": 12}
    assert len(graph) == 3


def test_empty_trace_falls_back_to_structure(caplog: pytest.LogCaptureFixture) -> None:
    structural = StructuralGraphBuilder().build_graph(
        SequenceOperator([MapOperator(abs, "a", "a")])
    )
    with caplog.at_level(logging.WARNING):
        merged = merge_trace_and_structure(ExecutionGraph.new(), structural)

    assert merged.nodes == structural.nodes
    assert merged.metadata["primary_source"] == "structural"
    assert any("falling back" in record.message for record in caplog.records)


def test_function_nodes_compare_by_definition() -> None:
    def helper(*, inputs):
        return inputs

    left = _node(FunctionKind.from_callable(helper), name="left")
    right = _node(FunctionKind("other.module", "helper", 1), name="right")
    same = _node(FunctionKind(helper.__module__, helper.__qualname__, 1))
    assert nodes_equivalent(left, same)
    assert not nodes_equivalent(left, right)


def test_operator_nodes_compare_by_operation_id() -> None:
    first = MapOperator(abs, "a", "b", operation_id="normalize")
    second = MapOperator(abs, "a", "b", operation_id="normalize")
    third = MapOperator(abs, "a", "b", operation_id="other")
    assert nodes_equivalent(
        _node(OperatorKind.from_operator(first)), _node(OperatorKind.from_operator(second))
    )
    assert not nodes_equivalent(
        _node(OperatorKind.from_operator(first)), _node(OperatorKind.from_operator(third))
    )


def test_same_type_operators_without_ids_are_matched_by_identity() -> None:
    first = MapOperator(abs, "a", "b", name="first")
    second = MapOperator(abs, "b", "c", name="second")
    pipeline = SequenceOperator([first, second])
    _, graph = EnhancedGraphBuilder().build_graph(pipeline, {"a": -2})
    assert sorted(node.name for node in graph.nodes.values()) == ["first", "second"]
