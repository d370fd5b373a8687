"""Unit tests for ExecutionGraph.

This module verifies:
    - Immutable node and edge updates,
    - Topological sorting and level grouping,
    - Cycle and dangling edge detection, and
    - Merging with fresh identifiers.
"""

from typing import Any, Dict, List

import pytest

from emberjit.errors import DanglingEdgeError, GraphCycleError
from emberjit.graph.execution_graph import (
    ExecutionGraph,
    FunctionKind,
    LlmCallKind,
    NodeSource,
)


def dummy_operator(*, inputs: Dict[str, Any]) -> Dict[str, Any]:
    """Simulated operator that returns the provided inputs."""
    return inputs


KIND = FunctionKind.from_callable(dummy_operator)


def _graph(node_ids: List[str], edges: List[tuple] = ()) -> ExecutionGraph:
    graph = ExecutionGraph.new()
    for node_id in node_ids:
        graph, _ = graph.add_node(KIND, node_id=node_id)
    for source, target in edges:
        graph = graph.add_edge(source, target)
    return graph


def test_add_node_returns_new_graph() -> None:
    """Adding a node leaves the original graph untouched."""
    empty = ExecutionGraph.new({"purpose": "test"})
    graph, node_id = empty.add_node(KIND, name="identity")
    assert node_id in graph, "Expected the new node in the returned graph."
    assert len(empty) == 0, "Expected the original graph to stay empty."
    assert graph.metadata == {"purpose": "test"}
    assert graph.get_node(node_id).label == "identity"


def test_generated_ids_are_unique() -> None:
    graph = ExecutionGraph.new()
    ids = set()
    for _ in range(50):
        graph, node_id = graph.add_node(KIND)
        ids.add(node_id)
    assert len(ids) == 50
    assert all(node_id.startswith("node_") for node_id in ids)


def test_duplicate_node_id_error() -> None:
    graph = _graph(["dup"])
    with pytest.raises(ValueError, match="Node with ID 'dup' already exists."):
        graph.add_node(KIND, node_id="dup")


def test_unchanged_nodes_are_shared() -> None:
    graph = _graph(["A"])
    grown, _ = graph.add_node(KIND, node_id="B")
    assert grown.nodes["A"] is graph.nodes["A"]


def test_dangling_edge_rejected() -> None:
    graph = _graph(["A"])
    with pytest.raises(DanglingEdgeError) as info:
        graph.add_edge("A", "missing")
    assert info.value.missing == "missing"


def test_outgoing_and_incoming() -> None:
    graph = _graph(["A", "B", "C"], [("A", "B"), ("A", "C"), ("B", "C")])
    assert graph.outgoing("A") == ["B", "C"]
    assert graph.incoming("C") == ["A", "B"]
    assert graph.incoming("A") == []


def test_topological_sort_linear() -> None:
    """A -> B -> C sorts to ['A', 'B', 'C']."""
    graph = _graph(["C", "B", "A"], [("A", "B"), ("B", "C")])
    assert graph.topological_sort() == ["A", "B", "C"]


def test_topological_sort_respects_every_edge() -> None:
    edges = [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D"), ("E", "D")]
    graph = _graph(["A", "B", "C", "D", "E"], edges)
    order = graph.topological_sort()
    position = {node_id: index for index, node_id in enumerate(order)}
    assert sorted(order) == ["A", "B", "C", "D", "E"]
    for source, target in edges:
        assert position[source] < position[target], f"{source} must precede {target}"


def test_cycle_detection() -> None:
    graph = _graph(["A", "B", "C"], [("A", "B"), ("B", "C"), ("C", "B")])
    with pytest.raises(GraphCycleError) as info:
        graph.topological_sort()
    assert sorted(info.value.remaining) == ["B", "C"]


def test_traversal_revalidates_edges() -> None:
    """Graphs assembled through the constructor are checked at traversal time."""
    linked = _graph(["A", "B"], [("A", "B")])
    broken = ExecutionGraph(linked.remove_node("B").nodes, linked.edges)
    with pytest.raises(DanglingEdgeError):
        broken.topological_sort()


def test_group_by_level_uses_longest_path() -> None:
    graph = _graph(
        ["A", "B", "C", "D"],
        [("A", "B"), ("B", "D"), ("A", "D"), ("C", "D")],
    )
    levels = graph.group_by_level()
    assert [sorted(level) for level in levels] == [["A", "C"], ["B"], ["D"]]


def test_levels_contain_no_internal_paths() -> None:
    graph = _graph(["A", "B", "C", "D"], [("A", "C"), ("B", "C"), ("C", "D")])
    for level in graph.group_by_level():
        for source in level:
            assert not set(graph.outgoing(source)) & set(level)


def test_empty_graph_has_no_levels() -> None:
    assert ExecutionGraph.new().group_by_level() == []
    assert ExecutionGraph.new().topological_sort() == []


def test_remove_node_drops_incident_edges() -> None:
    graph = _graph(["A", "B", "C"], [("A", "B"), ("B", "C")]).remove_node("B")
    assert graph.node_ids() == ["A", "C"]
    assert graph.edges == ()


def test_subgraph_keeps_internal_edges_only() -> None:
    graph = _graph(["A", "B", "C"], [("A", "B"), ("B", "C")]).subgraph(["B", "C"])
    assert graph.node_ids() == ["B", "C"]
    assert [(edge.source, edge.target) for edge in graph.edges] == [("B", "C")]


def test_update_node_rejects_id_change() -> None:
    graph = _graph(["A"])
    updated = graph.update_node("A", preserve_stochasticity=True)
    assert updated.get_node("A").preserve_stochasticity
    assert not graph.get_node("A").preserve_stochasticity
    with pytest.raises(ValueError):
        graph.update_node("A", id="B")


def test_get_unknown_node() -> None:
    with pytest.raises(KeyError, match="missing"):
        ExecutionGraph.new().get_node("missing")


def test_merge_completeness() -> None:
    """Merging keeps every node and edge of both graphs."""
    left = _graph(["A", "B"], [("A", "B")]).with_metadata(origin="left", shared=1)
    right = _graph(["A", "B"], [("A", "B")]).with_metadata(shared=2)
    merged, mapping = left.merge(right)

    assert len(merged) == len(left) + len(right)
    assert set(mapping) == {"A", "B"}
    assert not set(mapping.values()) & set(left.nodes)
    assert len(merged.edges) == len(left.edges) + len(right.edges)
    assert merged.outgoing(mapping["A"]) == [mapping["B"]]
    assert merged.metadata == {"origin": "left", "shared": 2}


def test_node_equality_ignores_metadata() -> None:
    graph, first = ExecutionGraph.new().add_node(KIND, node_id="x", metadata={"a": 1})
    other, _ = ExecutionGraph.new().add_node(KIND, node_id="x", metadata={"a": 2})
    assert graph.get_node(first) == other.get_node("x")


def test_function_kind_identity() -> None:
    kind = FunctionKind.from_callable(dummy_operator)
    assert kind.qualname == "dummy_operator"
    assert kind.arity == 1
    assert kind.target is dummy_operator
    assert kind == FunctionKind.from_callable(dummy_operator)


def test_llm_call_kind_from_target() -> None:
    class Client:
        model = "demo-model"
        operation_id = "ask"

    client = Client()
    kind = LlmCallKind.from_target(client)
    assert kind.component_type is Client
    assert kind.model == "demo-model"
    assert kind.operation_id == "ask"
    assert kind.target is client


def test_node_source_recorded() -> None:
    graph, node_id = ExecutionGraph.new().add_node(KIND, source=NodeSource.TRACE)
    assert graph.get_node(node_id).source is NodeSource.TRACE
