"""Execution graphs and the builders that derive them from pipelines.

The model-call aware builder lives in
:mod:`emberjit.graph.llm_graph_builder` and is imported from there, since it
depends on the detector in :mod:`emberjit.jit`.
"""

from emberjit.graph.enhanced_graph_builder import (
    EnhancedGraphBuilder,
    merge_trace_and_structure,
    nodes_equivalent,
)
from emberjit.graph.execution_graph import (
    Edge,
    ExecutionGraph,
    FunctionKind,
    LlmCallKind,
    Node,
    NodeKind,
    NodeSource,
    OperatorKind,
)
from emberjit.graph.structural_graph_builder import StructuralGraphBuilder, nodes_by_path
from emberjit.graph.trace_graph_builder import TraceGraphBuilder

__all__ = [
    # Graph model
    "Edge",
    "ExecutionGraph",
    "FunctionKind",
    "LlmCallKind",
    "Node",
    "NodeKind",
    "NodeSource",
    "OperatorKind",
    # Builders
    "EnhancedGraphBuilder",
    "StructuralGraphBuilder",
    "TraceGraphBuilder",
    "merge_trace_and_structure",
    "nodes_by_path",
    "nodes_equivalent",
]
