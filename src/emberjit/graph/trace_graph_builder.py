"""Build execution graphs by tracing one real execution."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Set, Tuple

from emberjit.errors import UnsupportedTargetError
from emberjit.fingerprint import Fingerprint, fingerprint
from emberjit.graph.execution_graph import ExecutionGraph, NodeSource
from emberjit.graph.structural_graph_builder import default_node_kind
from emberjit.tracer.trace_context import (
    ExecutionTrace,
    TraceEvent,
    TraceSession,
    recording,
)

logger = logging.getLogger(__name__)


def _describe(function: Any) -> str:
    return (
        getattr(function, "display_name", None)
        or getattr(function, "__qualname__", None)
        or type(function).__name__
    )


def reaches(graph: ExecutionGraph, start: str, goal: str) -> bool:
    """``True`` if a directed path leads from ``start`` to ``goal``."""
    stack, seen = [start], set()
    while stack:
        current = stack.pop()
        if current == goal:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(graph.outgoing(current))
    return False


class TraceGraphBuilder:
    """Record a pipeline execution and turn the record into a graph.

    Args:
        classify: Optional callable returning ``True`` for recorded callables
            that must be treated as stochastic. Defaults to their own
            ``stochastic`` declaration.

    Example:
        >>> builder = TraceGraphBuilder()
        >>> result, trace = builder.trace_execution(pipeline, {"value": 5})
        >>> graph = builder.build_graph_from_trace(trace)
    """

    def __init__(self, classify: Optional[Callable[[Any], bool]] = None) -> None:
        self._classify = classify

    def trace_execution(self, target: Any, sample_input: Mapping[str, Any]) -> Tuple[Any, ExecutionTrace]:
        """Execute ``target`` once while recording every instrumented sub-call.

        Each call uses its own :class:`TraceSession`; the session is released
        when the call finishes, whether it succeeds or raises. Exceptions from
        ``target`` propagate unchanged.

        Returns:
            The real result of ``target(inputs=sample_input)`` and the ordered
            trace of that execution.

        Raises:
            UnsupportedTargetError: If ``target`` is not callable.
        """
        if not callable(target):
            raise UnsupportedTargetError(f"Cannot trace {type(target).__name__} objects")

        session = TraceSession()
        try:
            with recording(session):
                result = target(inputs=sample_input)
        finally:
            trace = session.release()
        logger.debug("Trace session %s captured %d records", session.session_id[:8], len(trace))
        return result, trace

    def build_graph_from_trace(self, trace: ExecutionTrace) -> ExecutionGraph:
        """Convert a trace into an :class:`ExecutionGraph`.

        Calls of the same callable with the same input shape share one node.
        Returns are paired with pending calls of the same callable; returns
        that match no pending call are logged and skipped. A node depends on
        the most recent earlier node that produced a key present in its inputs.
        A call that was still running while a stochastic call ran is marked
        stochastic as well.
        """
        graph = ExecutionGraph.new({"builder": "trace", "record_count": len(trace)})
        nodes_by_identity: Dict[Tuple[Hashable, Fingerprint], str] = {}
        pending: Dict[int, List[Tuple[int, str]]] = defaultdict(list)
        producers: Dict[str, str] = {}
        linked: Set[Tuple[str, str]] = set()
        call_counts: Dict[str, int] = defaultdict(int)
        spans: Dict[int, List[Any]] = {}

        for index, record in enumerate(trace):
            function_key = id(record.function)
            if record.event is TraceEvent.CALL:
                inputs_pattern = fingerprint(record.value)
                identity = (function_key, inputs_pattern)
                node_id = nodes_by_identity.get(identity)
                if node_id is None:
                    graph, node_id = graph.add_node(
                        default_node_kind(record.function),
                        name=_describe(record.function),
                        inputs_pattern=inputs_pattern,
                        preserve_stochasticity=self._is_stochastic(record.function),
                        source=NodeSource.TRACE,
                        metadata={"first_call_at": record.timestamp},
                    )
                    nodes_by_identity[identity] = node_id
                call_counts[node_id] += 1
                if isinstance(record.value, Mapping):
                    graph = self._link_producers(graph, record.value, node_id, producers, linked)
                pending[function_key].append((record.call_id, node_id))
                spans[record.call_id] = [node_id, index, None]
                continue

            node_id = self._pair_return(pending[function_key], record.call_id)
            if node_id is None:
                logger.warning(
                    "Skipping RETURN of %s with no matching CALL (call id %s)",
                    _describe(record.function),
                    record.call_id,
                )
                continue
            if record.call_id in spans:
                spans[record.call_id][2] = index
            graph = graph.update_node(node_id, result_pattern=fingerprint(record.value))
            if isinstance(record.value, Mapping):
                for key in record.value:
                    producers[key] = node_id

        for node_id, count in call_counts.items():
            node = graph.nodes[node_id]
            graph = graph.update_node(node_id, metadata={**node.metadata, "call_count": count})
        graph = self._mark_enclosing_calls(graph, spans, len(trace))
        return graph.with_metadata(node_count=len(graph.nodes), edge_count=len(graph.edges))

    def build_graph(self, target: Any, sample_input: Mapping[str, Any]) -> Tuple[Any, ExecutionGraph]:
        """Trace ``target`` and build its graph in one step."""
        result, trace = self.trace_execution(target, sample_input)
        return result, self.build_graph_from_trace(trace)

    def _is_stochastic(self, function: Any) -> bool:
        if self._classify is not None:
            return bool(self._classify(function))
        return bool(getattr(function, "stochastic", False))

    @staticmethod
    def _mark_enclosing_calls(
        graph: ExecutionGraph, spans: Dict[int, List[Any]], trace_length: int
    ) -> ExecutionGraph:
        intervals: List[Tuple[str, int, int]] = [
            (node_id, start, trace_length if end is None else end)
            for node_id, start, end in spans.values()
        ]
        stochastic = [
            (start, end) for node_id, start, end in intervals
            if graph.nodes[node_id].preserve_stochasticity
        ]
        enclosing: Set[str] = {
            node_id for node_id, start, end in intervals
            if not graph.nodes[node_id].preserve_stochasticity
            and any(start < inner_start and inner_end < end for inner_start, inner_end in stochastic)
        }
        for node_id in sorted(enclosing):
            node = graph.nodes[node_id]
            logger.debug("Marking %s stochastic: it enclosed a stochastic call", node.label)
            graph = graph.update_node(
                node_id,
                preserve_stochasticity=True,
                metadata={**node.metadata, "encloses_stochastic": True},
            )
        return graph

    @staticmethod
    def _pair_return(candidates: List[Tuple[int, str]], call_id: int) -> str | None:
        for index, (pending_id, node_id) in enumerate(candidates):
            if pending_id == call_id:
                del candidates[index]
                return node_id
        if candidates:
            return candidates.pop()[1]
        return None

    @staticmethod
    def _link_producers(
        graph: ExecutionGraph,
        inputs: Mapping[str, Any],
        node_id: str,
        producers: Dict[str, str],
        linked: Set[Tuple[str, str]],
    ) -> ExecutionGraph:
        for key in inputs:
            producer = producers.get(key)
            if producer is None or producer == node_id or (producer, node_id) in linked:
                continue
            # A reused node can consume its own downstream output; keep the graph acyclic.
            if reaches(graph, node_id, producer):
                logger.debug("Dropping data edge %s -> %s that would close a cycle", producer, node_id)
                continue
            graph = graph.add_edge(producer, node_id)
            linked.add((producer, node_id))
        return graph


__all__ = ["TraceGraphBuilder", "reaches"]
