"""Graph builder that marks model-call boundaries.

Model calls are stochastic: they must run exactly once per logical call and
must never be cached or merged. The builder marks them as ``LlmCallKind``
nodes and labels the deterministic work around them so that strategies know
which parts are safe to cache.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Collection, Dict, Mapping, Optional, Set, Tuple

from emberjit.graph.enhanced_graph_builder import EnhancedGraphBuilder
from emberjit.graph.execution_graph import ExecutionGraph, LlmCallKind, Node
from emberjit.jit.llm_detector import LLMDetector, NodeRole
from emberjit.tracer.trace_context import ExecutionTrace

logger = logging.getLogger(__name__)


class OptimizationLevel(enum.Enum):
    """How much of the deterministic work around model calls may be optimized."""

    FULL = "full"
    PARTIAL = "partial"
    MINIMAL = "minimal"

    @classmethod
    def from_flags(cls, optimize_prompt: bool, optimize_postprocess: bool) -> "OptimizationLevel":
        if optimize_prompt and optimize_postprocess:
            return cls.FULL
        if optimize_prompt or optimize_postprocess:
            return cls.PARTIAL
        return cls.MINIMAL


class LLMGraphBuilder:
    """Build an execution graph annotated for model-call pipelines.

    Args:
        detector: Classifier for stochastic units.
        enhanced_builder: Builder producing the underlying merged graph.
    """

    def __init__(
        self,
        detector: Optional[LLMDetector] = None,
        enhanced_builder: Optional[EnhancedGraphBuilder] = None,
    ) -> None:
        self.detector = detector or LLMDetector()
        self.enhanced_builder = enhanced_builder or EnhancedGraphBuilder(
            classify=self.detector.is_stochastic
        )

    def build_graph(
        self,
        target: Any,
        sample_input: Mapping[str, Any],
        *,
        llm_nodes: Optional[Collection[Any]] = None,
        recursive: bool = True,
        optimize_prompt: bool = True,
        optimize_postprocess: bool = True,
        preserve_stochasticity: bool = True,
        batch_size: int = 5,
        traced: Optional[Tuple[Any, ExecutionTrace]] = None,
    ) -> Tuple[Any, ExecutionGraph]:
        """Execute ``target`` once and return its result with an annotated graph.

        Args:
            target: Pipeline to analyze.
            sample_input: Input for the traced execution.
            llm_nodes: Units (or node ids) known to be model calls. When
                omitted, the detector classifies every node. Nodes already
                marked stochastic stay marked either way.
            recursive: Expand nested composites.
            optimize_prompt: Allow caching of prompt preparation.
            optimize_postprocess: Allow caching of result processing.
            preserve_stochasticity: Must stay ``True``; model calls are always
                preserved and a ``False`` value is only logged.
            batch_size: Chunk size recorded for batched execution.
            traced: A ``(result, trace)`` pair from an execution that already
                happened.
        """
        if not preserve_stochasticity:
            logger.warning(
                "preserve_stochasticity=False ignored: model calls are never cached or deduplicated"
            )
        result, graph = self.enhanced_builder.build_graph(
            target, sample_input, recursive=recursive, traced=traced
        )
        return result, self.annotate(
            graph,
            llm_nodes=llm_nodes,
            optimize_prompt=optimize_prompt,
            optimize_postprocess=optimize_postprocess,
            batch_size=batch_size,
        )

    def annotate(
        self,
        graph: ExecutionGraph,
        *,
        llm_nodes: Optional[Collection[Any]] = None,
        optimize_prompt: bool = True,
        optimize_postprocess: bool = True,
        batch_size: int = 5,
    ) -> ExecutionGraph:
        """Mark model calls in ``graph`` and label the nodes around them."""
        stochastic_ids = self._stochastic_ids(graph, llm_nodes)
        for node_id in stochastic_ids:
            node = graph.get_node(node_id)
            kind = node.kind
            if not isinstance(kind, LlmCallKind):
                kind = LlmCallKind.from_target(node.target)
            graph = graph.update_node(
                node_id,
                kind=kind,
                preserve_stochasticity=True,
                metadata={**node.metadata, "role": NodeRole.LLM_CALL.value, "cacheable": False},
            )

        for node_id in graph.node_ids():
            if node_id in stochastic_ids:
                continue
            node = graph.get_node(node_id)
            role = self._role(graph, node, stochastic_ids)
            cacheable = {
                NodeRole.PROMPT_PREPARATION: optimize_prompt,
                NodeRole.RESULT_PROCESSING: optimize_postprocess,
            }.get(role, True)
            graph = graph.update_node(
                node_id, metadata={**node.metadata, "role": role.value, "cacheable": cacheable}
            )

        level = OptimizationLevel.from_flags(optimize_prompt, optimize_postprocess)
        logger.debug(
            "LLM graph: %d model call(s) among %d nodes, optimization level %s",
            len(stochastic_ids),
            len(graph),
            level.value,
        )
        return graph.with_metadata(
            builder="llm",
            llm_node_ids=tuple(sorted(stochastic_ids)),
            optimization_level=level,
            batch_size=batch_size,
        )

    def _stochastic_ids(
        self, graph: ExecutionGraph, llm_nodes: Optional[Collection[Any]]
    ) -> Set[str]:
        if llm_nodes is None:
            return {
                node_id for node_id, node in graph.nodes.items() if self.detector.is_stochastic(node)
            }
        declared_ids = {item for item in llm_nodes if isinstance(item, str)}
        declared_units = [item for item in llm_nodes if not isinstance(item, str)]
        marked: Set[str] = set()
        for node_id, node in graph.nodes.items():
            if node_id in declared_ids or node.preserve_stochasticity:
                marked.add(node_id)
            elif isinstance(node.kind, LlmCallKind):
                marked.add(node_id)
            elif any(node.target is unit for unit in declared_units):
                marked.add(node_id)
        return marked

    def _role(self, graph: ExecutionGraph, node: Node, stochastic_ids: Set[str]) -> NodeRole:
        if any(successor in stochastic_ids for successor in graph.outgoing(node.id)):
            return NodeRole.PROMPT_PREPARATION
        if any(predecessor in stochastic_ids for predecessor in graph.incoming(node.id)):
            return NodeRole.RESULT_PROCESSING
        return self.detector.classify_role(node.target)


def roles_by_target(graph: ExecutionGraph) -> Dict[int, Tuple[str, bool]]:
    """Map ``id(target)`` of each annotated node to its ``(role, cacheable)`` pair.

    A target behind several nodes is cacheable only if every one of them is,
    and is a model call if any of them is.
    """
    roles: Dict[int, Tuple[str, bool]] = {}
    for node in graph.nodes.values():
        if node.target is None or "role" not in node.metadata:
            continue
        role, cacheable = node.metadata["role"], node.metadata["cacheable"]
        previous = roles.get(id(node.target))
        if previous is not None:
            if previous[0] == NodeRole.LLM_CALL.value:
                role = previous[0]
            cacheable = cacheable and previous[1]
        roles[id(node.target)] = (role, cacheable)
    return roles


__all__ = ["LLMGraphBuilder", "OptimizationLevel", "roles_by_target"]
