"""Strategy combining the declared structure with one traced execution."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from emberjit.graph.enhanced_graph_builder import EnhancedGraphBuilder
from emberjit.jit.strategies.base import (
    AnalysisResult,
    Strategy,
    Traced,
    analyze_structure,
    structural_score,
)

logger = logging.getLogger(__name__)

TRACE_BONUS = 10


class EnhancedStrategy(Strategy):
    """Optimize using structure plus the units actually observed at runtime.

    The traced graph covers work a structural walk cannot see, such as
    operators invoked from inside plain functions, so a successful trace
    raises the score.
    """

    name = "enhanced"
    requires_trace = True

    def __init__(self, *args: Any, builder: Optional[EnhancedGraphBuilder] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.builder = builder or EnhancedGraphBuilder(classify=self.detector.is_stochastic)

    def analyze(
        self,
        pipeline: Any,
        sample_input: Optional[Mapping[str, Any]] = None,
        *,
        traced: Optional[Traced] = None,
    ) -> AnalysisResult:
        structure = analyze_structure(pipeline, detector=self.detector, options=self.options)
        score = structural_score(structure)
        graph = structure.graph
        trace_nodes = 0
        if traced is not None or sample_input is not None:
            _, graph = self.builder.build_graph(
                pipeline,
                sample_input or {},
                recursive=self.options.recursive,
                traced=traced,
            )
            trace_nodes = graph.metadata.get("trace_node_count", 0)
            if trace_nodes:
                score = min(100, score + TRACE_BONUS)
        rationale = (
            f"{structure.properties.complexity} declared unit(s), {trace_nodes} traced; "
            f"{len(structure.fusion_targets)} fusion and "
            f"{len(structure.parallelization_targets)} parallelization target(s)"
        )
        return AnalysisResult(
            strategy=self.name,
            score=score,
            rationale=rationale,
            properties=structure.properties,
            fusion_targets=structure.fusion_targets,
            parallelization_targets=structure.parallelization_targets,
            graph=graph,
            metadata={"trace_node_count": trace_nodes},
        )


__all__ = ["EnhancedStrategy"]
