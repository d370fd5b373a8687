"""Structure-based strategy.

Analyzes the declared operator tree without executing it and rewrites
sequences by fusing dependent map chains and grouping independent units for
concurrent execution.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from emberjit.jit.strategies.base import (
    AnalysisResult,
    Strategy,
    Traced,
    analyze_structure,
    structural_score,
)

logger = logging.getLogger(__name__)


class StructuralStrategy(Strategy):
    """Optimize pipelines from their declared structure alone."""

    name = "structural"

    def analyze(
        self,
        pipeline: Any,
        sample_input: Optional[Mapping[str, Any]] = None,
        *,
        traced: Optional[Traced] = None,
    ) -> AnalysisResult:
        structure = analyze_structure(pipeline, detector=self.detector, options=self.options)
        score = structural_score(structure)
        properties = structure.properties
        rationale = (
            f"{properties.complexity} unit(s) at depth {properties.depth}; "
            f"{len(structure.fusion_targets)} fusion and "
            f"{len(structure.parallelization_targets)} parallelization target(s)"
        )
        return AnalysisResult(
            strategy=self.name,
            score=score,
            rationale=rationale,
            properties=properties,
            fusion_targets=structure.fusion_targets,
            parallelization_targets=structure.parallelization_targets,
            graph=structure.graph,
        )


__all__ = ["StructuralStrategy"]
