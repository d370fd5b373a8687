"""Strategy for pipelines built around model calls.

Model calls are left exactly as they are: they run once per call and their
results are never cached. The deterministic work around them (prompt
preparation and result processing) is rewritten like any other pipeline and
its results are cached when the caller allows it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from emberjit.graph.llm_graph_builder import LLMGraphBuilder, roles_by_target
from emberjit.jit.cache import CachedOperator
from emberjit.jit.rewrite import map_leaves, rewrite
from emberjit.jit.strategies.base import (
    AnalysisResult,
    Strategy,
    Traced,
    analyze_structure,
)
from emberjit.operators.base import Operator
from emberjit.operators.basic import FusedOperator

logger = logging.getLogger(__name__)

# Batch field -> key used for items that are not mappings.
BATCH_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("batch", "item"),
    ("inputs", "input"),
    ("requests", "request"),
    ("prompts", "prompt"),
    ("batch_inputs", "item"),
)


def split_batch_request(inputs: Any) -> Optional[List[Dict[str, Any]]]:
    """Split a batch request into per-item inputs, or return ``None``.

    A batch request carries a list under one of the batch fields; ``inputs``
    only counts with more than one item. The remaining fields are shared by
    every item, and items that are not mappings are stored under the field's
    singular key.

    Example:
        >>> split_batch_request({"prompts": ["a", "b"], "tone": "dry"})
        [{'tone': 'dry', 'prompt': 'a'}, {'tone': 'dry', 'prompt': 'b'}]
    """
    if not isinstance(inputs, Mapping):
        return None
    for field_name, item_key in BATCH_FIELDS:
        items = inputs.get(field_name)
        if not isinstance(items, (list, tuple)):
            continue
        if field_name == "inputs" and len(items) <= 1:
            continue
        shared = {
            key: value for key, value in inputs.items()
            if key not in {name for name, _ in BATCH_FIELDS}
        }
        return [
            {**shared, **item} if isinstance(item, Mapping) else {**shared, item_key: item}
            for item in items
        ]
    return None


class LLMStrategy(Strategy):
    """Optimize the deterministic parts of model-call pipelines."""

    name = "llm"
    requires_trace = True

    def __init__(self, *args: Any, builder: Optional[LLMGraphBuilder] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.builder = builder or LLMGraphBuilder(detector=self.detector)

    def analyze(
        self,
        pipeline: Any,
        sample_input: Optional[Mapping[str, Any]] = None,
        *,
        traced: Optional[Traced] = None,
    ) -> AnalysisResult:
        structure = analyze_structure(pipeline, detector=self.detector, options=self.options)
        score = self.detector.llm_score(pipeline)
        graph = structure.graph
        flags = dict(
            optimize_prompt=self.options.optimize_prompt,
            optimize_postprocess=self.options.optimize_postprocess,
            batch_size=self.options.batch_size,
        )
        if traced is not None or (score and sample_input is not None):
            _, graph = self.builder.build_graph(
                pipeline,
                sample_input or {},
                recursive=self.options.recursive,
                preserve_stochasticity=self.options.preserve_stochasticity,
                traced=traced,
                **flags,
            )
        else:
            graph = self.builder.annotate(graph, **flags)
        roles = roles_by_target(graph)
        llm_nodes = graph.metadata["llm_node_ids"]
        if llm_nodes and not score:
            # Model calls reached through plain functions only show up in the trace.
            score = 60 + min(20, len(llm_nodes) * 10)
        rationale = (
            f"{len(llm_nodes)} model call(s) among {len(graph)} node(s)"
            if score
            else "no model calls detected"
        )
        return AnalysisResult(
            strategy=self.name,
            score=score,
            rationale=rationale,
            properties=structure.properties,
            fusion_targets=structure.fusion_targets,
            parallelization_targets=structure.parallelization_targets,
            graph=graph,
            metadata={"roles": roles, "llm_node_ids": tuple(llm_nodes)},
        )

    def _compile(
        self,
        pipeline: Any,
        sample_input: Optional[Mapping[str, Any]],
        analysis: AnalysisResult,
    ) -> Any:
        compiled = rewrite(pipeline, self.rewrite_options(analysis), self.detector)
        if not self.config.cache:
            return compiled
        roles: Mapping[int, Tuple[str, bool]] = analysis.metadata.get("roles", {})
        return map_leaves(compiled, lambda leaf: self._cache_leaf(leaf, roles))

    def _cache_leaf(self, leaf: Any, roles: Mapping[int, Tuple[str, bool]]) -> Any:
        if not isinstance(leaf, Operator) or self.detector.is_stochastic(leaf):
            return leaf
        members = leaf.operators if isinstance(leaf, FusedOperator) else (leaf,)
        if not all(roles.get(id(member), ("", True))[1] for member in members):
            return leaf
        return CachedOperator(leaf, self.cache, detector=self.detector)


__all__ = ["LLMStrategy", "split_batch_request"]
