"""Tests for the model-call aware graph builder."""

from __future__ import annotations

import logging

import pytest

from emberjit.graph.execution_graph import LlmCallKind
from emberjit.graph.llm_graph_builder import LLMGraphBuilder, OptimizationLevel, roles_by_target
from emberjit.operators import MapOperator, SequenceOperator


def _by_name(graph):
    return {node.name: node for node in graph.nodes.values()}


def test_roles_around_model_call(qa_pipeline, fake_model) -> None:
    pipeline = qa_pipeline()
    result, graph = LLMGraphBuilder().build_graph(pipeline, {"question": " why? "})
    nodes = _by_name(graph)

    assert result["answer"] == "answer-0"
    assert fake_model.calls == 1
    llm = nodes["LLMOperator"]
    assert isinstance(llm.kind, LlmCallKind)
    assert llm.preserve_stochasticity
    assert llm.metadata["role"] == "llm_call"
    assert llm.metadata["cacheable"] is False
    assert nodes["prepare_question"].metadata["role"] == "prompt_preparation"
    assert nodes["parse_answer"].metadata["role"] == "result_processing"
    assert graph.metadata["llm_node_ids"] == (llm.id,)
    assert graph.metadata["optimization_level"] is OptimizationLevel.FULL
    assert graph.metadata["batch_size"] == 5


@pytest.mark.parametrize(
    "prompt, postprocess, level",
    [
        (True, True, OptimizationLevel.FULL),
        (True, False, OptimizationLevel.PARTIAL),
        (False, True, OptimizationLevel.PARTIAL),
        (False, False, OptimizationLevel.MINIMAL),
    ],
)
def test_optimization_level(prompt: bool, postprocess: bool, level: OptimizationLevel) -> None:
    assert OptimizationLevel.from_flags(prompt, postprocess) is level


def test_flags_control_cacheability(qa_pipeline) -> None:
    _, graph = LLMGraphBuilder().build_graph(
        qa_pipeline(), {"question": "q"}, optimize_prompt=False, batch_size=2
    )
    nodes = _by_name(graph)
    assert nodes["prepare_question"].metadata["cacheable"] is False
    assert nodes["parse_answer"].metadata["cacheable"] is True
    assert graph.metadata["batch_size"] == 2


def test_declared_llm_nodes(fake_model) -> None:
    remote = MapOperator(lambda text: text.upper(), "text", "text", name="remote_call")
    local = MapOperator(len, "text", "length", name="local")
    pipeline = SequenceOperator([remote, local])

    _, graph = LLMGraphBuilder().build_graph(pipeline, {"text": "hi"}, llm_nodes=[remote])
    nodes = _by_name(graph)
    assert nodes["remote_call"].preserve_stochasticity
    assert isinstance(nodes["remote_call"].kind, LlmCallKind)
    assert not nodes["local"].preserve_stochasticity
    assert nodes["local"].metadata["role"] == "result_processing"


def test_preserve_stochasticity_cannot_be_disabled(
    qa_pipeline, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING):
        _, graph = LLMGraphBuilder().build_graph(
            qa_pipeline(), {"question": "q"}, preserve_stochasticity=False
        )
    assert _by_name(graph)["LLMOperator"].preserve_stochasticity
    assert any("preserve_stochasticity=False" in record.message for record in caplog.records)


def test_roles_by_target(qa_pipeline) -> None:
    pipeline = qa_pipeline()
    _, graph = LLMGraphBuilder().build_graph(pipeline, {"question": "q"})
    roles = roles_by_target(graph)
    prepare, llm, parse = pipeline.operators
    assert roles[id(prepare)] == ("prompt_preparation", True)
    assert roles[id(llm)] == ("llm_call", False)
    assert roles[id(parse)] == ("result_processing", True)
