"""Tests for stochastic unit detection."""

from __future__ import annotations

from emberjit.graph.execution_graph import LlmCallKind, Node, OperatorKind
from emberjit.jit.llm_detector import LLMDetector, NodeRole, iter_leaves
from emberjit.operators import (
    FunctionOperator,
    FusedOperator,
    LLMOperator,
    MapOperator,
    Operator,
    ParallelOperator,
    SequenceOperator,
)


class UndeclaredOperator(Operator):
    def forward(self, *, inputs):
        return inputs


class DeclaredOperator(Operator):
    stochastic = False

    def forward(self, *, inputs):
        return inputs


def call_openai(value):
    return value


def format_prompt(value):
    return value


def test_llm_operator_is_stochastic(fake_model) -> None:
    assert LLMDetector().is_stochastic(LLMOperator(fake_model, "{x}"))


def test_explicit_declaration_wins(fake_model) -> None:
    detector = LLMDetector()
    operator = LLMOperator(fake_model, "{x}")
    operator.stochastic = False

    assert not detector.is_stochastic(operator)
    assert not detector.is_stochastic(DeclaredOperator())


def test_undeclared_operators_are_treated_as_stochastic() -> None:
    assert LLMDetector().is_stochastic(UndeclaredOperator())


def test_function_names_are_checked() -> None:
    detector = LLMDetector()

    assert detector.is_stochastic(MapOperator(call_openai, "x", "y"))
    assert not detector.is_stochastic(MapOperator(format_prompt, "x", "y"))
    assert detector.is_stochastic(FunctionOperator(call_openai))


def test_function_declaration_overrides_name() -> None:
    def chat_lookup(value):
        return value

    chat_lookup.stochastic = False
    assert not LLMDetector().is_stochastic(MapOperator(chat_lookup, "x", "y"))


def test_function_operators_are_stochastic_unless_declared() -> None:
    def lookup(*, inputs):
        return inputs

    def normalize(*, inputs):
        return inputs

    normalize.stochastic = False
    detector = LLMDetector()

    assert detector.is_stochastic(FunctionOperator(lookup))
    assert not detector.is_stochastic(FunctionOperator(normalize))


def test_composites_are_stochastic_if_any_child_is(fake_model) -> None:
    detector = LLMDetector()
    deterministic = SequenceOperator([MapOperator(abs, "x", "x")])
    mixed = ParallelOperator([MapOperator(abs, "x", "x"), LLMOperator(fake_model, "{x}")])

    assert not detector.is_stochastic(deterministic)
    assert detector.is_stochastic(mixed)
    assert detector.contains_stochastic(SequenceOperator([mixed]))


def test_fused_operators_are_deterministic() -> None:
    fused = FusedOperator([MapOperator(abs, "x", "x"), MapOperator(abs, "x", "x")])
    assert not LLMDetector().is_stochastic(fused)


def test_marked_nodes_are_stochastic() -> None:
    detector = LLMDetector()
    leaf = MapOperator(abs, "x", "x")

    kind = OperatorKind.from_operator(leaf)

    assert not detector.is_stochastic(Node(id="n", kind=kind))
    assert detector.is_stochastic(Node(id="n", kind=kind, preserve_stochasticity=True))
    assert detector.is_stochastic(Node(id="n", kind=LlmCallKind.from_target(leaf)))


def test_classify_role(fake_model) -> None:
    detector = LLMDetector()

    assert detector.classify_role(LLMOperator(fake_model, "{x}")) is NodeRole.LLM_CALL
    assert detector.classify_role(MapOperator(format_prompt, "x", "y")) is NodeRole.PROMPT_PREPARATION
    assert (
        detector.classify_role(MapOperator(abs, "raw", "answer", name="parse_answer"))
        is NodeRole.RESULT_PROCESSING
    )
    assert detector.classify_role(MapOperator(abs, "x", "x")) is NodeRole.UNRELATED


def test_llm_score(qa_pipeline, arithmetic_pipeline) -> None:
    detector = LLMDetector()

    assert detector.llm_score(arithmetic_pipeline) == 0
    assert detector.llm_score(qa_pipeline()) == 90


def test_iter_leaves_in_declaration_order(arithmetic_pipeline) -> None:
    nested = SequenceOperator([arithmetic_pipeline, MapOperator(abs, "value", "value")])
    leaves = list(iter_leaves(nested))

    assert leaves[:2] == list(arithmetic_pipeline.children())
    assert len(leaves) == 3
