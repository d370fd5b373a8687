"""Tests for result caching."""

from __future__ import annotations

import logging

import pytest

from emberjit.errors import XCSError
from emberjit.fingerprint import signature, signature_key, structure_key
from emberjit.jit.cache import (
    CachedOperator,
    CachingStrategy,
    PartialCache,
    analyze_cacheability,
    determine_caching_strategy,
)
from emberjit.operators import LLMOperator, MapOperator, SequenceOperator


class Counter:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        return {"doubled": value["x"] * 2}


def test_second_call_is_served_from_cache() -> None:
    cache = PartialCache()
    compute = Counter()

    assert cache.execute_cached("node", {"x": 2}, compute) == {"doubled": 4}
    assert cache.execute_cached("node", {"x": 2}, compute) == {"doubled": 4}
    assert compute.calls == 1

    stats = cache.stats("node")
    assert (stats.hits, stats.misses, stats.size) == (1, 1, 1)
    assert stats.hit_rate == 0.5


def test_callers_mutating_results_do_not_change_later_hits() -> None:
    cache = PartialCache()
    compute = Counter()

    stored = cache.execute_cached("node", {"x": 5}, compute)
    stored["doubled"] = -1
    hit = cache.execute_cached("node", {"x": 5}, compute)
    hit["doubled"] = -2

    assert cache.execute_cached("node", {"x": 5}, compute) == {"doubled": 10}
    assert compute.calls == 1


def test_different_inputs_and_keys_do_not_share_entries() -> None:
    cache = PartialCache()
    compute = Counter()

    cache.execute_cached("a", {"x": 1}, compute)
    cache.execute_cached("a", {"x": 2}, compute)
    cache.execute_cached("b", {"x": 1}, compute)

    assert compute.calls == 3
    assert len(cache) == 3


def test_key_function_selects_relevant_fields() -> None:
    cache = PartialCache()
    compute = Counter()
    key_fn = lambda inputs: inputs["x"]  # noqa: E731

    cache.execute_cached("node", {"x": 1, "noise": 1}, compute, key_fn)
    cache.execute_cached("node", {"x": 1, "noise": 2}, compute, key_fn)

    assert compute.calls == 1


def test_least_recently_used_entry_is_evicted() -> None:
    cache = PartialCache(capacity=2)
    compute = Counter()

    cache.execute_cached("node", {"x": 1}, compute)
    cache.execute_cached("node", {"x": 2}, compute)
    cache.execute_cached("node", {"x": 1}, compute)
    cache.execute_cached("node", {"x": 3}, compute)

    assert cache.get("node", signature({"x": 1})) is not None
    assert cache.get("node", signature({"x": 2})) is None
    assert cache.stats().evictions == 1


def test_unsignable_inputs_degrade_to_miss(caplog: pytest.LogCaptureFixture) -> None:
    cache = PartialCache()
    marker = object()
    calls = []

    def compute(value):
        calls.append(value)
        return "computed"

    with caplog.at_level(logging.WARNING, logger="emberjit.jit.cache"):
        assert cache.execute_cached("node", {"x": marker}, compute) == "computed"
        assert cache.execute_cached("node", {"x": marker}, compute) == "computed"

    assert len(calls) == 2
    assert len(cache) == 0
    assert cache.stats("node").errors == 2
    assert "Cannot derive cache signature" in caplog.text


def test_compute_errors_propagate_and_store_nothing() -> None:
    cache = PartialCache()

    def fail(_):
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        cache.execute_cached("node", {"x": 1}, fail)
    assert len(cache) == 0


def test_clear_resets_entries_and_statistics() -> None:
    cache = PartialCache()
    cache.execute_cached("node", {"x": 1}, Counter())
    cache.clear()

    assert len(cache) == 0
    assert cache.get_metrics() == {
        "hits": 0,
        "misses": 0,
        "hit_rate": 0.0,
        "total_calls": 0,
        "errors": 0,
        "evictions": 0,
        "size": 0,
    }


def test_put_and_get() -> None:
    cache = PartialCache()
    cache.put("node", "sig", {"cached": True})

    entry = cache.get("node", "sig")
    assert entry is not None
    assert entry.value == {"cached": True}
    assert cache.execute_cached("node", {}, lambda _: "fresh", lambda _: "sig") == {"cached": True}


def test_invalid_capacity() -> None:
    with pytest.raises(XCSError):
        PartialCache(capacity=0)


def test_cached_operator_signs_only_read_keys() -> None:
    calls = []

    def double(value):
        calls.append(value)
        return value * 2

    cached = CachedOperator(MapOperator(double, "x", "y"), PartialCache())

    assert cached(inputs={"x": 3, "other": 1}) == {"y": 6}
    assert cached(inputs={"x": 3, "other": 2}) == {"y": 6}
    assert calls == [3]
    assert cached.stats().hits == 1
    assert cached.reads() == frozenset({"x"})
    assert cached.writes() == frozenset({"y"})


def test_cached_operators_for_distinct_operators_do_not_collide() -> None:
    cache = PartialCache()
    first = CachedOperator(MapOperator(lambda x: x + 1, "x", "y"), cache)
    second = CachedOperator(MapOperator(lambda x: x - 1, "x", "y"), cache)

    assert first(inputs={"x": 1}) == {"y": 2}
    assert second(inputs={"x": 1}) == {"y": 0}


def test_cached_operator_refuses_stochastic_operators(fake_model) -> None:
    with pytest.raises(XCSError, match="stochastic"):
        CachedOperator(LLMOperator(fake_model, "{x}"), PartialCache())


def test_cacheability_of_mixed_pipeline(fake_model) -> None:
    deterministic = MapOperator(str.strip, "q", "q")
    pipeline = SequenceOperator([deterministic, LLMOperator(fake_model, "{q}")])

    report = analyze_cacheability(pipeline)
    assert not report.cacheable
    assert report.partially_cacheable
    assert report.llm_operation

    assert analyze_cacheability(deterministic).cacheable


def test_caching_strategy_selection(fake_model) -> None:
    deterministic = MapOperator(str.strip, "q", "q")

    assert determine_caching_strategy(deterministic).strategy is CachingStrategy.FULL
    assert determine_caching_strategy(deterministic).key_function is signature

    lossy = determine_caching_strategy(deterministic, prefer=CachingStrategy.SIGNATURE_BASED)
    assert lossy.key_function is signature_key
    prompt_only = determine_caching_strategy(deterministic, prefer=CachingStrategy.PROMPT_ONLY)
    assert prompt_only.key_function is structure_key

    plan = determine_caching_strategy(
        LLMOperator(fake_model, "{q}"), prefer=CachingStrategy.FULL
    )
    assert plan.strategy is CachingStrategy.NONE
    assert plan.key_function is None
