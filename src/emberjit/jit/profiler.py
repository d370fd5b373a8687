"""Lightweight timing for jitted pipelines."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass(slots=True)
class FunctionStats:
    """Aggregated timing information for one jitted pipeline."""

    name: str
    call_count: int = 0
    total_time_ms: float = 0.0
    min_time_ms: float = float("inf")
    max_time_ms: float = 0.0
    compile_count: int = 0
    compile_time_ms: float = 0.0

    def record(self, elapsed_ms: float) -> None:
        self.call_count += 1
        self.total_time_ms += elapsed_ms
        self.min_time_ms = min(self.min_time_ms, elapsed_ms)
        self.max_time_ms = max(self.max_time_ms, elapsed_ms)

    def record_compile(self, elapsed_ms: float) -> None:
        self.compile_count += 1
        self.compile_time_ms += elapsed_ms

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.call_count if self.call_count else 0.0


class Profiler:
    """Collect and report call and compilation timings per pipeline name."""

    def __init__(self) -> None:
        self._stats: Dict[str, FunctionStats] = {}
        self._lock = threading.Lock()

    def record(self, func_name: str, elapsed_ms: float) -> None:
        with self._lock:
            self._entry(func_name).record(elapsed_ms)

    def record_compile(self, func_name: str, elapsed_ms: float) -> None:
        with self._lock:
            self._entry(func_name).record_compile(elapsed_ms)

    def get(self, func_name: str) -> Mapping[str, float]:
        with self._lock:
            stats = self._stats.get(func_name)
            if not stats:
                return {}
            return {
                "calls": float(stats.call_count),
                "total_time_ms": stats.total_time_ms,
                "avg_time_ms": stats.avg_time_ms,
                "min_time_ms": stats.min_time_ms if stats.call_count else 0.0,
                "max_time_ms": stats.max_time_ms,
                "compilations": float(stats.compile_count),
                "compile_time_ms": stats.compile_time_ms,
            }

    def summary(self) -> Mapping[str, Mapping[str, float]]:
        with self._lock:
            names = list(self._stats)
        return {name: self.get(name) for name in names}

    def clear(self) -> None:
        with self._lock:
            self._stats.clear()

    def _entry(self, func_name: str) -> FunctionStats:
        stats = self._stats.get(func_name)
        if stats is None:
            stats = self._stats[func_name] = FunctionStats(name=func_name)
        return stats


__all__ = ["Profiler", "FunctionStats"]
