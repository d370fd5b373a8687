"""Exception types raised by the emberjit optimizer.

Only failures of the optimizer's own bookkeeping use this hierarchy. Errors
raised by the pipeline being optimized propagate unchanged, so callers can
always tell the two apart.
"""

from typing import Sequence


class XCSError(RuntimeError):
    """Base exception for all optimizer failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class GraphCycleError(XCSError):
    """Raised when a topological traversal finds a cycle."""

    def __init__(self, remaining: Sequence[str]) -> None:
        self.remaining = tuple(remaining)
        super().__init__(f"Graph contains a cycle; unprocessed nodes: {sorted(self.remaining)}")


class DanglingEdgeError(XCSError):
    """Raised when an edge references a node that is not in the graph."""

    def __init__(self, source: str, target: str, missing: str) -> None:
        self.source = source
        self.target = target
        self.missing = missing
        super().__init__(f"Edge {source!r} -> {target!r} references unknown node {missing!r}")


class UnsupportedTargetError(XCSError):
    """Raised when a target cannot be traced or compiled."""


class TraceError(XCSError):
    """Raised when trace bookkeeping is used incorrectly."""


class CompilationError(XCSError):
    """Raised when analysis or compilation of a pipeline fails."""


class CacheError(XCSError):
    """Raised internally when a cache signature cannot be derived."""


__all__ = [
    "XCSError",
    "GraphCycleError",
    "DanglingEdgeError",
    "UnsupportedTargetError",
    "TraceError",
    "CompilationError",
    "CacheError",
]
