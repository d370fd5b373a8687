"""Execution tracing for pipeline analysis."""

from emberjit.tracer.trace_context import (
    ExecutionTrace,
    TraceEvent,
    TraceRecord,
    TraceSession,
    current_session,
    record_invocation,
    recording,
)

__all__ = [
    "ExecutionTrace",
    "TraceEvent",
    "TraceRecord",
    "TraceSession",
    "current_session",
    "record_invocation",
    "recording",
]
