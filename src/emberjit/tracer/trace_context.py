"""Execution-scoped trace sessions.

A :class:`TraceSession` owns the record buffer for exactly one traced
execution. While the traced call runs, the session handle is published through
a ``ContextVar`` so instrumented operators can find it without any global
buffer; concurrent sessions in other threads or tasks never see each other's
records. Worker threads spawned during the call must run inside a copied
context (see :mod:`emberjit.engine.executor`) to report into the same session.
"""

from __future__ import annotations

import contextvars
import enum
import itertools
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Tuple, TypeVar

from emberjit.errors import TraceError

T = TypeVar("T")

_ACTIVE_SESSION: contextvars.ContextVar[Optional["TraceSession"]] = contextvars.ContextVar(
    "emberjit_trace_session", default=None
)


class TraceEvent(enum.Enum):
    """Kind of a trace record."""

    CALL = "call"
    RETURN = "return"


@dataclass(frozen=True, slots=True)
class TraceRecord:
    """One CALL or RETURN event of a traced execution.

    Attributes:
        event: Whether the callable was entered or returned.
        function: The invoked operator or function.
        value: Inputs for CALL records, the returned value for RETURN records.
        timestamp: ``time.perf_counter()`` reading when the event happened.
        call_id: Sequence number of the invocation within its session.
    """

    event: TraceEvent
    function: Any
    value: Any
    timestamp: float
    call_id: int


ExecutionTrace = Tuple[TraceRecord, ...]


class TraceSession:
    """Record buffer for a single traced execution."""

    def __init__(self) -> None:
        self.session_id: str = uuid.uuid4().hex
        self._records: List[TraceRecord] = []
        self._lock = threading.Lock()
        self._counter = itertools.count()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def record_call(self, function: Any, inputs: Any) -> int:
        """Append a CALL record and return its call id."""
        with self._lock:
            self._ensure_open()
            call_id = next(self._counter)
            self._records.append(
                TraceRecord(TraceEvent.CALL, function, inputs, time.perf_counter(), call_id)
            )
        return call_id

    def record_return(self, call_id: int, function: Any, value: Any) -> None:
        """Append a RETURN record for a previously recorded call."""
        with self._lock:
            self._ensure_open()
            self._records.append(
                TraceRecord(TraceEvent.RETURN, function, value, time.perf_counter(), call_id)
            )

    def snapshot(self) -> ExecutionTrace:
        """Return the records collected so far in chronological order."""
        with self._lock:
            return tuple(self._records)

    def release(self) -> ExecutionTrace:
        """Close the session, drop its buffer and return the final trace."""
        with self._lock:
            trace = tuple(self._records)
            self._records = []
            self._released = True
        return trace

    def _ensure_open(self) -> None:
        if self._released:
            raise TraceError(f"Trace session {self.session_id} has already been released")

    def __repr__(self) -> str:
        return f"TraceSession(id={self.session_id[:8]}, records={len(self._records)})"


def current_session() -> Optional[TraceSession]:
    """Return the trace session active in the current context, if any."""
    return _ACTIVE_SESSION.get()


@contextmanager
def recording(session: TraceSession) -> Iterator[TraceSession]:
    """Publish ``session`` to instrumented code for the duration of the block."""
    token = _ACTIVE_SESSION.set(session)
    try:
        yield session
    finally:
        _ACTIVE_SESSION.reset(token)


def record_invocation(function: Any, inputs: Any, invoke: Callable[[], T]) -> T:
    """Run ``invoke`` and report it to the active session, if there is one.

    Exceptions raised by ``invoke`` propagate unchanged; the call is then left
    without a RETURN record.
    """
    session = _ACTIVE_SESSION.get()
    if session is None or session.released:
        return invoke()
    call_id = session.record_call(function, inputs)
    result = invoke()
    session.record_return(call_id, function, result)
    return result


__all__ = [
    "ExecutionTrace",
    "TraceEvent",
    "TraceRecord",
    "TraceSession",
    "current_session",
    "record_invocation",
    "recording",
]
