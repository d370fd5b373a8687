"""Concurrent execution of independent units of work."""

from __future__ import annotations

import contextvars
import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_concurrently(
    tasks: Sequence[Callable[[], T]],
    *,
    max_workers: Optional[int] = None,
    parallel: bool = True,
) -> List[T]:
    """Run ``tasks`` and return their results in submission order.

    Every task runs in a copy of the caller's context so context-scoped state
    such as an active trace session stays visible to worker threads. The call
    returns only after all tasks have finished. If any task failed, the first
    failure in submission order is re-raised unchanged.

    Args:
        tasks: Zero-argument callables with no ordering constraints between them.
        max_workers: Upper bound on worker threads.
        parallel: Run sequentially in the calling thread when ``False``.

    Returns:
        The results of ``tasks`` in the same order.
    """
    if not parallel or len(tasks) <= 1:
        return [task() for task in tasks]

    workers = min(len(tasks), max_workers) if max_workers else len(tasks)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="emberjit") as executor:
        futures: List[Future[T]] = [
            executor.submit(contextvars.copy_context().run, task) for task in tasks
        ]
        wait(futures)

    failures = [future.exception() for future in futures if future.exception() is not None]
    if failures:
        if len(failures) > 1:
            logger.debug("%d of %d concurrent tasks failed", len(failures), len(tasks))
        raise failures[0]  # type: ignore[misc]
    return [future.result() for future in futures]


__all__ = ["run_concurrently"]
