"""Execution helpers used by compiled pipelines."""

from emberjit.engine.executor import run_concurrently

__all__ = ["run_concurrently"]
