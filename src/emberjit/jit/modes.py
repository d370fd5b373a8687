"""JIT compilation modes."""

from __future__ import annotations

import enum
from typing import Union


class JITMode(str, enum.Enum):
    """Strategy selection modes.

    ``AUTO`` asks every registered strategy to score the target and picks the
    highest score; the other members force a specific strategy.
    """

    AUTO = "auto"
    STRUCTURAL = "structural"
    ENHANCED = "enhanced"
    LLM = "llm"

    @classmethod
    def normalize(cls, mode: Union["JITMode", str]) -> Union["JITMode", str]:
        """Return the enum member for ``mode``, or the lowercased name of a custom mode."""
        if isinstance(mode, cls):
            return mode
        name = str(mode).strip().lower()
        try:
            return cls(name)
        except ValueError:
            return name


__all__ = ["JITMode"]
