"""Validated strategy options."""

from __future__ import annotations

from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing_extensions import TypedDict

from emberjit.jit.modes import JITMode


class StrategyOptionsDict(TypedDict, total=False):
    """Keyword options accepted by :func:`emberjit.jit` besides ``mode``."""

    batch_size: int
    optimize_prompt: bool
    optimize_postprocess: bool
    preserve_stochasticity: bool
    batch_requests: bool
    score_threshold: int
    min_fusion_length: int
    min_parallel_group: int
    force_trace: bool
    recursive: bool


class JITOptions(BaseModel):
    """Options shared by the JIT entry point and the optimization strategies.

    Unknown keys are rejected. An unknown ``mode`` string is kept when it names
    a strategy registered on the selector; otherwise the selector falls back
    to ``auto``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Union[JITMode, str] = JITMode.AUTO
    batch_size: int = Field(default=5, ge=1)
    optimize_prompt: bool = True
    optimize_postprocess: bool = True
    preserve_stochasticity: bool = True
    batch_requests: bool = False
    score_threshold: int = Field(default=25, ge=0, le=100)
    min_fusion_length: int = Field(default=2, ge=2)
    min_parallel_group: int = Field(default=2, ge=2)
    force_trace: bool = False
    recursive: bool = True

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Union[JITMode, str]:
        return JITMode.normalize(value)


__all__ = ["JITOptions", "StrategyOptionsDict"]
