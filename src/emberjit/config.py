"""Runtime configuration of jitted pipelines.

A :class:`Config` decides how a compiled pipeline runs: whether independent
units execute concurrently, whether deterministic results are cached and how
many entries the cache may hold, and whether timings are recorded. ``jit``
accepts a config object, a mapping of overrides applied to the defaults, or
the name of one of the :class:`Presets`.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Union

from emberjit.errors import XCSError

DEFAULT_CACHE_CAPACITY = 1024


@dataclass(frozen=True, slots=True)
class Config:
    """Runtime configuration for compiled pipelines.

    Attributes:
      parallel: Run grouped independent units on a thread pool. `False`
        runs every group in declaration order on the calling thread.
      cache: Reuse results of deterministic work. Model calls are never
        cached regardless of this flag.
      profile: Record per-call timings in the shared profiler.
      max_workers: Thread cap for one parallel group; `None` sizes the pool
        to the group.
      cache_capacity: Entries kept before the least recently used one is
        evicted; `None` disables eviction. Any value other than the default
        gives the pipeline a cache of its own.
    """

    parallel: bool = True
    cache: bool = True
    profile: bool = False
    max_workers: Optional[int] = None
    cache_capacity: Optional[int] = DEFAULT_CACHE_CAPACITY

    def __post_init__(self) -> None:
        for name in ("max_workers", "cache_capacity"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or value <= 0):
                raise XCSError(f"{name} must be a positive integer when provided")

    @property
    def private_cache(self) -> bool:
        """``True`` if the capacity differs from what the shared cache uses."""
        return self.cache_capacity != DEFAULT_CACHE_CAPACITY

    def to_dict(self) -> Dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self)}

    def apply_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "Config":
        """Return a copy with ``overrides`` applied.

        Raises:
          XCSError: If a key is not a configuration field.
        """
        if not overrides:
            return self
        unknown = set(overrides).difference(self.to_dict())
        if unknown:
            raise XCSError(f"Unknown config keys: {sorted(unknown)}")
        return replace(self, **overrides)


class Presets:
    """Named configurations for common situations."""

    NO_CACHE = Config(cache=False)
    DEBUG = Config(profile=True, parallel=False)
    SERIAL = Config(parallel=False)
    LIGHTWEIGHT = Config(max_workers=2, cache_capacity=128)

    @classmethod
    def named(cls, name: str) -> Config:
        """Look a preset up by name, case-insensitively.

        Raises:
          XCSError: If no preset has that name.
        """
        preset = getattr(cls, name.upper(), None)
        if not isinstance(preset, Config):
            raise XCSError(f"Unknown config preset {name!r}; choose from {cls.names()}")
        return preset

    @classmethod
    def names(cls) -> List[str]:
        return sorted(
            name.lower() for name, value in vars(cls).items() if isinstance(value, Config)
        )


ConfigLike = Union[Config, Mapping[str, Any], str, None]


def resolve_config(value: ConfigLike) -> Config:
    """Turn what a caller passed as ``config`` into a :class:`Config`.

    Raises:
      XCSError: For unknown preset names, unknown override keys or values of
        any other type.
    """
    if value is None:
        return Config()
    if isinstance(value, Config):
        return value
    if isinstance(value, str):
        return Presets.named(value)
    if isinstance(value, Mapping):
        return Config().apply_overrides(value)
    raise XCSError("config must be a Config, a preset name or a mapping of configuration keys")


__all__ = ["Config", "ConfigLike", "DEFAULT_CACHE_CAPACITY", "Presets", "resolve_config"]
