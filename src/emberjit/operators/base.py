"""Base operator class for emberjit pipelines.

An operator transforms a keyed context: it is invoked as ``op(inputs=ctx)``
with a mapping and returns a mapping. Composite operators (sequence, parallel,
branch) only arrange other operators; leaf operators do the actual work and
are the units the optimizer fuses, parallelizes and caches.

Example:
    >>> class Shout(Operator):
    ...     stochastic = False
    ...
    ...     def forward(self, *, inputs):
    ...         return {"text": inputs["text"].upper()}
    ...
    ...     def reads(self):
    ...         return frozenset({"text"})
    ...
    ...     def writes(self):
    ...         return frozenset({"text"})
    >>> Shout()(inputs={"text": "hi"})
    {'text': 'HI'}
"""

from __future__ import annotations

from typing import Any, ClassVar, FrozenSet, Mapping, Optional, Sequence, Tuple

from emberjit.tracer.trace_context import record_invocation

KeySet = Optional[FrozenSet[str]]


class Operator:
    """Base class for pipeline operators.

    Attributes:
        name: Optional display name.
        operation_id: Optional stable identifier supplied by the author. Two
            operators of the same type with the same ``operation_id`` are
            considered the same unit when structural and traced graphs are
            reconciled.
        stochastic: ``True`` if results must never be reused across calls,
            ``False`` if the operator is known to be deterministic, ``None``
            if the operator makes no claim.
        composite: Class-level flag for operators that only arrange children.
    """

    composite: ClassVar[bool] = False
    stochastic: Optional[bool] = None

    def __init__(self, *, name: Optional[str] = None, operation_id: Optional[str] = None) -> None:
        self.name = name
        self.operation_id = operation_id

    def forward(self, *, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        """Process ``inputs`` and return outputs. Subclasses must implement this."""
        raise NotImplementedError("Subclasses must implement forward()")

    def __call__(self, *, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        if self.composite:
            return self.forward(inputs=inputs)
        return record_invocation(self, inputs, lambda: self.forward(inputs=inputs))

    def reads(self) -> KeySet:
        """Context keys this operator reads, or ``None`` if unknown."""
        return None

    def writes(self) -> KeySet:
        """Context keys this operator writes, or ``None`` if unknown."""
        return None

    def children(self) -> Tuple["Operator", ...]:
        """Operators arranged by this one; empty for leaves."""
        return ()

    def with_children(self, children: Sequence["Operator"]) -> "Operator":
        """Return a copy of this operator arranging ``children`` instead."""
        if children:
            raise TypeError(f"{type(self).__name__} does not arrange child operators")
        return self

    @property
    def display_name(self) -> str:
        return self.name or type(self).__name__

    def __repr__(self) -> str:
        if self.name:
            return f"{type(self).__name__}(name={self.name!r})"
        return f"{type(self).__name__}()"


def union_keys(key_sets: Sequence[KeySet]) -> KeySet:
    """Union of key sets where any unknown (``None``) member makes the result unknown."""
    merged: set[str] = set()
    for keys in key_sets:
        if keys is None:
            return None
        merged.update(keys)
    return frozenset(merged)


__all__ = ["KeySet", "Operator", "union_keys"]
