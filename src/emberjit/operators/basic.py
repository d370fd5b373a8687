"""Composition primitives and simple leaf operators."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from emberjit.engine.executor import run_concurrently
from emberjit.operators.base import KeySet, Operator, union_keys

logger = logging.getLogger(__name__)


def _as_mapping(operator: Operator, output: Any) -> Mapping[str, Any]:
    if not isinstance(output, Mapping):
        raise TypeError(
            f"{operator.display_name} returned {type(output).__name__}; "
            "operators inside a composition must return a mapping"
        )
    return output


class MapOperator(Operator):
    """Apply ``function`` to one context value.

    With ``input_key`` the function receives ``inputs[input_key]``; without it,
    the whole context. With ``output_key`` the result is returned as
    ``{output_key: result}``; without it, the result is returned as is.

    Example:
        >>> MapOperator(lambda x: x * 2, "value", "value")(inputs={"value": 5})
        {'value': 10}
    """

    def __init__(
        self,
        function: Callable[[Any], Any],
        input_key: Optional[str] = None,
        output_key: Optional[str] = None,
        *,
        name: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> None:
        super().__init__(name=name, operation_id=operation_id)
        self.function = function
        self.input_key = input_key
        self.output_key = output_key
        self.stochastic = getattr(function, "stochastic", None)

    def forward(self, *, inputs: Mapping[str, Any]) -> Any:
        value = inputs.get(self.input_key) if self.input_key is not None else inputs
        result = self.function(value)
        if self.output_key is not None:
            return {self.output_key: result}
        return result

    @property
    def single_io(self) -> bool:
        """``True`` when the operator reads one key and writes one key."""
        return self.input_key is not None and self.output_key is not None

    def reads(self) -> KeySet:
        return frozenset({self.input_key}) if self.input_key is not None else None

    def writes(self) -> KeySet:
        return frozenset({self.output_key}) if self.output_key is not None else None


class FunctionOperator(Operator):
    """Leaf operator around a plain ``function(*, inputs)`` callable."""

    def __init__(
        self,
        function: Callable[..., Mapping[str, Any]],
        *,
        name: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> None:
        super().__init__(name=name or getattr(function, "__name__", None), operation_id=operation_id)
        self.function = function
        self.stochastic = getattr(function, "stochastic", None)

    def forward(self, *, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        return self.function(inputs=inputs)


class SequenceOperator(Operator):
    """Run operators in order, merging each output into the running context.

    Example:
        >>> double = MapOperator(lambda x: x * 2, "value", "value")
        >>> SequenceOperator([double, double])(inputs={"value": 1})
        {'value': 4}
    """

    composite = True

    def __init__(
        self,
        operators: Sequence[Operator],
        *,
        name: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> None:
        super().__init__(name=name, operation_id=operation_id)
        self.operators: Tuple[Operator, ...] = tuple(operators)

    def forward(self, *, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        context: Dict[str, Any] = dict(inputs)
        for operator in self.operators:
            output = _as_mapping(operator, operator(inputs=context))
            context = {**context, **output}
        return context

    def children(self) -> Tuple[Operator, ...]:
        return self.operators

    def with_children(self, children: Sequence[Operator]) -> "SequenceOperator":
        return SequenceOperator(children, name=self.name, operation_id=self.operation_id)

    def reads(self) -> KeySet:
        return union_keys([op.reads() for op in self.operators])

    def writes(self) -> KeySet:
        return union_keys([op.writes() for op in self.operators])

    def __repr__(self) -> str:
        return f"SequenceOperator({list(self.operators)!r})"


class ParallelOperator(Operator):
    """Run operators on the same input concurrently and merge their outputs.

    Outputs are merged into a copy of the input in declaration order, so a key
    written by several members keeps the value of the last one. Members that
    return the whole context only contribute the entries they changed.
    """

    composite = True

    def __init__(
        self,
        operators: Sequence[Operator],
        *,
        max_workers: Optional[int] = None,
        parallel: bool = True,
        name: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> None:
        super().__init__(name=name, operation_id=operation_id)
        self.operators: Tuple[Operator, ...] = tuple(operators)
        self.max_workers = max_workers
        self.parallel = parallel

    def forward(self, *, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        tasks = [
            (lambda op=operator: _as_mapping(op, op(inputs=dict(inputs))))
            for operator in self.operators
        ]
        results = run_concurrently(tasks, max_workers=self.max_workers, parallel=self.parallel)
        merged: Dict[str, Any] = dict(inputs)
        for output in results:
            merged.update(
                (key, value)
                for key, value in output.items()
                if key not in inputs or value is not inputs[key]
            )
        return merged

    def children(self) -> Tuple[Operator, ...]:
        return self.operators

    def with_children(self, children: Sequence[Operator]) -> "ParallelOperator":
        return ParallelOperator(
            children,
            max_workers=self.max_workers,
            parallel=self.parallel,
            name=self.name,
            operation_id=self.operation_id,
        )

    def reads(self) -> KeySet:
        return union_keys([op.reads() for op in self.operators])

    def writes(self) -> KeySet:
        return union_keys([op.writes() for op in self.operators])

    def __repr__(self) -> str:
        return f"ParallelOperator({list(self.operators)!r})"


class BranchOperator(Operator):
    """Route the input to one of two operators based on ``predicate``."""

    composite = True

    def __init__(
        self,
        predicate: Callable[[Mapping[str, Any]], bool],
        if_true: Operator,
        if_false: Operator,
        *,
        name: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> None:
        super().__init__(name=name, operation_id=operation_id)
        self.predicate = predicate
        self.if_true = if_true
        self.if_false = if_false

    def forward(self, *, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        branch = self.if_true if self.predicate(inputs) else self.if_false
        logger.debug("%s routed input to %s", self.display_name, branch.display_name)
        return branch(inputs=inputs)

    def children(self) -> Tuple[Operator, ...]:
        return (self.if_true, self.if_false)

    def with_children(self, children: Sequence[Operator]) -> "BranchOperator":
        if_true, if_false = children
        return BranchOperator(
            self.predicate, if_true, if_false, name=self.name, operation_id=self.operation_id
        )

    def writes(self) -> KeySet:
        return union_keys([self.if_true.writes(), self.if_false.writes()])


class FusedOperator(Operator):
    """A run of map operators executed as a single unit.

    The members are applied against a local context and the union of their
    outputs is returned, so an enclosing sequence ends up with exactly the
    context it would have had running the members one by one.
    """

    stochastic = False

    def __init__(self, operators: Sequence[MapOperator], *, name: Optional[str] = None) -> None:
        members = tuple(operators)
        super().__init__(name=name or "+".join(op.display_name for op in members))
        self.operators: Tuple[MapOperator, ...] = members

    def forward(self, *, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        context: Dict[str, Any] = dict(inputs)
        produced: Dict[str, Any] = {}
        for operator in self.operators:
            output = _as_mapping(operator, operator.forward(inputs=context))
            context.update(output)
            produced.update(output)
        return produced

    def reads(self) -> KeySet:
        return union_keys([op.reads() for op in self.operators])

    def writes(self) -> KeySet:
        return union_keys([op.writes() for op in self.operators])

    def __repr__(self) -> str:
        return f"FusedOperator({list(self.operators)!r})"


__all__ = [
    "BranchOperator",
    "FunctionOperator",
    "FusedOperator",
    "MapOperator",
    "ParallelOperator",
    "SequenceOperator",
]
