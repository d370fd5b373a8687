"""Immutable execution graphs.

Nodes are computation units keyed by opaque identifiers and edges are
``(source, target)`` pairs meaning *target consumes data produced by source*.
Every operation that changes a graph returns a new :class:`ExecutionGraph`;
unchanged :class:`Node` values are shared between the old and new graph.
"""

from __future__ import annotations

import enum
import inspect
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    Collection,
    Dict,
    Iterable,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Tuple,
    Union,
)

from emberjit.errors import DanglingEdgeError, GraphCycleError
from emberjit.fingerprint import Fingerprint

logger = logging.getLogger(__name__)


class NodeSource(enum.Enum):
    """Which builder discovered a node; only meaningful while merging."""

    STRUCTURAL = "structural"
    TRACE = "trace"


def _arity(function: Any) -> int:
    try:
        return len(inspect.signature(function).parameters)
    except (TypeError, ValueError):
        return -1


@dataclass(frozen=True, slots=True)
class FunctionKind:
    """A node wrapping a plain callable observed in structure or trace."""

    module: str
    qualname: str
    arity: int
    function: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_callable(cls, function: Any) -> "FunctionKind":
        target = inspect.unwrap(function) if callable(function) else function
        return cls(
            module=getattr(target, "__module__", None) or "",
            qualname=getattr(target, "__qualname__", None) or type(target).__qualname__,
            arity=_arity(target),
            function=function,
        )

    @property
    def target(self) -> Any:
        return self.function


@dataclass(frozen=True, slots=True)
class OperatorKind:
    """A node wrapping a named structural component such as an operator."""

    component_type: type
    operation_id: Optional[str] = None
    operator: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_operator(cls, operator: Any) -> "OperatorKind":
        return cls(
            component_type=type(operator),
            operation_id=getattr(operator, "operation_id", None),
            operator=operator,
        )

    @property
    def target(self) -> Any:
        return self.operator


@dataclass(frozen=True, slots=True)
class LlmCallKind:
    """A node explicitly marked as a stochastic model call."""

    component_type: Optional[type] = None
    operation_id: Optional[str] = None
    model: Optional[str] = None
    call: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_target(cls, target: Any) -> "LlmCallKind":
        component = None if inspect.isfunction(target) else type(target)
        return cls(
            component_type=component,
            operation_id=getattr(target, "operation_id", None),
            model=getattr(target, "model", None),
            call=target,
        )

    @property
    def target(self) -> Any:
        return self.call


NodeKind = Union[FunctionKind, OperatorKind, LlmCallKind]


@dataclass(frozen=True, slots=True)
class Node:
    """A single computation unit inside an :class:`ExecutionGraph`.

    Attributes:
        id: Identifier, unique within the owning graph.
        kind: What the node wraps.
        name: Human readable label.
        inputs_pattern: Shape fingerprint of the observed inputs, if known.
        result_pattern: Shape fingerprint of the observed result, if known.
        preserve_stochasticity: When ``True`` the node's result is never
            cached, deduplicated or assumed equal across calls.
        source: Builder that discovered the node.
        metadata: Free-form bookkeeping; never affects execution.
    """

    id: str
    kind: NodeKind
    name: Optional[str] = None
    inputs_pattern: Optional[Fingerprint] = None
    result_pattern: Optional[Fingerprint] = None
    preserve_stochasticity: bool = False
    source: Optional[NodeSource] = None
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def target(self) -> Any:
        """The operator or callable this node wraps."""
        return self.kind.target

    @property
    def label(self) -> str:
        return self.name or self.id

    def evolve(self, **changes: Any) -> "Node":
        """Return a copy of the node with ``changes`` applied."""
        return replace(self, **changes)


@dataclass(frozen=True, slots=True)
class Edge:
    """Dependency of ``target`` on data produced by ``source``."""

    source: str
    target: str


def _fresh_id(taken: Collection[str], prefix: str = "node") -> str:
    while True:
        candidate = f"{prefix}_{uuid.uuid4().hex[:12]}"
        if candidate not in taken:
            return candidate


@dataclass(frozen=True, slots=True)
class ExecutionGraph:
    """Immutable directed graph of computation units.

    Example:
        >>> graph = ExecutionGraph.new({"strategy": "demo"})
        >>> graph, a = graph.add_node(FunctionKind.from_callable(len), node_id="a")
        >>> graph, b = graph.add_node(FunctionKind.from_callable(str), node_id="b")
        >>> graph.add_edge(a, b).topological_sort()
        ['a', 'b']
    """

    nodes: Mapping[str, Node] = field(default_factory=dict)
    edges: Tuple[Edge, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", dict(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))
        object.__setattr__(self, "metadata", dict(self.metadata))

    @classmethod
    def new(cls, metadata: Optional[Mapping[str, Any]] = None) -> "ExecutionGraph":
        """Return an empty graph carrying ``metadata``."""
        return cls(metadata=metadata or {})

    # Node and edge CRUD

    def add_node(
        self,
        kind: NodeKind,
        *,
        node_id: Optional[str] = None,
        name: Optional[str] = None,
        inputs_pattern: Optional[Fingerprint] = None,
        result_pattern: Optional[Fingerprint] = None,
        preserve_stochasticity: bool = False,
        source: Optional[NodeSource] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Tuple["ExecutionGraph", str]:
        """Insert a node and return the new graph with the node's id.

        Raises:
            ValueError: If ``node_id`` is already present.
        """
        node = Node(
            id="",
            kind=kind,
            name=name,
            inputs_pattern=inputs_pattern,
            result_pattern=result_pattern,
            preserve_stochasticity=preserve_stochasticity,
            source=source,
            metadata=dict(metadata or {}),
        )
        return self.insert_node(node, node_id=node_id)

    def insert_node(
        self, node: Node, node_id: Optional[str] = None
    ) -> Tuple["ExecutionGraph", str]:
        """Insert an existing node value under ``node_id`` or a fresh id."""
        if node_id is None:
            node_id = _fresh_id(self.nodes)
        elif node_id in self.nodes:
            raise ValueError(f"Node with ID '{node_id}' already exists.")
        nodes = dict(self.nodes)
        nodes[node_id] = node if node.id == node_id else node.evolve(id=node_id)
        return ExecutionGraph(nodes, self.edges, self.metadata), node_id

    def add_edge(self, source: str, target: str) -> "ExecutionGraph":
        """Append the edge ``source -> target``.

        Both endpoints must already exist. Duplicate edges are kept.

        Raises:
            DanglingEdgeError: If either endpoint is unknown.
        """
        for endpoint in (source, target):
            if endpoint not in self.nodes:
                raise DanglingEdgeError(source, target, endpoint)
        return ExecutionGraph(self.nodes, self.edges + (Edge(source, target),), self.metadata)

    def get_node(self, node_id: str) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise KeyError(f"Unknown node '{node_id}'") from None

    def update_node(self, node_id: str, **changes: Any) -> "ExecutionGraph":
        """Return a graph where node ``node_id`` has ``changes`` applied."""
        if "id" in changes:
            raise ValueError("Node ids cannot be changed through update_node")
        nodes = dict(self.nodes)
        nodes[node_id] = self.get_node(node_id).evolve(**changes)
        return ExecutionGraph(nodes, self.edges, self.metadata)

    def remove_node(self, node_id: str) -> "ExecutionGraph":
        """Return a graph without ``node_id`` and without its incident edges."""
        self.get_node(node_id)
        nodes = {nid: node for nid, node in self.nodes.items() if nid != node_id}
        edges = tuple(e for e in self.edges if node_id not in (e.source, e.target))
        return ExecutionGraph(nodes, edges, self.metadata)

    def with_metadata(self, **entries: Any) -> "ExecutionGraph":
        return ExecutionGraph(self.nodes, self.edges, {**self.metadata, **entries})

    # Queries

    def node_ids(self) -> List[str]:
        return list(self.nodes)

    def outgoing(self, node_id: str) -> List[str]:
        """Targets of edges leaving ``node_id`` (one entry per edge)."""
        return [edge.target for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[str]:
        """Sources of edges entering ``node_id`` (one entry per edge)."""
        return [edge.source for edge in self.edges if edge.target == node_id]

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    # Whole-graph operations

    def merge(self, other: "ExecutionGraph") -> Tuple["ExecutionGraph", Dict[str, str]]:
        """Merge ``other`` into this graph.

        Every node of ``other`` receives a fresh id, so the two graphs never
        collide; its edges are translated through the returned mapping.
        Metadata from ``other`` wins on key conflicts.

        Returns:
            The merged graph and the ``other`` id to merged id mapping.
        """
        nodes: Dict[str, Node] = dict(self.nodes)
        mapping: Dict[str, str] = {}
        for old_id, node in other.nodes.items():
            new_id = _fresh_id(nodes)
            mapping[old_id] = new_id
            nodes[new_id] = node.evolve(id=new_id)
        other._validate_edges()
        edges = self.edges + tuple(
            Edge(mapping[edge.source], mapping[edge.target]) for edge in other.edges
        )
        metadata = {**self.metadata, **other.metadata}
        return ExecutionGraph(nodes, edges, metadata), mapping

    def topological_sort(self) -> List[str]:
        """Return node ids so that every edge points forward (Kahn's algorithm).

        Raises:
            DanglingEdgeError: If an edge references an unknown node.
            GraphCycleError: If the graph contains a cycle.
        """
        self._validate_edges()
        indegree: MutableMapping[str, int] = {node_id: 0 for node_id in self.nodes}
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes}
        for edge in self.edges:
            adjacency[edge.source].append(edge.target)
            indegree[edge.target] += 1

        queue = deque(node_id for node_id, degree in indegree.items() if degree == 0)
        order: List[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for dependent in adjacency[current]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    queue.append(dependent)

        if len(order) != len(self.nodes):
            processed = set(order)
            remaining = [node_id for node_id in self.nodes if node_id not in processed]
            raise GraphCycleError(remaining)
        return order

    def group_by_level(self) -> List[List[str]]:
        """Group node ids by their longest distance from a source node.

        Nodes without dependencies are on level 0; any other node sits one level
        above its deepest dependency. Nodes sharing a level have no path between
        them and may run concurrently.
        """
        order = self.topological_sort()
        dependencies: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes}
        for edge in self.edges:
            dependencies[edge.target].append(edge.source)

        level: Dict[str, int] = {}
        for node_id in order:
            deps = dependencies[node_id]
            level[node_id] = 1 + max(level[dep] for dep in deps) if deps else 0

        groups: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for node_id in order:
            groups[level[node_id]].append(node_id)
        return groups

    def subgraph(self, node_ids: Iterable[str]) -> "ExecutionGraph":
        """Return the graph induced by ``node_ids``."""
        keep = set(node_ids)
        nodes = {nid: node for nid, node in self.nodes.items() if nid in keep}
        edges = tuple(e for e in self.edges if e.source in keep and e.target in keep)
        return ExecutionGraph(nodes, edges, self.metadata)

    def _validate_edges(self) -> None:
        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self.nodes:
                    raise DanglingEdgeError(edge.source, edge.target, endpoint)

    def __repr__(self) -> str:
        return f"ExecutionGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


__all__ = [
    "Edge",
    "ExecutionGraph",
    "FunctionKind",
    "LlmCallKind",
    "Node",
    "NodeKind",
    "NodeSource",
    "OperatorKind",
]
