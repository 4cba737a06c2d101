# src/flowline/core/graph.py
"""Flow graph model: immutable, versioned graphs of trigger, condition, delay,
action, goal and exit nodes.

Uses NetworkX for graph operations including:
- Reachability from the entry node
- Outgoing edge lookup by branch label

A FlowGraph is an arena of nodes indexed by id plus a frozen adjacency
structure. Nodes never hold references to each other.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import cached_property
from typing import Any, ClassVar, Union

import networkx as nx
from networkx import MultiDiGraph

from flowline.contracts.enums import BackoffStrategy, DelayMode, NodeKind
from flowline.contracts.errors import (
    AmbiguousBranch,
    DanglingEdge,
    GraphError,
    MissingEntry,
    UnreachableNode,
)
from flowline.core.canonical import stable_hash
from flowline.core.conditions import Predicate


@dataclass(frozen=True)
class TriggerNode:
    """Entry node. Subscribers enroll when an event of event_type matches the filter."""

    kind: ClassVar[NodeKind] = NodeKind.TRIGGER

    node_id: str
    event_type: str
    filter: Predicate | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "kind": self.kind.value,
            "event_type": self.event_type,
            "filter": self.filter.model_dump(mode="json") if self.filter else None,
        }


@dataclass(frozen=True)
class Branch:
    """A labelled outcome of a condition node."""

    label: str
    when: Predicate


@dataclass(frozen=True)
class Variant:
    """A weighted outcome of an A/B split."""

    label: str
    weight: float


@dataclass(frozen=True)
class ConditionNode:
    """Chooses one outgoing edge per evaluation.

    Either ``branches`` (first matching predicate wins, else the default
    edge) or ``variants`` (deterministic weighted pick) is set, never both.
    """

    kind: ClassVar[NodeKind] = NodeKind.CONDITION

    node_id: str
    branches: tuple[Branch, ...] = ()
    variants: tuple[Variant, ...] = ()

    @property
    def labels(self) -> tuple[str, ...]:
        if self.variants:
            return tuple(v.label for v in self.variants)
        return tuple(b.label for b in self.branches)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "kind": self.kind.value,
            "branches": [
                {"label": b.label, "when": b.when.model_dump(mode="json")}
                for b in self.branches
            ],
            "variants": [
                {"label": v.label, "weight": v.weight} for v in self.variants
            ],
        }


@dataclass(frozen=True)
class DelayNode:
    """Parks the entry until a computed wake time."""

    kind: ClassVar[NodeKind] = NodeKind.DELAY

    node_id: str
    mode: DelayMode
    duration: timedelta | None = None  # fixed_duration
    min_wait: timedelta = timedelta(0)  # optimal_send_time
    threshold: float | None = None  # optimal_send_time; None = profile maximum
    until: datetime | None = None  # until
    event_type: str | None = None  # event
    timeout: timedelta | None = None  # event; None = wait indefinitely

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "kind": self.kind.value,
            "mode": self.mode.value,
            "duration_seconds": (
                self.duration.total_seconds() if self.duration is not None else None
            ),
            "min_wait_seconds": self.min_wait.total_seconds(),
            "threshold": self.threshold,
            "until": self.until,
            "event_type": self.event_type,
            "timeout_seconds": (
                self.timeout.total_seconds() if self.timeout is not None else None
            ),
        }


@dataclass(frozen=True)
class RetryPolicy:
    """Per-node override of the engine retry settings. None keeps the default."""

    max_attempts: int | None = None
    strategy: BackoffStrategy | None = None
    delay_seconds: float | None = None
    max_delay_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "strategy": self.strategy.value if self.strategy is not None else None,
            "delay_seconds": self.delay_seconds,
            "max_delay_seconds": self.max_delay_seconds,
        }


@dataclass(frozen=True)
class ActionNode:
    """Invokes the executor registered for action_type with rendered params."""

    kind: ClassVar[NodeKind] = NodeKind.ACTION

    node_id: str
    action_type: str
    params: Mapping[str, Any] = field(default_factory=dict)
    timeout_seconds: float | None = None  # Overrides the engine default
    retry: RetryPolicy | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "kind": self.kind.value,
            "action_type": self.action_type,
            "params": dict(self.params),
            "timeout_seconds": self.timeout_seconds,
            "retry": self.retry.to_dict() if self.retry is not None else None,
        }


@dataclass(frozen=True)
class GoalNode:
    """Conversion goal of the flow.

    A matching event completes the subscriber's entry wherever it is in
    the flow. An entry that reaches the node waits for the goal: until
    timeout, then along the single outgoing edge, or indefinitely when no
    timeout is set.
    """

    kind: ClassVar[NodeKind] = NodeKind.GOAL

    node_id: str
    event_type: str
    filter: Predicate | None = None
    timeout: timedelta | None = None

    def matches(self, event_type: str, variables: Mapping[str, Any]) -> bool:
        if event_type != self.event_type:
            return False
        return self.filter is None or self.filter.matches(variables)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "kind": self.kind.value,
            "event_type": self.event_type,
            "filter": self.filter.model_dump(mode="json") if self.filter else None,
            "timeout_seconds": (
                self.timeout.total_seconds() if self.timeout is not None else None
            ),
        }


@dataclass(frozen=True)
class ExitNode:
    """Terminal node."""

    kind: ClassVar[NodeKind] = NodeKind.EXIT

    node_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.node_id, "kind": self.kind.value}


Node = Union[TriggerNode, ConditionNode, DelayNode, ActionNode, GoalNode, ExitNode]


@dataclass(frozen=True)
class Edge:
    """Directed edge; label is None for the default/only path."""

    source: str
    target: str
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "target": self.target, "label": self.label}


class FlowGraph:
    """Immutable flow graph for one (flow_id, version).

    Wraps a NetworkX MultiDiGraph (parallel edges allowed, so two branches may
    share a target). Construct freely, then pass through validate_graph()
    before executing: only validated graphs are published.
    """

    def __init__(
        self,
        flow_id: str,
        version: int,
        nodes: Sequence[Node],
        edges: Iterable[Edge],
        *,
        name: str | None = None,
        allow_reentry: bool = False,
        reentry_cooldown: timedelta | None = None,
    ) -> None:
        self.flow_id = flow_id
        self.version = version
        self.name = name or flow_id
        # Re-entry rules: whether a subscriber may enroll again after finishing
        self.allow_reentry = allow_reentry
        self.reentry_cooldown = reentry_cooldown
        self._nodes: dict[str, Node] = {}
        for node in nodes:
            if node.node_id in self._nodes:
                raise GraphError(f"Duplicate node id '{node.node_id}'")
            self._nodes[node.node_id] = node
        self._edges: tuple[Edge, ...] = tuple(edges)
        self._validated = False

        graph: MultiDiGraph[str] = nx.MultiDiGraph()
        graph.add_nodes_from(self._nodes)
        for edge in self._edges:
            # Dangling edges are kept out of the adjacency; validate() reports them
            if edge.source in self._nodes and edge.target in self._nodes:
                graph.add_edge(edge.source, edge.target, label=edge.label)
        self._graph = nx.freeze(graph)

    def __repr__(self) -> str:
        return (
            f"FlowGraph(flow_id={self.flow_id!r}, version={self.version}, "
            f"nodes={len(self._nodes)}, edges={len(self._edges)})"
        )

    @property
    def is_validated(self) -> bool:
        return self._validated

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    @property
    def nodes(self) -> tuple[Node, ...]:
        """Nodes in declaration order."""
        return tuple(self._nodes.values())

    @property
    def edges(self) -> tuple[Edge, ...]:
        return self._edges

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> Node:
        """Get a node by id.

        Raises:
            KeyError: If node doesn't exist
        """
        if node_id not in self._nodes:
            raise KeyError(f"Node not found: {node_id}")
        return self._nodes[node_id]

    @property
    def entry_node(self) -> TriggerNode:
        """The single trigger node. Only meaningful on a validated graph."""
        triggers = [n for n in self._nodes.values() if isinstance(n, TriggerNode)]
        if len(triggers) != 1:
            raise MissingEntry(
                f"Flow '{self.flow_id}' must have exactly one trigger node, "
                f"found {len(triggers)}",
                node_ids=tuple(n.node_id for n in triggers),
            )
        return triggers[0]

    @property
    def goal_nodes(self) -> tuple[GoalNode, ...]:
        return tuple(n for n in self._nodes.values() if isinstance(n, GoalNode))

    def outgoing(self, node_id: str) -> list[Edge]:
        """Outgoing edges of node_id in declaration order."""
        return [e for e in self._edges if e.source == node_id]

    def next_nodes(self, node_id: str, branch_label: str | None = None) -> list[str]:
        """Targets reachable from node_id in one step.

        With a branch_label, returns the target of the edge carrying that
        label. Without one, returns the default (unlabelled) edge target(s).

        Raises:
            KeyError: If node doesn't exist
        """
        if node_id not in self._nodes:
            raise KeyError(f"Node not found: {node_id}")
        return [
            target
            for _, target, label in self._graph.out_edges(node_id, data="label")
            if label == branch_label
        ]

    def reachable_from_entry(self) -> set[str]:
        entry = self.entry_node.node_id
        return {entry} | nx.descendants(self._graph, entry)

    def to_dict(self) -> dict[str, Any]:
        """Content of the graph, excluding its version number."""
        return {
            "flow_id": self.flow_id,
            "name": self.name,
            "allow_reentry": self.allow_reentry,
            "reentry_cooldown_seconds": (
                self.reentry_cooldown.total_seconds()
                if self.reentry_cooldown is not None
                else None
            ),
            "nodes": [n.to_dict() for n in self._nodes.values()],
            "edges": [e.to_dict() for e in self._edges],
        }

    @cached_property
    def content_hash(self) -> str:
        """SHA-256 over the canonical JSON of to_dict()."""
        return stable_hash(self.to_dict())


def validate_graph(graph: FlowGraph) -> FlowGraph:
    """Validate the structure of a flow graph.

    Validates:
    1. Every edge references existing nodes
    2. Exactly one entry (trigger) node exists
    3. Every node is reachable from the entry node, except goal nodes
       nothing points at (flow-level goals)
    4. Outgoing edges resolve to exactly one path per outcome

    Cycles are allowed; the scheduler bounds re-evaluation per tick.

    Returns:
        The same graph, marked as validated

    Raises:
        GraphError: One of DanglingEdge, MissingEntry, UnreachableNode,
            AmbiguousBranch naming the offending node or edge
    """
    for edge in graph.edges:
        for endpoint in (edge.source, edge.target):
            if not graph.has_node(endpoint):
                raise DanglingEdge(edge.source, edge.target, endpoint)

    graph.entry_node  # Raises MissingEntry

    reachable = graph.reachable_from_entry()
    targets = {edge.target for edge in graph.edges}
    for node in graph.nodes:
        if isinstance(node, GoalNode) and node.node_id not in targets:
            continue
        if node.node_id not in reachable:
            raise UnreachableNode(node.node_id)

    for node in graph.nodes:
        _check_outgoing(graph, node)

    graph._validated = True
    return graph


def _check_outgoing(graph: FlowGraph, node: Node) -> None:
    edges = graph.outgoing(node.node_id)

    if isinstance(node, ConditionNode):
        _check_branches(node, edges)
        return

    labelled = [e for e in edges if e.label is not None]
    if labelled:
        raise AmbiguousBranch(
            node.node_id,
            f"labelled edge '{labelled[0].label}' on a {node.kind.value} node",
        )
    if isinstance(node, ExitNode) and edges:
        raise AmbiguousBranch(node.node_id, "exit node has outgoing edges")
    if isinstance(node, GoalNode):
        if node.timeout is None and edges:
            raise AmbiguousBranch(
                node.node_id, "goal node without a timeout has outgoing edges"
            )
        if node.timeout is not None and len(edges) != 1:
            raise AmbiguousBranch(
                node.node_id,
                f"goal node with a timeout needs exactly 1 outgoing edge, found {len(edges)}",
            )
    if len(edges) > 1:
        raise AmbiguousBranch(
            node.node_id,
            f"{len(edges)} outgoing edges on a non-branch node "
            f"(targets: {[e.target for e in edges]})",
        )


def _check_branches(node: ConditionNode, edges: list[Edge]) -> None:
    if node.branches and node.variants:
        raise AmbiguousBranch(node.node_id, "declares both branches and variants")
    if len(edges) < 2:
        raise AmbiguousBranch(
            node.node_id, f"needs at least 2 outgoing edges, found {len(edges)}"
        )

    defaults = [e for e in edges if e.label is None]
    if len(defaults) > 1:
        raise AmbiguousBranch(
            node.node_id, f"{len(defaults)} default (unlabelled) edges"
        )

    seen: set[str] = set()
    for edge in edges:
        if edge.label is None:
            continue
        if edge.label in seen:
            raise AmbiguousBranch(node.node_id, f"duplicate edge label '{edge.label}'")
        seen.add(edge.label)

    declared = node.labels
    if len(set(declared)) != len(declared):
        raise AmbiguousBranch(node.node_id, "duplicate branch labels")

    for label in declared:
        if label not in seen:
            raise AmbiguousBranch(node.node_id, f"branch '{label}' has no edge")
    for label in seen:
        if label not in declared:
            raise AmbiguousBranch(
                node.node_id, f"edge label '{label}' matches no declared branch"
            )
