# src/flowline/contracts/errors.py
"""Exception taxonomy for the flow engine.

Structural errors (GraphError) are raised at publish time and never reach
the scheduler. Runtime errors carry a ``retryable`` flag that the scheduler
uses to decide between backoff and a terminal Failed status.
"""

from __future__ import annotations


class GraphError(Exception):
    """Raised when a flow graph fails structural validation."""


class MissingEntry(GraphError):
    """Graph has no trigger node, or more than one."""

    def __init__(self, message: str, *, node_ids: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.node_ids = node_ids


class UnreachableNode(GraphError):
    """A non-entry node cannot be reached from the entry node."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node '{node_id}' is not reachable from the entry node")
        self.node_id = node_id


class DanglingEdge(GraphError):
    """An edge references a node that does not exist."""

    def __init__(self, source: str, target: str, missing: str) -> None:
        super().__init__(
            f"Edge {source} -> {target} references missing node '{missing}'"
        )
        self.edge = (source, target)
        self.node_id = missing


class AmbiguousBranch(GraphError):
    """Outgoing edges of a node do not resolve to exactly one path per outcome."""

    def __init__(self, node_id: str, reason: str) -> None:
        super().__init__(f"Node '{node_id}' has ambiguous branches: {reason}")
        self.node_id = node_id
        self.reason = reason


class LeaseTooShort(GraphError):
    """An action node's timeout would outlive the Running lease.

    Recovery would requeue the entry while the action is still in flight.
    """

    def __init__(self, node_id: str, timeout_seconds: float, lease_seconds: float) -> None:
        super().__init__(
            f"Action node '{node_id}' timeout {timeout_seconds:g}s must be shorter "
            f"than the running lease ({lease_seconds:g}s)"
        )
        self.node_id = node_id
        self.timeout_seconds = timeout_seconds
        self.lease_seconds = lease_seconds


class ConflictError(Exception):
    """A compare-and-swap on a ledger entry did not apply."""


class StaleStatus(ConflictError):
    """Another transition already moved the entry away from the expected state.

    Expected under concurrency: the scheduler treats it as a no-op.
    """

    def __init__(self, entry_id: str, expected: str) -> None:
        super().__init__(f"Entry {entry_id} is no longer in status '{expected}'")
        self.entry_id = entry_id
        self.expected = expected


class DuplicateActiveExecution(Exception):
    """A non-terminal entry already exists for (flow_id, subscriber_id)."""

    def __init__(self, flow_id: str, subscriber_id: str) -> None:
        super().__init__(
            f"Subscriber '{subscriber_id}' already has an active execution "
            f"of flow '{flow_id}'"
        )
        self.flow_id = flow_id
        self.subscriber_id = subscriber_id


class InvalidPayload(ValueError):
    """Event data cannot be stored as canonical JSON.

    Raised before anything is written, e.g. for integers outside the
    IEEE 754 safe range (+/-(2**53 - 1)) or non-finite floats.
    """

    def __init__(self, event_type: str, reason: str) -> None:
        super().__init__(f"Payload of event '{event_type}' is not JSON-safe: {reason}")
        self.event_type = event_type
        self.reason = reason


class EntryNotFound(KeyError):
    """No ledger entry with the given id."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(entry_id)
        self.entry_id = entry_id

    def __str__(self) -> str:
        return f"Ledger entry not found: {self.entry_id}"


class FlowNotFound(KeyError):
    """No published flow version with the given id/version."""

    def __init__(self, flow_id: str, version: int | None = None) -> None:
        super().__init__(flow_id)
        self.flow_id = flow_id
        self.version = version

    def __str__(self) -> str:
        if self.version is None:
            return f"Flow not found: {self.flow_id}"
        return f"Flow not found: {self.flow_id} v{self.version}"


class ExecutionError(Exception):
    """Base for errors raised while evaluating a node for an entry."""

    retryable: bool = False


class UnresolvedBranch(ExecutionError):
    """No branch matched and the condition node has no default edge."""

    retryable = False

    def __init__(self, node_id: str, labels: tuple[str, ...] = ()) -> None:
        detail = ", ".join(labels) if labels else "none"
        super().__init__(
            f"Condition node '{node_id}' matched no branch (tried: {detail}) "
            "and has no default edge"
        )
        self.node_id = node_id
        self.labels = labels


class ActionError(ExecutionError):
    """An action executor failed. Transient by default."""

    retryable = True

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ActionTimeout(ActionError):
    """An action did not finish within the caller-enforced timeout."""

    def __init__(self, action_type: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Action '{action_type}' timed out after {timeout_seconds:g}s"
        )
        self.action_type = action_type
        self.timeout_seconds = timeout_seconds


class UnknownActionType(ExecutionError):
    """No executor is registered for the node's action type."""

    retryable = False

    def __init__(self, action_type: str, available: list[str]) -> None:
        super().__init__(
            f"No action executor registered for '{action_type}'. "
            f"Available: {sorted(available)}"
        )
        self.action_type = action_type


class TemplateError(ExecutionError):
    """Action parameter template failed to render."""

    retryable = False
