# src/flowline/contracts/__init__.py
"""Shared contracts for cross-boundary data types.

All dataclasses, enums and exceptions that cross subsystem boundaries
(graph model, ledger, evaluator, scheduler, action executors) are defined
here.

Import pattern:
    from flowline.contracts import EntryStatus, LedgerEntry, Transition
"""

from flowline.contracts.enums import (
    CLAIMABLE_STATUSES,
    BackoffStrategy,
    ConditionJoin,
    DelayMode,
    EntryStatus,
    NodeKind,
    TransitionKind,
)
from flowline.contracts.errors import (
    ActionError,
    ActionTimeout,
    AmbiguousBranch,
    ConflictError,
    DanglingEdge,
    DuplicateActiveExecution,
    EntryNotFound,
    ExecutionError,
    FlowNotFound,
    GraphError,
    InvalidPayload,
    LeaseTooShort,
    MissingEntry,
    StaleStatus,
    TemplateError,
    UnknownActionType,
    UnreachableNode,
    UnresolvedBranch,
)
from flowline.contracts.engagement import HOURS_PER_DAY, EngagementProfile
from flowline.contracts.ledger import EntryUpdate, HistoryRecord, LedgerEntry
from flowline.contracts.results import ActionOutcome, TickResult, Transition

__all__ = [
    # enums
    "CLAIMABLE_STATUSES",
    "BackoffStrategy",
    "ConditionJoin",
    "DelayMode",
    "EntryStatus",
    "NodeKind",
    "TransitionKind",
    # errors
    "ActionError",
    "ActionTimeout",
    "AmbiguousBranch",
    "ConflictError",
    "DanglingEdge",
    "DuplicateActiveExecution",
    "EntryNotFound",
    "ExecutionError",
    "FlowNotFound",
    "GraphError",
    "InvalidPayload",
    "LeaseTooShort",
    "MissingEntry",
    "StaleStatus",
    "TemplateError",
    "UnknownActionType",
    "UnreachableNode",
    "UnresolvedBranch",
    # engagement
    "HOURS_PER_DAY",
    "EngagementProfile",
    # ledger
    "EntryUpdate",
    "HistoryRecord",
    "LedgerEntry",
    # results
    "ActionOutcome",
    "TickResult",
    "Transition",
]
