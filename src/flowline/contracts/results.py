# src/flowline/contracts/results.py
"""Operation outcomes and results.

These types answer: "What did an operation produce?"

Transition is produced by the node evaluator and consumed by the scheduler.
Use the factory methods to create instances.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowline.contracts.enums import TransitionKind


@dataclass(frozen=True)
class Transition:
    """Where an entry goes after its current node was evaluated."""

    kind: TransitionKind
    outcome: str
    next_node_id: str | None = None
    wake_at: datetime | None = None  # None on a wait means no timed wake-up
    waiting_for_event: str | None = None
    error: str | None = None
    detail: dict[str, Any] | None = field(default=None, repr=False)

    @classmethod
    def advance(
        cls,
        next_node_id: str,
        outcome: str = "advanced",
        detail: dict[str, Any] | None = None,
    ) -> "Transition":
        """Move to next_node_id and evaluate it immediately."""
        return cls(
            kind=TransitionKind.ADVANCE,
            outcome=outcome,
            next_node_id=next_node_id,
            detail=detail,
        )

    @classmethod
    def wait(
        cls,
        next_node_id: str,
        wake_at: datetime | None,
        detail: dict[str, Any] | None = None,
        *,
        waiting_for_event: str | None = None,
    ) -> "Transition":
        """Park the entry until wake_at, then resume at next_node_id.

        With waiting_for_event set, an event of that type resumes the entry
        early. wake_at=None waits for the event (or a goal) indefinitely.
        """
        return cls(
            kind=TransitionKind.WAIT,
            outcome="waiting",
            next_node_id=next_node_id,
            wake_at=wake_at,
            waiting_for_event=waiting_for_event,
            detail=detail,
        )

    @classmethod
    def complete(
        cls, outcome: str = "completed", detail: dict[str, Any] | None = None
    ) -> "Transition":
        """Finish the journey."""
        return cls(kind=TransitionKind.COMPLETE, outcome=outcome, detail=detail)

    @classmethod
    def fail(
        cls, error: str, outcome: str = "failed", detail: dict[str, Any] | None = None
    ) -> "Transition":
        """Finish the journey as Failed without retrying."""
        return cls(
            kind=TransitionKind.FAIL, outcome=outcome, error=error, detail=detail
        )


@dataclass(frozen=True)
class ActionOutcome:
    """Result returned by an action executor."""

    action_type: str
    idempotency_key: str
    detail: dict[str, Any] = field(default_factory=dict)
    duplicate: bool = False  # Executor recognised the key and skipped re-sending


@dataclass
class TickResult:
    """Counters for a single scheduler tick."""

    selected: int = 0
    claimed: int = 0
    conflicts: int = 0
    steps: int = 0
    waiting: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    parked: int = 0

    def merge(self, other: "TickResult") -> "TickResult":
        """Sum counters of two results (used by the worker pool)."""
        return TickResult(
            selected=self.selected + other.selected,
            claimed=self.claimed + other.claimed,
            conflicts=self.conflicts + other.conflicts,
            steps=self.steps + other.steps,
            waiting=self.waiting + other.waiting,
            completed=self.completed + other.completed,
            failed=self.failed + other.failed,
            retried=self.retried + other.retried,
            parked=self.parked + other.parked,
        )
