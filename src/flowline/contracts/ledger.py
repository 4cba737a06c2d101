# src/flowline/contracts/ledger.py
"""Ledger contracts: entries, history records, and state updates.

These are strict contracts - status fields use EntryStatus.
The repository layer converts database strings to enums on read.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowline.contracts.enums import EntryStatus


@dataclass(frozen=True)
class HistoryRecord:
    """One visit of an entry to a node.

    Outcome is a short label such as ``advanced``, ``branch:vip``,
    ``waiting``, ``action_ok``, ``action_failed``, ``cancelled``.
    """

    node_id: str
    entered_at: datetime
    outcome: str
    exited_at: datetime | None = None
    detail: dict[str, Any] | None = None
    sequence: int | None = None  # Assigned by the ledger on append


@dataclass(frozen=True)
class EntryUpdate:
    """New state written by a successful transition.

    Every field except context is written; callers derive it from the entry
    they claimed. context=None leaves the stored context untouched.
    """

    status: EntryStatus
    current_node_id: str
    wake_at: datetime | None = None
    attempt_count: int = 0
    last_error: str | None = None
    recovery_count: int = 0
    waiting_for_event: str | None = None
    context: dict[str, Any] | None = None


@dataclass
class LedgerEntry:
    """Persisted execution state of one subscriber in one flow version."""

    entry_id: str
    flow_id: str
    flow_version: int
    subscriber_id: str
    current_node_id: str
    status: EntryStatus  # Strict: enum only
    attempt_count: int
    revision: int
    created_at: datetime
    updated_at: datetime
    wake_at: datetime | None = None
    last_error: str | None = None
    recovery_count: int = 0  # Consecutive recoveries without progress
    waiting_for_event: str | None = None
    store_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    history: list[HistoryRecord] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def update(self, **changes: Any) -> EntryUpdate:
        """Build an EntryUpdate starting from this entry's current state."""
        base: dict[str, Any] = {
            "status": self.status,
            "current_node_id": self.current_node_id,
            "wake_at": self.wake_at,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "recovery_count": self.recovery_count,
            "waiting_for_event": self.waiting_for_event,
        }
        base.update(changes)
        return EntryUpdate(**base)
