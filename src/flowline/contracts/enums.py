"""All status codes, modes, and kinds used across subsystem boundaries."""

from enum import Enum


class EntryStatus(str, Enum):
    """Status of a ledger entry (one subscriber's journey through a flow).

    Uses (str, Enum) because this IS stored in the database
    (ledger_entries.status).
    """

    PENDING = "pending"
    RUNNING = "running"
    WAITING_DELAY = "waiting_delay"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Terminal entries are never selected or mutated again."""
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {EntryStatus.COMPLETED, EntryStatus.FAILED, EntryStatus.CANCELLED}
)

# Statuses the scheduler may claim (CAS -> RUNNING)
CLAIMABLE_STATUSES = (EntryStatus.PENDING, EntryStatus.WAITING_DELAY)


class NodeKind(str, Enum):
    """Kind of node in a flow graph.

    Uses (str, Enum) for serialization in flow definitions.
    """

    TRIGGER = "trigger"
    CONDITION = "condition"
    DELAY = "delay"
    ACTION = "action"
    GOAL = "goal"
    EXIT = "exit"


class DelayMode(str, Enum):
    """How a delay node computes its wake time.

    Values:
        FIXED_DURATION: now + configured duration
        OPTIMAL_SEND_TIME: next high-engagement hour from the store profile
        UNTIL: a fixed instant (never earlier than now)
        EVENT: until the subscriber emits an event, or an optional timeout
    """

    FIXED_DURATION = "fixed_duration"
    OPTIMAL_SEND_TIME = "optimal_send_time"
    UNTIL = "until"
    EVENT = "event"


class TransitionKind(str, Enum):
    """What the scheduler should do with an entry after evaluation."""

    ADVANCE = "advance"
    WAIT = "wait"
    COMPLETE = "complete"
    FAIL = "fail"


class ConditionJoin(str, Enum):
    """How rules inside a predicate combine."""

    ALL = "all"
    ANY = "any"


class BackoffStrategy(str, Enum):
    """Retry delay growth between failed attempts."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
