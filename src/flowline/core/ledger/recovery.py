# src/flowline/core/ledger/recovery.py
"""Recovery of entries abandoned by a crashed worker.

A worker that dies between claiming an entry (CAS -> Running) and writing
its next transition leaves the entry Running forever. Recovery returns such
entries to WaitingDelay with wake_at = now so the next tick picks them up.

attempt_count is kept: a retried action reuses the idempotency key of the
attempt that may or may not have reached the executor.

Every recovery bumps the entry's recovery_count; any transition written by
the scheduler resets it. An entry that keeps killing its worker is failed
once it has been recovered max_recoveries times in a row.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flowline.contracts.enums import EntryStatus
from flowline.contracts.errors import StaleStatus
from flowline.contracts.ledger import HistoryRecord
from flowline.core.ledger.ledger import ExecutionLedger
from flowline.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RecoveryCheck:
    """Whether an entry looks abandoned.

    Replaces a tuple[bool, str | None] return type from check().
    """

    recoverable: bool
    reason: str | None = None

    def __post_init__(self) -> None:
        if self.recoverable and self.reason is not None:
            raise ValueError("recoverable=True should not have a reason")
        if not self.recoverable and self.reason is None:
            raise ValueError("recoverable=False must have a reason explaining why")


@dataclass
class RecoveryResult:
    """Entries returned to the queue by one recovery pass."""

    recovered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    conflicts: int = 0


class RecoveryManager:
    """Returns abandoned Running entries to the scheduler.

    Usage:
        recovery = RecoveryManager(ledger, lease=timedelta(minutes=5))

        result = recovery.recover(now)
        # result.recovered: entry ids that will be re-run on the next tick
    """

    def __init__(
        self, ledger: ExecutionLedger, lease: timedelta, *, max_recoveries: int = 3
    ) -> None:
        """Initialize with the ledger and the Running lease.

        Args:
            ledger: ExecutionLedger to scan and update
            lease: How long an entry may stay Running before it is presumed abandoned
            max_recoveries: Consecutive recoveries after which the entry is failed
        """
        if max_recoveries < 1:
            raise ValueError(f"max_recoveries must be >= 1, got {max_recoveries}")
        self._ledger = ledger
        self._lease = lease
        self._max_recoveries = max_recoveries

    @property
    def lease(self) -> timedelta:
        return self._lease

    def check(self, entry_id: str, now: datetime) -> RecoveryCheck:
        """Check whether a single entry can be recovered.

        Returns:
            RecoveryCheck with recoverable=True for a Running entry whose
            lease has expired, or recoverable=False with the reason.
        """
        entry = self._ledger.get(entry_id)
        if entry.status != EntryStatus.RUNNING:
            return RecoveryCheck(
                recoverable=False, reason=f"Entry is {entry.status.value}, not running"
            )
        if entry.updated_at >= now - self._lease:
            return RecoveryCheck(recoverable=False, reason="Running lease has not expired")
        return RecoveryCheck(recoverable=True)

    def recover(self, now: datetime) -> RecoveryResult:
        """Return every expired Running entry to WaitingDelay, due now.

        Entries already recovered max_recoveries - 1 times in a row are
        moved to Failed instead.
        """
        result = RecoveryResult()
        for entry in self._ledger.stale_running(now - self._lease):
            recoveries = entry.recovery_count + 1
            exhausted = recoveries >= self._max_recoveries
            if exhausted:
                error = f"Abandoned while running {recoveries} times in a row"
                update = entry.update(
                    status=EntryStatus.FAILED,
                    wake_at=None,
                    recovery_count=recoveries,
                    last_error=error,
                )
                record = HistoryRecord(
                    node_id=entry.current_node_id,
                    entered_at=entry.updated_at,
                    exited_at=now,
                    outcome="recovery_exhausted",
                    detail={"attempt": entry.attempt_count, "recoveries": recoveries},
                )
            else:
                update = entry.update(
                    status=EntryStatus.WAITING_DELAY, wake_at=now, recovery_count=recoveries
                )
                record = HistoryRecord(
                    node_id=entry.current_node_id,
                    entered_at=entry.updated_at,
                    exited_at=now,
                    outcome="recovered",
                    detail={"attempt": entry.attempt_count, "recoveries": recoveries},
                )
            try:
                self._ledger.transition(
                    entry.entry_id,
                    EntryStatus.RUNNING,
                    update,
                    expected_revision=entry.revision,
                    history=[record],
                    now=now,
                )
            except StaleStatus:
                # The worker was alive after all, or another recovery won
                result.conflicts += 1
                logger.debug("Recovery lost race", entry_id=entry.entry_id)
                continue
            if exhausted:
                result.failed.append(entry.entry_id)
                logger.error(
                    "Abandoned entry failed",
                    entry_id=entry.entry_id,
                    flow_id=entry.flow_id,
                    node_id=entry.current_node_id,
                    recoveries=recoveries,
                )
                continue
            result.recovered.append(entry.entry_id)
            logger.warning(
                "Recovered abandoned entry",
                entry_id=entry.entry_id,
                flow_id=entry.flow_id,
                node_id=entry.current_node_id,
                attempt=entry.attempt_count,
                recoveries=recoveries,
            )
        return result
