# src/flowline/core/ledger/ledger.py
"""ExecutionLedger: durable per-subscriber execution state.

Every mutation of an entry's state goes through transition(), a
compare-and-swap on the entry's status (and optionally its revision).
This CAS is the only mutual exclusion between scheduler workers: two
workers may select the same due entry, but only one can move it to
Running.
"""

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Connection, and_, func, or_, select
from sqlalchemy.exc import IntegrityError

from flowline.contracts.enums import EntryStatus
from flowline.contracts.errors import (
    DuplicateActiveExecution,
    EntryNotFound,
    StaleStatus,
)
from flowline.contracts.ledger import EntryUpdate, HistoryRecord, LedgerEntry
from flowline.core.canonical import canonical_json
from flowline.core.ledger.database import LedgerDB
from flowline.core.ledger.repositories import HistoryRepository, LedgerEntryRepository
from flowline.core.ledger.schema import ledger_entries_table, ledger_history_table
from flowline.core.logging import get_logger

logger = get_logger(__name__)

# Cancellation re-reads and retries when it races a scheduler transition
CANCEL_RETRY_LIMIT = 5


def _now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _generate_id() -> str:
    """Generate a unique ID."""
    return uuid.uuid4().hex


def active_key(flow_id: str, subscriber_id: str) -> str:
    """Value of the unique active_key column for a non-terminal entry."""
    return f"{flow_id}:{subscriber_id}"


class ExecutionLedger:
    """High-level API over the ledger tables.

    Example:
        db = LedgerDB.in_memory()
        ledger = ExecutionLedger(db)

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)
        ledger.transition(
            entry_id,
            EntryStatus.PENDING,
            EntryUpdate(status=EntryStatus.RUNNING, current_node_id="start"),
        )
    """

    def __init__(self, db: LedgerDB) -> None:
        self._db = db
        self._entries = LedgerEntryRepository()
        self._history = HistoryRepository()

    # === Creation ===

    def create(
        self,
        flow_id: str,
        version: int,
        subscriber_id: str,
        entry_node_id: str,
        now: datetime,
        *,
        store_id: str | None = None,
        context: dict[str, Any] | None = None,
        entry_id: str | None = None,
    ) -> str:
        """Enroll a subscriber: create a Pending entry at the entry node.

        The entry is due immediately (wake_at = now).

        Returns:
            The new entry_id

        Raises:
            DuplicateActiveExecution: A non-terminal entry already exists for
                (flow_id, subscriber_id)
            ValueError: context is not representable as canonical JSON (for
                example an integer outside the IEEE 754 safe range)
        """
        entry_id = entry_id or _generate_id()
        try:
            with self._db.connection() as conn:
                conn.execute(
                    ledger_entries_table.insert().values(
                        entry_id=entry_id,
                        flow_id=flow_id,
                        flow_version=version,
                        subscriber_id=subscriber_id,
                        store_id=store_id,
                        current_node_id=entry_node_id,
                        status=EntryStatus.PENDING.value,
                        wake_at=now,
                        attempt_count=0,
                        last_error=None,
                        recovery_count=0,
                        waiting_for_event=None,
                        context_json=canonical_json(context or {}),
                        revision=0,
                        created_at=now,
                        updated_at=now,
                        active_key=active_key(flow_id, subscriber_id),
                    )
                )
        except IntegrityError as e:
            if self.find_active(flow_id, subscriber_id) is not None:
                raise DuplicateActiveExecution(flow_id, subscriber_id) from e
            raise
        logger.debug(
            "Entry created",
            entry_id=entry_id,
            flow_id=flow_id,
            flow_version=version,
            subscriber_id=subscriber_id,
        )
        return entry_id

    # === Compare-and-swap ===

    def transition(
        self,
        entry_id: str,
        expected_status: EntryStatus,
        update: EntryUpdate,
        *,
        expected_revision: int | None = None,
        history: Iterable[HistoryRecord] = (),
        now: datetime | None = None,
    ) -> None:
        """Atomically move an entry from expected_status to update.

        Succeeds only if the entry is still in expected_status (and at
        expected_revision, when given). History records are appended in the
        same database transaction, so a lost race writes nothing.

        Raises:
            StaleStatus: Another transition already applied
            EntryNotFound: No entry with this id
        """
        now = now or _now()
        t = ledger_entries_table
        conditions = [t.c.entry_id == entry_id, t.c.status == expected_status.value]
        if expected_revision is not None:
            conditions.append(t.c.revision == expected_revision)

        values: dict[str, Any] = {
            "status": update.status.value,
            "current_node_id": update.current_node_id,
            "wake_at": update.wake_at,
            "attempt_count": update.attempt_count,
            "last_error": update.last_error,
            "recovery_count": update.recovery_count,
            "waiting_for_event": update.waiting_for_event,
            "revision": t.c.revision + 1,
            "updated_at": now,
        }
        if update.status.is_terminal:
            # Frees the (flow_id, subscriber_id) slot for re-entry
            values["active_key"] = None
        if update.context is not None:
            values["context_json"] = canonical_json(update.context)

        with self._db.connection() as conn:
            result = conn.execute(t.update().where(and_(*conditions)).values(**values))
            if result.rowcount != 1:
                exists = conn.execute(
                    select(t.c.entry_id).where(t.c.entry_id == entry_id)
                ).first()
                if exists is None:
                    raise EntryNotFound(entry_id)
                raise StaleStatus(entry_id, expected_status.value)
            for record in history:
                self._insert_history(conn, entry_id, record)

    # === History ===

    def append_history(self, entry_id: str, record: HistoryRecord) -> None:
        """Append one history record; sequence numbers are assigned in order.

        Raises:
            EntryNotFound: No entry with this id
        """
        with self._db.connection() as conn:
            exists = conn.execute(
                select(ledger_entries_table.c.entry_id).where(
                    ledger_entries_table.c.entry_id == entry_id
                )
            ).first()
            if exists is None:
                raise EntryNotFound(entry_id)
            self._insert_history(conn, entry_id, record)

    def _insert_history(self, conn: Connection, entry_id: str, record: HistoryRecord) -> None:
        h = ledger_history_table
        # Sequence computed inside the INSERT so concurrent appends can't reuse it
        next_sequence = (
            select(func.coalesce(func.max(h.c.sequence), 0) + 1)
            .where(h.c.entry_id == entry_id)
            .scalar_subquery()
        )
        conn.execute(
            h.insert().values(
                entry_id=entry_id,
                sequence=next_sequence,
                node_id=record.node_id,
                entered_at=record.entered_at,
                exited_at=record.exited_at,
                outcome=record.outcome,
                detail_json=canonical_json(record.detail) if record.detail else None,
            )
        )

    def get_history(self, entry_id: str) -> list[HistoryRecord]:
        """History of an entry in append order."""
        h = ledger_history_table
        with self._db.connection() as conn:
            rows = conn.execute(
                select(h).where(h.c.entry_id == entry_id).order_by(h.c.sequence)
            ).fetchall()
        return [self._history.load(row) for row in rows]

    # === Queries ===

    def get(self, entry_id: str, *, include_history: bool = False) -> LedgerEntry:
        """Get an entry by id.

        Raises:
            EntryNotFound: No entry with this id
        """
        t = ledger_entries_table
        with self._db.connection() as conn:
            row = conn.execute(select(t).where(t.c.entry_id == entry_id)).first()
        if row is None:
            raise EntryNotFound(entry_id)
        history = self.get_history(entry_id) if include_history else None
        return self._entries.load(row, history)

    def due_entries(self, now: datetime, limit: int) -> list[str]:
        """Ids of entries ready to run: Pending, or WaitingDelay with wake_at <= now.

        Ordered by wake_at then entry_id, oldest first.
        """
        t = ledger_entries_table
        query = (
            select(t.c.entry_id)
            .where(
                or_(
                    t.c.status == EntryStatus.PENDING.value,
                    and_(
                        t.c.status == EntryStatus.WAITING_DELAY.value,
                        t.c.wake_at <= now,
                    ),
                )
            )
            .order_by(t.c.wake_at, t.c.entry_id)
            .limit(limit)
        )
        with self._db.connection() as conn:
            return [row.entry_id for row in conn.execute(query)]

    def find_active(self, flow_id: str, subscriber_id: str) -> LedgerEntry | None:
        """The non-terminal entry for (flow_id, subscriber_id), if any."""
        t = ledger_entries_table
        with self._db.connection() as conn:
            row = conn.execute(
                select(t).where(t.c.active_key == active_key(flow_id, subscriber_id))
            ).first()
        return self._entries.load(row) if row is not None else None

    def latest_entry(self, flow_id: str, subscriber_id: str) -> LedgerEntry | None:
        """Most recently created entry for (flow_id, subscriber_id), any status."""
        t = ledger_entries_table
        with self._db.connection() as conn:
            row = conn.execute(
                select(t)
                .where(and_(t.c.flow_id == flow_id, t.c.subscriber_id == subscriber_id))
                .order_by(t.c.created_at.desc(), t.c.entry_id.desc())
                .limit(1)
            ).first()
        return self._entries.load(row) if row is not None else None

    def list_entries(
        self,
        *,
        status: EntryStatus | None = None,
        flow_id: str | None = None,
        subscriber_id: str | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntry]:
        """Entries matching the given filters, oldest first."""
        t = ledger_entries_table
        query = select(t).order_by(t.c.created_at, t.c.entry_id)
        if status is not None:
            query = query.where(t.c.status == status.value)
        if flow_id is not None:
            query = query.where(t.c.flow_id == flow_id)
        if subscriber_id is not None:
            query = query.where(t.c.subscriber_id == subscriber_id)
        if limit is not None:
            query = query.limit(limit)
        with self._db.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [self._entries.load(row) for row in rows]

    def stale_running(self, older_than: datetime) -> list[LedgerEntry]:
        """Running entries not updated since older_than (abandoned by a crash)."""
        t = ledger_entries_table
        with self._db.connection() as conn:
            rows = conn.execute(
                select(t)
                .where(
                    and_(
                        t.c.status == EntryStatus.RUNNING.value,
                        t.c.updated_at < older_than,
                    )
                )
                .order_by(t.c.updated_at, t.c.entry_id)
            ).fetchall()
        return [self._entries.load(row) for row in rows]

    def count_by_status(self, flow_id: str | None = None) -> dict[EntryStatus, int]:
        t = ledger_entries_table
        query = select(t.c.status, func.count()).group_by(t.c.status)
        if flow_id is not None:
            query = query.where(t.c.flow_id == flow_id)
        with self._db.connection() as conn:
            return {EntryStatus(status): count for status, count in conn.execute(query)}

    # === Closing entries from outside the scheduler ===

    def _close_entry(
        self,
        entry_id: str,
        now: datetime,
        status: EntryStatus,
        outcome: str,
        detail: dict[str, Any],
    ) -> bool:
        """CAS an entry from whatever non-terminal status it holds to status.

        Returns False if the entry was already terminal. Raises StaleStatus
        after losing the race CANCEL_RETRY_LIMIT times in a row.
        """
        last_error: StaleStatus | None = None
        for _ in range(CANCEL_RETRY_LIMIT):
            entry = self.get(entry_id)
            if entry.is_terminal:
                return False
            record = HistoryRecord(
                node_id=entry.current_node_id,
                entered_at=now,
                exited_at=now,
                outcome=outcome,
                detail=detail,
            )
            try:
                self.transition(
                    entry_id,
                    entry.status,
                    entry.update(status=status, wake_at=None, waiting_for_event=None),
                    expected_revision=entry.revision,
                    history=[record],
                    now=now,
                )
            except StaleStatus as e:
                last_error = e
                logger.debug("Close raced a transition, retrying", entry_id=entry_id)
                continue
            logger.info(
                "Entry closed",
                entry_id=entry_id,
                flow_id=entry.flow_id,
                node_id=entry.current_node_id,
                status=status.value,
                outcome=outcome,
            )
            return True
        assert last_error is not None
        raise last_error

    def cancel_entry(self, entry_id: str, now: datetime, *, reason: str = "cancelled") -> bool:
        """CAS an entry from whatever non-terminal status it holds to Cancelled.

        Returns:
            True if this call cancelled the entry, False if it was already terminal

        Raises:
            EntryNotFound: No entry with this id
            StaleStatus: Lost the race CANCEL_RETRY_LIMIT times in a row
        """
        return self._close_entry(
            entry_id, now, EntryStatus.CANCELLED, "cancelled", {"reason": reason}
        )

    def complete_entry(
        self, entry_id: str, now: datetime, *, goal_node_id: str, event_type: str
    ) -> bool:
        """Complete an entry early because its flow's goal was reached.

        Same race handling as cancel_entry.
        """
        return self._close_entry(
            entry_id,
            now,
            EntryStatus.COMPLETED,
            "goal_achieved",
            {"goal_node_id": goal_node_id, "event_type": event_type},
        )

    def cancel(self, flow_id: str, subscriber_id: str, now: datetime) -> bool:
        """Cancel the subscriber's active execution of a flow, if any."""
        entry = self.find_active(flow_id, subscriber_id)
        if entry is None:
            return False
        return self.cancel_entry(entry.entry_id, now)

    def cancel_flow(self, flow_id: str, now: datetime, *, reason: str = "flow archived") -> int:
        """Cancel every non-terminal entry of a flow. Returns how many were cancelled."""
        t = ledger_entries_table
        with self._db.connection() as conn:
            entry_ids = [
                row.entry_id
                for row in conn.execute(
                    select(t.c.entry_id).where(
                        and_(t.c.flow_id == flow_id, t.c.active_key.is_not(None))
                    )
                )
            ]
        return sum(1 for entry_id in entry_ids if self.cancel_entry(entry_id, now, reason=reason))

    # === Event waits ===

    def active_entries(self, subscriber_id: str) -> list[LedgerEntry]:
        """Every non-terminal entry of a subscriber, across flows."""
        t = ledger_entries_table
        with self._db.connection() as conn:
            rows = conn.execute(
                select(t)
                .where(and_(t.c.subscriber_id == subscriber_id, t.c.active_key.is_not(None)))
                .order_by(t.c.created_at, t.c.entry_id)
            ).fetchall()
        return [self._entries.load(row) for row in rows]

    def resume_waiting(
        self,
        subscriber_id: str,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> list[str]:
        """Wake the subscriber's entries parked on event_type.

        Each entry becomes due now with the payload stored under
        ``events.<event_type>`` in its context. An entry whose timeout was
        claimed first (or that was cancelled) is skipped.

        Returns:
            entry_ids resumed

        Raises:
            ValueError: payload is not representable as canonical JSON
        """
        t = ledger_entries_table
        with self._db.connection() as conn:
            rows = conn.execute(
                select(t).where(
                    and_(
                        t.c.subscriber_id == subscriber_id,
                        t.c.status == EntryStatus.WAITING_DELAY.value,
                        t.c.waiting_for_event == event_type,
                    )
                )
            ).fetchall()

        resumed: list[str] = []
        for row in rows:
            entry = self._entries.load(row)
            events = dict(entry.context.get("events") or {})
            events[event_type] = payload
            record = HistoryRecord(
                node_id=entry.current_node_id,
                entered_at=now,
                exited_at=now,
                outcome="event_received",
                detail={"event_type": event_type},
            )
            try:
                self.transition(
                    entry.entry_id,
                    EntryStatus.WAITING_DELAY,
                    entry.update(
                        wake_at=now,
                        waiting_for_event=None,
                        context={**entry.context, "events": events},
                    ),
                    expected_revision=entry.revision,
                    history=[record],
                    now=now,
                )
            except StaleStatus:
                logger.debug("Event wait already ended", entry_id=entry.entry_id)
                continue
            resumed.append(entry.entry_id)
            logger.info(
                "Entry resumed by event",
                entry_id=entry.entry_id,
                flow_id=entry.flow_id,
                node_id=entry.current_node_id,
                event_type=event_type,
            )
        return resumed
