# src/flowline/core/ledger/repositories.py
"""Repository layer for ledger records.

Handles the seam between SQLAlchemy rows (strings, JSON text) and domain
objects (strict enum types). This is NOT a trust boundary - the ledger is
our data, so a row with an unknown status crashes instead of being coerced.
"""

import json
from typing import Any

from flowline.contracts.enums import EntryStatus
from flowline.contracts.ledger import HistoryRecord, LedgerEntry


class LedgerEntryRepository:
    """Repository for ledger entry rows."""

    def load(self, row: Any, history: list[HistoryRecord] | None = None) -> LedgerEntry:
        """Load LedgerEntry from database row.

        Converts string fields to enums. Crashes on invalid data.
        """
        return LedgerEntry(
            entry_id=row.entry_id,
            flow_id=row.flow_id,
            flow_version=row.flow_version,
            subscriber_id=row.subscriber_id,
            current_node_id=row.current_node_id,
            status=EntryStatus(row.status),  # Convert HERE
            attempt_count=row.attempt_count,
            revision=row.revision,
            created_at=row.created_at,
            updated_at=row.updated_at,
            wake_at=row.wake_at,
            last_error=row.last_error,
            recovery_count=row.recovery_count,
            waiting_for_event=row.waiting_for_event,
            store_id=row.store_id,
            context=json.loads(row.context_json),
            history=list(history or []),
        )


class HistoryRepository:
    """Repository for ledger history rows."""

    def load(self, row: Any) -> HistoryRecord:
        return HistoryRecord(
            node_id=row.node_id,
            entered_at=row.entered_at,
            exited_at=row.exited_at,
            outcome=row.outcome,
            detail=json.loads(row.detail_json) if row.detail_json else None,
            sequence=row.sequence,
        )
