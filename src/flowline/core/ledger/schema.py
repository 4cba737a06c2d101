# src/flowline/core/ledger/schema.py
"""SQLAlchemy table definitions for the execution ledger.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Text,
    Table,
    TypeDecorator,
    UniqueConstraint,
)

# Shared metadata for all tables
metadata = MetaData()


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetimes stored as naive UTC.

    SQLite drops offsets on write, so every backend gets naive UTC and reads
    come back with tzinfo=UTC. Naive inputs are taken to be UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


# === Published flow versions ===

flows_table = Table(
    "flows",
    metadata,
    Column("flow_id", String(128), primary_key=True),
    Column("version", Integer, primary_key=True),
    Column("name", String(256)),
    Column("definition_json", Text, nullable=False),
    Column("definition_hash", String(64), nullable=False),
    Column("canonical_version", String(64), nullable=False),
    Column("published_at", UTCDateTime(), nullable=False),
    Column("archived_at", UTCDateTime()),
)

# === Ledger entries (one per subscriber enrollment) ===

ledger_entries_table = Table(
    "ledger_entries",
    metadata,
    Column("entry_id", String(64), primary_key=True),
    Column("flow_id", String(128), nullable=False),
    Column("flow_version", Integer, nullable=False),
    Column("subscriber_id", String(128), nullable=False),
    Column("store_id", String(128)),
    Column("current_node_id", String(128), nullable=False),
    Column("status", String(32), nullable=False),
    Column("wake_at", UTCDateTime()),
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("recovery_count", Integer, nullable=False, default=0),
    # Event type a WaitingDelay entry is parked on; NULL for timed waits
    Column("waiting_for_event", String(128)),
    Column("context_json", Text, nullable=False),
    Column("revision", Integer, nullable=False, default=0),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    # "{flow_id}:{subscriber_id}" while non-terminal, NULL once terminal.
    # NULLs never collide, so the unique constraint only binds live entries.
    Column("active_key", String(320)),
    UniqueConstraint("active_key", name="uq_ledger_entries_active_key"),
)

Index("ix_ledger_entries_due", ledger_entries_table.c.status, ledger_entries_table.c.wake_at)
Index(
    "ix_ledger_entries_subscriber",
    ledger_entries_table.c.flow_id,
    ledger_entries_table.c.subscriber_id,
)
Index(
    "ix_ledger_entries_waiting",
    ledger_entries_table.c.subscriber_id,
    ledger_entries_table.c.waiting_for_event,
)

# === Per-entry history (append-only) ===

ledger_history_table = Table(
    "ledger_history",
    metadata,
    Column("history_id", Integer, primary_key=True, autoincrement=True),
    Column(
        "entry_id",
        String(64),
        ForeignKey("ledger_entries.entry_id"),
        nullable=False,
    ),
    Column("sequence", Integer, nullable=False),
    Column("node_id", String(128), nullable=False),
    Column("entered_at", UTCDateTime(), nullable=False),
    Column("exited_at", UTCDateTime()),
    Column("outcome", String(128), nullable=False),
    Column("detail_json", Text),
    UniqueConstraint("entry_id", "sequence"),
)
