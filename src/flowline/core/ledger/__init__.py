# src/flowline/core/ledger/__init__.py
"""Execution ledger: durable per-subscriber state, published flows, recovery."""

from flowline.core.ledger.database import LedgerDB
from flowline.core.ledger.flows import FlowStore
from flowline.core.ledger.ledger import ExecutionLedger
from flowline.core.ledger.recovery import RecoveryCheck, RecoveryManager, RecoveryResult
from flowline.core.ledger.schema import metadata

__all__ = [
    # Database
    "LedgerDB",
    "metadata",
    # Stores
    "ExecutionLedger",
    "FlowStore",
    # Recovery
    "RecoveryCheck",
    "RecoveryManager",
    "RecoveryResult",
]
