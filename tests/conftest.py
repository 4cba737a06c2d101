# tests/conftest.py
"""Shared test fixtures and helpers.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/
"""

import logging
import os
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from flowline.contracts import ActionError, ActionOutcome

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


NOW = datetime(2024, 3, 4, 10, 30, tzinfo=UTC)


class RecordingExecutor:
    """Action executor that records calls and can be told to fail.

    Usage:
        executor = RecordingExecutor("email")
        executor.fail_times = 2          # first two calls raise ActionError
        executor.retryable = False       # ...as non-retryable errors
    """

    plugin_version = "test"

    def __init__(self, name: str = "email", config: dict[str, Any] | None = None) -> None:
        self.name = name
        self.config = config or {}
        self.calls: list[tuple[dict[str, Any], str]] = []
        self.fail_times = 0
        self.retryable = True
        self.closed = False
        self._lock = threading.Lock()

    def execute(self, params: dict[str, Any], idempotency_key: str) -> ActionOutcome:
        with self._lock:
            self.calls.append((params, idempotency_key))
            call_number = len(self.calls)
        if call_number <= self.fail_times:
            raise ActionError(f"provider unavailable (call {call_number})", retryable=self.retryable)
        return ActionOutcome(
            action_type=self.name,
            idempotency_key=idempotency_key,
            detail={"sent": True},
        )

    def close(self) -> None:
        self.closed = True

    @property
    def keys(self) -> list[str]:
        return [key for _, key in self.calls]


def flow_dict(**overrides: Any) -> dict[str, Any]:
    """Trigger -> Delay(1h) -> Action -> Exit, as a builder payload."""
    data: dict[str, Any] = {
        "flow_id": "welcome",
        "name": "Welcome series",
        "nodes": [
            {"id": "start", "kind": "trigger", "event_type": "customer_created"},
            {"id": "wait", "kind": "delay", "mode": "fixed_duration", "duration": "1h"},
            {
                "id": "send",
                "kind": "action",
                "action_type": "email",
                "params": {"to": "{{ subscriber.email }}", "template": "welcome"},
            },
            {"id": "done", "kind": "exit"},
        ],
        "edges": [
            {"source": "start", "target": "wait"},
            {"source": "wait", "target": "send"},
            {"source": "send", "target": "done"},
        ],
    }
    data.update(overrides)
    return data


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor("email")


@pytest.fixture
def recording_executor() -> type[RecordingExecutor]:
    """The RecordingExecutor class, for tests that need several executors."""
    return RecordingExecutor


@pytest.fixture
def make_flow() -> Any:
    """Builder-payload factory: make_flow(flow_id="other", allow_reentry=True)."""
    return flow_dict


@pytest.fixture
def ledger_db() -> Iterator[Any]:
    """In-memory ledger database (single connection, single-threaded tests)."""
    from flowline.core.ledger import LedgerDB

    db = LedgerDB.in_memory()
    yield db
    db.close()


@pytest.fixture
def file_db(tmp_path: Any) -> Iterator[Any]:
    """File-backed ledger database for multi-threaded tests."""
    from flowline.core.ledger import LedgerDB

    db = LedgerDB(f"sqlite:///{tmp_path}/ledger.db")
    yield db
    db.close()


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    """Undo configure_logging() calls made by CLI tests.

    configure_logging binds the current sys.stderr, which CliRunner closes
    when the command returns.
    """
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)
