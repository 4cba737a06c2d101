# tests/core/ledger/test_execution_ledger.py
"""Tests for ExecutionLedger: creation, CAS transitions, queries, cancellation."""

import threading
from datetime import datetime, timedelta
from typing import Any

import pytest


@pytest.fixture
def ledger(ledger_db: Any) -> Any:
    from flowline.core.ledger import ExecutionLedger

    return ExecutionLedger(ledger_db)


class TestCreate:
    def test_new_entry_is_pending_and_due(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus

        entry_id = ledger.create(
            "welcome", 1, "sub-1", "start", now, store_id="shop", context={"event": {"a": 1}}
        )

        entry = ledger.get(entry_id)
        assert entry.status == EntryStatus.PENDING
        assert entry.wake_at == now
        assert entry.current_node_id == "start"
        assert entry.attempt_count == 0
        assert entry.revision == 0
        assert entry.store_id == "shop"
        assert entry.context == {"event": {"a": 1}}
        assert entry.created_at == now

    def test_explicit_entry_id(self, ledger: Any, now: datetime) -> None:
        assert ledger.create("welcome", 1, "sub-1", "start", now, entry_id="e-1") == "e-1"

    def test_duplicate_active_rejected(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import DuplicateActiveExecution

        ledger.create("welcome", 1, "sub-1", "start", now)

        with pytest.raises(DuplicateActiveExecution, match="sub-1"):
            ledger.create("welcome", 2, "sub-1", "start", now)

    def test_other_flow_or_subscriber_allowed(self, ledger: Any, now: datetime) -> None:
        ledger.create("welcome", 1, "sub-1", "start", now)
        ledger.create("welcome", 1, "sub-2", "start", now)
        ledger.create("winback", 1, "sub-1", "start", now)

        assert len(ledger.list_entries()) == 3

    def test_terminal_entry_frees_slot(self, ledger: Any, now: datetime) -> None:
        first = ledger.create("welcome", 1, "sub-1", "start", now)
        assert ledger.cancel_entry(first, now)

        second = ledger.create("welcome", 1, "sub-1", "start", now + timedelta(days=1))

        assert second != first
        assert ledger.find_active("welcome", "sub-1").entry_id == second


    def test_context_outside_json_safe_range_rejected(self, ledger: Any, now: datetime) -> None:
        with pytest.raises(ValueError):
            ledger.create("welcome", 1, "sub-1", "start", now, context={"amount": 2**53})

        # Nothing was written, the slot is still free
        assert ledger.find_active("welcome", "sub-1") is None
        assert ledger.list_entries() == []


class TestTransition:
    def test_cas_applies_and_bumps_revision(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)

        ledger.transition(
            entry_id,
            EntryStatus.PENDING,
            EntryUpdate(status=EntryStatus.RUNNING, current_node_id="start"),
            now=now,
        )

        entry = ledger.get(entry_id)
        assert entry.status == EntryStatus.RUNNING
        assert entry.revision == 1
        assert entry.wake_at is None

    def test_wrong_expected_status_is_stale(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate, StaleStatus

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)

        with pytest.raises(StaleStatus):
            ledger.transition(
                entry_id,
                EntryStatus.WAITING_DELAY,
                EntryUpdate(status=EntryStatus.RUNNING, current_node_id="start"),
            )
        assert ledger.get(entry_id).status == EntryStatus.PENDING

    def test_wrong_revision_is_stale(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate, StaleStatus

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)

        with pytest.raises(StaleStatus):
            ledger.transition(
                entry_id,
                EntryStatus.PENDING,
                EntryUpdate(status=EntryStatus.RUNNING, current_node_id="start"),
                expected_revision=3,
            )

    def test_second_racer_loses(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate, StaleStatus

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)
        claim = EntryUpdate(status=EntryStatus.RUNNING, current_node_id="start")

        ledger.transition(entry_id, EntryStatus.PENDING, claim)
        with pytest.raises(StaleStatus):
            ledger.transition(entry_id, EntryStatus.PENDING, claim)

    def test_unknown_entry(self, ledger: Any) -> None:
        from flowline.contracts import EntryNotFound, EntryStatus, EntryUpdate

        with pytest.raises(EntryNotFound):
            ledger.transition(
                "missing",
                EntryStatus.PENDING,
                EntryUpdate(status=EntryStatus.RUNNING, current_node_id="start"),
            )

    def test_history_written_with_transition(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate, HistoryRecord

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)
        record = HistoryRecord(node_id="start", entered_at=now, exited_at=now, outcome="triggered")

        ledger.transition(
            entry_id,
            EntryStatus.PENDING,
            EntryUpdate(status=EntryStatus.RUNNING, current_node_id="wait"),
            history=[record],
        )

        history = ledger.get_history(entry_id)
        assert [(h.node_id, h.outcome, h.sequence) for h in history] == [
            ("start", "triggered", 1)
        ]

    def test_lost_race_writes_no_history(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate, HistoryRecord, StaleStatus

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)
        record = HistoryRecord(node_id="start", entered_at=now, outcome="triggered")

        with pytest.raises(StaleStatus):
            ledger.transition(
                entry_id,
                EntryStatus.RUNNING,
                EntryUpdate(status=EntryStatus.COMPLETED, current_node_id="start"),
                history=[record],
            )
        assert ledger.get_history(entry_id) == []


class TestHistory:
    def test_append_numbers_in_order(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import HistoryRecord

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)
        for i, node in enumerate(["start", "wait", "send"]):
            ledger.append_history(
                entry_id,
                HistoryRecord(
                    node_id=node,
                    entered_at=now + timedelta(minutes=i),
                    outcome="advanced",
                    detail={"step": i},
                ),
            )

        entry = ledger.get(entry_id, include_history=True)

        assert [h.node_id for h in entry.history] == ["start", "wait", "send"]
        assert [h.sequence for h in entry.history] == [1, 2, 3]
        assert entry.history[2].detail == {"step": 2}
        assert entry.history[1].entered_at == now + timedelta(minutes=1)

    def test_append_unknown_entry(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryNotFound, HistoryRecord

        with pytest.raises(EntryNotFound):
            ledger.append_history("missing", HistoryRecord("n", now, "advanced"))


class TestQueries:
    def test_due_entries_order_and_filter(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate

        later = ledger.create("welcome", 1, "sub-late", "start", now + timedelta(minutes=5))
        early = ledger.create("welcome", 1, "sub-early", "start", now - timedelta(minutes=5))
        waiting = ledger.create("welcome", 1, "sub-wait", "start", now)
        future = ledger.create("welcome", 1, "sub-future", "start", now)
        for entry_id, wake in ((waiting, now - timedelta(minutes=1)), (future, now + timedelta(hours=1))):
            ledger.transition(
                entry_id,
                EntryStatus.PENDING,
                EntryUpdate(status=EntryStatus.WAITING_DELAY, current_node_id="send", wake_at=wake),
            )

        due = ledger.due_entries(now, limit=10)

        # Pending entries are due regardless of wake_at; future waits are not
        assert due == [early, waiting, later]

    def test_due_entries_limit(self, ledger: Any, now: datetime) -> None:
        for i in range(5):
            ledger.create("welcome", 1, f"sub-{i}", "start", now)

        assert len(ledger.due_entries(now, limit=2)) == 2

    def test_running_and_terminal_not_due(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate

        running = ledger.create("welcome", 1, "sub-1", "start", now)
        ledger.transition(
            running,
            EntryStatus.PENDING,
            EntryUpdate(status=EntryStatus.RUNNING, current_node_id="start"),
        )
        cancelled = ledger.create("welcome", 1, "sub-2", "start", now)
        ledger.cancel_entry(cancelled, now)

        assert ledger.due_entries(now, limit=10) == []

    def test_latest_entry(self, ledger: Any, now: datetime) -> None:
        first = ledger.create("welcome", 1, "sub-1", "start", now)
        ledger.cancel_entry(first, now)
        second = ledger.create("welcome", 1, "sub-1", "start", now + timedelta(hours=1))

        assert ledger.latest_entry("welcome", "sub-1").entry_id == second
        assert ledger.latest_entry("welcome", "nobody") is None

    def test_list_entries_filters(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus

        a = ledger.create("welcome", 1, "sub-1", "start", now)
        ledger.create("winback", 1, "sub-1", "start", now)
        ledger.cancel_entry(a, now)

        assert [e.entry_id for e in ledger.list_entries(status=EntryStatus.CANCELLED)] == [a]
        assert len(ledger.list_entries(flow_id="winback")) == 1
        assert len(ledger.list_entries(subscriber_id="sub-1", limit=1)) == 1

    def test_count_by_status(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus

        a = ledger.create("welcome", 1, "sub-1", "start", now)
        ledger.create("welcome", 1, "sub-2", "start", now)
        ledger.cancel_entry(a, now)

        assert ledger.count_by_status("welcome") == {
            EntryStatus.PENDING: 1,
            EntryStatus.CANCELLED: 1,
        }

    def test_get_unknown(self, ledger: Any) -> None:
        from flowline.contracts import EntryNotFound

        with pytest.raises(EntryNotFound):
            ledger.get("missing")


class TestCancel:
    def test_cancel_records_history(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)

        assert ledger.cancel("welcome", "sub-1", now) is True

        entry = ledger.get(entry_id, include_history=True)
        assert entry.status == EntryStatus.CANCELLED
        assert entry.wake_at is None
        assert entry.history[-1].outcome == "cancelled"
        assert ledger.find_active("welcome", "sub-1") is None

    def test_cancel_without_active_entry(self, ledger: Any, now: datetime) -> None:
        assert ledger.cancel("welcome", "nobody", now) is False

    def test_cancel_terminal_is_noop(self, ledger: Any, now: datetime) -> None:
        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)
        assert ledger.cancel_entry(entry_id, now) is True
        assert ledger.cancel_entry(entry_id, now) is False

    def test_cancel_running_entry(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)
        ledger.transition(
            entry_id,
            EntryStatus.PENDING,
            EntryUpdate(status=EntryStatus.RUNNING, current_node_id="start"),
        )

        assert ledger.cancel_entry(entry_id, now) is True
        assert ledger.get(entry_id).status == EntryStatus.CANCELLED

    def test_cancel_flow(self, ledger: Any, now: datetime) -> None:
        for i in range(3):
            ledger.create("welcome", 1, f"sub-{i}", "start", now)
        ledger.create("winback", 1, "sub-0", "start", now)

        assert ledger.cancel_flow("welcome", now) == 3
        assert len(ledger.due_entries(now, limit=10)) == 1


@pytest.mark.slow
class TestGoalCompletion:
    def test_complete_entry_records_goal(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus

        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)

        assert ledger.complete_entry(
            entry_id, now, goal_node_id="converted", event_type="order_placed"
        )

        entry = ledger.get(entry_id, include_history=True)
        assert entry.status == EntryStatus.COMPLETED
        assert entry.history[-1].outcome == "goal_achieved"
        assert entry.history[-1].detail == {
            "goal_node_id": "converted",
            "event_type": "order_placed",
        }
        assert ledger.complete_entry(
            entry_id, now, goal_node_id="converted", event_type="order_placed"
        ) is False

    def test_active_entries_across_flows(self, ledger: Any, now: datetime) -> None:
        first = ledger.create("welcome", 1, "sub-1", "start", now)
        second = ledger.create("winback", 1, "sub-1", "start", now + timedelta(seconds=1))
        ledger.create("welcome", 1, "sub-2", "start", now)
        ledger.cancel_entry(second, now)

        assert [e.entry_id for e in ledger.active_entries("sub-1")] == [first]


class TestResumeWaiting:
    def _park(self, ledger: Any, subscriber: str, event_type: str, now: datetime) -> str:
        from flowline.contracts import EntryStatus, EntryUpdate

        entry_id = ledger.create("welcome", 1, subscriber, "start", now, context={"event": {}})
        ledger.transition(
            entry_id,
            EntryStatus.PENDING,
            EntryUpdate(
                status=EntryStatus.WAITING_DELAY,
                current_node_id="thanks",
                wake_at=now + timedelta(days=3),
                waiting_for_event=event_type,
            ),
            now=now,
        )
        return entry_id

    def test_matching_event_makes_entry_due(self, ledger: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus

        entry_id = self._park(ledger, "sub-1", "order_placed", now)
        later = now + timedelta(hours=2)

        resumed = ledger.resume_waiting("sub-1", "order_placed", {"total": 42}, later)

        assert resumed == [entry_id]
        entry = ledger.get(entry_id, include_history=True)
        assert entry.status == EntryStatus.WAITING_DELAY
        assert entry.wake_at == later
        assert entry.waiting_for_event is None
        assert entry.context == {"event": {}, "events": {"order_placed": {"total": 42}}}
        assert entry.history[-1].outcome == "event_received"
        assert ledger.due_entries(later, limit=10) == [entry_id]

    def test_other_events_and_subscribers_ignored(self, ledger: Any, now: datetime) -> None:
        entry_id = self._park(ledger, "sub-1", "order_placed", now)

        assert ledger.resume_waiting("sub-1", "link_clicked", {}, now) == []
        assert ledger.resume_waiting("sub-2", "order_placed", {}, now) == []
        assert ledger.get(entry_id).waiting_for_event == "order_placed"

    def test_second_event_finds_nothing(self, ledger: Any, now: datetime) -> None:
        self._park(ledger, "sub-1", "order_placed", now)
        ledger.resume_waiting("sub-1", "order_placed", {}, now)

        assert ledger.resume_waiting("sub-1", "order_placed", {}, now) == []


class TestConcurrentCas:
    """CAS exclusivity against a file-backed database with real threads."""

    def test_exactly_one_claim_wins(self, file_db: Any, now: datetime) -> None:
        from flowline.contracts import EntryStatus, EntryUpdate, StaleStatus
        from flowline.core.ledger import ExecutionLedger

        ledger = ExecutionLedger(file_db)
        entry_id = ledger.create("welcome", 1, "sub-1", "start", now)
        barrier = threading.Barrier(8)
        wins: list[int] = []
        losses: list[int] = []

        def claim(worker: int) -> None:
            barrier.wait()
            try:
                ledger.transition(
                    entry_id,
                    EntryStatus.PENDING,
                    EntryUpdate(status=EntryStatus.RUNNING, current_node_id="start"),
                    expected_revision=0,
                )
            except StaleStatus:
                losses.append(worker)
            else:
                wins.append(worker)

        threads = [threading.Thread(target=claim, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(losses) == 7
        assert ledger.get(entry_id).revision == 1

    def test_single_active_entry_under_concurrent_create(
        self, file_db: Any, now: datetime
    ) -> None:
        from flowline.contracts import DuplicateActiveExecution
        from flowline.core.ledger import ExecutionLedger

        ledger = ExecutionLedger(file_db)
        barrier = threading.Barrier(6)
        created: list[str] = []
        rejected: list[int] = []

        def enroll(worker: int) -> None:
            barrier.wait()
            try:
                created.append(ledger.create("welcome", 1, "sub-1", "start", now))
            except DuplicateActiveExecution:
                rejected.append(worker)

        threads = [threading.Thread(target=enroll, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 1
        assert len(rejected) == 5
