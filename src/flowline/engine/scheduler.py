# src/flowline/engine/scheduler.py
"""StepScheduler: drives due ledger entries through their flow graphs.

One tick:
    1. Select due entries (Pending, or WaitingDelay with wake_at <= now)
    2. Claim each by CAS to Running; losing the race is a conflict, not an error
    3. Evaluate nodes and apply transitions until the entry waits, finishes,
       or hits the per-tick step limit
    4. Failures go through the retry policy

Every ledger write after the claim is a CAS against the revision this tick
produced, so a concurrent cancel (or another worker) wins cleanly.
"""

from __future__ import annotations

from datetime import datetime

from flowline.contracts.enums import CLAIMABLE_STATUSES, EntryStatus, TransitionKind
from flowline.contracts.errors import EntryNotFound, FlowNotFound, StaleStatus
from flowline.contracts.ledger import EntryUpdate, HistoryRecord, LedgerEntry
from flowline.contracts.results import TickResult, Transition
from flowline.core.graph import ActionNode, FlowGraph
from flowline.core.ledger.flows import FlowStore
from flowline.core.ledger.ledger import ExecutionLedger
from flowline.core.logging import get_logger
from flowline.engine.evaluator import EvaluationContext, NodeEvaluator
from flowline.engine.retry import RetryConfig, RetryManager

logger = get_logger(__name__)


class _LostClaim(Exception):
    """The entry changed under us; stop processing it this tick."""


class _Claim:
    """Mutable view of an entry this tick owns."""

    def __init__(self, entry: LedgerEntry) -> None:
        self.entry = entry
        self.node_id = entry.current_node_id
        self.attempt_count = entry.attempt_count
        self.revision = entry.revision

    def context(self) -> EvaluationContext:
        return EvaluationContext(
            entry_id=self.entry.entry_id,
            subscriber_id=self.entry.subscriber_id,
            attempt_count=self.attempt_count,
            store_id=self.entry.store_id,
            data=self.entry.context,
        )


class StepScheduler:
    """Claims due entries and steps them through their graphs.

    Safe to run from several threads or processes against one ledger.

    Example:
        scheduler = StepScheduler(ledger, flows, evaluator, RetryManager())
        result = scheduler.tick(datetime.now(UTC))
    """

    def __init__(
        self,
        ledger: ExecutionLedger,
        flows: FlowStore,
        evaluator: NodeEvaluator,
        retry: RetryManager | None = None,
        *,
        batch_size: int = 100,
        max_steps_per_tick: int = 50,
    ) -> None:
        if batch_size < 1 or max_steps_per_tick < 1:
            raise ValueError("batch_size and max_steps_per_tick must be >= 1")
        self._ledger = ledger
        self._flows = flows
        self._evaluator = evaluator
        self._retry = retry or RetryManager()
        self._batch_size = batch_size
        self._max_steps = max_steps_per_tick

    def tick(self, now: datetime) -> TickResult:
        """Process one batch of due entries."""
        result = TickResult()
        entry_ids = self._ledger.due_entries(now, self._batch_size)
        result.selected = len(entry_ids)
        for entry_id in entry_ids:
            claim = self._claim(entry_id, now, result)
            if claim is None:
                continue
            try:
                self._run(claim, now, result)
            except _LostClaim:
                result.conflicts += 1
                logger.debug(
                    "Entry changed during tick, dropping",
                    entry_id=entry_id,
                    node_id=claim.node_id,
                )
        if result.selected:
            logger.info(
                "Tick finished",
                selected=result.selected,
                claimed=result.claimed,
                conflicts=result.conflicts,
                steps=result.steps,
                completed=result.completed,
                failed=result.failed,
                retried=result.retried,
            )
        return result

    # === Claim ===

    def _claim(self, entry_id: str, now: datetime, result: TickResult) -> _Claim | None:
        try:
            entry = self._ledger.get(entry_id)
        except EntryNotFound:
            return None
        if entry.status not in CLAIMABLE_STATUSES:
            result.conflicts += 1
            return None
        history: list[HistoryRecord] = []
        if entry.waiting_for_event is not None:
            # Still parked on the event at wake time: the wait timed out
            history.append(
                HistoryRecord(
                    node_id=entry.current_node_id,
                    entered_at=now,
                    exited_at=now,
                    outcome="event_timeout",
                    detail={"event_type": entry.waiting_for_event},
                )
            )
        try:
            self._ledger.transition(
                entry_id,
                entry.status,
                entry.update(status=EntryStatus.RUNNING, wake_at=None, waiting_for_event=None),
                expected_revision=entry.revision,
                history=history,
                now=now,
            )
        except StaleStatus:
            result.conflicts += 1
            logger.debug("Claim lost to another worker", entry_id=entry_id)
            return None
        result.claimed += 1
        claim = _Claim(entry)
        claim.revision += 1
        return claim

    # === Step loop ===

    def _run(self, claim: _Claim, now: datetime, result: TickResult) -> None:
        entry = claim.entry
        try:
            graph = self._flows.get(entry.flow_id, entry.flow_version)
        except FlowNotFound as e:
            self._finish(claim, now, EntryStatus.FAILED, "failed", error=str(e))
            result.failed += 1
            logger.error(
                "Entry failed",
                entry_id=entry.entry_id,
                flow_id=entry.flow_id,
                error=str(e),
            )
            return

        steps = 0
        while True:
            if steps >= self._max_steps:
                self._park(claim, now)
                result.parked += 1
                return

            try:
                node = graph.get_node(claim.node_id)
                if isinstance(node, ActionNode):
                    # Side effects only while we still own the entry
                    self._verify_claim(claim)
                transition = self._evaluator.evaluate(graph, node, claim.context(), now)
            except _LostClaim:
                raise
            except Exception as e:  # Contained per entry; other entries still run
                self._handle_failure(claim, graph, now, e, result)
                return

            steps += 1
            result.steps += 1
            if not self._apply(claim, transition, now, result):
                return

    def _verify_claim(self, claim: _Claim) -> None:
        current = self._ledger.get(claim.entry.entry_id)
        if current.status != EntryStatus.RUNNING or current.revision != claim.revision:
            raise _LostClaim()

    def _apply(
        self, claim: _Claim, transition: Transition, now: datetime, result: TickResult
    ) -> bool:
        """Write one transition. Returns True if the entry keeps running this tick."""
        record = HistoryRecord(
            node_id=claim.node_id,
            entered_at=now,
            exited_at=now,
            outcome=transition.outcome,
            detail=transition.detail,
        )

        if transition.kind == TransitionKind.ADVANCE:
            assert transition.next_node_id is not None
            self._write(
                claim,
                EntryUpdate(status=EntryStatus.RUNNING, current_node_id=transition.next_node_id),
                record,
                now,
            )
            claim.node_id = transition.next_node_id
            claim.attempt_count = 0
            return True

        if transition.kind == TransitionKind.WAIT:
            assert transition.next_node_id is not None
            self._write(
                claim,
                EntryUpdate(
                    status=EntryStatus.WAITING_DELAY,
                    current_node_id=transition.next_node_id,
                    wake_at=transition.wake_at,
                    waiting_for_event=transition.waiting_for_event,
                ),
                record,
                now,
            )
            result.waiting += 1
            logger.debug(
                "Entry waiting",
                entry_id=claim.entry.entry_id,
                next_node_id=transition.next_node_id,
                wake_at=transition.wake_at.isoformat() if transition.wake_at else None,
            )
            return False

        if transition.kind == TransitionKind.COMPLETE:
            self._finish(claim, now, EntryStatus.COMPLETED, transition.outcome, record=record)
            result.completed += 1
            logger.info(
                "Entry completed",
                entry_id=claim.entry.entry_id,
                flow_id=claim.entry.flow_id,
                subscriber_id=claim.entry.subscriber_id,
                node_id=claim.node_id,
            )
            return False

        self._finish(
            claim, now, EntryStatus.FAILED, transition.outcome, error=transition.error, record=record
        )
        result.failed += 1
        logger.error(
            "Entry failed",
            entry_id=claim.entry.entry_id,
            flow_id=claim.entry.flow_id,
            node_id=claim.node_id,
            error=transition.error,
        )
        return False

    def _handle_failure(
        self,
        claim: _Claim,
        graph: FlowGraph,
        now: datetime,
        error: Exception,
        result: TickResult,
    ) -> None:
        config = self._retry_config(graph, claim.node_id)
        decision = self._retry.decide(error, claim.attempt_count, now, config)
        message = str(error) or type(error).__name__
        entry = claim.entry
        if decision.retry:
            record = HistoryRecord(
                node_id=claim.node_id,
                entered_at=now,
                exited_at=now,
                outcome="retry_scheduled",
                detail={"error": message, "attempt": decision.attempt},
            )
            self._write(
                claim,
                EntryUpdate(
                    status=EntryStatus.WAITING_DELAY,
                    current_node_id=claim.node_id,
                    wake_at=decision.wake_at,
                    attempt_count=decision.attempt,
                    last_error=message,
                ),
                record,
                now,
            )
            result.retried += 1
            logger.warning(
                "Node evaluation failed, retry scheduled",
                entry_id=entry.entry_id,
                flow_id=graph.flow_id,
                node_id=claim.node_id,
                attempt=decision.attempt,
                max_attempts=config.max_attempts,
                wake_at=decision.wake_at.isoformat() if decision.wake_at else None,
                error=message,
            )
            return

        claim.attempt_count = decision.attempt
        self._finish(claim, now, EntryStatus.FAILED, "failed", error=message)
        result.failed += 1
        logger.error(
            "Entry failed",
            entry_id=entry.entry_id,
            flow_id=graph.flow_id,
            node_id=claim.node_id,
            attempt=decision.attempt,
            error_type=type(error).__name__,
            error=message,
        )

    def _retry_config(self, graph: FlowGraph, node_id: str) -> RetryConfig:
        """Engine retry settings with the action node's overrides, if any."""
        node = graph.get_node(node_id) if graph.has_node(node_id) else None
        if isinstance(node, ActionNode):
            return self._retry.config.with_overrides(node.retry)
        return self._retry.config

    def _park(self, claim: _Claim, now: datetime) -> None:
        """Step limit reached: hand the entry back, due immediately."""
        record = HistoryRecord(
            node_id=claim.node_id,
            entered_at=now,
            outcome="step_limit",
            detail={"max_steps": self._max_steps},
        )
        self._write(
            claim,
            EntryUpdate(
                status=EntryStatus.WAITING_DELAY,
                current_node_id=claim.node_id,
                wake_at=now,
                attempt_count=claim.attempt_count,
            ),
            record,
            now,
        )
        logger.warning(
            "Step limit reached, entry parked",
            entry_id=claim.entry.entry_id,
            node_id=claim.node_id,
            max_steps=self._max_steps,
        )

    def _finish(
        self,
        claim: _Claim,
        now: datetime,
        status: EntryStatus,
        outcome: str,
        *,
        error: str | None = None,
        record: HistoryRecord | None = None,
    ) -> None:
        if record is None:
            record = HistoryRecord(
                node_id=claim.node_id,
                entered_at=now,
                exited_at=now,
                outcome=outcome,
                detail={"error": error} if error else None,
            )
        self._write(
            claim,
            EntryUpdate(
                status=status,
                current_node_id=claim.node_id,
                attempt_count=claim.attempt_count,
                last_error=error,
            ),
            record,
            now,
        )

    def _write(
        self, claim: _Claim, update: EntryUpdate, record: HistoryRecord, now: datetime
    ) -> None:
        try:
            self._ledger.transition(
                claim.entry.entry_id,
                EntryStatus.RUNNING,
                update,
                expected_revision=claim.revision,
                history=[record],
                now=now,
            )
        except StaleStatus as e:
            raise _LostClaim() from e
        claim.revision += 1
