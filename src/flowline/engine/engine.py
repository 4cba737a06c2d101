# src/flowline/engine/engine.py
"""FlowEngine: the public entry point wiring ledger, flows, actions and scheduler.

Typical use:

    engine = FlowEngine.from_settings(load_settings(Path("settings.yaml")))
    engine.publish(FlowDefinition.from_file(Path("welcome.yaml")))
    engine.handle_event("customer_created", "sub-42", {"plan": "pro"})
    engine.tick()
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from types import TracebackType
from typing import Any, Self

from flowline.actions.manager import ActionRegistry
from flowline.contracts.errors import (
    DuplicateActiveExecution,
    FlowNotFound,
    InvalidPayload,
    LeaseTooShort,
)
from flowline.contracts.ledger import LedgerEntry
from flowline.contracts.results import TickResult
from flowline.core.canonical import canonical_json
from flowline.core.config import FlowlineSettings
from flowline.core.definition import FlowDefinition, build_graph
from flowline.core.engagement import ProfileProvider, StaticProfileProvider
from flowline.core.graph import ActionNode, FlowGraph
from flowline.core.ledger.database import LedgerDB
from flowline.core.ledger.flows import FlowStore
from flowline.core.ledger.ledger import ExecutionLedger
from flowline.core.ledger.recovery import RecoveryManager, RecoveryResult
from flowline.core.logging import get_logger
from flowline.engine.evaluator import NodeEvaluator
from flowline.engine.retry import RetryConfig, RetryManager
from flowline.engine.scheduler import StepScheduler
from flowline.engine.workers import WorkerPool

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def event_context(
    event_type: str,
    payload: Mapping[str, Any] | None,
    subscriber: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Context stored on a new entry; predicates and templates read it."""
    return {
        "event_type": event_type,
        "event": dict(payload or {}),
        "subscriber": dict(subscriber or {}),
    }


class FlowEngine:
    """Durable flow execution over a single ledger database."""

    def __init__(
        self,
        db: LedgerDB,
        settings: FlowlineSettings | None = None,
        *,
        actions: ActionRegistry | None = None,
        profiles: ProfileProvider | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._settings = settings or FlowlineSettings()
        self._db = db
        self._clock = clock

        if actions is None:
            actions = ActionRegistry(self._settings.actions)
            actions.register_builtin_actions()
        self._actions = actions

        engagement = self._settings.engagement
        self._profiles = profiles or StaticProfileProvider(
            default_timezone=engagement.default_timezone
        )

        self.ledger = ExecutionLedger(db)
        self.flows = FlowStore(db)
        self.evaluator = NodeEvaluator(
            actions,
            self._profiles,
            action_timeout=self._settings.actions.timeout_seconds,
            horizon_days=engagement.horizon_days,
            send_window=engagement.send_window,
            max_concurrent_actions=max(self._settings.scheduler.workers * 2, 4),
        )
        self.scheduler = StepScheduler(
            self.ledger,
            self.flows,
            self.evaluator,
            RetryManager(RetryConfig.from_settings(self._settings.retry)),
            batch_size=self._settings.scheduler.batch_size,
            max_steps_per_tick=self._settings.scheduler.max_steps_per_tick,
        )
        self.recovery = RecoveryManager(
            self.ledger,
            lease=timedelta(seconds=self._settings.scheduler.running_lease_seconds),
            max_recoveries=self._settings.scheduler.max_recoveries,
        )

    @classmethod
    def from_settings(cls, settings: FlowlineSettings, **kwargs: Any) -> FlowEngine:
        """Open (and create tables in) the configured database."""
        db = LedgerDB.from_url(
            settings.database.url,
            echo=settings.database.echo,
            busy_timeout_seconds=settings.database.busy_timeout_seconds,
        )
        return cls(db, settings, **kwargs)

    @property
    def settings(self) -> FlowlineSettings:
        return self._settings

    @property
    def actions(self) -> ActionRegistry:
        return self._actions

    # === Flows ===

    def publish(self, definition: FlowDefinition) -> FlowGraph:
        """Validate and publish a flow definition as a new immutable version.

        Raises:
            GraphError: Structural validation failed, or an action timeout
                is not shorter than the running lease (LeaseTooShort)
        """
        lease = self._settings.scheduler.running_lease_seconds
        for node in build_graph(definition).nodes:
            if (
                isinstance(node, ActionNode)
                and node.timeout_seconds is not None
                and node.timeout_seconds >= lease
            ):
                raise LeaseTooShort(node.node_id, node.timeout_seconds, lease)
        return self.flows.publish(definition, self._clock())

    def archive(self, flow_id: str, now: datetime | None = None) -> int:
        """Stop enrollment into a flow and cancel its in-flight entries.

        Returns:
            Number of entries cancelled
        """
        now = now or self._clock()
        self.flows.archive(flow_id, now)
        return self.ledger.cancel_flow(flow_id, now)

    # === Enrollment ===

    def handle_event(
        self,
        event_type: str,
        subscriber_id: str,
        payload: Mapping[str, Any] | None = None,
        now: datetime | None = None,
        *,
        store_id: str | None = None,
        subscriber: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Apply an event to a subscriber.

        In order: complete the subscriber's entries whose flow goal this
        event meets, resume entries waiting for this event type, then
        enroll the subscriber into every live flow it triggers.

        Returns:
            entry_ids created, one per flow the subscriber was enrolled in

        Raises:
            InvalidPayload: payload or subscriber data cannot be stored as
                canonical JSON; nothing is written
        """
        now = now or self._clock()
        context = event_context(event_type, payload, subscriber)
        try:
            canonical_json(context)
        except (TypeError, ValueError) as e:
            raise InvalidPayload(event_type, str(e)) from e
        variables = {**context, "subscriber_id": subscriber_id, "store_id": store_id}

        self._complete_goals(event_type, subscriber_id, variables, now)
        self.ledger.resume_waiting(subscriber_id, event_type, context["event"], now)

        created: list[str] = []
        for graph in self.flows.active_flows():
            trigger = graph.entry_node
            if trigger.event_type != event_type:
                continue
            if trigger.filter is not None and not trigger.filter.matches(variables):
                continue
            if not self._may_enroll(graph, subscriber_id, now):
                continue
            try:
                entry_id = self.ledger.create(
                    graph.flow_id,
                    graph.version,
                    subscriber_id,
                    trigger.node_id,
                    now,
                    store_id=store_id,
                    context=context,
                )
            except DuplicateActiveExecution:
                # Concurrent event for the same subscriber won the slot
                logger.debug(
                    "Subscriber already active in flow",
                    flow_id=graph.flow_id,
                    subscriber_id=subscriber_id,
                )
                continue
            created.append(entry_id)
            logger.info(
                "Subscriber enrolled",
                entry_id=entry_id,
                flow_id=graph.flow_id,
                flow_version=graph.version,
                subscriber_id=subscriber_id,
                event_type=event_type,
            )
        return created

    def _complete_goals(
        self,
        event_type: str,
        subscriber_id: str,
        variables: Mapping[str, Any],
        now: datetime,
    ) -> list[str]:
        """Complete active entries whose flow version has a goal met by this event."""
        completed: list[str] = []
        for entry in self.ledger.active_entries(subscriber_id):
            try:
                graph = self.flows.get(entry.flow_id, entry.flow_version)
            except FlowNotFound:
                # The scheduler fails such entries on their next tick
                continue
            for goal in graph.goal_nodes:
                if not goal.matches(event_type, variables):
                    continue
                if self.ledger.complete_entry(
                    entry.entry_id, now, goal_node_id=goal.node_id, event_type=event_type
                ):
                    completed.append(entry.entry_id)
                    logger.info(
                        "Goal achieved",
                        entry_id=entry.entry_id,
                        flow_id=entry.flow_id,
                        goal_node_id=goal.node_id,
                        subscriber_id=subscriber_id,
                    )
                break
        return completed

    def _may_enroll(self, graph: FlowGraph, subscriber_id: str, now: datetime) -> bool:
        if self.ledger.find_active(graph.flow_id, subscriber_id) is not None:
            return False
        latest = self.ledger.latest_entry(graph.flow_id, subscriber_id)
        if latest is None:
            return True
        if not graph.allow_reentry:
            return False
        cooldown = graph.reentry_cooldown
        return cooldown is None or now - latest.created_at >= cooldown

    # === Execution ===

    def tick(self, now: datetime | None = None) -> TickResult:
        return self.scheduler.tick(now or self._clock())

    def recover(self, now: datetime | None = None) -> RecoveryResult:
        return self.recovery.recover(now or self._clock())

    def worker_pool(self, workers: int | None = None) -> WorkerPool:
        return WorkerPool(
            self.scheduler,
            workers=workers or self._settings.scheduler.workers,
            poll_interval=self._settings.scheduler.poll_interval_seconds,
            clock=self._clock,
            recovery=self.recovery,
            recovery_interval=self._settings.scheduler.recovery_interval_seconds,
        )

    # === Entries ===

    def inspect(self, entry_id: str) -> LedgerEntry:
        """Entry state with its full history."""
        return self.ledger.get(entry_id, include_history=True)

    def cancel(self, flow_id: str, subscriber_id: str, now: datetime | None = None) -> bool:
        return self.ledger.cancel(flow_id, subscriber_id, now or self._clock())

    def close(self) -> None:
        self.evaluator.close()
        self._actions.close()
        self._db.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
