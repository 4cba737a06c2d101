# src/flowline/engine/evaluator.py
"""Node evaluator: computes the transition for one entry at one node.

The evaluator never touches the ledger. It reads the graph, the entry's
context, the engagement profile (delay nodes) and calls action executors
(action nodes); the scheduler applies the resulting Transition by CAS.
"""

from __future__ import annotations

from collections.abc import Mapping
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from flowline.actions.manager import ActionRegistry
from flowline.actions.protocols import ActionExecutorProtocol
from flowline.contracts.enums import DelayMode
from flowline.contracts.errors import (
    ActionError,
    ActionTimeout,
    ExecutionError,
    UnresolvedBranch,
)
from flowline.contracts.ledger import LedgerEntry
from flowline.contracts.results import ActionOutcome, Transition
from flowline.core.canonical import stable_hash
from flowline.core.engagement import ProfileProvider, StaticProfileProvider, next_optimal_time
from flowline.core.graph import (
    ActionNode,
    ConditionNode,
    DelayNode,
    ExitNode,
    FlowGraph,
    GoalNode,
    Node,
    TriggerNode,
)
from flowline.core.logging import get_logger
from flowline.engine.templates import render_params

logger = get_logger(__name__)

DEFAULT_ACTION_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class EvaluationContext:
    """Everything about an entry that node evaluation may read."""

    entry_id: str
    subscriber_id: str
    attempt_count: int = 0
    store_id: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> EvaluationContext:
        return cls(
            entry_id=entry.entry_id,
            subscriber_id=entry.subscriber_id,
            attempt_count=entry.attempt_count,
            store_id=entry.store_id,
            data=entry.context,
        )

    @property
    def variables(self) -> dict[str, Any]:
        """Names visible to predicates and templates."""
        return {
            **self.data,
            "entry_id": self.entry_id,
            "subscriber_id": self.subscriber_id,
            "store_id": self.store_id,
        }

    def idempotency_key(self, node_id: str) -> str:
        # Same entry, node and attempt => same key, across crashes and recovery
        return f"{self.entry_id}:{node_id}:{self.attempt_count}"


def pick_variant(node: ConditionNode, subscriber_id: str) -> str:
    """Deterministic weighted pick: same subscriber and node, same variant."""
    digest = stable_hash([subscriber_id, node.node_id])
    point = int(digest[:16], 16) / float(1 << 64)
    total = sum(v.weight for v in node.variants)
    cumulative = 0.0
    for variant in node.variants:
        cumulative += variant.weight / total
        if point < cumulative:
            return variant.label
    return node.variants[-1].label


class NodeEvaluator:
    """Evaluates nodes for the scheduler.

    Actions run on a private thread pool so the caller can enforce a timeout.
    A timed-out action's thread is abandoned, not killed; executors should
    carry their own client timeouts too. Once abandoned threads hold half of
    the pool it is replaced by a fresh one, so hung calls cannot starve the
    actions that follow.
    """

    def __init__(
        self,
        actions: ActionRegistry,
        profiles: ProfileProvider | None = None,
        *,
        action_timeout: float = DEFAULT_ACTION_TIMEOUT_SECONDS,
        horizon_days: int = 7,
        send_window: tuple[int, int] | None = None,
        max_concurrent_actions: int = 8,
    ) -> None:
        self._actions = actions
        self._profiles = profiles or StaticProfileProvider()
        self._action_timeout = action_timeout
        self._horizon_days = horizon_days
        self._send_window = send_window
        self._max_concurrent_actions = max_concurrent_actions
        self._pool_lock = threading.Lock()
        self._pool = self._new_pool()
        self._hung: set[Future[ActionOutcome]] = set()

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._max_concurrent_actions, thread_name_prefix="flowline-action"
        )

    def close(self) -> None:
        with self._pool_lock:
            self._pool.shutdown(wait=False, cancel_futures=True)

    def evaluate(
        self,
        graph: FlowGraph,
        node: Node,
        context: EvaluationContext,
        now: datetime,
    ) -> Transition:
        """Compute the transition for context's entry at node.

        Raises:
            UnresolvedBranch: Condition matched nothing and has no default edge
            UnknownActionType: No executor for the action node's type
            TemplateError: Action params failed to render
            ActionError: Executor failed or timed out
        """
        if isinstance(node, ExitNode):
            return Transition.complete(outcome="exit")
        if isinstance(node, TriggerNode):
            return self._follow(graph, node.node_id, "triggered")
        if isinstance(node, ConditionNode):
            return self._evaluate_condition(graph, node, context)
        if isinstance(node, DelayNode):
            return self._evaluate_delay(graph, node, context, now)
        if isinstance(node, ActionNode):
            return self._evaluate_action(graph, node, context)
        if isinstance(node, GoalNode):
            return self._evaluate_goal(graph, node, context, now)
        raise TypeError(f"Unknown node type: {type(node).__name__}")

    def _follow(
        self,
        graph: FlowGraph,
        node_id: str,
        outcome: str,
        detail: dict[str, Any] | None = None,
    ) -> Transition:
        # A node with no outgoing edge ends the journey
        targets = graph.next_nodes(node_id)
        if not targets:
            return Transition.complete(outcome=outcome, detail=detail)
        return Transition.advance(targets[0], outcome=outcome, detail=detail)

    def _evaluate_condition(
        self, graph: FlowGraph, node: ConditionNode, context: EvaluationContext
    ) -> Transition:
        if node.variants:
            label = pick_variant(node, context.subscriber_id)
            target = graph.next_nodes(node.node_id, label)[0]
            return Transition.advance(target, outcome=f"variant:{label}")

        variables = context.variables
        for branch in node.branches:
            if branch.when.matches(variables):
                target = graph.next_nodes(node.node_id, branch.label)[0]
                return Transition.advance(target, outcome=f"branch:{branch.label}")

        defaults = graph.next_nodes(node.node_id)
        if not defaults:
            raise UnresolvedBranch(node.node_id, node.labels)
        return Transition.advance(defaults[0], outcome="branch:default")

    def _evaluate_delay(
        self,
        graph: FlowGraph,
        node: DelayNode,
        context: EvaluationContext,
        now: datetime,
    ) -> Transition:
        if node.mode == DelayMode.EVENT:
            return self._evaluate_event_wait(graph, node, now)
        if node.mode == DelayMode.FIXED_DURATION:
            wake_at = now + (node.duration or timedelta(0))
        elif node.mode == DelayMode.OPTIMAL_SEND_TIME:
            profile = self._profiles.get_profile(context.store_id)
            wake_at = next_optimal_time(
                profile,
                now + node.min_wait,
                threshold=node.threshold,
                horizon_days=self._horizon_days,
                send_window=self._send_window,
            )
        else:
            assert node.until is not None  # Enforced by the flow definition
            wake_at = max(now, node.until)

        targets = graph.next_nodes(node.node_id)
        detail = {"mode": node.mode.value, "wake_at": wake_at}
        if wake_at <= now:
            # Nothing to wait for; continue in this tick
            return self._follow(graph, node.node_id, "delay_elapsed", detail)
        if not targets:
            return Transition.complete(outcome="delay_elapsed", detail=detail)
        return Transition.wait(targets[0], wake_at, detail=detail)

    def _evaluate_event_wait(
        self, graph: FlowGraph, node: DelayNode, now: datetime
    ) -> Transition:
        assert node.event_type is not None  # Enforced by the flow definition
        wake_at = now + node.timeout if node.timeout is not None else None
        detail = {"mode": node.mode.value, "event_type": node.event_type, "wake_at": wake_at}
        targets = graph.next_nodes(node.node_id)
        if not targets:
            return Transition.complete(outcome="delay_elapsed", detail=detail)
        return Transition.wait(
            targets[0], wake_at, detail=detail, waiting_for_event=node.event_type
        )

    def _evaluate_goal(
        self,
        graph: FlowGraph,
        node: GoalNode,
        context: EvaluationContext,
        now: datetime,
    ) -> Transition:
        detail: dict[str, Any] = {"goal_node_id": node.node_id, "event_type": node.event_type}
        if goal_reached(node, context):
            return Transition.complete(outcome="goal_achieved", detail=detail)
        if node.timeout is None:
            # Parked on the goal node itself; only the goal event (or a cancel) ends it
            return Transition.wait(node.node_id, None, detail=detail)
        target = graph.next_nodes(node.node_id)[0]
        return Transition.wait(target, now + node.timeout, detail=detail)

    def _evaluate_action(
        self, graph: FlowGraph, node: ActionNode, context: EvaluationContext
    ) -> Transition:
        executor = self._actions.get_executor(node.action_type)
        params = render_params(node.params, context.variables)
        key = context.idempotency_key(node.node_id)
        timeout = node.timeout_seconds or self._action_timeout

        outcome = self._invoke(executor, node.action_type, params, key, timeout)
        detail = {
            "action_type": outcome.action_type,
            "idempotency_key": outcome.idempotency_key,
            "duplicate": outcome.duplicate,
            **outcome.detail,
        }
        return self._follow(graph, node.node_id, "action_ok", detail)

    def _invoke(
        self,
        executor: ActionExecutorProtocol,
        action_type: str,
        params: dict[str, Any],
        key: str,
        timeout: float,
    ) -> ActionOutcome:
        with self._pool_lock:
            future = self._pool.submit(executor.execute, params, key)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            if future.cancel():
                # Never started: every action thread was busy
                logger.warning(
                    "Action pool saturated",
                    action_type=action_type,
                    max_concurrent_actions=self._max_concurrent_actions,
                )
            else:
                self._abandon(future, action_type)
            raise ActionTimeout(action_type, timeout) from None
        except ExecutionError:
            raise
        except Exception as e:
            # Executor bugs and client exceptions are transient until proven otherwise
            raise ActionError(f"Action '{action_type}' raised {type(e).__name__}: {e}") from e

    def _abandon(self, future: Future[ActionOutcome], action_type: str) -> None:
        """Track a timed-out call still holding a pool thread."""
        with self._pool_lock:
            hung = self._hung
            hung.add(future)
            future.add_done_callback(hung.discard)
            if len(hung) * 2 < self._max_concurrent_actions:
                return
            stale = self._pool
            self._pool = self._new_pool()
            self._hung = set()
        # Running calls finish on the old threads; nothing new is queued there
        stale.shutdown(wait=False)
        logger.warning(
            "Action pool replaced",
            action_type=action_type,
            hung_actions=len(hung),
            max_concurrent_actions=self._max_concurrent_actions,
        )


def goal_reached(node: GoalNode, context: EvaluationContext) -> bool:
    """Whether the enrolling event, or an event recorded by a wait, meets the goal."""
    if node.matches(str(context.data.get("event_type")), context.variables):
        return True
    recorded = (context.data.get("events") or {}).get(node.event_type)
    if recorded is None:
        return False
    variables = {**context.variables, "event_type": node.event_type, "event": recorded}
    return node.matches(node.event_type, variables)
