# src/flowline/engine/__init__.py
"""Flow execution: node evaluation, scheduling, retries and the engine facade."""

from flowline.engine.engine import FlowEngine, event_context
from flowline.engine.evaluator import EvaluationContext, NodeEvaluator, pick_variant
from flowline.engine.retry import RetryConfig, RetryDecision, RetryManager
from flowline.engine.scheduler import StepScheduler
from flowline.engine.templates import check_params, render_params, render_string
from flowline.engine.workers import WorkerPool

__all__ = [
    "EvaluationContext",
    "FlowEngine",
    "NodeEvaluator",
    "RetryConfig",
    "RetryDecision",
    "RetryManager",
    "StepScheduler",
    "WorkerPool",
    "check_params",
    "event_context",
    "pick_variant",
    "render_params",
    "render_string",
]
