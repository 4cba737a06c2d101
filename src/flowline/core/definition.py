# src/flowline/core/definition.py
"""Flow definitions: the builder payload that becomes a FlowGraph.

Definitions are parsed with Pydantic (structure and per-node field checks),
then converted by build_graph() into a FlowGraph and validated structurally.

Example YAML:
    flow_id: welcome
    name: Welcome series
    nodes:
      - {id: start, kind: trigger, event_type: customer_created}
      - {id: wait, kind: delay, mode: fixed_duration, duration: 1h}
      - id: send
        kind: action
        action_type: webhook
        params:
          template: welcome_email
          email: "{{ subscriber.email }}"
      - {id: done, kind: exit}
    edges:
      - {source: start, target: wait}
      - {source: wait, target: send}
      - {source: send, target: done}
"""

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from flowline.contracts.enums import BackoffStrategy, DelayMode
from flowline.core.conditions import Predicate
from flowline.core.graph import (
    ActionNode,
    Branch,
    ConditionNode,
    DelayNode,
    Edge,
    ExitNode,
    FlowGraph,
    GoalNode,
    Node,
    RetryPolicy,
    TriggerNode,
    Variant,
    validate_graph,
)

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw])\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_duration(value: str) -> float:
    """Parse '90s', '15m', '1h', '2d', '1w' into seconds."""
    match = _DURATION_PATTERN.match(value)
    if match is None:
        raise ValueError(
            f"Invalid duration '{value}' (expected a number followed by s, m, h, d or w)"
        )
    amount, unit = match.groups()
    return float(amount) * _UNIT_SECONDS[unit]


def _coerce_duration(data: Any, short: str, long: str) -> Any:
    """Move a human duration under ``short`` into seconds under ``long``."""
    if isinstance(data, dict) and short in data:
        data = dict(data)
        raw = data.pop(short)
        if raw is not None:
            if long in data and data[long] is not None:
                raise ValueError(f"Give either '{short}' or '{long}', not both")
            data[long] = parse_duration(raw) if isinstance(raw, str) else raw
    return data


class _NodeSpec(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    id: str = Field(min_length=1, description="Node id, unique within the flow")


class TriggerSpec(_NodeSpec):
    kind: Literal["trigger"]
    event_type: str = Field(min_length=1, description="Event that enrolls subscribers")
    filter: Predicate | None = Field(
        default=None, description="Optional predicate over the event context"
    )

    def to_node(self) -> TriggerNode:
        return TriggerNode(node_id=self.id, event_type=self.event_type, filter=self.filter)


class BranchSpec(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    label: str = Field(min_length=1)
    when: Predicate


class VariantSpec(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    label: str = Field(min_length=1)
    weight: float = Field(gt=0, description="Relative weight of this split")


class ConditionSpec(_NodeSpec):
    kind: Literal["condition"]
    branches: list[BranchSpec] = Field(default_factory=list)
    variants: list[VariantSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_outcomes(self) -> "ConditionSpec":
        if self.branches and self.variants:
            raise ValueError(
                f"Condition '{self.id}' declares both branches and variants"
            )
        if not self.branches and not self.variants:
            raise ValueError(
                f"Condition '{self.id}' needs branches or variants"
            )
        return self

    def to_node(self) -> ConditionNode:
        return ConditionNode(
            node_id=self.id,
            branches=tuple(Branch(label=b.label, when=b.when) for b in self.branches),
            variants=tuple(Variant(label=v.label, weight=v.weight) for v in self.variants),
        )


class DelaySpec(_NodeSpec):
    kind: Literal["delay"]
    mode: DelayMode
    duration_seconds: float | None = Field(default=None, ge=0)
    min_wait_seconds: float = Field(default=0.0, ge=0)
    threshold: float | None = Field(
        default=None, ge=0, description="Engagement rate an hour must reach"
    )
    until: datetime | None = None
    event_type: str | None = Field(
        default=None, min_length=1, description="Event that ends an event-mode wait"
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Event-mode wait limit; None waits indefinitely"
    )

    @model_validator(mode="before")
    @classmethod
    def coerce_durations(cls, data: Any) -> Any:
        data = _coerce_duration(data, "duration", "duration_seconds")
        data = _coerce_duration(data, "timeout", "timeout_seconds")
        return _coerce_duration(data, "min_wait", "min_wait_seconds")

    @field_validator("until")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        # Naive instants are UTC (same policy as canonical JSON)
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def validate_mode_fields(self) -> "DelaySpec":
        if self.mode == DelayMode.FIXED_DURATION and self.duration_seconds is None:
            raise ValueError(f"Delay '{self.id}' (fixed_duration) needs a duration")
        if self.mode == DelayMode.UNTIL and self.until is None:
            raise ValueError(f"Delay '{self.id}' (until) needs an 'until' instant")
        if self.mode == DelayMode.EVENT and self.event_type is None:
            raise ValueError(f"Delay '{self.id}' (event) needs an event_type")
        if self.mode != DelayMode.EVENT and (
            self.event_type is not None or self.timeout_seconds is not None
        ):
            raise ValueError(
                f"Delay '{self.id}' ({self.mode.value}) cannot set event_type or timeout"
            )
        return self

    def to_node(self) -> DelayNode:
        return DelayNode(
            node_id=self.id,
            mode=self.mode,
            duration=(
                timedelta(seconds=self.duration_seconds)
                if self.duration_seconds is not None
                else None
            ),
            min_wait=timedelta(seconds=self.min_wait_seconds),
            threshold=self.threshold,
            until=self.until,
            event_type=self.event_type,
            timeout=(
                timedelta(seconds=self.timeout_seconds)
                if self.timeout_seconds is not None
                else None
            ),
        )


class RetrySpec(BaseModel):
    """Per-action retry override; unset fields keep the engine settings."""

    model_config = {"frozen": True, "extra": "forbid"}

    max_attempts: int | None = Field(default=None, gt=0)
    strategy: BackoffStrategy | None = None
    delay_seconds: float | None = Field(default=None, gt=0)
    max_delay_seconds: float | None = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def coerce_durations(cls, data: Any) -> Any:
        data = _coerce_duration(data, "delay", "delay_seconds")
        return _coerce_duration(data, "max_delay", "max_delay_seconds")

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> "RetrySpec":
        if (
            self.delay_seconds is not None
            and self.max_delay_seconds is not None
            and self.max_delay_seconds < self.delay_seconds
        ):
            raise ValueError("retry max_delay must be >= delay")
        return self

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            strategy=self.strategy,
            delay_seconds=self.delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
        )


class ActionSpec(_NodeSpec):
    kind: Literal["action"]
    action_type: str = Field(min_length=1, description="Registered executor name")
    params: dict[str, Any] = Field(
        default_factory=dict, description="Jinja2 templates rendered per subscriber"
    )
    timeout_seconds: float | None = Field(default=None, gt=0)
    retry: RetrySpec | None = Field(
        default=None, description="Overrides the engine retry settings for this action"
    )

    @field_validator("params")
    @classmethod
    def validate_templates(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Reject template syntax errors at publish time, not at send time."""
        from flowline.contracts.errors import TemplateError
        from flowline.engine.templates import check_params

        try:
            check_params(v)
        except TemplateError as e:
            raise ValueError(str(e)) from e
        return v

    def to_node(self) -> ActionNode:
        return ActionNode(
            node_id=self.id,
            action_type=self.action_type,
            params=dict(self.params),
            timeout_seconds=self.timeout_seconds,
            retry=self.retry.to_policy() if self.retry is not None else None,
        )


class GoalSpec(_NodeSpec):
    kind: Literal["goal"]
    event_type: str = Field(min_length=1, description="Event that achieves the goal")
    filter: Predicate | None = Field(
        default=None, description="Optional predicate over the goal event context"
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="How long an entry waits at the node"
    )

    @model_validator(mode="before")
    @classmethod
    def coerce_timeout(cls, data: Any) -> Any:
        return _coerce_duration(data, "timeout", "timeout_seconds")

    def to_node(self) -> GoalNode:
        return GoalNode(
            node_id=self.id,
            event_type=self.event_type,
            filter=self.filter,
            timeout=(
                timedelta(seconds=self.timeout_seconds)
                if self.timeout_seconds is not None
                else None
            ),
        )


class ExitSpec(_NodeSpec):
    kind: Literal["exit"]

    def to_node(self) -> ExitNode:
        return ExitNode(node_id=self.id)


NodeSpec = Annotated[
    Union[TriggerSpec, ConditionSpec, DelaySpec, ActionSpec, GoalSpec, ExitSpec],
    Field(discriminator="kind"),
]


class EdgeSpec(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    source: str
    target: str
    label: str | None = Field(default=None, description="Branch label, None for default")


class FlowDefinition(BaseModel):
    """A flow as authored in the builder."""

    model_config = {"frozen": True, "extra": "forbid"}

    flow_id: str = Field(
        min_length=1, pattern=r"^[A-Za-z0-9_.-]+$", description="Stable flow identifier"
    )
    name: str | None = None
    allow_reentry: bool = Field(
        default=False,
        description="Allow a subscriber to enroll again after finishing",
    )
    reentry_cooldown_seconds: float | None = Field(
        default=None,
        ge=0,
        description="Minimum time between an enrollment and the next one",
    )
    nodes: list[NodeSpec] = Field(min_length=1)
    edges: list[EdgeSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def coerce_cooldown(cls, data: Any) -> Any:
        return _coerce_duration(data, "reentry_cooldown", "reentry_cooldown_seconds")

    @classmethod
    def from_yaml(cls, text: str) -> "FlowDefinition":
        data = yaml.safe_load(text)
        if not isinstance(data, dict):
            raise ValueError("Flow definition must be a YAML mapping")
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: Path) -> "FlowDefinition":
        """Load a .yaml/.yml/.json flow file (JSON is valid YAML)."""
        return cls.from_yaml(path.read_text(encoding="utf-8"))

    def to_nodes(self) -> list[Node]:
        return [spec.to_node() for spec in self.nodes]


def build_graph(definition: FlowDefinition, version: int = 0) -> FlowGraph:
    """Build and validate a FlowGraph from a definition.

    Raises:
        GraphError: If the graph fails structural validation
    """
    graph = FlowGraph(
        flow_id=definition.flow_id,
        version=version,
        nodes=definition.to_nodes(),
        edges=[Edge(e.source, e.target, e.label) for e in definition.edges],
        name=definition.name,
        allow_reentry=definition.allow_reentry,
        reentry_cooldown=(
            timedelta(seconds=definition.reentry_cooldown_seconds)
            if definition.reentry_cooldown_seconds is not None
            else None
        ),
    )
    return validate_graph(graph)
