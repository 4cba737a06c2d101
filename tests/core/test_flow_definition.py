# tests/core/test_flow_definition.py
"""Tests for parsing builder payloads into validated flow graphs."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError


class TestParseDuration:
    @pytest.mark.parametrize(
        ("text", "seconds"),
        [("90s", 90), ("15m", 900), ("1h", 3600), ("2d", 172800), ("1w", 604800), ("1.5h", 5400)],
    )
    def test_units(self, text: str, seconds: float) -> None:
        from flowline.core.definition import parse_duration

        assert parse_duration(text) == seconds

    def test_invalid(self) -> None:
        from flowline.core.definition import parse_duration

        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration("soon")


class TestFlowDefinition:
    def test_parses_builder_payload(self, make_flow: Any) -> None:
        from flowline.core.definition import DelaySpec, FlowDefinition

        definition = FlowDefinition.model_validate(make_flow())

        assert definition.flow_id == "welcome"
        assert len(definition.nodes) == 4
        delay = definition.nodes[1]
        assert isinstance(delay, DelaySpec)
        assert delay.duration_seconds == 3600

    def test_unknown_kind_rejected(self, make_flow: Any) -> None:
        from flowline.core.definition import FlowDefinition

        data = make_flow()
        data["nodes"].append({"id": "x", "kind": "teleport"})
        with pytest.raises(ValidationError):
            FlowDefinition.model_validate(data)

    def test_extra_fields_rejected(self, make_flow: Any) -> None:
        from flowline.core.definition import FlowDefinition

        with pytest.raises(ValidationError):
            FlowDefinition.model_validate(make_flow(layout={"x": 10, "y": 20}))

    def test_flow_id_pattern(self, make_flow: Any) -> None:
        from flowline.core.definition import FlowDefinition

        with pytest.raises(ValidationError):
            FlowDefinition.model_validate(make_flow(flow_id="has spaces"))

    def test_fixed_delay_needs_duration(self) -> None:
        from flowline.core.definition import DelaySpec

        with pytest.raises(ValidationError, match="needs a duration"):
            DelaySpec(id="wait", kind="delay", mode="fixed_duration")

    def test_until_delay_needs_instant(self) -> None:
        from flowline.core.definition import DelaySpec

        with pytest.raises(ValidationError, match="'until'"):
            DelaySpec(id="wait", kind="delay", mode="until")

    def test_until_naive_is_utc(self) -> None:
        from flowline.core.definition import DelaySpec

        spec = DelaySpec(id="w", kind="delay", mode="until", until="2024-12-24T18:00:00")
        assert spec.until == datetime(2024, 12, 24, 18, tzinfo=UTC)

    def test_duration_given_twice(self) -> None:
        from flowline.core.definition import DelaySpec

        with pytest.raises(ValidationError, match="not both"):
            DelaySpec.model_validate(
                {
                    "id": "w",
                    "kind": "delay",
                    "mode": "fixed_duration",
                    "duration": "1h",
                    "duration_seconds": 60,
                }
            )

    def test_condition_needs_branches_or_variants(self) -> None:
        from flowline.core.definition import ConditionSpec

        with pytest.raises(ValidationError, match="needs branches or variants"):
            ConditionSpec(id="c", kind="condition")

    def test_condition_not_both(self) -> None:
        from flowline.core.definition import ConditionSpec

        with pytest.raises(ValidationError, match="both branches and variants"):
            ConditionSpec.model_validate(
                {
                    "id": "c",
                    "kind": "condition",
                    "branches": [{"label": "a", "when": {"rules": []}}],
                    "variants": [{"label": "b", "weight": 1}],
                }
            )

    def test_template_syntax_checked(self) -> None:
        from flowline.core.definition import ActionSpec

        with pytest.raises(ValidationError, match="Invalid template syntax"):
            ActionSpec(id="a", kind="action", action_type="email", params={"to": "{{ broken"})

    def test_reentry_cooldown_duration(self, make_flow: Any) -> None:
        from flowline.core.definition import FlowDefinition

        definition = FlowDefinition.model_validate(
            make_flow(allow_reentry=True, reentry_cooldown="7d")
        )
        assert definition.reentry_cooldown_seconds == 7 * 86400

    def test_from_yaml(self) -> None:
        from flowline.core.definition import FlowDefinition

        definition = FlowDefinition.from_yaml(
            "flow_id: tiny\n"
            "nodes:\n"
            "  - {id: start, kind: trigger, event_type: signup}\n"
        )
        assert definition.flow_id == "tiny"

    def test_from_yaml_requires_mapping(self) -> None:
        from flowline.core.definition import FlowDefinition

        with pytest.raises(ValueError, match="mapping"):
            FlowDefinition.from_yaml("- just\n- a list\n")

    def test_from_file_json(self, tmp_path: Path, make_flow: Any) -> None:
        import json

        from flowline.core.definition import FlowDefinition

        path = tmp_path / "welcome.json"
        path.write_text(json.dumps(make_flow()))

        assert FlowDefinition.from_file(path).flow_id == "welcome"


class TestBuildGraph:
    def test_builds_validated_graph(self, make_flow: Any) -> None:
        from flowline.core.definition import FlowDefinition, build_graph
        from flowline.core.graph import DelayNode

        graph = build_graph(FlowDefinition.model_validate(make_flow()), version=3)

        assert graph.is_validated
        assert graph.version == 3
        wait = graph.get_node("wait")
        assert isinstance(wait, DelayNode)
        assert wait.duration == timedelta(hours=1)

    def test_structural_errors_raise_graph_error(self, make_flow: Any) -> None:
        from flowline.contracts import DanglingEdge
        from flowline.core.definition import FlowDefinition, build_graph

        data = make_flow()
        data["edges"].append({"source": "done", "target": "nowhere"})
        with pytest.raises(DanglingEdge):
            build_graph(FlowDefinition.model_validate(data))

    def test_to_dict_round_trips(self, make_flow: Any) -> None:
        from flowline.core.definition import FlowDefinition, build_graph

        data = make_flow(allow_reentry=True, reentry_cooldown="1d")
        data["nodes"].insert(
            1,
            {
                "id": "gate",
                "kind": "condition",
                "branches": [
                    {
                        "label": "vip",
                        "when": {"rules": [{"field": "subscriber.tier", "operator": "eq", "value": "vip"}]},
                    }
                ],
            },
        )
        data["nodes"].append({"id": "skip", "kind": "exit"})
        data["edges"][0] = {"source": "start", "target": "gate"}
        data["edges"].extend(
            [
                {"source": "gate", "target": "wait", "label": "vip"},
                {"source": "gate", "target": "skip"},
            ]
        )
        graph = build_graph(FlowDefinition.model_validate(data))

        rebuilt = build_graph(FlowDefinition.model_validate(graph.to_dict()))

        assert rebuilt.content_hash == graph.content_hash
        assert rebuilt.reentry_cooldown == timedelta(days=1)


class TestEventDelaySpec:
    def test_event_mode(self) -> None:
        from flowline.core.definition import DelaySpec

        spec = DelaySpec.model_validate(
            {"id": "w", "kind": "delay", "mode": "event", "event_type": "order_delivered", "timeout": "3d"}
        )
        node = spec.to_node()

        assert node.event_type == "order_delivered"
        assert node.timeout == timedelta(days=3)

    def test_event_mode_needs_event_type(self) -> None:
        from flowline.core.definition import DelaySpec

        with pytest.raises(ValidationError, match="needs an event_type"):
            DelaySpec.model_validate({"id": "w", "kind": "delay", "mode": "event"})

    def test_event_fields_only_in_event_mode(self) -> None:
        from flowline.core.definition import DelaySpec

        with pytest.raises(ValidationError, match="cannot set event_type or timeout"):
            DelaySpec.model_validate(
                {"id": "w", "kind": "delay", "mode": "fixed_duration", "duration": "1h", "timeout": "1d"}
            )


class TestRetrySpec:
    def test_durations_and_strategy(self, make_flow: Any) -> None:
        from flowline.contracts import BackoffStrategy
        from flowline.core.definition import FlowDefinition, build_graph

        data = make_flow()
        data["nodes"][2]["retry"] = {"max_attempts": 5, "strategy": "linear", "delay": "10s"}

        node = build_graph(FlowDefinition.model_validate(data)).get_node("send")

        assert node.retry.max_attempts == 5
        assert node.retry.strategy == BackoffStrategy.LINEAR
        assert node.retry.delay_seconds == 10
        assert node.retry.max_delay_seconds is None

    def test_max_delay_below_delay(self) -> None:
        from flowline.core.definition import RetrySpec

        with pytest.raises(ValidationError, match="max_delay must be >= delay"):
            RetrySpec.model_validate({"delay": "1h", "max_delay": "10m"})

    def test_unknown_field(self) -> None:
        from flowline.core.definition import RetrySpec

        with pytest.raises(ValidationError):
            RetrySpec.model_validate({"attempts": 3})


class TestGoalSpec:
    def test_goal_node(self) -> None:
        from flowline.core.definition import GoalSpec

        node = GoalSpec.model_validate(
            {
                "id": "converted",
                "kind": "goal",
                "event_type": "order_placed",
                "filter": {"rules": [{"field": "event.total", "operator": "gt", "value": 0}]},
                "timeout": "2d",
            }
        ).to_node()

        assert node.timeout == timedelta(days=2)
        assert node.matches("order_placed", {"event": {"total": 5}})
        assert not node.matches("order_placed", {"event": {"total": 0}})
        assert not node.matches("order_cancelled", {"event": {"total": 5}})

    def test_round_trip_keeps_new_node_options(self, make_flow: Any) -> None:
        from flowline.core.definition import FlowDefinition, build_graph

        data = make_flow()
        data["nodes"][1] = {
            "id": "wait",
            "kind": "delay",
            "mode": "event",
            "event_type": "email_opened",
            "timeout": "1d",
        }
        data["nodes"][2]["retry"] = {"max_attempts": 2, "max_delay": "5m"}
        data["nodes"].append({"id": "goal", "kind": "goal", "event_type": "order_placed"})
        graph = build_graph(FlowDefinition.model_validate(data))

        rebuilt = build_graph(FlowDefinition.model_validate(graph.to_dict()))

        assert rebuilt.content_hash == graph.content_hash
        assert rebuilt.get_node("wait").timeout == timedelta(days=1)
        assert rebuilt.get_node("send").retry == graph.get_node("send").retry
        assert [g.node_id for g in rebuilt.goal_nodes] == ["goal"]
