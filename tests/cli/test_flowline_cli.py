# tests/cli/test_flowline_cli.py
"""Tests for the flowline command line."""

import json
from pathlib import Path
from typing import Any

import pytest
import yaml
from typer.testing import CliRunner

runner = CliRunner()

FLOW = {
    "flow_id": "welcome",
    "name": "Welcome series",
    "nodes": [
        {"id": "start", "kind": "trigger", "event_type": "customer_created"},
        {"id": "wait", "kind": "delay", "mode": "fixed_duration", "duration": "1h"},
        {"id": "done", "kind": "exit"},
    ],
    "edges": [
        {"source": "start", "target": "wait"},
        {"source": "wait", "target": "done"},
    ],
}


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    settings = {
        "database": {"url": f"sqlite:///{tmp_path / 'cli.db'}"},
        "logging": {"level": "ERROR"},
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump(settings))
    return path


@pytest.fixture
def flow_file(tmp_path: Path) -> Path:
    path = tmp_path / "welcome.yaml"
    path.write_text(yaml.dump(FLOW))
    return path


def _invoke(*args: Any) -> Any:
    from flowline.cli import app

    return runner.invoke(app, [str(a) for a in args])


def _entry_ids(output: str) -> list[str]:
    lines = output.splitlines()
    start = next(i for i, line in enumerate(lines) if line.startswith("Enrolled in"))
    return [line.strip() for line in lines[start + 1 :] if line.startswith("  ")]


class TestVersion:
    def test_version_flag(self) -> None:
        from flowline import __version__

        result = _invoke("--version")

        assert result.exit_code == 0
        assert f"flowline version {__version__}" in result.output


class TestValidateCommand:
    def test_valid_flow(self, flow_file: Path) -> None:
        result = _invoke("validate", flow_file)

        assert result.exit_code == 0
        assert "Flow valid: welcome" in result.output
        assert "Entry: start (customer_created)" in result.output
        assert "3 nodes, 2 edges" in result.output

    def test_missing_file(self, tmp_path: Path) -> None:
        result = _invoke("validate", tmp_path / "nope.yaml")

        assert result.exit_code == 1
        assert "Flow file not found" in result.output

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("flow_id: x\nnodes: [invalid")

        result = _invoke("validate", path)

        assert result.exit_code == 1
        assert "not valid YAML" in result.output

    def test_schema_errors(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"flow_id": "x", "nodes": [{"id": "a", "kind": "teleport"}]}))

        result = _invoke("validate", path)

        assert result.exit_code == 1
        assert "Flow definition errors:" in result.output

    def test_graph_errors(self, tmp_path: Path) -> None:
        data = {**FLOW, "nodes": [*FLOW["nodes"], {"id": "orphan", "kind": "exit"}]}
        path = tmp_path / "orphan.yaml"
        path.write_text(yaml.dump(data))

        result = _invoke("validate", path)

        assert result.exit_code == 1
        assert "Flow graph error:" in result.output
        assert "orphan" in result.output


class TestFlowLifecycle:
    def test_publish_event_tick_inspect(self, settings_file: Path, flow_file: Path) -> None:
        published = _invoke("publish", flow_file, "--settings", settings_file)
        assert published.exit_code == 0, published.output
        assert "Published welcome version 1" in published.output

        enrolled = _invoke(
            "event", "customer_created", "sub-1",
            "--payload", '{"plan": "pro"}',
            "--settings", settings_file,
        )
        assert enrolled.exit_code == 0, enrolled.output
        [entry_id] = _entry_ids(enrolled.output)

        ticked = _invoke("tick", "--settings", settings_file)
        assert ticked.exit_code == 0, ticked.output
        assert "Tick completed: 1 claimed of 1 due" in ticked.output
        assert "Waiting: 1" in ticked.output

        inspected = _invoke("inspect", entry_id, "--json", "--settings", settings_file)
        assert inspected.exit_code == 0, inspected.output
        data = json.loads(inspected.stdout)
        assert data["status"] == "waiting_delay"
        assert data["current_node_id"] == "done"
        assert [h["outcome"] for h in data["history"]] == ["triggered", "waiting"]

        text = _invoke("inspect", entry_id, "--settings", settings_file)
        assert f"Entry {entry_id}" in text.output
        assert "Status: waiting_delay" in text.output

    def test_republish_same_content(self, settings_file: Path, flow_file: Path) -> None:
        _invoke("publish", flow_file, "--settings", settings_file)

        again = _invoke("publish", flow_file, "--settings", settings_file)

        assert "Published welcome version 1" in again.output

    def test_event_without_matching_flow(self, settings_file: Path) -> None:
        result = _invoke("event", "order_placed", "sub-1", "--settings", settings_file)

        assert result.exit_code == 0
        assert "No flows enrolled." in result.output

    def test_event_payload_must_be_object(self, settings_file: Path) -> None:
        result = _invoke(
            "event", "customer_created", "sub-1", "--payload", "[1, 2]",
            "--settings", settings_file,
        )

        assert result.exit_code == 1
        assert "JSON object" in result.output

    def test_event_payload_outside_json_safe_range(self, settings_file: Path, flow_file: Path) -> None:
        _invoke("publish", flow_file, "--settings", settings_file)

        result = _invoke(
            "event", "customer_created", "sub-1", "--payload", '{"amount": 9007199254740992}',
            "--settings", settings_file,
        )

        assert result.exit_code == 1
        assert "not JSON-safe" in result.output
        assert "Enrolled in" not in result.output

    def test_cancel(self, settings_file: Path, flow_file: Path) -> None:
        _invoke("publish", flow_file, "--settings", settings_file)
        _invoke("event", "customer_created", "sub-1", "--settings", settings_file)

        first = _invoke("cancel", "welcome", "sub-1", "--settings", settings_file)
        second = _invoke("cancel", "welcome", "sub-1", "--settings", settings_file)

        assert first.exit_code == 0
        assert "Cancelled welcome for sub-1" in first.output
        assert second.exit_code == 1
        assert "No active execution" in second.output

    def test_archive(self, settings_file: Path, flow_file: Path) -> None:
        _invoke("publish", flow_file, "--settings", settings_file)
        _invoke("event", "customer_created", "sub-1", "--settings", settings_file)

        result = _invoke("archive", "welcome", "--settings", settings_file)

        assert result.exit_code == 0
        assert "Archived welcome (1 entries cancelled)" in result.output
        enrolled = _invoke("event", "customer_created", "sub-2", "--settings", settings_file)
        assert "No flows enrolled." in enrolled.output

    def test_archive_unknown(self, settings_file: Path) -> None:
        result = _invoke("archive", "ghost", "--settings", settings_file)

        assert result.exit_code == 1
        assert "Flow not found: ghost" in result.output

    def test_inspect_unknown(self, settings_file: Path) -> None:
        result = _invoke("inspect", "missing", "--settings", settings_file)

        assert result.exit_code == 1

    def test_recover_nothing(self, settings_file: Path) -> None:
        result = _invoke("recover", "--settings", settings_file)

        assert result.exit_code == 0
        assert "Recovered 0 entries" in result.output


class TestConfigCommand:
    def test_prints_resolved_settings(self, settings_file: Path) -> None:
        result = _invoke("config", "--settings", settings_file)

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["database"]["url"].endswith("cli.db")
        assert data["retry"]["max_attempts"] == 3

    def test_environment_override(
        self, settings_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("FLOWLINE_RETRY__MAX_ATTEMPTS", "7")

        result = _invoke("config", "--settings", settings_file)

        assert json.loads(result.stdout)["retry"]["max_attempts"] == 7

    def test_missing_settings_file(self, tmp_path: Path) -> None:
        result = _invoke("config", "--settings", tmp_path / "absent.yaml")

        assert result.exit_code == 1
        assert "Settings file not found" in result.output

    def test_invalid_settings(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.dump({"scheduler": {"batch_size": 0}}))

        result = _invoke("config", "--settings", path)

        assert result.exit_code == 1
        assert "Configuration errors:" in result.output
