# src/flowline/cli.py
"""Flowline Command Line Interface.

Entry point for the flowline CLI tool.
"""

import json
from pathlib import Path
from typing import Any

import typer
import yaml
from pydantic import ValidationError

from flowline import __version__
from flowline.contracts.errors import EntryNotFound, FlowNotFound, GraphError, InvalidPayload
from flowline.core.config import FlowlineSettings, load_settings, resolve_config
from flowline.core.definition import FlowDefinition, build_graph
from flowline.core.logging import configure_logging
from flowline.engine.engine import FlowEngine

app = typer.Typer(
    name="flowline",
    help="Flowline: durable marketing-automation flow execution.",
    no_args_is_help=True,
)

DEFAULT_SETTINGS_FILE = "settings.yaml"

SETTINGS_OPTION = typer.Option(
    None,
    "--settings",
    "-s",
    help="Path to settings YAML file (default: ./settings.yaml if present).",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"flowline version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Flowline: durable marketing-automation flow execution."""
    pass


def _echo_validation_errors(title: str, e: ValidationError) -> None:
    typer.echo(title, err=True)
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        typer.echo(f"  - {loc}: {error['msg']}", err=True)


def _load_config(settings: str | None) -> FlowlineSettings:
    """Load settings (or defaults) and configure logging from them."""
    if settings is None and Path(DEFAULT_SETTINGS_FILE).exists():
        settings = DEFAULT_SETTINGS_FILE

    if settings is None:
        config = FlowlineSettings()
    else:
        try:
            config = load_settings(Path(settings))
        except FileNotFoundError:
            typer.echo(f"Error: Settings file not found: {settings}", err=True)
            raise typer.Exit(1) from None
        except ValidationError as e:
            _echo_validation_errors("Configuration errors:", e)
            raise typer.Exit(1) from None

    configure_logging(config.logging.level, json_output=config.logging.json_output)
    return config


def _open_engine(settings: str | None) -> FlowEngine:
    config = _load_config(settings)
    try:
        return FlowEngine.from_settings(config)
    except Exception as e:
        typer.echo(f"Error connecting to database: {e}", err=True)
        raise typer.Exit(1) from None


def _load_definition(flow_file: Path) -> FlowDefinition:
    try:
        return FlowDefinition.from_file(flow_file)
    except FileNotFoundError:
        typer.echo(f"Error: Flow file not found: {flow_file}", err=True)
        raise typer.Exit(1) from None
    except yaml.YAMLError as e:
        typer.echo(f"Error: Flow file is not valid YAML: {e}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        _echo_validation_errors("Flow definition errors:", e)
        raise typer.Exit(1) from None
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _format_time(value: Any) -> str:
    return value.isoformat() if value is not None else "-"


# === Flows ===


@app.command()
def validate(
    flow_file: Path = typer.Argument(..., help="Flow definition (YAML or JSON)."),
) -> None:
    """Validate a flow definition without publishing it."""
    definition = _load_definition(flow_file)
    try:
        graph = build_graph(definition)
    except GraphError as e:
        typer.echo(f"Flow graph error: {e}", err=True)
        raise typer.Exit(1) from None

    typer.echo(f"Flow valid: {graph.flow_id}")
    typer.echo(f"  Entry: {graph.entry_node.node_id} ({graph.entry_node.event_type})")
    typer.echo(f"  Graph: {graph.node_count} nodes, {graph.edge_count} edges")
    typer.echo(f"  Content hash: {graph.content_hash}")


@app.command()
def publish(
    flow_file: Path = typer.Argument(..., help="Flow definition (YAML or JSON)."),
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Validate and publish a flow as a new version."""
    definition = _load_definition(flow_file)
    with _open_engine(settings) as engine:
        try:
            graph = engine.publish(definition)
        except GraphError as e:
            typer.echo(f"Flow graph error: {e}", err=True)
            raise typer.Exit(1) from None
    typer.echo(f"Published {graph.flow_id} version {graph.version}")


@app.command()
def archive(
    flow_id: str = typer.Argument(..., help="Flow to archive."),
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Stop enrollment into a flow and cancel its in-flight entries."""
    with _open_engine(settings) as engine:
        try:
            cancelled = engine.archive(flow_id)
        except FlowNotFound as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None
    typer.echo(f"Archived {flow_id} ({cancelled} entries cancelled)")


# === Enrollment and execution ===


@app.command()
def event(
    event_type: str = typer.Argument(..., help="Event type, e.g. customer_created."),
    subscriber_id: str = typer.Argument(..., help="Subscriber the event is about."),
    payload: str = typer.Option("{}", "--payload", "-p", help="Event payload as JSON."),
    store_id: str | None = typer.Option(None, "--store", help="Store the subscriber belongs to."),
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Deliver an event; enrolls the subscriber into matching flows."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: --payload is not valid JSON: {e}", err=True)
        raise typer.Exit(1) from None
    if not isinstance(data, dict):
        typer.echo("Error: --payload must be a JSON object", err=True)
        raise typer.Exit(1)

    with _open_engine(settings) as engine:
        try:
            entry_ids = engine.handle_event(event_type, subscriber_id, data, store_id=store_id)
        except InvalidPayload as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None
    if not entry_ids:
        typer.echo("No flows enrolled.")
        return
    typer.echo(f"Enrolled in {len(entry_ids)} flow(s):")
    for entry_id in entry_ids:
        typer.echo(f"  {entry_id}")


@app.command()
def tick(
    workers: int | None = typer.Option(
        None, "--workers", "-w", min=1, help="Concurrent ticks (default: scheduler.workers)."
    ),
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Run one scheduler round over due entries."""
    with _open_engine(settings) as engine:
        result = engine.worker_pool(workers).run_once()
    typer.echo(f"Tick completed: {result.claimed} claimed of {result.selected} due")
    typer.echo(f"  Steps: {result.steps}")
    typer.echo(f"  Waiting: {result.waiting}")
    typer.echo(f"  Completed: {result.completed}")
    typer.echo(f"  Retried: {result.retried}")
    typer.echo(f"  Failed: {result.failed}")
    if result.parked:
        typer.echo(f"  Parked (step limit): {result.parked}")
    if result.conflicts:
        typer.echo(f"  Conflicts: {result.conflicts}")


@app.command()
def run(
    workers: int | None = typer.Option(
        None, "--workers", "-w", min=1, help="Worker threads (default: scheduler.workers)."
    ),
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Run scheduler workers until interrupted (Ctrl+C)."""
    with _open_engine(settings) as engine:
        recovered = engine.recover()
        if recovered.recovered:
            typer.echo(f"Recovered {len(recovered.recovered)} abandoned entries")
        pool = engine.worker_pool(workers)
        typer.echo(f"Running {pool.workers} worker(s), Ctrl+C to stop")
        pool.start()
        try:
            pool.wait()
        except KeyboardInterrupt:
            typer.echo("Stopping...")
        finally:
            pool.stop()


@app.command()
def recover(
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Return entries abandoned in Running by a crashed worker to the queue."""
    with _open_engine(settings) as engine:
        result = engine.recover()
    typer.echo(f"Recovered {len(result.recovered)} entries")
    for entry_id in result.recovered:
        typer.echo(f"  {entry_id}")
    if result.conflicts:
        typer.echo(f"  Conflicts: {result.conflicts}")


# === Entries ===


@app.command()
def inspect(
    entry_id: str = typer.Argument(..., help="Entry to show."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Show an entry's state and history."""
    with _open_engine(settings) as engine:
        try:
            entry = engine.inspect(entry_id)
        except EntryNotFound as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None

    if json_output:
        data = {
            "entry_id": entry.entry_id,
            "flow_id": entry.flow_id,
            "flow_version": entry.flow_version,
            "subscriber_id": entry.subscriber_id,
            "status": entry.status.value,
            "current_node_id": entry.current_node_id,
            "wake_at": _format_time(entry.wake_at) if entry.wake_at else None,
            "attempt_count": entry.attempt_count,
            "last_error": entry.last_error,
            "history": [
                {
                    "sequence": record.sequence,
                    "node_id": record.node_id,
                    "entered_at": _format_time(record.entered_at),
                    "exited_at": _format_time(record.exited_at) if record.exited_at else None,
                    "outcome": record.outcome,
                }
                for record in entry.history
            ],
        }
        typer.echo(json.dumps(data, indent=2))
        return

    typer.echo(f"Entry {entry.entry_id}")
    typer.echo(f"  Flow: {entry.flow_id} v{entry.flow_version}")
    typer.echo(f"  Subscriber: {entry.subscriber_id}")
    typer.echo(f"  Status: {entry.status.value}")
    typer.echo(f"  Node: {entry.current_node_id}")
    typer.echo(f"  Wake at: {_format_time(entry.wake_at)}")
    typer.echo(f"  Attempts: {entry.attempt_count}")
    if entry.last_error:
        typer.echo(f"  Last error: {entry.last_error}")
    typer.echo("  History:")
    for record in entry.history:
        typer.echo(
            f"    {record.sequence:>3}  {_format_time(record.entered_at)}  "
            f"{record.node_id:16} {record.outcome}"
        )


@app.command()
def cancel(
    flow_id: str = typer.Argument(..., help="Flow the subscriber is in."),
    subscriber_id: str = typer.Argument(..., help="Subscriber to cancel."),
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Cancel a subscriber's active execution of a flow."""
    with _open_engine(settings) as engine:
        cancelled = engine.cancel(flow_id, subscriber_id)
    if not cancelled:
        typer.echo(f"No active execution of {flow_id} for {subscriber_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Cancelled {flow_id} for {subscriber_id}")


@app.command()
def config(
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Print the resolved configuration (file, environment and defaults)."""
    resolved = _load_config(settings)
    typer.echo(json.dumps(resolve_config(resolved), indent=2))


if __name__ == "__main__":
    app()
