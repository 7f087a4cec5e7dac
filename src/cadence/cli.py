# src/cadence/cli.py
"""Cadence Command Line Interface.

Entry point for the cadence CLI tool.
"""

from __future__ import annotations

import csv
import json
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

import typer
import yaml
from pydantic import ValidationError

from cadence import __version__
from cadence.contracts.errors import (
    ExecutionNotFoundError,
    FlowNotFoundError,
    GraphValidationError,
)
from cadence.core.config import CadenceSettings, load_settings
from cadence.core.flow import FlowGraph, load_flow_document
from cadence.core.logging import configure_logging
from cadence.core.store.models import Recipient
from cadence.engine.runtime import CadenceEngine
from cadence.engine.worker import Worker

app = typer.Typer(
    name="cadence",
    help="Cadence: multi-step outreach flow execution engine.",
    no_args_is_help=True,
)

_RECIPIENT_FIELDS = ("recipient_id", "email", "phone", "name")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"cadence version {__version__}")
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
    """Cadence: multi-step outreach flow execution engine."""


def _load_settings_or_exit(settings: str) -> CadenceSettings:
    try:
        config = load_settings(Path(settings))
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None
    configure_logging(json_output=config.log_format == "json", level=config.log_level)
    return config


def _build_engine(settings: str) -> CadenceEngine:
    return CadenceEngine.build(_load_settings_or_exit(settings))


def load_recipients(path: Path) -> list[Recipient]:
    """Read recipients from CSV (with header) or a YAML/JSON list of mappings.

    Columns other than recipient_id/email/phone/name become template
    attributes.
    """
    if not path.exists():
        raise FileNotFoundError(f"Recipients file not found: {path}")

    rows: list[dict[str, Any]]
    if path.suffix.lower() == ".csv":
        with path.open(newline="", encoding="utf-8") as f:
            rows = [dict(row) for row in csv.DictReader(f)]
    else:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(loaded, list):
            raise ValueError(f"Recipients file {path} must contain a list")
        rows = loaded

    recipients: list[Recipient] = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict) or not row.get("recipient_id"):
            raise ValueError(f"Recipient #{index + 1} has no recipient_id")
        recipients.append(
            Recipient(
                recipient_id=str(row["recipient_id"]),
                email=row.get("email") or None,
                phone=str(row["phone"]) if row.get("phone") else None,
                name=row.get("name") or None,
                attributes={
                    k: v for k, v in row.items() if k not in _RECIPIENT_FIELDS and v not in (None, "")
                },
            )
        )
    return recipients


@app.command()
def validate(
    flow: str = typer.Option(
        ...,
        "--flow",
        "-f",
        help="Path to flow definition (YAML or JSON).",
    ),
) -> None:
    """Validate a flow definition without storing it."""
    try:
        document = load_flow_document(flow)
    except FileNotFoundError:
        typer.echo(f"Error: Flow file not found: {flow}", err=True)
        raise typer.Exit(1) from None
    except GraphValidationError as e:
        typer.echo(f"Flow graph error: {e}", err=True)
        raise typer.Exit(1) from None

    graph = FlowGraph.from_definition(document.definition, flow_id=document.flow_id)
    typer.echo(f"Flow '{document.flow_id}' is valid.")
    typer.echo(f"  Nodes: {graph.node_count}")
    typer.echo(f"  Edges: {graph.edge_count}")
    typer.echo(f"  Entry: {graph.entry_node}")


@app.command("import-flow")
def import_flow(
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    flow: str = typer.Option(..., "--flow", "-f", help="Path to flow definition."),
) -> None:
    """Validate and store a flow definition."""
    engine = _build_engine(settings)
    try:
        document = load_flow_document(flow)
    except FileNotFoundError:
        typer.echo(f"Error: Flow file not found: {flow}", err=True)
        raise typer.Exit(1) from None
    except GraphValidationError as e:
        typer.echo(f"Flow graph error: {e}", err=True)
        raise typer.Exit(1) from None

    stored = engine.recorder.save_flow(document.flow_id, document.name, document.definition)
    typer.echo(f"Stored flow '{stored.flow_id}' ({stored.definition_hash[:12]})")


@app.command()
def launch(
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    flow_id: str = typer.Option(..., "--flow-id", help="Stored flow to launch."),
    recipients: str = typer.Option(
        ...,
        "--recipients",
        "-r",
        help="Recipients file (CSV with header, or YAML/JSON list).",
    ),
) -> None:
    """Import recipients and launch a flow for them."""
    engine = _build_engine(settings)
    try:
        people = load_recipients(Path(recipients))
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    engine.recipients.upsert(people)
    try:
        execution = engine.scheduler.launch(flow_id, [p.recipient_id for p in people])
    except FlowNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    except GraphValidationError as e:
        typer.echo(f"Flow graph error: {e}", err=True)
        raise typer.Exit(1) from None

    typer.echo(f"Launched execution {execution.execution_id}")
    typer.echo(f"  Flow: {execution.flow_id}")
    typer.echo(f"  Recipients: {execution.recipient_count}")


@app.command()
def cancel(
    execution_id: str = typer.Argument(..., help="Execution to cancel."),
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
) -> None:
    """Cancel a running execution."""
    engine = _build_engine(settings)
    try:
        cancelled = engine.scheduler.cancel(execution_id)
    except ExecutionNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    if cancelled:
        typer.echo(f"Cancelled execution {execution_id}")
    else:
        typer.echo(f"Execution {execution_id} already finished; nothing to cancel")


@app.command()
def tick(
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
) -> None:
    """Run one scheduler tick."""
    engine = _build_engine(settings)
    report = engine.scheduler.tick()
    typer.echo(f"Due executions: {report.due}")
    typer.echo(f"  Stages started: {len(report.started)}")
    typer.echo(f"  Stages recovered: {len(report.recovered)}")
    for execution_id, reason in report.failed.items():
        typer.echo(f"  Failed {execution_id}: {reason}")


@app.command()
def work(
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    once: bool = typer.Option(
        False,
        "--once",
        help="Process due tasks until none are left, then exit.",
    ),
    max_tasks: int | None = typer.Option(
        None,
        "--max-tasks",
        help="Tasks claimed per poll (defaults to worker.batch_size).",
    ),
) -> None:
    """Run a task worker."""
    engine = _build_engine(settings)
    worker = Worker(engine)
    worker.ensure_tick_scheduled()
    try:
        if once:
            processed = worker.run_pending(max_tasks=max_tasks)
            typer.echo(f"Processed {processed} task(s)")
        else:
            worker.run_forever()
    except KeyboardInterrupt:
        typer.echo("Worker stopped")
    finally:
        engine.close()


@app.command("recover-stuck")
def recover_stuck(
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Report what would be repaired without changing anything.",
    ),
    stale_minutes: int | None = typer.Option(
        None,
        "--stale-minutes",
        help="Treat stages idle this long as stale (overrides settings).",
    ),
) -> None:
    """Find stale StageRuns and complete or fail them from send evidence."""
    engine = _build_engine(settings)
    assessments = engine.sweeper.sweep(
        dry_run=dry_run,
        stale_after=timedelta(minutes=stale_minutes) if stale_minutes is not None else None,
    )
    if not assessments:
        typer.echo("No stale stages found.")
        return

    verb = "Would resolve" if dry_run else "Resolved"
    for a in assessments:
        typer.echo(
            f"{verb} {a.stage_run_id} ({a.node_id}) -> {a.outcome.value}: "
            f"age {a.age.total_seconds() / 60:.1f}m, terminal {a.terminal}, "
            f"pending {a.pending}, queued {a.queued_tasks}, orphaned {a.orphaned}"
        )


@app.command()
def status(
    execution_id: str = typer.Argument(..., help="Execution to show."),
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Show an execution and its StageRuns."""
    engine = _build_engine(settings)
    execution = engine.recorder.get_execution(execution_id)
    if execution is None:
        typer.echo(f"Error: Execution not found: {execution_id}", err=True)
        raise typer.Exit(1)
    stage_runs = engine.recorder.list_stage_runs(execution_id)

    if as_json:
        typer.echo(
            json.dumps(
                {
                    "execution_id": execution.execution_id,
                    "flow_id": execution.flow_id,
                    "status": execution.status.value,
                    "failure_reason": execution.failure_reason,
                    "next_node_id": execution.next_node_id,
                    "next_due_at": execution.next_due_at.isoformat()
                    if execution.next_due_at
                    else None,
                    "stage_runs": [
                        {
                            "stage_run_id": s.stage_run_id,
                            "node_id": s.node_id,
                            "status": s.status.value,
                            "expected": s.expected_count,
                            "mode": s.mode.value if s.mode else None,
                            "chunks": [s.chunks_completed, s.chunks_total],
                            "error": s.error,
                        }
                        for s in stage_runs
                    ],
                },
                indent=2,
            )
        )
        return

    typer.echo(f"Execution {execution.execution_id} [{execution.status.value}]")
    typer.echo(f"  Flow: {execution.flow_id}")
    typer.echo(f"  Recipients: {execution.recipient_count}")
    if execution.next_due_at is not None:
        typer.echo(f"  Next: {execution.next_node_id} at {execution.next_due_at.isoformat()}")
    if execution.failure_reason:
        typer.echo(f"  Reason: {execution.failure_reason}")
    for s in stage_runs:
        counts = engine.recorder.count_sends(s.stage_run_id)
        typer.echo(
            f"  - {s.node_id} [{s.status.value}] expected {s.expected_count}, "
            f"terminal {counts.terminal}, pending {counts.pending}"
            + (f", chunks {s.chunks_completed}/{s.chunks_total}" if s.chunks_total > 1 else "")
            + (f", error: {s.error}" if s.error else "")
        )


@app.command()
def track(
    send_record_id: str = typer.Argument(..., help="Send record the event belongs to."),
    event: str = typer.Option(
        ..., "--event", "-e", help="open, click, bounce or unsubscribe."
    ),
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
) -> None:
    """Record an engagement event reported by a provider.

    An unsubscribe opts the recipient out of the record's channel for every
    later send.
    """
    engine = _build_engine(settings)

    def unsubscribe(record_id: str) -> bool:
        record = engine.recorder.get_send_record(record_id)
        if record is None:
            return False
        return engine.recipients.unsubscribe(record.recipient_id, record.channel)

    handlers: dict[str, Callable[[str], bool]] = {
        "open": engine.recorder.record_open,
        "click": engine.recorder.record_click,
        "bounce": engine.recorder.record_bounce,
        "unsubscribe": unsubscribe,
    }
    if event not in handlers:
        typer.echo(
            f"Error: Unknown event '{event}' (expected open, click, bounce or unsubscribe)",
            err=True,
        )
        raise typer.Exit(1)
    if not handlers[event](send_record_id):
        typer.echo(f"Error: No trackable send record {send_record_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Recorded {event} for {send_record_id}")


if __name__ == "__main__":
    app()
