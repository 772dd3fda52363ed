from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskscan.config import TaskScanConfig, load_config, save_config
from taskscan.errors import TaskScanError
from taskscan.ledger import PhaseLedger
from taskscan.models import RunReport, ScanResult
from taskscan.orchestrator import ScanOrchestrator

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(slots=True)
class Runtime:
    workspace_root: Path
    config_path: Path
    config: TaskScanConfig
    ledger: PhaseLedger


def _resolve_config_path(workspace_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace_root / config_path
    return config_path.resolve()


def _load_runtime(workspace_value: str, config_value: str) -> Runtime:
    workspace_root = Path(workspace_value).resolve()
    config_path = _resolve_config_path(workspace_root, config_value)
    try:
        config = load_config(config_path)
    except TaskScanError as exc:
        raise click.ClickException(str(exc)) from exc
    ledger = PhaseLedger(
        workspace_root,
        todo_dir=config.ledger.todo_dir,
        phase_pattern=config.ledger.phase_pattern,
        lock_timeout_seconds=config.ledger.lock_timeout_seconds,
    )
    return Runtime(
        workspace_root=workspace_root,
        config_path=config_path,
        config=config,
        ledger=ledger,
    )


def _echo_event(event: dict[str, Any]) -> None:
    if event.get("event") == "task_completed":
        click.echo(
            f"  + {event['agent']}/{event['phase']}: {event['description']} "
            f"({float(event['confidence']):.2f})"
        )


def _format_result(result: ScanResult) -> list[str]:
    if not result.ok:
        return [f"{result.agent}: FAILED ({result.error})"]
    lines = [
        f"{result.agent}: {result.tasks_completed}/{result.total_tasks} complete, "
        f"active phase {result.phase}, {len(result.completed_tasks)} new"
    ]
    for item in result.completed_tasks:
        lines.append(f"  [{item.phase}] {item.description} ({item.confidence:.2f})")
        for evidence in item.evidence:
            lines.append(f"      - {evidence}")
    return lines


def _format_summary(report: RunReport) -> str:
    summary = (
        f"Summary: {report.tasks_completed}/{report.total_tasks} tasks complete "
        f"({report.success_rate:.0%}), {report.newly_completed} newly completed"
    )
    if report.failed_agents:
        summary += f", failed agents: {', '.join(report.failed_agents)}"
    if report.timed_out:
        summary += " (timed out)"
    return summary


workspace_option = click.option(
    "--workspace",
    "workspace_value",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False),
)
config_option = click.option(
    "--config", "config_value", default="taskscan.toml", show_default=True
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False)
def cli(verbose: bool) -> None:
    """Task completion detection CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


@cli.command("init")
@workspace_option
@config_option
def init_command(workspace_value: str, config_value: str) -> None:
    runtime = _load_runtime(workspace_value, config_value)
    save_config(runtime.config_path, runtime.config)
    runtime.ledger.todo_root.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized taskscan in {runtime.workspace_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"Phase records: {runtime.ledger.todo_root}")


@cli.command("scan")
@workspace_option
@config_option
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--timeout", type=float, default=None, help="Run deadline in seconds.")
@click.option("--threshold", type=click.FloatRange(0.0, 1.0), default=None)
@click.pass_context
def scan_command(
    ctx: click.Context,
    workspace_value: str,
    config_value: str,
    as_json: bool,
    timeout: float | None,
    threshold: float | None,
) -> None:
    runtime = _load_runtime(workspace_value, config_value)
    if threshold is not None:
        runtime.config.scan.threshold = threshold
    if timeout is None:
        timeout = runtime.config.scan.timeout_seconds or None

    try:
        orchestrator = ScanOrchestrator.from_config(
            runtime.config,
            event_hook=None if as_json else _echo_event,
        )
        report = orchestrator.run(runtime.workspace_root, timeout=timeout)
    except TaskScanError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        if not report.results:
            click.echo("No agents with phase records found.")
        for result in report.results:
            for line in _format_result(result):
                click.echo(line)
        click.echo(_format_summary(report))

    if not report.ok:
        ctx.exit(1)


@cli.command("status")
@workspace_option
@config_option
@click.option("--json", "as_json", is_flag=True, default=False)
def status_command(workspace_value: str, config_value: str, as_json: bool) -> None:
    runtime = _load_runtime(workspace_value, config_value)
    payload: dict[str, Any] = {}
    try:
        for agent in runtime.ledger.list_agents():
            phases = runtime.ledger.load_phases(agent)
            payload[agent] = [phase.to_dict() for phase in phases]
    except TaskScanError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    if not payload:
        click.echo("No agents with phase records found.")
        return
    for agent, phases in payload.items():
        click.echo(agent)
        for phase in phases:
            done = sum(1 for task in phase["tasks"] if task["status"] == "complete")
            click.echo(f"  {phase['name']:<10} {phase['status']:<12} {done}/{len(phase['tasks'])}")


@cli.command("mark")
@click.argument("agent")
@click.argument("phase")
@click.argument("description")
@click.option("--evidence", "evidence", multiple=True, help="Evidence line; repeatable.")
@workspace_option
@config_option
def mark_command(
    agent: str,
    phase: str,
    description: str,
    evidence: tuple[str, ...],
    workspace_value: str,
    config_value: str,
) -> None:
    runtime = _load_runtime(workspace_value, config_value)
    lines = list(evidence) or ["Marked complete manually"]
    try:
        task = runtime.ledger.mark_complete(agent, phase, description, 1.0, lines)
        if runtime.config.ledger.write_status_file:
            runtime.ledger.write_status(agent)
    except TaskScanError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(
        f"{agent}/{phase}: {task.description} is complete "
        f"(confidence {task.confidence if task.confidence is not None else 0.0:.2f})"
    )
