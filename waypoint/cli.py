"""Command line interface for running waypoint workflows."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from waypoint import (
    ApprovalDecision,
    ApprovalGateCoordinator,
    CheckpointManager,
    ErrorAction,
    EventKind,
    InMemoryEventBus,
    RunOutcome,
    TaskOrchestrator,
    WorkflowEvent,
    get_checkpoint_store,
    get_event_sink,
    load_config,
)
from waypoint.definitions import load_definition
from waypoint.errors import CheckpointIOError, DefinitionError
from waypoint.logs import close_run_log, configure_logging, open_run_log

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_REBOOT = 3

app = typer.Typer(help="CLI for waypoint workflows")

checkpoint_app = typer.Typer(help="Commands for inspecting the resume checkpoint")
app.add_typer(checkpoint_app, name="checkpoint")


@app.callback()
def main() -> None:
    """waypoint CLI entry point."""
    pass


def _parse_inputs(pairs: Optional[List[str]], inputs_file: Optional[Path]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if inputs_file is not None:
        with open(inputs_file, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise typer.BadParameter("inputs file must contain a mapping")
        values.update(data)
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected key=value, got '{pair}'")
        # YAML scalars give "3" -> 3 and "true" -> True
        values[key.strip()] = yaml.safe_load(raw) if raw else ""
    return values


def _parse_error_action(value: Optional[str]) -> Optional[ErrorAction]:
    if value is None:
        return None
    for action in ErrorAction:
        if action.value.lower() == value.lower():
            return action
    raise typer.BadParameter(f"error action must be Stop or Continue, got '{value}'")


def _print_event(event: WorkflowEvent) -> None:
    data = event.data
    if event.kind == EventKind.TASK_STARTED:
        typer.echo(f"> {data.get('title') or event.task_name}")
    elif event.kind == EventKind.TASK_OUTPUT:
        typer.echo(f"    {data.get('message', '')}")
    elif event.kind == EventKind.TASK_RETRYING:
        typer.secho(
            f"  retrying (attempt {data.get('attempt')}/{data.get('max_attempts')}): {data.get('error')}",
            fg=typer.colors.YELLOW,
        )
    elif event.kind == EventKind.TASK_COMPLETED:
        typer.secho(f"  {data.get('message', 'Completed')}", fg=typer.colors.GREEN)
    elif event.kind == EventKind.TASK_SKIPPED:
        typer.secho(f"  Skipped: {data.get('reason')}", fg=typer.colors.YELLOW)
    elif event.kind == EventKind.TASK_FAILED:
        typer.secho(f"  Failed: {data.get('error')}", fg=typer.colors.RED)
    elif event.kind == EventKind.APPROVAL_DECIDED:
        reason = data.get("reason")
        typer.echo(f"  {data.get('decision')}" + (f" ({reason})" if reason else ""))
    elif event.kind == EventKind.REBOOT_REQUESTED:
        typer.secho(f"Reboot requested: {data.get('reason')}", fg=typer.colors.YELLOW)


class _ApprovalPrompt:
    """Asks on the terminal when a gate opens.

    The prompt runs on its own thread so that the gate's timeout keeps
    running on the event loop while the operator thinks.
    """

    def __init__(self, approvals: ApprovalGateCoordinator) -> None:
        self._approvals = approvals

    def __call__(self, event: WorkflowEvent) -> None:
        if event.kind != EventKind.APPROVAL_REQUESTED:
            return
        threading.Thread(target=self._ask, args=(event,), daemon=True).start()

    def _ask(self, event: WorkflowEvent) -> None:
        name = event.task_name or ""
        message = event.data.get("message") or "Approval required"
        if typer.confirm(f"  {message}. Approve '{name}'?", default=False):
            self._approvals.approve(name)
            return
        if event.data.get("require_reason"):
            reason = typer.prompt("  Reason")
        else:
            reason = typer.prompt("  Reason", default="", show_default=False) or None
        self._approvals.reject(name, reason)


def _auto_approve(task: Any) -> tuple:
    return ApprovalDecision.APPROVED, "auto-approved"


@app.command("run")
def run_workflow(
    definition: Path,
    inputs: Optional[List[str]] = typer.Option(
        None, "--input", "-i", help="Wizard input as key=value (repeatable)"
    ),
    inputs_file: Optional[Path] = typer.Option(
        None, help="YAML or JSON file with wizard inputs"
    ),
    resume: bool = typer.Option(
        True, "--resume/--no-resume", help="Continue from a matching checkpoint"
    ),
    auto_approve: bool = typer.Option(False, help="Approve every approval gate"),
    checkpoint: Optional[str] = typer.Option(
        None, help="Checkpoint location (file path or memory://)"
    ),
    error_action: Optional[str] = typer.Option(
        None, help="Stop or Continue when a task fails"
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to waypoint.yaml"
    ),
) -> None:
    """
    Run a workflow definition.

    Tasks run in order. Output is streamed to the terminal and approval gates
    are prompted for unless --auto-approve is given. When a task requests a
    reboot the run is checkpointed; running the same command again resumes it.

    Exit codes: 0 success, 1 failure or cancellation, 3 halted for reboot.

    Example:
        waypoint run deploy.yaml --input Environment=dev
        waypoint run deploy.yaml --no-resume --auto-approve
    """
    config = load_config(str(config_path) if config_path else None)
    configure_logging(config.logging.level)

    try:
        workflow = load_definition(definition)
        tasks = workflow.build_tasks(config.default_retry_delay_seconds)
    except DefinitionError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_FAILURE)

    wizard_inputs = _parse_inputs(inputs, inputs_file)
    action = (
        _parse_error_action(error_action)
        or workflow.error_action
        or config.error_action
    )

    manager = CheckpointManager(get_checkpoint_store(checkpoint, config))

    sink = get_event_sink(config=config)
    if isinstance(sink, InMemoryEventBus):
        bus = sink
    else:
        bus = InMemoryEventBus(history_limit=0)
        bus.subscribe(sink.publish)
    bus.subscribe(_print_event)

    approvals = ApprovalGateCoordinator(auto_decide=_auto_approve if auto_approve else None)
    if not auto_approve:
        bus.subscribe(_ApprovalPrompt(approvals))

    log_path = None
    if config.logging.directory:
        previous = None
        if resume:
            saved = manager.load()
            if saved is not None and saved.title == workflow.title:
                previous = saved.log_file_path
        log_path = open_run_log(workflow.title, config.logging.directory, previous)

    orchestrator = TaskOrchestrator(
        checkpoints=manager,
        approvals=approvals,
        events=bus,
        error_action=action,
        wizard_inputs=wizard_inputs,
        title=workflow.title,
    )
    orchestrator.log_file_path = str(log_path) if log_path else None

    typer.echo(f"Running workflow: {workflow.title}")
    try:
        result = asyncio.run(orchestrator.run(tasks, resume=resume))
    except KeyboardInterrupt:
        typer.secho("Workflow cancelled", fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_FAILURE)
    finally:
        close_run_log()

    typer.echo(
        f"{result.outcome.value}: {result.completed} completed, {result.failed} failed, "
        f"{result.skipped} skipped, {result.pending} pending"
    )
    if result.outcome == RunOutcome.HALTED_FOR_REBOOT:
        if result.checkpoint_path:
            typer.echo(f"Checkpoint saved to {result.checkpoint_path}")
        raise typer.Exit(code=EXIT_REBOOT)
    if not result.succeeded:
        if result.failed_task:
            typer.secho(
                f"Stopped at task '{result.failed_task}': {result.error}",
                fg=typer.colors.RED,
            )
        raise typer.Exit(code=EXIT_FAILURE)


@checkpoint_app.command("show")
def checkpoint_show(
    checkpoint: Optional[str] = typer.Option(None, help="Checkpoint location"),
) -> None:
    """Print the stored checkpoint document."""
    store = get_checkpoint_store(checkpoint)
    try:
        saved = store.read()
    except CheckpointIOError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_FAILURE)
    if saved is None:
        typer.echo("No checkpoint found")
        raise typer.Exit(code=EXIT_FAILURE)
    typer.echo(f"Checkpoint at {store.location}")
    typer.echo(saved.to_json())


@checkpoint_app.command("clear")
def checkpoint_clear(
    checkpoint: Optional[str] = typer.Option(None, help="Checkpoint location"),
) -> None:
    """Delete the stored checkpoint so the next run starts from scratch."""
    manager = CheckpointManager(get_checkpoint_store(checkpoint))
    if manager.clear():
        typer.echo("Checkpoint cleared")
    else:
        typer.echo("No checkpoint found")


if __name__ == "__main__":
    app()
