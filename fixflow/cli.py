"""Command line interface for running fixflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from pydantic import ValidationError

from fixflow.config import FixflowConfig, load_config
from fixflow.constants import WORKFLOW_PRESETS
from fixflow.context import build_context
from fixflow.contracts import StateChangeEvent, StepName, Subject, WorkflowSession
from fixflow.errors import ConfigurationError, SessionNotFound, WorkflowCancelled, WorkflowFailure
from fixflow.executor import AnalysisExecutor
from fixflow.persistence import SessionStore, get_store
from fixflow.session import SessionManager

app = typer.Typer(help="CLI for fixflow remediation workflows")

# Command groups
session_app = typer.Typer(help="Commands for inspecting workflow sessions")
tool_app = typer.Typer(help="Commands for the external analysis tool")

app.add_typer(session_app, name="session")
app.add_typer(tool_app, name="tool")


@app.callback()
def main() -> None:
    """fixflow CLI entry point."""
    pass


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_subject(path: Path) -> Subject:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read subject file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Subject file {path} must contain a mapping")
    try:
        return Subject.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid subject in {path}: {e}") from e


def _resolve_steps(preset: str, steps: Optional[str]) -> List[StepName]:
    if steps:
        names = [name.strip() for name in steps.split(",") if name.strip()]
    elif preset in WORKFLOW_PRESETS:
        names = WORKFLOW_PRESETS[preset]
    else:
        raise ConfigurationError(
            f"Unknown preset '{preset}'. Available: {', '.join(WORKFLOW_PRESETS)}"
        )
    try:
        return [StepName(name) for name in names]
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def _load_cli_config(config_path: Optional[Path], workspace: Optional[Path]) -> FixflowConfig:
    config = load_config(str(config_path) if config_path else None)
    if workspace is not None:
        config.workspace_root = str(workspace.expanduser().resolve())
    return config


def _store_for(config_path: Optional[Path], workspace: Optional[Path]) -> SessionStore:
    if config_path is None and workspace is None:
        return get_store()
    return get_store(config=_load_cli_config(config_path, workspace))


def _print_event(event: StateChangeEvent) -> None:
    if event.step is not None:
        typer.echo(f"[{event.session.id}] {event.step.name.value}: {event.type.value}")
    else:
        typer.echo(f"[{event.session.id}] {event.type.value}")


def _print_session(session: WorkflowSession) -> None:
    typer.echo(f"Session {session.id}: {session.status.value}")
    typer.echo(f"Subject: {session.subject_id} - {session.subject_title}")
    if session.external_session_id:
        typer.echo(f"External session: {session.external_session_id}")
    for step in session.steps:
        started = step.started_at.isoformat() if step.started_at else "-"
        completed = step.completed_at.isoformat() if step.completed_at else "-"
        typer.echo(f"- {step.name.value}: {step.status.value} ({started} -> {completed})")
        if step.error:
            typer.echo(f"    error: {step.error}")


@app.command("run")
def run_workflow(
    subject_file: Path,
    preset: str = typer.Option("fix-only", help="Workflow preset to run"),
    steps: Optional[str] = typer.Option(
        None, help="Comma separated step names; overrides --preset"
    ),
    workspace: Optional[Path] = typer.Option(None, help="Repository the tool works in"),
    config: Optional[Path] = typer.Option(None, help="Path to a fixflow YAML config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Run a remediation workflow for the subject described in SUBJECT_FILE.

    The subject file is JSON or YAML with at least ``id`` and ``title``.
    Every state change is printed as it happens.

    Example:
        fixflow run finding.json --preset full --workspace ./my-repo
    """
    _configure_logging(verbose)
    try:
        subject = _load_subject(subject_file)
        step_names = _resolve_steps(preset, steps)
        cli_config = _load_cli_config(config, workspace)
    except ConfigurationError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    context = build_context(cli_config, store=get_store(config=cli_config))
    manager = SessionManager(context)
    manager.on_state_change(_print_event)

    try:
        session = asyncio.run(manager.execute_workflow(subject, step_names))
    except WorkflowCancelled as e:
        typer.secho(f"Workflow {e.session.id} was cancelled", fg=typer.colors.YELLOW)
        raise typer.Exit(code=1)
    except WorkflowFailure as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.secho(f"Workflow {session.id} {session.status.value}", fg=typer.colors.GREEN)
    for step in session.steps:
        if step.result is not None:
            typer.echo(f"--- {step.name.value} ---")
            if isinstance(step.result, str):
                typer.echo(step.result)
            else:
                typer.echo(json.dumps(step.result, indent=2))


@session_app.command("list")
def session_list(
    workspace: Optional[Path] = typer.Option(
        None, help="Workspace the sessions were run in; selects its session store"
    ),
    config: Optional[Path] = typer.Option(None, help="Path to a fixflow YAML config"),
) -> None:
    """List stored sessions with their status and subject."""
    store = _store_for(config, workspace)
    sessions = asyncio.run(store.load_all())
    if not sessions:
        typer.echo("No sessions found")
        return
    for session in sessions:
        typer.echo(f"{session.id}\t{session.status.value}\t{session.subject_id}")


@session_app.command("show")
def session_show(
    session_id: str,
    workspace: Optional[Path] = typer.Option(
        None, help="Workspace the sessions were run in; selects its session store"
    ),
    config: Optional[Path] = typer.Option(None, help="Path to a fixflow YAML config"),
) -> None:
    """Show a session with its step history."""
    store = _store_for(config, workspace)
    session = asyncio.run(store.get(session_id))
    if session is None:
        typer.echo("Session not found")
        raise typer.Exit(code=1)
    _print_session(session)


@session_app.command("cancel")
def session_cancel(
    session_id: str,
    workspace: Optional[Path] = typer.Option(
        None, help="Workspace the sessions were run in; selects its session store"
    ),
    config: Optional[Path] = typer.Option(None, help="Path to a fixflow YAML config"),
) -> None:
    """
    Mark a session as cancelled.

    A workflow running in another process notices the cancellation when its
    current step finishes and stops before starting the next one.
    """
    store = _store_for(config, workspace)
    cli_config = _load_cli_config(config, workspace)

    async def _cancel() -> WorkflowSession:
        manager = SessionManager(build_context(cli_config, store=store))
        await manager.load()
        return await manager.cancel_session(session_id)

    try:
        session = asyncio.run(_cancel())
    except SessionNotFound:
        typer.echo("Session not found")
        raise typer.Exit(code=1)
    typer.echo(f"Session {session.id}: {session.status.value}")


@session_app.command("delete")
def session_delete(
    session_id: str,
    workspace: Optional[Path] = typer.Option(
        None, help="Workspace the sessions were run in; selects its session store"
    ),
    config: Optional[Path] = typer.Option(None, help="Path to a fixflow YAML config"),
) -> None:
    """Delete a session from the store. Deleting an unknown id is not an error."""
    store = _store_for(config, workspace)
    asyncio.run(store.delete(session_id))
    typer.echo(f"Deleted session {session_id}")


@tool_app.command("check")
def tool_check(
    config: Optional[Path] = typer.Option(None, help="Path to a fixflow YAML config"),
) -> None:
    """Report the analysis tool version, or exit 1 when it is unavailable."""
    cli_config = load_config(str(config) if config else None)
    executor = AnalysisExecutor(cli_config.executor, workspace_root=cli_config.resolve_workspace())
    version = asyncio.run(executor.get_version())
    if version is None:
        typer.secho(
            f"{executor.binary} CLI is not installed or not on PATH", fg=typer.colors.RED
        )
        raise typer.Exit(code=1)
    typer.echo(f"{executor.binary}: {version}")


if __name__ == "__main__":
    app()
