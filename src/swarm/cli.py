from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from swarm.agents import AgentInstructionLoader
from swarm.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    CodexSDKBackend,
    ResilientBackend,
    RetryPolicy,
    SessionError,
)
from swarm.checkpoint import EVENTS_FILE, CheckpointStore, EventLog
from swarm.config import DEFAULT_CONFIG_FILE, BackendName, SwarmConfig, load_config, save_config
from swarm.engine import PipelineEngine, RunOptions, RunSummary, SwarmOrchestrator
from swarm.errors import SwarmError
from swarm.pipeline_config import VerifyCommands
from swarm.planning import PLAN_PHASES, PLANS_DIR, PlanningEngine
from swarm.registry import RunRegistry
from swarm.sessions import BackendSessionGateway, SessionManager

VERBOSE_EVENT_PREFIXES = ("backend_", "claude_", "codex_", "session_", "loop_feedback")
PLAN_MARKER = "## Refined Requirements"
PLAN_EXTRA_SECTIONS = ("## Engineering Decisions", "## Design Decisions")


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: SwarmConfig
    store: CheckpointStore
    registry: RunRegistry


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_value: str) -> Runtime:
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except SwarmError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=CheckpointStore(repo_root / config.runtime.swarm_dir),
        registry=RunRegistry(),
    )


def _build_single_backend(
    backend_name: BackendName, config: SwarmConfig, repo_root: Path, event_hook: Callable
) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root, event_hook=event_hook)
    if backend_name == "codex_sdk":
        return CodexSDKBackend(model=config.pipeline.review_model, working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root, event_hook=event_hook)


def _build_backend(
    config: SwarmConfig, repo_root: Path, event_hook: Callable[[dict[str, Any]], None]
) -> AgentBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, config, repo_root, event_hook),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(
            config.backend.fallback, config, repo_root, event_hook
        ),
        retry_policy=policy,
        event_hook=event_hook,
    )


def _render_event(event: dict[str, Any]) -> str:
    name = str(event.get("event", "event"))
    details = " ".join(
        f"{key}={value}" for key, value in event.items() if key not in {"event", "at"}
    )
    return f"[{name}] {details}".rstrip()


class _EventSink:
    """Echoes events to the terminal and appends them to the run's event log."""

    def __init__(self, store: CheckpointStore, verbose: bool) -> None:
        self.store = store
        self.verbose = verbose
        self.log: EventLog | None = None
        self._pending: list[dict[str, Any]] = []

    def __call__(self, event: dict[str, Any]) -> None:
        run_id = event.get("run_id")
        if self.log is None and isinstance(run_id, str):
            self.log = EventLog(self.store.run_dir(run_id) / EVENTS_FILE)
            for pending in self._pending:
                self.log.append(pending)
            self._pending.clear()
        if self.log is not None:
            self.log.append(event)
        else:
            self._pending.append(event)

        name = str(event.get("event", ""))
        if not self.verbose and name.startswith(VERBOSE_EVENT_PREFIXES):
            return
        click.echo(_render_event(event))


def _build_sessions(runtime: Runtime, sink: _EventSink) -> SessionManager:
    config = runtime.config
    backend = _build_backend(config, runtime.repo_root, sink)
    return SessionManager(
        BackendSessionGateway(backend, event_hook=sink),
        AgentInstructionLoader(runtime.repo_root, config.pipeline.agents, config.runtime.agents_dir),
        primary_model=config.pipeline.primary_model,
        timeout_seconds=config.runtime.session_timeout_seconds,
        max_retries=config.runtime.max_retries,
        event_hook=sink,
    )


def _ask_user(questions: str) -> str:
    click.echo("")
    click.echo(questions)
    click.echo("")
    click.echo("Answer below; an empty line finishes (empty answer skips the round).")
    lines: list[str] = []
    while True:
        line = click.prompt(">", default="", show_default=False, prompt_suffix=" ")
        if not line.strip():
            return "\n".join(lines)
        lines.append(line)


def read_plan_file(path: Path) -> str:
    """Pull the refined requirements (plus decision sections) out of a plan."""
    if not path.exists():
        raise click.ClickException(f"Plan file not found: {path}")
    content = path.read_text(encoding="utf-8")
    start = content.find(PLAN_MARKER)
    if start == -1:
        raise click.ClickException(
            f'Plan file does not contain a "{PLAN_MARKER}" section: {path}'
        )

    def _section_body(offset: int) -> str:
        after = content[offset:]
        next_heading = after.find("\n## ")
        return (after[:next_heading] if next_heading != -1 else after).strip()

    sections = [_section_body(start + len(PLAN_MARKER))]
    for heading in PLAN_EXTRA_SECTIONS:
        position = content.find(heading)
        if position == -1:
            continue
        body = _section_body(position + len(heading))
        if body:
            sections.append(f"{heading.replace('## ', '### ')}\n\n{body}")
    return "\n\n".join(sections)


def _resolve_issue_body(
    repo_root: Path, prompt: str | None, prompt_file: str | None, plan_file: str | None
) -> str:
    if plan_file:
        plan_path = Path(plan_file)
        return read_plan_file(plan_path if plan_path.is_absolute() else repo_root / plan_path)
    if prompt_file:
        file_path = Path(prompt_file)
        file_path = file_path if file_path.is_absolute() else repo_root / file_path
        if not file_path.exists():
            raise click.ClickException(f"Prompt file not found: {file_path}")
        return file_path.read_text(encoding="utf-8").strip()
    return (prompt or os.environ.get("ISSUE_BODY", "")).strip()


def _print_summary(summary: RunSummary) -> None:
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Phases: {', '.join(summary.completed_phases)}")
    if summary.skipped_phases:
        click.echo(f"Skipped: {', '.join(summary.skipped_phases)}")
    if summary.tasks_total:
        click.echo(f"Streams failed: {summary.streams_failed}/{summary.tasks_total}")
    for failure in summary.stream_failures + summary.review_failures:
        click.echo(f"  {failure}")
    for loop_id in summary.unapproved_loops:
        click.echo(f"Needs further review: {loop_id}")
    if summary.verification is not None:
        if summary.verification.skipped:
            click.echo("Verification: skipped (no commands)")
        elif summary.verification.failure is not None:
            click.echo(f"Verification: {summary.verification.failure}")
        else:
            click.echo("Verification: passed")
    if summary.auto_resumes:
        click.echo(f"Auto-resumed: {summary.auto_resumes}")


@click.group()
def cli() -> None:
    """Swarm pipeline CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex", "codex_sdk"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path, env=False)
    except SwarmError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)
    (repo_root / config.runtime.swarm_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized swarm in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Phases: {', '.join(phase_id for phase_id, _ in config.pipeline.phases())}")


@cli.command("run")
@click.argument("prompt", required=False)
@click.option("--file", "-f", "prompt_file", default=None, help="Read the task from a file.")
@click.option("--plan", "plan_file", default=None, help="Run the refined requirements of a plan.")
@click.option("--resume", is_flag=True, default=False, help="Resume the latest run.")
@click.option("--run", "run_id", default=None, help="Run ID to resume.")
@click.option("--verbose", "-v", is_flag=True, default=False)
@click.option("--verify-build", default=None)
@click.option("--verify-test", default=None)
@click.option("--verify-lint", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(
    prompt: str | None,
    prompt_file: str | None,
    plan_file: str | None,
    resume: bool,
    run_id: str | None,
    verbose: bool,
    verify_build: str | None,
    verify_test: str | None,
    verify_lint: str | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, config_value)
    config = runtime.config
    issue_body = _resolve_issue_body(repo_root, prompt, prompt_file, plan_file)
    if not issue_body and not resume:
        raise click.ClickException(
            "No prompt provided. Pass it as an argument, use --file, --plan, or set ISSUE_BODY."
        )

    sink = _EventSink(runtime.store, verbose or config.runtime.verbose)
    sessions = _build_sessions(runtime, sink)
    engine = PipelineEngine(
        config.pipeline, sessions, runtime.store, repo_root=repo_root, event_hook=sink
    )
    orchestrator = SwarmOrchestrator(
        engine,
        max_auto_resume=config.runtime.max_auto_resume,
        registry=runtime.registry,
        swarm_dir=config.runtime.swarm_dir,
        event_hook=sink,
    )
    has_overrides = any(value is not None for value in (verify_build, verify_test, verify_lint))
    options = RunOptions(
        issue_body=issue_body,
        run_id=run_id,
        resume=resume,
        plan_provided=plan_file is not None,
        verify_overrides=(
            VerifyCommands(build=verify_build, test=verify_test, lint=verify_lint)
            if has_overrides
            else None
        ),
    )
    try:
        summary = asyncio.run(orchestrator.execute(options))
    except (SwarmError, SessionError) as exc:
        checkpoint = engine.checkpoint
        hint = f" Checkpoint kept for run {checkpoint.run_id}; use --resume." if checkpoint else ""
        raise click.ClickException(f"{exc}{hint}") from exc

    click.echo("Swarm complete.")
    _print_summary(summary)


@cli.command("plan")
@click.argument("prompt", required=False)
@click.option("--file", "-f", "prompt_file", default=None, help="Read the request from a file.")
@click.option("--resume", is_flag=True, default=False, help="Resume the latest plan.")
@click.option("--run", "run_id", default=None, help="Run ID to resume.")
@click.option("--verbose", "-v", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def plan_command(
    prompt: str | None,
    prompt_file: str | None,
    resume: bool,
    run_id: str | None,
    verbose: bool,
    config_value: str,
) -> None:
    """Refine a request interactively and write a plan for ``swarm run --plan``."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, config_value)
    config = runtime.config
    issue_body = _resolve_issue_body(repo_root, prompt, prompt_file, None)
    if not issue_body and not resume:
        raise click.ClickException(
            "No prompt provided. Pass it as an argument, use --file, or set ISSUE_BODY."
        )

    sink = _EventSink(runtime.store, verbose or config.runtime.verbose)
    planner = PlanningEngine(
        _build_sessions(runtime, sink),
        runtime.store,
        repo_root=repo_root,
        plans_dir=repo_root / config.runtime.swarm_dir / PLANS_DIR,
        ask=_ask_user,
        registry=runtime.registry,
        swarm_dir=config.runtime.swarm_dir,
        event_hook=sink,
    )
    try:
        result = asyncio.run(planner.execute(issue_body, resume=resume, run_id=run_id))
    except (SwarmError, SessionError) as exc:
        checkpoint = planner.checkpoint
        hint = f" Checkpoint kept for run {checkpoint.run_id}; use --resume." if checkpoint else ""
        raise click.ClickException(f"{exc}{hint}") from exc

    click.echo("Plan complete.")
    click.echo(f"Run ID: {result.run_id}")
    click.echo(f"Clarification rounds: {result.rounds}")
    click.echo(f"Plan: {result.plan_path}")
    click.echo(f"Execute with: swarm run --plan {result.latest_path}")


@cli.command("status")
@click.option("--run", "run_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(run_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, config_value)
    target = run_id or runtime.store.latest_run_id()
    if not target:
        raise click.ClickException("No runs recorded yet.")
    checkpoint = runtime.store.load(target)
    if checkpoint is None:
        raise click.ClickException(f"No checkpoint for run {target}.")

    if checkpoint.mode == "plan":
        phases = list(PLAN_PHASES)
    else:
        phases = [phase_id for phase_id, _ in runtime.config.pipeline.phases()]
    pending = [phase_id for phase_id in phases if phase_id not in checkpoint.completed_phases]
    payload = {
        "run_id": checkpoint.run_id,
        "status": "completed" if not pending else "incomplete",
        "completed_phases": checkpoint.completed_phases,
        "pending_phases": pending,
        "active_phase": checkpoint.active_phase,
        "tasks": len(checkpoint.tasks),
        "streams_done": sum(1 for result in checkpoint.stream_results if result),
        "loops_in_progress": {
            key: snapshot.completed_iterations
            for key, snapshot in (checkpoint.iteration_progress or {}).items()
        },
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("clear")
@click.option("--run", "run_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def clear_command(run_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, config_value)
    target = run_id or runtime.store.latest_run_id()
    if not target:
        click.echo("Nothing to clear.")
        return
    runtime.store.clear(target)
    click.echo(f"Cleared checkpoint for run {target}.")


@cli.command("runs")
@click.option("--all", "include_all", is_flag=True, default=False, help="Include other repos.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def runs_command(include_all: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, config_value)
    records = runtime.registry.list_runs(None if include_all else str(repo_root))
    if not records:
        click.echo("No runs recorded.")
        return
    for record in records:
        finished = record.finished or "-"
        click.echo(f"{record.run_id}  {record.status:<9}  {record.created}  {finished}  {record.repo_root}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
