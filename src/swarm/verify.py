from __future__ import annotations

import asyncio
import json
import re
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from swarm.errors import VerificationFailure
from swarm.pipeline_config import VerifyCommands
from swarm.sessions import SessionManager

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
OUTPUT_TAIL_CHARS = 4000

VerifyEventHook = Callable[[dict[str, Any]], None]


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None


def _node_package_manager(repo_root: Path) -> str:
    if (repo_root / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (repo_root / "bun.lockb").exists() or (repo_root / "bun.lock").exists():
        return "bun"
    if (repo_root / "yarn.lock").exists():
        return "yarn"
    return "npm"


def _detect_node(repo_root: Path) -> VerifyCommands | None:
    package_json = repo_root / "package.json"
    if not package_json.exists():
        return None
    payload = _read_json(package_json)
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    if not isinstance(scripts, dict) or not scripts:
        return VerifyCommands()
    run = f"{_node_package_manager(repo_root)} run"
    lint_script = "lint" if "lint" in scripts else "check" if "check" in scripts else None
    commands = VerifyCommands(
        build=f"{run} build" if "build" in scripts else None,
        test=f"{run} test" if "test" in scripts else None,
        lint=f"{run} {lint_script}" if lint_script else None,
    )
    return None if commands.is_empty() else commands


def _detect_cargo(repo_root: Path) -> VerifyCommands | None:
    if not (repo_root / "Cargo.toml").exists():
        return None
    return VerifyCommands(build="cargo build", test="cargo test", lint="cargo clippy")


def _detect_go(repo_root: Path) -> VerifyCommands | None:
    if not (repo_root / "go.mod").exists():
        return None
    return VerifyCommands(build="go build ./...", test="go test ./...", lint="go vet ./...")


def _detect_python(repo_root: Path) -> VerifyCommands | None:
    if not ((repo_root / "pyproject.toml").exists() or (repo_root / "setup.py").exists()):
        return None
    return VerifyCommands(test="pytest", lint="ruff check .")


def _detect_maven(repo_root: Path) -> VerifyCommands | None:
    if not (repo_root / "pom.xml").exists():
        return None
    return VerifyCommands(build="mvn compile", test="mvn test")


def _detect_gradle(repo_root: Path) -> VerifyCommands | None:
    if not ((repo_root / "build.gradle").exists() or (repo_root / "build.gradle.kts").exists()):
        return None
    return VerifyCommands(build="./gradlew build", test="./gradlew test")


DETECTORS: tuple[Callable[[Path], VerifyCommands | None], ...] = (
    _detect_node,
    _detect_cargo,
    _detect_go,
    _detect_python,
    _detect_maven,
    _detect_gradle,
)


def detect_verify_commands(repo_root: Path) -> VerifyCommands | None:
    """Infer build/test/lint commands from the first recognised project file."""
    for detect in DETECTORS:
        commands = detect(repo_root)
        if commands is not None:
            return commands
    return None


def resolve_verify_commands(
    repo_root: Path,
    overrides: VerifyCommands | None,
    configured: VerifyCommands | None,
) -> VerifyCommands | None:
    """CLI overrides win over configured commands, which win over detection."""
    explicit = (overrides or VerifyCommands()).merged_over(configured)
    if not explicit.is_empty():
        return explicit
    detected = detect_verify_commands(repo_root)
    if detected is None or detected.is_empty():
        return None
    return detected


@dataclass(slots=True)
class CommandResult:
    name: str
    command: str
    exit_code: int
    stdout_tail: str = ""
    stderr_tail: str = ""
    used_shell: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0

    def render(self) -> str:
        parts = [f"$ {self.command}  (exit {self.exit_code})"]
        if self.stdout_tail:
            parts.append(self.stdout_tail)
        if self.stderr_tail:
            parts.append(self.stderr_tail)
        return "\n".join(parts)


def run_command(name: str, command: str, cwd: Path) -> CommandResult:
    command_text = command.strip()
    if not command_text:
        return CommandResult(name, command, 1, stderr_tail="Command is empty.")

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        return CommandResult(name, command, 127, stderr_tail=str(exc), used_shell=used_shell)
    return CommandResult(
        name=name,
        command=command,
        exit_code=proc.returncode,
        stdout_tail=proc.stdout.strip()[-OUTPUT_TAIL_CHARS:],
        stderr_tail=proc.stderr.strip()[-OUTPUT_TAIL_CHARS:],
        used_shell=used_shell,
    )


@dataclass(slots=True)
class VerificationReport:
    commands: VerifyCommands | None
    results: list[CommandResult] = field(default_factory=list)
    fix_attempts: int = 0
    failure: VerificationFailure | None = None

    @property
    def passed(self) -> bool:
        return self.failure is None

    @property
    def skipped(self) -> bool:
        return self.commands is None


CommandRunner = Callable[[str, str, Path], CommandResult]


class Verifier:
    """Runs verification commands and hands failures to a fix agent."""

    def __init__(
        self,
        repo_root: Path,
        sessions: SessionManager,
        *,
        runner: CommandRunner = run_command,
        event_hook: VerifyEventHook | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.sessions = sessions
        self.runner = runner
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _run_all(self, commands: VerifyCommands) -> list[CommandResult]:
        results: list[CommandResult] = []
        for name in ("build", "test", "lint"):
            command = getattr(commands, name)
            if not command:
                continue
            result = await asyncio.to_thread(self.runner, name, command, self.repo_root)
            self._emit(
                {
                    "event": "verify_command",
                    "name": name,
                    "command": command,
                    "exit_code": result.exit_code,
                }
            )
            results.append(result)
        return results

    async def run(
        self,
        commands: VerifyCommands | None,
        *,
        fix_agent: str,
        max_iterations: int,
    ) -> VerificationReport:
        if commands is None or commands.is_empty():
            self._emit({"event": "verify_skipped", "reason": "no verification commands"})
            return VerificationReport(commands=None)

        report = VerificationReport(commands=commands)
        report.results = await self._run_all(commands)
        while True:
            failing = [result for result in report.results if not result.passed]
            if not failing:
                self._emit({"event": "verify_passed", "fix_attempts": report.fix_attempts})
                return report
            if report.fix_attempts >= max_iterations:
                report.failure = VerificationFailure(
                    [result.name for result in failing], report.fix_attempts
                )
                self._emit(
                    {
                        "event": "verify_still_failing",
                        "failing": [result.name for result in failing],
                        "fix_attempts": report.fix_attempts,
                    }
                )
                return report

            report.fix_attempts += 1
            combined = "\n\n".join(result.render() for result in failing)
            self._emit(
                {
                    "event": "verify_fix_attempt",
                    "attempt": report.fix_attempts,
                    "max_iterations": max_iterations,
                }
            )
            await self.sessions.call_isolated(
                fix_agent,
                "The following verification commands failed:\n\n"
                f"{combined}\n\nFix the code so every command passes.",
            )
            report.results = await self._run_all(commands)
