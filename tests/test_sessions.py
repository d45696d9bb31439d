import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from swarm.agents import AgentInstructionLoader
from swarm.backends.base import AgentBackend, SessionError, SessionTimeoutError
from swarm.errors import ConfigError
from swarm.sessions import BackendSessionGateway, SessionManager


class ScriptedBackend(AgentBackend):
    """Replays queued outcomes: strings are yielded, exceptions are raised."""

    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = list(outcomes)
        self.prompts: list[str] = []
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt
        self.prompts.append(user_prompt)
        self.contexts.append(dict(context))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        yield outcome


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(5)
        yield "late"


def _manager(backend: AgentBackend, tmp_path: Path, **kwargs: Any) -> tuple[SessionManager, BackendSessionGateway]:
    gateway = BackendSessionGateway(backend)
    loader = AgentInstructionLoader(tmp_path, {"engineer": "builtin:engineer"}, ".github/agents")
    return SessionManager(gateway, loader, primary_model="model-a", **kwargs), gateway


def test_session_replays_transcript_and_destroys(tmp_path: Path) -> None:
    backend = ScriptedBackend(["first answer", "second answer"])
    manager, gateway = _manager(backend, tmp_path)

    async def _run() -> list[str]:
        async with manager.session("engineer") as handle:
            first = await manager.send(handle, "write code")
            second = await manager.send(handle, "fix it")
            assert handle.session_id in gateway.open_sessions
        return [first, second]

    assert asyncio.run(_run()) == ["first answer", "second answer"]
    assert backend.prompts[0] == "write code"
    assert "first answer" in backend.prompts[1]
    assert backend.prompts[1].endswith("fix it")
    assert backend.contexts[0] == {"model": "model-a"}
    assert gateway.open_sessions == {}


def test_session_destroyed_when_send_fails(tmp_path: Path) -> None:
    backend = ScriptedBackend([SessionError("backend down")])
    manager, gateway = _manager(backend, tmp_path)

    async def _run() -> None:
        async with manager.session("engineer") as handle:
            await manager.send(handle, "write code")

    with pytest.raises(SessionError, match="backend down"):
        asyncio.run(_run())
    assert gateway.open_sessions == {}


def test_call_isolated_retries_errors_and_empty_responses(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    backend = ScriptedBackend([SessionError("flaky"), "", "answer"])
    manager, gateway = _manager(backend, tmp_path, max_retries=3, event_hook=events.append)

    result = asyncio.run(manager.call_isolated("engineer", "question", model="model-b"))

    assert result == "answer"
    assert backend.prompts == ["question", "question", "question"]
    assert backend.contexts[-1] == {"model": "model-b"}
    assert [event["event"] for event in events] == ["agent_call_failed", "agent_empty_response"]
    assert gateway.open_sessions == {}


def test_call_isolated_propagates_last_error(tmp_path: Path) -> None:
    backend = ScriptedBackend([SessionError("one"), SessionError("two")])
    manager, _ = _manager(backend, tmp_path, max_retries=2)

    with pytest.raises(SessionError, match="two"):
        asyncio.run(manager.call_isolated("engineer", "question"))


def test_call_isolated_returns_empty_on_last_attempt(tmp_path: Path) -> None:
    manager, _ = _manager(ScriptedBackend(["", ""]), tmp_path, max_retries=2)

    assert asyncio.run(manager.call_isolated("engineer", "question")) == ""


def test_send_times_out(tmp_path: Path) -> None:
    manager, gateway = _manager(SlowBackend(), tmp_path, timeout_seconds=0.05, max_retries=1)

    with pytest.raises(SessionTimeoutError, match="timed out"):
        asyncio.run(manager.call_isolated("engineer", "question"))
    assert gateway.open_sessions == {}


def test_instruction_loader_prefers_repository_file(tmp_path: Path) -> None:
    agents_dir = tmp_path / ".github" / "agents"
    agents_dir.mkdir(parents=True)
    (agents_dir / "engineer.md").write_text("Repository engineer", encoding="utf-8")
    (tmp_path / "custom.md").write_text("Custom reviewer", encoding="utf-8")
    loader = AgentInstructionLoader(
        tmp_path,
        {
            "engineer": "builtin:engineer",
            "tester": "builtin:tester",
            "reviewer": "custom.md",
            "missing": "nowhere.md",
        },
        ".github/agents",
    )

    assert loader.load("engineer") == "Repository engineer"
    assert "ALL_PASSED" in loader.load("tester")
    assert loader.load("reviewer") == "Custom reviewer"
    assert "CLARIFICATION_NEEDED" in loader.load("designer")
    with pytest.raises(ConfigError, match="missing"):
        loader.load("missing")
