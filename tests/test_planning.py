import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from swarm.checkpoint import AnsweredQuestion, CheckpointStore, RunCheckpoint
from swarm.cli import read_plan_file
from swarm.errors import ConfigError
from swarm.planning import ANALYZE_PHASE, CLARIFY_PHASE, PlanningEngine, render_plan
from swarm.registry import RunRegistry
from swarm.sessions import AgentSessionHandle, SessionGateway, SessionManager

Responder = Callable[[str, str], str]


class StaticInstructions:
    def load(self, agent: str) -> str:
        return f"instructions for {agent}"


class ScriptedGateway(SessionGateway):
    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.calls: list[tuple[str, str]] = []
        self._counter = 0

    async def create_session(
        self, instructions: str, model: str | None = None, *, agent: str | None = None
    ) -> AgentSessionHandle:
        self._counter += 1
        return AgentSessionHandle(f"s{self._counter}", instructions, model, agent)

    async def send(self, handle: AgentSessionHandle, prompt: str, timeout_seconds: float) -> str:
        _ = timeout_seconds
        agent = handle.agent or ""
        self.calls.append((agent, prompt))
        response = self.responder(agent, prompt)
        handle.transcript.append((prompt, response))
        return response

    async def destroy_session(self, handle: AgentSessionHandle) -> None:
        handle.destroyed = True

    def prompts_for(self, agent: str) -> list[str]:
        return [prompt for name, prompt in self.calls if name == agent]


def planning_responder(agent: str, prompt: str) -> str:
    if agent == "analyst":
        return "Touches export.py; low risk."
    if "User's answers" in prompt:
        return "REQUIREMENTS_CLEAR\n- Export CSV with headers"
    if "skipped this round" in prompt:
        return "REQUIREMENTS_CLEAR\n- Export CSV"
    return "1. Which file format?"


def _planner(
    tmp_path: Path,
    responder: Responder,
    answers: list[str],
    *,
    max_rounds: int = 10,
) -> tuple[PlanningEngine, ScriptedGateway, CheckpointStore, list[str]]:
    gateway = ScriptedGateway(responder)
    sessions = SessionManager(
        gateway,
        StaticInstructions(),  # type: ignore[arg-type]
        primary_model="primary",
        max_retries=1,
    )
    store = CheckpointStore(tmp_path / ".swarm")
    asked: list[str] = []

    def _ask(questions: str) -> str:
        asked.append(questions)
        return answers.pop(0)

    planner = PlanningEngine(
        sessions,
        store,
        repo_root=tmp_path,
        plans_dir=tmp_path / ".swarm" / "plans",
        ask=_ask,
        registry=RunRegistry(tmp_path / "registry" / "runs.json"),
        max_rounds=max_rounds,
    )
    return planner, gateway, store, asked


def test_plan_asks_until_requirements_are_clear(tmp_path: Path) -> None:
    planner, gateway, store, asked = _planner(tmp_path, planning_responder, ["CSV with headers"])

    result = asyncio.run(planner.execute("Add an export", run_id="plan-a"))

    assert asked == ["1. Which file format?"]
    assert result.rounds == 1
    assert result.requirements == "- Export CSV with headers"
    assert result.analysis == "Touches export.py; low risk."
    assert "- Export CSV with headers" in gateway.prompts_for("analyst")[0]

    checkpoint = store.load("plan-a")
    assert checkpoint is not None
    assert checkpoint.mode == "plan"
    assert checkpoint.completed_phases == [CLARIFY_PHASE, ANALYZE_PHASE]
    assert checkpoint.answers_for(CLARIFY_PHASE) == [
        AnsweredQuestion("1. Which file format?", "CSV with headers")
    ]
    assert checkpoint.analysis == "Touches export.py; low risk."

    assert result.latest_path.read_text(encoding="utf-8") == result.plan_path.read_text(
        encoding="utf-8"
    )
    assert read_plan_file(result.latest_path) == "- Export CSV with headers"
    assert planner.registry is not None
    record = planner.registry.list_runs()[0]
    assert (record.run_id, record.mode, record.status) == ("plan-a", "plan", "completed")


def test_skipped_round_asks_planner_to_decide(tmp_path: Path) -> None:
    planner, gateway, _, _ = _planner(tmp_path, planning_responder, [""])

    result = asyncio.run(planner.execute("Add an export"))

    assert result.requirements == "- Export CSV"
    assert "skipped this round" in gateway.prompts_for("planner")[-1]


def test_resumed_plan_replays_answers_instead_of_asking(tmp_path: Path) -> None:
    def _respond(agent: str, prompt: str) -> str:
        if agent == "planner" and "Questions already answered" in prompt:
            return "REQUIREMENTS_CLEAR\n- Export CSV with headers"
        return planning_responder(agent, prompt)

    planner, gateway, store, asked = _planner(tmp_path, _respond, [])
    checkpoint = RunCheckpoint(run_id="plan-r", issue_body="Add an export", mode="plan")
    checkpoint.record_answer(CLARIFY_PHASE, "1. Which file format?", "CSV with headers")
    store.save("plan-r", checkpoint)

    result = asyncio.run(planner.execute("", resume=True))

    assert asked == []
    assert result.run_id == "plan-r"
    assert result.rounds == 1
    opening = gateway.prompts_for("planner")[0]
    assert "Q: 1. Which file format?\nA: CSV with headers" in opening


def test_clarification_rounds_are_bounded(tmp_path: Path) -> None:
    def _respond(agent: str, prompt: str) -> str:
        if agent == "planner":
            return "Still unclear: which users?"
        return planning_responder(agent, prompt)

    planner, _, _, asked = _planner(tmp_path, _respond, ["admins", "everyone"], max_rounds=2)

    result = asyncio.run(planner.execute("Add an export"))

    assert len(asked) == 2
    assert result.rounds == 2
    assert result.requirements == "Still unclear: which users?"


def test_resume_refuses_pipeline_runs(tmp_path: Path) -> None:
    planner, gateway, store, _ = _planner(tmp_path, planning_responder, [])
    store.save("run-x", RunCheckpoint(run_id="run-x", issue_body="task", mode="run"))

    with pytest.raises(ConfigError, match="not a plan"):
        asyncio.run(planner.execute("", resume=True, run_id="run-x"))

    assert gateway.calls == []


def test_render_plan_layout() -> None:
    document = render_plan("Add export", "- CSV", "Low risk", "2026-01-01T00:00:00+00:00")

    assert document.startswith("# Plan\n\n**Timestamp:** 2026-01-01T00:00:00+00:00\n\n")
    assert "## Original Request\n\nAdd export\n\n## Refined Requirements\n\n- CSV\n\n" in document
    assert document.endswith("## Technical Analysis\n\nLow risk\n")
