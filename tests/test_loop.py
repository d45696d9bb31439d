import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from swarm.loop import IterationLoop, MemoryProgress, ReviewLoopSpec
from swarm.sessions import AgentSessionHandle, SessionGateway, SessionManager


class StaticInstructions:
    def load(self, agent: str) -> str:
        return f"instructions for {agent}"


class ScriptedGateway(SessionGateway):
    """Answers each send by popping the next scripted reply for the agent."""

    def __init__(self, replies: dict[str, list[str]]) -> None:
        self.replies = {agent: list(items) for agent, items in replies.items()}
        self.calls: list[tuple[str | None, str]] = []
        self._counter = 0

    async def create_session(
        self, instructions: str, model: str | None = None, *, agent: str | None = None
    ) -> AgentSessionHandle:
        self._counter += 1
        return AgentSessionHandle(f"s{self._counter}", instructions, model, agent)

    async def send(self, handle: AgentSessionHandle, prompt: str, timeout_seconds: float) -> str:
        _ = timeout_seconds
        self.calls.append((handle.agent, prompt))
        response = self.replies[handle.agent or ""].pop(0)
        handle.transcript.append((prompt, response))
        return response

    async def destroy_session(self, handle: AgentSessionHandle) -> None:
        handle.destroyed = True


def _loop(
    replies: dict[str, list[str]], progress: MemoryProgress | None = None
) -> tuple[IterationLoop, ScriptedGateway, MemoryProgress, list[dict[str, Any]]]:
    gateway = ScriptedGateway(replies)
    sessions = SessionManager(gateway, StaticInstructions(), primary_model="model-a")  # type: ignore[arg-type]
    events: list[dict[str, Any]] = []
    progress = progress or MemoryProgress()
    return IterationLoop(sessions, progress, event_hook=events.append), gateway, progress, events


def _spec(
    revisions: list[tuple[str, str]],
    *,
    max_iterations: int = 3,
    clarification_agent: str | None = None,
    max_clarifications: int | None = None,
) -> ReviewLoopSpec:
    counter = {"n": 0}

    async def _revise(current: str, feedback: str) -> str:
        revisions.append((current, feedback))
        counter["n"] += 1
        return f"{current}+r{counter['n']}"

    review_prompt: Callable[[str], str] = lambda content: f"Review:\n{content}"
    return ReviewLoopSpec(
        loop_id="spec-0/review-0",
        reviewer="reviewer",
        max_iterations=max_iterations,
        approval_keyword="APPROVED",
        review_prompt=review_prompt,
        revise=_revise,
        clarification_keyword="CLARIFICATION_NEEDED" if clarification_agent else None,
        clarification_agent=clarification_agent,
        max_clarifications=max_clarifications,
    )


def test_feedback_then_approval() -> None:
    loop, gateway, progress, events = _loop({"reviewer": ["Missing auth", "APPROVED"]})
    revisions: list[tuple[str, str]] = []

    async def _draft() -> str:
        return "draft"

    result = asyncio.run(loop.run(_spec(revisions), draft=_draft))

    assert result.approved
    assert result.content == "draft+r1"
    assert result.reviewer_calls == 2
    assert revisions == [("draft", "Missing auth")]
    assert gateway.calls[1] == ("reviewer", "Review:\ndraft+r1")
    assert [(loop_id, snap.completed_iterations) for loop_id, snap in progress.history] == [
        ("spec-0/review-0", 0),
        ("spec-0/review-0", 1),
        ("spec-0/review-0", 1),
    ]
    assert [event["event"] for event in events][-1] == "loop_approved"


def test_exhaustion_returns_unapproved_after_exact_budget() -> None:
    loop, gateway, _, events = _loop({"reviewer": ["no", "still no", "nope"]})
    revisions: list[tuple[str, str]] = []

    result = asyncio.run(loop.run(_spec(revisions, max_iterations=3), seed="v0"))

    assert not result.approved
    assert result.needs_further_review
    assert result.reviewer_calls == 3
    assert len(revisions) == 3
    assert result.content == "v0+r1+r2+r3"
    assert events[-1]["event"] == "loop_exhausted"


def test_resume_skips_completed_iterations() -> None:
    progress = MemoryProgress()
    progress.record("spec-0/review-0", "c", 2)
    loop, gateway, _, events = _loop({"reviewer": ["a", "b", "c"]}, progress)
    revisions: list[tuple[str, str]] = []

    async def _draft() -> str:
        raise AssertionError("resumed loop must not redraft")

    result = asyncio.run(loop.run(_spec(revisions, max_iterations=5), draft=_draft))

    assert result.reviewer_calls == 3
    assert gateway.calls[0] == ("reviewer", "Review:\nc")
    assert events[0] == {"event": "loop_resumed", "loop": "spec-0/review-0", "completed_iterations": 2}
    assert not result.approved


def test_resume_at_budget_makes_no_calls() -> None:
    progress = MemoryProgress()
    progress.record("spec-0/review-0", "final", 3)
    loop, gateway, _, _ = _loop({"reviewer": []}, progress)

    result = asyncio.run(loop.run(_spec([], max_iterations=3), seed="ignored"))

    assert gateway.calls == []
    assert result.content == "final"
    assert not result.approved


def test_clarification_does_not_consume_iterations() -> None:
    loop, gateway, progress, events = _loop(
        {
            "reviewer": ["CLARIFICATION_NEEDED: which database?", "tweak naming", "APPROVED"],
            "pm": ["Use Postgres"],
        }
    )
    revisions: list[tuple[str, str]] = []

    result = asyncio.run(
        loop.run(_spec(revisions, max_iterations=2, clarification_agent="pm"), seed="v0")
    )

    assert result.approved
    assert result.reviewer_calls == 3
    assert gateway.calls[1] == ("pm", "The reviewer needs clarification:\nwhich database?")
    assert "Use Postgres" in revisions[0][1]
    assert progress.history[1][1].completed_iterations == 0
    assert "loop_clarification" in [event["event"] for event in events]


def test_clarifications_are_capped() -> None:
    loop, gateway, _, _ = _loop(
        {
            "reviewer": ["CLARIFICATION_NEEDED: a?", "CLARIFICATION_NEEDED: b?"],
            "pm": ["answer a"],
        }
    )
    revisions: list[tuple[str, str]] = []

    result = asyncio.run(
        loop.run(
            _spec(revisions, max_iterations=1, clarification_agent="pm", max_clarifications=1),
            seed="v0",
        )
    )

    assert not result.approved
    assert result.reviewer_calls == 2
    assert [agent for agent, _ in gateway.calls] == ["reviewer", "pm", "reviewer"]
    assert revisions[-1][1] == "CLARIFICATION_NEEDED: b?"


def test_loop_needs_draft_or_seed() -> None:
    loop, _, _, _ = _loop({})

    with pytest.raises(ValueError, match="draft callable or seed"):
        asyncio.run(loop.run(_spec([])))
