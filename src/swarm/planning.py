from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from swarm.checkpoint import (
    AnsweredQuestion,
    CheckpointStore,
    RunCheckpoint,
    atomic_write,
    new_run_id,
)
from swarm.decisions import DecisionClassifier, KeywordDecisionClassifier, response_contains
from swarm.errors import ConfigError, SwarmError
from swarm.registry import RunRecord, RunRegistry
from swarm.sessions import SessionManager

PLANNER_AGENT = "planner"
ANALYST_AGENT = "analyst"
REQUIREMENTS_CLEAR_KEYWORD = "REQUIREMENTS_CLEAR"
MAX_CLARIFICATION_ROUNDS = 10
CLARIFY_PHASE = "clarify-0"
ANALYZE_PHASE = "analyze-1"
PLAN_PHASES: tuple[str, ...] = (CLARIFY_PHASE, ANALYZE_PHASE)
PLANS_DIR = "plans"
LATEST_PLAN_FILE = "plan-latest.md"

# Receives the planner's questions, returns the user's answer ("" skips the round).
AnswerProvider = Callable[[str], str]
PlanEventHook = Callable[[dict[str, Any]], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class PlanResult:
    run_id: str
    plan_path: Path
    latest_path: Path
    requirements: str
    analysis: str
    rounds: int


def render_plan(issue_body: str, requirements: str, analysis: str, timestamp: str) -> str:
    """Plan document in the layout ``swarm run --plan`` reads back."""
    return (
        f"# Plan\n\n**Timestamp:** {timestamp}\n\n"
        f"## Original Request\n\n{issue_body.strip()}\n\n"
        f"## Refined Requirements\n\n{requirements.strip()}\n\n"
        f"## Technical Analysis\n\n{analysis.strip()}\n"
    )


def _render_answers(answers: list[AnsweredQuestion]) -> str:
    return "\n\n".join(
        f"Q: {pair.question}\nA: {pair.answer or '(skipped)'}" for pair in answers
    )


class PlanningEngine:
    """Interactive requirements refinement followed by a read-only analysis.

    The planner asks the user clarifying questions until it replies with
    ``REQUIREMENTS_CLEAR``; the analyst then assesses the codebase against the
    refined requirements. Every answered question is checkpointed, so a
    resumed plan replays earlier answers instead of asking again.
    """

    def __init__(
        self,
        sessions: SessionManager,
        store: CheckpointStore,
        *,
        repo_root: Path,
        plans_dir: Path,
        ask: AnswerProvider,
        registry: RunRegistry | None = None,
        swarm_dir: str = ".swarm",
        max_rounds: int = MAX_CLARIFICATION_ROUNDS,
        classifier: DecisionClassifier | None = None,
        event_hook: PlanEventHook | None = None,
    ) -> None:
        self.sessions = sessions
        self.store = store
        self.repo_root = repo_root
        self.plans_dir = plans_dir
        self.ask = ask
        self.registry = registry
        self.swarm_dir = swarm_dir
        self.max_rounds = max(1, max_rounds)
        self.classifier = classifier or KeywordDecisionClassifier()
        self.event_hook = event_hook
        self.checkpoint: RunCheckpoint | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _save(self) -> None:
        if self.checkpoint is not None:
            self.store.save(self.checkpoint.run_id, self.checkpoint)

    def open_plan(
        self, issue_body: str, *, resume: bool = False, run_id: str | None = None
    ) -> RunCheckpoint:
        checkpoint: RunCheckpoint | None = None
        if resume:
            target = run_id or self.store.latest_run_id()
            if target:
                checkpoint = self.store.load(target)
            if checkpoint is not None and checkpoint.mode != "plan":
                raise ConfigError(
                    f"Run {checkpoint.run_id} is not a plan; resume it with swarm run."
                )
            if checkpoint is None:
                self._emit({"event": "resume_without_checkpoint", "run_id": target})
            else:
                self._emit(
                    {
                        "event": "plan_resumed",
                        "run_id": checkpoint.run_id,
                        "completed_phases": list(checkpoint.completed_phases),
                        "answered": len(checkpoint.answers_for(CLARIFY_PHASE)),
                    }
                )
        if checkpoint is None:
            if not issue_body.strip():
                raise ConfigError("A task description is required to start a plan.")
            checkpoint = RunCheckpoint(
                run_id=run_id or new_run_id(), issue_body=issue_body, mode="plan"
            )
            self._emit({"event": "plan_started", "run_id": checkpoint.run_id})
        self.checkpoint = checkpoint
        self._save()
        return checkpoint

    def _opening_prompt(self, checkpoint: RunCheckpoint) -> str:
        prompt = f"Here is the user's request:\n\n{checkpoint.issue_body}\n\n"
        answers = checkpoint.answers_for(CLARIFY_PHASE)
        if answers:
            prompt += f"Questions already answered by the user:\n\n{_render_answers(answers)}\n\n"
        return prompt + (
            "Analyze this request. If it's clear enough, respond with "
            f"{REQUIREMENTS_CLEAR_KEYWORD} followed by the structured summary. "
            "If you need more information, ask your clarifying questions."
        )

    async def _clarify(self, checkpoint: RunCheckpoint) -> int:
        rounds = len(checkpoint.answers_for(CLARIFY_PHASE))
        async with self.sessions.session(PLANNER_AGENT) as handle:
            response = await self.sessions.send(handle, self._opening_prompt(checkpoint))
            while not response_contains(response, REQUIREMENTS_CLEAR_KEYWORD):
                if rounds >= self.max_rounds:
                    self._emit({"event": "plan_rounds_exhausted", "rounds": rounds})
                    break
                rounds += 1
                self._emit({"event": "plan_questions", "round": rounds})
                answer = (await asyncio.to_thread(self.ask, response)).strip()
                checkpoint.record_answer(CLARIFY_PHASE, response, answer)
                self._save()
                if answer:
                    response = await self.sessions.send(handle, f"User's answers:\n\n{answer}")
                else:
                    response = await self.sessions.send(
                        handle,
                        "The user skipped this round. Use your best judgment for anything "
                        f"still open and respond with {REQUIREMENTS_CLEAR_KEYWORD} followed "
                        "by the structured summary.",
                    )
        requirements = self.classifier.extract_question(response, REQUIREMENTS_CLEAR_KEYWORD)
        if not requirements:
            raise SwarmError("Planner returned no requirements.")
        checkpoint.spec = requirements
        return rounds

    async def _analyze(self, checkpoint: RunCheckpoint) -> None:
        checkpoint.analysis = await self.sessions.call_isolated(
            ANALYST_AGENT,
            "Analyze the codebase against these requirements and produce a technical "
            f"assessment:\n\n{checkpoint.spec}",
        )

    def _write_plan(self, checkpoint: RunCheckpoint) -> tuple[Path, Path]:
        timestamp = _utcnow_iso()
        document = render_plan(
            checkpoint.issue_body, checkpoint.spec, checkpoint.analysis or "", timestamp
        )
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
        plan_path = self.plans_dir / f"plan-{stamp}.md"
        latest_path = self.plans_dir / LATEST_PLAN_FILE
        atomic_write(plan_path, document)
        atomic_write(latest_path, document)
        return plan_path, latest_path

    def _register(self, checkpoint: RunCheckpoint) -> None:
        if self.registry is not None:
            self.registry.register(
                RunRecord(
                    run_id=checkpoint.run_id,
                    repo_root=str(self.repo_root),
                    swarm_dir=self.swarm_dir,
                    created=_utcnow_iso(),
                    mode="plan",
                )
            )

    def _finish(self, run_id: str, status: str) -> None:
        if self.registry is not None:
            self.registry.mark_finished(run_id, str(self.repo_root), status)

    async def execute(
        self, issue_body: str, *, resume: bool = False, run_id: str | None = None
    ) -> PlanResult:
        checkpoint = self.open_plan(issue_body, resume=resume, run_id=run_id)
        self._register(checkpoint)
        await self.sessions.start()
        try:
            rounds = len(checkpoint.answers_for(CLARIFY_PHASE))
            for phase_id in PLAN_PHASES:
                if phase_id in checkpoint.completed_phases:
                    self._emit({"event": "phase_already_done", "phase": phase_id})
                    continue
                checkpoint.active_phase = phase_id
                self._save()
                self._emit({"event": "phase_start", "phase": phase_id})
                if phase_id == CLARIFY_PHASE:
                    rounds = await self._clarify(checkpoint)
                else:
                    await self._analyze(checkpoint)
                checkpoint.mark_completed(phase_id)
                self._save()
                self._emit({"event": "phase_done", "phase": phase_id})
            plan_path, latest_path = self._write_plan(checkpoint)
        except Exception:
            self._finish(checkpoint.run_id, "failed")
            raise
        finally:
            await self.sessions.stop()

        self._finish(checkpoint.run_id, "completed")
        self._emit({"event": "plan_saved", "run_id": checkpoint.run_id, "path": str(plan_path)})
        return PlanResult(
            run_id=checkpoint.run_id,
            plan_path=plan_path,
            latest_path=latest_path,
            requirements=checkpoint.spec,
            analysis=checkpoint.analysis or "",
            rounds=rounds,
        )
