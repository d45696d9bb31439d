from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from swarm.checkpoint import CheckpointStore, IterationSnapshot, RunCheckpoint
from swarm.decisions import Decision, DecisionClassifier, KeywordDecisionClassifier
from swarm.sessions import SessionManager

LoopEventHook = Callable[[dict[str, Any]], None]
Drafter = Callable[[], Awaitable[str]]
Reviser = Callable[[str, str], Awaitable[str]]


class LoopProgress(Protocol):
    def get(self, loop_id: str) -> IterationSnapshot | None: ...

    def record(self, loop_id: str, content: str, completed_iterations: int) -> None: ...


class CheckpointProgress:
    """Stores loop progress in the run checkpoint and saves after each record."""

    def __init__(self, checkpoint: RunCheckpoint, store: CheckpointStore) -> None:
        self.checkpoint = checkpoint
        self.store = store

    def get(self, loop_id: str) -> IterationSnapshot | None:
        return self.checkpoint.progress_for(loop_id)

    def record(self, loop_id: str, content: str, completed_iterations: int) -> None:
        self.checkpoint.record_progress(loop_id, content, completed_iterations)
        self.store.save(self.checkpoint.run_id, self.checkpoint)


class MemoryProgress:
    def __init__(self) -> None:
        self.snapshots: dict[str, IterationSnapshot] = {}
        self.history: list[tuple[str, IterationSnapshot]] = []

    def get(self, loop_id: str) -> IterationSnapshot | None:
        return self.snapshots.get(loop_id)

    def record(self, loop_id: str, content: str, completed_iterations: int) -> None:
        snapshot = IterationSnapshot(content, completed_iterations)
        self.snapshots[loop_id] = snapshot
        self.history.append((loop_id, snapshot))


@dataclass(slots=True)
class ReviewLoopSpec:
    """One reviewer gate: who reviews, how often, and what counts as approval."""

    loop_id: str
    reviewer: str
    max_iterations: int
    approval_keyword: str
    review_prompt: Callable[[str], str]
    revise: Reviser
    clarification_keyword: str | None = None
    clarification_agent: str | None = None
    reviewer_model: str | None = None
    max_clarifications: int | None = None


@dataclass(slots=True)
class LoopResult:
    content: str
    approved: bool
    reviewer_calls: int
    completed_iterations: int

    @property
    def needs_further_review(self) -> bool:
        return not self.approved


class IterationLoop:
    """Draft, review and revise until approval or the iteration budget runs out.

    Clarification rounds answer a reviewer's question and re-review without
    spending an iteration; they are capped separately so a reviewer that
    keeps asking cannot stall the loop. Agent failures propagate.
    """

    def __init__(
        self,
        sessions: SessionManager,
        progress: LoopProgress,
        *,
        classifier: DecisionClassifier | None = None,
        event_hook: LoopEventHook | None = None,
    ) -> None:
        self.sessions = sessions
        self.progress = progress
        self.classifier = classifier or KeywordDecisionClassifier()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run(
        self,
        spec: ReviewLoopSpec,
        *,
        draft: Drafter | None = None,
        seed: str | None = None,
    ) -> LoopResult:
        snapshot = self.progress.get(spec.loop_id)
        if snapshot is not None:
            current = snapshot.content
            completed = min(snapshot.completed_iterations, spec.max_iterations)
            self._emit(
                {
                    "event": "loop_resumed",
                    "loop": spec.loop_id,
                    "completed_iterations": completed,
                }
            )
        else:
            if seed is not None:
                current = seed
            elif draft is not None:
                current = await draft()
            else:
                raise ValueError(f"Loop {spec.loop_id} needs a draft callable or seed content.")
            completed = 0
            self.progress.record(spec.loop_id, current, completed)

        clarification_budget = (
            spec.max_clarifications if spec.max_clarifications is not None else spec.max_iterations
        )
        clarifications = 0
        reviewer_calls = 0
        iteration = completed + 1
        while iteration <= spec.max_iterations:
            self._emit(
                {
                    "event": "loop_iteration",
                    "loop": spec.loop_id,
                    "reviewer": spec.reviewer,
                    "iteration": iteration,
                    "max_iterations": spec.max_iterations,
                }
            )
            response = await self.sessions.call_isolated(
                spec.reviewer, spec.review_prompt(current), spec.reviewer_model
            )
            reviewer_calls += 1

            clarification_keyword = (
                spec.clarification_keyword
                if spec.clarification_agent and clarifications < clarification_budget
                else None
            )
            decision = self.classifier.classify(
                response, spec.approval_keyword, clarification_keyword
            )
            if decision is Decision.APPROVED:
                self.progress.record(spec.loop_id, current, iteration - 1)
                self._emit(
                    {"event": "loop_approved", "loop": spec.loop_id, "iteration": iteration}
                )
                return LoopResult(current, True, reviewer_calls, iteration - 1)

            if decision is Decision.CLARIFY and clarification_keyword and spec.clarification_agent:
                clarifications += 1
                question = self.classifier.extract_question(response, clarification_keyword)
                self._emit(
                    {
                        "event": "loop_clarification",
                        "loop": spec.loop_id,
                        "agent": spec.clarification_agent,
                        "question": question[:200],
                    }
                )
                answer = await self.sessions.call_isolated(
                    spec.clarification_agent,
                    f"The reviewer needs clarification:\n{question}",
                )
                current = await spec.revise(
                    current,
                    f"Reviewer question:\n{question}\n\nClarification:\n{answer}",
                )
                self.progress.record(spec.loop_id, current, iteration - 1)
                continue

            self._emit(
                {
                    "event": "loop_feedback",
                    "loop": spec.loop_id,
                    "iteration": iteration,
                    "feedback": response[:80],
                }
            )
            current = await spec.revise(current, response)
            self.progress.record(spec.loop_id, current, iteration)
            iteration += 1

        self._emit(
            {
                "event": "loop_exhausted",
                "loop": spec.loop_id,
                "max_iterations": spec.max_iterations,
            }
        )
        return LoopResult(current, False, reviewer_calls, spec.max_iterations)
