from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from swarm.backends.base import SessionError
from swarm.checkpoint import CheckpointStore, RunCheckpoint, RunMode, new_run_id
from swarm.decisions import DecisionClassifier, KeywordDecisionClassifier, response_contains
from swarm.errors import ConfigError, ParseError, StreamFailure, SwarmError
from swarm.loop import CheckpointProgress, Drafter, IterationLoop, ReviewLoopSpec, Reviser
from swarm.pipeline_config import (
    DEFAULT_FRONTEND_MARKER,
    CrossModelReviewPhase,
    DecomposePhase,
    DesignPhase,
    ImplementPhase,
    PhaseConfig,
    PipelineConfig,
    ReviewStepConfig,
    SpecPhase,
    VerifyCommands,
    VerifyPhase,
)
from swarm.registry import RunRecord, RunRegistry
from swarm.sessions import AgentSessionHandle, SessionManager
from swarm.verify import VerificationReport, Verifier, resolve_verify_commands
from swarm.waves import WaveScheduler, parse_dependencies

FRONTEND_KEYWORDS: tuple[str, ...] = (
    "frontend",
    "ui",
    "component",
    "page",
    "view",
    "layout",
    "style",
    "react",
    "design",
)
FRONTEND_KEYWORD_PATTERN = re.compile(
    r"\b(?:" + "|".join(FRONTEND_KEYWORDS) + r")s?\b", re.IGNORECASE
)

EngineEventHook = Callable[[dict[str, Any]], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def parse_json_array(raw: str) -> list[str]:
    """Extract a JSON array of strings from a response that may include prose."""
    start = raw.find("[")
    end = raw.rfind("]")
    if start == -1 or end == -1 or end <= start:
        raise ParseError(f"Could not find JSON array in response:\n{raw[:200]}...", raw=raw)
    try:
        parsed = json.loads(raw[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ParseError(f"Response array is not valid JSON: {exc}", raw=raw) from exc
    if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
        raise ParseError("Parsed JSON is not an array of strings.", raw=raw)
    return parsed


def is_frontend_task(task: str, marker: str = DEFAULT_FRONTEND_MARKER) -> bool:
    return marker in task or bool(FRONTEND_KEYWORD_PATTERN.search(task))


def has_frontend_work(tasks: list[str], marker: str = DEFAULT_FRONTEND_MARKER) -> bool:
    return any(is_frontend_task(task, marker) for task in tasks)


@dataclass(slots=True)
class RunOptions:
    issue_body: str = ""
    run_id: str | None = None
    resume: bool = False
    plan_provided: bool = False
    mode: RunMode = "run"
    verify_overrides: VerifyCommands | None = None


@dataclass(slots=True)
class RunSummary:
    run_id: str
    started_at: str
    ended_at: str = ""
    completed_phases: list[str] = field(default_factory=list)
    skipped_phases: list[str] = field(default_factory=list)
    tasks_total: int = 0
    failed_streams: list[int] = field(default_factory=list)
    stream_failures: list[StreamFailure] = field(default_factory=list)
    review_failures: list[StreamFailure] = field(default_factory=list)
    unapproved_loops: list[str] = field(default_factory=list)
    verification: VerificationReport | None = None
    auto_resumes: int = 0

    @property
    def streams_failed(self) -> int:
        return len(self.failed_streams)


class PipelineEngine:
    """Walks the configured phases in order and checkpoints every step.

    The engine owns the in-memory checkpoint for the whole run. Phases already
    listed as completed are skipped; the active phase resumes from its stored
    draft and loop progress.
    """

    def __init__(
        self,
        pipeline: PipelineConfig,
        sessions: SessionManager,
        store: CheckpointStore,
        *,
        repo_root: Path,
        classifier: DecisionClassifier | None = None,
        verifier: Verifier | None = None,
        event_hook: EngineEventHook | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.sessions = sessions
        self.store = store
        self.repo_root = repo_root
        self.classifier = classifier or KeywordDecisionClassifier()
        self.verifier = verifier or Verifier(repo_root, sessions, event_hook=event_hook)
        self.event_hook = event_hook
        self.checkpoint: RunCheckpoint | None = None
        self._summary: RunSummary | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _require_checkpoint(self) -> RunCheckpoint:
        if self.checkpoint is None:
            raise SwarmError("open_run must be called before running phases.")
        return self.checkpoint

    @property
    def current_summary(self) -> RunSummary | None:
        """Summary of the latest run_phases attempt, including a failed one."""
        return self._summary

    def _save(self) -> None:
        if self.checkpoint is not None:
            self.store.save(self.checkpoint.run_id, self.checkpoint)

    @property
    def frontend_marker(self) -> str:
        for phase in self.pipeline.pipeline:
            if isinstance(phase, DecomposePhase):
                return phase.frontend_marker
        return DEFAULT_FRONTEND_MARKER

    def open_run(self, options: RunOptions) -> RunCheckpoint:
        """Load the checkpoint to resume, or create and persist a fresh one."""
        checkpoint: RunCheckpoint | None = None
        if options.resume:
            run_id = options.run_id or self.store.latest_run_id()
            if run_id:
                checkpoint = self.store.load(run_id)
            if checkpoint is None:
                self._emit({"event": "resume_without_checkpoint", "run_id": run_id})
            else:
                self._emit(
                    {
                        "event": "run_resumed",
                        "run_id": checkpoint.run_id,
                        "completed_phases": list(checkpoint.completed_phases),
                        "active_phase": checkpoint.active_phase,
                    }
                )
        if checkpoint is None:
            if not options.issue_body.strip():
                raise ConfigError("A task description is required to start a new run.")
            checkpoint = RunCheckpoint(
                run_id=options.run_id or new_run_id(),
                issue_body=options.issue_body,
                mode=options.mode,
            )
            self._emit({"event": "run_started", "run_id": checkpoint.run_id})
        self.checkpoint = checkpoint
        self._save()
        return checkpoint

    def _condition_holds(self, phase: PhaseConfig, options: RunOptions) -> bool:
        if isinstance(phase, CrossModelReviewPhase) and not self.pipeline.cross_model_enabled:
            return False
        condition = phase.condition
        if condition is None:
            return True
        if condition == "hasFrontendTasks":
            return has_frontend_work(self._require_checkpoint().tasks, self.frontend_marker)
        if condition == "noPlanProvided":
            return not options.plan_provided
        if condition == "differentReviewModel":
            return self.pipeline.cross_model_enabled
        raise ConfigError(f"Unknown phase condition: {condition}")

    async def execute(self, options: RunOptions) -> RunSummary:
        self.open_run(options)
        return await self.run_phases(options)

    async def run_phases(self, options: RunOptions) -> RunSummary:
        checkpoint = self._require_checkpoint()
        summary = RunSummary(run_id=checkpoint.run_id, started_at=_utcnow_iso())
        self._summary = summary
        self._emit(
            {
                "event": "pipeline_start",
                "run_id": checkpoint.run_id,
                "primary_model": self.pipeline.primary_model,
                "review_model": self.pipeline.review_model,
            }
        )

        for phase_id, phase in self.pipeline.phases():
            if phase_id in checkpoint.completed_phases:
                self._emit({"event": "phase_already_done", "phase": phase_id})
                continue
            if not self._condition_holds(phase, options):
                checkpoint.mark_skipped(phase_id)
                self._save()
                self._emit(
                    {"event": "phase_skipped", "phase": phase_id, "condition": phase.condition}
                )
                continue

            if checkpoint.active_phase != phase_id:
                checkpoint.active_phase = phase_id
                checkpoint.phase_draft = None
            self._save()
            self._emit({"event": "phase_start", "phase": phase_id})
            await self._dispatch(phase_id, phase, options)
            checkpoint.mark_completed(phase_id)
            checkpoint.drop_progress(f"{phase_id}/")
            self._save()
            self._emit({"event": "phase_done", "phase": phase_id})

        summary.completed_phases = list(checkpoint.completed_phases)
        summary.skipped_phases = list(checkpoint.skipped_phases or [])
        summary.tasks_total = len(checkpoint.tasks)
        summary.failed_streams = self._failed_stream_indices()
        summary.ended_at = _utcnow_iso()
        self._emit(
            {
                "event": "pipeline_complete",
                "run_id": checkpoint.run_id,
                "streams_failed": summary.streams_failed,
                "streams_total": summary.tasks_total,
                "unapproved_loops": list(summary.unapproved_loops),
            }
        )
        return summary

    def _failed_stream_indices(self) -> list[int]:
        """Tasks whose implement stream never produced a result, across attempts."""
        checkpoint = self._require_checkpoint()
        skipped = set(checkpoint.skipped_phases or [])
        implemented = any(
            isinstance(phase, ImplementPhase)
            and phase_id in checkpoint.completed_phases
            and phase_id not in skipped
            for phase_id, phase in self.pipeline.phases()
        )
        if not implemented:
            return []
        results = checkpoint.stream_results
        return [
            index
            for index in range(len(checkpoint.tasks))
            if index >= len(results) or not results[index]
        ]

    async def _dispatch(self, phase_id: str, phase: PhaseConfig, options: RunOptions) -> None:
        match phase:
            case SpecPhase():
                await self._run_spec(phase_id, phase)
            case DecomposePhase():
                await self._run_decompose(phase_id, phase)
            case DesignPhase():
                await self._run_design(phase_id, phase)
            case ImplementPhase():
                await self._run_implement(phase_id, phase)
            case CrossModelReviewPhase():
                await self._run_cross_model_review(phase_id, phase)
            case VerifyPhase():
                await self._run_verify(phase, options)
            case _:
                raise ConfigError(f"Unsupported phase configuration: {type(phase).__name__}")

    # --- shared helpers ---

    def _loop(self) -> IterationLoop:
        return IterationLoop(
            self.sessions,
            CheckpointProgress(self._require_checkpoint(), self.store),
            classifier=self.classifier,
            event_hook=self.event_hook,
        )

    async def _run_chain(
        self,
        specs: list[ReviewLoopSpec],
        draft: Drafter,
        *,
        phase_id: str | None = None,
    ) -> str:
        """Draft once, then pass the content through each review gate in order.

        On resume the chain restarts at the last gate with stored progress.
        With ``phase_id`` set the draft and each gate's output are kept as
        the phase draft.
        """
        checkpoint = self._require_checkpoint()
        started = [index for index, spec in enumerate(specs) if checkpoint.progress_for(spec.loop_id)]
        content: str | None = None
        start = 0
        if started:
            start = max(started)
        elif phase_id is not None and checkpoint.phase_draft is not None:
            content = checkpoint.phase_draft
            self._emit({"event": "phase_draft_resumed", "phase": phase_id})
        else:
            content = await draft()
            if phase_id is not None:
                checkpoint.phase_draft = content
                self._save()

        loop = self._loop()
        for spec in specs[start:]:
            result = await loop.run(spec, seed=content)
            if not result.approved and self._summary is not None:
                self._summary.unapproved_loops.append(spec.loop_id)
            content = result.content
            if phase_id is not None:
                checkpoint.phase_draft = content
                self._save()
        if content is None:
            raise SwarmError("Review chain produced no content.")
        return content

    def _review_spec(
        self,
        loop_id: str,
        step: ReviewStepConfig,
        review_prompt: Callable[[str], str],
        revise: Reviser,
        *,
        clarification_agent: str | None = None,
        reviewer_model: str | None = None,
    ) -> ReviewLoopSpec:
        return ReviewLoopSpec(
            loop_id=loop_id,
            reviewer=step.agent,
            max_iterations=step.max_iterations,
            approval_keyword=step.approval_keyword,
            review_prompt=review_prompt,
            revise=revise,
            clarification_keyword=step.clarification_keyword,
            clarification_agent=step.clarification_agent or clarification_agent,
            reviewer_model=reviewer_model,
        )

    @staticmethod
    def _session_message(handle: AgentSessionHandle, current: str, message: str) -> str:
        # A resumed session has no transcript, so it needs the draft restated.
        if handle.transcript:
            return message
        return f"Current draft:\n{current}\n\n{message}"

    def _session_reviser(
        self, handle: AgentSessionHandle, instruction: str, label: str
    ) -> Reviser:
        async def _revise(current: str, feedback: str) -> str:
            prompt = f"{label}:\n{feedback}\n\n{instruction}"
            return await self.sessions.send(
                handle, self._session_message(handle, current, prompt)
            )

        return _revise

    async def _ask_clarification(self, agent: str, keyword: str, response: str, who: str) -> str:
        question = self.classifier.extract_question(response, keyword)
        self._emit({"event": "clarification_requested", "by": who, "agent": agent})
        return await self.sessions.call_isolated(agent, f"The {who} needs clarification:\n{question}")

    # --- spec ---

    async def _run_spec(self, phase_id: str, phase: SpecPhase) -> None:
        checkpoint = self._require_checkpoint()

        async def _draft() -> str:
            return await self.sessions.call_isolated(phase.agent, checkpoint.issue_body)

        async def _revise(current: str, feedback: str) -> str:
            return await self.sessions.call_isolated(
                phase.agent,
                f"Previous content:\n{current}\n\nReview feedback:\n{feedback}\n\nRevise accordingly.",
            )

        specs = [
            self._review_spec(
                f"{phase_id}/review-{index}",
                step,
                lambda content: f"Review this specification:\n{content}",
                _revise,
            )
            for index, step in enumerate(phase.reviews)
        ]
        checkpoint.spec = await self._run_chain(specs, _draft, phase_id=phase_id)

    # --- decompose ---

    async def _run_decompose(self, phase_id: str, phase: DecomposePhase) -> None:
        checkpoint = self._require_checkpoint()
        marker = phase.frontend_marker
        source = checkpoint.spec or checkpoint.issue_body
        prompt = (
            f"Break this spec into independent tasks. Mark frontend tasks with {marker}. "
            "When a task needs another task's output, append [DEPENDS ON: <task numbers>] "
            "using 1-based task numbers. Respond with ONLY a JSON array of strings, no other "
            f'text. Format: ["{marker} Task 1", "Task 2 [DEPENDS ON: 1]"]\nSpec:\n{source}'
        )
        raw = await self.sessions.call_isolated(phase.agent, prompt)
        tasks = parse_json_array(raw)
        if not tasks:
            raise ParseError("Decomposition returned an empty task list.", raw=raw)
        checkpoint.tasks = tasks
        checkpoint.stream_results = [""] * len(tasks)
        self._emit(
            {
                "event": "tasks_decomposed",
                "phase": phase_id,
                "tasks": len(tasks),
                "frontend": sum(1 for task in tasks if is_frontend_task(task, marker)),
            }
        )

    # --- design ---

    async def _run_design(self, phase_id: str, phase: DesignPhase) -> None:
        checkpoint = self._require_checkpoint()

        async with self.sessions.session(phase.agent) as handle:

            async def _draft() -> str:
                design = await self.sessions.send(
                    handle,
                    "Create a detailed UI/UX design specification based on this spec:\n"
                    f"{checkpoint.spec}\n\nInclude: component hierarchy, layout, interactions, "
                    "states, and accessibility considerations.",
                )
                if phase.clarification_agent and response_contains(
                    design, phase.clarification_keyword
                ):
                    answer = await self._ask_clarification(
                        phase.clarification_agent, phase.clarification_keyword, design, "designer"
                    )
                    design = await self.sessions.send(
                        handle, f"PM Clarification:\n{answer}\n\nRevise the design."
                    )
                return design

            revise = self._session_reviser(handle, "Revise the design.", "Review feedback")
            specs = [
                self._review_spec(
                    f"{phase_id}/review-{index}",
                    step,
                    lambda content: f"Review this design specification:\n{content}",
                    revise,
                    clarification_agent=phase.clarification_agent,
                )
                for index, step in enumerate(phase.reviews)
            ]
            checkpoint.design_spec = await self._run_chain(specs, _draft, phase_id=phase_id)

    # --- implement ---

    def _engineering_prompt(self, index: int, task: str, dependencies: set[int]) -> str:
        checkpoint = self._require_checkpoint()
        parts = [f"Spec:\n{checkpoint.spec or checkpoint.issue_body}"]
        if checkpoint.design_spec and is_frontend_task(task, self.frontend_marker):
            parts.append(f"Design:\n{checkpoint.design_spec}")
        finished = [
            f"Task {dep + 1} result:\n{checkpoint.stream_results[dep]}"
            for dep in sorted(dependencies)
            if dep < len(checkpoint.stream_results) and checkpoint.stream_results[dep]
        ]
        if finished:
            parts.append("Completed prerequisite work:\n\n" + "\n\n".join(finished))
        parts.append(f"Task:\n{task}")
        parts.append("Implement this task.")
        return "\n\n".join(parts)

    async def _run_stream(self, phase_id: str, phase: ImplementPhase, index: int, task: str) -> str:
        checkpoint = self._require_checkpoint()
        prefix = f"{phase_id}/stream-{index}"
        dependencies = parse_dependencies(checkpoint.tasks)[index]

        async with self.sessions.session(phase.agent) as handle:

            async def _draft() -> str:
                code = await self.sessions.send(
                    handle, self._engineering_prompt(index, task, dependencies)
                )
                if phase.clarification_agent and response_contains(
                    code, phase.clarification_keyword
                ):
                    answer = await self._ask_clarification(
                        phase.clarification_agent, phase.clarification_keyword, code, "engineer"
                    )
                    code = await self.sessions.send(
                        handle, f"Clarification:\n{answer}\n\nContinue implementing the task."
                    )
                return code

            specs = [
                self._review_spec(
                    f"{prefix}/review-{review_index}",
                    step,
                    lambda content: f"Review this implementation:\n{content}",
                    self._session_reviser(handle, "Fix all issues.", "Code review feedback"),
                    clarification_agent=phase.clarification_agent,
                )
                for review_index, step in enumerate(phase.reviews)
            ]
            if phase.qa is not None:
                qa = phase.qa
                specs.append(
                    ReviewLoopSpec(
                        loop_id=f"{prefix}/qa",
                        reviewer=qa.agent,
                        max_iterations=qa.max_iterations,
                        approval_keyword=qa.approval_keyword,
                        review_prompt=lambda content: (
                            f"Spec:\n{checkpoint.spec}\n\nImplementation:\n{content}\n\n"
                            "Validate the implementation against the spec."
                        ),
                        revise=self._session_reviser(
                            handle, "Fix all reported issues.", "QA Report"
                        ),
                    )
                )
            if phase.cross_model is not None and self.pipeline.cross_model_enabled:
                specs.append(
                    self._review_spec(
                        f"{prefix}/cross-model",
                        phase.cross_model,
                        self._cross_model_prompt,
                        self._session_reviser(
                            handle, "Fix all reported issues.", "Cross-model review feedback"
                        ),
                        reviewer_model=self.pipeline.review_model,
                    )
                )
            return await self._run_chain(specs, _draft)

    async def _run_implement(self, phase_id: str, phase: ImplementPhase) -> None:
        checkpoint = self._require_checkpoint()

        async def _stream(index: int, task: str) -> str:
            return await self._run_stream(phase_id, phase, index, task)

        scheduler = WaveScheduler(event_hook=self.event_hook)
        report = await scheduler.run(
            checkpoint.tasks,
            _stream,
            checkpoint.stream_results,
            parallel=phase.parallel,
            on_result=lambda _index: self._save(),
        )
        if self._summary is not None:
            self._summary.stream_failures.extend(report.failures)
        self._emit(
            {
                "event": "implement_summary",
                "phase": phase_id,
                "failed": report.failed,
                "total": report.total,
            }
        )

    # --- cross-model review ---

    def _cross_model_prompt(self, content: str) -> str:
        checkpoint = self._require_checkpoint()
        return (
            f"Spec:\n{checkpoint.spec}\n\nReview this implementation from scratch. "
            "You are using a different model than the one that wrote this code; "
            f"look for blind spots.\n\nImplementation:\n{content}"
        )

    async def _run_cross_model_review(self, phase_id: str, phase: CrossModelReviewPhase) -> None:
        checkpoint = self._require_checkpoint()
        successful = [
            (index, result) for index, result in enumerate(checkpoint.stream_results) if result
        ]
        if not successful:
            self._emit({"event": "cross_model_nothing_to_review", "phase": phase_id})
            return

        async def _revise(current: str, feedback: str) -> str:
            return await self.sessions.call_isolated(
                phase.fix_agent,
                f"Cross-model review feedback:\n{feedback}\n\nOriginal implementation:\n"
                f"{current}\n\nFix all reported issues.",
            )

        def _spec(loop_id: str) -> ReviewLoopSpec:
            return ReviewLoopSpec(
                loop_id=loop_id,
                reviewer=phase.agent,
                max_iterations=phase.max_iterations,
                approval_keyword=phase.approval_keyword,
                review_prompt=self._cross_model_prompt,
                revise=_revise,
                reviewer_model=self.pipeline.review_model,
            )

        loop = self._loop()
        if phase.scope == "global":
            combined = "\n\n---\n\n".join(
                f"## Stream {index + 1}\n\n{result}" for index, result in successful
            )
            result = await loop.run(_spec(f"{phase_id}/global"), seed=combined)
            if not result.approved and self._summary is not None:
                self._summary.unapproved_loops.append(f"{phase_id}/global")
            return

        async def _review_stream(index: int, code: str) -> None:
            loop_id = f"{phase_id}/stream-{index}"
            try:
                result = await loop.run(_spec(loop_id), seed=code)
            except (SwarmError, SessionError) as exc:
                failure = StreamFailure(index, checkpoint.tasks[index], exc)
                if self._summary is not None:
                    self._summary.review_failures.append(failure)
                self._emit({"event": "stream_failed", "stream": index + 1, "error": str(exc)})
                return
            if not result.approved and self._summary is not None:
                self._summary.unapproved_loops.append(loop_id)
            checkpoint.stream_results[index] = result.content
            self._save()

        await asyncio.gather(*(_review_stream(index, code) for index, code in successful))

    # --- verify ---

    async def _run_verify(self, phase: VerifyPhase, options: RunOptions) -> None:
        commands = resolve_verify_commands(
            self.repo_root, options.verify_overrides, self.pipeline.verify
        )
        report = await self.verifier.run(
            commands, fix_agent=phase.fix_agent, max_iterations=phase.max_iterations
        )
        if self._summary is not None:
            self._summary.verification = report


class SwarmOrchestrator:
    """Runs the engine and resumes it from its checkpoint after failures.

    Resumption reuses the same engine and session manager; configuration
    errors are never retried.
    """

    def __init__(
        self,
        engine: PipelineEngine,
        *,
        max_auto_resume: int = 3,
        registry: RunRegistry | None = None,
        swarm_dir: str = ".swarm",
        event_hook: EngineEventHook | None = None,
    ) -> None:
        self.engine = engine
        self.max_auto_resume = max(0, max_auto_resume)
        self.registry = registry
        self.swarm_dir = swarm_dir
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _register(self, checkpoint: RunCheckpoint, options: RunOptions) -> None:
        if self.registry is None:
            return
        self.registry.register(
            RunRecord(
                run_id=checkpoint.run_id,
                repo_root=str(self.engine.repo_root),
                swarm_dir=self.swarm_dir,
                created=_utcnow_iso(),
                mode=options.mode,
            )
        )

    @staticmethod
    def _merge_failures(failures: list[StreamFailure], failed: list[int]) -> list[StreamFailure]:
        # Latest failure per stream; streams that later succeeded are dropped.
        by_index = {failure.index: failure for failure in failures}
        return [by_index[index] for index in failed if index in by_index]

    def _finish(self, run_id: str, status: str) -> None:
        if self.registry is not None:
            self.registry.mark_finished(run_id, str(self.engine.repo_root), status)

    async def execute(self, options: RunOptions) -> RunSummary:
        checkpoint = self.engine.open_run(options)
        self._register(checkpoint, options)
        await self.engine.sessions.start()
        try:
            attempt = 0
            earlier_failures: list[StreamFailure] = []
            while True:
                try:
                    summary = await self.engine.run_phases(options)
                except ConfigError:
                    self._finish(checkpoint.run_id, "failed")
                    raise
                except (SwarmError, SessionError) as exc:
                    if attempt >= self.max_auto_resume:
                        self._finish(checkpoint.run_id, "failed")
                        raise
                    if self.engine.current_summary is not None:
                        earlier_failures.extend(self.engine.current_summary.stream_failures)
                    attempt += 1
                    self._emit(
                        {
                            "event": "auto_resume",
                            "run_id": checkpoint.run_id,
                            "attempt": attempt,
                            "max_auto_resume": self.max_auto_resume,
                            "error": str(exc),
                        }
                    )
                    options = replace(options, resume=True, run_id=checkpoint.run_id)
                    checkpoint = self.engine.open_run(options)
                    continue
                summary.auto_resumes = attempt
                summary.stream_failures = self._merge_failures(
                    earlier_failures + summary.stream_failures, summary.failed_streams
                )
                self._finish(checkpoint.run_id, "completed")
                return summary
        finally:
            await self.engine.sessions.stop()
