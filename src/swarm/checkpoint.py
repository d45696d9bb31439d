from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

RunMode = Literal["run", "plan"]
RUN_MODES: tuple[str, ...] = ("run", "plan")
CHECKPOINT_FILE = "checkpoint.json"
EVENTS_FILE = "events.jsonl"
LATEST_POINTER = "latest"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_run_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"run-{stamp}-{uuid4().hex[:6]}"


@dataclass(slots=True)
class IterationSnapshot:
    content: str
    completed_iterations: int

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "completed_iterations": self.completed_iterations}


@dataclass(slots=True)
class AnsweredQuestion:
    question: str
    answer: str

    def to_dict(self) -> dict[str, str]:
        return {"question": self.question, "answer": self.answer}


@dataclass(slots=True)
class RunCheckpoint:
    run_id: str
    issue_body: str = ""
    completed_phases: list[str] = field(default_factory=list)
    spec: str = ""
    design_spec: str = ""
    tasks: list[str] = field(default_factory=list)
    stream_results: list[str] = field(default_factory=list)
    mode: RunMode | None = None
    active_phase: str | None = None
    phase_draft: str | None = None
    iteration_progress: dict[str, IterationSnapshot] | None = None
    skipped_phases: list[str] | None = None
    analysis: str | None = None
    answered_questions: dict[str, list[AnsweredQuestion]] | None = None

    def mark_completed(self, phase_id: str) -> None:
        if phase_id not in self.completed_phases:
            self.completed_phases.append(phase_id)
        if self.active_phase == phase_id:
            self.active_phase = None
            self.phase_draft = None

    def mark_skipped(self, phase_id: str) -> None:
        if self.skipped_phases is None:
            self.skipped_phases = []
        if phase_id not in self.skipped_phases:
            self.skipped_phases.append(phase_id)
        self.mark_completed(phase_id)

    def answers_for(self, phase_id: str) -> list[AnsweredQuestion]:
        if not self.answered_questions:
            return []
        return list(self.answered_questions.get(phase_id, []))

    def record_answer(self, phase_id: str, question: str, answer: str) -> None:
        if self.answered_questions is None:
            self.answered_questions = {}
        self.answered_questions.setdefault(phase_id, []).append(AnsweredQuestion(question, answer))

    def progress_for(self, loop_id: str) -> IterationSnapshot | None:
        if not self.iteration_progress:
            return None
        return self.iteration_progress.get(loop_id)

    def record_progress(self, loop_id: str, content: str, completed_iterations: int) -> None:
        if self.iteration_progress is None:
            self.iteration_progress = {}
        self.iteration_progress[loop_id] = IterationSnapshot(content, completed_iterations)

    def drop_progress(self, prefix: str) -> None:
        """Forget loop progress recorded under ``prefix`` once its phase is done."""
        if not self.iteration_progress:
            return
        for key in [key for key in self.iteration_progress if key.startswith(prefix)]:
            del self.iteration_progress[key]
        if not self.iteration_progress:
            self.iteration_progress = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "run_id": self.run_id,
            "issue_body": self.issue_body,
            "completed_phases": list(self.completed_phases),
            "spec": self.spec,
            "design_spec": self.design_spec,
            "tasks": list(self.tasks),
            "stream_results": list(self.stream_results),
        }
        if self.mode is not None:
            payload["mode"] = self.mode
        if self.active_phase is not None:
            payload["active_phase"] = self.active_phase
        if self.phase_draft is not None:
            payload["phase_draft"] = self.phase_draft
        if self.iteration_progress is not None:
            payload["iteration_progress"] = {
                key: snapshot.to_dict() for key, snapshot in self.iteration_progress.items()
            }
        if self.skipped_phases is not None:
            payload["skipped_phases"] = list(self.skipped_phases)
        if self.analysis is not None:
            payload["analysis"] = self.analysis
        if self.answered_questions is not None:
            payload["answered_questions"] = {
                key: [pair.to_dict() for pair in pairs]
                for key, pairs in self.answered_questions.items()
            }
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> RunCheckpoint | None:
        """Rebuild a checkpoint, or ``None`` when the document is not one."""
        if not isinstance(payload, dict):
            return None
        run_id = payload.get("run_id")
        if not isinstance(run_id, str) or not run_id:
            return None

        def _strings(key: str) -> list[str] | None:
            value = payload.get(key, [])
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                return None
            return list(value)

        completed = _strings("completed_phases")
        tasks = _strings("tasks")
        results = _strings("stream_results")
        if completed is None or tasks is None or results is None:
            return None

        text_fields: dict[str, str] = {}
        for key in ("issue_body", "spec", "design_spec"):
            value = payload.get(key, "")
            if not isinstance(value, str):
                return None
            text_fields[key] = value

        mode = payload.get("mode")
        if mode is not None and mode not in RUN_MODES:
            return None
        active_phase = payload.get("active_phase")
        phase_draft = payload.get("phase_draft")
        if active_phase is not None and not isinstance(active_phase, str):
            return None
        if phase_draft is not None and not isinstance(phase_draft, str):
            return None

        progress: dict[str, IterationSnapshot] | None = None
        raw_progress = payload.get("iteration_progress")
        if raw_progress is not None:
            if not isinstance(raw_progress, dict):
                return None
            progress = {}
            for key, snapshot in raw_progress.items():
                if not isinstance(snapshot, dict):
                    return None
                content = snapshot.get("content")
                count = snapshot.get("completed_iterations")
                if not isinstance(content, str) or isinstance(count, bool) or not isinstance(count, int):
                    return None
                progress[str(key)] = IterationSnapshot(content, count)

        skipped: list[str] | None = None
        if payload.get("skipped_phases") is not None:
            skipped = _strings("skipped_phases")
            if skipped is None:
                return None
        analysis = payload.get("analysis")
        if analysis is not None and not isinstance(analysis, str):
            return None

        answered: dict[str, list[AnsweredQuestion]] | None = None
        raw_answered = payload.get("answered_questions")
        if raw_answered is not None:
            if not isinstance(raw_answered, dict):
                return None
            answered = {}
            for key, pairs in raw_answered.items():
                if not isinstance(pairs, list):
                    return None
                answered[str(key)] = []
                for pair in pairs:
                    if not isinstance(pair, dict):
                        return None
                    question = pair.get("question")
                    answer = pair.get("answer")
                    if not isinstance(question, str) or not isinstance(answer, str):
                        return None
                    answered[str(key)].append(AnsweredQuestion(question, answer))

        return cls(
            run_id=run_id,
            issue_body=text_fields["issue_body"],
            completed_phases=completed,
            spec=text_fields["spec"],
            design_spec=text_fields["design_spec"],
            tasks=tasks,
            stream_results=results,
            mode=mode,
            active_phase=active_phase,
            phase_draft=phase_draft,
            iteration_progress=progress,
            skipped_phases=skipped,
            analysis=analysis,
            answered_questions=answered,
        )


def atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


class CheckpointStore:
    """Durable per-run snapshots under ``<root>/runs/<run_id>/``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def run_dir(self, run_id: str) -> Path:
        return self.root / "runs" / run_id

    def checkpoint_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / CHECKPOINT_FILE

    @property
    def latest_pointer(self) -> Path:
        return self.root / LATEST_POINTER

    def save(self, run_id: str, checkpoint: RunCheckpoint) -> None:
        serialized = json.dumps(checkpoint.to_dict(), ensure_ascii=False, indent=2)
        atomic_write(self.checkpoint_path(run_id), serialized)
        atomic_write(self.latest_pointer, run_id)

    def load(self, run_id: str) -> RunCheckpoint | None:
        path = self.checkpoint_path(run_id)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            return None
        return RunCheckpoint.from_dict(payload)

    def clear(self, run_id: str) -> None:
        self.checkpoint_path(run_id).unlink(missing_ok=True)

    def latest_run_id(self) -> str | None:
        try:
            value = self.latest_pointer.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def run_ids(self) -> list[str]:
        runs_dir = self.root / "runs"
        if not runs_dir.is_dir():
            return []
        return sorted(path.name for path in runs_dir.iterdir() if path.is_dir())


class EventLog:
    """Append-only JSON-lines record of one run's events."""

    def __init__(self, path: Path, *, limit: int | None = None) -> None:
        self.path = path
        self.limit = limit

    def append(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("at", _utcnow_iso())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        events: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                events.append(payload)
        if self.limit is not None:
            return events[-self.limit :]
        return events
