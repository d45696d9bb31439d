import json
from pathlib import Path

from swarm.checkpoint import (
    AnsweredQuestion,
    CheckpointStore,
    EventLog,
    IterationSnapshot,
    RunCheckpoint,
    new_run_id,
)


def _full_checkpoint(run_id: str) -> RunCheckpoint:
    return RunCheckpoint(
        run_id=run_id,
        issue_body="Add a settings page",
        completed_phases=["spec-0", "decompose-1"],
        spec="the spec",
        design_spec="",
        tasks=["[FRONTEND] Settings page", "API endpoint [DEPENDS ON: 1]"],
        stream_results=["done", ""],
        mode="run",
        active_phase="implement-3",
        phase_draft="partial",
        iteration_progress={"implement-3/stream-1/review-0": IterationSnapshot("code v2", 1)},
    )


def test_checkpoint_roundtrip_with_optional_fields(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / ".swarm")
    checkpoint = _full_checkpoint("run-a")

    store.save("run-a", checkpoint)
    loaded = store.load("run-a")

    assert loaded == checkpoint


def test_checkpoint_roundtrip_omits_absent_optionals(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / ".swarm")
    checkpoint = RunCheckpoint(run_id="run-b", issue_body="task")

    store.save("run-b", checkpoint)
    payload = json.loads(store.checkpoint_path("run-b").read_text(encoding="utf-8"))
    loaded = store.load("run-b")

    assert "active_phase" not in payload
    assert "phase_draft" not in payload
    assert "iteration_progress" not in payload
    assert "mode" not in payload
    assert loaded == checkpoint
    assert loaded is not None and loaded.iteration_progress is None


def test_load_missing_or_invalid_returns_none(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / ".swarm")
    assert store.load("nope") is None

    path = store.checkpoint_path("broken")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    assert store.load("broken") is None

    path.write_text(json.dumps({"run_id": "broken", "tasks": "not-a-list"}), encoding="utf-8")
    assert store.load("broken") is None

    path.write_text(
        json.dumps(
            {
                "run_id": "broken",
                "iteration_progress": {"spec-0/review-0": {"content": "x", "completed_iterations": "2"}},
            }
        ),
        encoding="utf-8",
    )
    assert store.load("broken") is None


def test_clear_is_idempotent(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / ".swarm")
    store.save("run-c", RunCheckpoint(run_id="run-c"))

    store.clear("run-c")
    store.clear("run-c")

    assert store.load("run-c") is None


def test_latest_pointer_follows_last_save(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / ".swarm")
    assert store.latest_run_id() is None

    store.save("run-1", RunCheckpoint(run_id="run-1"))
    store.save("run-2", RunCheckpoint(run_id="run-2"))

    assert store.latest_run_id() == "run-2"
    assert store.run_ids() == ["run-1", "run-2"]


def test_save_leaves_no_temporary_files(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / ".swarm")
    checkpoint = _full_checkpoint("run-d")
    for index in range(5):
        checkpoint.record_progress("spec-0/review-0", f"v{index}", index)
        store.save("run-d", checkpoint)

    assert sorted(path.name for path in store.run_dir("run-d").iterdir()) == ["checkpoint.json"]


def test_mark_completed_clears_active_phase() -> None:
    checkpoint = _full_checkpoint("run-e")

    checkpoint.mark_completed("implement-3")
    checkpoint.mark_completed("implement-3")

    assert checkpoint.completed_phases == ["spec-0", "decompose-1", "implement-3"]
    assert checkpoint.active_phase is None
    assert checkpoint.phase_draft is None


def test_drop_progress_by_phase_prefix() -> None:
    checkpoint = RunCheckpoint(run_id="run-f")
    checkpoint.record_progress("implement-3/stream-0/review-0", "a", 1)
    checkpoint.record_progress("implement-3/stream-1/qa", "b", 0)
    checkpoint.record_progress("implement-30/stream-0/qa", "c", 0)

    checkpoint.drop_progress("implement-3/")

    assert checkpoint.iteration_progress == {
        "implement-30/stream-0/qa": IterationSnapshot("c", 0)
    }
    checkpoint.drop_progress("implement-30/")
    assert checkpoint.iteration_progress is None


def test_new_run_ids_are_unique() -> None:
    assert new_run_id() != new_run_id()
    assert new_run_id().startswith("run-")


def test_event_log_appends_and_limits(tmp_path: Path) -> None:
    log = EventLog(tmp_path / "runs" / "run-g" / "events.jsonl", limit=2)
    for index in range(3):
        log.append({"event": "tick", "index": index})
    with log.path.open("a", encoding="utf-8") as handle:
        handle.write("garbage\n")

    events = log.read()

    assert [event["index"] for event in events] == [1, 2]
    assert all("at" in event for event in events)


def test_load_unreadable_checkpoint_returns_none(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    store.checkpoint_path("run-dir").mkdir(parents=True)

    assert store.load("run-dir") is None


def test_plan_fields_roundtrip(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / ".swarm")
    checkpoint = RunCheckpoint(run_id="plan-a", issue_body="Add export", mode="plan")
    checkpoint.record_answer("clarify-0", "1. Which format?", "CSV")
    checkpoint.record_answer("clarify-0", "2. Headers?", "")
    checkpoint.analysis = "Touches export.py"
    checkpoint.mark_skipped("design-2")

    store.save("plan-a", checkpoint)
    payload = json.loads(store.checkpoint_path("plan-a").read_text(encoding="utf-8"))
    loaded = store.load("plan-a")

    assert payload["answered_questions"]["clarify-0"][1] == {"question": "2. Headers?", "answer": ""}
    assert payload["skipped_phases"] == ["design-2"]
    assert loaded == checkpoint
    assert loaded is not None
    assert loaded.answers_for("clarify-0")[0] == AnsweredQuestion("1. Which format?", "CSV")
    assert "design-2" in loaded.completed_phases


def test_invalid_plan_fields_are_rejected(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / ".swarm")
    path = store.checkpoint_path("bad")
    path.parent.mkdir(parents=True)

    for extra in (
        {"mode": "analyze"},
        {"analysis": 3},
        {"skipped_phases": "design-2"},
        {"answered_questions": {"clarify-0": [{"question": "q"}]}},
    ):
        path.write_text(json.dumps({"run_id": "bad", **extra}), encoding="utf-8")
        assert store.load("bad") is None, extra
