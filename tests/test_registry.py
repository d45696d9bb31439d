from pathlib import Path

import pytest

from swarm.registry import RegistryError, RunRecord, RunRegistry, default_registry_path


def _record(run_id: str, repo_root: str = "/repo") -> RunRecord:
    return RunRecord(
        run_id=run_id,
        repo_root=repo_root,
        swarm_dir=".swarm",
        created="2026-01-01T00:00:00+00:00",
    )


def test_default_path_honours_xdg(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))

    assert default_registry_path() == tmp_path / "swarm" / "runs.json"


def test_register_lists_newest_first_and_dedupes(tmp_path: Path) -> None:
    registry = RunRegistry(tmp_path / "runs.json")
    registry.register(_record("run-1"))
    registry.register(_record("run-2"))
    registry.register(_record("run-1"))
    registry.register(_record("run-3", repo_root="/other"))

    assert [record.run_id for record in registry.list_runs()] == ["run-3", "run-1", "run-2"]
    assert [record.run_id for record in registry.list_runs("/repo")] == ["run-1", "run-2"]
    assert not registry.lock_file.exists()


def test_mark_finished_updates_status(tmp_path: Path) -> None:
    registry = RunRegistry(tmp_path / "runs.json")
    registry.register(_record("run-1"))

    registry.mark_finished("run-1", "/repo", "completed")

    record = registry.list_runs()[0]
    assert record.status == "completed"
    assert record.finished is not None


def test_corrupt_registry_reads_empty(tmp_path: Path) -> None:
    path = tmp_path / "runs.json"
    path.write_text("{oops", encoding="utf-8")

    assert RunRegistry(path).list_runs() == []


def test_stale_lock_times_out(tmp_path: Path) -> None:
    registry = RunRegistry(tmp_path / "runs.json", lock_timeout_seconds=0.05)
    registry.lock_file.write_text("123", encoding="utf-8")

    with pytest.raises(RegistryError, match="Timed out"):
        registry.register(_record("run-1"))
