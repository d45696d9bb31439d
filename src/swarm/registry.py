from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from swarm.checkpoint import atomic_write
from swarm.errors import SwarmError


class RegistryError(SwarmError):
    """Raised when the shared run registry cannot be updated."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def default_registry_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME", "").strip()
    root = Path(base) if base else Path.home() / ".config"
    return root / "swarm" / "runs.json"


@dataclass(slots=True)
class RunRecord:
    run_id: str
    repo_root: str
    swarm_dir: str
    created: str
    mode: str = "run"
    status: str = "running"
    finished: str | None = None


class RunRegistry:
    """Runs across every repository, newest first.

    Several processes may share the file, so every read-modify-write holds an
    exclusive lock file and lands through an atomic replace.
    """

    def __init__(self, path: Path | None = None, *, lock_timeout_seconds: float = 3.0) -> None:
        self.path = path or default_registry_path()
        self.lock_file = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout_seconds = lock_timeout_seconds

    @contextmanager
    def _lock(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise RegistryError(f"Timed out waiting for registry lock {self.lock_file}.") from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read(self) -> list[RunRecord]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return []
        records: list[RunRecord] = []
        for item in payload.get("runs", []) if isinstance(payload, dict) else []:
            if not isinstance(item, dict):
                continue
            try:
                records.append(RunRecord(**item))
            except TypeError:
                continue
        return records

    def _update(self, updater: Callable[[list[RunRecord]], list[RunRecord]]) -> list[RunRecord]:
        with self._lock():
            records = updater(self._read())
            payload: dict[str, Any] = {"runs": [asdict(record) for record in records]}
            atomic_write(self.path, json.dumps(payload, ensure_ascii=False, indent=2))
        return records

    def register(self, record: RunRecord) -> None:
        def _updater(records: list[RunRecord]) -> list[RunRecord]:
            kept = [
                item
                for item in records
                if not (item.run_id == record.run_id and item.repo_root == record.repo_root)
            ]
            return [record, *kept]

        self._update(_updater)

    def mark_finished(self, run_id: str, repo_root: str, status: str) -> None:
        def _updater(records: list[RunRecord]) -> list[RunRecord]:
            for item in records:
                if item.run_id == run_id and item.repo_root == repo_root:
                    item.status = status
                    item.finished = _utcnow_iso()
                    break
            return records

        self._update(_updater)

    def list_runs(self, repo_root: str | None = None) -> list[RunRecord]:
        records = self._read()
        if repo_root is None:
            return records
        return [record for record in records if record.repo_root == repo_root]
