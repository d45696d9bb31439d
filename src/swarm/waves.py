from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from swarm.errors import StreamFailure

DEPENDS_ON_PATTERN = re.compile(r"\[\s*DEPENDS\s+ON\s*:\s*([^\]]*)\]", re.IGNORECASE)

WaveEventHook = Callable[[dict[str, Any]], None]
StreamRunner = Callable[[int, str], Awaitable[str]]


def parse_dependencies(tasks: list[str]) -> list[set[int]]:
    """Read ``[DEPENDS ON: 1, 3]`` markers (1-based) into 0-based index sets.

    References outside the task list and self references are dropped.
    """
    dependencies: list[set[int]] = []
    for index, task in enumerate(tasks):
        declared: set[int] = set()
        for match in DEPENDS_ON_PATTERN.finditer(task):
            for token in re.split(r"[,\s]+", match.group(1)):
                if not token.isdigit():
                    continue
                target = int(token) - 1
                if 0 <= target < len(tasks) and target != index:
                    declared.add(target)
        dependencies.append(declared)
    return dependencies


def plan_waves(
    tasks: list[str],
    *,
    parallel: bool = True,
    event_hook: WaveEventHook | None = None,
) -> list[list[int]]:
    dependencies = parse_dependencies(tasks)
    placed: set[int] = set()
    remaining = list(range(len(tasks)))
    waves: list[list[int]] = []
    while remaining:
        ready = [index for index in remaining if dependencies[index] <= placed]
        if not ready:
            # Whatever is left sits on or behind a cycle.
            if event_hook:
                event_hook({"event": "wave_cycle_detected", "tasks": [i + 1 for i in remaining]})
            waves.append(list(remaining))
            break
        waves.append(ready)
        placed.update(ready)
        remaining = [index for index in remaining if index not in placed]

    if parallel:
        return waves
    return [[index] for wave in waves for index in wave]


@dataclass(slots=True)
class WaveReport:
    total: int
    failures: list[StreamFailure] = field(default_factory=list)
    waves: list[list[int]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def succeeded(self) -> int:
        return self.total - self.failed


class WaveScheduler:
    """Runs implementation streams wave by wave.

    Streams inside a wave run concurrently. A failing stream is recorded and
    leaves its result slot empty; it never cancels its siblings and the next
    wave starts regardless.
    """

    def __init__(self, event_hook: WaveEventHook | None = None) -> None:
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run(
        self,
        tasks: list[str],
        run_stream: StreamRunner,
        results: list[str],
        *,
        parallel: bool = True,
        on_result: Callable[[int], None] | None = None,
    ) -> WaveReport:
        while len(results) < len(tasks):
            results.append("")
        waves = plan_waves(tasks, parallel=parallel, event_hook=self.event_hook)
        report = WaveReport(total=len(tasks), waves=waves)

        async def _stream(index: int) -> None:
            self._emit({"event": "stream_start", "stream": index + 1, "task": tasks[index][:120]})
            try:
                output = await run_stream(index, tasks[index])
            except Exception as exc:
                failure = StreamFailure(index, tasks[index], exc)
                report.failures.append(failure)
                self._emit({"event": "stream_failed", "stream": index + 1, "error": str(exc)})
                return
            results[index] = output
            self._emit({"event": "stream_done", "stream": index + 1})
            if on_result is not None:
                on_result(index)

        for number, wave in enumerate(waves, start=1):
            pending = [index for index in wave if not results[index]]
            self._emit(
                {
                    "event": "wave_start",
                    "wave": number,
                    "waves": len(waves),
                    "streams": [index + 1 for index in wave],
                    "skipped": len(wave) - len(pending),
                }
            )
            await asyncio.gather(*(_stream(index) for index in pending))

        failed_indices = sorted(failure.index for failure in report.failures)
        report.failures.sort(key=lambda failure: failure.index)
        self._emit(
            {
                "event": "waves_complete",
                "failed": report.failed,
                "total": report.total,
                "failed_streams": [index + 1 for index in failed_indices],
            }
        )
        return report
