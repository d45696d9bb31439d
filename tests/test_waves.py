import asyncio
from typing import Any

from swarm.errors import StreamFailure
from swarm.waves import WaveScheduler, parse_dependencies, plan_waves


def test_parse_dependencies_is_one_based_and_filters_invalid() -> None:
    tasks = [
        "Schema",
        "API [DEPENDS ON: 1]",
        "UI [depends on: 1, 2] [DEPENDS ON: 9]",
        "Docs [DEPENDS ON: 4]",
    ]

    assert parse_dependencies(tasks) == [set(), {0}, {0, 1}, set()]


def test_plan_waves_respects_dependencies() -> None:
    tasks = ["A", "B [DEPENDS ON: 1]", "C", "D [DEPENDS ON: 2, 3]"]

    assert plan_waves(tasks) == [[0, 2], [1], [3]]
    assert plan_waves(tasks, parallel=False) == [[0], [2], [1], [3]]


def test_plan_waves_puts_cycles_in_final_wave() -> None:
    events: list[dict[str, Any]] = []
    tasks = ["A", "B [DEPENDS ON: 3]", "C [DEPENDS ON: 2]"]

    waves = plan_waves(tasks, event_hook=events.append)

    assert waves == [[0], [1, 2]]
    assert events == [{"event": "wave_cycle_detected", "tasks": [2, 3]}]


def test_every_task_runs_exactly_once_after_its_dependencies() -> None:
    tasks = ["A", "B [DEPENDS ON: 1]", "C [DEPENDS ON: 1]", "D [DEPENDS ON: 2, 3]"]
    order: list[int] = []

    async def _run_stream(index: int, task: str) -> str:
        order.append(index)
        await asyncio.sleep(0)
        return f"done {task[0]}"

    results: list[str] = []
    report = asyncio.run(WaveScheduler().run(tasks, _run_stream, results))

    assert sorted(order) == [0, 1, 2, 3]
    assert order[0] == 0 and order[-1] == 3
    assert results == ["done A", "done B", "done C", "done D"]
    assert report.failed == 0
    assert report.succeeded == 4


def test_partial_failure_keeps_siblings_and_later_waves() -> None:
    events: list[dict[str, Any]] = []
    tasks = ["one", "two", "three", "four [DEPENDS ON: 2]"]
    saved: list[int] = []

    async def _run_stream(index: int, task: str) -> str:
        if index == 1:
            raise RuntimeError("reviewer crashed")
        return task.upper()

    results: list[str] = []
    report = asyncio.run(
        WaveScheduler(event_hook=events.append).run(
            tasks, _run_stream, results, on_result=saved.append
        )
    )

    assert results == ["ONE", "", "THREE", "FOUR [DEPENDS ON: 2]"]
    assert report.failed == 1
    assert isinstance(report.failures[0], StreamFailure)
    assert str(report.failures[0]) == "Stream 2 failed: reviewer crashed"
    assert sorted(saved) == [0, 2, 3]
    complete = events[-1]
    assert complete == {
        "event": "waves_complete",
        "failed": 1,
        "total": 4,
        "failed_streams": [2],
    }


def test_filled_results_are_not_rerun() -> None:
    calls: list[int] = []

    async def _run_stream(index: int, task: str) -> str:
        calls.append(index)
        return task

    results = ["kept", ""]
    asyncio.run(WaveScheduler().run(["first", "second"], _run_stream, results))

    assert calls == [1]
    assert results == ["kept", "second"]
