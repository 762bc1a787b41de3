from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, List

import pytest

from parallax.config import RunnerSettings
from parallax.schemas import AggregatedReport, ProgressEvent, ProgressKind, Task, TaskStatus
from parallax.services.orchestrator import Orchestrator

ENGINE = "parallax.testing.engines:ScriptedEngine"


def _settings(tmp_path: Path, **overrides: Any) -> RunnerSettings:
    values = {
        "pool_size": 2,
        "engine": ENGINE,
        "browser_enabled": False,
        "artifacts_dir": tmp_path / "artifacts",
        "worker_start_timeout_ms": 20_000,
        "shutdown_grace_ms": 2_000,
    }
    values.update(overrides)
    return RunnerSettings(**values)


def _task(index: int, *tags: str) -> Task:
    return Task(
        id=f"work-{index}",
        feature_ref="checkout.feature",
        scenario_ref=f"scenario-{index}",
        feature_name="Checkout",
        scenario_name=f"Checkout case {index}",
        tags=list(tags),
    )


def _outcomes(report: AggregatedReport):
    return {entry.task_id: (entry.result.status, entry.result.attempt) for entry in report.entries}


@pytest.mark.integration
def test_retries_and_crashes_across_real_worker_processes(tmp_path: Path) -> None:
    events: List[ProgressEvent] = []
    orchestrator = Orchestrator(_settings(tmp_path, max_retries=1))
    orchestrator.add_listener(events.append)
    orchestrator.submit(
        [
            _task(1),
            _task(2, "@fail-until:2"),
            _task(3, "@crash-until:2"),
            _task(4, "@skip"),
            _task(5, "@fail"),
        ]
    )

    report = orchestrator.run()

    assert _outcomes(report) == {
        "work-1": (TaskStatus.passed, 1),
        "work-2": (TaskStatus.passed, 2),
        "work-3": (TaskStatus.passed, 2),
        "work-4": (TaskStatus.skipped, 1),
        "work-5": (TaskStatus.failed, 2),
    }
    assert [entry.task_id for entry in report.entries] == [f"work-{index}" for index in range(1, 6)]
    assert report.pool_size == 2
    assert report.summary.attempts_used == 8

    report_file = tmp_path / "artifacts" / "reports" / "report-data.json"
    assert json.loads(report_file.read_text(encoding="utf-8"))["summary"]["passed"] == 3
    for entry in report.entries:
        assert entry.result.artifacts.logs, entry.task_id
        assert all(Path(path).exists() for path in entry.result.artifacts.logs)

    assigned = [event for event in events if event.kind is ProgressKind.task_assigned]
    assert len(assigned) == 8
    assert events[-1].kind is ProgressKind.pool_drained


@pytest.mark.integration
def test_hung_task_times_out_and_pool_recovers(tmp_path: Path) -> None:
    reports: List[AggregatedReport] = []
    orchestrator = Orchestrator(
        _settings(tmp_path, task_timeout_ms=1_500, pool_size=1),
        report_sink=reports.append,
    )
    orchestrator.submit([_task(1, "@hang"), _task(2)])

    report = orchestrator.run()

    assert _outcomes(report) == {
        "work-1": (TaskStatus.timed_out, 1),
        "work-2": (TaskStatus.passed, 1),
    }
    assert "1500ms" in report.entries[0].result.error
    assert reports == [report]


@pytest.mark.integration
def test_fatal_worker_error_is_reported_and_worker_replaced(tmp_path: Path) -> None:
    events: List[ProgressEvent] = []
    orchestrator = Orchestrator(_settings(tmp_path, pool_size=1), report_sink=lambda report: None)
    orchestrator.add_listener(events.append)
    orchestrator.submit([_task(1, "@fatal"), _task(2)])

    report = orchestrator.run()

    first, second = report.entries
    assert first.result.status is TaskStatus.failed
    assert first.result.error.startswith("RuntimeError:")
    assert second.result.status is TaskStatus.passed
    assert sum(1 for event in events if event.kind is ProgressKind.worker_ready) == 2


@pytest.mark.integration
def test_fail_fast_skips_remaining_tasks(tmp_path: Path) -> None:
    orchestrator = Orchestrator(
        _settings(tmp_path, pool_size=1, fail_fast=True),
        report_sink=lambda report: None,
    )
    orchestrator.submit([_task(1, "@fail"), _task(2), _task(3)])

    report = orchestrator.run()

    assert _outcomes(report) == {
        "work-1": (TaskStatus.failed, 1),
        "work-2": (TaskStatus.skipped, 1),
        "work-3": (TaskStatus.skipped, 1),
    }


@pytest.mark.integration
def test_tasks_submitted_during_a_run_are_executed(tmp_path: Path) -> None:
    orchestrator = Orchestrator(_settings(tmp_path, pool_size=2), report_sink=lambda report: None)
    orchestrator.submit([_task(1, "@sleep:3000")])
    started = threading.Event()
    orchestrator.add_listener(
        lambda event: started.set() if event.kind is ProgressKind.task_assigned else None
    )
    holder: List[AggregatedReport] = []
    runner = threading.Thread(target=lambda: holder.append(orchestrator.run()), daemon=True)
    runner.start()

    assert started.wait(30)
    orchestrator.submit([_task(2), _task(3)])
    runner.join(60)

    assert not runner.is_alive()
    (report,) = holder
    assert {entry.task_id: entry.result.status for entry in report.entries} == {
        "work-1": TaskStatus.passed,
        "work-2": TaskStatus.passed,
        "work-3": TaskStatus.passed,
    }
    assert len(orchestrator.workers) == 2


@pytest.mark.integration
def test_pool_never_exceeds_configured_size(tmp_path: Path) -> None:
    lock = threading.Lock()
    in_flight: set = set()
    peak = [0]

    def track(event: ProgressEvent) -> None:
        with lock:
            if event.kind is ProgressKind.task_assigned:
                in_flight.add(event.task_id)
                peak[0] = max(peak[0], len(in_flight))
            elif event.kind is ProgressKind.task_completed:
                in_flight.discard(event.task_id)

    orchestrator = Orchestrator(
        _settings(tmp_path, pool_size=3, strategy="round-robin"),
        report_sink=lambda report: None,
    )
    orchestrator.add_listener(track)
    orchestrator.submit([_task(index, "@sleep:50") for index in range(1, 10)])
    begin = time.monotonic()

    report = orchestrator.run()

    assert time.monotonic() - begin < 60
    assert peak[0] == 3
    assert all(entry.result.status is TaskStatus.passed for entry in report.entries)
    assert {entry.result.worker_id for entry in report.entries} == {0, 1, 2}


@pytest.mark.integration
def test_fatal_worker_shutdown_does_not_delay_other_results(tmp_path: Path) -> None:
    stamps: dict = {}

    def track(event: ProgressEvent) -> None:
        if event.task_id == "work-2" and event.kind in (ProgressKind.task_assigned, ProgressKind.task_completed):
            stamps[event.kind] = time.monotonic()

    orchestrator = Orchestrator(_settings(tmp_path, shutdown_grace_ms=10_000), report_sink=lambda report: None)
    orchestrator.add_listener(track)
    orchestrator.submit([_task(1, "@fatal-linger:3000"), _task(2, "@sleep:500")])

    report = orchestrator.run()

    assert _outcomes(report) == {
        "work-1": (TaskStatus.failed, 1),
        "work-2": (TaskStatus.passed, 1),
    }
    assert stamps[ProgressKind.task_completed] - stamps[ProgressKind.task_assigned] < 2.5


@pytest.mark.integration
def test_retried_attempt_scratch_files_are_removed(tmp_path: Path) -> None:
    orchestrator = Orchestrator(_settings(tmp_path, pool_size=1, max_retries=1), report_sink=lambda report: None)
    orchestrator.submit([_task(1, "@fail-until:2")])

    report = orchestrator.run()

    (entry,) = report.entries
    assert (entry.result.status, entry.result.attempt) == (TaskStatus.passed, 2)
    assert not (tmp_path / "artifacts" / "workers").exists()
    (log_path,) = entry.result.artifacts.logs
    assert Path(log_path).parent == tmp_path.resolve() / "artifacts" / "logs"
    assert Path(log_path).exists()
