from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Tuple

from parallax.errors import ArtifactIOError
from parallax.schemas import (
    AggregatedReport,
    ArtifactSet,
    FeatureReport,
    ReportEntry,
    RunSummary,
    ScenarioReport,
    Task,
    TaskIdentity,
    TaskResult,
    TaskStatus,
)
from parallax.services.artifacts import ArtifactStore

LOGGER = logging.getLogger("parallax.aggregator")


def _artifact_timestamp() -> str:
    now = time.time()
    return time.strftime("%Y%m%dT%H%M%S", time.gmtime(now)) + f"{int(now * 1000) % 1000:03d}"


def summarize(entries: List[ReportEntry], duration_ms: int = 0) -> RunSummary:
    summary = RunSummary(tasks_total=len(entries), duration_ms=duration_ms)
    for entry in entries:
        result = entry.result
        if result.status is TaskStatus.passed:
            summary.passed += 1
        elif result.status is TaskStatus.failed:
            summary.failed += 1
        elif result.status is TaskStatus.skipped:
            summary.skipped += 1
        elif result.status is TaskStatus.timed_out:
            summary.timed_out += 1
        if result.status is not TaskStatus.skipped or result.attempt > 1:
            summary.attempts_used += result.attempt
        if result.attempt > 1:
            summary.retried_tasks += 1
        for step in result.step_outcomes:
            summary.steps_total += 1
            status = step.status.lower()
            if status == "passed":
                summary.steps_passed += 1
            elif status == "failed":
                summary.steps_failed += 1
            elif status == "skipped":
                summary.steps_skipped += 1
    return summary


class ResultAggregator:
    """Collect terminal results and rebuild them in source order.

    Features are ordered by first submission, scenarios by first submission
    within their feature, and iterations by index. Completion order never
    affects the report.
    """

    def __init__(self, artifacts: Optional[ArtifactStore] = None) -> None:
        self._artifacts = artifacts
        self._order: List[Task] = []
        self._known: Dict[TaskIdentity, int] = {}
        self._results: Dict[TaskIdentity, TaskResult] = {}

    def __len__(self) -> int:
        return len(self._results)

    def register(self, task: Task) -> None:
        if task.identity not in self._known:
            self._known[task.identity] = len(self._order)
            self._order.append(task)

    def add(self, task: Task, result: TaskResult) -> None:
        self.register(task)
        if task.identity in self._results:
            raise ValueError(f"Task {task.id} already has a terminal result")
        self._results[task.identity] = result

    def _ordered_tasks(self) -> List[Task]:
        features: Dict[str, Dict[str, List[Task]]] = {}
        for task in self._order:
            features.setdefault(task.feature_ref, {}).setdefault(task.scenario_ref, []).append(task)
        ordered: List[Task] = []
        for scenarios in features.values():
            for tasks in scenarios.values():
                ordered.extend(
                    sorted(tasks, key=lambda item: (item.iteration_index or 0, self._known[item.identity]))
                )
        return ordered

    def _merge_artifacts(self, task: Task, result: TaskResult) -> TaskResult:
        if self._artifacts is None or result.worker_id is None or result.artifacts.is_empty():
            return result
        timestamp = _artifact_timestamp()
        label = f"{task.id}-attempt-{result.attempt}"
        merged = ArtifactSet()
        for kind, path in result.artifacts.items():
            try:
                destination = self._artifacts.collect(path, kind, result.worker_id, timestamp, label=label)
            except ArtifactIOError as exc:
                LOGGER.warning("Keeping %s artifact in place: %s", kind.value, exc)
                merged.paths(kind).append(path)
                continue
            merged.paths(kind).append(str(destination))
        return result.model_copy(update={"artifacts": merged})

    def build(
        self,
        *,
        started_at: Optional[str] = None,
        completed_at: Optional[str] = None,
        pool_size: int = 0,
        duration_ms: int = 0,
    ) -> AggregatedReport:
        entries: List[ReportEntry] = []
        scenario_names: Dict[Tuple[str, str], Optional[str]] = {}
        for task in self._ordered_tasks():
            result = self._results.get(task.identity)
            if result is None:
                LOGGER.warning("Task %s has no terminal result; omitted from report", task.id)
                continue
            result = self._merge_artifacts(task, result)
            scenario_names.setdefault((task.feature_ref, task.scenario_ref), task.scenario_name)
            entries.append(
                ReportEntry(
                    task_id=task.id,
                    feature_ref=task.feature_ref,
                    scenario_ref=task.scenario_ref,
                    feature_name=task.feature_name,
                    scenario_name=result.name or task.scenario_name,
                    iteration_index=task.iteration_index,
                    total_iterations=task.total_iterations,
                    tags=list(task.tags),
                    worker_id=result.worker_id,
                    result=result,
                )
            )

        features: List[FeatureReport] = []
        index: Dict[Tuple[str, str], ScenarioReport] = {}
        for entry in entries:
            if not features or features[-1].feature_ref != entry.feature_ref:
                features.append(FeatureReport(feature_ref=entry.feature_ref, feature_name=entry.feature_name))
            key = (entry.feature_ref, entry.scenario_ref)
            scenario = index.get(key)
            if scenario is None:
                scenario = ScenarioReport(
                    scenario_ref=entry.scenario_ref,
                    scenario_name=scenario_names.get(key),
                )
                index[key] = scenario
                features[-1].scenarios.append(scenario)
            scenario.entries.append(entry)

        summary = summarize(entries, duration_ms)
        LOGGER.info(
            "Aggregated %s results: passed=%s failed=%s skipped=%s timed_out=%s",
            summary.tasks_total,
            summary.passed,
            summary.failed,
            summary.skipped,
            summary.timed_out,
        )
        return AggregatedReport(
            entries=entries,
            features=features,
            summary=summary,
            started_at=started_at,
            completed_at=completed_at,
            pool_size=pool_size,
        )
