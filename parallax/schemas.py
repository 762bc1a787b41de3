from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    passed = "passed"
    failed = "failed"
    skipped = "skipped"
    timed_out = "timed_out"


FAILURE_STATUSES = frozenset({TaskStatus.failed, TaskStatus.timed_out})


class WorkerState(str, Enum):
    starting = "starting"
    idle = "idle"
    executing = "executing"
    terminating = "terminating"
    dead = "dead"


class ArtifactKind(str, Enum):
    screenshot = "screenshot"
    video = "video"
    trace = "trace"
    har = "har"
    log = "log"


class CaptureMode(str, Enum):
    always = "always"
    on_failure = "on-failure"
    on_success = "on-success"
    never = "never"


class BalancingStrategy(str, Enum):
    least_busy = "least-busy"
    round_robin = "round-robin"
    random = "random"


class ReusePolicy(str, Enum):
    new_per_task = "new-per-task"
    reuse_across_tasks = "reuse-across-tasks"


class RunStatus(str, Enum):
    queued = "queued"
    executing = "executing"
    finished = "finished"
    failed = "failed"


class ProgressKind(str, Enum):
    worker_ready = "worker-ready"
    task_assigned = "task-assigned"
    task_completed = "task-completed"
    pool_drained = "pool-drained"


# Source definitions ---------------------------------------------------------------
class DataSource(BaseModel):
    type: str = Field(..., description="csv or json")
    source: str
    delimiter: Optional[str] = None
    filter: Optional[str] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"csv", "json"}:
            raise ValueError(f"Unsupported data source type '{value}'")
        return normalized


class ExamplesTable(BaseModel):
    headers: List[str] = Field(default_factory=list)
    rows: List[List[str]] = Field(default_factory=list)
    data_source: Optional[DataSource] = None


class ScenarioSpec(BaseModel):
    ref: str
    name: str
    tags: List[str] = Field(default_factory=list)
    examples: Optional[ExamplesTable] = None


class FeatureSpec(BaseModel):
    ref: str
    name: str
    tags: List[str] = Field(default_factory=list)
    scenarios: List[ScenarioSpec] = Field(default_factory=list)


# Units of work --------------------------------------------------------------------
TaskIdentity = Tuple[str, str, Optional[int]]


class Task(BaseModel):
    id: str
    feature_ref: str
    scenario_ref: str
    feature_name: Optional[str] = None
    scenario_name: Optional[str] = None
    example_row: Optional[Dict[str, str]] = None
    iteration_index: Optional[int] = Field(default=None, ge=1)
    total_iterations: Optional[int] = Field(default=None, ge=1)
    tags: List[str] = Field(default_factory=list)
    attempt: int = Field(default=1, ge=1)

    @property
    def identity(self) -> TaskIdentity:
        return (self.feature_ref, self.scenario_ref, self.iteration_index)

    def next_attempt(self) -> "Task":
        return self.model_copy(update={"attempt": self.attempt + 1})


class StepOutcome(BaseModel):
    name: str
    status: str
    duration_ms: int = 0
    error: Optional[str] = None


class ArtifactSet(BaseModel):
    screenshots: List[str] = Field(default_factory=list)
    videos: List[str] = Field(default_factory=list)
    traces: List[str] = Field(default_factory=list)
    hars: List[str] = Field(default_factory=list)
    logs: List[str] = Field(default_factory=list)

    def paths(self, kind: ArtifactKind) -> List[str]:
        return getattr(self, ARTIFACT_FIELDS[kind])

    def items(self) -> List[Tuple[ArtifactKind, str]]:
        return [(kind, path) for kind in ArtifactKind for path in self.paths(kind)]

    def is_empty(self) -> bool:
        return not any(self.paths(kind) for kind in ArtifactKind)


ARTIFACT_FIELDS: Dict[ArtifactKind, str] = {
    ArtifactKind.screenshot: "screenshots",
    ArtifactKind.video: "videos",
    ArtifactKind.trace: "traces",
    ArtifactKind.har: "hars",
    ArtifactKind.log: "logs",
}


class TaskResult(BaseModel):
    task_id: str
    attempt: int = Field(..., ge=1)
    status: TaskStatus
    duration_ms: int = 0
    error: Optional[str] = None
    name: Optional[str] = None
    worker_id: Optional[int] = None
    step_outcomes: List[StepOutcome] = Field(default_factory=list)
    artifacts: ArtifactSet = Field(default_factory=ArtifactSet)
    iteration_data: Optional[Dict[str, str]] = None
    external_metadata: Optional[Dict[str, Any]] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


# Reporting ------------------------------------------------------------------------
class RunSummary(BaseModel):
    tasks_total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: int = 0
    retried_tasks: int = 0
    attempts_used: int = 0
    steps_total: int = 0
    steps_passed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    duration_ms: int = 0


class ReportEntry(BaseModel):
    task_id: str
    feature_ref: str
    scenario_ref: str
    feature_name: Optional[str] = None
    scenario_name: Optional[str] = None
    iteration_index: Optional[int] = None
    total_iterations: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    worker_id: Optional[int] = None
    result: TaskResult


class ScenarioReport(BaseModel):
    scenario_ref: str
    scenario_name: Optional[str] = None
    entries: List[ReportEntry] = Field(default_factory=list)


class FeatureReport(BaseModel):
    feature_ref: str
    feature_name: Optional[str] = None
    scenarios: List[ScenarioReport] = Field(default_factory=list)


class AggregatedReport(BaseModel):
    entries: List[ReportEntry] = Field(default_factory=list)
    features: List[FeatureReport] = Field(default_factory=list)
    summary: RunSummary = Field(default_factory=RunSummary)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    pool_size: int = 0


class ProgressEvent(BaseModel):
    kind: ProgressKind
    timestamp: str
    worker_id: Optional[int] = None
    task_id: Optional[str] = None
    attempt: Optional[int] = None
    status: Optional[TaskStatus] = None
    terminal: Optional[bool] = None


# HTTP surface ---------------------------------------------------------------------
class RunCreate(BaseModel):
    features: List[FeatureSpec]
    settings: Dict[str, Any] = Field(default_factory=dict)


class Run(BaseModel):
    id: str
    status: RunStatus = RunStatus.queued
    tasks_total: int = 0
    created_at: str
    updated_at: str
    note: Optional[str] = None
    summary: Optional[RunSummary] = None
    report: Optional[AggregatedReport] = None
