from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from parallax.config import RunnerSettings, load_settings
from parallax.errors import ParallaxError
from parallax.schemas import ProgressEvent, Run, RunCreate, RunStatus, Task
from parallax.services.examples import expand_tasks
from parallax.services.metadata import TagMetadataExtractor
from parallax.services.orchestrator import Orchestrator

LOGGER = logging.getLogger("parallax.runs")

OrchestratorFactory = Callable[[RunnerSettings], Orchestrator]


def _utcnow() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())


def _default_orchestrator(settings: RunnerSettings) -> Orchestrator:
    return Orchestrator(settings, metadata_extractor=TagMetadataExtractor())


class RunService:
    """Accept run requests and execute them one at a time on a background thread."""

    def __init__(
        self,
        settings: Optional[RunnerSettings] = None,
        *,
        auto_start: bool = True,
        orchestrator_factory: Optional[OrchestratorFactory] = None,
    ) -> None:
        self._settings = settings
        self._auto_start = auto_start
        self._orchestrator_factory = orchestrator_factory or _default_orchestrator
        self._runs: Dict[str, Run] = {}
        self._events: Dict[str, List[ProgressEvent]] = {}
        self._pending: Dict[str, Tuple[RunnerSettings, List[Task]]] = {}
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None

    def _base_settings(self) -> RunnerSettings:
        if self._settings is None:
            self._settings = load_settings()
        return self._settings

    def create_run(self, payload: RunCreate) -> Run:
        settings = self._base_settings()
        if payload.settings:
            settings = settings.with_overrides(payload.settings)
        tasks = expand_tasks(payload.features)
        now = _utcnow()
        run = Run(id=uuid.uuid4().hex, tasks_total=len(tasks), created_at=now, updated_at=now)
        with self._lock:
            self._runs[run.id] = run
            self._events[run.id] = []
            self._pending[run.id] = (settings, tasks)
        LOGGER.info("Queued run %s with %s tasks", run.id, len(tasks))
        self._queue.put(run.id)
        if self._auto_start:
            self._ensure_worker()
        return run

    def list_runs(self) -> List[Run]:
        with self._lock:
            return sorted(self._runs.values(), key=lambda run: run.created_at, reverse=True)

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def events(self, run_id: str, since: int = 0) -> Optional[List[ProgressEvent]]:
        with self._lock:
            events = self._events.get(run_id)
            return None if events is None else list(events[since:])

    def _update_run(self, run_id: str, **changes) -> None:
        with self._lock:
            current = self._runs[run_id]
            self._runs[run_id] = current.model_copy(update={**changes, "updated_at": _utcnow()})

    def _record_event(self, run_id: str, event: ProgressEvent) -> None:
        with self._lock:
            self._events[run_id].append(event)

    def _ensure_worker(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run_loop, daemon=True, name="parallax-runs")
        self._worker.start()

    def _run_loop(self) -> None:
        while True:
            run_id = self._queue.get()
            try:
                self._process_run(run_id)
            except Exception:
                LOGGER.exception("Unhandled error while processing run %s", run_id)
            finally:
                self._queue.task_done()

    def _process_run(self, run_id: str) -> None:
        with self._lock:
            pending = self._pending.pop(run_id, None)
        if pending is None:
            LOGGER.warning("Run %s no longer pending; skipping", run_id)
            return
        settings, tasks = pending
        if not tasks:
            self._update_run(run_id, status=RunStatus.failed, note="Run has no tasks to execute.")
            return

        LOGGER.info("Starting run %s", run_id)
        self._update_run(run_id, status=RunStatus.executing)
        try:
            orchestrator = self._orchestrator_factory(settings)
            orchestrator.add_listener(lambda event: self._record_event(run_id, event))
            orchestrator.submit(tasks)
            report = orchestrator.run()
        except ParallaxError as exc:
            LOGGER.error("Run %s aborted: %s", run_id, exc)
            self._update_run(run_id, status=RunStatus.failed, note=str(exc))
            return
        except Exception as exc:
            LOGGER.exception("Run %s failed unexpectedly", run_id)
            self._update_run(run_id, status=RunStatus.failed, note=f"{type(exc).__name__}: {exc}")
            return

        summary = report.summary
        status = RunStatus.failed if summary.failed or summary.timed_out else RunStatus.finished
        self._update_run(run_id, status=status, summary=summary, report=report)
        LOGGER.info(
            "Completed run %s: %s (passed=%s failed=%s skipped=%s timed_out=%s)",
            run_id,
            status.value,
            summary.passed,
            summary.failed,
            summary.skipped,
            summary.timed_out,
        )


_run_service: Optional[RunService] = None


def get_run_service() -> RunService:
    global _run_service
    if _run_service is None:
        _run_service = RunService()
    return _run_service
