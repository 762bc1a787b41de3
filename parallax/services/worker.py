"""Worker process: executes one task at a time and reports a single result per task."""

from __future__ import annotations

import logging
import time
from multiprocessing.connection import Connection
from pathlib import Path
from typing import Any, Callable, Optional, Union

from parallax.config import RunnerSettings
from parallax.errors import ExecutionError, ProtocolViolation
from parallax.schemas import ArtifactKind, ArtifactSet, Task, TaskResult, TaskStatus
from parallax.services.artifacts import ArtifactStore
from parallax.services.browser import BrowserSession, LauncherFactory
from parallax.services.engine import (
    EngineFactory,
    IterationContext,
    ScenarioEngine,
    interpolate,
    load_engine_factory,
    resolve_reference,
)
from parallax.services.protocol import (
    ChannelClosed,
    ReadyMessage,
    ResultMessage,
    TerminateMessage,
    WorkerChannel,
)
from parallax.services.retention import apply_retention

LOGGER = logging.getLogger("parallax.worker")

DEFAULT_LAUNCHER = "parallax.services.browser:PlaywrightLauncher"


def _utcnow() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())


class WorkerRuntime:
    """Per-process state: the engine, the browser session and the task counter."""

    def __init__(
        self,
        worker_id: int,
        settings: RunnerSettings,
        engine: ScenarioEngine,
        *,
        session: Optional[BrowserSession] = None,
        artifacts: Optional[ArtifactStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.worker_id = worker_id
        self._settings = settings
        self._engine = engine
        self._session = session
        self._artifacts = artifacts or ArtifactStore(settings.artifacts_dir)
        self._sleep = sleep
        self.completed_count = 0
        self.fatal_error: Optional[str] = None

    @property
    def session(self) -> Optional[BrowserSession]:
        return self._session

    def _append_log(self, log_path: Path, message: str) -> None:
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{_utcnow()}] {message}\n")

    def execute(self, task: Task) -> TaskResult:
        started = time.monotonic()
        started_at = _utcnow()
        task_dir = self._artifacts.task_dir(self.worker_id, task)
        log_path = task_dir / "task.log"
        iteration = IterationContext.from_task(task)
        name = interpolate(task.scenario_name or task.scenario_ref, task.example_row)
        if iteration.data_driven:
            self._append_log(
                log_path,
                f"Worker {self.worker_id} starting {task.id} attempt {task.attempt}: {name} "
                f"(iteration {task.iteration_index}/{task.total_iterations})",
            )
        else:
            self._append_log(log_path, f"Worker {self.worker_id} starting {task.id} attempt {task.attempt}: {name}")

        artifacts = ArtifactSet()
        steps = []
        error: Optional[str] = None
        try:
            page = self._session.begin_task(task_dir) if self._session is not None else None
            outcome = self._engine.run(task, page, iteration)
            status = outcome.status
            steps = list(outcome.steps)
            error = outcome.error
            name = outcome.name or name
            artifacts.screenshots.extend(outcome.screenshots)
        except ExecutionError as exc:
            status = TaskStatus.failed
            error = f"ExecutionError: {exc}"
            LOGGER.warning("Engine failed to run %s: %s", task.id, exc)
        except Exception as exc:
            status = TaskStatus.failed
            error = f"{type(exc).__name__}: {exc}"
            self.fatal_error = error
            LOGGER.exception("Worker %s hit a fatal error while executing %s", self.worker_id, task.id)

        if self._session is not None:
            try:
                self._session.capture_failure_screenshot(status)
                captured = self._session.end_task()
            except Exception as exc:
                LOGGER.warning("Failed to finalize browser capture for %s: %s", task.id, exc)
            else:
                for kind, path in captured.items():
                    artifacts.paths(kind).append(path)

        duration_ms = int((time.monotonic() - started) * 1000)
        if error:
            self._append_log(log_path, f"Error: {error}")
        self._append_log(log_path, f"Finished with status {status.value} in {duration_ms}ms")
        artifacts.paths(ArtifactKind.log).append(str(log_path))

        kept = apply_retention(artifacts, self._settings.capture, status, sleep=self._sleep)
        self.completed_count += 1
        return TaskResult(
            task_id=task.id,
            attempt=task.attempt,
            status=status,
            duration_ms=duration_ms,
            error=error,
            name=name,
            worker_id=self.worker_id,
            step_outcomes=steps,
            artifacts=kept,
            iteration_data=dict(task.example_row) if task.example_row else None,
            started_at=started_at,
            completed_at=_utcnow(),
        )

    def after_task(self) -> None:
        if self._session is None:
            return
        if self.fatal_error is not None:
            self._session.close()
            return
        self._session.after_task()

    def shutdown(self) -> None:
        if self._session is not None:
            try:
                self._session.shutdown()
            except Exception as exc:
                LOGGER.debug("Browser shutdown failed for worker %s: %s", self.worker_id, exc)
        try:
            self._engine.close()
        except Exception as exc:
            LOGGER.debug("Engine close failed for worker %s: %s", self.worker_id, exc)


def build_runtime(
    worker_id: int,
    settings: RunnerSettings,
    engine: Union[str, EngineFactory, None],
    launcher: Union[str, LauncherFactory, None] = None,
) -> WorkerRuntime:
    factory = load_engine_factory(engine if engine is not None else settings.engine)
    session = None
    if settings.browser_enabled:
        launcher_factory: Any = launcher or DEFAULT_LAUNCHER
        if isinstance(launcher_factory, str):
            launcher_factory = resolve_reference(launcher_factory)
        session = BrowserSession(settings, launcher_factory(settings))
    return WorkerRuntime(worker_id, settings, factory(), session=session)


def _configure_logging(worker_id: int) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format=f"%(asctime)s [worker-{worker_id}] %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def run_worker(
    worker_id: int,
    connection: Connection,
    settings: RunnerSettings,
    engine: Union[str, EngineFactory, None] = None,
    launcher: Union[str, LauncherFactory, None] = None,
) -> None:
    """Process entry point: handshake, then serve execute requests until told to stop."""
    _configure_logging(worker_id)
    channel = WorkerChannel(connection)
    try:
        runtime = build_runtime(worker_id, settings, engine, launcher)
    except Exception as exc:
        LOGGER.error("Worker %s failed to start: %s", worker_id, exc)
        channel.close()
        raise SystemExit(1) from exc

    try:
        channel.send(ReadyMessage(worker_id=worker_id))
        LOGGER.info("Worker %s ready", worker_id)
        while True:
            try:
                message = channel.recv()
            except ChannelClosed:
                LOGGER.info("Worker %s lost its orchestrator; exiting", worker_id)
                break
            except ProtocolViolation as exc:
                LOGGER.error("Worker %s received an invalid message: %s", worker_id, exc)
                break
            if isinstance(message, TerminateMessage):
                LOGGER.info("Worker %s terminating after %s tasks", worker_id, runtime.completed_count)
                break
            result = runtime.execute(message.task)
            channel.send(
                ResultMessage(worker_id=worker_id, result=result, closing=runtime.fatal_error is not None)
            )
            runtime.after_task()
            if runtime.fatal_error is not None:
                LOGGER.error("Worker %s shutting down after fatal error: %s", worker_id, runtime.fatal_error)
                break
    except ChannelClosed:
        LOGGER.info("Worker %s channel closed while sending; exiting", worker_id)
    finally:
        runtime.shutdown()
        channel.close()
