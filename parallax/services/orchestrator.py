"""Distribute tasks over a bounded pool of worker processes and drive the run to completion.

All worker and queue state is owned by the single control loop in ``Orchestrator.run``.
The loop multiplexes every worker pipe, every process sentinel and a wake-up pipe
for late submissions, reacting to worker-ready, result, timeout and new-task events.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import multiprocessing
import queue
import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from multiprocessing.connection import Connection, wait
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union

from parallax.config import RunnerSettings
from parallax.errors import ConfigurationError, ParallaxError, ProtocolViolation, TaskTimeout, WorkerCrash
from parallax.schemas import (
    FAILURE_STATUSES,
    AggregatedReport,
    ProgressEvent,
    ProgressKind,
    Task,
    TaskIdentity,
    TaskResult,
    TaskStatus,
    WorkerState,
)
from parallax.services.aggregator import ResultAggregator
from parallax.services.artifacts import ArtifactStore
from parallax.services.engine import EngineFactory, load_engine_factory
from parallax.services.ledger import TaskLedger
from parallax.services.protocol import ChannelClosed, OrchestratorChannel, ReadyMessage
from parallax.services.strategies import create_policy
from parallax.services.worker import run_worker

LOGGER = logging.getLogger("parallax.orchestrator")

WAIT_CAP_SECONDS = 1.0
KILL_JOIN_SECONDS = 1.0

ProgressListener = Callable[[ProgressEvent], None]
ReportSink = Callable[[AggregatedReport], Any]
MetadataExtractor = Callable[[List[str]], Optional[Dict[str, Any]]]


def _utcnow() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())


class WorkerProcess:
    """Parent-side handle on one spawned worker process and its pipe."""

    def __init__(self, process: multiprocessing.process.BaseProcess, connection: Connection) -> None:
        self._process = process
        self._connection = connection

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def sentinel(self) -> int:
        return self._process.sentinel

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    @property
    def exitcode(self) -> Optional[int]:
        return self._process.exitcode

    def is_alive(self) -> bool:
        return self._process.is_alive()

    def kill(self) -> None:
        self._process.kill()

    def join(self, timeout: Optional[float] = None) -> None:
        self._process.join(timeout)


class WorkerLauncher:
    def start(self, worker_id: int, settings: RunnerSettings) -> WorkerProcess:  # pragma: no cover - interface stub
        raise NotImplementedError


class ProcessWorkerLauncher(WorkerLauncher):
    def __init__(
        self,
        engine: Union[str, EngineFactory],
        browser_launcher: Union[str, Callable[..., Any], None] = None,
        *,
        start_method: Optional[str] = None,
    ) -> None:
        self._engine = engine
        self._browser_launcher = browser_launcher
        self._context = multiprocessing.get_context(start_method)

    def start(self, worker_id: int, settings: RunnerSettings) -> WorkerProcess:
        parent_conn, child_conn = self._context.Pipe(duplex=True)
        process = self._context.Process(
            target=run_worker,
            args=(worker_id, child_conn, settings, self._engine, self._browser_launcher),
            name=f"parallax-worker-{worker_id}",
            daemon=True,
        )
        process.start()
        child_conn.close()
        LOGGER.info("Spawned worker %s (pid %s)", worker_id, process.pid)
        return WorkerProcess(process, parent_conn)


@dataclass
class WorkerHandle:
    id: int
    state: WorkerState = WorkerState.starting
    completed_count: int = 0
    current_task: Optional[Task] = None
    process: Optional[Any] = None
    channel: Optional[OrchestratorChannel] = None
    dispatched_at: Optional[float] = None
    deadline: Optional[float] = None
    generation: int = 0
    start_failures: int = 0
    retired: bool = False


class Orchestrator:
    def __init__(
        self,
        settings: RunnerSettings,
        *,
        engine: Union[str, EngineFactory, None] = None,
        launcher: Optional[WorkerLauncher] = None,
        browser_launcher: Union[str, Callable[..., Any], None] = None,
        metadata_extractor: Optional[MetadataExtractor] = None,
        report_sink: Optional[ReportSink] = None,
        artifacts: Optional[ArtifactStore] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._policy = create_policy(settings.strategy, rng=rng)
        if launcher is None:
            engine = engine if engine is not None else settings.engine
            load_engine_factory(engine)
            launcher = ProcessWorkerLauncher(engine, browser_launcher, start_method=settings.start_method)
        self._launcher = launcher
        self._artifacts = artifacts or ArtifactStore(settings.artifacts_dir)
        self._aggregator = ResultAggregator(self._artifacts)
        self._report_sink = report_sink or self._artifacts.write_report
        self._metadata = metadata_extractor
        self._clock = clock

        self._ledger = TaskLedger()
        self._queue: Deque[Task] = deque()
        self._delayed: List[Tuple[float, int, Task]] = []
        self._sequence = itertools.count()
        self._last_results: Dict[TaskIdentity, TaskResult] = {}
        self._workers: List[WorkerHandle] = []
        self._listeners: List[ProgressListener] = []
        self._pool_initialized = False
        self._fail_fast_triggered = False

        self._inbox: "queue.Queue[List[Task]]" = queue.Queue()
        self._submitted: Set[TaskIdentity] = set()
        self._submitted_ids: Set[str] = set()
        self._submit_lock = threading.Lock()
        self._wake_reader, self._wake_writer = multiprocessing.Pipe(duplex=False)
        self._started = False
        self._finished = False

    # Public surface --------------------------------------------------------------
    @property
    def workers(self) -> List[WorkerHandle]:
        return list(self._workers)

    @property
    def ledger(self) -> TaskLedger:
        return self._ledger

    @property
    def queued(self) -> List[Task]:
        return list(self._queue)

    @property
    def fail_fast_triggered(self) -> bool:
        return self._fail_fast_triggered

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def submit(self, tasks: Iterable[Task]) -> None:
        """Queue tasks for execution; safe to call from any thread, before or during ``run``."""
        batch = list(tasks)
        with self._submit_lock:
            if self._finished:
                raise ParallaxError("Cannot submit tasks to a finished run")
            identities: Set[TaskIdentity] = set()
            ids: Set[str] = set()
            for task in batch:
                if task.identity in self._submitted or task.identity in identities:
                    raise ConfigurationError(f"Duplicate task identity {task.identity} (task {task.id})")
                if task.id in self._submitted_ids or task.id in ids:
                    raise ConfigurationError(f"Duplicate task id {task.id}")
                identities.add(task.identity)
                ids.add(task.id)
            self._submitted.update(identities)
            self._submitted_ids.update(ids)
            self._inbox.put(batch)
            try:
                self._wake_writer.send_bytes(b"\x01")
            except OSError as exc:
                LOGGER.debug("Wake-up pipe unavailable: %s", exc)

    def run(self) -> AggregatedReport:
        if self._started:
            raise ParallaxError("Orchestrator.run() may only be called once")
        self._started = True
        started_at = _utcnow()
        started = time.monotonic()

        self._drain_inbox()
        total = len(self._ledger)
        pool_size = min(self._settings.pool_size, total)
        LOGGER.info(
            "Starting run: %s tasks on %s workers (strategy=%s, max_retries=%s, fail_fast=%s)",
            total,
            pool_size,
            self._settings.strategy.value,
            self._settings.max_retries,
            self._settings.fail_fast,
        )
        try:
            if pool_size:
                self._start_pool(pool_size)
            while not self._finish_if_idle():
                self._step()
        finally:
            self._shutdown_pool()

        report = self._aggregator.build(
            started_at=started_at,
            completed_at=_utcnow(),
            pool_size=len(self._workers),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self._artifacts.purge_workers(
            keep=[path for entry in report.entries for _, path in entry.result.artifacts.items()]
        )
        self._emit(ProgressKind.pool_drained)
        try:
            self._report_sink(report)
        except Exception as exc:
            LOGGER.error("Report sink failed: %s", exc)
        LOGGER.info(
            "Run complete: passed=%s failed=%s skipped=%s timed_out=%s attempts=%s",
            report.summary.passed,
            report.summary.failed,
            report.summary.skipped,
            report.summary.timed_out,
            report.summary.attempts_used,
        )
        return report

    # Control loop ----------------------------------------------------------------
    def _finish_if_idle(self) -> bool:
        with self._submit_lock:
            if self._ledger.is_complete() and self._inbox.empty():
                self._finished = True
                return True
        return False

    def _step(self) -> None:
        self._promote_retries()
        self._ensure_capacity()
        self._dispatch()
        if self._ledger.is_complete() and self._inbox.empty():
            return
        objects = self._wait_objects()
        for ready in wait(list(objects), timeout=self._next_timeout()):
            target = objects[ready]
            if target is None:
                self._drain_wake()
                continue
            worker, generation = target
            if worker.generation != generation or worker.state is WorkerState.terminating:
                continue
            self._drain_channel(worker)
            if worker.generation == generation and ready is not getattr(worker.channel, "connection", None):
                process = worker.process
                if process is not None and not process.is_alive():
                    self._handle_worker_lost(worker, "process exited")
        self._reap_terminating()
        self._drain_inbox()
        self._fail_if_stranded()
        self._expire_deadlines()

    def _wait_objects(self) -> Dict[Any, Optional[Tuple[WorkerHandle, int]]]:
        objects: Dict[Any, Optional[Tuple[WorkerHandle, int]]] = {self._wake_reader: None}
        for worker in self._workers:
            if worker.channel is None or worker.state is WorkerState.dead:
                continue
            sentinel = getattr(worker.process, "sentinel", None)
            if worker.state is WorkerState.terminating:
                if sentinel is not None:
                    objects[sentinel] = (worker, worker.generation)
                continue
            objects[worker.channel.connection] = (worker, worker.generation)
            if sentinel is not None:
                objects[sentinel] = (worker, worker.generation)
        return objects

    def _next_timeout(self) -> float:
        now = self._clock()
        candidates = [WAIT_CAP_SECONDS]
        candidates.extend(worker.deadline - now for worker in self._workers if worker.deadline is not None)
        if self._delayed:
            candidates.append(self._delayed[0][0] - now)
        return max(0.0, min(candidates))

    def _drain_wake(self) -> None:
        try:
            while self._wake_reader.poll():
                self._wake_reader.recv_bytes()
        except (EOFError, OSError):
            pass

    def _drain_inbox(self) -> None:
        while True:
            try:
                batch = self._inbox.get_nowait()
            except queue.Empty:
                return
            for task in batch:
                self._ledger.register(task)
                self._aggregator.register(task)
                if self._fail_fast_triggered:
                    self._finish(task, self._skipped_result(task, "fail-fast already triggered"))
                    continue
                self._queue.append(task)
                LOGGER.debug("Task %s queued", task.id)

    # Pool management -------------------------------------------------------------
    def _start_pool(self, size: int) -> None:
        self._workers.extend(WorkerHandle(id=worker_id) for worker_id in range(size))
        for worker in list(self._workers):
            self._start_worker(worker)

    def _ensure_capacity(self) -> None:
        if not self._pool_initialized or not any(not worker.retired for worker in self._workers):
            return
        target = min(self._settings.pool_size, len(self._ledger))
        available = sum(1 for worker in self._workers if worker.state in (WorkerState.idle, WorkerState.starting))
        while len(self._workers) < target and len(self._queue) > available:
            worker = WorkerHandle(id=len(self._workers))
            self._workers.append(worker)
            LOGGER.info("Growing pool to %s workers", len(self._workers))
            self._start_worker(worker)
            available += 1

    def _start_worker(self, worker: WorkerHandle) -> None:
        worker.generation += 1
        worker.state = WorkerState.starting
        worker.current_task = None
        worker.completed_count = 0
        worker.dispatched_at = None
        worker.deadline = self._clock() + self._settings.worker_start_timeout_ms / 1000.0
        try:
            process = self._launcher.start(worker.id, self._settings)
        except Exception as exc:
            LOGGER.error("Failed to start worker %s: %s", worker.id, exc)
            worker.process = None
            worker.channel = None
            self._start_failed(worker)
            return
        worker.process = process
        worker.channel = OrchestratorChannel(process.connection, worker.id)

    def _start_failed(self, worker: WorkerHandle) -> None:
        worker.start_failures += 1
        worker.state = WorkerState.dead
        self._dispose(worker)
        if worker.start_failures >= self._settings.max_start_failures:
            worker.retired = True
            worker.deadline = None
            LOGGER.error("Worker slot %s retired after %s failed starts", worker.id, worker.start_failures)
            self._fail_if_stranded()
            return
        self._start_worker(worker)

    def _respawn(self, worker: WorkerHandle) -> None:
        LOGGER.info("Respawning worker %s", worker.id)
        self._start_worker(worker)

    def _dispose(self, worker: WorkerHandle, grace: float = 0.0) -> Optional[int]:
        process = worker.process
        exit_code = None
        if process is not None:
            if grace > 0:
                process.join(grace)
            if process.is_alive():
                process.kill()
            process.join(KILL_JOIN_SECONDS)
            exit_code = process.exitcode
        if worker.channel is not None:
            worker.channel.close()
        worker.channel = None
        worker.process = None
        worker.deadline = None
        return exit_code

    def _handle_ready(self, worker: WorkerHandle) -> None:
        worker.state = WorkerState.idle
        worker.start_failures = 0
        worker.deadline = None
        LOGGER.info("Worker %s ready (generation %s)", worker.id, worker.generation)
        self._emit(ProgressKind.worker_ready, worker_id=worker.id)

    def _handle_worker_lost(self, worker: WorkerHandle, reason: str) -> None:
        if worker.retired or worker.state in (WorkerState.terminating, WorkerState.dead):
            return
        was_starting = worker.state is WorkerState.starting
        task = worker.current_task
        duration_ms = self._elapsed_ms(worker)
        worker.state = WorkerState.dead
        worker.current_task = None
        exit_code = self._dispose(worker)
        if was_starting:
            LOGGER.warning("Worker %s failed during startup: %s", worker.id, reason)
            self._start_failed(worker)
            return
        if task is not None:
            error = WorkerCrash(worker.id, task.id, exit_code)
            LOGGER.error("%s: %s", error, reason)
            result = TaskResult(
                task_id=task.id,
                attempt=task.attempt,
                status=TaskStatus.failed,
                duration_ms=duration_ms,
                error=str(error),
                name=task.scenario_name,
                worker_id=worker.id,
                completed_at=_utcnow(),
            )
            self._record_outcome(task, result, worker.id)
        else:
            LOGGER.warning("Worker %s exited while idle: %s", worker.id, reason)
        self._respawn(worker)

    # Messages ---------------------------------------------------------------------
    def _drain_channel(self, worker: WorkerHandle) -> None:
        generation = worker.generation
        while (
            worker.generation == generation
            and worker.state is not WorkerState.terminating
            and worker.channel is not None
            and worker.channel.poll()
        ):
            self._receive(worker)

    def _receive(self, worker: WorkerHandle) -> None:
        try:
            message = worker.channel.recv()
        except ChannelClosed:
            self._handle_worker_lost(worker, "channel closed")
            return
        except ProtocolViolation as exc:
            LOGGER.error("Protocol violation from worker %s: %s", worker.id, exc)
            self._handle_worker_lost(worker, str(exc))
            return
        if isinstance(message, ReadyMessage):
            self._handle_ready(worker)
            return
        self._handle_result(worker, message.result, closing=message.closing)

    def _handle_result(self, worker: WorkerHandle, result: TaskResult, *, closing: bool = False) -> None:
        task = worker.current_task
        worker.current_task = None
        worker.state = WorkerState.terminating if closing else WorkerState.idle
        worker.completed_count += 1
        worker.dispatched_at = None
        worker.deadline = None
        LOGGER.info(
            "Worker %s finished %s attempt %s: %s (%sms)",
            worker.id,
            task.id,
            task.attempt,
            result.status.value,
            result.duration_ms,
        )
        self._record_outcome(task, result, worker.id)
        if closing:
            LOGGER.warning("Worker %s is shutting down after a fatal error", worker.id)
            worker.deadline = self._clock() + self._settings.shutdown_grace_ms / 1000.0

    def _reap_terminating(self) -> None:
        for worker in self._workers:
            if worker.state is not WorkerState.terminating:
                continue
            process = worker.process
            if process is not None and process.is_alive():
                continue
            LOGGER.info("Worker %s exited after shutting down", worker.id)
            worker.state = WorkerState.dead
            self._dispose(worker)
            self._respawn(worker)

    # Scheduling ---------------------------------------------------------------------
    def _dispatch(self) -> None:
        if not self._pool_initialized:
            if any(worker.state is WorkerState.starting for worker in self._workers):
                return
            self._pool_initialized = True
            LOGGER.info(
                "Worker pool initialized: %s of %s workers ready",
                sum(1 for worker in self._workers if worker.state is WorkerState.idle),
                len(self._workers),
            )
        while self._queue:
            worker = self._policy.select(self._workers)
            if worker is None:
                return
            self._assign(worker, self._queue.popleft())

    def _assign(self, worker: WorkerHandle, task: Task) -> None:
        now = self._clock()
        try:
            worker.channel.send_execute(task)
        except ChannelClosed as exc:
            LOGGER.warning("Could not send %s to worker %s: %s", task.id, worker.id, exc)
            self._queue.appendleft(task)
            self._handle_worker_lost(worker, f"send failed: {exc}")
            return
        self._ledger.assign(task, worker.id)
        worker.state = WorkerState.executing
        worker.current_task = task
        worker.dispatched_at = now
        worker.deadline = now + self._settings.task_timeout_seconds
        LOGGER.info("Assigned %s (attempt %s) to worker %s", task.id, task.attempt, worker.id)
        self._emit(ProgressKind.task_assigned, worker_id=worker.id, task_id=task.id, attempt=task.attempt)

    def _schedule_retry(self, task: Task) -> None:
        delay = self._settings.retry_delay_seconds
        if delay <= 0:
            self._queue.append(task)
            return
        heapq.heappush(self._delayed, (self._clock() + delay, next(self._sequence), task))

    def _promote_retries(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, task = heapq.heappop(self._delayed)
            self._queue.append(task)

    def _expire_deadlines(self) -> None:
        now = self._clock()
        for worker in self._workers:
            if worker.deadline is None or now < worker.deadline:
                continue
            if worker.state is WorkerState.executing:
                task = worker.current_task
                error = TaskTimeout(task.id, self._settings.task_timeout_ms)
                LOGGER.warning("%s; terminating worker %s", error, worker.id)
                duration_ms = self._elapsed_ms(worker, now)
                worker.state = WorkerState.dead
                worker.current_task = None
                self._dispose(worker)
                result = TaskResult(
                    task_id=task.id,
                    attempt=task.attempt,
                    status=TaskStatus.timed_out,
                    duration_ms=duration_ms,
                    error=str(error),
                    name=task.scenario_name,
                    worker_id=worker.id,
                    completed_at=_utcnow(),
                )
                self._record_outcome(task, result, worker.id)
                self._respawn(worker)
            elif worker.state is WorkerState.terminating:
                LOGGER.warning(
                    "Worker %s did not exit within %sms of shutting down; killing",
                    worker.id,
                    self._settings.shutdown_grace_ms,
                )
                worker.state = WorkerState.dead
                self._dispose(worker)
                self._respawn(worker)
            elif worker.state is WorkerState.starting:
                LOGGER.warning(
                    "Worker %s did not become ready within %sms",
                    worker.id,
                    self._settings.worker_start_timeout_ms,
                )
                self._start_failed(worker)

    def _elapsed_ms(self, worker: WorkerHandle, now: Optional[float] = None) -> int:
        if worker.dispatched_at is None:
            return 0
        now = self._clock() if now is None else now
        return max(0, int((now - worker.dispatched_at) * 1000))

    # Outcomes -------------------------------------------------------------------------
    def _record_outcome(self, task: Task, result: TaskResult, worker_id: Optional[int]) -> None:
        updates: Dict[str, Any] = {}
        if result.worker_id is None and worker_id is not None:
            updates["worker_id"] = worker_id
        if self._metadata is not None and result.external_metadata is None:
            metadata = self._metadata(list(task.tags))
            if metadata:
                updates["external_metadata"] = metadata
        if updates:
            result = result.model_copy(update=updates)

        retry = (
            result.status in FAILURE_STATUSES
            and task.attempt < self._settings.max_retries + 1
            and not self._fail_fast_triggered
        )
        self._emit(
            ProgressKind.task_completed,
            worker_id=result.worker_id,
            task_id=task.id,
            attempt=task.attempt,
            status=result.status,
            terminal=not retry,
        )
        if retry:
            next_task = task.next_attempt()
            self._last_results[task.identity] = result
            self._ledger.requeue(next_task)
            self._schedule_retry(next_task)
            LOGGER.info(
                "Task %s %s on attempt %s; retrying (%s of %s attempts)",
                task.id,
                result.status.value,
                task.attempt,
                next_task.attempt,
                self._settings.max_retries + 1,
            )
            return
        self._finish(task, result, emit=False)
        if result.status in FAILURE_STATUSES and self._settings.fail_fast:
            self._trigger_fail_fast(task)

    def _finish(self, task: Task, result: TaskResult, *, emit: bool = True) -> None:
        self._ledger.finish(task, result)
        self._aggregator.add(task, result)
        self._last_results.pop(task.identity, None)
        if emit:
            self._emit(
                ProgressKind.task_completed,
                worker_id=result.worker_id,
                task_id=task.id,
                attempt=result.attempt,
                status=result.status,
                terminal=True,
            )

    def _skipped_result(self, task: Task, reason: str) -> TaskResult:
        return TaskResult(
            task_id=task.id,
            attempt=task.attempt,
            status=TaskStatus.skipped,
            error=f"Skipped: {reason}",
            name=task.scenario_name,
            completed_at=_utcnow(),
        )

    def _withdraw_pending(self) -> List[Task]:
        pending = list(self._queue) + [task for _, _, task in sorted(self._delayed)]
        self._queue.clear()
        self._delayed.clear()
        return pending

    def _trigger_fail_fast(self, trigger: Task) -> None:
        if self._fail_fast_triggered:
            return
        self._fail_fast_triggered = True
        pending = self._withdraw_pending()
        LOGGER.warning("Fail-fast triggered by %s; cancelling %s queued tasks", trigger.id, len(pending))
        for task in pending:
            prior = self._last_results.get(task.identity)
            if prior is not None:
                self._finish(task, prior)
            else:
                self._finish(task, self._skipped_result(task, f"fail-fast triggered by {trigger.id}"))

    def _fail_if_stranded(self) -> None:
        if any(not worker.retired for worker in self._workers):
            return
        pending = self._withdraw_pending()
        if not pending:
            return
        LOGGER.error("No live workers remain; failing %s pending tasks", len(pending))
        for task in pending:
            prior = self._last_results.get(task.identity)
            self._finish(
                task,
                prior
                or TaskResult(
                    task_id=task.id,
                    attempt=task.attempt,
                    status=TaskStatus.failed,
                    error="No live workers available to execute task",
                    name=task.scenario_name,
                    completed_at=_utcnow(),
                ),
            )

    def _emit(self, kind: ProgressKind, **fields: Any) -> None:
        event = ProgressEvent(kind=kind, timestamp=_utcnow(), **fields)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                LOGGER.warning("Progress listener failed on %s: %s", kind.value, exc)

    # Shutdown ---------------------------------------------------------------------------
    def _shutdown_pool(self) -> None:
        for worker in self._workers:
            if worker.channel is None or worker.state is WorkerState.dead:
                continue
            try:
                worker.channel.send_terminate()
            except ChannelClosed:
                pass
            worker.state = WorkerState.terminating
        deadline = time.monotonic() + self._settings.shutdown_grace_ms / 1000.0
        for worker in self._workers:
            process = worker.process
            if process is not None:
                process.join(max(0.0, deadline - time.monotonic()))
                if process.is_alive():
                    LOGGER.warning("Worker %s did not exit within the shutdown grace period; killing", worker.id)
                    process.kill()
                    process.join(KILL_JOIN_SECONDS)
            if worker.channel is not None:
                worker.channel.close()
            worker.channel = None
            worker.process = None
            worker.deadline = None
            worker.state = WorkerState.dead
        with self._submit_lock:
            self._finished = True
            self._wake_writer.close()
        self._wake_reader.close()
        LOGGER.info("Worker pool drained")
