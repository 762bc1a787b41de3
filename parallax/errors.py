from __future__ import annotations


class ParallaxError(Exception):
    """Base class for every error raised by the parallel runner."""


class ConfigurationError(ParallaxError):
    """Invalid settings; raised before any worker is spawned."""


class TaskTimeout(ParallaxError):
    """No result arrived for a task within its timeout."""

    def __init__(self, task_id: str, timeout_ms: int) -> None:
        super().__init__(f"Task {task_id} produced no result within {timeout_ms}ms")
        self.task_id = task_id
        self.timeout_ms = timeout_ms


class WorkerCrash(ParallaxError):
    """A worker channel closed unexpectedly while a task was in flight."""

    def __init__(self, worker_id: int, task_id: str, exit_code: int | None = None) -> None:
        detail = f" (exit_code={exit_code})" if exit_code is not None else ""
        super().__init__(f"Worker {worker_id} exited while executing task {task_id}{detail}")
        self.worker_id = worker_id
        self.task_id = task_id
        self.exit_code = exit_code


class ExecutionError(ParallaxError):
    """The BDD engine itself failed, as opposed to a test assertion failing."""


class ArtifactIOError(ParallaxError):
    """An artifact could not be moved or deleted. Never fails a task."""


class ProtocolViolation(ParallaxError):
    """A worker sent an unexpected message kind or broke message ordering."""
