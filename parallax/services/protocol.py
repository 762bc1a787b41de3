"""Typed messages exchanged between the orchestrator and a worker process.

Messages travel as JSON documents over a ``multiprocessing`` pipe. The set of
kinds is closed: ``ready`` and ``result`` flow from the worker, ``execute`` and
``terminate`` flow to it. At most one ``execute`` may be outstanding per worker.
"""

from __future__ import annotations

from multiprocessing.connection import Connection
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from parallax.errors import ProtocolViolation
from parallax.schemas import Task, TaskResult


class ReadyMessage(BaseModel):
    kind: Literal["ready"] = "ready"
    worker_id: int


class ExecuteMessage(BaseModel):
    kind: Literal["execute"] = "execute"
    task: Task


class ResultMessage(BaseModel):
    kind: Literal["result"] = "result"
    worker_id: int
    result: TaskResult
    closing: bool = False


class TerminateMessage(BaseModel):
    kind: Literal["terminate"] = "terminate"


Message = Annotated[
    Union[ReadyMessage, ExecuteMessage, ResultMessage, TerminateMessage],
    Field(discriminator="kind"),
]

_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(Message)

WORKER_BOUND = (ExecuteMessage, TerminateMessage)
ORCHESTRATOR_BOUND = (ReadyMessage, ResultMessage)


class ChannelClosed(Exception):
    """The peer closed its end of the pipe."""


def encode(message: BaseModel) -> bytes:
    return message.model_dump_json().encode("utf-8")


def decode(payload: bytes) -> BaseModel:
    try:
        return _MESSAGE_ADAPTER.validate_json(payload)
    except ValidationError as exc:
        raise ProtocolViolation(f"Malformed message: {exc}") from exc


class _Channel:
    accepts: tuple = ()
    emits: tuple = ()

    def __init__(self, connection: Connection) -> None:
        self._connection = connection

    @property
    def connection(self) -> Connection:
        return self._connection

    def poll(self, timeout: float = 0.0) -> bool:
        try:
            return self._connection.poll(timeout)
        except (EOFError, OSError):
            return True

    def _send(self, message: BaseModel) -> None:
        if not isinstance(message, self.emits):
            raise ProtocolViolation(f"{type(message).__name__} may not be sent on this channel")
        try:
            self._connection.send_bytes(encode(message))
        except (BrokenPipeError, EOFError, OSError) as exc:
            raise ChannelClosed(str(exc)) from exc

    def _recv(self) -> BaseModel:
        try:
            payload = self._connection.recv_bytes()
        except (EOFError, OSError) as exc:
            raise ChannelClosed(str(exc)) from exc
        message = decode(payload)
        if not isinstance(message, self.accepts):
            raise ProtocolViolation(f"Unexpected '{message.kind}' message on this channel")
        return message

    def close(self) -> None:
        try:
            self._connection.close()
        except OSError:
            pass


class WorkerChannel(_Channel):
    """Worker end: receives execute/terminate, emits ready/result."""

    accepts = WORKER_BOUND
    emits = ORCHESTRATOR_BOUND

    def send(self, message: BaseModel) -> None:
        self._send(message)

    def recv(self) -> BaseModel:
        return self._recv()


class OrchestratorChannel(_Channel):
    """Orchestrator end of one worker's pipe.

    Tracks the outstanding ``execute`` so that a second dispatch, or a result
    that does not correlate with the task in flight, surfaces as a
    ``ProtocolViolation`` instead of silently corrupting state.
    """

    accepts = ORCHESTRATOR_BOUND
    emits = WORKER_BOUND

    def __init__(self, connection: Connection, worker_id: int) -> None:
        super().__init__(connection)
        self.worker_id = worker_id
        self._ready_seen = False
        self._in_flight: Optional[Task] = None

    @property
    def in_flight(self) -> Optional[Task]:
        return self._in_flight

    def send_execute(self, task: Task) -> None:
        if not self._ready_seen:
            raise ProtocolViolation(f"Worker {self.worker_id} has not completed its handshake")
        if self._in_flight is not None:
            raise ProtocolViolation(
                f"Worker {self.worker_id} already executing {self._in_flight.id} "
                f"(attempt {self._in_flight.attempt})"
            )
        self._send(ExecuteMessage(task=task))
        self._in_flight = task

    def send_terminate(self) -> None:
        self._send(TerminateMessage())

    def recv(self) -> Union[ReadyMessage, ResultMessage]:
        message = self._recv()
        if isinstance(message, ReadyMessage):
            if self._ready_seen:
                raise ProtocolViolation(f"Worker {self.worker_id} sent a second ready message")
            if message.worker_id != self.worker_id:
                raise ProtocolViolation(
                    f"Worker {self.worker_id} announced itself as worker {message.worker_id}"
                )
            self._ready_seen = True
            return message
        result = message.result
        expected = self._in_flight
        if expected is None:
            raise ProtocolViolation(f"Worker {self.worker_id} sent a result with no task in flight")
        if result.task_id != expected.id or result.attempt != expected.attempt:
            raise ProtocolViolation(
                f"Worker {self.worker_id} returned {result.task_id} attempt {result.attempt}; "
                f"expected {expected.id} attempt {expected.attempt}"
            )
        self._in_flight = None
        return message
