"""Per-identity task tracking for the orchestrator loop.

Every submitted task identity moves through ``Pending`` -> ``Assigned`` ->
(``Pending`` again on retry) -> ``Terminal``. Entries are replaced, never
mutated, and a terminal entry cannot be finished twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple, Union

from parallax.errors import ConfigurationError
from parallax.schemas import Task, TaskIdentity, TaskResult


@dataclass(frozen=True)
class Pending:
    task: Task


@dataclass(frozen=True)
class Assigned:
    task: Task
    worker_id: int


@dataclass(frozen=True)
class Terminal:
    task: Task
    result: TaskResult


TaskState = Union[Pending, Assigned, Terminal]


class TaskLedger:
    def __init__(self) -> None:
        self._entries: Dict[TaskIdentity, TaskState] = {}
        self._order: List[TaskIdentity] = []

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def register(self, task: Task) -> None:
        identity = task.identity
        if identity in self._entries:
            raise ConfigurationError(f"Duplicate task identity {identity} (task {task.id})")
        self._entries[identity] = Pending(task)
        self._order.append(identity)

    def state(self, identity: TaskIdentity) -> Optional[TaskState]:
        return self._entries.get(identity)

    def _current(self, task: Task) -> TaskState:
        try:
            return self._entries[task.identity]
        except KeyError:
            raise KeyError(f"Task {task.id} was never registered") from None

    def assign(self, task: Task, worker_id: int) -> None:
        current = self._current(task)
        if not isinstance(current, Pending):
            raise ValueError(f"Task {task.id} cannot be assigned from state {type(current).__name__}")
        if current.task.attempt != task.attempt:
            raise ValueError(
                f"Task {task.id} attempt {task.attempt} does not match pending attempt {current.task.attempt}"
            )
        self._entries[task.identity] = Assigned(task, worker_id)

    def requeue(self, task: Task) -> None:
        """Record a new attempt of an identity that has not reached a terminal state."""
        current = self._current(task)
        if isinstance(current, Terminal):
            raise ValueError(f"Task {task.id} is already terminal")
        if task.attempt <= current.task.attempt:
            raise ValueError(f"Task {task.id} attempt must increase (got {task.attempt})")
        self._entries[task.identity] = Pending(task)

    def finish(self, task: Task, result: TaskResult) -> None:
        current = self._current(task)
        if isinstance(current, Terminal):
            raise ValueError(f"Task {task.id} already has a terminal result")
        self._entries[task.identity] = Terminal(task, result)

    def assigned_to(self, worker_id: int) -> List[Task]:
        return [
            entry.task
            for entry in self._entries.values()
            if isinstance(entry, Assigned) and entry.worker_id == worker_id
        ]

    @property
    def outstanding(self) -> int:
        return sum(1 for entry in self._entries.values() if not isinstance(entry, Terminal))

    def is_complete(self) -> bool:
        return self.outstanding == 0

    def tasks(self) -> Iterator[Task]:
        for identity in self._order:
            yield self._entries[identity].task

    def results(self) -> List[Tuple[Task, TaskResult]]:
        return [
            (entry.task, entry.result)
            for entry in (self._entries[identity] for identity in self._order)
            if isinstance(entry, Terminal)
        ]
