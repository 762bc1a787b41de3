from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List

import pytest

from parallax.errors import ConfigurationError
from parallax.schemas import WorkerState
from parallax.services.strategies import LeastBusyPolicy, RandomPolicy, RoundRobinPolicy, create_policy


@dataclass
class FakeWorker:
    id: int
    state: WorkerState = WorkerState.idle
    completed_count: int = 0


def _pool(size: int) -> List[FakeWorker]:
    return [FakeWorker(id=index) for index in range(size)]


@pytest.mark.unit
def test_least_busy_prefers_fewest_completions_then_lowest_id() -> None:
    workers = _pool(3)
    workers[0].completed_count = 2
    workers[1].completed_count = 1
    workers[2].completed_count = 1
    assert LeastBusyPolicy().select(workers) is workers[1]


@pytest.mark.unit
def test_least_busy_never_skips_a_less_busy_idle_worker() -> None:
    policy = LeastBusyPolicy()
    rng = random.Random(7)
    for _ in range(200):
        workers = _pool(5)
        for worker in workers:
            worker.completed_count = rng.randint(0, 4)
            worker.state = rng.choice([WorkerState.idle, WorkerState.executing, WorkerState.starting])
        chosen = policy.select(workers)
        idle = [worker for worker in workers if worker.state is WorkerState.idle]
        if not idle:
            assert chosen is None
            continue
        assert chosen.state is WorkerState.idle
        assert all(chosen.completed_count <= worker.completed_count for worker in idle)


@pytest.mark.unit
def test_least_busy_five_tasks_two_workers_trace() -> None:
    policy = LeastBusyPolicy()
    workers = _pool(2)
    assignments = []

    def assign(task: str) -> FakeWorker:
        worker = policy.select(workers)
        worker.state = WorkerState.executing
        assignments.append((worker.id, task))
        return worker

    def complete(worker: FakeWorker) -> None:
        worker.state = WorkerState.idle
        worker.completed_count += 1

    w_task1 = assign("task1")
    w_task2 = assign("task2")
    complete(w_task1)
    w_task3 = assign("task3")
    complete(w_task2)
    w_task4 = assign("task4")
    complete(w_task3)
    w_task5 = assign("task5")
    complete(w_task4)
    complete(w_task5)

    assert assignments == [(0, "task1"), (1, "task2"), (0, "task3"), (1, "task4"), (0, "task5")]
    assert [worker.completed_count for worker in workers] == [3, 2]


@pytest.mark.unit
def test_round_robin_assigns_k_mod_w_when_dispatched_one_at_a_time() -> None:
    policy = RoundRobinPolicy()
    workers = _pool(3)
    chosen = [policy.select(workers).id for _ in range(7)]
    assert chosen == [0, 1, 2, 0, 1, 2, 0]


@pytest.mark.unit
def test_round_robin_skips_busy_workers_and_leaves_pointer_past_choice() -> None:
    policy = RoundRobinPolicy()
    workers = _pool(4)
    workers[0].state = WorkerState.executing
    workers[1].state = WorkerState.executing
    assert policy.select(workers) is workers[2]
    assert policy.pointer == 3
    workers[3].state = WorkerState.executing
    workers[2].state = WorkerState.executing
    assert policy.select(workers) is None
    assert policy.pointer == 3


@pytest.mark.unit
def test_random_picks_only_idle_workers() -> None:
    policy = RandomPolicy(random.Random(3))
    workers = _pool(4)
    workers[1].state = WorkerState.executing
    workers[3].state = WorkerState.dead
    picks = {policy.select(workers).id for _ in range(50)}
    assert picks == {0, 2}


@pytest.mark.unit
def test_create_policy_accepts_names_and_rejects_unknown() -> None:
    assert isinstance(create_policy("least-busy"), LeastBusyPolicy)
    assert isinstance(create_policy("round-robin"), RoundRobinPolicy)
    assert isinstance(create_policy("random"), RandomPolicy)
    with pytest.raises(ConfigurationError):
        create_policy("fastest")
