"""Load-balancing strategies: choose which idle worker receives the next task."""

from __future__ import annotations

import random
from typing import List, Optional, Protocol, Sequence

from parallax.errors import ConfigurationError
from parallax.schemas import BalancingStrategy, WorkerState


class WorkerLike(Protocol):
    id: int
    state: WorkerState
    completed_count: int


class BalancingPolicy:
    name: BalancingStrategy

    def select(self, workers: Sequence[WorkerLike]) -> Optional[WorkerLike]:
        """Return an idle worker from ``workers`` (ordered by id) or None."""
        raise NotImplementedError


def _idle(workers: Sequence[WorkerLike]) -> List[WorkerLike]:
    return [worker for worker in workers if worker.state is WorkerState.idle]


class LeastBusyPolicy(BalancingPolicy):
    name = BalancingStrategy.least_busy

    def select(self, workers):
        idle = _idle(workers)
        if not idle:
            return None
        return min(idle, key=lambda worker: (worker.completed_count, worker.id))


class RoundRobinPolicy(BalancingPolicy):
    name = BalancingStrategy.round_robin

    def __init__(self) -> None:
        self._pointer = 0

    @property
    def pointer(self) -> int:
        return self._pointer

    def select(self, workers):
        total = len(workers)
        if not total:
            return None
        start = self._pointer % total
        for offset in range(total):
            index = (start + offset) % total
            candidate = workers[index]
            if candidate.state is WorkerState.idle:
                self._pointer = (index + 1) % total
                return candidate
        return None


class RandomPolicy(BalancingPolicy):
    name = BalancingStrategy.random

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

    def select(self, workers):
        idle = _idle(workers)
        if not idle:
            return None
        return self._rng.choice(idle)


def create_policy(strategy: BalancingStrategy | str, *, rng: Optional[random.Random] = None) -> BalancingPolicy:
    try:
        resolved = BalancingStrategy(strategy)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown load-balancing strategy '{strategy}'") from exc
    if resolved is BalancingStrategy.least_busy:
        return LeastBusyPolicy()
    if resolved is BalancingStrategy.round_robin:
        return RoundRobinPolicy()
    return RandomPolicy(rng)
