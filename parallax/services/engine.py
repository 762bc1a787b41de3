"""Boundary to the external BDD execution engine.

The engine is supplied as a zero-argument factory, either directly or as a
``"package.module:attribute"`` reference that each worker process imports.
"""

from __future__ import annotations

import importlib
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from parallax.errors import ConfigurationError
from parallax.schemas import StepOutcome, Task, TaskStatus

_PLACEHOLDER = re.compile(r"<([^<>]+)>")


@dataclass
class IterationContext:
    example_row: Optional[Dict[str, str]] = None
    iteration_index: Optional[int] = None
    total_iterations: Optional[int] = None

    @classmethod
    def from_task(cls, task: Task) -> "IterationContext":
        return cls(
            example_row=dict(task.example_row) if task.example_row else None,
            iteration_index=task.iteration_index,
            total_iterations=task.total_iterations,
        )

    @property
    def data_driven(self) -> bool:
        return self.example_row is not None


@dataclass
class EngineOutcome:
    status: TaskStatus
    steps: List[StepOutcome] = field(default_factory=list)
    error: Optional[str] = None
    screenshots: List[str] = field(default_factory=list)
    name: Optional[str] = None


class ScenarioEngine:
    """Executes one scenario (or one iteration of an outline).

    Implementations return a verdict for assertion failures and raise
    ``ExecutionError`` when the engine itself cannot run the scenario. ``page``
    is the Playwright page for the task, or None when the browser is disabled.
    """

    def run(self, task: Task, page: Any, iteration: IterationContext) -> EngineOutcome:
        raise NotImplementedError

    def close(self) -> None:
        """Release engine resources when the worker shuts down."""


EngineFactory = Callable[[], ScenarioEngine]


def resolve_reference(reference: str) -> Any:
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Expected 'module:attribute', got '{reference}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import '{module_name}': {exc}") from exc
    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ConfigurationError(f"'{reference}' does not exist") from exc
    return target


def load_engine_factory(engine: Union[str, EngineFactory, None]) -> EngineFactory:
    if engine is None:
        raise ConfigurationError("No BDD engine configured")
    if isinstance(engine, str):
        engine = resolve_reference(engine)
    if not callable(engine):
        raise ConfigurationError(f"Engine factory {engine!r} is not callable")
    return engine


def interpolate(text: str, row: Optional[Dict[str, str]]) -> str:
    """Replace ``<header>`` placeholders with values from an example row."""
    if not row:
        return text
    return _PLACEHOLDER.sub(lambda match: str(row.get(match.group(1), match.group(0))), text)
