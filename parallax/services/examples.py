"""Expand parsed features into schedulable tasks.

Each scenario becomes one task; a scenario outline becomes one task per example
row. Examples may point at an external CSV or JSON file, optionally filtered with
an expression such as ``status=active`` or ``age>=18``.
"""

from __future__ import annotations

import csv
import json
import logging
import operator
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from parallax.schemas import DataSource, ExamplesTable, FeatureSpec, ScenarioSpec, Task
from parallax.services.engine import interpolate

LOGGER = logging.getLogger("parallax.examples")

_FILTER = re.compile(r"^(\w+)\s*(>=|<=|!=|=|>|<)\s*(.+)$")
_NUMERIC_OPS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}

RowFilter = Callable[[Dict[str, str]], bool]


def _to_number(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return float("nan")


def parse_filter(expression: str) -> RowFilter:
    """Build a row predicate from ``column<op>value``; unparseable input keeps every row."""
    match = _FILTER.match(expression.strip())
    if not match:
        LOGGER.warning("Invalid filter expression: %s", expression)
        return lambda row: True
    column, op, raw = match.groups()
    expected = raw.strip().strip("\"'")
    if op == "=":
        return lambda row: str(row.get(column, "")) == expected
    if op == "!=":
        return lambda row: str(row.get(column, "")) != expected
    compare = _NUMERIC_OPS[op]
    threshold = _to_number(expected)
    return lambda row: compare(_to_number(str(row.get(column, ""))), threshold)


def _resolve(source: str, base_dir: Optional[Path]) -> Path:
    path = Path(source)
    if not path.is_absolute() and base_dir is not None:
        path = Path(base_dir) / path
    return path


def load_data_source(source: DataSource, base_dir: Optional[Path] = None) -> List[Dict[str, str]]:
    path = _resolve(source.source, base_dir)
    LOGGER.info("Loading external data from %s: %s", source.type, path)
    if source.type == "csv":
        with path.open("r", encoding="utf-8", newline="") as handle:
            reader = csv.DictReader(handle, delimiter=source.delimiter or ",")
            records = [{key: value or "" for key, value in row.items() if key is not None} for row in reader]
    else:
        with path.open("r", encoding="utf-8") as handle:
            loaded = json.load(handle)
        if isinstance(loaded, dict):
            loaded = loaded.get("data", [loaded])
        if not isinstance(loaded, list):
            raise ValueError(f"{path} must contain a JSON array of objects")
        records = [
            {str(key): "" if value is None else str(value) for key, value in item.items()}
            for item in loaded
            if isinstance(item, dict)
        ]
    if source.filter:
        keep = parse_filter(source.filter)
        records = [row for row in records if keep(row)]
    return records


def resolve_examples(examples: ExamplesTable, base_dir: Optional[Path] = None) -> ExamplesTable:
    """Replace inline rows with external data when a data source loads successfully."""
    if examples.data_source is None:
        return examples
    try:
        records = load_data_source(examples.data_source, base_dir)
    except (OSError, ValueError, csv.Error) as exc:
        LOGGER.error("Failed to load external data from %s: %s", examples.data_source.source, exc)
        return examples
    if not records:
        LOGGER.warning("No data loaded from external source: %s", examples.data_source.source)
        return examples
    headers = list(records[0].keys())
    rows = [[record.get(header, "") for header in headers] for record in records]
    LOGGER.info("Loaded %s rows with headers: %s", len(rows), ", ".join(headers))
    return examples.model_copy(update={"headers": headers, "rows": rows})


def _scenario_tasks(
    feature: FeatureSpec,
    scenario: ScenarioSpec,
    next_id: Callable[[], str],
    base_dir: Optional[Path],
) -> List[Task]:
    tags = list(dict.fromkeys([*feature.tags, *scenario.tags]))
    base = {
        "feature_ref": feature.ref,
        "scenario_ref": scenario.ref,
        "feature_name": feature.name,
        "tags": tags,
    }
    examples = resolve_examples(scenario.examples, base_dir) if scenario.examples else None
    if examples is None or not examples.rows:
        return [Task(id=next_id(), scenario_name=scenario.name, **base)]
    total = len(examples.rows)
    tasks = []
    for index, values in enumerate(examples.rows, start=1):
        row = {
            header: values[position] if position < len(values) else ""
            for position, header in enumerate(examples.headers)
        }
        tasks.append(
            Task(
                id=next_id(),
                scenario_name=interpolate(scenario.name, row),
                example_row=row,
                iteration_index=index,
                total_iterations=total,
                **base,
            )
        )
    return tasks


def expand_tasks(features: Sequence[FeatureSpec], base_dir: Optional[Path] = None) -> List[Task]:
    """Walk features, scenarios and example rows in source order; ids are ``work-1``, ``work-2``, ..."""
    counter = 0

    def next_id() -> str:
        nonlocal counter
        counter += 1
        return f"work-{counter}"

    tasks: List[Task] = []
    for feature in features:
        for scenario in feature.scenarios:
            tasks.extend(_scenario_tasks(feature, scenario, next_id, base_dir))
    LOGGER.info("Total scenarios to execute: %s", len(tasks))
    return tasks
