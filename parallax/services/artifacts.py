from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Iterable, Optional

from parallax.errors import ArtifactIOError
from parallax.schemas import ARTIFACT_FIELDS, AggregatedReport, ArtifactKind, Task

LOGGER = logging.getLogger("parallax.artifacts")

REPORT_FILENAME = "report-data.json"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(value: str, limit: int = 80) -> str:
    cleaned = _UNSAFE_CHARS.sub("-", value).strip("-")
    return cleaned[:limit] or "artifact"


class ArtifactStore:
    """Manage on-disk locations for worker scratch space and merged run artifacts."""

    def __init__(self, root: Optional[Path] = None) -> None:
        resolved_root = Path(root) if root is not None else Path.cwd() / "artifacts"
        self._root = resolved_root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _ensure_dir(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    def worker_dir(self, worker_id: int) -> Path:
        return self._ensure_dir(self._root / "workers" / f"worker-{worker_id}")

    def task_dir(self, worker_id: int, task: Task) -> Path:
        name = f"{safe_name(task.id)}-attempt-{task.attempt}"
        return self._ensure_dir(self.worker_dir(worker_id) / name)

    def kind_dir(self, kind: ArtifactKind) -> Path:
        return self._ensure_dir(self._root / ARTIFACT_FIELDS[kind])

    def reports_dir(self) -> Path:
        return self._ensure_dir(self._root / "reports")

    def collect(
        self,
        source: Path,
        kind: ArtifactKind,
        worker_id: int,
        timestamp: str,
        label: Optional[str] = None,
    ) -> Path:
        """Move a worker artifact into the run-level directory for its kind.

        The destination name carries a ``{worker_id}-{timestamp}`` prefix so
        files with identical names from different workers never collide.
        """
        source = Path(source)
        name = f"{safe_name(label)}-{source.name}" if label else source.name
        destination = self.kind_dir(kind) / f"{worker_id}-{timestamp}-{name}"
        if destination.exists():
            raise ArtifactIOError(f"Refusing to overwrite existing artifact {destination}")
        try:
            shutil.move(str(source), str(destination))
        except OSError as exc:
            raise ArtifactIOError(f"Failed to collect {source}: {exc}") from exc
        return destination

    def write_report(self, report: AggregatedReport) -> Path:
        target = self.reports_dir() / REPORT_FILENAME
        target.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        LOGGER.info("Test results saved to: %s", target)
        return target

    def purge_workers(self, keep: Iterable[str] = ()) -> int:
        """Remove per-worker scratch files once the report has collected what it needs.

        Paths in ``keep`` are left in place; they are artifacts a report still
        points to because they could not be moved.
        """
        target = self._root / "workers"
        if not target.exists():
            return 0
        kept = {Path(path).resolve() for path in keep}
        removed = 0
        for path in sorted(target.rglob("*"), reverse=True):
            if path.is_dir():
                try:
                    path.rmdir()
                except OSError:
                    continue
            elif path.resolve() not in kept:
                try:
                    path.unlink()
                    removed += 1
                except OSError as exc:
                    LOGGER.warning("Could not remove worker scratch file %s: %s", path, exc)
        try:
            target.rmdir()
        except OSError:
            pass
        if removed:
            LOGGER.info("Removed %s uncollected worker artifacts", removed)
        return removed
