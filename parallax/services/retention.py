"""Decide which captured artifacts survive once a task's status is known."""

from __future__ import annotations

import errno
import logging
import time
from pathlib import Path
from typing import Callable, Union

from parallax.config import CaptureSettings
from parallax.errors import ArtifactIOError
from parallax.schemas import FAILURE_STATUSES, ArtifactKind, ArtifactSet, CaptureMode, TaskStatus

LOGGER = logging.getLogger("parallax.retention")

DISCARD_ATTEMPTS = 3
DISCARD_BACKOFF_SECONDS = 0.5

_LOCKED_ERRNOS = {errno.EBUSY, errno.EACCES, errno.EPERM, errno.ETXTBSY}


def should_retain(
    kind: Union[ArtifactKind, str],
    capture_mode: Union[CaptureMode, str],
    status: Union[TaskStatus, str],
) -> bool:
    ArtifactKind(kind)
    mode = CaptureMode(capture_mode)
    status = TaskStatus(status)
    if mode is CaptureMode.always:
        return True
    if mode is CaptureMode.on_failure:
        return status in FAILURE_STATUSES
    if mode is CaptureMode.on_success:
        return status is TaskStatus.passed
    return False


def _is_locked(exc: OSError) -> bool:
    return isinstance(exc, PermissionError) or exc.errno in _LOCKED_ERRNOS


def discard_artifact(
    path: Union[Path, str],
    *,
    attempts: int = DISCARD_ATTEMPTS,
    backoff: float = DISCARD_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Delete ``path``, retrying while the file is locked.

    Returns True when the file is gone. Never raises: a file that stays locked
    is logged and left behind.
    """
    target = Path(path)
    for attempt in range(1, attempts + 1):
        try:
            target.unlink()
            LOGGER.debug("Artifact deleted: %s", target)
            return True
        except FileNotFoundError:
            return True
        except OSError as exc:
            if _is_locked(exc) and attempt < attempts:
                LOGGER.debug(
                    "Artifact %s locked (attempt %s/%s); retrying in %.2fs",
                    target,
                    attempt,
                    attempts,
                    backoff,
                )
                sleep(backoff)
                continue
            error = ArtifactIOError(f"Failed to delete {target}: {exc}")
            LOGGER.warning("%s", error)
            return False
    return False


def apply_retention(
    artifacts: ArtifactSet,
    capture: CaptureSettings,
    status: TaskStatus,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ArtifactSet:
    """Discard artifacts whose capture mode rejects ``status``; return the survivors."""
    kept = ArtifactSet()
    for kind, path in artifacts.items():
        mode = capture.mode_for(kind)
        if should_retain(kind, mode, status):
            kept.paths(kind).append(path)
            LOGGER.debug("%s kept (capture mode: %s, status: %s): %s", kind.value, mode.value, status.value, path)
            continue
        LOGGER.debug("%s discarded (capture mode: %s, status: %s): %s", kind.value, mode.value, status.value, path)
        discard_artifact(path, sleep=sleep)
    return kept
