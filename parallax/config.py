"""Runner settings resolved before the orchestrator starts.

Settings come from three layers, later ones winning: an optional JSON file,
``PARALLAX_*`` environment variables, and explicit overrides (for instance the
``settings`` block of an HTTP run request).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from parallax.errors import ConfigurationError
from parallax.schemas import ArtifactKind, BalancingStrategy, CaptureMode, ReusePolicy

LOGGER = logging.getLogger("parallax.config")

ENV_PREFIX = "PARALLAX_"

CAPTURE_MODE_ALIASES = {
    "on-failure-only": CaptureMode.on_failure.value,
    "retain-on-failure": CaptureMode.on_failure.value,
    "on-pass": CaptureMode.on_success.value,
    "on-pass-only": CaptureMode.on_success.value,
    "off": CaptureMode.never.value,
}


def _normalize_capture_mode(value: object) -> object:
    if isinstance(value, str):
        cleaned = value.strip().lower().replace("_", "-")
        return CAPTURE_MODE_ALIASES.get(cleaned, cleaned)
    return value


class CaptureSettings(BaseModel):
    screenshot: CaptureMode = CaptureMode.on_failure
    video: CaptureMode = CaptureMode.on_failure
    trace: CaptureMode = CaptureMode.on_failure
    har: CaptureMode = CaptureMode.on_failure
    log: CaptureMode = CaptureMode.always

    @field_validator("screenshot", "video", "trace", "har", "log", mode="before")
    @classmethod
    def normalize_mode(cls, value: object) -> object:
        return _normalize_capture_mode(value)

    def mode_for(self, kind: ArtifactKind) -> CaptureMode:
        return getattr(self, kind.value)


class RunnerSettings(BaseModel):
    pool_size: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)
    strategy: BalancingStrategy = BalancingStrategy.least_busy
    task_timeout_ms: int = Field(default=300_000, ge=1)
    max_retries: int = Field(default=0, ge=0)
    retry_delay_ms: int = Field(default=0, ge=0)
    fail_fast: bool = False
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    reuse_policy: ReusePolicy = ReusePolicy.new_per_task
    browser_renewal_count: int = Field(default=0, ge=0)
    clear_state_on_reuse: bool = True
    browser: str = "chromium"
    headless: bool = True
    browser_enabled: bool = True
    viewport_width: int = Field(default=1280, ge=1)
    viewport_height: int = Field(default=720, ge=1)
    artifacts_dir: Path = Path("artifacts")
    engine: Optional[str] = None
    worker_start_timeout_ms: int = Field(default=30_000, ge=1)
    shutdown_grace_ms: int = Field(default=5_000, ge=0)
    max_start_failures: int = Field(default=3, ge=1)
    start_method: Optional[str] = None

    model_config = {"extra": "forbid"}

    @field_validator("strategy", "reuse_policy", mode="before")
    @classmethod
    def normalize_choice(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower().replace("_", "-")
        return value

    @field_validator("browser")
    @classmethod
    def validate_browser(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"chromium", "firefox", "webkit"}:
            raise ValueError(f"Unsupported browser '{value}'")
        return normalized

    @field_validator("start_method")
    @classmethod
    def validate_start_method(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if value not in {"fork", "spawn", "forkserver"}:
            raise ValueError(f"Unknown multiprocessing start method '{value}'")
        return value

    @property
    def task_timeout_seconds(self) -> float:
        return self.task_timeout_ms / 1000.0

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay_ms / 1000.0

    def with_overrides(self, overrides: Mapping[str, Any]) -> "RunnerSettings":
        merged = _deep_merge(self.model_dump(), dict(overrides))
        return build_settings(merged)


def _deep_merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce_env_value(raw: str) -> object:
    lowered = raw.strip().lower()
    if lowered in {"true", "yes", "on"}:
        return True
    if lowered in {"false", "no"}:
        return False
    return raw.strip()


def settings_from_environ(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Translate ``PARALLAX_*`` variables into a settings mapping.

    ``PARALLAX_VIDEO_CAPTURE_MODE=on-failure`` lands in ``capture.video``; every
    other key maps to the lower-cased field name.
    """
    values: Dict[str, Any] = {}
    capture: Dict[str, Any] = {}
    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name.endswith("_capture_mode"):
            kind = name[: -len("_capture_mode")]
            if kind not in {item.value for item in ArtifactKind}:
                raise ConfigurationError(f"Unknown artifact kind in {key}")
            capture[kind] = raw.strip()
            continue
        values[name] = _coerce_env_value(raw)
    if capture:
        values["capture"] = capture
    return values


def build_settings(values: Mapping[str, Any]) -> RunnerSettings:
    try:
        return RunnerSettings.model_validate(dict(values))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid runner settings: {exc}") from exc


def load_settings(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunnerSettings:
    values: Dict[str, Any] = {}
    if path is not None:
        try:
            with Path(path).open("r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Settings file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Settings file {path} is not valid JSON: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Settings file {path} must contain a JSON object")
        values = _deep_merge(values, loaded)
    values = _deep_merge(values, settings_from_environ(environ if environ is not None else os.environ))
    if overrides:
        values = _deep_merge(values, overrides)
    settings = build_settings(values)
    LOGGER.debug(
        "Resolved settings: pool_size=%s strategy=%s timeout=%sms retries=%s fail_fast=%s",
        settings.pool_size,
        settings.strategy.value,
        settings.task_timeout_ms,
        settings.max_retries,
        settings.fail_fast,
    )
    return settings
