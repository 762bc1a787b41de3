from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from parallax.config import RunnerSettings
from parallax.schemas import Task, TaskStatus
from parallax.services.artifacts import ArtifactStore
from parallax.services.browser import BrowserSession
from parallax.services.engine import EngineOutcome, IterationContext, ScenarioEngine
from parallax.services.worker import WorkerRuntime
from parallax.testing.engines import ScriptedEngine


class FakeVideo:
    def __init__(self, path: Path) -> None:
        self._path = path

    def path(self) -> str:
        return str(self._path)


class FakeTracing:
    def __init__(self, calls: List[str]) -> None:
        self._calls = calls

    def start(self, **kwargs: Any) -> None:
        self._calls.append("tracing.start")

    def stop(self, path: Optional[str] = None) -> None:
        self._calls.append("tracing.stop")
        if path:
            Path(path).write_text("trace", encoding="utf-8")


class FakePage:
    def __init__(self, context: "FakeContext", calls: List[str]) -> None:
        self._context = context
        self._calls = calls
        self._closed = False
        video_dir = context.kwargs.get("record_video_dir")
        self.video = FakeVideo(Path(video_dir) / f"page-{id(self)}.webm") if video_dir else None

    def goto(self, url: str) -> None:
        self._calls.append(f"goto:{url}")

    def evaluate(self, script: str) -> None:
        self._calls.append("evaluate")

    def screenshot(self, path: str, full_page: bool = False) -> None:
        self._calls.append("screenshot")
        Path(path).write_text("png", encoding="utf-8")

    def emit_console(self, text: str) -> None:
        for handler in self._context.handlers.get("console", []):
            handler(SimpleNamespace(type="log", text=text))

    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class FakeContext:
    def __init__(self, calls: List[str], **kwargs: Any) -> None:
        self.kwargs = kwargs
        self._calls = calls
        self.tracing = FakeTracing(calls)
        self.handlers: Dict[str, List[Any]] = {}
        self.pages: List[FakePage] = []

    def on(self, event: str, handler: Any) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def new_page(self) -> FakePage:
        page = FakePage(self, self._calls)
        self.pages.append(page)
        return page

    def clear_cookies(self) -> None:
        self._calls.append("clear_cookies")

    def clear_permissions(self) -> None:
        self._calls.append("clear_permissions")

    def close(self) -> None:
        self._calls.append("context.close")
        for page in self.pages:
            if page.video is not None:
                Path(page.video.path()).parent.mkdir(parents=True, exist_ok=True)
                Path(page.video.path()).write_text("video", encoding="utf-8")
        har = self.kwargs.get("record_har_path")
        if har:
            Path(har).write_text("{}", encoding="utf-8")


class FakeBrowser:
    def __init__(self, calls: List[str]) -> None:
        self._calls = calls
        self._connected = True

    def is_connected(self) -> bool:
        return self._connected

    def new_context(self, **kwargs: Any) -> FakeContext:
        self._calls.append("new_context")
        return FakeContext(self._calls, **kwargs)

    def close(self) -> None:
        self._calls.append("browser.close")
        self._connected = False


class FakeLauncher:
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.launches = 0

    def launch(self) -> FakeBrowser:
        self.launches += 1
        self.calls.append("launch")
        return FakeBrowser(self.calls)

    def stop(self) -> None:
        self.calls.append("stop")


class ConsoleEngine(ScenarioEngine):
    def run(self, task: Task, page: Any, iteration: IterationContext) -> EngineOutcome:
        page.emit_console(f"visited {task.id}")
        return EngineOutcome(status=TaskStatus.passed)


def _task(index: int, *tags: str) -> Task:
    return Task(
        id=f"work-{index}",
        feature_ref="shop.feature",
        scenario_ref=f"scenario-{index}",
        scenario_name=f"Scenario {index}",
        tags=list(tags),
    )


def _runtime(tmp_path: Path, engine: Optional[ScenarioEngine] = None, **overrides: Any):
    settings = RunnerSettings(artifacts_dir=tmp_path / "artifacts", **overrides)
    launcher = FakeLauncher()
    session = BrowserSession(settings, launcher)
    runtime = WorkerRuntime(
        0,
        settings,
        engine or ScriptedEngine(),
        session=session,
        artifacts=ArtifactStore(root=tmp_path / "artifacts"),
        sleep=lambda _: None,
    )
    return runtime, launcher


@pytest.mark.unit
def test_new_browser_per_task(tmp_path: Path) -> None:
    runtime, launcher = _runtime(tmp_path, capture={"video": "never", "har": "never", "trace": "never"})
    for index in (1, 2):
        result = runtime.execute(_task(index))
        runtime.after_task()
        assert result.status is TaskStatus.passed
    assert launcher.launches == 2
    assert launcher.calls.count("browser.close") == 2
    assert runtime.completed_count == 2


@pytest.mark.unit
def test_reuse_keeps_browser_but_isolates_each_task(tmp_path: Path) -> None:
    runtime, launcher = _runtime(
        tmp_path,
        reuse_policy="reuse-across-tasks",
        capture={"video": "never", "har": "never", "trace": "never"},
    )
    for index in (1, 2, 3):
        runtime.execute(_task(index))
        runtime.after_task()

    assert launcher.launches == 1
    assert launcher.calls.count("new_context") == 3
    assert launcher.calls.count("context.close") == 3
    first_clear = launcher.calls.index("goto:about:blank")
    assert launcher.calls[first_clear : first_clear + 6] == [
        "goto:about:blank",
        "clear_cookies",
        "clear_permissions",
        "evaluate",
        "context.close",
        "new_context",
    ]
    assert launcher.calls.count("clear_cookies") == 3
    assert runtime.session.context is None
    assert "browser.close" not in launcher.calls


@pytest.mark.unit
def test_reuse_without_clearing_skips_clear_sequence(tmp_path: Path) -> None:
    runtime, launcher = _runtime(
        tmp_path,
        reuse_policy="reuse-across-tasks",
        clear_state_on_reuse=False,
        capture={"video": "never", "har": "never", "trace": "never"},
    )
    runtime.execute(_task(1))
    runtime.after_task()
    runtime.execute(_task(2))
    assert "clear_cookies" not in launcher.calls
    assert launcher.launches == 1
    assert launcher.calls.count("new_context") == 2
    assert launcher.calls.count("context.close") == 1


@pytest.mark.unit
def test_browser_renewed_after_configured_task_count(tmp_path: Path) -> None:
    runtime, launcher = _runtime(
        tmp_path,
        reuse_policy="reuse-across-tasks",
        browser_renewal_count=2,
        capture={"video": "never", "har": "never", "trace": "never"},
    )
    for index in range(1, 6):
        runtime.execute(_task(index))
        runtime.after_task()
    assert launcher.launches == 3
    assert launcher.calls.count("browser.close") == 2


@pytest.mark.unit
def test_passing_task_discards_failure_only_artifacts(tmp_path: Path) -> None:
    runtime, launcher = _runtime(tmp_path, engine=ConsoleEngine())
    result = runtime.execute(_task(1))

    assert result.status is TaskStatus.passed
    assert result.artifacts.videos == []
    assert result.artifacts.traces == []
    assert result.artifacts.hars == []
    assert result.artifacts.screenshots == []
    names = sorted(Path(path).name for path in result.artifacts.logs)
    assert names == ["console.log", "task.log"]
    task_dir = Path(result.artifacts.logs[0]).parent
    assert not (task_dir / "trace.zip").exists()
    assert not (task_dir / "network.har").exists()
    assert "visited work-1" in (task_dir / "console.log").read_text(encoding="utf-8")


@pytest.mark.unit
def test_failing_task_keeps_failure_artifacts(tmp_path: Path) -> None:
    runtime, launcher = _runtime(tmp_path)
    result = runtime.execute(_task(1, "@fail"))

    assert result.status is TaskStatus.failed
    assert result.error == "Scripted failure on attempt 1"
    assert len(result.artifacts.videos) == 1 and Path(result.artifacts.videos[0]).exists()
    assert len(result.artifacts.traces) == 1 and Path(result.artifacts.traces[0]).exists()
    assert len(result.artifacts.hars) == 1
    assert len(result.artifacts.screenshots) == 1
    assert [step.status for step in result.step_outcomes] == ["passed", "passed", "failed"]


@pytest.mark.unit
def test_never_mode_skips_capture_at_the_source(tmp_path: Path) -> None:
    runtime, launcher = _runtime(tmp_path, capture={"trace": "never", "video": "never", "har": "never"})
    runtime.execute(_task(1, "@fail"))
    assert "tracing.start" not in launcher.calls


@pytest.mark.unit
def test_engine_error_fails_task_but_worker_continues(tmp_path: Path) -> None:
    runtime, _ = _runtime(tmp_path)
    result = runtime.execute(_task(1, "@engine-error"))
    assert result.status is TaskStatus.failed
    assert result.error.startswith("ExecutionError:")
    assert runtime.fatal_error is None


@pytest.mark.unit
def test_fatal_error_still_reports_and_closes_browser(tmp_path: Path) -> None:
    runtime, launcher = _runtime(tmp_path, reuse_policy="reuse-across-tasks")
    result = runtime.execute(_task(1, "@fatal"))
    runtime.after_task()

    assert result.status is TaskStatus.failed
    assert "RuntimeError" in result.error
    assert runtime.fatal_error == result.error
    assert "browser.close" in launcher.calls


@pytest.mark.unit
def test_iteration_data_and_interpolated_name(tmp_path: Path) -> None:
    settings = RunnerSettings(artifacts_dir=tmp_path / "artifacts", browser_enabled=False)
    runtime = WorkerRuntime(3, settings, ScriptedEngine(), artifacts=ArtifactStore(root=tmp_path / "artifacts"))
    task = _task(1).model_copy(
        update={
            "scenario_name": "Login as <user>",
            "example_row": {"user": "alice"},
            "iteration_index": 2,
            "total_iterations": 3,
        }
    )
    result = runtime.execute(task)
    assert result.name == "Login as alice"
    assert result.worker_id == 3
    assert result.iteration_data == {"user": "alice"}
    log_text = Path(result.artifacts.logs[0]).read_text(encoding="utf-8")
    assert "iteration 2/3" in log_text
