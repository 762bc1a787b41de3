"""Playwright browser lifecycle for a single worker process."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

from playwright.sync_api import sync_playwright

from parallax.config import RunnerSettings
from parallax.schemas import ArtifactKind, ArtifactSet, CaptureMode, ReusePolicy, TaskStatus

LOGGER = logging.getLogger("parallax.browser")

BLANK_PAGE = "about:blank"
CLEAR_STORAGE_JS = (
    "() => {"
    "  try { window.localStorage.clear(); } catch (err) {}"
    "  try { window.sessionStorage.clear(); } catch (err) {}"
    "}"
)


class PlaywrightLauncher:
    """Start Playwright lazily and launch browsers of the configured type."""

    def __init__(self, settings: RunnerSettings) -> None:
        self._settings = settings
        self._playwright = None

    def launch(self) -> Any:
        if self._playwright is None:
            self._playwright = sync_playwright().start()
        browser_name = self._settings.browser
        browser_type = getattr(self._playwright, browser_name)
        launch_kwargs = {"headless": self._settings.headless}
        if browser_name == "chromium":
            launch_kwargs["args"] = ["--disable-dev-shm-usage", "--no-sandbox"]
        browser = browser_type.launch(**launch_kwargs)
        LOGGER.info("Launched %s browser", browser_name)
        return browser

    def stop(self) -> None:
        if self._playwright is None:
            return
        try:
            self._playwright.stop()
        except Exception as exc:  # pragma: no cover
            LOGGER.debug("Failed to stop Playwright: %s", exc)
        self._playwright = None


LauncherFactory = Callable[[RunnerSettings], Any]


class BrowserSession:
    """The single browser handle owned by one worker process.

    A task runs in ``begin_task``/``end_task`` inside its own browser context,
    which ``end_task`` always closes. ``after_task`` then applies the reuse
    policy to the browser itself.
    """

    def __init__(self, settings: RunnerSettings, launcher: Any) -> None:
        self._settings = settings
        self._launcher = launcher
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None
        self._task_dir: Optional[Path] = None
        self._tracing = False
        self._console: List[str] = []
        self._screenshots: List[str] = []
        self._tasks_since_launch = 0

    @property
    def browser(self) -> Any:
        return self._browser

    @property
    def context(self) -> Any:
        return self._context

    @property
    def tasks_since_launch(self) -> int:
        return self._tasks_since_launch

    def _mode(self, kind: ArtifactKind) -> CaptureMode:
        return self._settings.capture.mode_for(kind)

    def _reusing(self) -> bool:
        return self._settings.reuse_policy is ReusePolicy.reuse_across_tasks

    def _context_kwargs(self, task_dir: Path) -> dict:
        kwargs: dict = {
            "viewport": {
                "width": self._settings.viewport_width,
                "height": self._settings.viewport_height,
            },
        }
        if self._mode(ArtifactKind.video) is not CaptureMode.never:
            kwargs["record_video_dir"] = str(task_dir / "videos")
        if self._mode(ArtifactKind.har) is not CaptureMode.never:
            kwargs["record_har_path"] = str(task_dir / "network.har")
        return kwargs

    def _on_console(self, message: Any) -> None:
        stamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())
        self._console.append(f"[{stamp}] [{str(message.type).upper()}] {message.text}")

    def begin_task(self, task_dir: Path) -> Any:
        self._task_dir = task_dir
        self._console = []
        self._screenshots = []
        if self._browser is None or not self._browser.is_connected():
            self._browser = self._launcher.launch()
            self._tasks_since_launch = 0
        self._close_context()
        self._context = self._browser.new_context(**self._context_kwargs(task_dir))
        self._context.on("console", self._on_console)
        if self._mode(ArtifactKind.trace) is not CaptureMode.never:
            self._context.tracing.start(screenshots=True, snapshots=True, sources=True)
            self._tracing = True
        self._page = self._context.new_page()
        return self._page

    def capture_failure_screenshot(self, status: TaskStatus) -> None:
        if status is TaskStatus.passed or self._mode(ArtifactKind.screenshot) is CaptureMode.never:
            return
        if self._page is None or self._page.is_closed() or self._task_dir is None:
            return
        target = self._task_dir / "failure.png"
        try:
            self._page.screenshot(path=str(target), full_page=True)
            self._screenshots.append(str(target))
        except Exception as exc:
            LOGGER.debug("Failure screenshot skipped: %s", exc)

    def end_task(self) -> ArtifactSet:
        """Stop per-task capture and return the files it produced."""
        artifacts = ArtifactSet(screenshots=list(self._screenshots))
        task_dir = self._task_dir
        if self._context is None or task_dir is None:
            return artifacts

        if self._tracing:
            trace_path = task_dir / "trace.zip"
            try:
                self._context.tracing.stop(path=str(trace_path))
                artifacts.traces.append(str(trace_path))
            except Exception as exc:
                LOGGER.debug("Failed to save trace: %s", exc)
            self._tracing = False

        video = None
        if self._page is not None and self._mode(ArtifactKind.video) is not CaptureMode.never:
            try:
                video = self._page.video
            except Exception as exc:  # pragma: no cover
                LOGGER.debug("No video handle available: %s", exc)

        if self._reusing() and self._settings.clear_state_on_reuse:
            self.clear_state()
        self._close_context()
        if video is not None:
            try:
                artifacts.videos.append(str(video.path()))
            except Exception as exc:
                LOGGER.debug("Could not get video path: %s", exc)
        har_path = task_dir / "network.har"
        if har_path.exists():
            artifacts.hars.append(str(har_path))

        if self._console:
            console_path = task_dir / "console.log"
            console_path.write_text("\n".join(self._console) + "\n", encoding="utf-8")
            artifacts.logs.append(str(console_path))
            self._console = []
        return artifacts

    def after_task(self) -> None:
        """Apply the reuse policy once the task's result has been sent."""
        self._tasks_since_launch += 1
        if not self._reusing():
            self.close()
            return
        renewal = self._settings.browser_renewal_count
        if renewal and self._tasks_since_launch >= renewal:
            LOGGER.info("Closing browser after %s tasks", self._tasks_since_launch)
            self.close()
            return
        LOGGER.debug("Browser kept open for reuse")

    def clear_state(self) -> None:
        """Blank page, cookies, permissions, then storage, in that order."""
        context = self._context
        page = self._page
        if context is None:
            return
        try:
            if page is not None and not page.is_closed():
                page.goto(BLANK_PAGE)
            context.clear_cookies()
            context.clear_permissions()
            if page is not None and not page.is_closed():
                page.evaluate(CLEAR_STORAGE_JS)
            LOGGER.debug("Browser state cleared for reuse")
        except Exception as exc:
            LOGGER.warning("Failed to clear browser state: %s", exc)

    def _close_page(self) -> None:
        page, self._page = self._page, None
        if page is None:
            return
        try:
            page.close()
        except Exception as exc:
            LOGGER.debug("Page close failed: %s", exc)

    def _close_context(self) -> None:
        self._close_page()
        context, self._context = self._context, None
        self._tracing = False
        if context is None:
            return
        try:
            context.close()
        except Exception as exc:
            LOGGER.debug("Context close failed: %s", exc)

    def close(self) -> None:
        self._close_context()
        browser, self._browser = self._browser, None
        self._tasks_since_launch = 0
        if browser is None:
            return
        try:
            browser.close()
            LOGGER.debug("Browser session closed")
        except Exception as exc:
            LOGGER.debug("Browser close failed: %s", exc)

    def shutdown(self) -> None:
        self.close()
        stop = getattr(self._launcher, "stop", None)
        if callable(stop):
            stop()
