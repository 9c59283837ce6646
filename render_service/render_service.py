"""
Public facade of the render service.

RenderService wires the engine manager, page pool, render pipeline and installer
together and is the only object request handlers talk to. Every public
operation returns a structured result; errors raised below this boundary are
converted into a status, a message and an error kind.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import ViewportSize

from render_service.browser_discovery import find_installed_browsers
from render_service.engine_config import MODE_LOCAL, EngineConfig, EngineSettings, resolve_settings
from render_service.engine_installer import DEFAULT_ENGINE_VERSION, EngineInstaller
from render_service.engine_manager import EngineManager
from render_service.errors import (
    ErrorKind,
    InvalidRequestError,
    RenderServiceError,
)
from render_service.page_pool import PagePool
from render_service.prometheus_metrics import (
    increment_engine_install,
    increment_engine_restart,
    increment_render_failure,
    increment_render_retry,
    increment_render_success,
)
from render_service.render_pipeline import RenderJob, RenderOutput, RenderPipeline

STATUS_OK = "ok"
STATUS_ERROR = "error"

# Failures that repeat identically on a fresh page
_NON_RETRYABLE_KINDS = (
    ErrorKind.INVALID_REQUEST,
    ErrorKind.SOURCE_NOT_FOUND,
    ErrorKind.ACQUIRE_CANCELLED,
    ErrorKind.NO_BINARY_FOUND,
    ErrorKind.ENCODING_ERROR,
)


@dataclass
class RenderResult:
    """Outcome of a render request. ``data`` is a list when the job was paginated."""

    status: str
    data: str | bytes | list[str] | list[bytes] | None = None
    message: str = ""
    error_kind: str | None = None
    time_ms: float = 0.0
    image_type: str | None = None
    encoding: str | None = None
    pages: int = 0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


@dataclass
class OperationResult:
    """Outcome of a lifecycle or provisioning operation."""

    success: bool
    message: str
    error_kind: str | None = None
    data: dict[str, Any] | None = None

    @classmethod
    def failure(cls, error: RenderServiceError) -> OperationResult:
        return cls(success=False, message=error.message, error_kind=error.kind.value)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RenderService:
    """One engine, one page pool, one installer; shared by every request of the process."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        engine: EngineManager | None = None,
        pool: PagePool | None = None,
        pipeline: RenderPipeline | None = None,
        installer: EngineInstaller | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.settings = settings or (engine.settings if engine else resolve_settings(logger=self.log))
        self.installer = installer or EngineInstaller(install_root=self.settings.install_path, debug=self.settings.debug)
        self.engine = engine or EngineManager(self.settings, provisioned_path_provider=self.provisioned_executable)
        self.pool = pool or PagePool(self.engine)
        self.pipeline = pipeline or RenderPipeline(default_timeout_ms=self.settings.timeout_ms)

        self._provisioned_path: str | None = None
        self._install_task: asyncio.Task[OperationResult] | None = None

    def provisioned_executable(self) -> str | None:
        """Executable of the last successful install, else the newest one found under the install root."""
        if self._provisioned_path and Path(self._provisioned_path).is_file():
            return self._provisioned_path
        return self.installer.find_installed_executable()

    async def render(self, job: RenderJob) -> RenderResult:
        """
        Render a job on a fresh page, retrying on a new lease up to ``job.retry`` times.

        Never raises for render problems; the result carries the error kind instead.
        """
        start_time = time.time()
        try:
            job.validate()
        except InvalidRequestError as e:
            self.log.warning("Rejected render request: %s", e.message)
            return self._render_failure(e, start_time)

        attempts = job.retry + 1
        last_error: RenderServiceError | None = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                increment_render_retry()
                self.log.info("Retrying render (attempt %d/%d)", attempt, attempts)
            try:
                output = await self._render_once(job)
            except RenderServiceError as e:
                last_error = e
            except PlaywrightError as e:
                last_error = RenderServiceError(f"Render failed: {e}")
            except Exception as e:
                self.log.error("Unexpected error while rendering: %s", e, exc_info=True)
                last_error = RenderServiceError(f"Unexpected render error: {e}")
            else:
                duration = time.time() - start_time
                self.engine.record_job(success=True, duration_ms=duration * 1000)
                increment_render_success(duration)
                return RenderResult(
                    status=STATUS_OK,
                    data=output.data,
                    message="Rendered successfully",
                    time_ms=round(duration * 1000, 2),
                    image_type=output.image_type,
                    encoding=output.encoding,
                    pages=output.pages,
                )

            self.log.warning("Render attempt %d/%d failed (%s): %s", attempt, attempts, last_error.kind.value, last_error.message)
            if last_error.kind in _NON_RETRYABLE_KINDS:
                break

        assert last_error is not None
        return self._render_failure(last_error, start_time)

    async def _render_once(self, job: RenderJob) -> RenderOutput:
        viewport = None
        device_scale_factor = None
        if job.viewport:
            if job.viewport.width and job.viewport.height:
                viewport = ViewportSize(width=job.viewport.width, height=job.viewport.height)
            device_scale_factor = job.viewport.device_scale_factor

        async with self.pool.lease(viewport=viewport, device_scale_factor=device_scale_factor) as lease:
            return await self.pipeline.render(lease.page, job)

    def _render_failure(self, error: RenderServiceError, start_time: float) -> RenderResult:
        self.engine.record_job(success=False)
        increment_render_failure(error.kind.value)
        return RenderResult(
            status=STATUS_ERROR,
            message=error.message,
            error_kind=error.kind.value,
            time_ms=round((time.time() - start_time) * 1000, 2),
        )

    async def render_url(self, url: str, **options: Any) -> RenderResult:
        """Capture a web page. ``options`` are RenderJob fields."""
        return await self.render(RenderJob(source=url, **options))

    async def render_html(self, html: str, data: dict[str, Any] | None = None, **options: Any) -> RenderResult:
        """Capture inline HTML after substituting ``{{key}}`` placeholders from ``data``."""
        return await self.render(RenderJob(source=html, source_type="html", data=data, **options))

    def status(self) -> dict[str, Any]:
        return {
            "engine": self.engine.status(),
            "pool": {
                "in_use": self.pool.in_use,
                "waiting": self.pool.waiting,
                "max_concurrency": self.pool.max_concurrency,
            },
            "install": self.installer.progress().to_dict(),
        }

    async def start(self) -> OperationResult:
        try:
            await self.engine.ensure_connected()
        except RenderServiceError as e:
            self.log.error("Engine start failed: %s", e.message)
            return OperationResult.failure(e)
        return OperationResult(success=True, message="Engine started", data=self.engine.status())

    async def stop(self) -> OperationResult:
        """Fail queued page requests and tear the connection down."""
        cancelled = self.pool.cancel_waiters("Engine is stopping")
        await self.engine.disconnect(graceful=True)
        return OperationResult(success=True, message="Engine stopped", data={"cancelled_requests": cancelled})

    async def restart(self) -> OperationResult:
        """Restart the engine once every active render has released its page."""
        try:
            async with self.pool.exclusive():
                await self.engine.restart()
        except RenderServiceError as e:
            self.log.error("Engine restart failed: %s", e.message)
            return OperationResult.failure(e)
        increment_engine_restart()
        return OperationResult(success=True, message="Engine restarted", data=self.engine.status())

    async def shutdown(self) -> None:
        """Stop everything owned by the service; used on application shutdown."""
        if self._install_task is not None and not self._install_task.done():
            self._install_task.cancel()
        await self.stop()

    def start_install(self, version: str | None = None, sources: list[str] | None = None, install_deps: bool = True) -> OperationResult:
        """
        Launch an install in the background and return immediately.

        Poll install_progress() for the outcome.
        """
        allowed, reason = self.installer.can_install()
        if not allowed:
            kind = ErrorKind.ALREADY_INSTALLING if self.installer.is_installing or self._install_running() else ErrorKind.UNSUPPORTED_PLATFORM
            return OperationResult(success=False, message=reason or "Install not possible", error_kind=kind.value)
        if self._install_running():
            return OperationResult(success=False, message="An install is already in progress", error_kind=ErrorKind.ALREADY_INSTALLING.value)

        self._install_task = asyncio.get_running_loop().create_task(self.install_engine(version, sources, install_deps))
        return OperationResult(success=True, message="Install started", data={"version": version or DEFAULT_ENGINE_VERSION})

    def _install_running(self) -> bool:
        return self._install_task is not None and not self._install_task.done()

    async def install_engine(self, version: str | None = None, sources: list[str] | None = None, install_deps: bool = True) -> OperationResult:
        """
        Install an engine and, in local mode, connect to it.

        A failure to start the freshly installed engine is logged but does not fail the install.
        """
        try:
            info = await self.installer.install(version=version, sources=sources, install_deps=install_deps)
        except RenderServiceError as e:
            increment_engine_install("failed")
            return OperationResult.failure(e)

        increment_engine_install("completed")
        self._provisioned_path = info.executable_path

        if self.engine.settings.mode == MODE_LOCAL and not self.engine.is_connected():
            try:
                await self.engine.ensure_connected()
            except RenderServiceError as e:
                self.log.warning("Installed engine could not be started: %s", e.message)

        return OperationResult(success=True, message="Engine installed", data=info.to_dict())

    def install_progress(self) -> dict[str, Any]:
        return self.installer.progress().to_dict()

    async def uninstall_engine(self, path: str | None = None) -> OperationResult:
        """Remove provisioned binaries, disconnecting first when the live engine runs from them."""
        try:
            target = self.installer.resolve_uninstall_target(path)
        except RenderServiceError as e:
            self.log.warning("Uninstall rejected: %s", e.message)
            return OperationResult.failure(e)

        status = self.engine.status()
        executable = status.get("executable_path")
        if status["connected"] and status["mode"] == MODE_LOCAL and executable and Path(executable).resolve().is_relative_to(target):
            self.log.info("Stopping engine before removing its install")
            await self.stop()

        try:
            await self.installer.uninstall(path)
        except RenderServiceError as e:
            return OperationResult.failure(e)

        self._provisioned_path = None
        return OperationResult(success=True, message="Engine uninstalled", data={"path": str(target)})

    async def install_dependencies(self) -> OperationResult:
        if self._install_running():
            return OperationResult(success=False, message="An install is already in progress", error_kind=ErrorKind.ALREADY_INSTALLING.value)
        try:
            installed = await self.installer.install_dependencies()
        except RenderServiceError as e:
            return OperationResult.failure(e)
        if installed:
            return OperationResult(success=True, message="System dependencies installed")
        return OperationResult(success=False, message="System dependency install failed, see logs", error_kind=ErrorKind.INSTALL_FAILED.value)

    async def engine_status(self) -> dict[str, Any]:
        """Installed binary, install progress and browsers already present on the host."""
        info = await self.installer.get_installed_info()
        allowed, reason = self.installer.can_install()
        browsers = await asyncio.to_thread(find_installed_browsers)
        return {
            "installed": info.to_dict(),
            "installing": self.installer.is_installing,
            "progress": self.installer.progress().to_dict(),
            "platform": self.installer.platform_key,
            "default_version": DEFAULT_ENGINE_VERSION,
            "can_install": allowed,
            "reason": reason,
            "system_browsers": [browser.to_dict() for browser in browsers],
        }

    def get_config(self) -> dict[str, Any]:
        return self.settings.to_dict()

    def update_config(self, changes: EngineConfig) -> dict[str, Any]:
        """
        Apply a partial configuration change.

        Fields left as None keep their current value. The live connection keeps
        running with its old settings until the next connect; pool capacity and the
        default timeout change immediately.
        """
        base = self.settings.as_config()
        overrides = {f.name: getattr(changes, f.name) for f in fields(changes) if getattr(changes, f.name) is not None}
        merged = EngineConfig(**{**{f.name: getattr(base, f.name) for f in fields(base)}, **overrides})
        settings = resolve_settings(merged, logger=self.log)

        self.settings = settings
        self.engine.update_settings(settings)
        self.pipeline.default_timeout_ms = settings.timeout_ms
        if settings.max_concurrency != self.pool.max_concurrency:
            self.pool.resize(settings.max_concurrency)
        if settings.install_path and not self.installer.is_installing and settings.install_path != str(self.installer.install_root):
            self.installer.install_root = Path(settings.install_path)
        self.installer.debug = settings.debug

        self.log.info("Configuration updated: %s", ", ".join(sorted(overrides)) or "no changes")
        return settings.to_dict()


_render_service: RenderService | None = None


def get_render_service() -> RenderService:
    """
    Get the global RenderService singleton instance.

    Returns:
        The RenderService instance.

    Note:
        Each worker process has its own instance (and its own engine).
    """
    global _render_service  # noqa: PLW0603
    if _render_service is None:
        _render_service = RenderService()
    return _render_service
