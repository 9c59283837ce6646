"""
Lifecycle management of the shared rendering engine.

The EngineManager owns at most one live engine connection. In local mode it
launches a Chromium executable through Playwright; in remote mode it attaches to
an externally managed engine over CDP and keeps that attachment alive with a
debounced, exponentially backed-off reconnection loop. Every connection state
transition is serialized through one asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import ProxySettings, ViewportSize, async_playwright

from render_service.browser_discovery import find_system_browser, is_executable
from render_service.engine_config import EngineSettings, resolve_settings
from render_service.errors import (
    ConnectFailedError,
    DisconnectedError,
    LaunchFailedError,
    NoBinaryFoundError,
)
from render_service.platform_support import get_windows_version, windows_unsupported_message
from render_service.sanitization import describe_proxy, sanitize_path_for_logging, sanitize_url_for_logging

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

HEALTH_PROBE_TIMEOUT_SECONDS = 5.0
_ENGINE_PROCESS_MARKERS = ("chrome", "chromium", "headless_shell", "headless-shell", "msedge", "brave")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEBOUNCING = "debouncing"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"


def compute_reconnect_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect attempt ``attempt`` (1-based): ``min(base * 2^(attempt-1), cap)``."""
    return min(base * (2 ** max(attempt - 1, 0)), cap)


@dataclass
class EngineMetrics:
    """
    Counters and gauges for the engine connection.

    Attributes:
        total_jobs: Render jobs submitted since start.
        failed_jobs: Render jobs that ended in an error.
        avg_render_time_ms: Average duration of successful jobs.
        total_restarts: Explicit engine restarts.
        total_reconnects: Successful automatic reconnects (remote mode).
        total_reconnect_attempts: Automatic reconnect attempts, successful or not.
        last_health_check: Timestamp of the last health probe.
        last_health_status: Result of the last health probe.
        consecutive_health_failures: Failed probes in a row.
        uptime_seconds: Time since the current connection was established.
        current_cpu_percent: CPU usage of the local engine process tree.
        current_engine_memory_mb: Resident memory of the local engine process tree.
        queue_size: Callers waiting for a page.
        active_pages: Pages currently leased.
        avg_queue_time_ms: Average time callers waited for a page.
    """

    total_jobs: int = 0
    failed_jobs: int = 0
    avg_render_time_ms: float = 0.0
    total_render_time_ms: float = 0.0

    total_restarts: int = 0
    total_reconnects: int = 0
    total_reconnect_attempts: int = 0
    last_health_check: float = 0.0
    last_health_status: bool = False
    consecutive_health_failures: int = 0
    uptime_seconds: float = 0.0
    start_time: float = field(default_factory=time.time)

    current_cpu_percent: float = 0.0
    avg_cpu_percent: float = 0.0
    current_engine_memory_mb: float = 0.0
    avg_engine_memory_mb: float = 0.0
    total_resource_samples: int = 0
    total_cpu_sum: float = 0.0
    total_memory_sum: float = 0.0

    queue_size: int = 0
    max_queue_size: int = 0
    active_pages: int = 0
    total_acquisitions: int = 0
    total_queue_time_ms: float = 0.0
    avg_queue_time_ms: float = 0.0

    def record_success(self, duration_ms: float) -> None:
        self.total_jobs += 1
        self.total_render_time_ms += duration_ms
        successful = self.total_jobs - self.failed_jobs
        if successful > 0:
            self.avg_render_time_ms = self.total_render_time_ms / successful

    def record_failure(self) -> None:
        self.total_jobs += 1
        self.failed_jobs += 1

    def record_restart(self) -> None:
        self.total_restarts += 1

    def record_reconnect_attempt(self) -> None:
        self.total_reconnect_attempts += 1

    def record_reconnect(self) -> None:
        self.total_reconnects += 1

    def record_health_check(self, is_healthy: bool) -> None:
        self.last_health_check = time.time()
        self.last_health_status = is_healthy
        self.consecutive_health_failures = 0 if is_healthy else self.consecutive_health_failures + 1

    def update_uptime(self, connected: bool) -> None:
        self.uptime_seconds = time.time() - self.start_time if connected else 0.0

    def reset_start_time(self) -> None:
        self.start_time = time.time()
        self.uptime_seconds = 0.0

    def get_error_rate(self) -> float:
        if self.total_jobs == 0:
            return 0.0
        return (self.failed_jobs / self.total_jobs) * 100.0

    def record_resource_usage(self, processes: list[psutil.Process]) -> None:
        """
        Record CPU and memory usage summed over the engine process tree.

        Args:
            processes: Engine processes; an empty list (remote mode) records nothing.
        """
        if not processes:
            return

        cpu_percent = 0.0
        memory_bytes = 0
        for process in processes:
            try:
                cpu_percent += process.cpu_percent()
                memory_bytes += process.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        memory_mb = memory_bytes / (1024 * 1024)
        self.current_cpu_percent = cpu_percent
        self.current_engine_memory_mb = memory_mb
        self.total_resource_samples += 1
        self.total_cpu_sum += cpu_percent
        self.total_memory_sum += memory_mb
        self.avg_cpu_percent = self.total_cpu_sum / self.total_resource_samples
        self.avg_engine_memory_mb = self.total_memory_sum / self.total_resource_samples

    def record_queue_entry(self, queue_time_ms: float) -> None:
        self.total_acquisitions += 1
        self.total_queue_time_ms += queue_time_ms
        self.avg_queue_time_ms = self.total_queue_time_ms / self.total_acquisitions

    def update_queue_metrics(self, queue_size: int, active_pages: int) -> None:
        self.queue_size = queue_size
        self.active_pages = active_pages
        self.max_queue_size = max(self.max_queue_size, queue_size)


class EngineManager:
    """
    Owner of the single engine connection.

    Render workers only read connection status and open pages; connect,
    disconnect and reconnect transitions all run under ``self._lock``.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        provisioned_path_provider: Callable[[], str | None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize EngineManager.

        Args:
            settings: Validated settings. If None, they are resolved from environment variables.
            provisioned_path_provider: Returns the executable of a provisioned engine, if any.
            logger: Optional logger; if None, a module-level logger is used.
        """
        self.log = logger or logging.getLogger(__name__)
        self.settings = settings or resolve_settings(logger=self.log)
        self.provisioned_path_provider = provisioned_path_provider

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._closing = False

        # Settings the live connection was established with
        self._active_settings: EngineSettings | None = None
        self._mode: str | None = None
        self._endpoint: str | None = None
        self._version: str | None = None
        self._started_at: float | None = None

        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task[None] | None = None
        self._health_monitor_task: asyncio.Task[None] | None = None
        self._shutdown_event = asyncio.Event()

        self.metrics = EngineMetrics()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._browser is not None and self._browser.is_connected()

    def update_settings(self, settings: EngineSettings) -> None:
        """Swap settings. A live connection keeps running; the new values apply on the next connect."""
        self.settings = settings
        self.log.info("Engine settings updated (mode: %s), effective on next connect", settings.mode)

    async def ensure_connected(self) -> None:
        """
        Make sure a live connection exists, connecting once if it does not.

        Idempotent: returns immediately when already connected. After reconnection
        has been exhausted, an explicit call resets the attempt counter first.

        Raises:
            NoBinaryFoundError: No executable could be resolved in local mode.
            LaunchFailedError: The local engine failed to launch.
            ConnectFailedError: The remote endpoint could not be attached.
        """
        if self.is_connected():
            return

        async with self._lock:
            if self.is_connected():
                return

            if self._state == ConnectionState.EXHAUSTED:
                self.log.info("Resetting reconnect attempts after exhaustion")
                self._reconnect_attempts = 0

            reconnecting = self._state in (ConnectionState.DEBOUNCING, ConnectionState.RECONNECTING)
            if not reconnecting:
                self._state = ConnectionState.CONNECTING
            try:
                await self._connect_internal(self.settings)
            except Exception:
                if not reconnecting:
                    self._state = ConnectionState.DISCONNECTED
                raise

            if reconnecting:
                self._reconnect_attempts = 0
                self._cancel_reconnect_task()

    async def _connect_internal(self, settings: EngineSettings) -> None:
        """Perform exactly one connect attempt. Caller holds ``self._lock``."""
        if self._playwright is None:
            self._playwright = await async_playwright().start()

        try:
            if settings.is_remote:
                browser = await self._connect_remote(settings)
                endpoint = settings.remote_endpoint
            else:
                endpoint = self.resolve_executable(settings)
                browser = await self._launch_local(settings, endpoint)
        except Exception:
            await self._stop_playwright()
            raise

        self._browser = browser
        self._active_settings = settings
        self._mode = settings.mode
        self._endpoint = endpoint
        self._version = self._read_version(browser)
        self._started_at = time.time()
        self._state = ConnectionState.CONNECTED
        self.metrics.reset_start_time()
        browser.on("disconnected", self._on_disconnected)

        self.log.info("Engine connected (mode: %s, version: %s)", settings.mode, self._version or "unknown")
        self._start_health_monitor(settings)

    async def _connect_remote(self, settings: EngineSettings) -> Browser:
        if not settings.remote_endpoint:
            raise ConnectFailedError("Remote mode requires a remote endpoint")

        self.log.info("Attaching to remote engine at %s", sanitize_url_for_logging(settings.remote_endpoint))
        assert self._playwright is not None
        try:
            return await self._playwright.chromium.connect_over_cdp(settings.remote_endpoint, timeout=settings.timeout_ms)
        except PlaywrightError as e:
            raise ConnectFailedError(f"Failed to connect to remote engine: {e}") from e

    async def _launch_local(self, settings: EngineSettings, executable: str) -> Browser:
        launch_kwargs: dict[str, Any] = {
            "executable_path": executable,
            "headless": settings.headless,
            "args": self.build_launch_args(settings),
            "timeout": settings.timeout_ms,
        }
        if settings.proxy.enabled:
            proxy: ProxySettings = {"server": settings.proxy.server or ""}
            if settings.proxy.bypass_list:
                proxy["bypass"] = settings.proxy.bypass_list
            if settings.proxy.username and settings.proxy.password:
                proxy["username"] = settings.proxy.username
                proxy["password"] = settings.proxy.password
            launch_kwargs["proxy"] = proxy

        self.log.info(
            "Launching local engine %s (headless: %s, proxy: %s)",
            sanitize_path_for_logging(executable, show_basename_only=False),
            settings.headless,
            describe_proxy(settings.proxy.server, settings.proxy.bypass_list),
        )
        assert self._playwright is not None
        try:
            return await self._playwright.chromium.launch(**launch_kwargs)
        except PlaywrightError as e:
            raise LaunchFailedError(f"Failed to launch engine: {e}") from e

    @staticmethod
    def build_launch_args(settings: EngineSettings) -> list[str]:
        """
        Launch arguments for a local engine.

        Configured arguments are used verbatim; otherwise the default flag set plus the
        window size. Proxy flags are dropped when a proxy is configured because the
        proxy is passed to the launcher directly.
        """
        args = list(settings.launch_args)
        if not settings.custom_launch_args:
            args = [arg for arg in args if not arg.startswith("--window-size=")]
            args.append(f"--window-size={settings.viewport_width},{settings.viewport_height}")
        if settings.proxy.enabled:
            args = [arg for arg in args if not arg.startswith("--proxy-")]
        return args

    def resolve_executable(self, settings: EngineSettings | None = None) -> str:
        """
        Resolve the engine executable: provisioned install, then configured path, then system browsers.

        Raises:
            NoBinaryFoundError: If nothing usable was found.
        """
        settings = settings or self.settings
        provisioned = self.provisioned_path_provider() if self.provisioned_path_provider else None

        for source, candidate in (("provisioned", provisioned), ("configured", settings.executable_path)):
            if not candidate:
                continue
            if Path(candidate).is_file():
                self.log.debug("Using %s engine executable %s", source, sanitize_path_for_logging(candidate, show_basename_only=False))
                return candidate
            self.log.warning("%s engine executable does not exist: %s", source.capitalize(), sanitize_path_for_logging(candidate, show_basename_only=False))

        detected = find_system_browser()
        if detected and is_executable(detected):
            self.log.debug("Using system engine executable %s", sanitize_path_for_logging(detected, show_basename_only=False))
            return detected

        windows_version = get_windows_version()
        if windows_version is not None and not windows_version.supported:
            raise NoBinaryFoundError(windows_unsupported_message(windows_version))
        raise NoBinaryFoundError("No engine executable found. Install one via /engine/install, set ENGINE_EXECUTABLE_PATH or use remote mode.")

    @staticmethod
    def _read_version(browser: Browser) -> str | None:
        try:
            version_string = browser.version
        except PlaywrightError:
            return None
        # "HeadlessChrome/131.0.6778.204" -> "131.0.6778.204"
        if "/" in version_string:
            return version_string.split("/", 1)[1]
        return version_string

    async def disconnect(self, graceful: bool = True) -> None:
        """
        Tear down the connection.

        Remote connections are only detached; the remote engine keeps running because
        other clients may share it. Local engines are closed. The closing flag keeps the
        resulting disconnect event from being treated as a fault.

        Args:
            graceful: Close the local browser before stopping the driver.
        """
        self._closing = True
        try:
            async with self._lock:
                await self._disconnect_internal(graceful)
        finally:
            self._closing = False

    async def _disconnect_internal(self, graceful: bool) -> None:
        self._cancel_reconnect_task()
        await self._stop_health_monitor()

        browser = self._browser
        self._browser = None
        if browser is not None and graceful and self._mode != "remote":
            try:
                await browser.close()
            except PlaywrightError as e:
                self.log.error("Error closing engine: %s", e)

        await self._stop_playwright()

        was_connected = self._state != ConnectionState.DISCONNECTED
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._started_at = None
        if was_connected:
            self.log.info("Engine disconnected (mode: %s)", self._mode or self.settings.mode)

    async def _stop_playwright(self) -> None:
        if self._playwright is None:
            return
        try:
            await self._playwright.stop()
        except Exception as e:  # noqa: BLE001
            self.log.error("Error stopping Playwright: %s", e)
        finally:
            self._playwright = None

    async def restart(self) -> None:
        """Disconnect and connect again with the current settings."""
        self.log.info("Restarting engine...")
        self._closing = True
        try:
            async with self._lock:
                await self._disconnect_internal(graceful=True)
        finally:
            self._closing = False
        await self.ensure_connected()
        self.metrics.record_restart()

    def _on_disconnected(self, browser: Browser) -> None:
        """
        Disconnect observer registered on every connected browser.

        Runs on the event loop thread, so state checks and the debounce reschedule
        below cannot interleave with another event.
        """
        if browser is not self._browser:
            self.log.debug("Ignoring disconnect event from a previous connection")
            return
        if self._closing:
            self.log.debug("Ignoring disconnect event during intentional shutdown")
            return

        self._browser = None
        self._started_at = None

        if self._mode != "remote":
            self.log.warning("Local engine exited unexpectedly; call start() to relaunch")
            self._state = ConnectionState.DISCONNECTED
            self._shutdown_event.set()
            return

        if self._state == ConnectionState.RECONNECTING:
            self.log.debug("Ignoring disconnect event, reconnection already running")
            return

        if self._state == ConnectionState.DEBOUNCING:
            self.log.debug("Disconnect event during debounce window, restarting window")
        else:
            self.log.warning("Remote engine disconnected, reconnecting after %.1fs", self._debounce_seconds())

        self._cancel_reconnect_task()
        self._state = ConnectionState.DEBOUNCING
        self._reconnect_task = asyncio.get_running_loop().create_task(self._debounce_and_reconnect())

    def _debounce_seconds(self) -> float:
        return (self._active_settings or self.settings).disconnect_debounce

    async def _debounce_and_reconnect(self) -> None:
        await asyncio.sleep(self._debounce_seconds())
        if self._closing or self._state != ConnectionState.DEBOUNCING:
            return
        self._state = ConnectionState.RECONNECTING
        await self._reconnect_loop()

    async def _reconnect_loop(self) -> None:
        settings = self._active_settings or self.settings

        while self._reconnect_attempts < settings.max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay = compute_reconnect_delay(self._reconnect_attempts, settings.reconnect_base_delay, settings.reconnect_max_delay)
            self.log.info("Reconnect attempt %d/%d in %.1fs", self._reconnect_attempts, settings.max_reconnect_attempts, delay)
            await asyncio.sleep(delay)

            async with self._lock:
                if self._closing or self._state != ConnectionState.RECONNECTING:
                    return
                self.metrics.record_reconnect_attempt()
                try:
                    await self._connect_internal(settings)
                except Exception as e:  # noqa: BLE001
                    self.log.warning("Reconnect attempt %d/%d failed: %s", self._reconnect_attempts, settings.max_reconnect_attempts, e)
                    continue

                # Counter resets fully once a reconnect succeeds
                self._reconnect_attempts = 0
                self.metrics.record_reconnect()
                self.log.info("Reconnected to remote engine")
                return

        async with self._lock:
            if self._state != ConnectionState.RECONNECTING:
                return
            self.log.error("Reconnection exhausted after %d attempts; call start() to retry", settings.max_reconnect_attempts)
            self._state = ConnectionState.EXHAUSTED
            await self._stop_health_monitor()
            await self._stop_playwright()

    def _cancel_reconnect_task(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def new_page(
        self,
        viewport: ViewportSize | None = None,
        device_scale_factor: float | None = None,
    ) -> tuple[BrowserContext, Page]:
        """
        Open an isolated context with one page on the live connection.

        Raises:
            DisconnectedError: If there is no live connection.
        """
        browser = self._browser
        if browser is None or not self.is_connected():
            raise DisconnectedError("Engine is not connected")

        settings = self.settings
        context = await browser.new_context(
            viewport=viewport or ViewportSize(width=settings.viewport_width, height=settings.viewport_height),
            device_scale_factor=device_scale_factor or settings.device_scale_factor,
        )
        try:
            page = await context.new_page()
        except BaseException:
            with contextlib.suppress(PlaywrightError):
                await context.close()
            raise
        return context, page

    def page_count(self) -> int:
        browser = self._browser
        if browser is None:
            return 0
        try:
            return sum(len(context.pages) for context in browser.contexts)
        except PlaywrightError:
            return 0

    def get_version(self) -> str | None:
        return self._version if self.is_connected() else None

    async def health_check(self) -> bool:
        """
        Probe the engine over CDP.

        Advisory only: a failed probe is logged and recorded but does not change the
        connection state. Real faults arrive through the disconnect event.
        """
        browser = self._browser
        if browser is None or self._state != ConnectionState.CONNECTED:
            return False

        try:
            if not browser.is_connected():
                is_healthy = False
            else:
                session = await browser.new_browser_cdp_session()
                try:
                    await asyncio.wait_for(session.send("Browser.getVersion"), timeout=HEALTH_PROBE_TIMEOUT_SECONDS)
                finally:
                    with contextlib.suppress(PlaywrightError):
                        await session.detach()
                is_healthy = True
        except (PlaywrightError, TimeoutError) as e:
            self.log.warning("Engine health probe failed: %s", e)
            is_healthy = False

        self.metrics.record_health_check(is_healthy)
        return is_healthy

    def _start_health_monitor(self, settings: EngineSettings) -> None:
        if not settings.health_check_enabled:
            return
        if self._health_monitor_task is not None and not self._health_monitor_task.done():
            return
        self._shutdown_event.clear()
        self._health_monitor_task = asyncio.get_running_loop().create_task(self._health_monitor_loop(settings.health_check_interval))
        self.log.info("Background health monitoring started (interval: %ss)", settings.health_check_interval)

    async def _stop_health_monitor(self) -> None:
        task = self._health_monitor_task
        self._health_monitor_task = None
        if task is None:
            return

        self._shutdown_event.set()
        if task is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except TimeoutError:
            self.log.warning("Health monitor task did not stop within timeout, cancelling...")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _health_monitor_loop(self, interval: float) -> None:
        """Periodically probe the engine and sample resource usage until shut down."""
        try:
            while not self._shutdown_event.is_set():
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                    break
                except TimeoutError:
                    pass

                if self._state != ConnectionState.CONNECTED:
                    continue

                self.metrics.update_uptime(connected=True)
                self.metrics.record_resource_usage(self._engine_processes())

                if await self.health_check():
                    self.log.debug("Health check passed (uptime: %.1fs, jobs: %d, failed: %d)", self.metrics.uptime_seconds, self.metrics.total_jobs, self.metrics.failed_jobs)
                else:
                    self.log.warning("Health check failed (%d consecutive)", self.metrics.consecutive_health_failures)
        except asyncio.CancelledError:
            self.log.info("Health monitor loop cancelled")
            raise
        except Exception as e:  # noqa: BLE001
            self.log.error("Unexpected error in health monitor loop: %s", e)
        finally:
            self.log.info("Health monitor loop stopped")

    def _engine_processes(self) -> list[psutil.Process]:
        """Local engine processes among our descendants (the Playwright driver spawns them)."""
        if self._mode == "remote":
            return []
        try:
            children = psutil.Process().children(recursive=True)
        except psutil.Error:
            return []

        processes = []
        for child in children:
            try:
                name = child.name().lower()
            except psutil.Error:
                continue
            if any(marker in name for marker in _ENGINE_PROCESS_MARKERS):
                processes.append(child)
        return processes

    def record_job(self, success: bool, duration_ms: float = 0.0) -> None:
        if success:
            self.metrics.record_success(duration_ms)
        else:
            self.metrics.record_failure()

    def status(self) -> dict[str, Any]:
        """Non-blocking snapshot of the connection; a disconnected snapshot when nothing is live."""
        connected = self.is_connected()
        settings = self._active_settings if connected and self._active_settings else self.settings
        mode = self._mode if connected and self._mode else settings.mode
        return {
            "connected": connected,
            "mode": mode,
            "state": self._state.value,
            "version": self._version if connected else None,
            "page_count": self.page_count() if connected else 0,
            "executable_path": self._endpoint if connected and mode == "local" else settings.executable_path,
            "endpoint": sanitize_url_for_logging(settings.remote_endpoint) if settings.remote_endpoint else None,
            "proxy": {"server": settings.proxy.server, "bypass_list": settings.proxy.bypass_list} if settings.proxy.enabled else None,
            "start_time": self._started_at,
            "total_jobs": self.metrics.total_jobs,
            "failed_jobs": self.metrics.failed_jobs,
            "reconnect_attempts": self._reconnect_attempts,
        }

    def get_metrics(self) -> dict[str, float | int | bool | str]:
        """Flat metrics dictionary for the detailed health endpoint and Prometheus gauges."""
        self.metrics.update_uptime(self.is_connected())

        system_memory = psutil.virtual_memory()
        last_health_check_str = ""
        if self.metrics.last_health_check > 0:
            last_health_check_str = datetime.fromtimestamp(self.metrics.last_health_check).strftime("%H:%M:%S %d.%m.%Y")

        return {
            "total_jobs": self.metrics.total_jobs,
            "failed_jobs": self.metrics.failed_jobs,
            "error_rate_percent": round(self.metrics.get_error_rate(), 2),
            "avg_render_time_ms": round(self.metrics.avg_render_time_ms, 2),
            "total_restarts": self.metrics.total_restarts,
            "total_reconnects": self.metrics.total_reconnects,
            "total_reconnect_attempts": self.metrics.total_reconnect_attempts,
            "last_health_check": last_health_check_str,
            "last_health_status": self.metrics.last_health_status,
            "consecutive_health_failures": self.metrics.consecutive_health_failures,
            "uptime_seconds": round(self.metrics.uptime_seconds, 2),
            "current_cpu_percent": round(self.metrics.current_cpu_percent, 2),
            "avg_cpu_percent": round(self.metrics.avg_cpu_percent, 2),
            "total_memory_mb": round(system_memory.total / (1024 * 1024), 2),
            "available_memory_mb": round(system_memory.available / (1024 * 1024), 2),
            "current_engine_memory_mb": round(self.metrics.current_engine_memory_mb, 2),
            "avg_engine_memory_mb": round(self.metrics.avg_engine_memory_mb, 2),
            "queue_size": self.metrics.queue_size,
            "max_queue_size": self.metrics.max_queue_size,
            "active_pages": self.metrics.active_pages,
            "avg_queue_time_ms": round(self.metrics.avg_queue_time_ms, 2),
            "max_concurrency": self.settings.max_concurrency,
        }
