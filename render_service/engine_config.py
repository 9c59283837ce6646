"""
Configuration for the rendering engine and the page pool.

EngineConfig carries caller-supplied overrides; any field left as None is read
from the environment. EngineSettings is the validated, immutable result that the
engine manager, page pool and render pipeline work from. Out-of-range values are
logged and replaced by their defaults instead of failing the service start.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

MODE_LOCAL = "local"
MODE_REMOTE = "remote"

DEFAULT_VIEWPORT_WIDTH = 800
DEFAULT_VIEWPORT_HEIGHT = 600

DEFAULT_LAUNCH_ARGS: tuple[str, ...] = (
    "--disable-gpu",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--no-zygote",
    "--disable-extensions",
    "--disable-dev-shm-usage",
    "--disable-background-networking",
    "--disable-sync",
    "--disable-crash-reporter",
    "--disable-translate",
    "--disable-notifications",
    "--disable-device-discovery-notifications",
    "--disable-accelerated-2d-canvas",
)

_TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class ProxyConfig:
    """
    Proxy settings applied to a locally launched engine.

    Attributes:
        server: Proxy server, e.g. ``http://proxy.local:3128`` or ``socks5://host:1080``.
        username: Optional proxy user, used for page authentication.
        password: Optional proxy password.
        bypass_list: Hosts that bypass the proxy, e.g. ``localhost,127.0.0.1``.
    """

    server: str | None = None
    username: str | None = None
    password: str | None = None
    bypass_list: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.server)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


@dataclass
class EngineConfig:
    """
    Caller-supplied configuration. Every None field falls back to its environment variable.

    Attributes:
        mode: ``local`` (spawn the engine) or ``remote`` (attach over CDP).
        executable_path: Explicit engine executable for local mode.
        remote_endpoint: CDP endpoint (``ws://`` or ``http://``) for remote mode.
        headless: Run a local engine headless (default True).
        launch_args: Launch arguments; replaces the default flag set when given.
        proxy: Proxy settings for local mode.
        max_concurrency: Maximum concurrently leased pages (1-100, default 10).
        timeout_ms: Default navigation/render timeout in milliseconds (1000-300000, default 30000).
        acquire_timeout: Default pool wait in seconds (1-600, default 60).
        viewport_width: Default viewport width (1-10000, default 800).
        viewport_height: Default viewport height (1-10000, default 600).
        device_scale_factor: Default device scale factor (0.1-10.0, default 1.0).
        health_check_interval: Seconds between health probes (0.01-300, default 30).
        health_check_enabled: Run the background health loop (default True).
        max_reconnect_attempts: Reconnect attempts before giving up (1-50, default 5).
        reconnect_base_delay: Base reconnect delay in seconds (default 3.0).
        reconnect_max_delay: Reconnect delay cap in seconds (default 30.0).
        disconnect_debounce: Settle window after a disconnect in seconds (default 2.0).
        install_path: Root directory for provisioned engine binaries.
        debug: Escalate internal state corruption to assertions.
    """

    mode: str | None = None
    executable_path: str | None = None
    remote_endpoint: str | None = None
    headless: bool | None = None
    launch_args: list[str] | None = None
    proxy: ProxyConfig | None = None
    max_concurrency: int | None = None
    timeout_ms: int | None = None
    acquire_timeout: float | None = None
    viewport_width: int | None = None
    viewport_height: int | None = None
    device_scale_factor: float | None = None
    health_check_interval: float | None = None
    health_check_enabled: bool | None = None
    max_reconnect_attempts: int | None = None
    reconnect_base_delay: float | None = None
    reconnect_max_delay: float | None = None
    disconnect_debounce: float | None = None
    install_path: str | None = None
    debug: bool | None = None


@dataclass(frozen=True)
class EngineSettings:
    """Validated configuration snapshot. Replaced as a whole when the configuration is reloaded."""

    mode: str = MODE_LOCAL
    executable_path: str | None = None
    remote_endpoint: str | None = None
    headless: bool = True
    launch_args: tuple[str, ...] = ()
    custom_launch_args: bool = False
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    max_concurrency: int = 10
    timeout_ms: int = 30000
    acquire_timeout: float = 60.0
    viewport_width: int = DEFAULT_VIEWPORT_WIDTH
    viewport_height: int = DEFAULT_VIEWPORT_HEIGHT
    device_scale_factor: float = 1.0
    health_check_interval: float = 30.0
    health_check_enabled: bool = True
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 3.0
    reconnect_max_delay: float = 30.0
    disconnect_debounce: float = 2.0
    install_path: str = ""
    debug: bool = False

    @property
    def is_remote(self) -> bool:
        return self.mode == MODE_REMOTE

    def with_overrides(self, **changes: Any) -> EngineSettings:
        return replace(self, **changes)

    def as_config(self) -> EngineConfig:
        """EngineConfig that resolves back to these settings, used as the base of a partial reload."""
        return EngineConfig(
            mode=self.mode,
            executable_path=self.executable_path,
            remote_endpoint=self.remote_endpoint,
            headless=self.headless,
            launch_args=list(self.launch_args) if self.custom_launch_args else None,
            proxy=self.proxy,
            max_concurrency=self.max_concurrency,
            timeout_ms=self.timeout_ms,
            acquire_timeout=self.acquire_timeout,
            viewport_width=self.viewport_width,
            viewport_height=self.viewport_height,
            device_scale_factor=self.device_scale_factor,
            health_check_interval=self.health_check_interval,
            health_check_enabled=self.health_check_enabled,
            max_reconnect_attempts=self.max_reconnect_attempts,
            reconnect_base_delay=self.reconnect_base_delay,
            reconnect_max_delay=self.reconnect_max_delay,
            disconnect_debounce=self.disconnect_debounce,
            install_path=self.install_path or None,
            debug=self.debug,
        )

    def to_dict(self) -> dict[str, Any]:
        """Public view of the settings; proxy credentials are never included."""
        return {
            "mode": self.mode,
            "executable_path": self.executable_path,
            "remote_endpoint": self.remote_endpoint,
            "headless": self.headless,
            "launch_args": list(self.launch_args),
            "proxy_server": self.proxy.server,
            "proxy_bypass_list": self.proxy.bypass_list,
            "proxy_auth": self.proxy.has_credentials,
            "max_concurrency": self.max_concurrency,
            "timeout_ms": self.timeout_ms,
            "acquire_timeout": self.acquire_timeout,
            "viewport_width": self.viewport_width,
            "viewport_height": self.viewport_height,
            "device_scale_factor": self.device_scale_factor,
            "health_check_interval": self.health_check_interval,
            "health_check_enabled": self.health_check_enabled,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "reconnect_base_delay": self.reconnect_base_delay,
            "reconnect_max_delay": self.reconnect_max_delay,
            "disconnect_debounce": self.disconnect_debounce,
            "install_path": self.install_path,
            "debug": self.debug,
        }


def default_install_path() -> str:
    """Directory where provisioned engine binaries are unpacked."""
    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return str(Path(base) / "render-service" / "chrome")
    return str(Path.home() / ".cache" / "render-service" / "chrome")


def resolve_settings(config: EngineConfig | None = None, logger: logging.Logger | None = None) -> EngineSettings:
    """
    Resolve an EngineConfig against the environment into validated EngineSettings.

    Args:
        config: Caller overrides. If None, everything is read from environment variables.
        logger: Optional logger for validation warnings.

    Returns:
        The validated settings.
    """
    return _SettingsResolver(logger or logging.getLogger(__name__)).resolve(config or EngineConfig())


class _SettingsResolver:
    def __init__(self, log: logging.Logger) -> None:
        self.log = log

    def resolve(self, config: EngineConfig) -> EngineSettings:
        remote_endpoint = config.remote_endpoint if config.remote_endpoint is not None else os.environ.get("ENGINE_REMOTE_ENDPOINT") or None
        launch_args, custom_launch_args = self._validate_launch_args(config.launch_args)

        return EngineSettings(
            mode=self._validate_mode(config.mode, remote_endpoint),
            executable_path=config.executable_path if config.executable_path is not None else os.environ.get("ENGINE_EXECUTABLE_PATH") or None,
            remote_endpoint=remote_endpoint,
            headless=self._validate_bool_config(config.headless, "ENGINE_HEADLESS", True),
            launch_args=launch_args,
            custom_launch_args=custom_launch_args,
            proxy=self._validate_proxy(config.proxy),
            max_concurrency=self._validate_int_config(config.max_concurrency, "MAX_CONCURRENT_RENDERS", 10, 1, 100),
            timeout_ms=self._validate_int_config(config.timeout_ms, "RENDER_TIMEOUT_MS", 30000, 1000, 300000),
            acquire_timeout=self._validate_float_config(config.acquire_timeout, "RENDER_ACQUIRE_TIMEOUT", 60.0, 1.0, 600.0),
            viewport_width=self._validate_int_config(config.viewport_width, "DEFAULT_VIEWPORT_WIDTH", DEFAULT_VIEWPORT_WIDTH, 1, 10000),
            viewport_height=self._validate_int_config(config.viewport_height, "DEFAULT_VIEWPORT_HEIGHT", DEFAULT_VIEWPORT_HEIGHT, 1, 10000),
            device_scale_factor=self._validate_float_config(config.device_scale_factor, "DEVICE_SCALE_FACTOR", 1.0, 0.1, 10.0),
            health_check_interval=self._validate_float_config(config.health_check_interval, "ENGINE_HEALTH_CHECK_INTERVAL", 30.0, 0.01, 300.0),
            health_check_enabled=self._validate_bool_config(config.health_check_enabled, "ENGINE_HEALTH_CHECK_ENABLED", True),
            max_reconnect_attempts=self._validate_int_config(config.max_reconnect_attempts, "ENGINE_MAX_RECONNECT_ATTEMPTS", 5, 1, 50),
            reconnect_base_delay=self._validate_float_config(config.reconnect_base_delay, "ENGINE_RECONNECT_BASE_DELAY", 3.0, 0.0, 600.0),
            reconnect_max_delay=self._validate_float_config(config.reconnect_max_delay, "ENGINE_RECONNECT_MAX_DELAY", 30.0, 0.0, 600.0),
            disconnect_debounce=self._validate_float_config(config.disconnect_debounce, "ENGINE_DISCONNECT_DEBOUNCE", 2.0, 0.0, 60.0),
            install_path=config.install_path or os.environ.get("ENGINE_INSTALL_PATH") or default_install_path(),
            debug=self._validate_bool_config(config.debug, "RENDER_SERVICE_DEBUG", False),
        )

    def _validate_mode(self, value: str | None, remote_endpoint: str | None) -> str:
        if value is None:
            value = os.environ.get("ENGINE_MODE")
        if value is None:
            return MODE_REMOTE if remote_endpoint else MODE_LOCAL

        value = value.strip().lower()
        if value not in (MODE_LOCAL, MODE_REMOTE):
            self.log.warning("ENGINE_MODE must be '%s' or '%s', using default: %s", MODE_LOCAL, MODE_REMOTE, MODE_LOCAL)
            return MODE_LOCAL
        if value == MODE_REMOTE and not remote_endpoint:
            self.log.warning("Remote mode configured without ENGINE_REMOTE_ENDPOINT, connections will fail")
        return value

    def _validate_launch_args(self, value: list[str] | None) -> tuple[tuple[str, ...], bool]:
        if value is None:
            env_value = os.environ.get("ENGINE_LAUNCH_ARGS")
            if env_value:
                value = [arg.strip() for arg in env_value.split(",") if arg.strip()]
        if value:
            return tuple(value), True
        return DEFAULT_LAUNCH_ARGS, False

    def _validate_proxy(self, value: ProxyConfig | None) -> ProxyConfig:
        if value is not None:
            return value
        return ProxyConfig(
            server=os.environ.get("ENGINE_PROXY_SERVER") or None,
            username=os.environ.get("ENGINE_PROXY_USERNAME") or None,
            password=os.environ.get("ENGINE_PROXY_PASSWORD") or None,
            bypass_list=os.environ.get("ENGINE_PROXY_BYPASS_LIST") or None,
        )

    def _validate_int_config(self, value: int | None, env_var: str, default: int, min_value: int, max_value: int) -> int:
        if value is None:
            value = _parse_int(os.environ.get(env_var), default)
        else:
            value = int(value)

        if not (min_value <= value <= max_value):
            self.log.warning("%s must be between %s and %s, using default: %s", env_var, min_value, max_value, default)
            return default
        return value

    def _validate_float_config(self, value: float | None, env_var: str, default: float, min_value: float, max_value: float) -> float:
        if value is None:
            value = _parse_float(os.environ.get(env_var), default)
        else:
            value = float(value)

        if not (min_value <= value <= max_value):
            self.log.warning("%s must be between %s and %s, using default: %s", env_var, min_value, max_value, default)
            return default
        return value

    @staticmethod
    def _validate_bool_config(value: bool | None, env_var: str, default: bool) -> bool:
        if value is not None:
            return bool(value)
        env_value = os.environ.get(env_var)
        if env_value is None:
            return default
        return env_value.strip().lower() in _TRUE_VALUES


def _parse_float(value: str | None, default: float) -> float:
    """Parse a string to float with a default fallback."""
    try:
        return float(value) if value is not None else default
    except (ValueError, TypeError):
        return default


def _parse_int(value: str | None, default: int) -> int:
    """Parse a string to int with a default fallback."""
    try:
        return int(value) if value is not None else default
    except (ValueError, TypeError):
        return default


def is_env_flag_enabled(env_var: str, default: bool) -> bool:
    """Read a boolean feature flag such as ENGINE_AUTOSTART from the environment."""
    return _SettingsResolver._validate_bool_config(None, env_var, default)
