"""Pytest configuration and fixtures for render-service tests."""

import os
from unittest.mock import AsyncMock, patch

import pytest

from render_service.engine_config import EngineSettings
from tests.engine_fakes import FakePlaywright

os.environ.setdefault("METRICS_SERVER_ENABLED", "false")
os.environ.setdefault("ENGINE_AUTOSTART", "false")


@pytest.fixture
def fake_playwright():
    """Patch async_playwright() in the engine manager with a FakePlaywright."""
    playwright = FakePlaywright()
    with patch("render_service.engine_manager.async_playwright") as mock_async_playwright:
        mock_async_playwright.return_value.start = AsyncMock(return_value=playwright)
        yield playwright


@pytest.fixture
def remote_settings() -> EngineSettings:
    return EngineSettings(
        mode="remote",
        remote_endpoint="ws://engine.local:3000/devtools/browser/abc",
        health_check_enabled=False,
        max_reconnect_attempts=3,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.04,
        disconnect_debounce=0.01,
        install_path="/nonexistent/render-service",
    )


@pytest.fixture
def local_settings(tmp_path) -> EngineSettings:
    executable = tmp_path / "chrome"
    executable.write_text("#!/bin/sh\n")
    executable.chmod(0o755)
    return EngineSettings(
        mode="local",
        executable_path=str(executable),
        health_check_enabled=False,
        install_path=str(tmp_path / "install"),
    )
