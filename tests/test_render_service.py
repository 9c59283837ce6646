"""Tests for the RenderService facade: retries, structured results, lifecycle and provisioning wiring."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from playwright.async_api import Error as PlaywrightError

from render_service.engine_config import EngineConfig
from render_service.engine_installer import DEFAULT_ENGINE_VERSION, EngineInstaller, InstalledBinaryInfo
from render_service.errors import AcquireCancelledError, InstallFailedError, NavigationTimeoutError, SourceNotFoundError
from render_service.render_pipeline import RenderJob, RenderOutput, Viewport
from render_service.render_service import STATUS_ERROR, STATUS_OK, RenderService
from tests.engine_fakes import wait_for


def _service(settings, tmp_path, pipeline=None) -> RenderService:
    installer = EngineInstaller(
        install_root=tmp_path / "engines",
        platform_key="linux64",
        system="Darwin",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    return RenderService(settings=settings, pipeline=pipeline, installer=installer)


def _pipeline(*results) -> MagicMock:
    pipeline = MagicMock()
    pipeline.render = AsyncMock(side_effect=list(results))
    return pipeline


@pytest.mark.asyncio
async def test_render_success(fake_playwright, remote_settings, tmp_path):
    pipeline = _pipeline(RenderOutput(data="aGVsbG8=", image_type="png", encoding="base64"))
    service = _service(remote_settings, tmp_path, pipeline)

    result = await service.render(RenderJob(source="<p>hello</p>"))

    assert result.status == STATUS_OK
    assert result.ok
    assert result.data == "aGVsbG8="
    assert result.pages == 1
    assert result.error_kind is None
    assert service.pool.in_use == 0
    assert service.engine.metrics.total_jobs == 1
    await service.shutdown()


@pytest.mark.asyncio
async def test_render_passes_viewport_to_lease(fake_playwright, remote_settings, tmp_path):
    pipeline = _pipeline(RenderOutput(data="x", image_type="png", encoding="base64"))
    service = _service(remote_settings, tmp_path, pipeline)

    await service.render(RenderJob(source="<p/>", viewport=Viewport(width=640, height=480, device_scale_factor=2.0)))

    context = service.engine._browser.contexts[0]
    assert context.options == {"viewport": {"width": 640, "height": 480}, "device_scale_factor": 2.0}
    context.close.assert_awaited_once()
    await service.shutdown()


@pytest.mark.asyncio
async def test_render_invalid_job_is_rejected_without_engine(fake_playwright, remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path, _pipeline())

    result = await service.render(RenderJob(source="<p/>", image_type="gif"))

    assert result.status == STATUS_ERROR
    assert result.error_kind == "InvalidRequest"
    fake_playwright.chromium.connect_over_cdp.assert_not_awaited()
    assert service.engine.metrics.failed_jobs == 1


@pytest.mark.asyncio
async def test_render_retries_on_fresh_page(fake_playwright, remote_settings, tmp_path):
    pipeline = _pipeline(
        NavigationTimeoutError("Navigation timed out after 30000ms"),
        PlaywrightError("Target closed"),
        RenderOutput(data="ok", image_type="png", encoding="base64"),
    )
    service = _service(remote_settings, tmp_path, pipeline)

    result = await service.render(RenderJob(source="<p/>", retry=2))

    assert result.ok
    assert pipeline.render.await_count == 3
    pages = [call.args[0] for call in pipeline.render.await_args_list]
    assert len({id(page) for page in pages}) == 3
    assert service.pool.in_use == 0
    await service.shutdown()


@pytest.mark.asyncio
async def test_render_returns_last_error_after_retries(fake_playwright, remote_settings, tmp_path):
    pipeline = _pipeline(NavigationTimeoutError("first"), NavigationTimeoutError("second"))
    service = _service(remote_settings, tmp_path, pipeline)

    result = await service.render(RenderJob(source="https://slow.example.com", retry=1))

    assert result.status == STATUS_ERROR
    assert result.error_kind == "NavigationTimeout"
    assert result.message == "second"
    assert result.data is None
    await service.shutdown()


@pytest.mark.asyncio
async def test_render_does_not_retry_missing_source(fake_playwright, remote_settings, tmp_path):
    pipeline = _pipeline(SourceNotFoundError("File not found: /tmp/missing.html"))
    service = _service(remote_settings, tmp_path, pipeline)

    result = await service.render(RenderJob(source="file:///tmp/missing.html", retry=3))

    assert result.error_kind == "SourceNotFound"
    assert pipeline.render.await_count == 1
    await service.shutdown()


@pytest.mark.asyncio
async def test_render_unexpected_error_is_reported(fake_playwright, remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path, _pipeline(ValueError("boom")))

    result = await service.render(RenderJob(source="<p/>"))

    assert result.error_kind == "RenderFailed"
    assert "boom" in result.message
    await service.shutdown()


@pytest.mark.asyncio
async def test_render_connect_failure_is_structured(fake_playwright, remote_settings, tmp_path):
    fake_playwright.chromium.connect_over_cdp.side_effect = PlaywrightError("refused")
    service = _service(remote_settings, tmp_path, _pipeline())

    result = await service.render(RenderJob(source="<p/>"))

    assert result.error_kind == "ConnectFailed"
    assert service.pool.in_use == 0


@pytest.mark.asyncio
async def test_render_html_substitutes_through_job(fake_playwright, remote_settings, tmp_path):
    pipeline = _pipeline(RenderOutput(data="x", image_type="png", encoding="base64"))
    service = _service(remote_settings, tmp_path, pipeline)

    await service.render_html("<p>{{name}}</p>", {"name": "Ada"}, image_type="jpeg")

    job = pipeline.render.await_args.args[1]
    assert job.source_type == "html"
    assert job.data == {"name": "Ada"}
    assert job.image_type == "jpeg"
    await service.shutdown()


@pytest.mark.asyncio
async def test_render_url_builds_job(fake_playwright, remote_settings, tmp_path):
    pipeline = _pipeline(RenderOutput(data="x", image_type="png", encoding="base64"))
    service = _service(remote_settings, tmp_path, pipeline)

    await service.render_url("https://example.com", full_page=True)

    job = pipeline.render.await_args.args[1]
    assert job.source == "https://example.com"
    assert job.full_page is True
    await service.shutdown()


@pytest.mark.asyncio
async def test_start_stop_and_status(fake_playwright, remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path)

    result = await service.start()
    assert result.success
    assert service.status()["engine"]["connected"] is True

    result = await service.stop()
    assert result.success
    assert result.data == {"cancelled_requests": 0}
    status = service.status()
    assert status["engine"]["connected"] is False
    assert status["pool"] == {"in_use": 0, "waiting": 0, "max_concurrency": remote_settings.max_concurrency}
    assert status["install"]["status"] == "idle"


@pytest.mark.asyncio
async def test_start_failure_is_structured(fake_playwright, remote_settings, tmp_path):
    fake_playwright.chromium.connect_over_cdp.side_effect = PlaywrightError("refused")
    service = _service(remote_settings, tmp_path)

    result = await service.start()

    assert result.success is False
    assert result.error_kind == "ConnectFailed"


@pytest.mark.asyncio
async def test_stop_cancels_queued_requests(fake_playwright, remote_settings, tmp_path):
    settings = remote_settings.with_overrides(max_concurrency=1)
    service = _service(settings, tmp_path)
    held = await service.pool.acquire()

    waiting = asyncio.create_task(service.pool.acquire())
    await wait_for(lambda: service.pool.waiting == 1)

    result = await service.stop()

    assert result.data == {"cancelled_requests": 1}
    with pytest.raises(AcquireCancelledError):
        await waiting
    await service.pool.release(held)


@pytest.mark.asyncio
async def test_restart_waits_and_counts(fake_playwright, local_settings, tmp_path):
    service = _service(local_settings, tmp_path)
    await service.start()

    result = await service.restart()

    assert result.success
    assert service.engine.metrics.total_restarts == 1
    assert fake_playwright.chromium.launch.await_count == 2
    await service.shutdown()


@pytest.mark.asyncio
async def test_install_engine_connects_local_engine(fake_playwright, local_settings, tmp_path):
    service = _service(local_settings, tmp_path)
    executable = tmp_path / "engines" / DEFAULT_ENGINE_VERSION / "chrome-linux64" / "chrome"
    executable.parent.mkdir(parents=True)
    executable.write_text("")

    result = await service.install_engine()

    assert result.success
    assert result.data["executable_path"] == str(executable)
    assert service.provisioned_executable() == str(executable)
    assert fake_playwright.chromium.launch.await_args.kwargs["executable_path"] == str(executable)
    await service.shutdown()


@pytest.mark.asyncio
async def test_install_engine_failure(fake_playwright, remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path)

    result = await service.install_engine(sources=["GOOGLE"])

    assert result.success is False
    assert result.error_kind == "InstallFailed"
    assert service.install_progress()["status"] == "failed"


@pytest.mark.asyncio
async def test_start_install_runs_in_background(fake_playwright, remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path)
    release = asyncio.Event()

    async def slow_install(**kwargs):
        await release.wait()
        return InstalledBinaryInfo(installed=True, executable_path="/opt/chrome", version=DEFAULT_ENGINE_VERSION)

    service.installer.install = AsyncMock(side_effect=slow_install)

    first = service.start_install()
    second = service.start_install()

    assert first.success
    assert second.success is False
    assert second.error_kind == "AlreadyInstalling"

    release.set()
    await service._install_task
    assert service._install_task.result().success


@pytest.mark.asyncio
async def test_uninstall_stops_engine_running_from_install(fake_playwright, local_settings, tmp_path):
    service = _service(local_settings, tmp_path)
    executable = tmp_path / "engines" / DEFAULT_ENGINE_VERSION / "chrome-linux64" / "chrome"
    executable.parent.mkdir(parents=True)
    executable.write_text("")
    await service.start()
    assert service.engine.status()["executable_path"] == str(executable)

    result = await service.uninstall_engine()

    assert result.success
    assert service.engine.is_connected() is False
    assert not (tmp_path / "engines").exists()
    assert service.provisioned_executable() is None


@pytest.mark.asyncio
async def test_uninstall_missing_directory(fake_playwright, remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path)

    result = await service.uninstall_engine(str(tmp_path / "engines" / "missing"))

    assert result.success is False
    assert result.error_kind == "UninstallFailed"


@pytest.mark.asyncio
@pytest.mark.parametrize("relative", ["precious", "engines/../precious"])
async def test_uninstall_refuses_paths_outside_install_root(fake_playwright, remote_settings, tmp_path, relative):
    service = _service(remote_settings, tmp_path)
    (tmp_path / "engines").mkdir()
    precious = tmp_path / "precious"
    precious.mkdir()

    result = await service.uninstall_engine(str(tmp_path / relative))

    assert result.success is False
    assert result.error_kind == "UninstallFailed"
    assert precious.exists()
    assert (tmp_path / "engines").exists()


@pytest.mark.asyncio
async def test_install_dependencies_rejected_while_install_task_runs(fake_playwright, remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path)
    release = asyncio.Event()

    async def slow_install(**kwargs):
        await release.wait()
        return InstalledBinaryInfo(installed=True, executable_path="/opt/chrome", version=DEFAULT_ENGINE_VERSION)

    service.installer.install = AsyncMock(side_effect=slow_install)
    service.installer.install_linux_dependencies = AsyncMock(return_value=True)
    assert service.start_install().success

    result = await service.install_dependencies()

    assert result.success is False
    assert result.error_kind == "AlreadyInstalling"
    service.installer.install_linux_dependencies.assert_not_awaited()

    release.set()
    await service._install_task


@pytest.mark.asyncio
async def test_install_dependencies_result(fake_playwright, remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path)
    service.installer.install_linux_dependencies = AsyncMock(return_value=False)

    result = await service.install_dependencies()

    assert result.success is False
    assert result.error_kind == InstallFailedError.kind.value


@pytest.mark.asyncio
async def test_engine_status(fake_playwright, remote_settings, tmp_path, monkeypatch):
    monkeypatch.setattr("render_service.render_service.find_installed_browsers", lambda: [])
    service = _service(remote_settings, tmp_path)

    status = await service.engine_status()

    assert status["installed"]["installed"] is False
    assert status["platform"] == "linux64"
    assert status["default_version"] == DEFAULT_ENGINE_VERSION
    assert status["can_install"] is True
    assert status["system_browsers"] == []


def test_update_config_is_partial(remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path, _pipeline())

    config = service.update_config(EngineConfig(max_concurrency=3, timeout_ms=5000))

    assert config["max_concurrency"] == 3
    assert config["timeout_ms"] == 5000
    assert config["mode"] == "remote"
    assert config["remote_endpoint"] == remote_settings.remote_endpoint
    assert config["max_reconnect_attempts"] == remote_settings.max_reconnect_attempts
    assert service.pool.max_concurrency == 3
    assert service.pipeline.default_timeout_ms == 5000
    assert service.engine.settings.max_concurrency == 3


def test_update_config_rejects_out_of_range_values(remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path, _pipeline())

    config = service.update_config(EngineConfig(max_concurrency=500))

    assert config["max_concurrency"] == 10


def test_update_config_moves_install_root(remote_settings, tmp_path):
    service = _service(remote_settings, tmp_path, _pipeline())

    service.update_config(EngineConfig(install_path=str(tmp_path / "elsewhere")))

    assert service.installer.install_root == tmp_path / "elsewhere"
