"""Tests for engine provisioning: mirror fallback, progress reporting, dependency install and uninstall."""

import asyncio
import io
import json
import os
import stat
import zipfile
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from render_service.engine_installer import (
    DEFAULT_ENGINE_VERSION,
    DOWNLOAD_SOURCES,
    MANIFEST_URLS,
    EngineInstaller,
    InstallState,
    InstallStatus,
    build_download_url,
    executable_relative_path,
    find_manifest_download_url,
    resolve_source,
)
from render_service.errors import (
    AlreadyInstallingError,
    InstallFailedError,
    UninstallFailedError,
    UnsupportedPlatformError,
)
from render_service.platform_support import DISTRO_DEBIAN, DISTRO_UNKNOWN, WindowsVersion

VERSION = DEFAULT_ENGINE_VERSION


def _archive(platform_key: str = "linux64", include_executable: bool = True) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        if include_executable:
            info = zipfile.ZipInfo(f"chrome-{platform_key}/chrome")
            info.external_attr = (stat.S_IFREG | 0o644) << 16
            zf.writestr(info, "#!/bin/sh\necho 'Google Chrome for Testing 131.0.6778.204'\n")
        zf.writestr(f"chrome-{platform_key}/resources.pak", b"\x00" * 64)
    return buffer.getvalue()


def _installer(tmp_path, handler, **kwargs) -> EngineInstaller:
    return EngineInstaller(
        install_root=tmp_path / "engines",
        platform_key="linux64",
        system="Darwin",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _archive_with_link(name: str, link_target: str) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("chrome-linux64/chrome", "")
        info = zipfile.ZipInfo(name)
        info.external_attr = (stat.S_IFLNK | 0o777) << 16
        zf.writestr(info, link_target)
    return buffer.getvalue()


class StalledDownload:
    """Transport handler whose first download hangs after one chunk; later requests get a valid archive."""

    def __init__(self) -> None:
        self.stalled = asyncio.Event()
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.requests == 1:
            return httpx.Response(200, content=self._body(), headers={"content-length": "2048"})
        return httpx.Response(200, content=_archive())

    async def _body(self):
        yield b"\x00" * 1024
        self.stalled.set()
        await asyncio.Event().wait()


def test_build_download_url():
    assert build_download_url("https://mirror.example.com/cft/", VERSION, "linux64") == f"https://mirror.example.com/cft/{VERSION}/linux64/chrome-linux64.zip"


def test_resolve_source():
    assert resolve_source("GOOGLE") == DOWNLOAD_SOURCES["GOOGLE"]
    assert resolve_source("npmmirror") == DOWNLOAD_SOURCES["NPMMIRROR"]
    assert resolve_source("https://mirror.example.com") == "https://mirror.example.com"


def test_executable_relative_path():
    assert executable_relative_path("linux64").as_posix() == "chrome-linux64/chrome"
    assert executable_relative_path("win64").as_posix() == "chrome-win64/chrome.exe"
    assert executable_relative_path("mac-arm64").as_posix().endswith("Contents/MacOS/Google Chrome for Testing")


def test_find_manifest_download_url():
    manifest = {
        "versions": [
            {"version": "130.0.1", "downloads": {"chrome": [{"platform": "linux64", "url": "https://old.example.com"}]}},
            {"version": VERSION, "downloads": {"chrome": [{"platform": "win64", "url": "https://win.example.com"}, {"platform": "linux64", "url": "https://linux.example.com"}]}},
        ]
    }
    assert find_manifest_download_url(manifest, VERSION, "linux64") == "https://linux.example.com"
    assert find_manifest_download_url(manifest, VERSION, "mac-x64") is None
    assert find_manifest_download_url(manifest, "1.0", "linux64") is None


def test_progress_clamped_during_download():
    state = InstallState()
    state.update(status=InstallStatus.DOWNLOADING, progress=20)
    state.update(progress=45)

    snapshot = state.update(progress=30)
    assert snapshot.progress == 45

    snapshot = state.update(progress=150)
    assert snapshot.progress == 100


def test_progress_stage_max_resets_on_status_change():
    state = InstallState()
    state.update(status=InstallStatus.DOWNLOADING, progress=60)

    snapshot = state.update(status=InstallStatus.FAILED, progress=0)

    assert snapshot.progress == 0
    assert snapshot.status == InstallStatus.FAILED


def test_progress_never_negative():
    state = InstallState()
    assert state.update(status=InstallStatus.INSTALLING_DEPS, progress=-5).progress == 0


def test_progress_to_dict_rounds():
    state = InstallState()
    state.update(status=InstallStatus.DOWNLOADING, progress=33.333)
    assert state.snapshot().to_dict()["progress"] == 33.3
    assert state.snapshot().to_dict()["status"] == "downloading"


@pytest.mark.asyncio
async def test_install_falls_back_to_next_mirror(tmp_path):
    requested: list[str] = []
    archive = _archive()

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.host == "cdn.npmmirror.com":
            return httpx.Response(500)
        return httpx.Response(200, content=archive, headers={"content-length": str(len(archive))})

    installer = _installer(tmp_path, handler)
    info = await installer.install(VERSION, sources=["NPMMIRROR", "NPMMIRROR_REGISTRY", "GOOGLE"])

    assert requested == [
        build_download_url(DOWNLOAD_SOURCES["NPMMIRROR"], VERSION, "linux64"),
        build_download_url(DOWNLOAD_SOURCES["NPMMIRROR_REGISTRY"], VERSION, "linux64"),
    ]
    executable = installer.get_executable_path(VERSION)
    assert info.installed is True
    assert info.executable_path == str(executable)
    assert executable.is_file()
    assert executable.stat().st_mode & stat.S_IXUSR
    assert not (installer.install_root / ".downloads" / f"chrome-{VERSION}-linux64.zip").exists()

    progress = installer.progress()
    assert progress.status == InstallStatus.COMPLETED
    assert progress.progress == 100
    assert progress.total_bytes == len(archive)
    assert not installer.is_installing


@pytest.mark.asyncio
async def test_install_uses_manifest_when_mirrors_fail(tmp_path):
    archive = _archive()
    official_url = "https://downloads.example.com/cft/chrome-linux64.zip"
    manifest = {"versions": [{"version": VERSION, "downloads": {"chrome": [{"platform": "linux64", "url": official_url}]}}]}

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == MANIFEST_URLS[0]:
            return httpx.Response(200, content=json.dumps(manifest).encode(), headers={"content-type": "application/json"})
        if url == official_url:
            return httpx.Response(200, content=archive)
        return httpx.Response(404)

    installer = _installer(tmp_path, handler)
    info = await installer.install(VERSION, sources=["GOOGLE"])

    assert info.installed is True
    assert installer.get_executable_path(VERSION).is_file()


@pytest.mark.asyncio
async def test_install_fails_when_every_source_fails(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    installer = _installer(tmp_path, handler)

    with pytest.raises(InstallFailedError):
        await installer.install(VERSION, sources=["NPMMIRROR", "GOOGLE"])

    progress = installer.progress()
    assert progress.status == InstallStatus.FAILED
    assert progress.progress == 0
    assert progress.error
    assert not installer.is_installing


@pytest.mark.asyncio
async def test_install_rejects_archive_without_executable(tmp_path):
    archive = _archive(include_executable=False)

    installer = _installer(tmp_path, lambda request: httpx.Response(200, content=archive))

    with pytest.raises(InstallFailedError, match="verification"):
        await installer.install(VERSION, sources=["GOOGLE"])
    assert installer.progress().status == InstallStatus.FAILED


@pytest.mark.asyncio
async def test_install_corrupt_archive(tmp_path):
    installer = _installer(tmp_path, lambda request: httpx.Response(200, content=b"not a zip"))

    with pytest.raises(InstallFailedError, match="extract"):
        await installer.install(VERSION, sources=["GOOGLE"])
    assert not (installer.install_root / VERSION).exists()


@pytest.mark.asyncio
async def test_already_installed_skips_download(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    installer = _installer(tmp_path, handler)
    executable = installer.get_executable_path(VERSION)
    executable.parent.mkdir(parents=True)
    executable.write_text("")

    info = await installer.install(VERSION)

    assert info.executable_path == str(executable)
    assert installer.progress().status == InstallStatus.IDLE


@pytest.mark.asyncio
async def test_concurrent_install_rejected(tmp_path):
    installer = _installer(tmp_path, lambda request: httpx.Response(500))
    installer._installing = True

    with pytest.raises(AlreadyInstallingError):
        await installer.install(VERSION)
    with pytest.raises(AlreadyInstallingError):
        await installer.uninstall()


@pytest.mark.asyncio
async def test_inconsistent_state_rejected(tmp_path):
    installer = _installer(tmp_path, lambda request: httpx.Response(500))
    installer._state.update(status=InstallStatus.DOWNLOADING, progress=40)

    with pytest.raises(AlreadyInstallingError):
        await installer.install(VERSION)


@pytest.mark.asyncio
async def test_inconsistent_state_asserts_in_debug(tmp_path):
    installer = _installer(tmp_path, lambda request: httpx.Response(500), debug=True)
    installer._state.update(status=InstallStatus.EXTRACTING, progress=70)

    with pytest.raises(AssertionError):
        await installer.install(VERSION)


@pytest.mark.asyncio
async def test_windows_too_old_is_rejected(tmp_path):
    installer = EngineInstaller(install_root=tmp_path, platform_key="win64", system="Windows", transport=httpx.MockTransport(lambda request: httpx.Response(500)))

    with patch("render_service.engine_installer.get_windows_version", return_value=WindowsVersion(6, 1, 7601)):
        assert installer.can_install()[0] is False
        with pytest.raises(UnsupportedPlatformError):
            await installer.install(VERSION)

    assert installer.progress().status == InstallStatus.FAILED


@pytest.mark.asyncio
async def test_install_runs_linux_dependencies_first(tmp_path):
    archive = _archive()
    installer = EngineInstaller(
        install_root=tmp_path,
        platform_key="linux64",
        system="Linux",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=archive)),
    )
    installer.install_linux_dependencies = AsyncMock(return_value=True)

    await installer.install(VERSION, sources=["GOOGLE"])
    installer.install_linux_dependencies.assert_awaited_once()

    installer.install_linux_dependencies.reset_mock()
    await installer.uninstall(installer.install_root / VERSION)
    await installer.install(VERSION, sources=["GOOGLE"], install_deps=False)
    installer.install_linux_dependencies.assert_not_awaited()


@pytest.mark.asyncio
async def test_linux_dependencies_unknown_distro_is_skipped(tmp_path):
    installer = EngineInstaller(install_root=tmp_path, platform_key="linux64", system="Linux")
    installer._run_command = AsyncMock()

    with patch("render_service.engine_installer.detect_linux_distro", return_value=DISTRO_UNKNOWN):
        assert await installer.install_linux_dependencies() is True
    installer._run_command.assert_not_awaited()


@pytest.mark.asyncio
async def test_linux_dependencies_apt_as_root(tmp_path):
    installer = EngineInstaller(install_root=tmp_path, platform_key="linux64", system="Linux")
    installer._run_command = AsyncMock()

    with (
        patch("render_service.engine_installer.detect_linux_distro", return_value=DISTRO_DEBIAN),
        patch("render_service.engine_installer.os.geteuid", return_value=0, create=True),
    ):
        assert await installer.install_linux_dependencies() is True

    commands = [call.args[0] for call in installer._run_command.await_args_list]
    assert commands[0] == ["apt-get", "update"]
    assert commands[1][:4] == ["apt-get", "install", "-y", "--no-install-recommends"]
    assert "libnss3" in commands[1]


@pytest.mark.asyncio
async def test_linux_dependencies_failure_is_not_fatal(tmp_path):
    installer = EngineInstaller(install_root=tmp_path, platform_key="linux64", system="Linux")
    installer._run_command = AsyncMock(side_effect=RuntimeError("apt-get exited with 100"))

    with (
        patch("render_service.engine_installer.detect_linux_distro", return_value=DISTRO_DEBIAN),
        patch("render_service.engine_installer.os.geteuid", return_value=0, create=True),
    ):
        assert await installer.install_linux_dependencies() is False


@pytest.mark.asyncio
async def test_linux_dependencies_without_privileges_is_skipped(tmp_path):
    installer = EngineInstaller(install_root=tmp_path, platform_key="linux64", system="Linux")
    installer._run_command = AsyncMock()
    installer._has_passwordless_sudo = AsyncMock(return_value=False)

    with (
        patch("render_service.engine_installer.detect_linux_distro", return_value=DISTRO_DEBIAN),
        patch("render_service.engine_installer.os.geteuid", return_value=1000, create=True),
    ):
        assert await installer.install_linux_dependencies() is True
    installer._run_command.assert_not_awaited()


@pytest.mark.asyncio
async def test_uninstall_removes_directory(tmp_path):
    installer = _installer(tmp_path, lambda request: httpx.Response(500))
    executable = installer.get_executable_path(VERSION)
    executable.parent.mkdir(parents=True)
    executable.write_text("")

    await installer.uninstall()

    assert not installer.install_root.exists()


@pytest.mark.asyncio
async def test_uninstall_missing_directory(tmp_path):
    installer = _installer(tmp_path, lambda request: httpx.Response(500))

    with pytest.raises(UninstallFailedError):
        await installer.uninstall(installer.install_root / "missing")


@pytest.mark.asyncio
async def test_installed_info_falls_back_to_directory_version(tmp_path):
    installer = _installer(tmp_path, lambda request: httpx.Response(500))
    assert (await installer.get_installed_info()).installed is False

    for version in ("120.0.6099.109", VERSION):
        executable = installer.get_executable_path(version)
        executable.parent.mkdir(parents=True)
        executable.write_text("")

    installer._probe_version = AsyncMock(return_value=None)
    info = await installer.get_installed_info()

    assert info.installed is True
    assert info.version == VERSION
    assert info.executable_path == str(installer.get_executable_path(VERSION))
    assert installer.find_installed_executable() == str(installer.get_executable_path(VERSION))


@pytest.mark.asyncio
async def test_manifest_is_cached(tmp_path):
    calls = 0
    manifest = {"versions": [{"version": "130.0.1"}, {"version": VERSION}]}

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, content=json.dumps(manifest).encode())

    installer = _installer(tmp_path, handler)

    assert await installer.get_available_versions() == ["130.0.1", VERSION]
    assert await installer.get_available_versions() == ["130.0.1", VERSION]
    assert calls == 1


@pytest.mark.asyncio
async def test_manifest_unavailable(tmp_path):
    installer = _installer(tmp_path, lambda request: httpx.Response(500))

    assert await installer.fetch_manifest() is None
    assert await installer.get_available_versions() == []


@pytest.mark.asyncio
async def test_cancelled_install_can_be_retried(tmp_path):
    download = StalledDownload()
    installer = _installer(tmp_path, download)
    task = asyncio.create_task(installer.install(VERSION, sources=["GOOGLE"]))
    await asyncio.wait_for(download.stalled.wait(), timeout=2)
    assert installer.progress().status == InstallStatus.DOWNLOADING

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    progress = installer.progress()
    assert progress.status == InstallStatus.FAILED
    assert progress.error == "Install cancelled"
    assert not installer.is_installing
    assert not (installer.install_root / ".downloads" / f"chrome-{VERSION}-linux64.zip").exists()

    info = await installer.install(VERSION, sources=["GOOGLE"])

    assert info.installed is True
    assert installer.progress().status == InstallStatus.COMPLETED


@pytest.mark.asyncio
async def test_dependency_install_rejected_during_download(tmp_path):
    download = StalledDownload()
    installer = _installer(tmp_path, download)
    installer.install_linux_dependencies = AsyncMock(return_value=True)
    task = asyncio.create_task(installer.install(VERSION, sources=["GOOGLE"]))
    await asyncio.wait_for(download.stalled.wait(), timeout=2)
    before = installer.progress()

    with pytest.raises(AlreadyInstallingError):
        await installer.install_dependencies()

    after = installer.progress()
    assert after.status == InstallStatus.DOWNLOADING
    assert after.progress == before.progress
    installer.install_linux_dependencies.assert_not_awaited()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_standalone_dependency_install_holds_install_flag(tmp_path):
    installer = EngineInstaller(install_root=tmp_path, platform_key="linux64", system="Linux")
    seen: list[tuple[bool, InstallStatus]] = []

    async def run_command(command, timeout=None):
        seen.append((installer.is_installing, installer.progress().status))

    installer._run_command = run_command

    with (
        patch("render_service.engine_installer.detect_linux_distro", return_value=DISTRO_DEBIAN),
        patch("render_service.engine_installer.os.geteuid", return_value=0, create=True),
    ):
        assert await installer.install_dependencies() is True

    assert seen == [(True, InstallStatus.INSTALLING_DEPS), (True, InstallStatus.INSTALLING_DEPS)]
    assert not installer.is_installing
    assert installer.progress().status == InstallStatus.COMPLETED

    installer._installing = True
    with pytest.raises(AlreadyInstallingError):
        await installer.install_dependencies()


@pytest.mark.asyncio
async def test_standalone_dependency_install_failure(tmp_path):
    installer = EngineInstaller(install_root=tmp_path, platform_key="linux64", system="Linux")
    installer.install_linux_dependencies = AsyncMock(return_value=False)

    assert await installer.install_dependencies() is False

    progress = installer.progress()
    assert progress.status == InstallStatus.FAILED
    assert progress.error
    assert not installer.is_installing


@pytest.mark.asyncio
async def test_install_restores_archive_links(tmp_path):
    archive = _archive_with_link("chrome-linux64/libchrome.so", "chrome")
    installer = _installer(tmp_path, lambda request: httpx.Response(200, content=archive))

    await installer.install(VERSION, sources=["GOOGLE"])

    link = installer.install_root / VERSION / "chrome-linux64" / "libchrome.so"
    assert link.is_symlink()
    assert os.readlink(link) == "chrome"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("name", "link_target"),
    [
        ("chrome-linux64/escape", "../../../outside"),
        ("chrome-linux64/absolute", "/etc/passwd"),
        ("../escape", "chrome-linux64/chrome"),
    ],
)
async def test_install_rejects_links_leaving_install_directory(tmp_path, name, link_target):
    archive = _archive_with_link(name, link_target)
    installer = _installer(tmp_path, lambda request: httpx.Response(200, content=archive))

    with pytest.raises(InstallFailedError, match="outside the install directory"):
        await installer.install(VERSION, sources=["GOOGLE"])

    assert not (installer.install_root / VERSION).exists()
    assert not (installer.install_root / "escape").is_symlink()
    assert installer.progress().status == InstallStatus.FAILED


@pytest.mark.asyncio
async def test_uninstall_single_version_by_relative_path(tmp_path):
    installer = _installer(tmp_path, lambda request: httpx.Response(500))
    for version in ("120.0.6099.109", VERSION):
        executable = installer.get_executable_path(version)
        executable.parent.mkdir(parents=True)
        executable.write_text("")

    await installer.uninstall("120.0.6099.109")

    assert not (installer.install_root / "120.0.6099.109").exists()
    assert installer.get_executable_path(VERSION).is_file()


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["../precious", "/"])
async def test_uninstall_refuses_paths_outside_install_root(tmp_path, path):
    installer = _installer(tmp_path, lambda request: httpx.Response(500))
    installer.install_root.mkdir()
    (tmp_path / "precious").mkdir()

    with pytest.raises(UninstallFailedError, match="not inside the install path"):
        await installer.uninstall(path)

    assert (tmp_path / "precious").exists()
