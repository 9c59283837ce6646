"""
Provisioning of Chrome for Testing binaries.

The installer resolves a version, downloads the platform archive from a list of
mirrors (falling back to the next mirror on any failure and, as a last resort,
to the URL listed in the known-good-versions manifest), extracts it, marks the
executable and verifies it. On Linux it can install the shared libraries the
engine needs through the distribution's package manager.

Progress is published through InstallState, a lock-guarded snapshot that the
single running install writes and any number of status requests read.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import shutil
import stat
import threading
import time
import zipfile
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from render_service.engine_config import default_install_path
from render_service.errors import (
    AlreadyInstallingError,
    InstallFailedError,
    UninstallFailedError,
    UnsupportedPlatformError,
)
from render_service.platform_support import (
    DISTRO_ALPINE,
    DISTRO_ARCH,
    DISTRO_DEBIAN,
    DISTRO_FEDORA,
    DISTRO_SUSE,
    PLATFORM_MAC_ARM64,
    PLATFORM_MAC_X64,
    detect_linux_distro,
    detect_platform_key,
    get_windows_version,
    is_windows_platform,
    windows_unsupported_message,
)
from render_service.sanitization import sanitize_path_for_logging, sanitize_url_for_logging

DEFAULT_ENGINE_VERSION = "131.0.6778.204"

DOWNLOAD_SOURCES = {
    "GOOGLE": "https://storage.googleapis.com/chrome-for-testing-public",
    "NPMMIRROR": "https://cdn.npmmirror.com/binaries/chrome-for-testing",
    "NPMMIRROR_REGISTRY": "https://registry.npmmirror.com/-/binary/chrome-for-testing",
}
DEFAULT_SOURCE_ORDER = ("NPMMIRROR", "NPMMIRROR_REGISTRY", "GOOGLE")

MANIFEST_URLS = (
    "https://cdn.npmmirror.com/binaries/chrome-for-testing/known-good-versions-with-downloads.json",
    "https://googlechromelabs.github.io/chrome-for-testing/known-good-versions-with-downloads.json",
)
MANIFEST_CACHE_TTL_SECONDS = 60 * 60

DOWNLOAD_TIMEOUT_SECONDS = 30.0
PROGRESS_THROTTLE_SECONDS = 0.5
DEPENDENCY_INSTALL_TIMEOUT_SECONDS = 300.0
VERSION_PROBE_TIMEOUT_SECONDS = 10.0

# Progress bands of the overall install
DEPS_PROGRESS_SHARE = 20.0
DOWNLOAD_PROGRESS_START = 20.0
DOWNLOAD_PROGRESS_SHARE = 50.0
EXTRACT_PROGRESS = 70.0

LINUX_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    DISTRO_DEBIAN: (
        "ca-certificates", "fonts-liberation", "libasound2", "libatk-bridge2.0-0", "libatk1.0-0", "libatspi2.0-0",
        "libc6", "libcairo2", "libcups2", "libdbus-1-3", "libdrm2", "libexpat1", "libgbm1", "libglib2.0-0",
        "libgtk-3-0", "libnspr4", "libnss3", "libpango-1.0-0", "libx11-6", "libxcb1", "libxcomposite1",
        "libxdamage1", "libxext6", "libxfixes3", "libxkbcommon0", "libxrandr2", "wget", "xdg-utils",
        "fonts-noto-cjk", "fonts-wqy-zenhei",
    ),
    DISTRO_FEDORA: (
        "alsa-lib", "atk", "at-spi2-atk", "at-spi2-core", "cairo", "cups-libs", "dbus-libs", "expat", "glib2",
        "gtk3", "libdrm", "libgbm", "libX11", "libxcb", "libXcomposite", "libXdamage", "libXext", "libXfixes",
        "libxkbcommon", "libXrandr", "nspr", "nss", "pango", "wget", "xdg-utils", "google-noto-cjk-fonts",
        "wqy-zenhei-fonts",
    ),
    DISTRO_ARCH: (
        "alsa-lib", "atk", "at-spi2-atk", "at-spi2-core", "cairo", "cups", "dbus", "expat", "glib2", "gtk3",
        "libdrm", "libx11", "libxcb", "libxcomposite", "libxdamage", "libxext", "libxfixes", "libxkbcommon",
        "libxrandr", "mesa", "nspr", "nss", "pango", "wget", "xdg-utils", "noto-fonts-cjk", "wqy-zenhei",
    ),
    DISTRO_SUSE: (
        "alsa-lib", "atk", "at-spi2-atk", "at-spi2-core", "cairo", "cups-libs", "dbus-1", "expat", "glib2", "gtk3",
        "libdrm2", "libgbm1", "libX11-6", "libxcb1", "libXcomposite1", "libXdamage1", "libXext6", "libXfixes3",
        "libxkbcommon0", "libXrandr2", "mozilla-nspr", "mozilla-nss", "pango", "wget", "xdg-utils",
        "noto-sans-cjk-fonts",
    ),
    DISTRO_ALPINE: ("chromium", "nss", "freetype", "harfbuzz", "ca-certificates", "ttf-freefont", "font-noto-cjk"),
}


class InstallStatus(str, Enum):
    IDLE = "idle"
    INSTALLING_DEPS = "installing-deps"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (InstallStatus.INSTALLING_DEPS, InstallStatus.DOWNLOADING, InstallStatus.EXTRACTING)


@dataclass
class InstallProgress:
    status: InstallStatus = InstallStatus.IDLE
    progress: float = 0.0
    message: str = ""
    downloaded_bytes: int | None = None
    total_bytes: int | None = None
    speed: str | None = None
    eta: str | None = None
    error: str | None = None
    version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["progress"] = round(self.progress, 1)
        return data


class InstallState:
    """
    Install progress shared between the install task and status readers.

    Within the downloading phase, progress never goes backwards: a lower value
    (a mirror switch, a short buffered chunk) is clamped to the highest value
    reported so far. The maximum resets whenever the status changes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._progress = InstallProgress()
        self._stage_max = 0.0

    def snapshot(self) -> InstallProgress:
        with self._lock:
            return replace(self._progress)

    def reset(self, version: str | None = None) -> None:
        with self._lock:
            self._progress = InstallProgress(version=version)
            self._stage_max = 0.0

    def update(self, status: InstallStatus | None = None, progress: float | None = None, **fields: Any) -> InstallProgress:
        with self._lock:
            current = self._progress
            if status is not None and status != current.status:
                self._stage_max = 0.0

            effective_status = status or current.status
            if progress is not None:
                progress = max(0.0, min(100.0, progress))
                if effective_status == InstallStatus.DOWNLOADING:
                    if progress > self._stage_max:
                        self._stage_max = progress
                    else:
                        progress = self._stage_max

            changes: dict[str, Any] = dict(fields)
            if status is not None:
                changes["status"] = status
            if progress is not None:
                changes["progress"] = progress
            self._progress = replace(current, **changes)
            return replace(self._progress)


@dataclass
class InstalledBinaryInfo:
    installed: bool
    executable_path: str | None = None
    version: str | None = None
    install_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def executable_relative_path(platform_key: str) -> Path:
    """Location of the executable inside an extracted Chrome for Testing archive."""
    root = Path(f"chrome-{platform_key}")
    if is_windows_platform(platform_key):
        return root / "chrome.exe"
    if platform_key in (PLATFORM_MAC_X64, PLATFORM_MAC_ARM64):
        return root / "Google Chrome for Testing.app" / "Contents" / "MacOS" / "Google Chrome for Testing"
    return root / "chrome"


def build_download_url(base_url: str, version: str, platform_key: str) -> str:
    return f"{base_url.rstrip('/')}/{version}/{platform_key}/chrome-{platform_key}.zip"


def resolve_source(source: str) -> str:
    """Map a mirror name such as ``NPMMIRROR`` to its base URL; literal URLs pass through."""
    return DOWNLOAD_SOURCES.get(source.upper(), source)


def find_manifest_download_url(manifest: dict[str, Any], version: str, platform_key: str) -> str | None:
    for entry in manifest.get("versions", []):
        if entry.get("version") != version:
            continue
        for download in entry.get("downloads", {}).get("chrome", []):
            if download.get("platform") == platform_key:
                return download.get("url")
    return None


def _format_speed(bytes_per_second: float) -> str:
    return f"{bytes_per_second / 1024 / 1024:.2f} MB/s"


def _parse_version_output(output: str) -> str:
    version = output.strip()
    for prefix in ("Google Chrome for Testing", "Google Chrome", "Chromium"):
        if version.startswith(prefix):
            return version[len(prefix):].strip()
    return version


def _version_sort_key(name: str) -> tuple[int, ...]:
    try:
        return tuple(int(part) for part in name.split("."))
    except ValueError:
        return ()


class EngineInstaller:
    """Downloads, installs and removes engine binaries under one install root."""

    def __init__(
        self,
        install_root: str | Path | None = None,
        platform_key: str | None = None,
        system: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        debug: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize EngineInstaller.

        Args:
            install_root: Directory holding one subdirectory per installed version.
            platform_key: Chrome for Testing platform key; detected when None.
            system: Operating system name as reported by platform.system(); detected when None.
            transport: Optional httpx transport, used to stub downloads in tests.
            debug: Raise on detected state corruption instead of rejecting the request.
            logger: Optional logger; if None, a module-level logger is used.
        """
        self.log = logger or logging.getLogger(__name__)
        self.install_root = Path(install_root or default_install_path())
        self.platform_key = platform_key or detect_platform_key()
        self.system = system or platform.system()
        self.debug = debug
        self._transport = transport
        self._state = InstallState()
        self._installing = False
        self._manifest_cache: dict[str, Any] | None = None
        self._manifest_cache_time = 0.0

    @property
    def is_installing(self) -> bool:
        return self._installing

    def progress(self) -> InstallProgress:
        """Non-blocking snapshot of the current or last install."""
        return self._state.snapshot()

    def get_executable_path(self, version: str = DEFAULT_ENGINE_VERSION) -> Path:
        return self.install_root / version / executable_relative_path(self.platform_key)

    def find_installed_executable(self) -> str | None:
        """Executable of the newest installed version, probed on every call."""
        if not self.install_root.is_dir():
            return None
        versions = sorted((p.name for p in self.install_root.iterdir() if p.is_dir()), key=_version_sort_key, reverse=True)
        for version in versions:
            executable = self.get_executable_path(version)
            if executable.is_file():
                return str(executable)
        return None

    def can_install(self) -> tuple[bool, str | None]:
        """Whether an automatic install is possible here, with the reason when it is not."""
        if self._installing:
            return False, "An install is already in progress"
        if is_windows_platform(self.platform_key):
            windows_version = get_windows_version()
            if windows_version is not None and not windows_version.supported:
                return False, windows_unsupported_message(windows_version)
        return True, None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            follow_redirects=True,
            timeout=httpx.Timeout(DOWNLOAD_TIMEOUT_SECONDS),
            headers={"User-Agent": "render-engine-service"},
        )

    async def install(
        self,
        version: str | None = None,
        sources: list[str] | None = None,
        install_deps: bool = True,
    ) -> InstalledBinaryInfo:
        """
        Install an engine version.

        Args:
            version: Chrome for Testing version; defaults to DEFAULT_ENGINE_VERSION.
            sources: Mirror names or base URLs in priority order.
            install_deps: Install OS package dependencies first (Linux only).

        Returns:
            Information about the installed binary.

        Raises:
            AlreadyInstallingError: Another install has not finished yet.
            UnsupportedPlatformError: The OS is too old for current engine releases.
            InstallFailedError: Every download source failed, or extraction/verification failed.
        """
        self._check_not_installing()
        version = version or DEFAULT_ENGINE_VERSION

        executable = self.get_executable_path(version)
        if executable.is_file():
            self.log.info("Engine %s already installed at %s", version, sanitize_path_for_logging(str(executable), show_basename_only=False))
            return InstalledBinaryInfo(installed=True, executable_path=str(executable), version=version, install_path=str(self.install_root))

        self._installing = True
        self._state.reset(version=version)
        try:
            return await self._install_internal(version, executable, list(sources or DEFAULT_SOURCE_ORDER), install_deps)
        except asyncio.CancelledError:
            self._mark_cancelled()
            raise
        finally:
            self._installing = False

    async def install_dependencies(self) -> bool:
        """
        Install the Linux system dependencies on their own, outside of an engine install.

        Holds the same installing flag as install(), so the two never write progress at the same time.

        Raises:
            AlreadyInstallingError: An install is already running.
        """
        self._check_not_installing()
        self._installing = True
        self._state.reset()
        try:
            installed = await self.install_linux_dependencies()
        except asyncio.CancelledError:
            self._mark_cancelled()
            raise
        finally:
            self._installing = False

        if installed:
            self._state.update(status=InstallStatus.COMPLETED, progress=100, message="Dependencies installed")
        else:
            self._state.update(status=InstallStatus.FAILED, progress=0, message="Dependency install failed", error="Dependency install failed, see logs")
        return installed

    def _mark_cancelled(self) -> None:
        # An abandoned active status would block every later install
        if self._state.snapshot().status in ACTIVE_STATUSES:
            self.log.warning("Engine install cancelled")
            self._state.update(status=InstallStatus.FAILED, progress=0, message="Install cancelled", error="Install cancelled")

    def _check_not_installing(self) -> None:
        if self._installing:
            raise AlreadyInstallingError("An install is already in progress")

        status = self._state.snapshot().status
        if status in ACTIVE_STATUSES:
            # Progress claims an install is running although none is: corrupted state
            if self.debug:
                raise AssertionError(f"Install state is '{status.value}' but no install is running")
            self.log.error("Install state is '%s' but no install is running, rejecting request", status.value)
            raise AlreadyInstallingError("Install state is inconsistent, try again later")

    async def _install_internal(self, version: str, executable: Path, sources: list[str], install_deps: bool) -> InstalledBinaryInfo:
        self.log.info("Installing engine %s for %s into %s", version, self.platform_key, sanitize_path_for_logging(str(self.install_root), show_basename_only=False))
        try:
            if is_windows_platform(self.platform_key):
                windows_version = get_windows_version()
                if windows_version is not None and not windows_version.supported:
                    raise UnsupportedPlatformError(windows_unsupported_message(windows_version))

            if install_deps and self.system == "Linux":
                self._state.update(status=InstallStatus.INSTALLING_DEPS, progress=0, message="Installing system dependencies...")
                await self.install_linux_dependencies()

            self._state.update(status=InstallStatus.DOWNLOADING, progress=DOWNLOAD_PROGRESS_START, message="Preparing download...")
            archive = self.install_root / ".downloads" / f"chrome-{version}-{self.platform_key}.zip"
            async with self._client() as client:
                await self._download_with_fallback(client, version, sources, archive)

            self._state.update(status=InstallStatus.EXTRACTING, progress=EXTRACT_PROGRESS, message="Extracting...")
            version_dir = self.install_root / version
            try:
                await asyncio.to_thread(self._extract_archive, archive, version_dir)
            except (zipfile.BadZipFile, OSError, ValueError) as e:
                shutil.rmtree(version_dir, ignore_errors=True)
                raise InstallFailedError(f"Failed to extract archive: {e}") from e
            finally:
                with contextlib.suppress(OSError):
                    archive.unlink()

            if not is_windows_platform(self.platform_key) and executable.exists():
                executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

            if not executable.is_file():
                raise InstallFailedError(f"Install verification failed: {executable_relative_path(self.platform_key)} missing from archive")

        except (UnsupportedPlatformError, InstallFailedError) as e:
            self.log.error("Engine install failed: %s", e)
            self._state.update(status=InstallStatus.FAILED, progress=0, message="Install failed", error=str(e))
            raise
        except Exception as e:
            self.log.error("Engine install failed: %s", e, exc_info=True)
            self._state.update(status=InstallStatus.FAILED, progress=0, message="Install failed", error=str(e))
            raise InstallFailedError(f"Install failed: {e}") from e

        self._state.update(status=InstallStatus.COMPLETED, progress=100, message="Install completed", error=None)
        self.log.info("Engine %s installed: %s", version, sanitize_path_for_logging(str(executable), show_basename_only=False))
        return InstalledBinaryInfo(installed=True, executable_path=str(executable), version=version, install_path=str(self.install_root))

    async def _download_with_fallback(self, client: httpx.AsyncClient, version: str, sources: list[str], archive: Path) -> None:
        tried: list[str] = []
        last_error = ""

        for index, source in enumerate(sources):
            url = build_download_url(resolve_source(source), version, self.platform_key)
            tried.append(url)
            self._state.update(status=InstallStatus.DOWNLOADING, message=f"Downloading from {source}...")
            try:
                await self._download(client, url, archive)
                self.log.info("Downloaded engine archive from %s", source)
                return
            except (httpx.HTTPError, OSError) as e:
                last_error = str(e) or type(e).__name__
                self.log.warning("Download from %s failed: %s", source, last_error)
                if index + 1 < len(sources):
                    self._state.update(message=f"{source} failed, switching to {sources[index + 1]}...")

        self.log.info("All mirrors failed, looking up the download URL in the version manifest")
        self._state.update(message="Mirrors failed, trying the official download...")
        manifest = await self.fetch_manifest(client)
        official_url = find_manifest_download_url(manifest, version, self.platform_key) if manifest else None
        if official_url and official_url not in tried:
            try:
                await self._download(client, official_url, archive)
                self.log.info("Downloaded engine archive from %s", sanitize_url_for_logging(official_url))
                return
            except (httpx.HTTPError, OSError) as e:
                last_error = str(e) or type(e).__name__
                self.log.warning("Download from manifest URL failed: %s", last_error)
        elif official_url is None:
            self.log.warning("Version %s for %s not found in the version manifest", version, self.platform_key)

        raise InstallFailedError(f"All download sources failed: {last_error}")

    async def _download(self, client: httpx.AsyncClient, url: str, destination: Path) -> None:
        """Stream url into destination. A partial file is removed on any failure."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        last_update = 0.0

        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length") or 0)
                downloaded = 0
                with destination.open("wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
                        downloaded += len(chunk)

                        now = time.monotonic()
                        if now - last_update < PROGRESS_THROTTLE_SECONDS:
                            continue
                        last_update = now
                        self._report_download(downloaded, total, now - started)
                self._report_download(downloaded, total, time.monotonic() - started)
        except BaseException:
            with contextlib.suppress(OSError):
                destination.unlink()
            raise

    def _report_download(self, downloaded: int, total: int, elapsed: float) -> None:
        speed = downloaded / elapsed if elapsed > 0 else 0.0
        if total > 0:
            percent = downloaded / total * 100
            eta = (total - downloaded) / speed if speed > 0 else 0.0
            self._state.update(
                status=InstallStatus.DOWNLOADING,
                progress=DOWNLOAD_PROGRESS_START + percent * DOWNLOAD_PROGRESS_SHARE / 100,
                message=f"Downloading... {percent:.1f}%",
                downloaded_bytes=downloaded,
                total_bytes=total,
                speed=_format_speed(speed),
                eta=f"{int(eta + 0.999)}s",
            )
        else:
            # Without a content length only the byte count is known
            self._state.update(
                status=InstallStatus.DOWNLOADING,
                message=f"Downloading... {downloaded / 1024 / 1024:.1f} MB",
                downloaded_bytes=downloaded,
                speed=_format_speed(speed),
            )

    def _extract_archive(self, archive: Path, target: Path) -> None:
        """Extract a zip archive, restoring the permission bits and symlinks stored in it."""
        target.mkdir(parents=True, exist_ok=True)
        root = target.resolve()
        restore_modes = not is_windows_platform(self.platform_key)

        with zipfile.ZipFile(archive) as zf:
            for member in zf.infolist():
                mode = member.external_attr >> 16
                if restore_modes and stat.S_ISLNK(mode):
                    link_path = Path(os.path.normpath(root / member.filename))
                    link_target = zf.read(member).decode("utf-8")
                    resolved_target = Path(os.path.normpath(link_path.parent / link_target))
                    if not link_path.is_relative_to(root) or os.path.isabs(link_target) or not resolved_target.is_relative_to(root):
                        raise ValueError(f"Archive link {member.filename} -> {link_target} points outside the install directory")
                    link_path.parent.mkdir(parents=True, exist_ok=True)
                    with contextlib.suppress(FileNotFoundError):
                        link_path.unlink()
                    os.symlink(link_target, link_path)
                    continue

                extracted = Path(zf.extract(member, target))
                if restore_modes and mode & 0o777 and not member.is_dir():
                    extracted.chmod(mode & 0o777)

    async def fetch_manifest(self, client: httpx.AsyncClient | None = None, force: bool = False) -> dict[str, Any] | None:
        """
        Fetch the known-good-versions manifest, cached for one hour.

        Returns:
            The manifest, or None when every manifest URL failed.
        """
        now = time.monotonic()
        if not force and self._manifest_cache is not None and now - self._manifest_cache_time < MANIFEST_CACHE_TTL_SECONDS:
            return self._manifest_cache

        owns_client = client is None
        client = client or self._client()
        try:
            for url in MANIFEST_URLS:
                try:
                    response = await client.get(url, headers={"Accept": "application/json"})
                    response.raise_for_status()
                    manifest = response.json()
                except (httpx.HTTPError, ValueError) as e:
                    self.log.warning("Fetching version manifest from %s failed: %s", sanitize_url_for_logging(url), e)
                    continue
                self._manifest_cache = manifest
                self._manifest_cache_time = now
                return manifest
        finally:
            if owns_client:
                await client.aclose()
        return None

    async def get_available_versions(self) -> list[str]:
        manifest = await self.fetch_manifest()
        if not manifest:
            return []
        return [entry["version"] for entry in manifest.get("versions", []) if "version" in entry]

    async def get_installed_info(self, version: str | None = None) -> InstalledBinaryInfo:
        """Probe the filesystem (and the binary's --version) for an installed engine."""
        if version is not None:
            candidate = self.get_executable_path(version)
            executable = str(candidate) if candidate.is_file() else None
        else:
            executable = self.find_installed_executable()

        if executable is None:
            return InstalledBinaryInfo(installed=False, install_path=str(self.install_root))

        detected_version = await self._probe_version(executable)
        if detected_version is None:
            detected_version = Path(executable).relative_to(self.install_root).parts[0]
        return InstalledBinaryInfo(installed=True, executable_path=executable, version=detected_version, install_path=str(self.install_root))

    async def _probe_version(self, executable: str) -> str | None:
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.log.debug("Could not run %s --version: %s", sanitize_path_for_logging(executable), e)
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=VERSION_PROBE_TIMEOUT_SECONDS)
        except TimeoutError:
            process.kill()
            await process.wait()
            return None
        if process.returncode != 0 or not stdout.strip():
            return None
        return _parse_version_output(stdout.decode(errors="replace"))

    def resolve_uninstall_target(self, path: str | Path | None = None) -> Path:
        """
        Directory an uninstall of path would remove.

        Relative paths are taken relative to the install root. Anything that resolves
        outside the install root is refused.

        Raises:
            UninstallFailedError: The path lies outside the install root.
        """
        root = self.install_root.resolve()
        if not path:
            return root
        target = Path(path)
        if not target.is_absolute():
            target = root / target
        target = target.resolve()
        if not target.is_relative_to(root):
            raise UninstallFailedError(f"Refusing to remove {target}: not inside the install path {root}")
        return target

    async def uninstall(self, path: str | Path | None = None) -> None:
        """
        Remove the install root, or one directory inside it, recursively.

        Raises:
            AlreadyInstallingError: An install is in progress.
            UninstallFailedError: The directory is outside the install root, does not exist or could not be removed.
        """
        if self._installing:
            raise AlreadyInstallingError("Cannot uninstall while an install is in progress")

        target = self.resolve_uninstall_target(path)
        if not target.exists():
            raise UninstallFailedError(f"Install directory does not exist: {target}")

        self.log.info("Removing engine install %s", sanitize_path_for_logging(str(target), show_basename_only=False))
        try:
            await asyncio.to_thread(shutil.rmtree, target)
        except OSError as e:
            raise UninstallFailedError(f"Failed to remove {target}: {e}") from e

    async def install_linux_dependencies(self) -> bool:
        """
        Install the engine's shared-library dependencies with the distribution's package manager.

        Missing privileges and unsupported distributions are warnings, not failures.

        Returns:
            True if the packages were installed or the step was skipped, False if a command failed.
        """
        if self.system != "Linux":
            self.log.info("Not running on Linux, skipping dependency install")
            return True

        distro = detect_linux_distro()
        self.log.info("Detected Linux distribution family: %s", distro)
        packages = LINUX_DEPENDENCIES.get(distro)
        if packages is None:
            self.log.warning("Unsupported Linux distribution '%s', skipping dependency install", distro)
            self._report_deps(100, f"Unsupported distribution {distro}, skipped dependencies")
            return True

        is_root = hasattr(os, "geteuid") and os.geteuid() == 0
        if not is_root and not await self._has_passwordless_sudo():
            self.log.warning("No root privileges, skipping dependency install")
            self._report_deps(0, "No root privileges, skipped dependencies")
            return True

        prefix = [] if is_root else ["sudo", "-n"]
        self._report_deps(0, "Updating package index...")
        try:
            await self._run_package_commands(distro, prefix, list(packages))
        except (OSError, RuntimeError, TimeoutError) as e:
            self.log.warning("Dependency install failed, continuing without it: %s", e)
            self._report_deps(100, "Dependency install failed")
            return False

        self._report_deps(100, "Dependencies installed")
        self.log.info("Dependency install completed")
        return True

    def _report_deps(self, percent: float, message: str) -> None:
        if self._installing:
            self._state.update(status=InstallStatus.INSTALLING_DEPS, progress=percent * DEPS_PROGRESS_SHARE / 100, message=message)

    async def _run_package_commands(self, distro: str, prefix: list[str], packages: list[str]) -> None:
        if distro == DISTRO_DEBIAN:
            await self._run_command([*prefix, "apt-get", "update"])
            self._report_deps(20, "Installing dependencies (apt)...")
            await self._run_command([*prefix, "apt-get", "install", "-y", "--no-install-recommends", *packages])
        elif distro == DISTRO_FEDORA:
            self._report_deps(20, "Installing dependencies (dnf/yum)...")
            try:
                await self._run_command([*prefix, "dnf", "install", "-y", *packages])
            except (OSError, RuntimeError):
                await self._run_command([*prefix, "yum", "install", "-y", *packages])
        elif distro == DISTRO_ARCH:
            await self._run_command([*prefix, "pacman", "-Sy", "--noconfirm"])
            self._report_deps(20, "Installing dependencies (pacman)...")
            await self._run_command([*prefix, "pacman", "-S", "--noconfirm", "--needed", *packages])
        elif distro == DISTRO_SUSE:
            await self._run_command([*prefix, "zypper", "refresh"])
            self._report_deps(20, "Installing dependencies (zypper)...")
            await self._run_command([*prefix, "zypper", "install", "-y", *packages])
        elif distro == DISTRO_ALPINE:
            await self._run_command([*prefix, "apk", "update"])
            self._report_deps(20, "Installing dependencies (apk)...")
            await self._run_command([*prefix, "apk", "add", "--no-cache", *packages])

    async def _has_passwordless_sudo(self) -> bool:
        if shutil.which("sudo") is None:
            return False
        try:
            await self._run_command(["sudo", "-n", "true"], timeout=10.0)
        except (OSError, RuntimeError, TimeoutError):
            return False
        return True

    async def _run_command(self, command: list[str], timeout: float = DEPENDENCY_INSTALL_TIMEOUT_SECONDS) -> None:
        self.log.debug("Running: %s", " ".join(command[:4]))
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            raise
        if process.returncode != 0:
            raise RuntimeError(f"{command[0] if command[0] != 'sudo' else command[2]} exited with {process.returncode}: {stderr.decode(errors='replace').strip()[-500:]}")
