"""Host platform detection shared by engine resolution and provisioning."""

from __future__ import annotations

import logging
import platform
import shutil
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PLATFORM_WIN64 = "win64"
PLATFORM_WIN32 = "win32"
PLATFORM_MAC_X64 = "mac-x64"
PLATFORM_MAC_ARM64 = "mac-arm64"
PLATFORM_LINUX64 = "linux64"

DISTRO_DEBIAN = "debian"
DISTRO_FEDORA = "fedora"
DISTRO_ARCH = "arch"
DISTRO_SUSE = "suse"
DISTRO_ALPINE = "alpine"
DISTRO_UNKNOWN = "unknown"

MIN_WINDOWS_MAJOR_VERSION = 10
LAST_LEGACY_WINDOWS_CHROME_VERSION = "109.0.5414.120"

_DISTRO_IDS = {
    DISTRO_DEBIAN: ("debian", "ubuntu", "linuxmint", "pop", "elementary", "raspbian", "deepin", "kali", "zorin"),
    DISTRO_FEDORA: ("fedora", "rhel", "centos", "rocky", "almalinux", "ol", "amzn", "anolis", "openeuler"),
    DISTRO_ARCH: ("arch", "manjaro", "endeavouros", "garuda", "artix"),
    DISTRO_SUSE: ("opensuse", "opensuse-leap", "opensuse-tumbleweed", "sles", "suse"),
    DISTRO_ALPINE: ("alpine",),
}

_PACKAGE_MANAGER_DISTROS = (
    ("apt-get", DISTRO_DEBIAN),
    ("dnf", DISTRO_FEDORA),
    ("yum", DISTRO_FEDORA),
    ("pacman", DISTRO_ARCH),
    ("zypper", DISTRO_SUSE),
    ("apk", DISTRO_ALPINE),
)


@dataclass(frozen=True)
class WindowsVersion:
    major: int
    minor: int
    build: int

    @property
    def supported(self) -> bool:
        return self.major >= MIN_WINDOWS_MAJOR_VERSION

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.build}"


def get_windows_version(system: str | None = None, version: str | None = None) -> WindowsVersion | None:
    """
    Parse the running Windows version, e.g. ``10.0.19045``.

    Returns:
        The version, or None when not running on Windows or the version is unreadable.
    """
    system = system or platform.system()
    if system != "Windows":
        return None
    version = version or platform.version()
    parts = version.split(".")
    try:
        major = int(parts[0])
        minor = int(parts[1]) if len(parts) > 1 else 0
        build = int(parts[2]) if len(parts) > 2 else 0
    except ValueError:
        logger.warning("Unable to parse Windows version: %s", version)
        return None
    return WindowsVersion(major=major, minor=minor, build=build)


def windows_unsupported_message(version: WindowsVersion) -> str:
    return (
        f"Windows {version} is not supported by current Chrome releases (Windows 10 or newer is required). "
        f"Install Chrome {LAST_LEGACY_WINDOWS_CHROME_VERSION} manually and set ENGINE_EXECUTABLE_PATH, "
        "or use remote mode with ENGINE_REMOTE_ENDPOINT."
    )


def detect_platform_key(system: str | None = None, machine: str | None = None) -> str:
    """Chrome for Testing platform key for this host."""
    system = system or platform.system()
    machine = (machine or platform.machine()).lower()

    if system == "Windows":
        return PLATFORM_WIN64 if machine in ("amd64", "x86_64", "arm64") else PLATFORM_WIN32
    if system == "Darwin":
        return PLATFORM_MAC_ARM64 if machine in ("arm64", "aarch64") else PLATFORM_MAC_X64
    if machine in ("arm64", "aarch64", "armv7l"):
        logger.warning("No official Chrome build for Linux %s, falling back to linux64", machine)
    return PLATFORM_LINUX64


def is_windows_platform(platform_key: str) -> bool:
    return platform_key in (PLATFORM_WIN64, PLATFORM_WIN32)


def distro_from_os_release(os_release: dict[str, str]) -> str:
    ids = [os_release.get("ID", "").lower()]
    ids.extend(os_release.get("ID_LIKE", "").lower().split())
    for candidate in ids:
        for distro, known_ids in _DISTRO_IDS.items():
            if candidate in known_ids or (distro == DISTRO_SUSE and candidate.startswith("opensuse")):
                return distro
    return DISTRO_UNKNOWN


def detect_linux_distro() -> str:
    """Classify the Linux distribution by os-release, then by available package manager."""
    if not sys.platform.startswith("linux"):
        return DISTRO_UNKNOWN

    try:
        distro = distro_from_os_release(platform.freedesktop_os_release())
    except OSError:
        distro = DISTRO_UNKNOWN
    if distro != DISTRO_UNKNOWN:
        return distro

    for command, candidate in _PACKAGE_MANAGER_DISTROS:
        if shutil.which(command):
            return candidate
    return DISTRO_UNKNOWN
