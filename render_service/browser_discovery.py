"""
Discovery of Chromium-family browsers already present on the host.

Used by the engine manager as the last step of executable resolution and by the
provisioning status endpoint to list what is installed.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import sys
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

SOURCE_DEFAULT_PATH = "default_path"
SOURCE_PATH_ENVIRONMENT = "path"
SOURCE_PUPPETEER_CACHE = "puppeteer_cache"
SOURCE_PLAYWRIGHT_CACHE = "playwright_cache"

_TYPE_PRIORITY = ("chrome", "edge", "brave", "chromium")
_VERSION_PATTERN = re.compile(r"(\d+\.\d+\.\d+(?:\.\d+)?)")


@dataclass
class BrowserInfo:
    type: str
    executable_path: str
    source: str
    version: str | None = None
    channel: str = "stable"

    def to_dict(self) -> dict[str, str | None]:
        return asdict(self)


def get_default_browser_paths(platform: str | None = None) -> list[str]:
    """Well-known install locations of Chrome, Edge and Chromium for the given platform."""
    platform = platform or sys.platform
    if platform == "win32":
        local_app_data = os.environ.get("LOCALAPPDATA", "")
        paths = [
            r"C:\Program Files\Google\Chrome\Application\chrome.exe",
            r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
            r"C:\Program Files\Microsoft\Edge\Application\msedge.exe",
            r"C:\Program Files (x86)\Microsoft\Edge\Application\msedge.exe",
        ]
        if local_app_data:
            paths.append(str(Path(local_app_data) / "Google" / "Chrome" / "Application" / "chrome.exe"))
            paths.append(str(Path(local_app_data) / "Microsoft" / "Edge" / "Application" / "msedge.exe"))
        return paths
    if platform == "darwin":
        return [
            "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
            "/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge",
            "/Applications/Brave Browser.app/Contents/MacOS/Brave Browser",
            "/Applications/Chromium.app/Contents/MacOS/Chromium",
        ]
    return [
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/usr/bin/microsoft-edge",
        "/usr/bin/brave-browser",
        "/snap/bin/chromium",
        # container images
        "/opt/google/chrome/chrome",
        "/opt/google/chrome/google-chrome",
        "/headless-shell/headless-shell",
        "/chrome/chrome",
    ]


def is_executable(path: str | Path) -> bool:
    candidate = Path(path)
    return candidate.is_file() and os.access(candidate, os.X_OK)


def guess_browser_type(path: str) -> str:
    lowered = path.lower()
    if "edge" in lowered:
        return "edge"
    if "brave" in lowered:
        return "brave"
    if "chromium" in lowered or "headless-shell" in lowered or "ms-playwright" in lowered:
        return "chromium"
    return "chrome"


def guess_channel(path: str) -> str:
    if "Beta" in path or "beta" in path:
        return "beta"
    if "Dev" in path or "unstable" in path:
        return "dev"
    if "SxS" in path or "Canary" in path:
        return "canary"
    return "stable"


def guess_version_from_path(path: str) -> str | None:
    """Extract a version from the install directory or symlink target, as laid out by browser caches."""
    match = _VERSION_PATTERN.search(str(Path(path).parent))
    if match:
        return match.group(1)
    try:
        target = os.readlink(path)
    except OSError:
        return None
    match = _VERSION_PATTERN.search(target)
    return match.group(1) if match else None


def _find_on_path() -> list[str]:
    names = (
        ("chrome.exe", "chromium.exe", "msedge.exe", "brave.exe")
        if sys.platform == "win32"
        else ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser", "msedge", "brave", "brave-browser")
    )
    found = []
    for name in names:
        path = shutil.which(name)
        if path and path not in found:
            found.append(path)
    return found


def _cache_executable_name() -> str:
    if sys.platform == "win32":
        return "chrome.exe"
    if sys.platform == "darwin":
        return "Chromium.app/Contents/MacOS/Chromium"
    return "chrome"


def _find_in_puppeteer_cache(home: Path) -> list[str]:
    cache_dir = home / ".cache" / "puppeteer"
    if not cache_dir.is_dir():
        return []
    # layout: <cache>/<browser>/<platform-version>/<platform-dir>/<executable>
    executable_name = _cache_executable_name()
    return sorted(str(p) for p in cache_dir.glob(f"*/*/*/{executable_name}") if is_executable(p))


def _find_in_playwright_cache(home: Path) -> list[str]:
    cache_dir = Path(os.environ.get("PLAYWRIGHT_BROWSERS_PATH") or home / ".cache" / "ms-playwright")
    if not cache_dir.is_dir():
        return []
    executable_name = _cache_executable_name()
    found = []
    for browser_dir in sorted(cache_dir.glob("chromium-*")):
        for candidate in (browser_dir / executable_name, *browser_dir.glob(f"chrome-*/{executable_name}")):
            if is_executable(candidate):
                found.append(str(candidate))
    return found


def _version_key(info: BrowserInfo) -> tuple[int, ...]:
    if not info.version:
        return ()
    return tuple(int(part) for part in info.version.split("."))


def find_installed_browsers(home: Path | None = None) -> list[BrowserInfo]:
    """
    List every Chromium-family browser found on the host, newest version first.

    Searches default install locations, PATH, then the Puppeteer and Playwright caches.
    """
    home = home or Path.home()
    results: list[BrowserInfo] = []
    seen: set[str] = set()

    def add(path: str, source: str) -> None:
        if path in seen:
            return
        seen.add(path)
        results.append(
            BrowserInfo(
                type=guess_browser_type(path),
                executable_path=path,
                source=source,
                version=guess_version_from_path(path),
                channel=guess_channel(path),
            )
        )

    for path in get_default_browser_paths():
        if is_executable(path):
            add(path, SOURCE_DEFAULT_PATH)
    for path in _find_on_path():
        add(path, SOURCE_PATH_ENVIRONMENT)
    for path in _find_in_puppeteer_cache(home):
        add(path, SOURCE_PUPPETEER_CACHE)
    for path in _find_in_playwright_cache(home):
        add(path, SOURCE_PLAYWRIGHT_CACHE)

    results.sort(key=_version_key, reverse=True)
    logger.debug("Found %d installed browser(s)", len(results))
    return results


def find_system_browser(home: Path | None = None) -> str | None:
    """
    Pick the browser to launch when nothing was provisioned or configured.

    Default install locations win in their listed order; otherwise the discovered
    browsers are ranked Chrome, Edge, Brave, Chromium.
    """
    for path in get_default_browser_paths():
        if is_executable(path):
            return path

    browsers = find_installed_browsers(home)
    for browser_type in _TYPE_PRIORITY:
        for browser in browsers:
            if browser.type == browser_type:
                return browser.executable_path
    return browsers[0].executable_path if browsers else None
