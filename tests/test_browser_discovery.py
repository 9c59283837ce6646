from pathlib import Path

import pytest

from render_service import browser_discovery
from render_service.browser_discovery import (
    SOURCE_DEFAULT_PATH,
    SOURCE_PLAYWRIGHT_CACHE,
    SOURCE_PUPPETEER_CACHE,
    find_installed_browsers,
    find_system_browser,
    get_default_browser_paths,
    guess_browser_type,
    guess_channel,
    guess_version_from_path,
)


def _executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def isolated(monkeypatch):
    """Hide the real host browsers so only files under tmp_path are discovered."""
    monkeypatch.delenv("PLAYWRIGHT_BROWSERS_PATH", raising=False)
    monkeypatch.setattr(browser_discovery, "get_default_browser_paths", lambda platform=None: [])
    monkeypatch.setattr(browser_discovery, "_find_on_path", lambda: [])
    monkeypatch.setattr(browser_discovery, "_cache_executable_name", lambda: "chrome")
    return monkeypatch


def test_default_browser_paths_per_platform():
    assert any("chrome.exe" in path for path in get_default_browser_paths("win32"))
    assert any(path.startswith("/Applications/") for path in get_default_browser_paths("darwin"))
    assert "/usr/bin/chromium" in get_default_browser_paths("linux")


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/usr/bin/google-chrome", "chrome"),
        (r"C:\Program Files\Microsoft\Edge\Application\msedge.exe", "edge"),
        ("/usr/bin/brave-browser", "brave"),
        ("/snap/bin/chromium", "chromium"),
        ("/headless-shell/headless-shell", "chromium"),
    ],
)
def test_guess_browser_type(path, expected):
    assert guess_browser_type(path) == expected


def test_guess_channel():
    assert guess_channel("/opt/google/chrome-beta/chrome") == "beta"
    assert guess_channel("/opt/google/chrome-unstable/chrome") == "dev"
    assert guess_channel(r"C:\Users\me\AppData\Local\Google\Chrome SxS\Application\chrome.exe") == "canary"
    assert guess_channel("/usr/bin/google-chrome") == "stable"


def test_guess_version_from_install_directory(tmp_path):
    path = tmp_path / "chrome" / "linux-131.0.6778.204" / "chrome-linux64" / "chrome"

    assert guess_version_from_path(str(path)) == "131.0.6778.204"


def test_guess_version_from_symlink(tmp_path):
    target = _executable(tmp_path / "chrome-120.0.6099.109" / "chrome")
    link = tmp_path / "bin" / "chrome"
    link.parent.mkdir()
    link.symlink_to(target)

    assert guess_version_from_path(str(link)) == "120.0.6099.109"


def test_guess_version_unknown(tmp_path):
    assert guess_version_from_path(str(tmp_path / "bin" / "chrome")) is None


def test_find_installed_browsers_in_caches(isolated, tmp_path):
    older = _executable(tmp_path / ".cache" / "puppeteer" / "chrome" / "linux-120.0.6099.109" / "chrome-linux64" / "chrome")
    newer = _executable(tmp_path / ".cache" / "puppeteer" / "chrome" / "linux-131.0.6778.204" / "chrome-linux64" / "chrome")
    playwright = _executable(tmp_path / ".cache" / "ms-playwright" / "chromium-1140" / "chrome-linux" / "chrome")
    # not executable, must be ignored
    (tmp_path / ".cache" / "puppeteer" / "chrome" / "linux-99.0.0.0" / "chrome-linux64").mkdir(parents=True)
    (tmp_path / ".cache" / "puppeteer" / "chrome" / "linux-99.0.0.0" / "chrome-linux64" / "chrome").write_text("")

    browsers = find_installed_browsers(home=tmp_path)

    assert [browser.executable_path for browser in browsers] == [str(newer), str(older), str(playwright)]
    assert browsers[0].source == SOURCE_PUPPETEER_CACHE
    assert browsers[0].version == "131.0.6778.204"
    assert browsers[2].source == SOURCE_PLAYWRIGHT_CACHE
    assert browsers[2].type == "chromium"
    assert browsers[2].to_dict()["version"] is None


def test_find_installed_browsers_respects_playwright_browsers_path(isolated, tmp_path):
    browsers_path = tmp_path / "pw-browsers"
    executable = _executable(browsers_path / "chromium-1140" / "chrome-linux" / "chrome")
    isolated.setenv("PLAYWRIGHT_BROWSERS_PATH", str(browsers_path))

    browsers = find_installed_browsers(home=tmp_path / "home")

    assert [browser.executable_path for browser in browsers] == [str(executable)]


def test_find_installed_browsers_deduplicates(isolated, tmp_path):
    executable = _executable(tmp_path / "bin" / "google-chrome")
    isolated.setattr(browser_discovery, "get_default_browser_paths", lambda platform=None: [str(executable)])
    isolated.setattr(browser_discovery, "_find_on_path", lambda: [str(executable)])

    browsers = find_installed_browsers(home=tmp_path)

    assert len(browsers) == 1
    assert browsers[0].source == SOURCE_DEFAULT_PATH


def test_find_system_browser_prefers_default_paths(isolated, tmp_path):
    missing = tmp_path / "missing" / "chrome"
    executable = _executable(tmp_path / "opt" / "google" / "chrome" / "chrome")
    isolated.setattr(browser_discovery, "get_default_browser_paths", lambda platform=None: [str(missing), str(executable)])

    assert find_system_browser(home=tmp_path) == str(executable)


def test_find_system_browser_ranks_by_type(isolated, tmp_path):
    _executable(tmp_path / ".cache" / "ms-playwright" / "chromium-1140" / "chrome-linux" / "chrome")
    chrome = _executable(tmp_path / "bin" / "google-chrome")
    isolated.setattr(browser_discovery, "_find_on_path", lambda: [str(chrome)])

    assert find_system_browser(home=tmp_path) == str(chrome)


def test_find_system_browser_nothing_found(isolated, tmp_path):
    assert find_system_browser(home=tmp_path) is None
