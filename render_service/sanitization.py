"""Helpers that make user-supplied values safe to write into logs."""

import re
from pathlib import Path
from urllib.parse import urlparse

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_for_logging(text: str, max_length: int = 1000) -> str:
    """Strip control characters, flatten newlines and truncate to `max_length`.

    Args:
        text: Value to sanitize; non-strings are converted with str().
        max_length: Maximum length before '...[truncated]' is appended.

    Returns:
        str: The sanitized text.

    """
    if not isinstance(text, str):
        text = str(text)

    text = text.replace("\n", " ").replace("\r", " ")
    text = _CONTROL_CHARS.sub("", text)

    if len(text) > max_length:
        text = text[:max_length] + "...[truncated]"

    return text


def sanitize_url_for_logging(url: str | None) -> str:
    """Reduce a URL or CDP endpoint to scheme, host, port and path.

    Query strings often carry tokens (e.g. ``ws://host/?token=...`` for hosted
    engines) and userinfo carries credentials, so both are dropped.

    Args:
        url: The URL to sanitize. If None, returns 'None'.

    Returns:
        str: The reduced URL.

    """
    if url is None:
        return "None"

    try:
        parsed = urlparse(url)
        if not parsed.scheme:
            return sanitize_for_logging(url, max_length=200)
        safe_url = f"{parsed.scheme}://{parsed.hostname or ''}"
        if parsed.port:
            safe_url += f":{parsed.port}"
        safe_url += parsed.path or "/"
        return sanitize_for_logging(safe_url, max_length=200)
    except ValueError:
        return sanitize_for_logging(url, max_length=200)


def sanitize_path_for_logging(path: str | None, show_basename_only: bool = True) -> str:
    """Sanitize a file path for logging, by default showing only its basename.

    Args:
        path: The path to sanitize. If None, returns 'None'.
        show_basename_only: If True, only the final path component is shown.

    Returns:
        str: The sanitized path.

    """
    if path is None:
        return "None"
    if show_basename_only:
        return sanitize_for_logging(Path(path).name, max_length=100)
    return sanitize_for_logging(str(path), max_length=200)


def describe_proxy(server: str | None, bypass_list: str | None = None) -> str:
    """One-line proxy summary for logs; credentials never appear."""
    if not server:
        return "none"
    summary = sanitize_url_for_logging(server)
    if bypass_list:
        summary += f" (bypass: {sanitize_for_logging(bypass_list, max_length=200)})"
    return summary
