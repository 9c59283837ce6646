"""
Render pipeline: turns one leased page plus a RenderJob into encoded image data.

The pipeline keeps no state between calls. Retries are the caller's business and
re-run render() with the same job on a freshly leased page.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import math
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

from PIL import Image, UnidentifiedImageError
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import ViewportSize

from render_service.errors import (
    EncodingError,
    InvalidRequestError,
    NavigationTimeoutError,
    SourceNotFoundError,
    TargetNotFoundError,
)
from render_service.sanitization import sanitize_path_for_logging, sanitize_url_for_logging

if TYPE_CHECKING:
    from playwright.async_api import ElementHandle, FloatRect, Page

DEFAULT_CONTAINER_SELECTOR = "#container"
ROOT_SELECTOR = "body"
PAGE_OVERLAP = 100
AUTO_PAGE_HEIGHT = 2000

IMAGE_TYPES = ("png", "jpeg", "webp")
ENCODINGS = ("base64", "binary")
SOURCE_TYPES = ("auto", "html", "url", "file")

# Accepted wait policies mapped onto Playwright's load states
WAIT_UNTIL_ALIASES = {
    "load": "load",
    "domcontentloaded": "domcontentloaded",
    "content-loaded": "domcontentloaded",
    "networkidle": "networkidle",
    "network-idle": "networkidle",
    "networkidle0": "networkidle",
    "networkidle2": "networkidle",
    "commit": "commit",
}

_TEMPLATE_PATTERN = re.compile(r"\{\{(\w+)\}\}")


@dataclass(frozen=True)
class Viewport:
    width: int | None = None
    height: int | None = None
    device_scale_factor: float | None = None


@dataclass(frozen=True)
class RenderJob:
    """
    Immutable description of one render request.

    Attributes:
        source: Inline HTML, a ``file://`` reference or an ``http(s)://`` URL.
        source_type: ``auto`` detects the kind from the source, ``html`` forces inline markup.
        data: Template values substituted into ``{{key}}`` placeholders of HTML and file sources.
        selector: CSS selector of the element to capture.
        viewport: Viewport override; unset fields use the configured defaults.
        image_type: ``png``, ``jpeg`` or ``webp``.
        quality: 0-100, ignored for png.
        encoding: ``base64`` (str output) or ``binary`` (bytes output).
        full_page: Capture the whole scrollable page instead of the target element.
        omit_background: Transparent background for png/webp.
        multi_page: False, True (auto page height) or an explicit page height in pixels.
        wait_until: Navigation wait policy.
        timeout_ms: Navigation and selector wait timeout; None uses the configured default.
        wait_for_selector: Selector that must appear before capturing.
        wait_for_timeout_ms: Fixed delay before capturing.
        headers: Extra HTTP headers sent with every request of the page.
        retry: Additional attempts after a failed render.
    """

    source: str
    source_type: str = "auto"
    data: dict[str, Any] | None = None
    selector: str | None = None
    viewport: Viewport | None = None
    image_type: str = "png"
    quality: int | None = None
    encoding: str = "base64"
    full_page: bool = False
    omit_background: bool = False
    multi_page: bool | int = False
    wait_until: str = "networkidle"
    timeout_ms: int | None = None
    wait_for_selector: str | None = None
    wait_for_timeout_ms: int | None = None
    headers: dict[str, str] | None = None
    retry: int = 0

    def validate(self) -> None:
        """Reject jobs that cannot be rendered at all."""
        if not self.source:
            raise InvalidRequestError("Render source must not be empty")
        if self.source_type not in SOURCE_TYPES:
            raise InvalidRequestError(f"Unsupported source type: {self.source_type}")
        if self.image_type not in IMAGE_TYPES:
            raise InvalidRequestError(f"Unsupported image type: {self.image_type}")
        if self.encoding not in ENCODINGS:
            raise InvalidRequestError(f"Unsupported encoding: {self.encoding}")
        if self.quality is not None and not 0 <= self.quality <= 100:
            raise InvalidRequestError("Quality must be between 0 and 100")
        if self.wait_until not in WAIT_UNTIL_ALIASES:
            raise InvalidRequestError(f"Unsupported wait policy: {self.wait_until}")
        if self.retry < 0:
            raise InvalidRequestError("Retry count must not be negative")
        if not isinstance(self.multi_page, bool) and self.multi_page <= 0:
            raise InvalidRequestError("Page height must be a positive number of pixels")


@dataclass(frozen=True)
class PageSegment:
    y: float
    height: float


@dataclass
class RenderOutput:
    """Encoded capture. ``data`` is a list when the job was paginated."""

    data: str | bytes | list[str] | list[bytes]
    image_type: str
    encoding: str
    pages: int = 1


def render_template(template: str, data: dict[str, Any] | None) -> str:
    """
    Replace ``{{key}}`` placeholders with values from data.

    Placeholders whose key is not in data are left verbatim.

    Args:
        template: Markup containing placeholders.
        data: Substitution values.

    Returns:
        The substituted markup.
    """
    if not data:
        return template

    def substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in data:
            return str(data[key])
        return match.group(0)

    return _TEMPLATE_PATTERN.sub(substitute, template)


def resolve_page_height(multi_page: bool | int, element_height: float) -> float:
    """Page height for pagination: an explicit height, or the auto height capped at 2000."""
    if not isinstance(multi_page, bool):
        return float(multi_page)
    return AUTO_PAGE_HEIGHT if element_height >= AUTO_PAGE_HEIGHT else element_height


def calculate_page_segments(total_height: float, page_height: float, overlap: float = PAGE_OVERLAP) -> list[PageSegment]:
    """
    Split an element height into capture segments.

    Every segment after the first starts ``overlap`` pixels above its page boundary
    and is ``overlap`` pixels taller, so content cut at a page break appears whole
    on the following page.

    Args:
        total_height: Height of the element.
        page_height: Height of one page.
        overlap: Vertical overlap with the previous segment.

    Returns:
        Segments in capture order, relative to the top of the element.
    """
    if total_height <= 0 or page_height <= 0:
        return []

    segments = []
    for index in range(math.ceil(total_height / page_height)):
        y = index * page_height
        height = min(page_height, total_height - index * page_height)
        if index != 0:
            y -= overlap
            height += overlap
        segments.append(PageSegment(y=y, height=height))
    return segments


def classify_source(job: RenderJob) -> str:
    """Resolve the effective source kind: ``html``, ``file`` or ``url``."""
    if job.source_type in ("html", "url", "file"):
        return job.source_type
    if job.source.startswith(("http://", "https://")):
        return "url"
    if job.source.startswith("file://"):
        return "file"
    return "html"


def file_url_to_path(source: str) -> Path:
    if not source.startswith("file://"):
        return Path(source)
    parsed = urlparse(source)
    return Path(url2pathname(unquote(parsed.netloc + parsed.path)))


def encode_image(raw: bytes, image_type: str, encoding: str, quality: int | None = None) -> str | bytes:
    """
    Convert a capture into the requested output format.

    The engine only produces png and jpeg, so webp is re-encoded from a png capture.

    Raises:
        EncodingError: If the capture cannot be decoded or re-encoded.
    """
    if image_type == "webp":
        try:
            with Image.open(io.BytesIO(raw)) as image:
                buffer = io.BytesIO()
                image.save(buffer, format="WEBP", quality=quality if quality is not None else 80)
                raw = buffer.getvalue()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise EncodingError(f"Failed to encode capture as webp: {e}") from e

    if encoding == "base64":
        return base64.b64encode(raw).decode("ascii")
    if encoding == "binary":
        return raw
    raise EncodingError(f"Unsupported encoding: {encoding}")


class RenderPipeline:
    """Executes render jobs on pages leased from the pool."""

    def __init__(self, default_timeout_ms: int = 30000, logger: logging.Logger | None = None) -> None:
        self.default_timeout_ms = default_timeout_ms
        self.log = logger or logging.getLogger(__name__)

    async def render(self, page: Page, job: RenderJob) -> RenderOutput:
        """
        Render a job on an already leased page.

        Args:
            page: The leased page.
            job: The job description.

        Returns:
            The encoded capture, or an ordered list of captures when paginated.

        Raises:
            NavigationTimeoutError: Navigation or selector wait exceeded the timeout.
            SourceNotFoundError: A ``file://`` source does not exist.
            TargetNotFoundError: Not even the document root could be located.
            EncodingError: The capture could not be encoded.
        """
        job.validate()
        start_time = time.time()
        timeout_ms = job.timeout_ms or self.default_timeout_ms

        if job.viewport and job.viewport.width and job.viewport.height:
            await page.set_viewport_size(ViewportSize(width=job.viewport.width, height=job.viewport.height))

        if job.headers:
            await page.set_extra_http_headers(job.headers)

        await self._load_content(page, job, timeout_ms)

        if job.wait_for_selector:
            try:
                await page.wait_for_selector(job.wait_for_selector, timeout=timeout_ms)
            except PlaywrightTimeoutError as e:
                raise NavigationTimeoutError(f"Timed out after {timeout_ms}ms waiting for selector {job.wait_for_selector}") from e

        if job.wait_for_timeout_ms:
            await asyncio.sleep(job.wait_for_timeout_ms / 1000)

        capture_type = "png" if job.image_type == "webp" else job.image_type
        capture_options: dict[str, Any] = {"type": capture_type, "omit_background": job.omit_background}
        if capture_type == "jpeg" and job.quality is not None:
            capture_options["quality"] = job.quality

        if job.full_page:
            raw = await page.screenshot(full_page=True, **capture_options)
            output = RenderOutput(data=encode_image(raw, job.image_type, job.encoding, job.quality), image_type=job.image_type, encoding=job.encoding)
        else:
            output = await self._capture_element(page, job, capture_options)

        self.log.debug("Render finished in %.1fms (%d page(s))", (time.time() - start_time) * 1000, output.pages)
        return output

    async def _load_content(self, page: Page, job: RenderJob, timeout_ms: int) -> None:
        wait_until = WAIT_UNTIL_ALIASES[job.wait_until]
        kind = classify_source(job)

        try:
            if kind == "url":
                self.log.debug("Navigating to %s", sanitize_url_for_logging(job.source))
                await page.goto(job.source, wait_until=wait_until, timeout=timeout_ms)
                return

            if kind == "file":
                path = file_url_to_path(job.source)
                if not path.is_file():
                    raise SourceNotFoundError(f"File not found: {path}")
                self.log.debug("Loading local file %s", sanitize_path_for_logging(str(path)))
                html = path.read_text(encoding="utf-8")
            else:
                html = job.source

            await page.set_content(render_template(html, job.data), wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"Navigation timed out after {timeout_ms}ms") from e

    async def _capture_element(self, page: Page, job: RenderJob, capture_options: dict[str, Any]) -> RenderOutput:
        element, matched = await find_target_element(page, job.selector, self.log)
        box = await element.bounding_box()
        self.log.debug("Capture target %s, bounding box: %s", matched, box)

        if box and math.ceil(box["width"]) > 0 and math.ceil(box["height"]) > 0:
            await page.set_viewport_size(ViewportSize(width=math.ceil(box["width"]), height=math.ceil(box["height"])))

        if job.multi_page and box:
            return await self._capture_pages(page, job, box, capture_options)

        raw = await element.screenshot(**capture_options)
        return RenderOutput(data=encode_image(raw, job.image_type, job.encoding, job.quality), image_type=job.image_type, encoding=job.encoding)

    async def _capture_pages(self, page: Page, job: RenderJob, box: FloatRect, capture_options: dict[str, Any]) -> RenderOutput:
        page_height = resolve_page_height(job.multi_page, box["height"])
        segments = calculate_page_segments(box["height"], page_height)
        self.log.debug("Paginated capture: page height %s, %d page(s)", page_height, len(segments))

        captures = []
        for segment in segments:
            clip = {"x": box["x"], "y": box["y"] + segment.y, "width": box["width"], "height": segment.height}
            raw = await page.screenshot(clip=clip, full_page=True, **capture_options)
            captures.append(encode_image(raw, job.image_type, job.encoding, job.quality))

        return RenderOutput(data=captures, image_type=job.image_type, encoding=job.encoding, pages=len(captures))


async def find_target_element(page: Page, selector: str | None, log: logging.Logger | None = None) -> tuple[ElementHandle, str]:
    """
    Locate the capture target: the selector, then ``#container``, then ``body``.

    Lookup errors of one candidate fall through to the next.

    Returns:
        The element and the selector that matched.

    Raises:
        TargetNotFoundError: If none of the candidates exists.
    """
    log = log or logging.getLogger(__name__)
    candidates = [c for c in (selector, DEFAULT_CONTAINER_SELECTOR, ROOT_SELECTOR) if c]

    for candidate in candidates:
        try:
            element = await page.query_selector(candidate)
        except PlaywrightError as e:
            log.debug("Selector %s could not be evaluated: %s", candidate, e)
            continue
        if element is not None:
            return element, candidate
        if candidate == selector:
            log.debug("Selector %s matched nothing, falling back", selector)

    raise TargetNotFoundError(f"No capture target found for selector {selector or ROOT_SELECTOR}")
