"""
Bounded pool of rendering pages.

A permit is an integer slot, not an object: ``in_use`` counts leased pages and a
FIFO deque holds the futures of callers waiting for a slot. A released slot is
handed directly to the oldest waiter, so arrival order is preserved and a newly
arriving caller can never overtake a queued one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from playwright.async_api import Error as PlaywrightError

from render_service.errors import AcquireCancelledError, AcquireTimeoutError
from render_service.prometheus_metrics import observe_queue_time

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from playwright.async_api import BrowserContext, Page, ViewportSize

    from render_service.engine_manager import EngineManager


@dataclass
class Lease:
    """A leased page and the isolated context it lives in."""

    context: BrowserContext
    page: Page
    acquired_at: float = field(default_factory=time.time)
    released: bool = False


class PagePool:
    """Gate in front of "open a fresh page" that bounds concurrency and queues the overflow."""

    def __init__(self, engine: EngineManager, max_concurrency: int | None = None, logger: logging.Logger | None = None) -> None:
        self.engine = engine
        self.log = logger or logging.getLogger(__name__)
        self._max_concurrency = max_concurrency or engine.settings.max_concurrency
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def _update_metrics(self) -> None:
        self.engine.metrics.update_queue_metrics(self.waiting, self._in_use)

    async def acquire(
        self,
        timeout: float | None = None,
        viewport: ViewportSize | None = None,
        device_scale_factor: float | None = None,
    ) -> Lease:
        """
        Lease a fresh page, waiting in line when the pool is saturated.

        The engine connection is established lazily here. If connecting or opening the
        page fails, the slot is returned before the error propagates.

        Args:
            timeout: Maximum seconds to wait for a slot; None uses the configured acquire timeout.
            viewport: Initial viewport of the new context.
            device_scale_factor: Device scale factor of the new context.

        Returns:
            The lease. Pass it to release() exactly once.

        Raises:
            AcquireTimeoutError: No slot became free in time.
            AcquireCancelledError: The pool was shut down while waiting.
        """
        if timeout is None:
            timeout = self.engine.settings.acquire_timeout

        queue_entry_time = time.time()
        await self._take_permit(timeout)
        queue_time = time.time() - queue_entry_time
        self.engine.metrics.record_queue_entry(queue_time * 1000)
        observe_queue_time(queue_time)
        self._update_metrics()

        try:
            await self.engine.ensure_connected()
            context, page = await self.engine.new_page(viewport=viewport, device_scale_factor=device_scale_factor)
        except BaseException:
            self._release_permit()
            self._update_metrics()
            raise

        return Lease(context=context, page=page)

    async def release(self, lease: Lease) -> None:
        """Close the leased page and its context and hand the slot to the next waiter."""
        if lease.released:
            self.log.warning("Lease released twice, ignoring")
            return
        lease.released = True

        try:
            try:
                await lease.page.close()
            except PlaywrightError as e:
                self.log.warning("Error closing page: %s", e)
            try:
                await lease.context.close()
            except PlaywrightError as e:
                self.log.warning("Error closing context: %s", e)
        finally:
            self._release_permit()
            self._update_metrics()

    @asynccontextmanager
    async def lease(
        self,
        timeout: float | None = None,
        viewport: ViewportSize | None = None,
        device_scale_factor: float | None = None,
    ) -> AsyncGenerator[Lease]:
        """Context manager around acquire()/release(); the release runs on every exit path."""
        leased = await self.acquire(timeout=timeout, viewport=viewport, device_scale_factor=device_scale_factor)
        try:
            yield leased
        finally:
            await self.release(leased)

    @asynccontextmanager
    async def exclusive(self) -> AsyncGenerator[None]:
        """
        Hold every slot of the pool.

        Waits for active leases to finish and keeps new ones out, e.g. while the
        engine restarts.
        """
        taken = 0
        try:
            for _ in range(self._max_concurrency):
                await self._take_permit(None)
                taken += 1
            yield
        finally:
            for _ in range(taken):
                self._release_permit()
            self._update_metrics()

    def cancel_waiters(self, reason: str = "Page pool is shutting down") -> int:
        """
        Fail every queued acquirer with AcquireCancelledError.

        Returns:
            Number of waiters that were cancelled.
        """
        cancelled = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(AcquireCancelledError(reason))
                cancelled += 1
        if cancelled:
            self.log.info("Cancelled %d queued page request(s)", cancelled)
        self._update_metrics()
        return cancelled

    def resize(self, max_concurrency: int) -> None:
        """
        Change the pool capacity.

        Growing wakes queued waiters immediately. Shrinking lets current leases finish;
        slots above the new limit are retired as they are released.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.log.info("Resizing page pool from %d to %d", self._max_concurrency, max_concurrency)
        self._max_concurrency = max_concurrency
        while self._in_use < self._max_concurrency and self._wake_next():
            self._in_use += 1
        self._update_metrics()

    async def _take_permit(self, timeout: float | None) -> None:
        if self._in_use < self._max_concurrency and not self.waiting:
            self._in_use += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._update_metrics()

        try:
            done, _ = await asyncio.wait({waiter}, timeout=timeout)
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

        if not done:
            self._abandon(waiter)
            raise AcquireTimeoutError(f"No page available within {timeout}s ({self._in_use}/{self._max_concurrency} in use)")

        # Raises AcquireCancelledError when the pool was shut down
        waiter.result()

    def _abandon(self, waiter: asyncio.Future[None]) -> None:
        """Withdraw a waiter that stopped waiting, returning a slot it was handed in the meantime."""
        if waiter.done():
            if not waiter.cancelled() and waiter.exception() is None:
                self._release_permit()
        else:
            waiter.cancel()
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
        self._update_metrics()

    def _wake_next(self) -> bool:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return True
        return False

    def _release_permit(self) -> None:
        if self._in_use > self._max_concurrency:
            self._in_use -= 1
            return
        # Slot passes straight to the next waiter; in_use stays unchanged
        if self._wake_next():
            return
        if self._in_use <= 0:
            self.log.error("Page pool slot released without a matching acquire")
            return
        self._in_use -= 1
