"""Tests for the bounded FIFO page pool."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from render_service.engine_config import EngineSettings
from render_service.engine_manager import EngineMetrics
from render_service.errors import AcquireCancelledError, AcquireTimeoutError, DisconnectedError
from render_service.page_pool import PagePool
from tests.engine_fakes import FakeContext, FakePage, wait_for


def _engine(max_concurrency: int = 2) -> MagicMock:
    engine = MagicMock()
    engine.settings = EngineSettings(max_concurrency=max_concurrency, acquire_timeout=5.0)
    engine.metrics = EngineMetrics()
    engine.ensure_connected = AsyncMock()
    engine.new_page = AsyncMock(side_effect=lambda **kwargs: (FakeContext(**kwargs), FakePage()))
    return engine


@pytest.mark.asyncio
async def test_acquire_and_release():
    engine = _engine()
    pool = PagePool(engine)

    lease = await pool.acquire()
    assert pool.in_use == 1
    engine.ensure_connected.assert_awaited_once()

    await pool.release(lease)

    assert pool.in_use == 0
    lease.page.close.assert_awaited_once()
    lease.context.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_never_exceeds_max_concurrency():
    pool = PagePool(_engine(max_concurrency=2))
    first = await pool.acquire()
    second = await pool.acquire()

    with pytest.raises(AcquireTimeoutError):
        await pool.acquire(timeout=0.05)

    assert pool.in_use == 2
    assert pool.waiting == 0
    await pool.release(first)
    await pool.release(second)
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_waiters_are_served_in_arrival_order():
    pool = PagePool(_engine(max_concurrency=1))
    held = await pool.acquire()
    order: list[str] = []

    async def job(name: str) -> None:
        async with pool.lease():
            order.append(name)

    tasks = []
    for name in ("a", "b", "c"):
        tasks.append(asyncio.create_task(job(name)))
        await asyncio.sleep(0)
    await wait_for(lambda: pool.waiting == 3)

    await pool.release(held)
    await asyncio.gather(*tasks)

    assert order == ["a", "b", "c"]
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_new_caller_cannot_overtake_queued_waiter():
    """A slot released to a queued waiter is not available to a caller arriving afterwards."""
    pool = PagePool(_engine(max_concurrency=1))
    held = await pool.acquire()

    queued = asyncio.create_task(pool.acquire())
    await wait_for(lambda: pool.waiting == 1)

    await pool.release(held)
    with pytest.raises(AcquireTimeoutError):
        await pool.acquire(timeout=0.05)

    lease = await queued
    assert pool.in_use == 1
    await pool.release(lease)


@pytest.mark.asyncio
async def test_failing_jobs_release_their_slots():
    """Half of the jobs fail while opening the page; every slot still comes back."""
    engine = _engine(max_concurrency=3)
    calls = 0

    def new_page(**kwargs):
        nonlocal calls
        calls += 1
        if calls % 2 == 0:
            raise DisconnectedError("Engine is not connected")
        return FakeContext(**kwargs), FakePage()

    engine.new_page = AsyncMock(side_effect=new_page)
    pool = PagePool(engine)

    async def job() -> None:
        async with pool.lease():
            await asyncio.sleep(0.001)

    results = await asyncio.gather(*(job() for _ in range(10)), return_exceptions=True)

    failures = [r for r in results if isinstance(r, DisconnectedError)]
    assert len(failures) == 5
    assert pool.in_use == 0
    assert pool.waiting == 0


@pytest.mark.asyncio
async def test_connect_failure_returns_slot():
    engine = _engine(max_concurrency=1)
    engine.ensure_connected = AsyncMock(side_effect=DisconnectedError("down"))
    pool = PagePool(engine)

    with pytest.raises(DisconnectedError):
        await pool.acquire()

    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_queue():
    pool = PagePool(_engine(max_concurrency=1))
    held = await pool.acquire()

    waiting_task = asyncio.create_task(pool.acquire())
    await wait_for(lambda: pool.waiting == 1)
    waiting_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiting_task

    assert pool.waiting == 0
    await pool.release(held)
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_cancel_waiters_fails_queued_callers():
    pool = PagePool(_engine(max_concurrency=1))
    held = await pool.acquire()

    waiters = [asyncio.create_task(pool.acquire()) for _ in range(2)]
    await wait_for(lambda: pool.waiting == 2)

    assert pool.cancel_waiters() == 2
    for task in waiters:
        with pytest.raises(AcquireCancelledError):
            await task

    assert pool.in_use == 1
    await pool.release(held)
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_resize_grow_wakes_waiters():
    pool = PagePool(_engine(max_concurrency=1))
    held = await pool.acquire()
    queued = asyncio.create_task(pool.acquire())
    await wait_for(lambda: pool.waiting == 1)

    pool.resize(2)
    lease = await asyncio.wait_for(queued, timeout=1.0)

    assert pool.in_use == 2
    await pool.release(lease)
    await pool.release(held)
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_resize_shrink_retires_slots_on_release():
    pool = PagePool(_engine(max_concurrency=2))
    first = await pool.acquire()
    second = await pool.acquire()

    pool.resize(1)
    assert pool.in_use == 2

    await pool.release(first)
    assert pool.in_use == 1
    with pytest.raises(AcquireTimeoutError):
        await pool.acquire(timeout=0.05)

    await pool.release(second)
    assert pool.in_use == 0


def test_resize_rejects_zero():
    pool = PagePool(_engine())
    with pytest.raises(ValueError):
        pool.resize(0)


@pytest.mark.asyncio
async def test_double_release_is_ignored():
    pool = PagePool(_engine(max_concurrency=2))
    first = await pool.acquire()
    second = await pool.acquire()

    await pool.release(first)
    await pool.release(first)

    assert pool.in_use == 1
    await pool.release(second)
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_lease_releases_on_error():
    pool = PagePool(_engine())

    with pytest.raises(RuntimeError):
        async with pool.lease():
            raise RuntimeError("render failed")

    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_exclusive_waits_for_active_leases():
    pool = PagePool(_engine(max_concurrency=2))
    lease = await pool.acquire()
    entered = asyncio.Event()

    async def hold_all() -> None:
        async with pool.exclusive():
            entered.set()

    task = asyncio.create_task(hold_all())
    await asyncio.sleep(0.01)
    assert not entered.is_set()

    await pool.release(lease)
    await asyncio.wait_for(task, timeout=1.0)

    assert entered.is_set()
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_queue_metrics_recorded():
    engine = _engine(max_concurrency=1)
    pool = PagePool(engine)

    lease = await pool.acquire()
    assert engine.metrics.active_pages == 1
    assert engine.metrics.total_acquisitions == 1

    await pool.release(lease)
    assert engine.metrics.active_pages == 0
