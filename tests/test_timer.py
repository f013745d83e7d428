import asyncio

import pytest

from src.callsim.timer import Timer


@pytest.mark.asyncio
async def test_timer_fires_once():
    fired = []
    timer = Timer("t")
    timer.schedule(0.01, lambda: fired.append(1))
    assert timer.pending
    await asyncio.sleep(0.05)
    assert fired == [1]
    assert not timer.pending


@pytest.mark.asyncio
async def test_reschedule_replaces_pending_timer():
    fired = []
    timer = Timer("t")
    timer.schedule(0.02, lambda: fired.append("first"))
    timer.schedule(0.02, lambda: fired.append("second"))
    await asyncio.sleep(0.06)
    assert fired == ["second"]


@pytest.mark.asyncio
async def test_cancel_prevents_callback():
    fired = []
    timer = Timer("t")
    timer.schedule(0.01, lambda: fired.append(1))
    timer.cancel()
    await asyncio.sleep(0.03)
    assert fired == []
    assert not timer.pending


@pytest.mark.asyncio
async def test_async_callback_and_errors_are_contained():
    fired = []

    async def ok():
        fired.append("ok")

    def boom():
        raise RuntimeError("boom")

    timer = Timer("t")
    timer.schedule(0.0, boom)
    await asyncio.sleep(0.01)

    timer.schedule(0.0, ok)
    await asyncio.sleep(0.01)
    assert fired == ["ok"]


@pytest.mark.asyncio
async def test_callback_may_reschedule_itself():
    fired = []
    timer = Timer("t")

    def tick():
        fired.append(1)
        if len(fired) < 3:
            timer.schedule(0.0, tick)

    timer.schedule(0.0, tick)
    await asyncio.sleep(0.05)
    assert fired == [1, 1, 1]


@pytest.mark.asyncio
async def test_cancel_reaches_running_callback():
    started = asyncio.Event()
    finished = []

    async def slow():
        started.set()
        await asyncio.sleep(0.05)
        finished.append(1)

    timer = Timer("t")
    timer.schedule(0.0, slow)
    await started.wait()

    assert not timer.pending
    assert timer.running

    timer.cancel()
    await asyncio.sleep(0.08)
    assert finished == []
    assert not timer.running
