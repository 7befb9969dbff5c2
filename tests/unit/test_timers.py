"""Unit tests for the asyncio Scheduler used by the session controller."""

from __future__ import annotations

import asyncio

import pytest

from emrgate.session.timers import Scheduler

pytestmark = pytest.mark.asyncio


async def test_call_soon_runs_once() -> None:
    calls: list[str] = []

    async def callback() -> None:
        calls.append("ran")

    handle = Scheduler().call_soon("once", callback)
    await handle.wait()
    assert calls == ["ran"]
    assert handle.done


async def test_call_later_waits_for_delay() -> None:
    calls: list[float] = []
    loop = asyncio.get_running_loop()
    started = loop.time()

    async def callback() -> None:
        calls.append(loop.time() - started)

    await Scheduler().call_later("later", 0.05, callback).wait()
    assert len(calls) == 1
    assert calls[0] >= 0.04


async def test_call_every_repeats_until_cancelled() -> None:
    calls: list[int] = []

    async def callback() -> None:
        calls.append(1)

    scheduler = Scheduler()
    handle = scheduler.call_every("tick", 0.01, callback)
    await asyncio.sleep(0.1)
    handle.cancel()
    await handle.wait()

    assert len(calls) >= 3
    assert handle.cancelled


async def test_failing_callback_does_not_stop_periodic_timer() -> None:
    calls: list[int] = []

    async def callback() -> None:
        calls.append(1)
        raise RuntimeError("boom")

    scheduler = Scheduler()
    handle = scheduler.call_every("flaky", 0.01, callback, initial_delay=0)
    await asyncio.sleep(0.08)
    handle.cancel()
    await handle.wait()
    assert len(calls) >= 2


async def test_cancel_all() -> None:
    async def callback() -> None:
        return None

    scheduler = Scheduler()
    scheduler.call_later("a", 10, callback)
    scheduler.call_every("b", 10, callback)
    assert scheduler.pending == 2

    scheduler.cancel_all()
    await asyncio.sleep(0)
    assert scheduler.pending == 0


async def test_invalid_interval() -> None:
    async def callback() -> None:
        return None

    with pytest.raises(ValueError):
        Scheduler().call_every("bad", 0, callback)
