"""Tests for asyncio round timers."""

import asyncio
from datetime import timedelta

import pytest

from game.timers import AsyncioTimerFacility


def test_past_deadline_fires_on_next_iteration(clock):
    fired = []

    async def callback(game_id, round_number):
        fired.append((game_id, round_number))

    async def main():
        timers = AsyncioTimerFacility(callback, clock=clock)
        handle = timers.schedule("g", 3, clock.now - timedelta(seconds=1))
        assert handle.pending
        await handle.task
        return handle

    handle = asyncio.run(main())
    assert fired == [("g", 3)]
    assert not handle.pending


def test_cancelled_timer_never_fires(clock):
    fired = []

    async def callback(game_id, round_number):
        fired.append((game_id, round_number))

    async def main():
        timers = AsyncioTimerFacility(callback, clock=clock)
        handle = timers.schedule("g", 1, clock.now + timedelta(hours=1))
        timers.cancel(handle)
        await asyncio.gather(handle.task, return_exceptions=True)
        return handle

    handle = asyncio.run(main())
    assert fired == []
    assert handle.task.cancelled()


def test_callback_errors_are_contained(clock):
    async def callback(game_id, round_number):
        raise RuntimeError("boom")

    async def main():
        timers = AsyncioTimerFacility(clock=clock)
        timers.set_callback(callback)
        handle = timers.schedule("g", 1, clock.now)
        await handle.task
        return handle

    handle = asyncio.run(main())
    assert handle.task.exception() is None


def test_schedule_without_callback_fails(clock):
    async def main():
        AsyncioTimerFacility(clock=clock).schedule("g", 1, clock.now)

    with pytest.raises(RuntimeError, match="callback"):
        asyncio.run(main())
