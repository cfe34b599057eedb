"""One-shot round timers on the asyncio event loop."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol

from .state import utcnow

logger = logging.getLogger(__name__)

TimerCallback = Callable[[str, int], Awaitable[Any]]


@dataclass
class TimerHandle:
    game_id: str
    round_number: int
    fire_at: datetime
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def pending(self) -> bool:
        return self.task is not None and not self.task.done()


class TimerFacility(Protocol):
    def schedule(self, game_id: str, round_number: int, fire_at: datetime) -> TimerHandle: ...

    def cancel(self, handle: TimerHandle) -> None: ...


class AsyncioTimerFacility:
    """Runs ``callback(game_id, round_number)`` at ``fire_at``.

    Must be used from inside a running event loop. Past deadlines fire on
    the next loop iteration.
    """

    def __init__(self, callback: TimerCallback | None = None, clock: Callable[[], datetime] = utcnow):
        self._callback = callback
        self._clock = clock

    def set_callback(self, callback: TimerCallback) -> None:
        self._callback = callback

    def schedule(self, game_id: str, round_number: int, fire_at: datetime) -> TimerHandle:
        if self._callback is None:
            raise RuntimeError("No timer callback registered")
        handle = TimerHandle(game_id=game_id, round_number=round_number, fire_at=fire_at)
        handle.task = asyncio.get_running_loop().create_task(
            self._run(handle), name=f"round-timer:{game_id}:{round_number}"
        )
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        if handle.pending:
            handle.task.cancel()
            logger.debug("Cancelled timer for %s round %d", handle.game_id, handle.round_number)

    async def _run(self, handle: TimerHandle) -> None:
        delay = (handle.fire_at - self._clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        logger.info("Timer fired for %s round %d", handle.game_id, handle.round_number)
        try:
            await self._callback(handle.game_id, handle.round_number)
        except Exception as exc:
            # Fire-and-forget: nobody awaits this task.
            logger.error(
                "Timer callback for %s round %d failed: %s",
                handle.game_id, handle.round_number, exc, exc_info=True,
            )
