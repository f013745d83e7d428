"""
Cancellable one-shot timers on the running asyncio loop.

Each component owns its timers and cancels them on reset/stop so no callback can
fire after a call has ended. Scheduling a pending timer replaces it. A callback
that is still running (an awaited coroutine) is cancelled by `cancel()` too.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class Timer:
    """One-shot timer backed by an asyncio task."""

    def __init__(self, name: str):
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._firing = False

    @property
    def pending(self) -> bool:
        """True while waiting to fire; a callback already running doesn't count."""
        return self._task is not None and not self._task.done() and not self._firing

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and self._firing

    def schedule(self, delay_s: float, callback: Callable[[], Any]) -> None:
        """(Re)start the timer. `callback` may be a plain function or a coroutine function."""
        self.cancel()
        self._generation += 1
        self._task = asyncio.create_task(self._run(self._generation, delay_s, callback))

    def cancel(self) -> None:
        task = self._task
        self._task = None
        self._firing = False
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, generation: int, delay_s: float, callback: Callable[[], Any]) -> None:
        try:
            await asyncio.sleep(max(0.0, delay_s))
        except asyncio.CancelledError:
            return

        if generation != self._generation:
            return
        # The task stays attached while firing; rescheduling from the callback replaces it.
        self._firing = True

        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            logger.debug("Timer callback cancelled", timer=self.name)
        except Exception as e:
            logger.error("Timer callback failed", timer=self.name, error=str(e))
        finally:
            if generation == self._generation:
                self._firing = False
                self._task = None
