"""Cancellable deferred callbacks keyed by an identifier."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Protocol, Set

from app.monitoring.metrics import realtime_timers_total

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerRegistry(Protocol):
    """Interface for keyed timers used by trial and ringing timeouts."""

    def schedule(
        self, key: str, delay: float, callback: TimerCallback, *, label: str = "timer"
    ) -> None: ...

    def cancel(self, key: str) -> int: ...

    def pending(self, key: str) -> int: ...

    async def shutdown(self) -> None: ...


class AsyncioTimerRegistry:
    """Timers implemented as asyncio tasks grouped by key.

    Several timers may share a key (the trial warning and the trial expiry
    are both keyed by the consultation id). Cancelling a key that has no
    pending timers is a no-op.
    """

    def __init__(self) -> None:
        self._timers: Dict[str, Set[asyncio.Task[None]]] = defaultdict(set)

    def schedule(
        self, key: str, delay: float, callback: TimerCallback, *, label: str = "timer"
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run(key, max(float(delay), 0.0), callback, label),
            name=f"{label}:{key}",
        )
        self._timers[key].add(task)
        realtime_timers_total.labels(label, "scheduled").inc()

    async def _run(self, key: str, delay: float, callback: TimerCallback, label: str) -> None:
        await asyncio.sleep(delay)
        # Detach before running so a callback that cancels its own key
        # does not cancel itself.
        self._forget(key, asyncio.current_task())
        realtime_timers_total.labels(label, "fired").inc()
        try:
            await callback()
        except Exception:
            logger.exception("Timer callback %s for %s failed", label, key)

    def _forget(self, key: str, task: asyncio.Task | None) -> None:
        bucket = self._timers.get(key)
        if not bucket:
            return
        if task is not None:
            bucket.discard(task)
        if not bucket:
            self._timers.pop(key, None)

    def cancel(self, key: str) -> int:
        tasks = self._timers.pop(key, None)
        if not tasks:
            return 0
        cancelled = 0
        for task in tasks:
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.debug("Cancelled %s timer(s) for %s", cancelled, key)
        return cancelled

    def pending(self, key: str) -> int:
        return sum(1 for task in self._timers.get(key, ()) if not task.done())

    def keys(self) -> list[str]:
        return [key for key in self._timers if self.pending(key)]

    async def shutdown(self) -> None:
        tasks = [task for bucket in self._timers.values() for task in bucket]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["TimerCallback", "TimerRegistry", "AsyncioTimerRegistry"]
