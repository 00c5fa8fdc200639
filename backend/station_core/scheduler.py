"""Cancellable background timers keyed by (owner, purpose)."""
import asyncio
import logging
from typing import Callable, Optional

LOG = logging.getLogger(__name__)

TimerKey = tuple[str, str]


class TimerRegistry:
    """
    Owns every background task of the station. Each task has a key naming its owner
    (e.g. "session", "connector-1", "firmware") and purpose (e.g. "heartbeat"), so the
    state transition that invalidates a timer can cancel it by key.

    Callbacks are plain functions run on the event loop; an exception in a callback is
    logged and does not stop a periodic timer.
    """

    __slots__ = ("_tasks",)

    def __init__(self) -> None:
        self._tasks: dict[TimerKey, asyncio.Task] = {}

    def every(self, key: TimerKey, interval_s: float, callback: Callable[[], None]) -> None:
        """Run callback every interval_s seconds (first run after one interval). Replaces any timer with the same key."""
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(self._periodic(key, interval_s, callback))

    def after(self, key: TimerKey, delay_s: float, callback: Callable[[], None]) -> None:
        """Run callback once after delay_s seconds. Replaces any timer with the same key."""
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(self._once(key, delay_s, callback))

    def cancel(self, key: TimerKey) -> bool:
        """Cancel the timer for key. Returns True if one was running."""
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_owner(self, owner: str) -> list[TimerKey]:
        """Cancel every timer belonging to owner. Returns the cancelled keys."""
        keys = [key for key in self._tasks if key[0] == owner]
        for key in keys:
            self.cancel(key)
        return keys

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    def is_active(self, key: TimerKey) -> bool:
        return key in self._tasks

    def active_keys(self) -> list[TimerKey]:
        return list(self._tasks)

    def _release(self, key: TimerKey) -> None:
        """Drop key if it still maps to the current task (a callback may have replaced it)."""
        current: Optional[asyncio.Task] = asyncio.current_task()
        if self._tasks.get(key) is current:
            del self._tasks[key]

    async def _periodic(self, key: TimerKey, interval_s: float, callback: Callable[[], None]) -> None:
        try:
            while True:
                await asyncio.sleep(interval_s)
                try:
                    callback()
                except Exception:
                    LOG.exception("Timer %s/%s callback failed", *key)
        finally:
            self._release(key)

    async def _once(self, key: TimerKey, delay_s: float, callback: Callable[[], None]) -> None:
        try:
            await asyncio.sleep(delay_s)
            self._release(key)
            try:
                callback()
            except Exception:
                LOG.exception("Timer %s/%s callback failed", *key)
        finally:
            self._release(key)
