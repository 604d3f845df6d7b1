"""
Scheduler - Debounce timers keyed by (row_id, purpose)

Recognition and validation are both debounced: rescheduling a key replaces
its pending timer. fire_now() is the manual bypass. AsyncioScheduler runs on
the event loop; ManualScheduler keeps a virtual clock so that debounced flows
can be driven step by step without waiting.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

TimerKey = Tuple[str, str]  # (row_id, purpose)
Callback = Callable[[], Awaitable[Any]]

OCR = "ocr"
VALIDATION = "validation"


class Scheduler(ABC):
    """Debounced callbacks keyed by (row_id, purpose)."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @abstractmethod
    def schedule(self, key: TimerKey, delay: float, callback: Callback) -> None:
        """(Re)schedule ``callback`` to run ``delay`` seconds from now."""
        pass

    @abstractmethod
    def cancel(self, key: TimerKey) -> bool:
        """Cancel a pending timer. Returns True if one was pending."""
        pass

    @abstractmethod
    def pending(self) -> List[TimerKey]:
        pass

    @abstractmethod
    def _take(self, key: TimerKey) -> Optional[Callback]:
        """Remove and return the callback of a pending timer."""
        pass

    def is_pending(self, key: TimerKey) -> bool:
        return key in self.pending()

    def cancel_row(self, row_id: str) -> int:
        """Cancel every timer of a row."""
        return sum(1 for key in self.pending() if key[0] == row_id and self.cancel(key))

    async def fire_now(self, key: TimerKey) -> bool:
        """Run a pending timer immediately. Returns False if none was pending."""
        callback = self._take(key)
        if callback is None:
            return False
        await callback()
        return True

    def _spawn(self, key: TimerKey, callback: Callback) -> asyncio.Task:
        task = asyncio.ensure_future(self._guard(key, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, key: TimerKey, callback: Callback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled {key[1]} for {key[0]} failed: {e}")

    async def wait_idle(self) -> None:
        """Wait for callbacks that already fired to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def shutdown(self) -> None:
        for key in self.pending():
            self.cancel(key)


class AsyncioScheduler(Scheduler):
    """Timers on the running event loop (loop.call_later)."""

    def __init__(self):
        super().__init__()
        self._timers: Dict[TimerKey, Tuple[asyncio.TimerHandle, Callback]] = {}

    def schedule(self, key: TimerKey, delay: float, callback: Callback) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._fire, key)
        self._timers[key] = (handle, callback)
        logger.debug(f"Scheduled {key[1]} for {key[0]} in {delay:.2f}s")

    def _fire(self, key: TimerKey) -> None:
        callback = self._take(key)
        if callback is not None:
            self._spawn(key, callback)

    def _take(self, key: TimerKey) -> Optional[Callback]:
        entry = self._timers.pop(key, None)
        if entry is None:
            return None
        entry[0].cancel()
        return entry[1]

    def cancel(self, key: TimerKey) -> bool:
        entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def pending(self) -> List[TimerKey]:
        return list(self._timers.keys())


@dataclass
class _ManualTimer:
    due: float
    callback: Callback


class ManualScheduler(Scheduler):
    """
    Scheduler driven by a virtual clock.

    Example:
        scheduler = ManualScheduler()
        pipeline = RowPipeline(..., scheduler=scheduler)
        await scheduler.advance(0.5)  # fires every timer due within 0.5s
    """

    def __init__(self):
        super().__init__()
        self.now = 0.0
        self._timers: Dict[TimerKey, _ManualTimer] = {}

    def schedule(self, key: TimerKey, delay: float, callback: Callback) -> None:
        self._timers[key] = _ManualTimer(due=self.now + delay, callback=callback)

    def cancel(self, key: TimerKey) -> bool:
        return self._timers.pop(key, None) is not None

    def pending(self) -> List[TimerKey]:
        return list(self._timers.keys())

    def due_at(self, key: TimerKey) -> Optional[float]:
        timer = self._timers.get(key)
        return timer.due if timer else None

    def _take(self, key: TimerKey) -> Optional[Callback]:
        timer = self._timers.pop(key, None)
        return timer.callback if timer else None

    async def advance(self, seconds: float) -> int:
        """
        Move the clock forward, running due timers in due order.

        Timers scheduled by callbacks are honoured if they fall due within
        the same window. Returns the number of callbacks run.
        """
        target = self.now + seconds
        fired = 0
        while True:
            due = [(t.due, key) for key, t in self._timers.items() if t.due <= target]
            if not due:
                break
            when, key = min(due)
            self.now = max(self.now, when)
            callback = self._take(key)
            await self._guard(key, callback)
            fired += 1
        self.now = target
        return fired

    async def drain(self) -> int:
        """Run every pending timer, whatever its due time."""
        fired = 0
        while self._timers:
            key = min(self._timers, key=lambda k: self._timers[k].due)
            self.now = max(self.now, self._timers[key].due)
            await self._guard(key, self._take(key))
            fired += 1
        return fired
