from __future__ import annotations

import heapq
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(eq=False, slots=True)
class TimerHandle:
    """A scheduled callback. `cancel()` is safe to call any number of times."""

    due: float
    callback: Callable[[], None]
    interval: float | None = None
    cancelled: bool = False
    seq: int = field(default=0, repr=False)

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return not self.cancelled


class Scheduler:
    """Deterministic single-threaded timer queue.

    All mission countdowns and cinematic scene timers are funnelled through one
    scheduler so every callback runs to completion before the next one starts:
    - `advance(seconds)` moves the simulated clock forward and runs whatever became due
    - callbacks may schedule or cancel other timers, including ones due within the same window
    - ties are broken by scheduling order
    """

    def __init__(self, *, start: float = 0.0):
        self._now = float(start)
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(due=self._now + max(0.0, float(delay)), callback=callback)
        self._push(handle)
        return handle

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        handle = TimerHandle(due=self._now + float(interval), callback=callback, interval=float(interval))
        self._push(handle)
        return handle

    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if h.active)

    def advance(self, seconds: float) -> int:
        """Run every timer due within the next `seconds`. Returns the number of callbacks run."""

        if seconds < 0:
            raise ValueError("seconds must be >= 0")

        target = self._now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            _, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue

            self._now = handle.due
            if handle.interval is not None:
                handle.due = self._now + handle.interval
                self._push(handle)
            else:
                handle.cancelled = True

            handle.callback()
            ran += 1

        self._now = target
        if ran:
            logger.debug("scheduler advanced to %.3f (%d callbacks)", self._now, ran)
        return ran

    def _push(self, handle: TimerHandle) -> None:
        handle.seq = next(self._counter)
        heapq.heappush(self._queue, (handle.due, handle.seq, handle))
