"""Time sources for the scheduler."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time


class SystemClock:
    """Wall-clock time and real asyncio sleeps."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class VirtualClock:
    """
    Manually advanced clock for deterministic tests.

    ``sleep`` parks the caller until ``advance`` moves time past its
    deadline. Sleepers wake in deadline order, and the event loop is given a
    few turns after each wake so woken tasks can run and park again.

    Example:
        clock = VirtualClock()
        cue = IngestCue(clock=clock)
        await cue.start()
        await cue.submit([1, 2, 3], "HIGH")
        await clock.advance(6.0)
    """

    def __init__(self, start: float = 0.0, settle_turns: int = 20) -> None:
        self._now = start
        self._settle_turns = settle_turns
        self._sleepers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._seq), future))
        await future

    async def settle(self) -> None:
        """Let runnable tasks run without moving time."""
        for _ in range(self._settle_turns):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline passes."""
        target = self._now + seconds
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self._now = max(self._now, deadline)
            future.set_result(None)
            await self.settle()
        self._now = target
        await self.settle()

    @property
    def sleepers(self) -> int:
        """Number of tasks currently parked on this clock."""
        return sum(1 for _, _, f in self._sleepers if not f.done())
