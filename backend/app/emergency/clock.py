"""
clock.py — Time source for timestamps and timer waits.

The engine never calls datetime.now() or asyncio.sleep() directly; it goes
through a clock so that escalation deadlines, replayed remaining time and
retry backoff can be driven deterministically.

    SystemClock   — wall-clock UTC time, real asyncio sleeps
    VirtualClock  — time only moves when advance() is awaited; sleepers
                    wake in deadline order as their deadline is crossed
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))


class VirtualClock:
    """
    Manually advanced clock.

    Usage:
        clock = VirtualClock()
        task = asyncio.create_task(worker(clock))   # worker awaits clock.sleep(300)
        await clock.advance(minutes=5)              # worker resumes here
    """

    # Loop iterations given to woken sleepers before time moves on
    SETTLE_ROUNDS = 20

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._sleepers: List[Tuple[datetime, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        deadline = self._now + timedelta(seconds=seconds)
        heapq.heappush(self._sleepers, (deadline, next(self._seq), future))
        await future

    @property
    def pending(self) -> int:
        """Sleepers still waiting (cancelled ones excluded)."""
        return sum(1 for _, _, f in self._sleepers if not f.done())

    async def advance(self, seconds: float = 0.0, *, minutes: float = 0.0) -> None:
        """Move time forward, waking every sleeper whose deadline is reached."""
        target = self._now + timedelta(seconds=seconds, minutes=minutes)
        await self._settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self._now = max(self._now, deadline)
            future.set_result(None)
            await self._settle()
        self._now = target
        await self._settle()

    def set(self, moment: datetime) -> None:
        """Jump without waking anyone (used to simulate a process restart)."""
        self._now = moment

    async def _settle(self) -> None:
        for _ in range(self.SETTLE_ROUNDS):
            await asyncio.sleep(0)
