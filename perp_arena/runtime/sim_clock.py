"""
SimClock: deterministic time control for headless runs and tests.

Replaces datetime.now() and asyncio.sleep() with a simulated clock that
advances only when told to. Sleepers are parked on futures and woken in
deadline order as simulated time passes, so several periodic tasks keep
their relative cadence without any wall-clock waiting.

Usage:
    clock = SimClock(start=datetime(2026, 1, 1, tzinfo=timezone.utc))
    await clock.run_for(10)     # wake every sleeper due in the next 10s
    clock.now()                 # 2026-01-01T00:00:10+00:00
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import heapq
import itertools
from typing import List, Optional, Set, Tuple

from perp_arena.domain.models import utc_now
from perp_arena.monitoring.logger import get_logger

logger = get_logger(__name__)

# Event-loop turns granted to a woken sleeper before checking for busy tasks
_YIELDS_PER_WAKE = 3
# Real seconds between checks while a task waits on a worker thread or I/O
_SETTLE_POLL_SECONDS = 0.001


class SimClock:
    """Deterministic simulated clock.

    Safe within a single asyncio loop (no threading).
    All time queries return simulated time.
    """

    def __init__(self, start: Optional[datetime] = None, settle_timeout: float = 10.0):
        """
        Args:
            start: Initial simulated time (must be timezone-aware).
            settle_timeout: Real seconds run_for waits for a woken task that is
                blocked on something other than this clock.
        """
        start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("SimClock start must be timezone-aware")
        self._current: datetime = start
        self._start: datetime = start
        self.settle_timeout = settle_timeout
        self._sleepers: List[Tuple[datetime, int, asyncio.Future, asyncio.Task]] = []
        self._sleeping_tasks: Set[asyncio.Task] = set()
        self._parked: Set[asyncio.Task] = set()
        self._seq = itertools.count()
        self._total_sleeps: int = 0
        self._total_sleep_seconds: float = 0.0

    # -- Time queries --

    def now(self) -> datetime:
        """Return current simulated UTC time."""
        return self._current

    def time(self) -> float:
        """Return current simulated time as Unix timestamp."""
        return self._current.timestamp()

    # -- Time advancement --

    def advance(self, *, seconds: float = 0, minutes: float = 0, to: Optional[datetime] = None) -> None:
        """Move simulated time without waking sleepers.

        Args:
            seconds: Seconds to advance.
            minutes: Minutes to advance.
            to: Advance to a specific time (must be >= current).
        """
        if to is not None:
            if to < self._current:
                raise ValueError(f"Cannot advance backwards: {to} < {self._current}")
            self._current = to
        else:
            delta = timedelta(seconds=seconds, minutes=minutes)
            if delta < timedelta(0):
                raise ValueError("Cannot advance by negative delta")
            self._current += delta

    async def run_for(self, seconds: float) -> int:
        """
        Advance simulated time by `seconds`, waking sleepers in deadline order.

        After each wake-up, simulated time holds still until every task that
        sleeps on this clock is parked again or finished, so work offloaded to
        threads (store writes) completes at the simulated instant it started.

        Returns:
            Number of sleepers woken
        """
        if seconds < 0:
            raise ValueError("Cannot run for a negative duration")
        target = self._current + timedelta(seconds=seconds)
        woken = 0
        # Let freshly started tasks reach their first sleep
        await self._settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            wake_at, _, future, task = heapq.heappop(self._sleepers)
            self._current = max(self._current, wake_at)
            if not future.done():
                self._parked.discard(task)
                future.set_result(None)
                woken += 1
            await self._settle()
        self._current = target
        return woken

    @staticmethod
    async def _yield() -> None:
        for _ in range(_YIELDS_PER_WAKE):
            await asyncio.sleep(0)

    def _busy_tasks(self) -> List[asyncio.Task]:
        self._sleeping_tasks = {t for t in self._sleeping_tasks if not t.done()}
        current = asyncio.current_task()
        return [t for t in self._sleeping_tasks if t not in self._parked and t is not current]

    async def _settle(self) -> None:
        await self._yield()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settle_timeout
        busy = self._busy_tasks()
        while busy:
            if loop.time() >= deadline:
                logger.warning(
                    "SimClock advancing past busy tasks",
                    tasks=[t.get_name() for t in busy],
                    now=self._current.isoformat(),
                )
                return
            await asyncio.sleep(_SETTLE_POLL_SECONDS)
            busy = self._busy_tasks()

    # -- Sleep replacement --

    async def sleep(self, seconds: float) -> None:
        """Replacement for asyncio.sleep(): parks until run_for() passes the deadline."""
        self._total_sleeps += 1
        self._total_sleep_seconds += seconds
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        task = asyncio.current_task()
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(
            self._sleepers,
            (self._current + timedelta(seconds=seconds), next(self._seq), future, task),
        )
        if task is None:
            await future
            return
        self._sleeping_tasks.add(task)
        self._parked.add(task)
        try:
            await future
        finally:
            self._parked.discard(task)

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, f, _ in self._sleepers if not f.done())

    # -- Stats --

    @property
    def elapsed(self) -> timedelta:
        """Total simulated time elapsed since start."""
        return self._current - self._start

    @property
    def stats(self) -> dict:
        return {
            "start": self._start.isoformat(),
            "current": self._current.isoformat(),
            "elapsed_seconds": self.elapsed.total_seconds(),
            "total_sleeps": self._total_sleeps,
            "total_sleep_seconds": self._total_sleep_seconds,
        }

    def __repr__(self) -> str:
        return f"SimClock(now={self._current.isoformat()}, elapsed={self.elapsed})"


class WallClock:
    """Real time."""

    def now(self) -> datetime:
        return utc_now()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
