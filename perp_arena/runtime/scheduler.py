"""
Periodic task scheduler.

Every timer in the arena is a named PeriodicTask registered against one
ArenaScheduler. A task sleeps on the injected clock, runs its callback and
repeats; an exception inside one iteration is logged and the loop carries
on, so at most that iteration's work is skipped.

Teardown cancels every task and waits for the cancellations only. In-flight
work (e.g. a store flush) is abandoned, not awaited to completion.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from perp_arena.domain.protocols import Clock
from perp_arena.monitoring.logger import get_logger

logger = get_logger(__name__)

TaskCallback = Callable[[], Union[None, Any, Awaitable[Any]]]


class PeriodicTask:
    """One named timer."""

    def __init__(self, name: str, interval_seconds: float, callback: TaskCallback, clock: Clock):
        if interval_seconds <= 0:
            raise ValueError(f"Task {name} interval must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.clock = clock
        self.active = False
        self.runs = 0
        self.errors = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        """Run the callback once; failures are logged, never raised."""
        try:
            result = self.callback()
            if inspect.isawaitable(result):
                await result
            self.runs += 1
        except Exception as e:
            self.errors += 1
            logger.error(
                "Periodic task iteration failed",
                task=self.name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    async def _loop(self) -> None:
        while self.active:
            await self.clock.sleep(self.interval_seconds)
            if not self.active:
                break
            await self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self.active = True
        self._task = asyncio.create_task(self._loop(), name=f"arena-{self.name}")

    async def stop(self) -> None:
        self.active = False
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class ArenaScheduler:
    """Registry of named periodic tasks sharing one clock."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.tasks: Dict[str, PeriodicTask] = {}

    def register(self, name: str, interval_seconds: float, callback: TaskCallback) -> PeriodicTask:
        if name in self.tasks:
            raise ValueError(f"Task {name} already registered")
        task = PeriodicTask(name, interval_seconds, callback, self.clock)
        self.tasks[name] = task
        return task

    @property
    def is_running(self) -> bool:
        return any(task.running for task in self.tasks.values())

    def names(self) -> List[str]:
        return list(self.tasks)

    def start(self) -> None:
        for task in self.tasks.values():
            task.start()
        logger.info(
            "Scheduler started",
            tasks={name: task.interval_seconds for name, task in self.tasks.items()},
        )

    async def stop(self) -> None:
        """Cancel every task; all are stopped before this returns."""
        await asyncio.gather(*(task.stop() for task in self.tasks.values()))
        logger.info("Scheduler stopped", runs={name: task.runs for name, task in self.tasks.items()})
