"""
Runtime: simulation context, named periodic tasks, simulated clock.
"""
from perp_arena.runtime.scheduler import ArenaScheduler, PeriodicTask
from perp_arena.runtime.sim_clock import SimClock, WallClock

__all__ = [
    "ArenaScheduler",
    "PeriodicTask",
    "SimClock",
    "WallClock",
]
