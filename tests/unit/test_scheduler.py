"""
Unit tests for SimClock and the periodic task scheduler.

All timing runs on simulated time; only the thread-offload case spends a
few real milliseconds in a worker thread.
"""
import asyncio
from datetime import datetime, timedelta
import time

import pytest

from perp_arena.runtime.scheduler import ArenaScheduler, PeriodicTask
from perp_arena.runtime.sim_clock import SimClock


class TestSimClock:
    def test_naive_start_rejected(self):
        with pytest.raises(ValueError, match="timezone-aware"):
            SimClock(start=datetime(2026, 1, 1))

    def test_advance(self, sim_clock, now):
        sim_clock.advance(seconds=30, minutes=1)
        assert sim_clock.now() == now + timedelta(seconds=90)
        assert sim_clock.elapsed == timedelta(seconds=90)

    def test_advance_backwards_rejected(self, sim_clock, now):
        with pytest.raises(ValueError, match="backwards"):
            sim_clock.advance(to=now - timedelta(seconds=1))

    @pytest.mark.asyncio
    async def test_run_for_without_sleepers_moves_time(self, sim_clock, now):
        woken = await sim_clock.run_for(5)
        assert woken == 0
        assert sim_clock.now() == now + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_sleepers_wake_in_deadline_order(self, sim_clock, now):
        order = []

        async def nap(label, seconds):
            await sim_clock.sleep(seconds)
            order.append((label, sim_clock.now()))

        tasks = [asyncio.create_task(nap("late", 4)), asyncio.create_task(nap("early", 2))]
        await asyncio.sleep(0)
        assert sim_clock.pending_sleepers == 2

        woken = await sim_clock.run_for(5)
        await asyncio.gather(*tasks)

        assert woken == 2
        assert order == [("early", now + timedelta(seconds=2)), ("late", now + timedelta(seconds=4))]
        assert sim_clock.pending_sleepers == 0
        assert sim_clock.stats["total_sleeps"] == 2
        assert sim_clock.stats["total_sleep_seconds"] == 6.0
        assert sim_clock.stats["elapsed_seconds"] == 5.0

    @pytest.mark.asyncio
    async def test_run_for_waits_for_thread_work(self, sim_clock, now):
        finished = []

        async def worker():
            while True:
                await sim_clock.sleep(1)
                started = sim_clock.now()
                await asyncio.to_thread(time.sleep, 0.02)
                finished.append((started, sim_clock.now()))

        task = asyncio.create_task(worker())
        await sim_clock.run_for(3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [started for started, _ in finished] == [now + timedelta(seconds=s) for s in (1, 2, 3)]
        assert all(started == ended for started, ended in finished)

    @pytest.mark.asyncio
    async def test_run_for_negative_rejected(self, sim_clock):
        with pytest.raises(ValueError):
            await sim_clock.run_for(-1)


class TestScheduler:
    @pytest.mark.asyncio
    async def test_tasks_keep_relative_cadence(self, sim_clock):
        counts = {"fast": 0, "medium": 0, "slow": 0}

        def bump(name):
            def callback():
                counts[name] += 1
            return callback

        scheduler = ArenaScheduler(sim_clock)
        scheduler.register("fast", 1.0, bump("fast"))
        scheduler.register("medium", 2.0, bump("medium"))
        scheduler.register("slow", 3.0, bump("slow"))

        scheduler.start()
        await sim_clock.run_for(10)
        await scheduler.stop()

        assert counts == {"fast": 10, "medium": 5, "slow": 3}
        assert scheduler.names() == ["fast", "medium", "slow"]

    @pytest.mark.asyncio
    async def test_async_callbacks_awaited(self, sim_clock):
        seen = []

        async def callback():
            seen.append(sim_clock.now())

        scheduler = ArenaScheduler(sim_clock)
        scheduler.register("sync", 2.0, callback)
        scheduler.start()
        await sim_clock.run_for(4)
        await scheduler.stop()

        start = sim_clock.now() - timedelta(seconds=4)
        assert seen == [start + timedelta(seconds=2), start + timedelta(seconds=4)]

    @pytest.mark.asyncio
    async def test_failing_iteration_does_not_stop_loop(self, sim_clock):
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] % 2:
                raise RuntimeError("boom")

        scheduler = ArenaScheduler(sim_clock)
        task = scheduler.register("flaky", 1.0, flaky)
        scheduler.start()
        await sim_clock.run_for(6)
        await scheduler.stop()

        assert calls["n"] == 6
        assert task.errors == 3
        assert task.runs == 3

    @pytest.mark.asyncio
    async def test_stop_cancels_everything(self, sim_clock):
        scheduler = ArenaScheduler(sim_clock)
        scheduler.register("a", 1.0, lambda: None)
        scheduler.register("b", 5.0, lambda: None)
        scheduler.start()
        await sim_clock.run_for(1)
        assert scheduler.is_running

        await scheduler.stop()

        assert not scheduler.is_running
        assert all(not task.active for task in scheduler.tasks.values())

    def test_duplicate_name_rejected(self, sim_clock):
        scheduler = ArenaScheduler(sim_clock)
        scheduler.register("tick", 1.0, lambda: None)
        with pytest.raises(ValueError, match="already registered"):
            scheduler.register("tick", 2.0, lambda: None)

    def test_non_positive_interval_rejected(self, sim_clock):
        with pytest.raises(ValueError, match="positive"):
            PeriodicTask("bad", 0, lambda: None, sim_clock)
