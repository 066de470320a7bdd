"""
End-to-end simulation flows on simulated time.

In-memory runs use the NullStore. Persisted flows use a SQLite-backed
SqlStore (and rehydrate a second simulation from it) or the recording fake.
"""
import pytest

from perp_arena.config.config import Config
from perp_arena.domain.models import Direction, LogType, PositionStatus
from perp_arena.runtime.simulation import ArenaSimulation
from perp_arena.storage import repository
from perp_arena.storage.db import init_db
from perp_arena.storage.repository import BattleLogModel
from perp_arena.storage.store import NullStore, SqlStore


@pytest.fixture
def arena_config():
    config = Config()
    config.system.seed = 5
    config.population.initial_per_side = 3
    return config


@pytest.fixture
def sim(arena_config, sim_clock):
    return ArenaSimulation.create(arena_config, store=NullStore(), clock=sim_clock)


def _user_entries(sim, user_id):
    return [e for e in sim.context.battle_log.entries() if e.user_id == user_id]


class TestInMemoryFlow:
    @pytest.mark.asyncio
    async def test_mint_deploy_run_withdraw(self, sim):
        ctx = sim.context
        await sim.open_wallet("alice")

        position = sim.mint_agent("alice", "Vortex")
        assert position.name == "Vortex"
        assert position.status == PositionStatus.IDLE
        assert ctx.wallets.balance("alice") == 9500.0

        deployed = sim.deploy_agent(position.id, Direction.LONG, 1, 1000.0)
        assert deployed is position
        assert position.status == PositionStatus.ACTIVE
        assert position.entry_price == ctx.market.state.price
        assert ctx.wallets.balance("alice") == 8500.0

        await sim.start()
        await sim.run_for(10)
        await sim.stop()

        assert not sim.scheduler.is_running
        assert sim.scheduler.tasks["settlement"].runs == 10
        assert sim.scheduler.tasks["population"].runs == 3
        assert sim.scheduler.tasks["sync"].runs == 5
        assert position.status == PositionStatus.ACTIVE

        result = sim.withdraw_agent(position.id)
        assert result.final_balance == pytest.approx(1000.0 + result.realized_pnl)
        assert ctx.wallets.balance("alice") == pytest.approx(8500.0 + result.final_balance)
        assert position.status == PositionStatus.IDLE

        exits = [e for e in _user_entries(sim, "alice") if e.type == LogType.EXIT]
        assert len(exits) == 1
        assert "Vortex withdrawn with" in exits[0].message

    @pytest.mark.asyncio
    async def test_start_seeds_bots_once(self, sim):
        await sim.start()
        await sim.stop()
        await sim.start()
        await sim.stop()

        snap = sim.snapshot()
        assert snap.bot_positions == 6
        mints = sim.context.battle_log.of_type(LogType.MINT)
        assert [e.message for e in mints] == [
            "3 SHORT agents entered the MON arena",
            "3 LONG agents entered the MON arena",
        ]

    @pytest.mark.asyncio
    async def test_insufficient_funds_logged_not_raised(self, sim):
        await sim.open_wallet("alice")
        position = sim.mint_agent("alice", "Vortex")

        assert sim.deploy_agent(position.id, Direction.SHORT, 5, 1_000_000.0) is None

        assert position.status == PositionStatus.IDLE
        assert sim.context.wallets.balance("alice") == 9500.0
        latest = _user_entries(sim, "alice")[0]
        assert latest.type == LogType.LOSS
        assert "Insufficient MON" in latest.message

    @pytest.mark.asyncio
    async def test_invalid_inputs_rejected(self, sim):
        await sim.open_wallet("alice")
        position = sim.mint_agent("alice")

        assert sim.deploy_agent(position.id, "SIDEWAYS", 5, 500.0) is None
        assert sim.deploy_agent(position.id, Direction.LONG, 99, 500.0) is None
        assert sim.deploy_agent(position.id, Direction.LONG, 5, 500.0, asset="DOGE") is None
        assert sim.withdraw_agent(position.id) is None
        assert sim.mint_agent("bob") is None

        losses = sim.context.battle_log.of_type(LogType.LOSS)
        assert len(losses) == 5
        assert sim.context.wallets.balance("alice") == 9500.0

    @pytest.mark.asyncio
    async def test_user_liquidation_logged(self, sim):
        ctx = sim.context
        await sim.open_wallet("alice")
        position = sim.mint_agent("alice", "Vortex")
        sim.deploy_agent(position.id, Direction.LONG, 50, 1000.0)

        ctx.market.draw_change = lambda: -0.05
        sim.tick()

        assert position.status == PositionStatus.LIQUIDATED
        assert position.balance == 0.0
        assert position.pnl == -1000.0
        assert sim.liquidations >= 1
        entry = next(e for e in _user_entries(sim, "alice") if e.type == LogType.LIQUIDATION)
        assert entry.message == "Vortex liquidated on MON!"

        assert sim.withdraw_agent(position.id) is None
        assert ctx.wallets.balance("alice") == 8500.0

    @pytest.mark.asyncio
    async def test_stake_claim_unstake(self, sim, sim_clock):
        ctx = sim.context
        await sim.open_wallet("alice")

        assert sim.stake("alice", 2000.0)
        assert ctx.wallets.balance("alice") == 8000.0
        assert ctx.liquidity.pool.total_staked == 2000.0

        await sim.accrue()
        pending = ctx.liquidity.get_stake("alice").pending_rewards
        assert pending > 0

        claimed = sim.claim_rewards("alice")
        assert claimed == pytest.approx(pending)
        assert sim.claim_rewards("alice") == 0.0

        assert not sim.unstake("alice", 5000.0)
        assert sim.unstake("alice", 2000.0)
        assert ctx.wallets.balance("alice") == pytest.approx(10000.0 + claimed)
        assert ctx.liquidity.pool.total_staked == 0.0

    @pytest.mark.asyncio
    async def test_referrer_earns_on_referred_mint(self, sim):
        ctx = sim.context
        await sim.open_wallet("alice")
        await sim.open_wallet("bob", referred_by="alice")

        sim.mint_agent("bob", "Echo")

        alice = ctx.wallets.get("alice")
        assert alice.mon_balance == pytest.approx(10025.0)
        assert alice.referral_count == 1
        reward = _user_entries(sim, "alice")[0]
        assert reward.type == LogType.SOCIAL
        assert reward.message == "Referral reward: 25 MON from bob"

    def test_select_asset(self, sim):
        assert not sim.select_asset("DOGE")
        assert sim.select_asset("BTC")
        assert sim.snapshot().asset == "BTC"
        assert sim.snapshot().price == 65000.0

    @pytest.mark.asyncio
    async def test_same_seed_same_run(self, arena_config):
        from perp_arena.runtime.sim_clock import SimClock

        async def run():
            sim = ArenaSimulation.create(arena_config, store=NullStore(), clock=SimClock())
            await sim.start()
            await sim.run_for(30)
            await sim.stop()
            snap = sim.snapshot()
            return snap.price, snap.bot_positions, sim.liquidations

        assert await run() == await run()


class TestPersistedFlow:
    @pytest.mark.asyncio
    async def test_flush_and_rehydrate(self, arena_config, sim_clock, sqlite_url):
        db = init_db(sqlite_url)
        store = SqlStore(db)
        try:
            sim = ArenaSimulation.create(arena_config, store=store, clock=sim_clock)
            await sim.open_wallet("alice")
            position = sim.mint_agent("alice", "Vortex")
            sim.deploy_agent(position.id, Direction.SHORT, 3, 1000.0)
            sim.stake("alice", 1000.0)
            sim.context.population.seed("MON", sim.context.market.state.price, sim_clock.now())

            results = await sim.flush()
            assert all(results.values())

            for _ in range(5):
                sim.tick()
            await sim.flush()
            assert all(count == 0 for count in sim.context.sync.pending().values())

            wallet = repository.get_or_create_user(db, "alice", 10000.0)
            assert wallet.mon_balance == 7500.0
            with db.get_session() as session:
                logged = session.query(BattleLogModel).filter(BattleLogModel.user_id == "alice").count()
            assert logged >= 2
            assert (await store.get_pool(arena_config.liquidity.pool_id)).total_staked == 1000.0

            restored = ArenaSimulation.create(arena_config, store=store, clock=sim_clock)
            assert await restored.load_positions() == 1

            loaded = restored.context.ledger.get(position.id)
            assert loaded.pnl == pytest.approx(position.pnl)
            assert loaded.status == position.status
            assert loaded.effective_direction == position.effective_direction
            assert restored.context.ledger.ephemeral_positions() == []
            assert restored.context.liquidity.pool.total_staked == 1000.0

            reopened = await restored.open_wallet("alice")
            assert reopened.mon_balance == 7500.0
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_timed_run_completes_store_writes(self, arena_config, sim_clock, sqlite_url):
        db = init_db(sqlite_url)
        store = SqlStore(db)
        try:
            sim = ArenaSimulation.create(arena_config, store=store, clock=sim_clock)
            await sim.open_wallet("alice")
            position = sim.mint_agent("alice", "Vortex")
            sim.deploy_agent(position.id, Direction.LONG, 2, 1000.0)
            sim.stake("alice", 500.0)

            await sim.start()
            await sim.run_for(20)
            await sim.stop()

            runs = {name: task.runs for name, task in sim.scheduler.tasks.items()}
            assert runs == {"settlement": 20, "population": 6, "sync": 10, "liquidity": 20}
            assert sim.context.sync.stakes.flushed_items == 1
            assert sim.context.liquidity.pool.total_staked == 500.0

            (stored,) = await store.load_all_positions()
            assert stored.status == PositionStatus.ACTIVE
            assert stored.balance == 1000.0
            wallet = repository.get_or_create_user(db, "alice", 10000.0)
            assert wallet.mon_balance == 8000.0
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_pool_total_tracks_stakes_across_flush(self, arena_config, sim_clock, sqlite_url):
        db = init_db(sqlite_url)
        store = SqlStore(db)
        try:
            sim = ArenaSimulation.create(arena_config, store=store, clock=sim_clock)
            liquidity = sim.context.liquidity
            await sim.open_wallet("alice")
            sim.stake("alice", 1000.0)

            # First accrual reconciles against a store that has no stake rows yet
            await sim.accrue()
            assert liquidity.pool.total_staked == 1000.0
            assert liquidity.pool.apr == 50.0

            await sim.flush()
            assert liquidity.pool.total_staked == 1000.0
            assert (await store.get_pool(liquidity.pool.pool_id)).total_staked == 1000.0

            sim_clock.advance(seconds=arena_config.liquidity.reconcile_interval_seconds)
            await sim.accrue()
            assert liquidity.pool.total_staked == sum(s.amount for s in liquidity.stakes.values())
            assert liquidity.pool.apr == 50.0
        finally:
            store.close()


class TestBotPersistence:
    @pytest.mark.asyncio
    async def test_liquidated_bots_never_reach_store(self, arena_config, sim_clock, recording_store):
        sim = ArenaSimulation.create(arena_config, store=recording_store, clock=sim_clock)
        ctx = sim.context
        await sim.open_wallet("alice")
        position = sim.mint_agent("alice", "Vortex")
        sim.deploy_agent(position.id, Direction.SHORT, 2, 1000.0)

        bots = ctx.population.seed("MON", ctx.market.state.price, sim_clock.now())
        longs = [bot for bot in bots if bot.direction == Direction.LONG]
        shorts = [bot for bot in bots if bot.direction == Direction.SHORT]
        for bot in longs:
            bot.leverage = 49
            bot.entry_price = ctx.market.state.price

        ctx.market.draw_change = lambda: -0.05
        tick = sim.tick()
        assert {bot.id for bot in longs} <= {p.id for p in tick.liquidated}

        exhausted = shorts[0]
        exhausted.pnl = -exhausted.balance
        rotation = sim.rotate()
        assert exhausted in rotation.liquidated

        sim.tick()
        await sim.flush()

        bot_ids = {bot.id for bot in bots}
        delta_ids = {d.position_id for batch in recording_store.batches("batch_update_position_pnl") for d in batch}
        saved_ids = {pid for batch in recording_store.batches("save_positions") for pid in batch}
        history_ids = {
            r.position_id for batch in recording_store.batches("batch_insert_pnl_history_samples") for r in batch
        }
        assert position.id in delta_ids
        assert saved_ids == {position.id}
        assert not bot_ids & (delta_ids | saved_ids | history_ids)
