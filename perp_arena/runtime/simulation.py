"""
Arena simulation runtime.

SimulationContext owns every piece of mutable state; ArenaSimulation wires
the four timers onto an ArenaScheduler and exposes the user-facing
lifecycle operations:

    settlement  (1s)  price advance, PnL, liquidation
    population  (3s)  bot rotation
    sync        (2s)  batched store flush
    liquidity   (1s)  APR refresh, reward accrual, periodic pool reconcile

Timer callbacks mutate the ledger synchronously; only the sync flush and
the pool reconcile await the store. Lifecycle operations report rejected
input on the battle log and return None/False instead of raising.
"""
from dataclasses import dataclass, field
import random
from typing import Any, Dict, List, Optional

from perp_arena.config.config import Config
from perp_arena.domain.models import (
    BattleLogEntry,
    Direction,
    LogType,
    Owner,
    Position,
    PositionStatus,
    Trend,
)
from perp_arena.domain.protocols import Clock, ErrorSink, PersistenceStore, PersonaProvider
from perp_arena.exceptions import DataError, InsufficientFundsError, OperationalError, ValidationError
from perp_arena.execution.position_ledger import PositionLedger, WithdrawalResult
from perp_arena.liquidity.accrual import LiquidityAccrual
from perp_arena.market.price_process import PriceProcess, build_price_processes
from perp_arena.monitoring.battle_log import BattleLog
from perp_arena.monitoring.logger import get_logger
from perp_arena.population.manager import PopulationManager, RotationResult
from perp_arena.population.personas import TemplatePersonaProvider
from perp_arena.reconciliation.sync import ReconciliationLayer
from perp_arena.runtime.scheduler import ArenaScheduler
from perp_arena.runtime.sim_clock import SimClock, WallClock
from perp_arena.settlement.engine import SettlementEngine, TickResult
from perp_arena.storage.store import NullStore
from perp_arena.wallet.wallet import WalletBook

logger = get_logger(__name__)


@dataclass
class SimulationContext:
    """All simulation state, created together and discarded together."""
    config: Config
    rng: random.Random
    clock: Clock
    store: PersistenceStore
    ledger: PositionLedger
    markets: Dict[str, PriceProcess]
    engine: SettlementEngine
    population: PopulationManager
    sync: ReconciliationLayer
    liquidity: LiquidityAccrual
    wallets: WalletBook
    battle_log: BattleLog
    selected_asset: str

    @classmethod
    def build(
        cls,
        config: Optional[Config] = None,
        store: Optional[PersistenceStore] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        error_sink: Optional[ErrorSink] = None,
    ) -> "SimulationContext":
        config = config or Config()
        rng = rng or random.Random(config.system.seed)
        clock = clock or WallClock()
        store = store or NullStore()

        settlement = config.settlement
        ledger = PositionLedger(
            min_leverage=settlement.min_leverage,
            max_leverage=settlement.max_leverage,
            min_collateral=settlement.min_collateral,
        )
        markets = build_price_processes(config.market, rng)
        now = clock.now()
        for process in markets.values():
            process.reset(now)

        liquidity = LiquidityAccrual(config.liquidity)
        sync = ReconciliationLayer(
            store,
            error_sink=error_sink,
            on_pool_reconciled=liquidity.adopt_store_pool,
        )
        return cls(
            config=config,
            rng=rng,
            clock=clock,
            store=store,
            ledger=ledger,
            markets=markets,
            engine=SettlementEngine(settlement, ledger, rng),
            population=PopulationManager(config.population, ledger, rng, settlement.pnl_history_max),
            sync=sync,
            liquidity=liquidity,
            wallets=WalletBook(
                initial_balance=config.wallet.initial_mon_balance,
                referral_rate=config.wallet.referral_rate,
                on_delta=sync.enqueue_wallet,
            ),
            battle_log=BattleLog(config.monitoring.battle_log_capacity, on_entry=sync.enqueue_log),
            selected_asset=config.market.default_asset,
        )

    @property
    def market(self) -> PriceProcess:
        return self.markets[self.selected_asset]


@dataclass(frozen=True)
class ArenaSnapshot:
    """Read-only view for renderers and the CLI summary."""
    asset: str
    price: float
    trend: Trend
    last_change_pct: float
    long_earnings_per_second: float
    short_earnings_per_second: float
    total_long_staked: float
    total_short_staked: float
    active_positions: int
    user_positions: int
    bot_positions: int
    liquidated_positions: int
    pool_apr: float
    pool_total_staked: float
    pool_total_rewards: float
    pending_sync: Dict[str, int] = field(default_factory=dict)
    recent_log: List[BattleLogEntry] = field(default_factory=list)


class ArenaSimulation:
    """Facade over one SimulationContext and its scheduler."""

    def __init__(
        self,
        context: SimulationContext,
        persona_provider: Optional[PersonaProvider] = None,
    ):
        self.context = context
        self.persona_provider = persona_provider or TemplatePersonaProvider(context.rng)
        self.scheduler = ArenaScheduler(context.clock)
        self.liquidations = 0
        self._register_tasks()

    @classmethod
    def create(
        cls,
        config: Optional[Config] = None,
        store: Optional[PersistenceStore] = None,
        clock: Optional[Clock] = None,
        **kwargs: Any,
    ) -> "ArenaSimulation":
        persona_provider = kwargs.pop("persona_provider", None)
        context = SimulationContext.build(config, store=store, clock=clock, **kwargs)
        return cls(context, persona_provider=persona_provider)

    def _register_tasks(self) -> None:
        cfg = self.context.config
        self.scheduler.register("settlement", cfg.settlement.tick_interval_seconds, self.tick)
        self.scheduler.register("population", cfg.population.rotation_interval_seconds, self.rotate)
        self.scheduler.register("sync", cfg.sync.flush_interval_seconds, self.flush)
        self.scheduler.register("liquidity", cfg.liquidity.accrual_interval_seconds, self.accrue)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, seed_bots: bool = True) -> None:
        """Seed the bot population (if empty) and start every timer."""
        ctx = self.context
        if seed_bots and not ctx.ledger.ephemeral_positions():
            bots = ctx.population.seed(ctx.selected_asset, ctx.market.state.price, ctx.clock.now())
            per_side = ctx.config.population.initial_per_side
            if bots:
                ctx.battle_log.add(f"{per_side} LONG agents entered the {ctx.selected_asset} arena", LogType.MINT)
                ctx.battle_log.add(f"{per_side} SHORT agents entered the {ctx.selected_asset} arena", LogType.MINT)
        self.scheduler.start()

    async def stop(self) -> None:
        """Stop every timer. Pending sync batches are not flushed."""
        await self.scheduler.stop()
        pending = self.context.sync.pending()
        if any(pending.values()):
            logger.info("Simulation stopped with unflushed batches", pending=pending)

    async def run_for(self, seconds: float) -> None:
        """Let the timers run for `seconds` (simulated when the clock is a SimClock)."""
        clock = self.context.clock
        if isinstance(clock, SimClock):
            await clock.run_for(seconds)
        else:
            await clock.sleep(seconds)

    async def load_positions(self) -> int:
        """Rehydrate persisted positions and stakes from the store."""
        ctx = self.context
        if not ctx.store.is_configured:
            return 0
        try:
            positions = await ctx.store.load_all_positions()
            stakes = await ctx.store.get_pool_stakes(ctx.liquidity.pool.pool_id)
            pool = await ctx.store.recompute_and_persist_total_staked(ctx.liquidity.pool.pool_id)
        except OperationalError as e:
            logger.warning("Rehydration failed; starting from empty state", error=str(e))
            return 0

        for position in positions:
            ctx.ledger.add(position)
        ctx.liquidity.load_stakes(stakes)
        if pool is not None:
            ctx.liquidity.adopt_store_pool(pool)
        logger.info("Positions rehydrated", positions=len(positions), stakes=len(stakes))
        return len(positions)

    # ------------------------------------------------------------------
    # Timer callbacks
    # ------------------------------------------------------------------

    def tick(self) -> TickResult:
        """One settlement tick for the selected asset."""
        ctx = self.context
        result = ctx.engine.settle_tick(ctx.market, ctx.clock.now())
        ctx.sync.enqueue_position_deltas(result.persisted_deltas)
        ctx.sync.enqueue_history(result.history_records)
        if result.market_record is not None:
            ctx.sync.enqueue_market(result.market_record)
        for position in result.liquidated:
            self._log_liquidation(position)
        return result

    def rotate(self) -> RotationResult:
        ctx = self.context
        result = ctx.population.rotate(ctx.selected_asset, ctx.market.state.price, ctx.clock.now())
        for bot in result.liquidated:
            self._log_liquidation(bot)
        if result.added:
            names = ", ".join(bot.name.split("-")[0] for bot in result.added)
            ctx.battle_log.add(f"{len(result.added)} new agents entered: {names}", LogType.MINT)
        return result

    async def flush(self) -> Dict[str, bool]:
        return await self.context.sync.flush()

    async def accrue(self) -> float:
        ctx = self.context
        ctx.liquidity.refresh_apr(ctx.ledger.active())
        accrued = ctx.liquidity.accrue(ctx.config.liquidity.accrual_interval_seconds)
        now = ctx.clock.now()
        if ctx.liquidity.reconcile_due(now):
            await ctx.liquidity.reconcile_with_store(ctx.store, now)
        return accrued

    def _log_liquidation(self, position: Position) -> None:
        self.liquidations += 1
        self.context.battle_log.add(
            f"{position.name} liquidated on {position.asset}!",
            LogType.LIQUIDATION,
            amount=position.pnl,
            user_id=position.owner_id if position.owner == Owner.USER else None,
        )

    def _reject(self, action: str, error: DataError, user_id: Optional[str] = None) -> None:
        logger.info("Action rejected", action=action, user_id=user_id, reason=str(error))
        self.context.battle_log.add(str(error), LogType.LOSS, user_id=user_id)

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    async def open_wallet(self, user_id: str, address: str = "", referred_by: Optional[str] = None):
        """
        Open (or load from the store) a user's wallet; the store keys users by user id.

        referred_by links the user to a referrer, who earns a cut of the
        user's mint fees.
        """
        ctx = self.context
        if referred_by:
            ctx.wallets.link_referral(user_id, referred_by)
        if ctx.store.is_configured:
            try:
                stored = await ctx.store.get_or_create_user(user_id, ctx.config.wallet.initial_mon_balance)
            except OperationalError as e:
                logger.warning("Wallet load failed; using in-memory wallet", user_id=user_id, error=str(e))
                stored = None
            if stored is not None:
                return ctx.wallets.adopt(stored)
        return ctx.wallets.open(user_id, address)

    def mint_agent(self, user_id: str, name_hint: Optional[str] = None) -> Optional[Position]:
        """Pay the mint cost and create an IDLE position."""
        ctx = self.context
        cost = ctx.config.settlement.mint_cost
        try:
            ctx.wallets.debit(user_id, cost, reason="mint")
        except DataError as e:
            self._reject("mint", e, user_id)
            return None

        persona = self.persona_provider(name_hint)
        position = ctx.ledger.mint(
            owner_id=user_id,
            name=persona.name,
            asset=ctx.selected_asset,
            strategy=persona.strategy,
            bio=persona.bio,
        )
        ctx.sync.enqueue_position_save(position)
        ctx.battle_log.add(f"Agent {position.name} fabricated", LogType.MINT, amount=-cost, user_id=user_id)
        reward = ctx.wallets.pay_referral(user_id, cost)
        if reward is not None:
            ctx.battle_log.add(
                f"Referral reward: {reward.mon_delta:g} MON from {user_id}",
                LogType.SOCIAL,
                amount=reward.mon_delta,
                user_id=reward.user_id,
            )
        return position

    def deploy_agent(
        self,
        position_id: str,
        direction: Direction,
        leverage: int,
        collateral: float,
        asset: Optional[str] = None,
    ) -> Optional[Position]:
        """Attach collateral from the owner's wallet and activate the position."""
        ctx = self.context
        user_id = None
        try:
            position = ctx.ledger.get(position_id)
            user_id = position.owner_id
            target_asset = asset or ctx.selected_asset
            if target_asset not in ctx.markets:
                raise ValidationError(f"Unknown asset {target_asset}")
            if user_id is not None:
                available = ctx.wallets.balance(user_id)
                if collateral > available:
                    raise InsufficientFundsError(
                        f"Insufficient MON: need {collateral:g}, have {available:g}"
                    )
            try:
                side = Direction(direction)
            except ValueError:
                raise ValidationError(f"Invalid direction {direction!r}") from None
            market = ctx.markets[target_asset].state
            ctx.ledger.deploy(
                position_id,
                side,
                leverage,
                collateral,
                target_asset,
                entry_price=market.price,
                trend=market.trend,
                auto_resolution=ctx.config.settlement.auto_resolution,
            )
            if user_id is not None:
                ctx.wallets.debit(user_id, collateral, reason="deploy")
        except DataError as e:
            self._reject("deploy", e, user_id)
            return None

        ctx.sync.enqueue_position_save(position)
        ctx.battle_log.add(
            f"{position.name} deployed {position.direction.value} {leverage}x "
            f"with {collateral:g} MON on {position.asset}",
            LogType.MINT,
            amount=-collateral,
            user_id=user_id,
        )
        return position

    def withdraw_agent(self, position_id: str) -> Optional[WithdrawalResult]:
        """Close an ACTIVE position and return its equity to the owner."""
        ctx = self.context
        user_id = None
        try:
            position = ctx.ledger.get(position_id)
            user_id = position.owner_id
            result = ctx.ledger.withdraw(position_id)
        except DataError as e:
            self._reject("withdraw", e, user_id)
            return None

        if user_id is not None:
            ctx.wallets.settle_withdrawal(user_id, result.final_balance, result.realized_pnl)
        ctx.sync.enqueue_position_save(position)
        ctx.battle_log.add(
            f"{position.name} withdrawn with {result.final_balance:.0f} MON returned ({result.outcome}).",
            LogType.EXIT,
            amount=result.final_balance,
            user_id=user_id,
        )
        return result

    def select_asset(self, symbol: str) -> bool:
        """Switch the traded market; its state restarts at the start price."""
        ctx = self.context
        if symbol not in ctx.markets:
            self._reject("select_asset", ValidationError(f"Unknown asset {symbol}"))
            return False
        ctx.markets[symbol].reset(ctx.clock.now())
        ctx.selected_asset = symbol
        logger.info("Asset selected", asset=symbol, price=ctx.market.state.price)
        return True

    def stake(self, user_id: str, amount: float) -> bool:
        ctx = self.context
        try:
            if amount <= 0:
                raise ValidationError(f"Stake amount must be positive, got {amount}")
            ctx.wallets.debit(user_id, amount, reason="stake")
            delta = ctx.liquidity.stake(user_id, amount, ctx.clock.now())
        except DataError as e:
            self._reject("stake", e, user_id)
            return False
        ctx.sync.enqueue_stake(delta)
        return True

    def unstake(self, user_id: str, amount: float) -> bool:
        ctx = self.context
        try:
            ctx.wallets.get(user_id)
            delta = ctx.liquidity.unstake(user_id, amount)
        except DataError as e:
            self._reject("unstake", e, user_id)
            return False
        ctx.wallets.credit(user_id, amount, reason="unstake")
        ctx.sync.enqueue_stake(delta)
        return True

    def claim_rewards(self, user_id: str) -> float:
        """Claim pending rewards into the wallet. Returns the amount claimed."""
        ctx = self.context
        try:
            ctx.wallets.get(user_id)
            delta = ctx.liquidity.claim(user_id)
        except DataError as e:
            self._reject("claim", e, user_id)
            return 0.0
        ctx.wallets.credit(user_id, delta.rewards_delta, reason="claim")
        ctx.sync.enqueue_stake(delta)
        return delta.rewards_delta

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def snapshot(self, log_limit: int = 10) -> ArenaSnapshot:
        ctx = self.context
        state = ctx.market.state
        positions = list(ctx.ledger)
        pool = ctx.liquidity.pool
        return ArenaSnapshot(
            asset=ctx.selected_asset,
            price=state.price,
            trend=state.trend,
            last_change_pct=state.last_change_pct,
            long_earnings_per_second=state.long_earnings_per_second,
            short_earnings_per_second=state.short_earnings_per_second,
            total_long_staked=state.total_long_staked,
            total_short_staked=state.total_short_staked,
            active_positions=sum(1 for p in positions if p.is_active),
            user_positions=sum(1 for p in positions if p.owner == Owner.USER),
            bot_positions=sum(1 for p in positions if p.is_ephemeral),
            liquidated_positions=sum(1 for p in positions if p.status == PositionStatus.LIQUIDATED),
            pool_apr=pool.apr,
            pool_total_staked=pool.total_staked,
            pool_total_rewards=pool.total_rewards,
            pending_sync=ctx.sync.pending(),
            recent_log=ctx.battle_log.entries(log_limit),
        )
