"""
Liquidity accrual.

A staking pool paying continuous yield nominally funded by trading fees:

    daily_fees  = sum(active collateral) * fee_rate
    dynamic_apr = (daily_fees * 365 / total_staked) * fee_share * 100,
                  clamped to [min_apr, max_apr]; base_apr while nothing is staked
    reward/sec  = amount * apr / 100 / seconds_per_year

total_staked is never tracked incrementally; reconcile() recomputes it as
the exact sum of stake amounts.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from perp_arena.config.config import LiquidityConfig
from perp_arena.constants import DAILY_VOLUME_FEE_MULTIPLE, DAYS_PER_YEAR, SECONDS_PER_YEAR
from perp_arena.domain.models import LiquidityPool, LiquidityStake, Position, StakeDelta, utc_now
from perp_arena.domain.protocols import PersistenceStore
from perp_arena.exceptions import ValidationError
from perp_arena.monitoring.logger import get_logger

logger = get_logger(__name__)


def estimate_daily_fees(positions: Iterable[Position], fee_rate: float = 0.001) -> float:
    """Fixed fraction of the collateral of every ACTIVE position."""
    return sum(p.balance * fee_rate for p in positions if p.is_active)


def compute_dynamic_apr(
    daily_fees: float,
    total_staked: float,
    fee_share: float,
    base_apr: float = 100.0,
    min_apr: float = 50.0,
    max_apr: float = 150.0,
) -> float:
    if total_staked > 0:
        apr = (daily_fees * DAYS_PER_YEAR / total_staked) * fee_share * 100
    else:
        apr = base_apr
    return max(min_apr, min(max_apr, apr))


def reward_per_second(amount: float, apr: float) -> float:
    return amount * (apr / 100) / SECONDS_PER_YEAR


class LiquidityAccrual:
    """In-memory pool plus per-user stakes for one pool id."""

    def __init__(self, config: LiquidityConfig, pool: Optional[LiquidityPool] = None):
        self.config = config
        self.pool = pool or LiquidityPool(
            pool_id=config.pool_id,
            apr=config.base_apr,
            fee_share=config.fee_share,
        )
        self.stakes: Dict[str, LiquidityStake] = {}
        self._last_reconcile: Optional[datetime] = None

    def get_stake(self, user_id: str) -> Optional[LiquidityStake]:
        return self.stakes.get(user_id)

    def refresh_apr(self, positions: Iterable[Position]) -> float:
        """Recompute APR and daily volume from the live position set."""
        daily_fees = estimate_daily_fees(positions, self.config.fee_rate)
        self.pool.apr = compute_dynamic_apr(
            daily_fees,
            self.pool.total_staked,
            self.pool.fee_share,
            self.config.base_apr,
            self.config.min_apr,
            self.config.max_apr,
        )
        self.pool.daily_volume = daily_fees * DAILY_VOLUME_FEE_MULTIPLE
        return self.pool.apr

    def accrue(self, elapsed_seconds: float = 1.0) -> float:
        """Add pending rewards to every non-zero stake. Returns the total accrued."""
        total = 0.0
        for stake in self.stakes.values():
            if stake.amount <= 0:
                continue
            reward = reward_per_second(stake.amount, self.pool.apr) * elapsed_seconds
            stake.pending_rewards += reward
            total += reward
        return total

    def stake(self, user_id: str, amount: float, now: Optional[datetime] = None) -> StakeDelta:
        if amount <= 0:
            raise ValidationError(f"Stake amount must be positive, got {amount}")
        stake = self.stakes.get(user_id)
        if stake is None:
            stake = LiquidityStake(
                user_id=user_id,
                pool_id=self.pool.pool_id,
                staked_at=now or utc_now(),
            )
            self.stakes[user_id] = stake
        stake.amount += amount
        self.reconcile()
        logger.info("Liquidity staked", user_id=user_id, amount=amount, total_staked=self.pool.total_staked)
        return StakeDelta(
            user_id=user_id,
            pool_id=self.pool.pool_id,
            amount_delta=amount,
            pending_rewards=stake.pending_rewards,
        )

    def unstake(self, user_id: str, amount: float) -> StakeDelta:
        stake = self.stakes.get(user_id)
        if amount <= 0:
            raise ValidationError(f"Unstake amount must be positive, got {amount}")
        if stake is None or amount > stake.amount:
            available = stake.amount if stake else 0.0
            raise ValidationError(f"Cannot unstake {amount:g}; staked {available:g}")
        stake.amount -= amount
        if stake.amount <= 0:
            stake.amount = 0.0
            stake.pending_rewards = 0.0
        self.reconcile()
        logger.info("Liquidity unstaked", user_id=user_id, amount=amount, total_staked=self.pool.total_staked)
        return StakeDelta(
            user_id=user_id,
            pool_id=self.pool.pool_id,
            amount_delta=-amount,
            pending_rewards=stake.pending_rewards,
        )

    def claim(self, user_id: str) -> StakeDelta:
        """Move pending into claimed rewards; pool total_rewards grows by the claim."""
        stake = self.stakes.get(user_id)
        if stake is None or stake.pending_rewards <= 0:
            raise ValidationError("No pending rewards to claim")
        claimed = stake.pending_rewards
        stake.rewards += claimed
        stake.pending_rewards = 0.0
        self.pool.total_rewards += claimed
        logger.info("Liquidity rewards claimed", user_id=user_id, claimed=claimed)
        return StakeDelta(
            user_id=user_id,
            pool_id=self.pool.pool_id,
            rewards_delta=claimed,
            pending_rewards=0.0,
        )

    def reconcile(self) -> float:
        """total_staked := exact sum of local stake amounts."""
        self.pool.total_staked = sum(s.amount for s in self.stakes.values() if s.pool_id == self.pool.pool_id)
        return self.pool.total_staked

    def reconcile_due(self, now: datetime) -> bool:
        if self._last_reconcile is None:
            return True
        return (now - self._last_reconcile).total_seconds() >= self.config.reconcile_interval_seconds

    async def reconcile_with_store(self, store: PersistenceStore, now: Optional[datetime] = None) -> LiquidityPool:
        """
        Full-sum reconciliation against the store's stake rows.

        Without a configured store the local stakes are the source rows.
        """
        self._last_reconcile = now or utc_now()
        if not store.is_configured:
            self.reconcile()
            return self.pool

        refreshed = await store.recompute_and_persist_total_staked(self.pool.pool_id)
        if refreshed is not None:
            self.adopt_store_pool(refreshed)
        else:
            self.reconcile()
        logger.debug("Liquidity pool reconciled", pool_id=self.pool.pool_id, total_staked=self.pool.total_staked)
        return self.pool

    def adopt_store_pool(self, stored: LiquidityPool) -> float:
        """
        Take rewards and fee share from the store's pool row.

        total_staked stays the sum of local stakes: the store row lags behind
        stake deltas still waiting in the sync queue.
        """
        if stored.pool_id != self.pool.pool_id:
            return self.pool.total_staked
        self.pool.total_rewards = max(self.pool.total_rewards, stored.total_rewards)
        self.pool.fee_share = stored.fee_share
        local_total = self.reconcile()
        if stored.total_staked != local_total:
            logger.debug(
                "Store pool total differs from local stakes",
                pool_id=self.pool.pool_id,
                store_total=stored.total_staked,
                local_total=local_total,
            )
        return local_total

    def load_stakes(self, stakes: List[LiquidityStake]) -> None:
        for stake in stakes:
            if stake.pool_id == self.pool.pool_id:
                self.stakes[stake.user_id] = stake
        self.reconcile()
