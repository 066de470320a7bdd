"""
Settlement engine.

One tick:
  1. advance the selected asset's price (PriceProcess) fully before any PnL read
  2. recompute the informational side aggregates (staked totals, earnings/sec)
  3. recompute every ACTIVE position's PnL from scratch; liquidate when
     balance + raw_pnl <= 0
  4. return the batch of deltas, routed by position origin

The engine never performs I/O. The caller hands the persisted half of the
result to the reconciliation layer.
"""
from dataclasses import dataclass, field
from datetime import datetime
import random
from typing import Iterable, List, Optional, Tuple

from perp_arena.config.config import SettlementConfig
from perp_arena.domain.direction import fixed_side, hash_side, resolve_auto_side
from perp_arena.domain.models import (
    MarketRecord,
    PersistedOrigin,
    PnlHistoryRecord,
    PnlSample,
    Position,
    PositionDelta,
    PositionStatus,
    Side,
    Trend,
    utc_now,
)
from perp_arena.exceptions import InvariantError
from perp_arena.execution.position_ledger import PositionLedger
from perp_arena.market.price_process import PriceProcess, PriceStep
from perp_arena.monitoring.logger import get_logger

logger = get_logger(__name__)


def compute_raw_pnl(
    collateral: float,
    entry_price: float,
    price: float,
    direction_multiplier: int,
    leverage: int,
) -> float:
    """collateral * ((price - entry) / entry) * multiplier * leverage."""
    if entry_price <= 0:
        raise InvariantError(f"Entry price must be positive, got {entry_price}")
    price_diff_frac = (price - entry_price) / entry_price
    return collateral * price_diff_frac * direction_multiplier * leverage


def pnl_side(position: Position, auto_resolution: str = "deploy_trend") -> Side:
    """
    Side used for a position's own PnL.

    Never depends on the live trend, so an AUTO position keeps one multiplier
    for the whole deployment.
    """
    side = fixed_side(position.direction)
    if side is not None:
        return side
    if auto_resolution == "deploy_trend" and position.effective_direction is not None:
        return position.effective_direction
    return hash_side(position.id)


def exposure_side(position: Position, trend: Trend, auto_resolution: str = "deploy_trend") -> Side:
    """Side a position is bucketed into for the aggregate figures."""
    side = fixed_side(position.direction)
    if side is not None:
        return side
    if auto_resolution == "deploy_trend":
        return position.effective_direction or resolve_auto_side(position.id, trend)
    # Live-trend bucketing: AUTO counts as long only while the market is rising
    return Side.LONG if trend == Trend.UP else Side.SHORT


@dataclass(frozen=True)
class SideAggregates:
    total_long_staked: float
    total_short_staked: float
    long_earnings_per_second: float
    short_earnings_per_second: float


def compute_aggregates(
    positions: Iterable[Position],
    change: float,
    trend: Trend,
    earnings_multiplier: float = 1.5,
    auto_resolution: str = "deploy_trend",
) -> SideAggregates:
    """
    Staked totals per side and a symmetric earnings/sec figure.

    The side matching the move gets +total * |change| * multiplier, the
    other side the negative of its own figure. Informational only.
    """
    total_long = 0.0
    total_short = 0.0
    for position in positions:
        if exposure_side(position, trend, auto_resolution) == Side.LONG:
            total_long += position.balance
        else:
            total_short += position.balance

    magnitude = abs(change) * earnings_multiplier
    long_sign = 1.0 if change > 0 else -1.0 if change < 0 else 0.0
    return SideAggregates(
        total_long_staked=total_long,
        total_short_staked=total_short,
        long_earnings_per_second=total_long * magnitude * long_sign,
        short_earnings_per_second=total_short * magnitude * -long_sign,
    )


def liquidate(position: Position, now: datetime, history_limit: int = 30) -> PositionDelta:
    """
    Force a position to LIQUIDATED: pnl = -collateral, balance = 0.

    Shared by the settlement tick and the population manager's slower check.
    """
    lost = position.balance
    position.pnl = -lost
    position.balance = 0.0
    position.status = PositionStatus.LIQUIDATED
    position.record_pnl_sample(PnlSample(now, -lost), history_limit)
    return PositionDelta(
        position_id=position.id,
        pnl=-lost,
        status=PositionStatus.LIQUIDATED,
        balance=0.0,
    )


@dataclass
class TickResult:
    """Everything one tick produced."""
    step: PriceStep
    deltas: List[PositionDelta] = field(default_factory=list)
    persisted_deltas: List[PositionDelta] = field(default_factory=list)
    history_records: List[PnlHistoryRecord] = field(default_factory=list)
    liquidated: List[Position] = field(default_factory=list)
    market_record: Optional[MarketRecord] = None
    aggregates: Optional[SideAggregates] = None


class SettlementEngine:
    """Recomputes PnL, status and risk for the selected asset every tick."""

    def __init__(self, config: SettlementConfig, ledger: PositionLedger, rng: random.Random):
        self.config = config
        self.ledger = ledger
        self.rng = rng

    def settle_position(self, position: Position, price: float, now: datetime) -> Tuple[PositionDelta, Optional[PnlSample]]:
        """
        Settle one ACTIVE position against the new price.

        Returns:
            (PositionDelta, sampled PnlSample or None)
        """
        multiplier = pnl_side(position, self.config.auto_resolution).multiplier
        raw_pnl = compute_raw_pnl(
            position.balance, position.entry_price, price, multiplier, position.leverage
        )

        if position.balance + raw_pnl <= 0:
            delta = liquidate(position, now, self.config.pnl_history_max)
            return delta, position.pnl_history[-1]

        position.pnl = raw_pnl
        sample = None
        if self.rng.random() < self.config.pnl_history_sample_rate:
            sample = PnlSample(now, raw_pnl)
            position.record_pnl_sample(sample, self.config.pnl_history_max)
        return PositionDelta(position_id=position.id, pnl=raw_pnl), sample

    def settle_tick(self, process: PriceProcess, now: Optional[datetime] = None) -> TickResult:
        ts = now or utc_now()
        step = process.advance(ts)
        result = TickResult(step=step)

        active = self.ledger.active(process.symbol)
        aggregates = compute_aggregates(
            active,
            step.change,
            step.trend,
            self.config.earnings_multiplier,
            self.config.auto_resolution,
        )
        state = process.state
        state.total_long_staked = aggregates.total_long_staked
        state.total_short_staked = aggregates.total_short_staked
        state.long_earnings_per_second = aggregates.long_earnings_per_second
        state.short_earnings_per_second = aggregates.short_earnings_per_second
        result.aggregates = aggregates

        for position in active:
            delta, sample = self.settle_position(position, step.price, ts)
            result.deltas.append(delta)
            if delta.status == PositionStatus.LIQUIDATED:
                result.liquidated.append(position)

            # Ephemeral bots only ever live in memory
            if isinstance(position.origin, PersistedOrigin):
                result.persisted_deltas.append(delta)
                if sample is not None:
                    result.history_records.append(PnlHistoryRecord(position.id, sample.value))

        if self.rng.random() < self.config.market_persist_rate:
            result.market_record = MarketRecord(snapshot=state.snapshot(), price_sample=step.price)

        logger.debug(
            "Settlement tick",
            asset=process.symbol,
            price=step.price,
            change=step.change,
            trend=step.trend.value,
            active=len(active),
            liquidated=len(result.liquidated),
        )
        for position in result.liquidated:
            logger.info(
                "Position liquidated",
                position_id=position.id,
                name=position.name,
                asset=position.asset,
                leverage=position.leverage,
                pnl=position.pnl,
                ephemeral=position.is_ephemeral,
            )
        return result

