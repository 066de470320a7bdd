"""
Population manager for synthetic (bot) positions.

Keeps the arena populated with ephemeral SYSTEM positions that churn on their
own cadence:
- each bot draws its max age once at creation, so retirements are staggered
- bots whose equity is exhausted are liquidated, not silently dropped
- retired bots linger for a grace window so the "just died" state is visible
- new bots lean toward whichever side is under-represented

Bots share the settlement arithmetic with real positions but never reach the
persistence layer.
"""
from dataclasses import dataclass, field
from datetime import datetime
import random
from typing import List, Optional

from perp_arena.config.config import PopulationConfig
from perp_arena.constants import BOT_MINTER, BOT_NAME_SUFFIX_MAX, BOT_NAMES, STRATEGIES
from perp_arena.domain.models import (
    Direction,
    EphemeralOrigin,
    Owner,
    Position,
    PositionStatus,
    RiskLevel,
    Side,
    utc_now,
)
from perp_arena.execution.position_ledger import PositionLedger
from perp_arena.monitoring.logger import get_logger
from perp_arena.settlement.engine import liquidate

logger = get_logger(__name__)


@dataclass
class RotationResult:
    """What one rotation pass changed."""
    expired: List[Position] = field(default_factory=list)
    liquidated: List[Position] = field(default_factory=list)
    added: List[Position] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    target: int = 0
    survivors: int = 0


class PopulationManager:
    """Seeds, rotates and garbage-collects ephemeral bot positions."""

    def __init__(
        self,
        config: PopulationConfig,
        ledger: PositionLedger,
        rng: random.Random,
        history_limit: int = 30,
    ):
        self.config = config
        self.ledger = ledger
        self.rng = rng
        self.history_limit = history_limit
        self._sequence = 0

    def generate_bot(self, direction: Direction, asset: str, price: float, now: datetime) -> Position:
        """Build one ACTIVE ephemeral position (not yet added to the ledger)."""
        cfg = self.config
        self._sequence += 1
        created_ms = int(now.timestamp() * 1000)
        bot_id = f"{cfg.id_prefix}-{self._sequence}-{created_ms}"

        leverage = self.rng.randint(cfg.min_leverage, cfg.max_leverage)
        balance = float(self.rng.randint(cfg.min_collateral, cfg.max_collateral))
        jitter = 1 + self.rng.uniform(-cfg.entry_jitter_pct, cfg.entry_jitter_pct)
        strategy = self.rng.choice(STRATEGIES)
        name = f"{self.rng.choice(BOT_NAMES)}-{self.rng.randint(0, BOT_NAME_SUFFIX_MAX)}"

        return Position(
            id=bot_id,
            owner=Owner.SYSTEM,
            origin=EphemeralOrigin(
                local_id=bot_id,
                created_at=now,
                max_age_seconds=self.rng.uniform(cfg.min_max_age_seconds, cfg.max_max_age_seconds),
            ),
            name=name,
            asset=asset,
            direction=direction,
            leverage=leverage,
            balance=balance,
            entry_price=price * jitter,
            status=PositionStatus.ACTIVE,
            minter=BOT_MINTER,
            strategy=strategy,
            bio=f"AI trading agent specializing in {self.rng.choice(STRATEGIES)}",
            risk_level=RiskLevel.for_leverage(leverage),
            effective_direction=Side(direction.value),
        )

    def seed(self, asset: str, price: float, now: Optional[datetime] = None) -> List[Position]:
        """Initial population: initial_per_side LONG bots then as many SHORT bots."""
        ts = now or utc_now()
        created = []
        for direction in (Direction.LONG, Direction.SHORT):
            for _ in range(self.config.initial_per_side):
                bot = self.generate_bot(direction, asset, price, ts)
                self.ledger.add(bot)
                created.append(bot)
        logger.info(
            "Bot population seeded",
            asset=asset,
            per_side=self.config.initial_per_side,
            total=len(created),
        )
        return created

    def _pick_direction(self, long_count: int, short_count: int) -> Direction:
        if long_count < short_count:
            return Direction.LONG
        if short_count < long_count:
            return Direction.SHORT
        return Direction.LONG if self.rng.random() < 0.5 else Direction.SHORT

    def rotate(self, asset: str, price: float, now: Optional[datetime] = None) -> RotationResult:
        """
        One rotation pass.

        Args:
            asset: market new bots enter
            price: current price of that market (entry reference for new bots)
            now: rotation time

        Returns:
            RotationResult with expired, liquidated, added and dropped bots
        """
        ts = now or utc_now()
        cfg = self.config
        result = RotationResult()

        for bot in self.ledger.ephemeral_positions():
            origin = bot.origin
            if bot.retired_at is not None:
                if (ts - bot.retired_at).total_seconds() >= cfg.grace_seconds:
                    self.ledger.remove(bot.id)
                    result.dropped.append(bot.id)
                continue

            if not bot.is_active:
                # Inert without a retirement stamp; start its grace window now
                bot.retired_at = ts
                continue

            if bot.balance + bot.pnl <= 0:
                liquidate(bot, ts, self.history_limit)
                bot.retired_at = ts
                result.liquidated.append(bot)
            elif origin.age_seconds(ts) > origin.max_age_seconds:
                self.ledger.retire(bot.id, ts)
                result.expired.append(bot)

        survivors = [b for b in self.ledger.ephemeral_positions() if b.is_active]
        long_count = sum(1 for b in survivors if b.direction == Direction.LONG)
        short_count = len(survivors) - long_count
        target = self.rng.randint(cfg.target_min, cfg.target_max)
        result.target = target
        result.survivors = len(survivors)

        if len(survivors) < target and len(survivors) < cfg.hard_cap:
            to_add = min(cfg.batch_size, target - len(survivors), cfg.hard_cap - len(survivors))
            for _ in range(to_add):
                direction = self._pick_direction(long_count, short_count)
                bot = self.generate_bot(direction, asset, price, ts)
                self.ledger.add(bot)
                result.added.append(bot)
                if direction == Direction.LONG:
                    long_count += 1
                else:
                    short_count += 1

        if result.liquidated or result.expired or result.added or result.dropped:
            logger.info(
                "Bot population rotated",
                expired=len(result.expired),
                liquidated=len(result.liquidated),
                added=len(result.added),
                dropped=len(result.dropped),
                survivors=result.survivors,
                target=target,
            )
        return result
