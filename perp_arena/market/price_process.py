"""
Synthetic price process.

Each tick draws a bounded uniform fractional move, applies it to the current
price with an asset-specific floor, and classifies the move as UP/DOWN/FLAT.
The trend threshold is in fractional-change units, not absolute price.
"""
from dataclasses import dataclass
from datetime import datetime
import random
from typing import Dict, Optional

from perp_arena.config.config import AssetSpec, MarketConfig
from perp_arena.domain.models import MarketState, PricePoint, Trend, utc_now
from perp_arena.monitoring.logger import get_logger

logger = get_logger(__name__)


def classify_trend(change: float, threshold: float = 0.001) -> Trend:
    """UP if change > threshold, DOWN if change < -threshold, else FLAT."""
    if change > threshold:
        return Trend.UP
    if change < -threshold:
        return Trend.DOWN
    return Trend.FLAT


@dataclass(frozen=True)
class PriceStep:
    """Result of one price advance."""
    symbol: str
    previous_price: float
    price: float
    change: float
    trend: Trend
    timestamp: datetime


class PriceProcess:
    """
    Bounded random walk for one asset.

    Owns the MarketState for its symbol: price, trend, last change and the
    fixed-length price history ring.
    """

    def __init__(
        self,
        symbol: str,
        spec: AssetSpec,
        rng: random.Random,
        history_length: int = 30,
        trend_threshold: float = 0.001,
    ):
        self.symbol = symbol
        self.spec = spec
        self.rng = rng
        self.history_length = history_length
        self.trend_threshold = trend_threshold
        self.state = MarketState(symbol=symbol, price=spec.start_price)
        self.reset()

    def reset(self, now: Optional[datetime] = None) -> MarketState:
        """Back to the start price with a flat history (asset switch)."""
        ts = now or utc_now()
        self.state = MarketState(
            symbol=self.symbol,
            price=self.spec.start_price,
            history=[PricePoint(ts, self.spec.start_price) for _ in range(self.history_length)],
        )
        return self.state

    def draw_change(self) -> float:
        """priceDelta = (rand - 0.5) * volatility."""
        return (self.rng.random() - 0.5) * self.spec.volatility

    def advance(self, now: Optional[datetime] = None) -> PriceStep:
        """Draw a move and apply it."""
        return self.apply_change(self.draw_change(), now)

    def apply_change(self, change: float, now: Optional[datetime] = None) -> PriceStep:
        """Apply a fractional move to the current price."""
        ts = now or utc_now()
        previous = self.state.price
        new_price = max(self.spec.min_price, previous * (1 + change))
        trend = classify_trend(change, self.trend_threshold)

        self.state.price = new_price
        self.state.trend = trend
        self.state.last_change_pct = change * 100
        self.state.history.append(PricePoint(ts, new_price))
        if len(self.state.history) > self.history_length:
            del self.state.history[:-self.history_length]

        return PriceStep(
            symbol=self.symbol,
            previous_price=previous,
            price=new_price,
            change=change,
            trend=trend,
            timestamp=ts,
        )

    def set_price(self, price: float) -> None:
        """Force the current price (rehydration from a stored snapshot)."""
        self.state.price = max(self.spec.min_price, price)


def build_price_processes(config: MarketConfig, rng: random.Random) -> Dict[str, PriceProcess]:
    """One PriceProcess per configured asset, sharing the simulation's rng."""
    processes = {
        symbol: PriceProcess(
            symbol,
            spec,
            rng,
            history_length=config.history_length,
            trend_threshold=config.trend_threshold,
        )
        for symbol, spec in config.assets.items()
    }
    logger.info("Price processes initialized", assets=sorted(processes))
    return processes
