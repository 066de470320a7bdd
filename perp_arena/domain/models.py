"""
Domain models for the arena simulation.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import uuid


class Direction(str, Enum):
    """Direction chosen when a position is deployed."""
    LONG = "LONG"
    SHORT = "SHORT"
    AUTO = "AUTO"


class Side(str, Enum):
    """Effective exposure of a position."""
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def multiplier(self) -> int:
        return 1 if self is Side.LONG else -1


class Owner(str, Enum):
    """Who a position belongs to."""
    USER = "USER"
    SYSTEM = "SYSTEM"


class PositionStatus(str, Enum):
    """Position lifecycle state."""
    IDLE = "IDLE"
    ACTIVE = "ACTIVE"
    LIQUIDATED = "LIQUIDATED"


class Trend(str, Enum):
    """Direction of the last price move."""
    UP = "UP"
    DOWN = "DOWN"
    FLAT = "FLAT"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"

    @classmethod
    def for_leverage(cls, leverage: int) -> "RiskLevel":
        if leverage > 30:
            return cls.EXTREME
        if leverage > 20:
            return cls.HIGH
        if leverage > 10:
            return cls.MEDIUM
        return cls.LOW


class LogType(str, Enum):
    """Battle-log entry type."""
    WIN = "WIN"
    LOSS = "LOSS"
    LIQUIDATION = "LIQUIDATION"
    MINT = "MINT"
    SOCIAL = "SOCIAL"
    EXIT = "EXIT"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Position origin: where a position's authoritative state lives
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PersistedOrigin:
    """Position loaded from (or written to) the store; mutations are synced."""
    db_id: str


@dataclass(frozen=True)
class EphemeralOrigin:
    """Client-side bot position; never touches the store.

    max_age_seconds is drawn once at creation so retirements are staggered.
    """
    local_id: str
    created_at: datetime
    max_age_seconds: float

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()


PositionOrigin = Union[PersistedOrigin, EphemeralOrigin]


@dataclass(frozen=True)
class PnlSample:
    """One point of a position's PnL history."""
    timestamp: datetime
    value: float


@dataclass
class Position:
    """
    A leveraged directional bet ("agent" in product terms).

    balance is the collateral backing the position and its maximum loss.
    pnl is recomputed from scratch each tick while ACTIVE.
    """
    id: str
    owner: Owner
    origin: PositionOrigin
    name: str
    asset: str
    direction: Direction = Direction.LONG
    leverage: int = 1
    balance: float = 0.0
    entry_price: float = 0.0
    pnl: float = 0.0
    status: PositionStatus = PositionStatus.IDLE
    pnl_history: List[PnlSample] = field(default_factory=list)
    wins: int = 0
    losses: int = 0
    owner_id: Optional[str] = None
    minter: str = "Protocol"
    strategy: str = ""
    bio: str = ""
    risk_level: RiskLevel = RiskLevel.MEDIUM
    effective_direction: Optional[Side] = None
    retired_at: Optional[datetime] = None

    @property
    def is_ephemeral(self) -> bool:
        return isinstance(self.origin, EphemeralOrigin)

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    @property
    def equity(self) -> float:
        return self.balance + self.pnl

    def record_pnl_sample(self, sample: PnlSample, limit: int) -> None:
        """Append a sample, dropping the oldest beyond `limit`."""
        self.pnl_history.append(sample)
        if len(self.pnl_history) > limit:
            del self.pnl_history[:-limit]


@dataclass(frozen=True)
class PositionDelta:
    """
    Partial update for one position, as emitted by a settlement tick.

    None means "unchanged" for status and balance.
    """
    position_id: str
    pnl: float
    status: Optional[PositionStatus] = None
    balance: Optional[float] = None

    def __post_init__(self):
        if self.balance is not None and self.balance < 0:
            from perp_arena.exceptions import InvariantError
            raise InvariantError(f"Negative balance in delta for {self.position_id}: {self.balance}")

    def to_update(self) -> Dict[str, Any]:
        """Column updates carried by this delta."""
        update: Dict[str, Any] = {"pnl": self.pnl}
        if self.status is not None:
            update["status"] = self.status.value
        if self.balance is not None:
            update["balance"] = self.balance
        return update


@dataclass(frozen=True)
class PnlHistoryRecord:
    """PnL history sample queued for persistence."""
    position_id: str
    value: float


# ---------------------------------------------------------------------------
# Market
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PricePoint:
    timestamp: datetime
    price: float


@dataclass(frozen=True)
class MarketSnapshot:
    """Market fields persisted by upsert_market_snapshot."""
    symbol: str
    price: float
    trend: Trend
    last_change_pct: float
    long_earnings_per_second: float
    short_earnings_per_second: float
    total_long_staked: float
    total_short_staked: float

    def to_fields(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "trend": self.trend.value,
            "last_change_pct": self.last_change_pct,
            "long_earnings_per_second": self.long_earnings_per_second,
            "short_earnings_per_second": self.short_earnings_per_second,
            "total_long_staked": self.total_long_staked,
            "total_short_staked": self.total_short_staked,
        }


@dataclass
class MarketState:
    """
    Live state of one synthetic market.

    The staked totals and earnings figures are recomputed every tick from the
    position set; they are informational, never ground truth.
    """
    symbol: str
    price: float
    history: List[PricePoint] = field(default_factory=list)
    trend: Trend = Trend.FLAT
    last_change_pct: float = 0.0
    long_earnings_per_second: float = 0.0
    short_earnings_per_second: float = 0.0
    total_long_staked: float = 0.0
    total_short_staked: float = 0.0

    def snapshot(self) -> MarketSnapshot:
        return MarketSnapshot(
            symbol=self.symbol,
            price=self.price,
            trend=self.trend,
            last_change_pct=self.last_change_pct,
            long_earnings_per_second=self.long_earnings_per_second,
            short_earnings_per_second=self.short_earnings_per_second,
            total_long_staked=self.total_long_staked,
            total_short_staked=self.total_short_staked,
        )


@dataclass(frozen=True)
class MarketRecord:
    """Market snapshot plus the price sample queued with it."""
    snapshot: MarketSnapshot
    price_sample: float


# ---------------------------------------------------------------------------
# Liquidity
# ---------------------------------------------------------------------------

@dataclass
class LiquidityPool:
    pool_id: str
    total_staked: float = 0.0
    total_rewards: float = 0.0
    apr: float = 100.0
    fee_share: float = 0.7
    daily_volume: float = 0.0


@dataclass
class LiquidityStake:
    """One user's stake in a pool."""
    user_id: str
    pool_id: str
    amount: float = 0.0
    rewards: float = 0.0
    pending_rewards: float = 0.0
    staked_at: datetime = field(default_factory=utc_now)
    id: Optional[str] = None


@dataclass(frozen=True)
class StakeDelta:
    """Stake change queued for persistence.

    amount and rewards are deltas; pending_rewards is the absolute value to store.
    """
    user_id: str
    pool_id: str
    amount_delta: float = 0.0
    rewards_delta: float = 0.0
    pending_rewards: float = 0.0


# ---------------------------------------------------------------------------
# Wallet and battle log
# ---------------------------------------------------------------------------

@dataclass
class WalletState:
    user_id: str
    address: str = ""
    mon_balance: float = 0.0
    total_pnl: float = 0.0
    referral_code: Optional[str] = None
    referral_earnings: float = 0.0
    referral_count: int = 0


@dataclass(frozen=True)
class WalletDelta:
    """Wallet change queued for persistence (all fields are deltas)."""
    user_id: str
    mon_delta: float = 0.0
    pnl_delta: float = 0.0
    referral_earnings_delta: float = 0.0
    referral_count_delta: int = 0


@dataclass(frozen=True)
class BattleLogEntry:
    message: str
    type: LogType
    amount: Optional[float] = None
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
