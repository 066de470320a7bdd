"""
Position Ledger.

The in-memory set of positions plus the user-driven lifecycle transitions:

    IDLE --deploy--> ACTIVE --withdraw--> IDLE
                       |
                       +--tick: balance + pnl <= 0--> LIQUIDATED

PnL and liquidation are applied by the settlement engine; membership of
ephemeral bots by the population manager. Nothing here does I/O.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional
import uuid

from perp_arena.domain.direction import fixed_side, hash_side, resolve_auto_side
from perp_arena.domain.models import (
    Direction,
    Owner,
    PersistedOrigin,
    Position,
    PositionStatus,
    RiskLevel,
    Trend,
)
from perp_arena.exceptions import InvalidTransitionError, UnknownPositionError, ValidationError
from perp_arena.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class WithdrawalResult:
    """Outcome of a voluntary exit."""
    position_id: str
    final_balance: float
    realized_pnl: float

    @property
    def outcome(self) -> str:
        if self.realized_pnl > 0:
            return "win"
        if self.realized_pnl < 0:
            return "loss"
        return "break-even"


class PositionLedger:
    """Ordered collection of positions keyed by id."""

    def __init__(self, min_leverage: int = 1, max_leverage: int = 50, min_collateral: float = 100.0):
        self.min_leverage = min_leverage
        self.max_leverage = max_leverage
        self.min_collateral = min_collateral
        self._positions: Dict[str, Position] = {}

    # -- membership --

    def __len__(self) -> int:
        return len(self._positions)

    def __iter__(self) -> Iterator[Position]:
        return iter(list(self._positions.values()))

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._positions

    def get(self, position_id: str) -> Position:
        try:
            return self._positions[position_id]
        except KeyError:
            raise UnknownPositionError(f"Unknown position {position_id}") from None

    def find(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def add(self, position: Position) -> None:
        self._positions[position.id] = position

    def remove(self, position_id: str) -> Optional[Position]:
        return self._positions.pop(position_id, None)

    # -- views --

    def active(self, asset: Optional[str] = None) -> List[Position]:
        return [
            p for p in self._positions.values()
            if p.is_active and (asset is None or p.asset == asset)
        ]

    def user_positions(self) -> List[Position]:
        return [p for p in self._positions.values() if p.owner == Owner.USER]

    def ephemeral_positions(self) -> List[Position]:
        return [p for p in self._positions.values() if p.is_ephemeral]

    def system_persisted_positions(self) -> List[Position]:
        return [
            p for p in self._positions.values()
            if p.owner == Owner.SYSTEM and not p.is_ephemeral
        ]

    def owned_by(self, owner_id: str) -> List[Position]:
        return [p for p in self._positions.values() if p.owner_id == owner_id]

    # -- lifecycle --

    def mint(
        self,
        owner_id: str,
        name: str,
        asset: str,
        strategy: str = "",
        bio: str = "",
        minter: str = "",
        position_id: Optional[str] = None,
    ) -> Position:
        """Create an IDLE user position."""
        pid = position_id or str(uuid.uuid4())
        position = Position(
            id=pid,
            owner=Owner.USER,
            origin=PersistedOrigin(db_id=pid),
            name=name,
            asset=asset,
            direction=Direction.LONG,
            leverage=10,
            owner_id=owner_id,
            minter=minter or owner_id,
            strategy=strategy,
            bio=bio,
            risk_level=RiskLevel.MEDIUM,
        )
        self.add(position)
        logger.info("Position minted", position_id=pid, owner_id=owner_id, name=name)
        return position

    def deploy(
        self,
        position_id: str,
        direction: Direction,
        leverage: int,
        collateral: float,
        asset: str,
        entry_price: float,
        trend: Trend = Trend.FLAT,
        auto_resolution: str = "deploy_trend",
    ) -> Position:
        """
        IDLE -> ACTIVE: attach collateral, snapshot the entry price.

        Raises:
            InvalidTransitionError: position is not IDLE
            ValidationError: leverage/collateral/price out of range
        """
        position = self.get(position_id)
        if position.status != PositionStatus.IDLE:
            raise InvalidTransitionError(
                f"{position.name} cannot deploy from {position.status.value}"
            )
        if not isinstance(leverage, int) or isinstance(leverage, bool):
            raise ValidationError(f"Leverage must be an integer, got {leverage!r}")
        if not self.min_leverage <= leverage <= self.max_leverage:
            raise ValidationError(
                f"Leverage {leverage} outside {self.min_leverage}-{self.max_leverage}"
            )
        if collateral < self.min_collateral:
            raise ValidationError(f"Minimum collateral is {self.min_collateral:g}")
        if entry_price <= 0:
            raise ValidationError(f"Entry price must be positive, got {entry_price}")

        direction = Direction(direction)
        side = fixed_side(direction)
        if side is None:
            if auto_resolution == "deploy_trend":
                side = resolve_auto_side(position.id, trend)
            else:
                side = hash_side(position.id)

        position.direction = direction
        position.effective_direction = side
        position.leverage = leverage
        position.balance = collateral
        position.asset = asset
        position.entry_price = entry_price
        position.pnl = 0.0
        position.status = PositionStatus.ACTIVE
        position.risk_level = RiskLevel.for_leverage(leverage)

        logger.info(
            "Position deployed",
            position_id=position.id,
            direction=direction.value,
            effective_direction=side.value,
            leverage=leverage,
            collateral=collateral,
            asset=asset,
            entry_price=entry_price,
        )
        return position

    def withdraw(self, position_id: str) -> WithdrawalResult:
        """
        ACTIVE -> IDLE: return final equity, count the win/loss.

        Raises:
            InvalidTransitionError: position is not ACTIVE
        """
        position = self.get(position_id)
        if position.status != PositionStatus.ACTIVE:
            raise InvalidTransitionError(
                f"{position.name} cannot withdraw from {position.status.value}"
            )

        realized = position.pnl
        final_balance = max(0.0, position.balance + realized)
        if realized > 0:
            position.wins += 1
        elif realized < 0:
            position.losses += 1

        position.status = PositionStatus.IDLE
        position.balance = 0.0
        position.pnl = 0.0

        result = WithdrawalResult(position.id, final_balance, realized)
        logger.info(
            "Position withdrawn",
            position_id=position.id,
            final_balance=final_balance,
            realized_pnl=realized,
            outcome=result.outcome,
        )
        return result

    def retire(self, position_id: str, now: datetime) -> None:
        """Mark a bot position inert; the population manager drops it after the grace window."""
        position = self.get(position_id)
        if position.status == PositionStatus.ACTIVE:
            position.status = PositionStatus.IDLE
        if position.retired_at is None:
            position.retired_at = now
