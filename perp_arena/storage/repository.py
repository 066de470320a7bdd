"""
Persistence functions for arena state.

ORM models plus synchronous repository functions. Every function takes the
Database explicitly and runs inside one session, so a batch either lands
whole or not at all. SqlStore offloads these to worker threads.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple
import uuid

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, UniqueConstraint, func

from perp_arena.domain.models import (
    BattleLogEntry,
    Direction,
    LiquidityPool,
    LiquidityStake,
    Owner,
    PersistedOrigin,
    PnlHistoryRecord,
    Position,
    PositionDelta,
    PositionStatus,
    RiskLevel,
    Side,
    StakeDelta,
    WalletDelta,
    WalletState,
)
from perp_arena.monitoring.logger import get_logger
from perp_arena.storage.db import Base, Database

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ORM Models
class UserModel(Base):
    """ORM model for users and their wallet balances."""
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    wallet_address = Column(String, nullable=False, unique=True)
    mon_balance = Column(Float, nullable=False, default=0.0)
    usdc_balance = Column(Float, nullable=False, default=0.0)
    total_pnl = Column(Float, nullable=False, default=0.0)
    referral_code = Column(String, nullable=True)
    referral_earnings = Column(Float, nullable=False, default=0.0)
    referral_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AgentModel(Base):
    """ORM model for persisted positions (user agents and stored system agents)."""
    __tablename__ = "agents"
    __table_args__ = (
        Index("idx_agent_owner", "owner_id"),
        Index("idx_agent_status", "status"),
    )

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=True)
    minter = Column(String, nullable=False, default="Protocol")
    name = Column(String, nullable=False)
    asset = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    effective_direction = Column(String, nullable=True)
    leverage = Column(Integer, nullable=False, default=1)
    balance = Column(Float, nullable=False, default=0.0)
    entry_price = Column(Float, nullable=False, default=0.0)
    pnl = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, default=PositionStatus.IDLE.value)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    strategy = Column(String, nullable=False, default="")
    bio = Column(String, nullable=False, default="")
    risk_level = Column(String, nullable=False, default=RiskLevel.MEDIUM.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AgentPnlHistoryModel(Base):
    """ORM model for sampled PnL history (append-only)."""
    __tablename__ = "agent_pnl_history"
    __table_args__ = (
        Index("idx_pnl_history_agent", "agent_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, nullable=False)
    value = Column(Float, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class MarketDataModel(Base):
    """ORM model for the latest market snapshot per symbol."""
    __tablename__ = "market_data"

    symbol = Column(String, primary_key=True)
    price = Column(Float, nullable=False)
    trend = Column(String, nullable=False)
    last_change_pct = Column(Float, nullable=False, default=0.0)
    long_earnings_per_second = Column(Float, nullable=False, default=0.0)
    short_earnings_per_second = Column(Float, nullable=False, default=0.0)
    total_long_staked = Column(Float, nullable=False, default=0.0)
    total_short_staked = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class MarketPriceHistoryModel(Base):
    """ORM model for throttled price samples."""
    __tablename__ = "market_price_history"
    __table_args__ = (
        Index("idx_price_history_symbol", "symbol", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class BattleLogModel(Base):
    """ORM model for the battle-log audit trail."""
    __tablename__ = "battle_logs"
    __table_args__ = (
        Index("idx_battle_log_user", "user_id", "timestamp"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    message = Column(String, nullable=False)
    type = Column(String, nullable=False)
    amount = Column(Float, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class LiquidityPoolModel(Base):
    """ORM model for staking pools."""
    __tablename__ = "liquidity_pools"

    pool_id = Column(String, primary_key=True)
    total_staked = Column(Float, nullable=False, default=0.0)
    total_rewards = Column(Float, nullable=False, default=0.0)
    apr = Column(Float, nullable=False, default=100.0)
    fee_share = Column(Float, nullable=False, default=0.7)
    daily_volume = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserLiquidityStakeModel(Base):
    """ORM model for one user's stake in one pool."""
    __tablename__ = "user_liquidity_stakes"
    __table_args__ = (
        UniqueConstraint("user_id", "pool_id", name="uq_user_pool_stake"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    pool_id = Column(String, nullable=False)
    amount = Column(Float, nullable=False, default=0.0)
    rewards = Column(Float, nullable=False, default=0.0)
    pending_rewards = Column(Float, nullable=False, default=0.0)
    staked_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# Conversions
def _agent_to_position(row: AgentModel) -> Position:
    return Position(
        id=row.id,
        owner=Owner.USER if row.owner_id else Owner.SYSTEM,
        origin=PersistedOrigin(db_id=row.id),
        name=row.name,
        asset=row.asset,
        direction=Direction(row.direction),
        leverage=row.leverage,
        balance=row.balance,
        entry_price=row.entry_price,
        pnl=row.pnl,
        status=PositionStatus(row.status),
        wins=row.wins,
        losses=row.losses,
        owner_id=row.owner_id,
        minter=row.minter,
        strategy=row.strategy,
        bio=row.bio,
        risk_level=RiskLevel(row.risk_level),
        effective_direction=Side(row.effective_direction) if row.effective_direction else None,
    )


def _position_columns(position: Position) -> Dict[str, object]:
    return {
        "owner_id": position.owner_id,
        "minter": position.minter,
        "name": position.name,
        "asset": position.asset,
        "direction": position.direction.value,
        "effective_direction": position.effective_direction.value if position.effective_direction else None,
        "leverage": position.leverage,
        "balance": position.balance,
        "entry_price": position.entry_price,
        "pnl": position.pnl,
        "status": position.status.value,
        "wins": position.wins,
        "losses": position.losses,
        "strategy": position.strategy,
        "bio": position.bio,
        "risk_level": position.risk_level.value,
    }


def _pool_from_row(row: LiquidityPoolModel) -> LiquidityPool:
    return LiquidityPool(
        pool_id=row.pool_id,
        total_staked=row.total_staked,
        total_rewards=row.total_rewards,
        apr=row.apr,
        fee_share=row.fee_share,
        daily_volume=row.daily_volume,
    )


def _stake_from_row(row: UserLiquidityStakeModel) -> LiquidityStake:
    return LiquidityStake(
        id=row.id,
        user_id=row.user_id,
        pool_id=row.pool_id,
        amount=row.amount,
        rewards=row.rewards,
        pending_rewards=row.pending_rewards,
        staked_at=row.staked_at,
    )


def _wallet_from_row(row: UserModel) -> WalletState:
    return WalletState(
        user_id=row.id,
        address=row.wallet_address,
        mon_balance=row.mon_balance,
        total_pnl=row.total_pnl,
        referral_code=row.referral_code,
        referral_earnings=row.referral_earnings,
        referral_count=row.referral_count,
    )


# Repository Functions: positions
def load_all_positions(db: Database) -> List[Position]:
    """Full snapshot of persisted positions, oldest first."""
    with db.get_session() as session:
        rows = session.query(AgentModel).order_by(AgentModel.created_at).all()
        return [_agent_to_position(row) for row in rows]


def save_positions(db: Database, positions: Sequence[Position]) -> None:
    """Insert or fully overwrite position rows."""
    if not positions:
        return
    now = _utcnow()
    with db.get_session() as session:
        for position in positions:
            row = session.get(AgentModel, position.id)
            columns = _position_columns(position)
            if row is None:
                session.add(AgentModel(id=position.id, created_at=now, updated_at=now, **columns))
            else:
                for key, value in columns.items():
                    setattr(row, key, value)
                row.updated_at = now


def batch_update_position_pnl(db: Database, deltas: Sequence[PositionDelta]) -> int:
    """
    Idempotent partial update by id; fields a delta leaves as None are untouched.

    Returns:
        Number of rows matched
    """
    if not deltas:
        return 0
    now = _utcnow()
    matched = 0
    with db.get_session() as session:
        for delta in deltas:
            update = delta.to_update()
            update["updated_at"] = now
            matched += session.query(AgentModel).filter(AgentModel.id == delta.position_id).update(
                update, synchronize_session=False
            )
    return matched


def batch_insert_pnl_history_samples(db: Database, records: Sequence[PnlHistoryRecord]) -> None:
    if not records:
        return
    now = _utcnow()
    with db.get_session() as session:
        session.add_all(
            AgentPnlHistoryModel(agent_id=r.position_id, value=r.value, timestamp=now) for r in records
        )


# Repository Functions: market
def _upsert_market_row(session, symbol: str, fields: Dict[str, object], now: datetime) -> None:
    row = session.get(MarketDataModel, symbol)
    if row is None:
        session.add(MarketDataModel(symbol=symbol, updated_at=now, **fields))
    else:
        for key, value in fields.items():
            setattr(row, key, value)
        row.updated_at = now


def upsert_market_snapshot(db: Database, symbol: str, fields: Dict[str, object]) -> None:
    with db.get_session() as session:
        _upsert_market_row(session, symbol, fields, _utcnow())


def insert_price_history_sample(db: Database, symbol: str, price: float) -> None:
    with db.get_session() as session:
        session.add(MarketPriceHistoryModel(symbol=symbol, price=price, timestamp=_utcnow()))


def record_market_batch(
    db: Database,
    snapshots: Dict[str, Dict[str, object]],
    samples: Sequence[Tuple[str, float]],
) -> None:
    """Snapshot upserts and price samples in one transaction; a failure writes nothing."""
    if not snapshots and not samples:
        return
    now = _utcnow()
    with db.get_session() as session:
        for symbol, fields in snapshots.items():
            _upsert_market_row(session, symbol, fields, now)
        session.add_all(
            MarketPriceHistoryModel(symbol=symbol, price=price, timestamp=now) for symbol, price in samples
        )


# Repository Functions: liquidity
def _get_or_create_pool(session, pool_id: str, apr: float = 100.0, fee_share: float = 0.7) -> LiquidityPoolModel:
    row = session.get(LiquidityPoolModel, pool_id)
    if row is None:
        row = LiquidityPoolModel(
            pool_id=pool_id,
            total_staked=0.0,
            total_rewards=0.0,
            apr=apr,
            fee_share=fee_share,
            daily_volume=0.0,
            updated_at=_utcnow(),
        )
        session.add(row)
        session.flush()
    return row


def get_pool(db: Database, pool_id: str) -> Optional[LiquidityPool]:
    with db.get_session() as session:
        row = session.get(LiquidityPoolModel, pool_id)
        return _pool_from_row(row) if row is not None else None


def recompute_and_persist_total_staked(db: Database, pool_id: str) -> LiquidityPool:
    """
    Reset the pool's cached total_staked to the exact sum of its stake rows.

    Creates the pool with default APR/fee share if it does not exist yet.
    """
    with db.get_session() as session:
        pool = _get_or_create_pool(session, pool_id)
        total = (
            session.query(func.coalesce(func.sum(UserLiquidityStakeModel.amount), 0.0))
            .filter(UserLiquidityStakeModel.pool_id == pool_id)
            .scalar()
        )
        if pool.total_staked != total:
            logger.info(
                "Pool total_staked reconciled",
                pool_id=pool_id,
                cached=pool.total_staked,
                recomputed=total,
            )
        pool.total_staked = float(total)
        pool.updated_at = _utcnow()
        return _pool_from_row(pool)


def _upsert_stake(
    session,
    user_id: str,
    pool_id: str,
    amount_delta: float,
    rewards_delta: float,
    pending_rewards: float,
) -> UserLiquidityStakeModel:
    row = (
        session.query(UserLiquidityStakeModel)
        .filter(UserLiquidityStakeModel.user_id == user_id, UserLiquidityStakeModel.pool_id == pool_id)
        .first()
    )
    if row is None:
        row = UserLiquidityStakeModel(
            id=str(uuid.uuid4()),
            user_id=user_id,
            pool_id=pool_id,
            amount=max(0.0, amount_delta),
            rewards=rewards_delta,
            pending_rewards=pending_rewards,
            staked_at=_utcnow(),
        )
        session.add(row)
    else:
        row.amount = max(0.0, row.amount + amount_delta)
        row.rewards += rewards_delta
        row.pending_rewards = pending_rewards
    session.flush()
    return row


def upsert_user_stake(
    db: Database,
    user_id: str,
    pool_id: str,
    amount_delta: float,
    rewards_delta: float,
    pending_rewards: float,
) -> LiquidityStake:
    """amount and rewards are applied as deltas; pending_rewards is stored as given."""
    with db.get_session() as session:
        row = _upsert_stake(session, user_id, pool_id, amount_delta, rewards_delta, pending_rewards)
        return _stake_from_row(row)


def apply_stake_deltas(db: Database, deltas: Sequence[StakeDelta]) -> None:
    """Apply a batch of stake deltas in one transaction; claimed rewards roll into the pool."""
    if not deltas:
        return
    with db.get_session() as session:
        for delta in deltas:
            _upsert_stake(
                session,
                delta.user_id,
                delta.pool_id,
                delta.amount_delta,
                delta.rewards_delta,
                delta.pending_rewards,
            )
            if delta.rewards_delta:
                pool = _get_or_create_pool(session, delta.pool_id)
                pool.total_rewards += delta.rewards_delta


def get_pool_stakes(db: Database, pool_id: str) -> List[LiquidityStake]:
    with db.get_session() as session:
        rows = session.query(UserLiquidityStakeModel).filter(UserLiquidityStakeModel.pool_id == pool_id).all()
        return [_stake_from_row(row) for row in rows]


def claim_stake_rewards(db: Database, stake_id: str) -> Optional[LiquidityStake]:
    """Move pending into claimed rewards and credit the pool's total_rewards."""
    with db.get_session() as session:
        row = session.get(UserLiquidityStakeModel, stake_id)
        if row is None:
            return None
        claimed = row.pending_rewards
        row.rewards += claimed
        row.pending_rewards = 0.0
        pool = _get_or_create_pool(session, row.pool_id)
        pool.total_rewards += claimed
        return _stake_from_row(row)


# Repository Functions: users and wallet
def get_or_create_user(db: Database, wallet_address: str, initial_balance: float = 10000.0) -> WalletState:
    with db.get_session() as session:
        row = session.query(UserModel).filter(UserModel.wallet_address == wallet_address).first()
        if row is None:
            row = UserModel(
                id=wallet_address,
                wallet_address=wallet_address,
                mon_balance=initial_balance,
                created_at=_utcnow(),
            )
            session.add(row)
            session.flush()
        return _wallet_from_row(row)


def apply_wallet_deltas(db: Database, deltas: Sequence[WalletDelta]) -> int:
    """
    Apply wallet deltas in one transaction.

    Returns:
        Number of deltas applied (deltas for unknown users are skipped)
    """
    if not deltas:
        return 0
    applied = 0
    with db.get_session() as session:
        for delta in deltas:
            row = session.get(UserModel, delta.user_id)
            if row is None:
                logger.warning("Wallet delta for unknown user skipped", user_id=delta.user_id)
                continue
            row.mon_balance += delta.mon_delta
            row.total_pnl += delta.pnl_delta
            row.referral_earnings += delta.referral_earnings_delta
            row.referral_count += delta.referral_count_delta
            applied += 1
    return applied


# Repository Functions: battle log
def append_log_entry(
    db: Database,
    user_id: str,
    message: str,
    type: str,
    amount: Optional[float] = None,
) -> None:
    with db.get_session() as session:
        session.add(
            BattleLogModel(
                id=str(uuid.uuid4()),
                user_id=user_id,
                message=message,
                type=type,
                amount=amount,
                timestamp=_utcnow(),
            )
        )


def append_log_entries(db: Database, entries: Sequence[BattleLogEntry]) -> None:
    if not entries:
        return
    with db.get_session() as session:
        for entry in entries:
            if session.get(BattleLogModel, entry.id) is not None:
                # Already written by an earlier attempt
                continue
            session.add(
                BattleLogModel(
                    id=entry.id,
                    user_id=entry.user_id,
                    message=entry.message,
                    type=entry.type.value,
                    amount=entry.amount,
                    timestamp=entry.timestamp,
                )
            )
