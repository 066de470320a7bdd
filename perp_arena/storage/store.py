"""
PersistenceStore implementations.

SqlStore offloads the synchronous repository functions to worker threads so
a slow database never blocks the event loop. NullStore is the not-configured
mode: every call is a no-op and the simulation runs fully in memory.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from perp_arena.config.config import Config
from perp_arena.domain.models import (
    BattleLogEntry,
    LiquidityPool,
    LiquidityStake,
    PnlHistoryRecord,
    Position,
    PositionDelta,
    StakeDelta,
    WalletDelta,
    WalletState,
)
from perp_arena.exceptions import PersistenceError
from perp_arena.monitoring.logger import get_logger
from perp_arena.storage import repository
from perp_arena.storage.db import Database, init_db

logger = get_logger(__name__)

R = TypeVar("R")


class NullStore:
    """No backing store configured."""

    @property
    def is_configured(self) -> bool:
        return False

    async def load_all_positions(self) -> List[Position]:
        return []

    async def save_positions(self, positions: Sequence[Position]) -> None:
        return None

    async def batch_update_position_pnl(self, deltas: Sequence[PositionDelta]) -> None:
        return None

    async def batch_insert_pnl_history_samples(self, records: Sequence[PnlHistoryRecord]) -> None:
        return None

    async def upsert_market_snapshot(self, symbol: str, fields: Dict[str, Any]) -> None:
        return None

    async def insert_price_history_sample(self, symbol: str, price: float) -> None:
        return None

    async def record_market_batch(
        self, snapshots: Dict[str, Dict[str, Any]], samples: Sequence[Tuple[str, float]]
    ) -> None:
        return None

    async def get_pool(self, pool_id: str) -> Optional[LiquidityPool]:
        return None

    async def recompute_and_persist_total_staked(self, pool_id: str) -> Optional[LiquidityPool]:
        return None

    async def upsert_user_stake(
        self,
        user_id: str,
        pool_id: str,
        amount_delta: float,
        rewards_delta: float,
        pending_rewards: float,
    ) -> Optional[LiquidityStake]:
        return None

    async def apply_stake_deltas(self, deltas: Sequence[StakeDelta]) -> None:
        return None

    async def get_pool_stakes(self, pool_id: str) -> List[LiquidityStake]:
        return []

    async def claim_stake_rewards(self, stake_id: str) -> Optional[LiquidityStake]:
        return None

    async def get_or_create_user(self, wallet_address: str, initial_balance: float) -> Optional[WalletState]:
        return None

    async def apply_wallet_deltas(self, deltas: Sequence[WalletDelta]) -> None:
        return None

    async def append_log_entry(
        self,
        user_id: str,
        message: str,
        type: str,
        amount: Optional[float] = None,
    ) -> None:
        return None

    async def append_log_entries(self, entries: Sequence[BattleLogEntry]) -> None:
        return None


class SqlStore:
    """SQLAlchemy-backed store (PostgreSQL or SQLite)."""

    def __init__(self, db: Database):
        self.db = db

    @property
    def is_configured(self) -> bool:
        return True

    async def _run(self, fn: Callable[..., R], *args) -> R:
        try:
            return await asyncio.to_thread(fn, self.db, *args)
        except SQLAlchemyError as e:
            raise PersistenceError(f"{fn.__name__} failed: {e}") from e

    async def load_all_positions(self) -> List[Position]:
        return await self._run(repository.load_all_positions)

    async def save_positions(self, positions: Sequence[Position]) -> None:
        await self._run(repository.save_positions, list(positions))

    async def batch_update_position_pnl(self, deltas: Sequence[PositionDelta]) -> None:
        await self._run(repository.batch_update_position_pnl, list(deltas))

    async def batch_insert_pnl_history_samples(self, records: Sequence[PnlHistoryRecord]) -> None:
        await self._run(repository.batch_insert_pnl_history_samples, list(records))

    async def upsert_market_snapshot(self, symbol: str, fields: Dict[str, Any]) -> None:
        await self._run(repository.upsert_market_snapshot, symbol, dict(fields))

    async def insert_price_history_sample(self, symbol: str, price: float) -> None:
        await self._run(repository.insert_price_history_sample, symbol, price)

    async def record_market_batch(
        self, snapshots: Dict[str, Dict[str, Any]], samples: Sequence[Tuple[str, float]]
    ) -> None:
        await self._run(repository.record_market_batch, dict(snapshots), list(samples))

    async def get_pool(self, pool_id: str) -> Optional[LiquidityPool]:
        return await self._run(repository.get_pool, pool_id)

    async def recompute_and_persist_total_staked(self, pool_id: str) -> Optional[LiquidityPool]:
        return await self._run(repository.recompute_and_persist_total_staked, pool_id)

    async def upsert_user_stake(
        self,
        user_id: str,
        pool_id: str,
        amount_delta: float,
        rewards_delta: float,
        pending_rewards: float,
    ) -> Optional[LiquidityStake]:
        return await self._run(
            repository.upsert_user_stake, user_id, pool_id, amount_delta, rewards_delta, pending_rewards
        )

    async def apply_stake_deltas(self, deltas: Sequence[StakeDelta]) -> None:
        await self._run(repository.apply_stake_deltas, list(deltas))

    async def get_pool_stakes(self, pool_id: str) -> List[LiquidityStake]:
        return await self._run(repository.get_pool_stakes, pool_id)

    async def claim_stake_rewards(self, stake_id: str) -> Optional[LiquidityStake]:
        return await self._run(repository.claim_stake_rewards, stake_id)

    async def get_or_create_user(self, wallet_address: str, initial_balance: float) -> Optional[WalletState]:
        return await self._run(repository.get_or_create_user, wallet_address, initial_balance)

    async def apply_wallet_deltas(self, deltas: Sequence[WalletDelta]) -> None:
        await self._run(repository.apply_wallet_deltas, list(deltas))

    async def append_log_entry(
        self,
        user_id: str,
        message: str,
        type: str,
        amount: Optional[float] = None,
    ) -> None:
        await self._run(repository.append_log_entry, user_id, message, type, amount)

    async def append_log_entries(self, entries: Sequence[BattleLogEntry]) -> None:
        await self._run(repository.append_log_entries, list(entries))

    def close(self) -> None:
        self.db.dispose()


def build_store(config: Config):
    """SqlStore when storage is enabled and a URL is configured, else NullStore."""
    storage = config.storage
    if not storage.enabled or not storage.database_url:
        logger.info("Persistence not configured; running in memory")
        return NullStore()
    db = init_db(storage.database_url)
    logger.info("Persistence configured", dialect=db.engine.dialect.name)
    return SqlStore(db)
