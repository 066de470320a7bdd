"""
Domain protocols (interfaces) for dependency inversion.

These protocols define the contracts that infrastructure layers must implement,
allowing the simulation to depend on abstractions rather than a concrete store.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

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


@runtime_checkable
class PersistenceStore(Protocol):
    """
    Async row store the simulation calls out to.

    Implemented by perp_arena.storage.store.SqlStore; NullStore is the
    "not configured" mode where every call is a no-op.
    """

    @property
    def is_configured(self) -> bool: ...

    async def load_all_positions(self) -> List[Position]: ...

    async def save_positions(self, positions: Sequence[Position]) -> None: ...

    async def batch_update_position_pnl(self, deltas: Sequence[PositionDelta]) -> None: ...

    async def batch_insert_pnl_history_samples(self, records: Sequence[PnlHistoryRecord]) -> None: ...

    async def upsert_market_snapshot(self, symbol: str, fields: Dict[str, Any]) -> None: ...

    async def insert_price_history_sample(self, symbol: str, price: float) -> None: ...

    async def record_market_batch(
        self, snapshots: Dict[str, Dict[str, Any]], samples: Sequence[Tuple[str, float]]
    ) -> None: ...

    async def get_pool(self, pool_id: str) -> Optional[LiquidityPool]: ...

    async def recompute_and_persist_total_staked(self, pool_id: str) -> Optional[LiquidityPool]: ...

    async def upsert_user_stake(
        self,
        user_id: str,
        pool_id: str,
        amount_delta: float,
        rewards_delta: float,
        pending_rewards: float,
    ) -> Optional[LiquidityStake]: ...

    async def apply_stake_deltas(self, deltas: Sequence[StakeDelta]) -> None: ...

    async def get_pool_stakes(self, pool_id: str) -> List[LiquidityStake]: ...

    async def claim_stake_rewards(self, stake_id: str) -> Optional[LiquidityStake]: ...

    async def get_or_create_user(self, wallet_address: str, initial_balance: float) -> Optional[WalletState]: ...

    async def apply_wallet_deltas(self, deltas: Sequence[WalletDelta]) -> None: ...

    async def append_log_entry(
        self,
        user_id: str,
        message: str,
        type: str,
        amount: Optional[float] = None,
    ) -> None: ...

    async def append_log_entries(self, entries: Sequence[BattleLogEntry]) -> None: ...


class ErrorSink(Protocol):
    """Single designated receiver for background persistence failures."""

    def __call__(self, channel: str, error: BaseException, pending: int) -> None: ...


class Clock(Protocol):
    """Time source; SimClock in tests and fast runs, WallClock otherwise."""

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


@dataclass(frozen=True)
class Persona:
    """Flavor attached to a minted position."""
    name: str
    strategy: str
    bio: str = ""


class PersonaProvider(Protocol):
    """External text generation for agent personas; irrelevant to settlement."""

    def __call__(self, name_hint: Optional[str] = None) -> Persona: ...
