"""
Pytest configuration and shared fixtures.
"""
import os

# Keep a developer's DATABASE_URL from turning unit runs into SQL runs
os.environ.pop("DATABASE_URL", None)
os.environ.pop("ARENA_SEED", None)

import random
from datetime import datetime, timezone
from typing import List, Optional

import pytest

from perp_arena.config.config import AssetSpec, Config
from perp_arena.domain.models import (
    Direction,
    EphemeralOrigin,
    Owner,
    PersistedOrigin,
    Position,
    PositionStatus,
    Side,
)
from perp_arena.exceptions import PersistenceError
from perp_arena.execution.position_ledger import PositionLedger
from perp_arena.market.price_process import PriceProcess
from perp_arena.runtime.sim_clock import SimClock

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def now() -> datetime:
    return T0


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def config() -> Config:
    cfg = Config()
    cfg.population.initial_per_side = 5
    return cfg


@pytest.fixture
def sim_clock() -> SimClock:
    return SimClock(start=T0)


@pytest.fixture
def ledger() -> PositionLedger:
    return PositionLedger(min_leverage=1, max_leverage=50, min_collateral=100.0)


@pytest.fixture
def hundred_process(rng) -> PriceProcess:
    """Market starting at exactly 100 so scenario arithmetic is readable."""
    return PriceProcess("TEST", AssetSpec(start_price=100.0, volatility=0.01, min_price=1.0), rng)


def make_position(
    position_id: str = "user-1",
    *,
    direction: Direction = Direction.LONG,
    leverage: int = 10,
    balance: float = 1000.0,
    entry_price: float = 100.0,
    status: PositionStatus = PositionStatus.ACTIVE,
    asset: str = "TEST",
    ephemeral: bool = False,
    created_at: datetime = T0,
    max_age_seconds: float = 60.0,
    effective_direction: Optional[Side] = None,
) -> Position:
    if ephemeral:
        origin = EphemeralOrigin(local_id=position_id, created_at=created_at, max_age_seconds=max_age_seconds)
        owner = Owner.SYSTEM
        owner_id = None
    else:
        origin = PersistedOrigin(db_id=position_id)
        owner = Owner.USER
        owner_id = "alice"
    if effective_direction is None and direction != Direction.AUTO:
        effective_direction = Side(direction.value)
    return Position(
        id=position_id,
        owner=owner,
        origin=origin,
        name=f"Agent-{position_id}",
        asset=asset,
        direction=direction,
        leverage=leverage,
        balance=balance,
        entry_price=entry_price,
        status=status,
        owner_id=owner_id,
        effective_direction=effective_direction,
    )


@pytest.fixture
def position_factory():
    return make_position


class RecordingStore:
    """
    In-memory PersistenceStore fake.

    Records every batch it receives; `fail_next` makes the next N calls of a
    method raise PersistenceError.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_next: dict = {}

    @property
    def is_configured(self) -> bool:
        return True

    def _record(self, name: str, payload) -> None:
        remaining = self.fail_next.get(name, 0)
        if remaining:
            self.fail_next[name] = remaining - 1
            raise PersistenceError(f"{name} unavailable")
        self.calls.append((name, payload))

    def batches(self, name: str) -> List:
        return [payload for call, payload in self.calls if call == name]

    async def load_all_positions(self):
        return []

    async def save_positions(self, positions):
        self._record("save_positions", [p.id for p in positions])

    async def batch_update_position_pnl(self, deltas):
        self._record("batch_update_position_pnl", list(deltas))

    async def batch_insert_pnl_history_samples(self, records):
        self._record("batch_insert_pnl_history_samples", list(records))

    async def upsert_market_snapshot(self, symbol, fields):
        self._record("upsert_market_snapshot", (symbol, dict(fields)))

    async def insert_price_history_sample(self, symbol, price):
        self._record("insert_price_history_sample", (symbol, price))

    async def record_market_batch(self, snapshots, samples):
        self._record("record_market_batch", (dict(snapshots), list(samples)))

    async def get_pool(self, pool_id):
        return None

    async def recompute_and_persist_total_staked(self, pool_id):
        self._record("recompute_and_persist_total_staked", pool_id)
        return None

    async def upsert_user_stake(self, user_id, pool_id, amount_delta, rewards_delta, pending_rewards):
        self._record("upsert_user_stake", (user_id, pool_id, amount_delta, rewards_delta, pending_rewards))
        return None

    async def apply_stake_deltas(self, deltas):
        self._record("apply_stake_deltas", list(deltas))

    async def get_pool_stakes(self, pool_id):
        return []

    async def claim_stake_rewards(self, stake_id):
        return None

    async def get_or_create_user(self, wallet_address, initial_balance):
        return None

    async def apply_wallet_deltas(self, deltas):
        self._record("apply_wallet_deltas", list(deltas))

    async def append_log_entry(self, user_id, message, type, amount=None):
        self._record("append_log_entry", (user_id, message, type, amount))

    async def append_log_entries(self, entries):
        self._record("append_log_entries", list(entries))


@pytest.fixture
def recording_store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'arena.db'}"
