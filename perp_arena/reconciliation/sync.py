"""
Reconciliation / sync layer.

Decouples per-tick in-memory mutation from store writes. Every kind of
mutation goes through the same idiom:

    append synchronously -> timer flush snapshots and clears the queue
    -> one batched write -> on failure the batch is re-prepended in order

Failures are reported once, to a single error sink, and retried on the next
flush cycle. Nothing here ever blocks the settlement tick.
"""
import asyncio
from typing import Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Sequence, TypeVar

from perp_arena.domain.models import (
    BattleLogEntry,
    LiquidityPool,
    MarketRecord,
    PersistedOrigin,
    PnlHistoryRecord,
    Position,
    PositionDelta,
    StakeDelta,
    WalletDelta,
)
from perp_arena.domain.protocols import ErrorSink, PersistenceStore
from perp_arena.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def log_error_sink(channel: str, error: BaseException, pending: int) -> None:
    """Default error sink: one structured warning per failed flush."""
    logger.warning(
        "Sync flush failed; batch re-queued",
        channel=channel,
        error=str(error),
        error_type=type(error).__name__,
        pending=pending,
    )


class BatchQueue(Generic[T]):
    """FIFO of pending items; drained whole by a flush."""

    def __init__(self):
        self._items: List[T] = []

    def __len__(self) -> int:
        return len(self._items)

    def append(self, item: T) -> None:
        self._items.append(item)

    def extend(self, items: Iterable[T]) -> None:
        self._items.extend(items)

    def drain(self) -> List[T]:
        """Snapshot and clear; later appends land in a fresh list."""
        batch, self._items = self._items, []
        return batch

    def requeue(self, batch: Sequence[T]) -> None:
        """Put a failed batch back ahead of anything appended since."""
        self._items = list(batch) + self._items

    def peek(self) -> List[T]:
        return list(self._items)


class SyncChannel(Generic[T]):
    """
    One queue plus the batched write that drains it.

    after_write runs only when the write succeeded. Its failures go to the
    error sink but do not requeue, since the batch itself was applied.
    """

    def __init__(
        self,
        name: str,
        writer: Callable[[List[T]], Awaitable[None]],
        error_sink: ErrorSink,
        after_write: Optional[Callable[[List[T]], Awaitable[None]]] = None,
    ):
        self.name = name
        self.queue: BatchQueue[T] = BatchQueue()
        self.writer = writer
        self.error_sink = error_sink
        self.after_write = after_write
        self.failures = 0
        self.flushed_items = 0

    def __len__(self) -> int:
        return len(self.queue)

    async def flush(self) -> bool:
        """Write everything pending. Returns False when the batch was re-queued."""
        batch = self.queue.drain()
        if not batch:
            return True
        try:
            await self.writer(batch)
        except Exception as e:
            self.queue.requeue(batch)
            self.failures += 1
            self.error_sink(self.name, e, len(self.queue))
            return False

        self.flushed_items += len(batch)
        if self.after_write is not None:
            try:
                await self.after_write(batch)
            except Exception as e:
                self.error_sink(f"{self.name}.after_write", e, len(self.queue))
        logger.debug("Sync channel flushed", channel=self.name, items=len(batch))
        return True


class ReconciliationLayer:
    """
    Owns every sync channel and flushes them in a fixed order.

    Lifecycle saves (full rows for mint/deploy/withdraw) flush before PnL
    deltas so a delta never targets a row the store has not seen. Only
    persisted positions are ever enqueued; with no store configured every
    enqueue is a no-op.

    After stake deltas land, each touched pool is recomputed from its stake
    rows and handed to on_pool_reconciled.
    """

    def __init__(
        self,
        store: PersistenceStore,
        error_sink: Optional[ErrorSink] = None,
        on_pool_reconciled: Optional[Callable[[LiquidityPool], None]] = None,
    ):
        self.store = store
        self.error_sink: ErrorSink = error_sink or log_error_sink
        self.on_pool_reconciled = on_pool_reconciled
        self._flush_lock = asyncio.Lock()

        self.lifecycle: SyncChannel[Position] = SyncChannel(
            "lifecycle", self._write_positions, self.error_sink
        )
        self.positions: SyncChannel[PositionDelta] = SyncChannel(
            "positions", self._write_deltas, self.error_sink
        )
        self.pnl_history: SyncChannel[PnlHistoryRecord] = SyncChannel(
            "pnl_history", self._write_history, self.error_sink
        )
        self.market: SyncChannel[MarketRecord] = SyncChannel(
            "market", self._write_market, self.error_sink
        )
        self.wallet: SyncChannel[WalletDelta] = SyncChannel(
            "wallet", self._write_wallet, self.error_sink
        )
        self.stakes: SyncChannel[StakeDelta] = SyncChannel(
            "stakes", self._write_stakes, self.error_sink, after_write=self._reconcile_pools
        )
        self.logs: SyncChannel[BattleLogEntry] = SyncChannel(
            "logs", self._write_logs, self.error_sink
        )

    @property
    def channels(self) -> List[SyncChannel]:
        return [
            self.lifecycle,
            self.positions,
            self.pnl_history,
            self.market,
            self.wallet,
            self.stakes,
            self.logs,
        ]

    @property
    def enabled(self) -> bool:
        return self.store.is_configured

    def pending(self) -> Dict[str, int]:
        return {channel.name: len(channel) for channel in self.channels}

    # -- enqueue (synchronous, called from timer callbacks) --

    def enqueue_position_save(self, position: Position) -> None:
        if not self.enabled or not isinstance(position.origin, PersistedOrigin):
            return
        self.lifecycle.queue.append(position)

    def enqueue_position_deltas(self, deltas: Iterable[PositionDelta]) -> None:
        if not self.enabled:
            return
        self.positions.queue.extend(deltas)

    def enqueue_history(self, records: Iterable[PnlHistoryRecord]) -> None:
        if not self.enabled:
            return
        self.pnl_history.queue.extend(records)

    def enqueue_market(self, record: MarketRecord) -> None:
        if not self.enabled:
            return
        self.market.queue.append(record)

    def enqueue_wallet(self, delta: WalletDelta) -> None:
        if not self.enabled:
            return
        self.wallet.queue.append(delta)

    def enqueue_stake(self, delta: StakeDelta) -> None:
        if not self.enabled:
            return
        self.stakes.queue.append(delta)

    def enqueue_log(self, entry: BattleLogEntry) -> None:
        if not self.enabled or entry.user_id is None:
            return
        self.logs.queue.append(entry)

    # -- flush --

    async def flush(self) -> Dict[str, bool]:
        """Flush every channel once, in order. Returns per-channel success."""
        if not self.enabled:
            return {}
        async with self._flush_lock:
            results = {}
            for channel in self.channels:
                results[channel.name] = await channel.flush()
            return results

    # -- writers --

    async def _write_positions(self, batch: List[Position]) -> None:
        # Latest save per position wins; order of first appearance is kept
        latest: Dict[str, Position] = {}
        for position in batch:
            latest[position.id] = position
        await self.store.save_positions(list(latest.values()))

    async def _write_deltas(self, batch: List[PositionDelta]) -> None:
        await self.store.batch_update_position_pnl(batch)

    async def _write_history(self, batch: List[PnlHistoryRecord]) -> None:
        await self.store.batch_insert_pnl_history_samples(batch)

    async def _write_market(self, batch: List[MarketRecord]) -> None:
        snapshots = {record.snapshot.symbol: record.snapshot.to_fields() for record in batch}
        samples = [(record.snapshot.symbol, record.price_sample) for record in batch]
        await self.store.record_market_batch(snapshots, samples)

    async def _write_wallet(self, batch: List[WalletDelta]) -> None:
        await self.store.apply_wallet_deltas(batch)

    async def _write_stakes(self, batch: List[StakeDelta]) -> None:
        await self.store.apply_stake_deltas(batch)

    async def _reconcile_pools(self, batch: List[StakeDelta]) -> None:
        for pool_id in dict.fromkeys(delta.pool_id for delta in batch):
            pool = await self.store.recompute_and_persist_total_staked(pool_id)
            if pool is not None and self.on_pool_reconciled is not None:
                self.on_pool_reconciled(pool)

    async def _write_logs(self, batch: List[BattleLogEntry]) -> None:
        await self.store.append_log_entries(batch)
