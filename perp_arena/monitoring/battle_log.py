"""
Battle-log feed.

The user-visible channel for lifecycle outcomes (wins, losses, liquidations,
mints, exits) and for rejected actions. Newest entry first, bounded.
"""
from collections import deque
from datetime import datetime
from typing import Callable, Deque, List, Optional

from perp_arena.domain.models import BattleLogEntry, LogType, utc_now
from perp_arena.monitoring.logger import get_logger

logger = get_logger(__name__)


class BattleLog:
    """Bounded in-memory feed; user-attributed entries are also handed to on_entry."""

    def __init__(
        self,
        capacity: int = 100,
        on_entry: Optional[Callable[[BattleLogEntry], None]] = None,
    ):
        self.capacity = capacity
        self.on_entry = on_entry
        self._entries: Deque[BattleLogEntry] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def add(
        self,
        message: str,
        type: LogType,
        amount: Optional[float] = None,
        user_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> BattleLogEntry:
        entry = BattleLogEntry(
            message=message,
            type=LogType(type),
            amount=amount,
            user_id=user_id,
            timestamp=timestamp or utc_now(),
        )
        self._entries.appendleft(entry)
        logger.debug("Battle log", type=entry.type.value, message=message, user_id=user_id)
        if self.on_entry is not None and user_id is not None:
            self.on_entry(entry)
        return entry

    def entries(self, limit: Optional[int] = None) -> List[BattleLogEntry]:
        """Newest first."""
        items = list(self._entries)
        return items if limit is None else items[:limit]

    def of_type(self, type: LogType) -> List[BattleLogEntry]:
        return [e for e in self._entries if e.type == type]

    def clear(self) -> None:
        self._entries.clear()
