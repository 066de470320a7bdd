"""
AUTO direction resolution.

Two strategies exist:
- hash side: a stable bias from the first character code of the position id.
- trend side: the live trend at deploy time, falling back to the hash side when FLAT.
"""
from typing import Optional

from perp_arena.domain.models import Direction, Side, Trend


def hash_side(position_id: str) -> Side:
    """Even first character code -> LONG, odd -> SHORT."""
    if not position_id:
        return Side.LONG
    return Side.LONG if ord(position_id[0]) % 2 == 0 else Side.SHORT


def resolve_auto_side(position_id: str, trend: Trend) -> Side:
    if trend == Trend.UP:
        return Side.LONG
    if trend == Trend.DOWN:
        return Side.SHORT
    return hash_side(position_id)


def fixed_side(direction: Direction) -> Optional[Side]:
    """LONG/SHORT map to their side; AUTO has none."""
    if direction == Direction.LONG:
        return Side.LONG
    if direction == Direction.SHORT:
        return Side.SHORT
    return None
