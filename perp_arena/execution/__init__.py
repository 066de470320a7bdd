"""
Position ledger and user-driven lifecycle transitions (mint, deploy, withdraw).
"""
from perp_arena.execution.position_ledger import PositionLedger, WithdrawalResult

__all__ = [
    "PositionLedger",
    "WithdrawalResult",
]
