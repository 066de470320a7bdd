"""
Custom exception hierarchy for the arena simulation.

Hierarchy:

    ArenaError (base)
    ├── OperationalError : transient/retryable (store unreachable, write rejected)
    │   └── PersistenceError
    ├── DataError : bad input, skip the action, report on the battle log
    │   ├── ValidationError
    │   ├── InsufficientFundsError
    │   ├── InvalidTransitionError
    │   ├── UnknownPositionError
    │   └── UnknownWalletError
    └── InvariantError : ledger invariant broken, fail loudly

Rules:
    - OperationalError: caught once by the reconciliation layer, batch re-queued,
      reported to the error sink. Never surfaces to the user.
    - DataError: caught by the simulation facade, turned into a battle-log entry.
    - InvariantError: never caught. Negative collateral is prevented by
      construction, so seeing one means the arithmetic is wrong.
"""


class ArenaError(Exception):
    """Base exception for all arena errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(ArenaError):
    """Transient/retryable error talking to the persistence layer."""
    pass


class PersistenceError(OperationalError):
    """A store read or write failed."""
    pass


# ============ DATA (bad input, skip action) ============

class DataError(ArenaError):
    """Bad input for a lifecycle operation.

    Treatment: catch, append to the battle log, skip the action.
    """
    pass


class ValidationError(DataError):
    """Raised when an argument is out of range (leverage, amount, direction)."""
    pass


class InsufficientFundsError(DataError):
    """Raised when a wallet or stake cannot cover a debit."""
    pass


class InvalidTransitionError(DataError):
    """Raised when a position is asked for a state change its status forbids."""
    pass


class UnknownPositionError(DataError):
    """Raised when a position id is not in the ledger."""
    pass


class UnknownWalletError(DataError):
    """Raised when a user has no open wallet."""
    pass


# ============ INVARIANT (halt) ============

class InvariantError(ArenaError):
    """Ledger invariant violation (e.g. negative collateral in an emitted update)."""
    pass
