"""
Wallet balances.

Holds each user's MON balance, realized PnL and referral totals in memory.
Every mutation is emitted as a WalletDelta to the configured sink (the
reconciliation layer's wallet channel).
"""
from typing import Callable, Dict, Optional, Set

from perp_arena.domain.models import WalletDelta, WalletState
from perp_arena.exceptions import InsufficientFundsError, UnknownWalletError, ValidationError
from perp_arena.monitoring.logger import get_logger

logger = get_logger(__name__)


class WalletBook:
    """In-memory wallets keyed by user id."""

    def __init__(
        self,
        initial_balance: float = 10000.0,
        referral_rate: float = 0.05,
        on_delta: Optional[Callable[[WalletDelta], None]] = None,
    ):
        self.initial_balance = initial_balance
        self.referral_rate = referral_rate
        self.on_delta = on_delta
        self._wallets: Dict[str, WalletState] = {}
        # referred user id -> referrer user id
        self._referrers: Dict[str, str] = {}
        self._paying_referrals: Set[str] = set()

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._wallets

    def open(self, user_id: str, address: str = "", balance: Optional[float] = None) -> WalletState:
        """Return the user's wallet, creating it with the initial balance if new."""
        wallet = self._wallets.get(user_id)
        if wallet is None:
            wallet = WalletState(
                user_id=user_id,
                address=address or user_id,
                mon_balance=self.initial_balance if balance is None else balance,
            )
            self._wallets[user_id] = wallet
            logger.info("Wallet opened", user_id=user_id, mon_balance=wallet.mon_balance)
        return wallet

    def adopt(self, wallet: WalletState) -> WalletState:
        """Install a wallet loaded from the store."""
        self._wallets[wallet.user_id] = wallet
        return wallet

    def get(self, user_id: str) -> WalletState:
        try:
            return self._wallets[user_id]
        except KeyError:
            raise UnknownWalletError(f"No wallet for user {user_id}") from None

    def balance(self, user_id: str) -> float:
        return self.get(user_id).mon_balance

    def _emit(self, delta: WalletDelta) -> WalletDelta:
        if self.on_delta is not None:
            self.on_delta(delta)
        return delta

    def debit(self, user_id: str, amount: float, reason: str = "") -> WalletDelta:
        """
        Remove MON from a wallet.

        Raises:
            ValidationError: amount is negative
            InsufficientFundsError: balance would go negative
        """
        if amount < 0:
            raise ValidationError(f"Debit amount must be non-negative, got {amount}")
        wallet = self.get(user_id)
        if amount > wallet.mon_balance:
            raise InsufficientFundsError(
                f"Insufficient MON: need {amount:g}, have {wallet.mon_balance:g}"
            )
        wallet.mon_balance -= amount
        logger.debug("Wallet debited", user_id=user_id, amount=amount, reason=reason)
        return self._emit(WalletDelta(user_id=user_id, mon_delta=-amount))

    def credit(self, user_id: str, amount: float, reason: str = "") -> WalletDelta:
        if amount < 0:
            raise ValidationError(f"Credit amount must be non-negative, got {amount}")
        wallet = self.get(user_id)
        wallet.mon_balance += amount
        logger.debug("Wallet credited", user_id=user_id, amount=amount, reason=reason)
        return self._emit(WalletDelta(user_id=user_id, mon_delta=amount))

    def settle_withdrawal(self, user_id: str, final_balance: float, realized_pnl: float) -> WalletDelta:
        """Credit a withdrawn position's equity and book its realized PnL."""
        wallet = self.get(user_id)
        wallet.mon_balance += final_balance
        wallet.total_pnl += realized_pnl
        return self._emit(WalletDelta(user_id=user_id, mon_delta=final_balance, pnl_delta=realized_pnl))

    def add_referral_earnings(self, user_id: str, amount: float, new_referral: bool = True) -> WalletDelta:
        """Book referral earnings (credited to the balance) and optionally count a referral."""
        if amount < 0:
            raise ValidationError(f"Referral earnings must be non-negative, got {amount}")
        wallet = self.get(user_id)
        wallet.referral_earnings += amount
        wallet.mon_balance += amount
        count = 1 if new_referral else 0
        wallet.referral_count += count
        logger.info("Referral earnings added", user_id=user_id, amount=amount, referral_count=wallet.referral_count)
        return self._emit(
            WalletDelta(
                user_id=user_id,
                mon_delta=amount,
                referral_earnings_delta=amount,
                referral_count_delta=count,
            )
        )

    def referral_reward(self, fee: float) -> float:
        """Referrer's cut of a fee paid by a referred user."""
        return fee * self.referral_rate

    def link_referral(self, user_id: str, referrer_id: str) -> bool:
        """Record who referred a user. The first link wins; self-referral is ignored."""
        if not referrer_id or referrer_id == user_id or user_id in self._referrers:
            return False
        self._referrers[user_id] = referrer_id
        logger.info("Referral linked", user_id=user_id, referrer_id=referrer_id)
        return True

    def referrer_of(self, user_id: str) -> Optional[str]:
        return self._referrers.get(user_id)

    def pay_referral(self, user_id: str, fee: float) -> Optional[WalletDelta]:
        """
        Credit the referrer of `user_id` with its cut of a fee the user paid.

        A referred user counts toward the referrer's referral_count on the
        first fee they pay. Returns None when there is no referrer wallet.
        """
        referrer_id = self._referrers.get(user_id)
        if referrer_id is None or referrer_id not in self._wallets:
            return None
        first_fee = user_id not in self._paying_referrals
        self._paying_referrals.add(user_id)
        return self.add_referral_earnings(referrer_id, self.referral_reward(fee), new_referral=first_fee)
