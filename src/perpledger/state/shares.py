"""
Pool share (SLP) balance tracking.

Shares are held per account; the pool's own custody (freshly minted shares
awaiting claims, shares queued for withdrawal) is just another account.
"""

from __future__ import annotations

from typing import Dict

from ..core.errors import AbortKind, LedgerAbort
from .balances import AccountId, Amount


class ShareTable:
    """
    Share balance table mapping account -> share amount.

    Notes:
    - Share balances are always non-negative.
    - Zero balances are omitted to keep the table sparse.
    """

    def __init__(self) -> None:
        self._balances: Dict[AccountId, Amount] = {}

    def get(self, account: AccountId) -> Amount:
        """Get share balance for *account*. Returns 0 if not found."""
        return self._balances.get(account, 0)

    def set(self, account: AccountId, amount: Amount) -> None:
        if amount < 0:
            raise LedgerAbort(AbortKind.INVARIANT_VIOLATED, f"share balance cannot be negative: {amount}")
        if amount == 0:
            self._balances.pop(account, None)
        else:
            self._balances[account] = amount

    def add(self, account: AccountId, delta: int) -> None:
        """Add delta to a share balance (delta may be negative)."""
        current = self.get(account)
        new_balance = current + delta
        if new_balance < 0:
            raise LedgerAbort(
                AbortKind.INSUFFICIENT_BALANCE,
                f"insufficient shares: {current} + {delta} = {new_balance} < 0",
            )
        self.set(account, new_balance)

    def move(self, src: AccountId, dst: AccountId, amount: Amount) -> None:
        """Move shares between accounts; validated before either side is written."""
        if amount < 0:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"share amount must be non-negative: {amount}")
        if self.get(src) < amount:
            raise LedgerAbort(
                AbortKind.INSUFFICIENT_BALANCE,
                f"{src} holds {self.get(src)} shares, needs {amount}",
            )
        self.add(src, -amount)
        self.add(dst, amount)

    def get_all_balances(self) -> Dict[AccountId, Amount]:
        """Return all share balances."""
        return dict(self._balances)

    def copy(self) -> "ShareTable":
        clone = ShareTable()
        clone._balances = dict(self._balances)
        return clone

    def total(self) -> Amount:
        return sum(self._balances.values())

    def __repr__(self) -> str:
        return f"ShareTable({len(self._balances)} entries)"
