"""
Multi-token balance ledger: the external balance collaborator.

Implements BalanceLedger[AccountId, TokenId] -> Amount with the two primitives
the settlement layer relies on:

- ``transfer(token, src, dst, amount)``: atomic move, fails on insufficient funds;
- ``increase_balance(token, account, amount)``: credit from outside the ledger.
"""

from __future__ import annotations

from typing import Dict, Tuple

from ..core.errors import AbortKind, LedgerAbort

# Type aliases
AccountId = str
TokenId = str
Amount = int  # Non-negative integer (arbitrary precision)


class BalanceLedger:
    """
    Balance table mapping (account, token) -> amount.

    Note: balances live in a plain dict. Callers that hash or serialize the
    ledger sort keys explicitly (see ``perpledger.state.schema``).
    """

    def __init__(self) -> None:
        self._balances: Dict[Tuple[AccountId, TokenId], Amount] = {}

    def get(self, account: AccountId, token: TokenId) -> Amount:
        """Get balance for (account, token). Returns 0 if not found."""
        return self._balances.get((account, token), 0)

    def _set(self, account: AccountId, token: TokenId, amount: Amount) -> None:
        if amount == 0:
            # Remove zero balances to keep table sparse
            self._balances.pop((account, token), None)
        else:
            self._balances[(account, token)] = amount

    def increase_balance(self, token: TokenId, account: AccountId, amount: Amount) -> None:
        """
        Credit *amount* of *token* to *account*.

        Raises:
            LedgerAbort: If amount is negative
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"credit must be a non-negative int: {amount!r}")
        self._set(account, token, self.get(account, token) + amount)

    def transfer(self, token: TokenId, src: AccountId, dst: AccountId, amount: Amount) -> None:
        """
        Move *amount* of *token* from *src* to *dst*.

        Both sides are validated before either is written, so a failed transfer
        leaves the ledger untouched.

        Raises:
            LedgerAbort: If amount is negative or *src* holds less than *amount*
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"transfer must be a non-negative int: {amount!r}")
        if amount == 0 or src == dst:
            return
        current = self.get(src, token)
        if current < amount:
            raise LedgerAbort(
                AbortKind.INSUFFICIENT_BALANCE,
                f"{src} holds {current} {token}, needs {amount}",
            )
        self._set(src, token, current - amount)
        self._set(dst, token, self.get(dst, token) + amount)

    def get_all_balances(self) -> Dict[Tuple[AccountId, TokenId], Amount]:
        """
        Get all balances as a dictionary.

        Returns:
            Dictionary mapping (account, token) -> amount
        """
        return dict(self._balances)

    def copy(self) -> "BalanceLedger":
        clone = BalanceLedger()
        clone._balances = dict(self._balances)
        return clone

    def restore(self, other: "BalanceLedger") -> None:
        """Overwrite this ledger's balances with *other*'s (transaction rollback)."""
        self._balances = dict(other._balances)

    def total_supply(self, token: TokenId) -> Amount:
        """Sum of all balances of *token* (conservation checks)."""
        return sum(amount for (_, t), amount in self._balances.items() if t == token)

    def __repr__(self) -> str:
        return f"BalanceLedger({len(self._balances)} entries)"
