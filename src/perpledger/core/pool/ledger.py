"""
Liquidity pool ledger: epoch state machine for pooled capital.

Deposits and withdrawals are registered as intents against the current epoch
and settled in one batch when the epoch closes:

- deposits are minted into pool custody at the closing deposit share price;
- withdrawals are valued at the closing withdraw share price, capped at free
  (unlocked) capital, charged the withdraw fee (which stays in the pool), and
  the unhonored share remainder is kept in custody for pro-rata return.

Per-user claims are resolved lazily, one user at a time, by decrementing the
epoch's remaining batch. The last claimer of a batch receives the rounding dust.

USD lives in the configured pool account of the ``BalanceLedger``.
``pool_amount`` counts only settled capital: pending deposits and unclaimed
withdraw payouts sit in the pool account but outside ``pool_amount``.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, FrozenSet

from ...config import CallContext
from ...state.balances import BalanceLedger
from ...state.shares import ShareTable
from ..errors import AbortKind, LedgerAbort
from ..margin.math import BPS_SCALE, bps_of, require_uint
from .types import (
    SHARE_SCALE,
    BurnInfo,
    EpochCloseResult,
    MintInfo,
    PoolState,
    WithdrawalClaim,
)

logger = logging.getLogger(__name__)


def _require_role(ctx: CallContext, roles: FrozenSet[str], what: str) -> None:
    if ctx.caller not in roles:
        raise LedgerAbort(AbortKind.UNAUTHORIZED, f"{ctx.caller!r} may not {what}")


def _require_self_or_orchestrator(ctx: CallContext, user: str) -> None:
    if ctx.caller != user and ctx.caller not in ctx.config.pool.orchestrators:
        raise LedgerAbort(AbortKind.UNAUTHORIZED, f"{ctx.caller!r} may not act for {user!r}")


def _require_positive(value: Any, *, name: str) -> int:
    value = require_uint(value, name=name)
    if value == 0:
        raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"{name} must be positive")
    return value


class LiquidityPoolLedger:
    def __init__(self, balances: BalanceLedger) -> None:
        self._balances = balances
        self._state = PoolState()
        self._shares = ShareTable()

    # -- Queries -------------------------------------------------------------

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def shares(self) -> ShareTable:
        return self._shares

    @property
    def epoch_number(self) -> int:
        return self._state.epoch_number

    @property
    def total_shares(self) -> int:
        return self._shares.total()

    def share_balance(self, user: str) -> int:
        return self._shares.get(user)

    def available_liquidity(self) -> int:
        return self._state.pool_amount - self._state.pool_locked_amount

    def is_epoch_locked(self, ctx: CallContext) -> bool:
        s = self._state
        if s.closing_price_claimed:
            return True
        return ctx.now >= s.epoch_end_time - ctx.config.pool.request_time_delay

    def share_price_for_deposit(self, ctx: CallContext, lp_upl: int) -> int:
        total = self.total_shares
        if total == 0:
            return ctx.config.pool.initial_share_price
        return max(1, (self._state.pool_amount + lp_upl) * SHARE_SCALE // total)

    def share_price_for_withdraw(self, ctx: CallContext, lp_upl: int) -> int:
        total = self.total_shares
        if total == 0:
            return ctx.config.pool.initial_share_price
        return (self._state.pool_amount + lp_upl) * SHARE_SCALE // total

    def can_lock(self, ctx: CallContext, product_id: int, instrument_id: int, amount: int) -> bool:
        """Advisory lock ceilings; callers decline rather than lock when this is False."""
        s = self._state
        if amount > self.available_liquidity():
            return False
        inst = ctx.config.instrument(instrument_id)
        instrument_cap = s.pool_amount * inst.max_lock_ratio_bps // BPS_SCALE
        if s.instrument_locked.get((product_id, instrument_id), 0) + amount > instrument_cap:
            return False
        product_cap = ctx.config.pool.product_lock_caps.get(product_id)
        if product_cap is not None and s.product_locked.get(product_id, 0) + amount > product_cap:
            return False
        return True

    # -- Transactions --------------------------------------------------------

    def checkpoint(self) -> Any:
        return copy.deepcopy(self._state), self._shares.copy()

    def rollback(self, token: Any) -> None:
        state, shares = token
        self._state = copy.deepcopy(state)
        self._shares = shares.copy()

    def load_state(self, state: PoolState, shares: ShareTable) -> None:
        self._state = state
        self._shares = shares

    # -- Capital manager -----------------------------------------------------

    def lock_liquidity(self, ctx: CallContext, product_id: int, instrument_id: int, amount: int) -> None:
        _require_role(ctx, ctx.config.pool.capital_managers, "lock liquidity")
        amount = require_uint(amount, name="amount")
        s = self._state
        if s.pool_amount - s.pool_locked_amount < amount:
            raise LedgerAbort(
                AbortKind.INSUFFICIENT_POOL_LIQUIDITY,
                f"cannot lock {amount}: free capital {s.pool_amount - s.pool_locked_amount}",
            )
        s.pool_locked_amount += amount
        s.product_locked[product_id] = s.product_locked.get(product_id, 0) + amount
        key = (product_id, instrument_id)
        s.instrument_locked[key] = s.instrument_locked.get(key, 0) + amount

    def unlock_liquidity(self, ctx: CallContext, product_id: int, instrument_id: int, amount: int) -> None:
        _require_role(ctx, ctx.config.pool.capital_managers, "unlock liquidity")
        amount = require_uint(amount, name="amount")
        s = self._state
        key = (product_id, instrument_id)
        if amount > s.pool_locked_amount or amount > s.instrument_locked.get(key, 0):
            raise LedgerAbort(
                AbortKind.INVARIANT_VIOLATED,
                f"unlock {amount} exceeds locked capital of instrument {instrument_id}",
            )
        s.pool_locked_amount -= amount
        s.instrument_locked[key] -= amount
        # Assignment, not decrement. Kept as-is; see DESIGN.md, open question 1.
        s.product_locked[product_id] = amount

    def increase_liquidity(self, ctx: CallContext, amount: int) -> None:
        """Book USD that has been (or is about to be) moved into the pool account."""
        _require_role(ctx, ctx.config.pool.capital_managers, "increase liquidity")
        self._state.pool_amount += require_uint(amount, name="amount")

    def transfer_usd(self, ctx: CallContext, to: str, amount: int) -> None:
        """Pay *amount* of free pool capital out to *to*."""
        _require_role(ctx, ctx.config.pool.capital_managers, "transfer pool USD")
        amount = require_uint(amount, name="amount")
        if amount > self.available_liquidity():
            raise LedgerAbort(
                AbortKind.INSUFFICIENT_POOL_LIQUIDITY,
                f"cannot pay {amount}: free capital {self.available_liquidity()}",
            )
        self._state.pool_amount -= amount
        self._balances.transfer(ctx.config.usd_token, ctx.config.pool.pool_account, to, amount)

    # -- Deposit / withdraw intents ------------------------------------------

    def _require_open_epoch(self, ctx: CallContext) -> None:
        if self.is_epoch_locked(ctx):
            raise LedgerAbort(
                AbortKind.EPOCH_LOCKED,
                f"epoch {self._state.epoch_number} no longer accepts requests",
            )

    def lp_provide_liquidity(self, ctx: CallContext, user: str, amount: int) -> None:
        _require_self_or_orchestrator(ctx, user)
        amount = _require_positive(amount, name="amount")
        self._require_open_epoch(ctx)
        token = ctx.config.usd_token
        held = self._balances.get(user, token)
        if held < amount:
            raise LedgerAbort(AbortKind.INSUFFICIENT_BALANCE, f"{user} holds {held} {token}, needs {amount}")

        s = self._state
        e = s.epoch_number
        s.user_deposit_amount[(user, e)] = s.user_deposit_amount.get((user, e), 0) + amount
        s.global_deposit_amount[e] = s.global_deposit_amount.get(e, 0) + amount
        self._balances.transfer(token, user, ctx.config.pool.pool_account, amount)
        logger.debug("deposit request user=%s epoch=%s amount=%s", user, e, amount)

    def lp_withdraw_slp(self, ctx: CallContext, user: str, shares: int) -> None:
        _require_self_or_orchestrator(ctx, user)
        shares = _require_positive(shares, name="shares")
        self._require_open_epoch(ctx)
        held = self._shares.get(user)
        if held < shares:
            raise LedgerAbort(AbortKind.INSUFFICIENT_BALANCE, f"{user} holds {held} shares, needs {shares}")

        s = self._state
        e = s.epoch_number
        s.user_withdraw_amount[(user, e)] = s.user_withdraw_amount.get((user, e), 0) + shares
        s.global_withdraw_amount[e] = s.global_withdraw_amount.get(e, 0) + shares
        self._shares.move(user, ctx.config.pool.pool_account, shares)
        logger.debug("withdraw request user=%s epoch=%s shares=%s", user, e, shares)

    # -- Epoch close ---------------------------------------------------------

    def claim_closing_price(self, ctx: CallContext) -> None:
        """Lock the current epoch against new requests ahead of its close."""
        _require_role(ctx, ctx.config.pool.orchestrators, "claim the closing price")
        self._state.closing_price_claimed = True

    def move_to_next_epoch(self, ctx: CallContext, lp_upl: int) -> EpochCloseResult:
        _require_role(ctx, ctx.config.pool.orchestrators, "move to the next epoch")
        s = self._state
        if ctx.now < s.epoch_end_time:
            raise LedgerAbort(AbortKind.EPOCH_NOT_ENDED, f"epoch {s.epoch_number} ends at {s.epoch_end_time}")
        if s.pool_amount + lp_upl < 0:
            raise LedgerAbort(
                AbortKind.POOL_INSOLVENT,
                f"unrealized loss {-lp_upl} exceeds pool value {s.pool_amount}",
            )

        pool_cfg = ctx.config.pool
        custody = pool_cfg.pool_account
        e = s.epoch_number
        deposit_price = self.share_price_for_deposit(ctx, lp_upl)
        withdraw_price = self.share_price_for_withdraw(ctx, lp_upl)

        # Mint the deposit batch into custody.
        deposits = s.global_deposit_amount.get(e, 0)
        minted = deposits * SHARE_SCALE // deposit_price
        mint = MintInfo(usd_value=deposits, share_amount=minted)
        s.pool_amount += deposits
        self._shares.add(custody, minted)

        # Burn the withdraw batch, capped at free capital.
        requested = s.global_withdraw_amount.get(e, 0)
        value = requested * withdraw_price // SHARE_SCALE
        free = max(0, s.pool_amount - s.pool_locked_amount)
        if value <= free:
            honored, burned = value, requested
        else:
            honored, burned = free, requested * free // value
        fee = bps_of(honored, pool_cfg.withdraw_fee_bps)
        burn = BurnInfo(
            requested_shares=requested,
            burned_shares=burned,
            returned_shares=requested - burned,
            usd_value=honored - fee,
            fee=fee,
        )
        s.pool_amount -= burn.usd_value
        self._shares.add(custody, -burned)

        s.epoch_mint_info[e] = mint
        s.epoch_burn_info[e] = burn
        s.epoch_number = e + 1
        next_end = s.epoch_end_time + pool_cfg.epoch_duration
        if next_end <= ctx.now:
            next_end = ctx.now + pool_cfg.epoch_duration
        s.epoch_end_time = next_end
        s.closing_price_claimed = False

        logger.info(
            "epoch %s closed: minted=%s for %s, burned=%s of %s for %s (fee %s), next end %s",
            e, minted, deposits, burned, requested, burn.usd_value, fee, next_end,
        )
        return EpochCloseResult(
            epoch=e,
            deposit_share_price=deposit_price,
            withdraw_share_price=withdraw_price,
            mint=mint,
            burn=burn,
            next_epoch_end_time=next_end,
        )

    # -- Lazy claims ---------------------------------------------------------

    def _require_closed(self, epoch: int) -> None:
        if not isinstance(epoch, int) or isinstance(epoch, bool) or epoch < 0:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"epoch must be a non-negative int: {epoch!r}")
        if epoch >= self._state.epoch_number:
            raise LedgerAbort(AbortKind.EPOCH_NOT_ENDED, f"epoch {epoch} has not closed")

    def withdraw_user_slp_claim(self, ctx: CallContext, user: str, epoch: int) -> int:
        """Release *user*'s minted shares for a closed deposit epoch."""
        _require_self_or_orchestrator(ctx, user)
        self._require_closed(epoch)
        s = self._state
        deposited = s.user_deposit_amount.get((user, epoch), 0)
        if deposited == 0:
            raise LedgerAbort(AbortKind.NOTHING_TO_CLAIM, f"{user} has no deposit claim in epoch {epoch}")

        info = s.epoch_mint_info[epoch]
        if deposited == info.usd_value:
            out = info.share_amount
        else:
            out = info.share_amount * deposited // info.usd_value

        del s.user_deposit_amount[(user, epoch)]
        s.epoch_mint_info[epoch] = MintInfo(
            usd_value=info.usd_value - deposited,
            share_amount=info.share_amount - out,
        )
        self._shares.move(ctx.config.pool.pool_account, user, out)
        return out

    def withdraw_users_liquidity(self, ctx: CallContext, user: str, epoch: int) -> WithdrawalClaim:
        """Pay *user*'s share of a closed withdraw batch and return unburned shares."""
        _require_self_or_orchestrator(ctx, user)
        self._require_closed(epoch)
        s = self._state
        requested = s.user_withdraw_amount.get((user, epoch), 0)
        if requested == 0:
            raise LedgerAbort(AbortKind.NOTHING_TO_CLAIM, f"{user} has no withdraw claim in epoch {epoch}")

        info = s.epoch_burn_info[epoch]
        if requested == info.requested_shares:
            usd, burned = info.usd_value, info.burned_shares
        else:
            usd = info.usd_value * requested // info.requested_shares
            burned = info.burned_shares * requested // info.requested_shares
        returned = requested - burned

        del s.user_withdraw_amount[(user, epoch)]
        s.epoch_burn_info[epoch] = BurnInfo(
            requested_shares=info.requested_shares - requested,
            burned_shares=info.burned_shares - burned,
            returned_shares=info.returned_shares - returned,
            usd_value=info.usd_value - usd,
            fee=info.fee,
        )
        pool_account = ctx.config.pool.pool_account
        self._shares.move(pool_account, user, returned)
        self._balances.transfer(ctx.config.usd_token, pool_account, user, usd)
        return WithdrawalClaim(usd_amount=usd, returned_shares=returned, burned_shares=burned)
