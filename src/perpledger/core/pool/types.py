"""Data types for the liquidity pool ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Tuple

SHARE_DECIMALS = 6
SHARE_SCALE = 10**SHARE_DECIMALS

EpochNumber = int
UserEpochKey = Tuple[str, EpochNumber]


@dataclass(frozen=True)
class MintInfo:
    """Deposit batch of a closed epoch; decremented as users claim."""

    usd_value: int = 0
    share_amount: int = 0


@dataclass(frozen=True)
class BurnInfo:
    """Withdraw batch of a closed epoch; decremented as users claim.

    ``requested_shares == burned_shares + returned_shares`` holds at close and
    after every claim.
    """

    requested_shares: int = 0
    burned_shares: int = 0
    returned_shares: int = 0
    usd_value: int = 0
    fee: int = 0


@dataclass(frozen=True)
class EpochCloseResult:
    epoch: EpochNumber
    deposit_share_price: int
    withdraw_share_price: int
    mint: MintInfo
    burn: BurnInfo
    next_epoch_end_time: int


@dataclass(frozen=True)
class WithdrawalClaim:
    usd_amount: int
    returned_shares: int
    burned_shares: int


@dataclass
class PoolState:
    """Mutable epoch accounting of the pool (everything except share balances)."""

    epoch_number: EpochNumber = 0
    epoch_end_time: int = 0
    closing_price_claimed: bool = False
    pool_amount: int = 0
    pool_locked_amount: int = 0
    product_locked: Dict[int, int] = field(default_factory=dict)
    instrument_locked: Dict[Tuple[int, int], int] = field(default_factory=dict)
    global_deposit_amount: Dict[EpochNumber, int] = field(default_factory=dict)
    global_withdraw_amount: Dict[EpochNumber, int] = field(default_factory=dict)
    user_deposit_amount: Dict[UserEpochKey, int] = field(default_factory=dict)
    user_withdraw_amount: Dict[UserEpochKey, int] = field(default_factory=dict)
    epoch_mint_info: Dict[EpochNumber, MintInfo] = field(default_factory=dict)
    epoch_burn_info: Dict[EpochNumber, BurnInfo] = field(default_factory=dict)
