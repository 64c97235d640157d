"""
Epoch-based liquidity pool ledger.
"""

from .ledger import LiquidityPoolLedger
from .types import SHARE_SCALE, BurnInfo, EpochCloseResult, MintInfo, PoolState, WithdrawalClaim

__all__ = [
    "LiquidityPoolLedger",
    "SHARE_SCALE",
    "BurnInfo",
    "EpochCloseResult",
    "MintInfo",
    "PoolState",
    "WithdrawalClaim",
]
