"""Pure fixed-point arithmetic for the margin engine.

Every function is stateless and operates on plain Python ints.

Rounding is explicit:
- unsigned splits use ``//`` (floor),
- signed pro-rata splits truncate the *magnitude* toward zero and re-apply the
  sign, so a realized funding fee never exceeds the accrued amount in either
  direction.
"""

from __future__ import annotations

from typing import Any

from ..errors import AbortKind, LedgerAbort

# Domain constants
USD_DECIMALS: int = 6
USD_SCALE: int = 10**USD_DECIMALS
PRICE_SCALE: int = 100_000_000  # 1e8
BPS_SCALE: int = 10_000
INDEX_PRECISION: int = 10**12
FEE_RATE_PRECISION: int = 10**10


# -- Basic helpers -----------------------------------------------------------

def abs_val(x: int) -> int:
    """Absolute value of *x*."""
    return x if x >= 0 else -x


def sign(x: int) -> int:
    return (x > 0) - (x < 0)


def require_uint(value: Any, *, name: str) -> int:
    """Return *value* as an unsigned int or abort with ``INVALID_AMOUNT``."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"{name} must be an int")
    if value < 0:
        raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"{name} must be non-negative: {value}")
    return int(value)


def require_int(value: Any, *, name: str) -> int:
    """Return *value* as a signed int or abort with ``INVALID_AMOUNT``."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise LedgerAbort(AbortKind.INVALID_AMOUNT, f"{name} must be an int")
    return int(value)


def to_unsigned(value: int, *, name: str) -> int:
    """Signed -> unsigned conversion that fails instead of wrapping."""
    if value < 0:
        raise LedgerAbort(AbortKind.INVARIANT_VIOLATED, f"{name} went negative: {value}")
    return value


# -- Pro-rata splits ---------------------------------------------------------

def pro_rata(amount: int, part: int, whole: int) -> int:
    """``amount * part / whole`` floored; ``whole`` must be positive."""
    if whole <= 0:
        raise LedgerAbort(AbortKind.INVARIANT_VIOLATED, "pro-rata over an empty whole")
    return (amount * part) // whole


def signed_pro_rata(amount: int, part: int, whole: int) -> int:
    """Pro-rata share of a signed amount, magnitude truncated toward zero."""
    return sign(amount) * pro_rata(abs_val(amount), part, whole)


def bps_of(amount: int, bps: int) -> int:
    """``amount * bps / 10000`` floored."""
    return (amount * bps) // BPS_SCALE


# -- Valuation ---------------------------------------------------------------

def usd_value(size: int, price: int, token_decimals: int) -> int:
    """USD (1e6) value of *size* base units at *price* (1e8 per whole token)."""
    return (size * price * USD_SCALE) // (PRICE_SCALE * 10**token_decimals)


def one_token_index_value(price: int) -> int:
    """USD value of one whole token expressed in fee-index units."""
    return (price * USD_SCALE * INDEX_PRECISION) // PRICE_SCALE


def index_fee(size: int, index_delta: int, token_decimals: int) -> int:
    """Fee owed by *size* base units over an index move, truncated toward zero."""
    magnitude = (size * abs_val(index_delta)) // (INDEX_PRECISION * 10**token_decimals)
    return sign(index_delta) * magnitude


def index_weight_fee(
    size_global: int, current_index: int, entry_weight: int, token_decimals: int,
) -> int:
    """Aggregate pending fee from ``size_global * index - Σ size * entry_index``."""
    scaled = size_global * current_index - entry_weight
    magnitude = abs_val(scaled) // (INDEX_PRECISION * 10**token_decimals)
    return sign(scaled) * magnitude
