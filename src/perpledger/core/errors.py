"""Exception types for the margin engine and liquidity pool ledger.

Two tiers are raised from this package:

- ``LedgerAbort``: a kind-tagged hard abort. The enclosing operation is rejected
  and no state change survives it.
- ``FatalInvariantError``: a logic defect (e.g. an open position with zero
  collateral). It is deliberately *not* a ``LedgerAbort`` so that handlers which
  translate aborts into rejections never swallow it.

Soft declines are not exceptions; they are ``SettlementResult(success=False)``.
"""

from __future__ import annotations

from enum import Enum, unique


@unique
class AbortKind(Enum):
    INVALID_INSTRUMENT = "invalid_instrument"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_CONFIG = "invalid_config"
    FEE_RATE_EXCEEDS_CAP = "fee_rate_exceeds_cap"
    FEE_UPDATE_TOO_SOON = "fee_update_too_soon"
    INVARIANT_VIOLATED = "invariant_violated"
    INSUFFICIENT_POOL_LIQUIDITY = "insufficient_pool_liquidity"
    INSUFFICIENT_COLLATERAL = "insufficient_collateral"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    STALE_PRICE = "stale_price"
    PRICE_OUT_OF_BAND = "price_out_of_band"
    EPOCH_LOCKED = "epoch_locked"
    EPOCH_NOT_ENDED = "epoch_not_ended"
    POOL_INSOLVENT = "pool_insolvent"
    NOTHING_TO_CLAIM = "nothing_to_claim"
    WATERMARK_MISMATCH = "watermark_mismatch"
    UNAUTHORIZED = "unauthorized"
    NOT_LIQUIDATABLE = "not_liquidatable"
    UNSUPPORTED_SCHEMA = "unsupported_schema"


class LedgerAbort(Exception):
    """Raised when an operation must be rejected in full."""

    def __init__(self, kind: AbortKind, message: str = "") -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}" if message else kind.value)


class FatalInvariantError(Exception):
    """Raised when a post-state violates an invariant that only a bug can break."""

    def __init__(self, violations: list[str]) -> None:
        self.violations = violations
        super().__init__(f"invariant violations: {', '.join(violations)}")
