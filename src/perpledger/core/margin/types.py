"""Data types for the margin engine.

All types are frozen dataclasses (immutable); the engine produces new records
with ``dataclasses.replace()`` and commits them only once a call has fully
succeeded.

Units/conventions:
- USD amounts are 1e6 fixed-point, prices 1e8 per whole token.
- ``*_bps`` rates are basis points (1/10_000).
- ``*_index`` / ``*_per_token`` values are USD per whole token scaled by
  ``USD_SCALE * INDEX_PRECISION``.
- ``cumulative_funding_fee`` and ``funding_*`` values are signed: positive means
  the holder owes the pool.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Dict

from .math import BPS_SCALE


@dataclass(frozen=True)
class Position:
    """Margin record for one (user, instrument)."""

    open_cost: int = 0
    token_size: int = 0
    collateral: int = 0
    entry_funding_index: int = 0
    cumulative_funding_fee: int = 0
    entry_borrowing_index: int = 0
    cumulative_borrowing_fee: int = 0
    max_profit_ratio: int = 0
    cumulative_team_fee: int = 0

    @property
    def is_open(self) -> bool:
        return self.token_size > 0


ZERO_POSITION = Position()


@dataclass(frozen=True)
class InstrumentState:
    """Per-instrument aggregates, maintained by deltas on every position mutation."""

    size_global: int = 0
    cost_global: int = 0
    borrowing_fee_global: int = 0
    funding_fee_global: int = 0
    # Σ token_size * entry_index; values pending accrual without a scan.
    borrowing_entry_weight: int = 0
    funding_entry_weight: int = 0


@dataclass(frozen=True)
class FeeIndexState:
    """Running funding/borrowing indices of one instrument."""

    borrowing_fee_per_token: int = 0
    funding_fee_per_token: int = 0
    borrowing_rate: int = 0       # index units per second, >= 0
    funding_rate: int = 0         # index units per second, signed
    last_accrual_time: int = 0
    last_borrowing_update: int = 0
    last_funding_update: int = 0


@dataclass(frozen=True)
class FeeParams:
    """Per-call fee descriptor supplied by the order-execution layer."""

    tx_fee_bps: int = 0
    price_impact_fee_bps: int = 0
    liquidation_fee_bps: int = 0

    def __post_init__(self) -> None:
        for name in ("tx_fee_bps", "price_impact_fee_bps", "liquidation_fee_bps"):
            v = getattr(self, name)
            if not isinstance(v, int) or isinstance(v, bool):
                raise TypeError(f"{name} must be an int")
            if not (0 <= v <= BPS_SCALE):
                raise ValueError(f"{name} must be in [0, {BPS_SCALE}]: {v}")


@unique
class Operation(Enum):
    INCREASE_POSITION = "increase_position"
    DECREASE_POSITION = "decrease_position"
    INCREASE_COLLATERAL = "increase_collateral"
    DECREASE_COLLATERAL = "decrease_collateral"
    LIQUIDATE_POSITION = "liquidate_position"


@unique
class Outcome(Enum):
    APPLIED = "applied"
    DECLINED = "declined"
    LIQUIDATED = "liquidated"
    MAX_PROFIT_CLOSED = "max_profit_closed"


@dataclass(frozen=True)
class SettlementResult:
    """Advisory fund movements produced by one engine call.

    Every transfer field is a non-negative amount moved along one directed edge
    between the four buckets (user balance, position collateral, liquidity pool,
    team). The engine never moves funds itself.
    """

    label: str
    operation: Operation
    instrument_id: int
    user_id: str
    outcome: Outcome
    position: Position
    user_to_collateral: int = 0
    user_to_lp: int = 0
    user_to_team: int = 0
    collateral_to_user: int = 0
    collateral_to_lp: int = 0
    collateral_to_team: int = 0
    lp_to_user: int = 0
    lp_to_team: int = 0
    locked_amount: int = 0
    unlocked_amount: int = 0
    size_delta: int = 0
    realized_pnl: int = 0
    lp_fee_shortfall: int = 0
    decline_reason: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome is not Outcome.DECLINED

    @property
    def forced_close(self) -> bool:
        return self.outcome in (Outcome.LIQUIDATED, Outcome.MAX_PROFIT_CLOSED)

    def net_deltas(self) -> Dict[str, int]:
        """Signed change of each bucket; the values always sum to zero."""
        return {
            "user": self.collateral_to_user + self.lp_to_user
            - self.user_to_collateral - self.user_to_lp - self.user_to_team,
            "collateral": self.user_to_collateral
            - self.collateral_to_user - self.collateral_to_lp - self.collateral_to_team,
            "lp": self.user_to_lp + self.collateral_to_lp - self.lp_to_user - self.lp_to_team,
            "team": self.user_to_team + self.collateral_to_team + self.lp_to_team,
        }
