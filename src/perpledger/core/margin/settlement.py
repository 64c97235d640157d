"""Decrease-and-distribute: the settlement algorithm shared by voluntary
decreases, liquidations and max-profit closures.

Given an (already fee-accrued) position and a decrease size, compute:

1. the pro-rata slice of collateral, cost basis and each cumulative fee;
2. the P&L of the slice (optionally capped, for max-profit closure);
3. the net fee owed to the pool, where a pool-owed amount is capped at the
   capital left once the pool has paid the profit (the truncated remainder is
   reported, not carried);
4. the distribution waterfall across user, pool and team;
5. the scaled-down position.

All outputs are non-negative directed amounts except ``realized_pnl``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from ...config import InstrumentConfig
from ..errors import AbortKind, LedgerAbort
from .math import BPS_SCALE, bps_of, pro_rata, signed_pro_rata, usd_value
from .sides import SideStrategy
from .types import ZERO_POSITION, FeeParams, Position


@dataclass(frozen=True)
class DecreaseBreakdown:
    position: Position
    moved_collateral: int
    collateral_to_user: int
    collateral_to_lp: int
    collateral_to_team: int
    lp_to_user: int
    lp_to_team: int
    realized_pnl: int
    unlocked_amount: int
    lp_fee_shortfall: int


def locked_capital(collateral: int, max_profit_ratio: int) -> int:
    """Pool capital reserved against a position: its maximum payable profit."""
    return (collateral * max_profit_ratio) // BPS_SCALE


def max_profit(position: Position) -> int:
    return locked_capital(position.collateral, position.max_profit_ratio)


def compute_decrease(
    position: Position,
    *,
    inst: InstrumentConfig,
    side: SideStrategy,
    decrease_size: int,
    price: int,
    fees: FeeParams,
    pool_free: int,
    pnl_cap: int | None = None,
    liquidation: bool = False,
) -> DecreaseBreakdown:
    size = position.token_size
    if not (0 < decrease_size <= size):
        raise LedgerAbort(
            AbortKind.INVALID_AMOUNT,
            f"decrease size {decrease_size} outside (0, {size}]",
        )
    full_close = decrease_size == size

    # Pro-rata slices (floor on unsigned, truncation toward zero on signed).
    moved = position.collateral if full_close else pro_rata(position.collateral, decrease_size, size)
    cost_part = pro_rata(position.open_cost, decrease_size, size)
    borrowing_part = pro_rata(position.cumulative_borrowing_fee, decrease_size, size)
    team_part = pro_rata(position.cumulative_team_fee, decrease_size, size)
    funding_part = signed_pro_rata(position.cumulative_funding_fee, decrease_size, size)

    value = usd_value(decrease_size, price, inst.token_decimals)
    pnl = side.position_pnl(value, cost_part)
    if pnl_cap is not None and pnl > pnl_cap:
        pnl = pnl_cap

    team_fee = team_part + bps_of(value, fees.tx_fee_bps)
    if liquidation:
        team_fee += bps_of(value, fees.liquidation_fee_bps)
    fee_to_lp = borrowing_part + funding_part + bps_of(value, fees.price_impact_fee_bps)

    remaining_collateral = position.collateral - moved
    unlocked = max_profit(position) - locked_capital(remaining_collateral, position.max_profit_ratio)

    # The pool pays profit first; a pool-owed fee gets only what capital is
    # left after that, and the excess is forgiven.
    shortfall = 0
    fee_capacity = max(0, pool_free + unlocked - max(pnl, 0))
    if fee_to_lp < 0 and -fee_to_lp > fee_capacity:
        shortfall = -fee_to_lp - fee_capacity
        fee_to_lp = -fee_capacity

    user_delta = pnl - fee_to_lp
    collateral_to_lp = lp_to_user = lp_to_team = 0
    if user_delta >= 0:
        gain = user_delta
        collateral_to_team = min(team_fee, moved)
        lp_to_team = min(team_fee - collateral_to_team, gain)
        collateral_to_user = moved - collateral_to_team
        lp_to_user = gain - lp_to_team
    else:
        loss = -user_delta
        collateral_to_lp = min(loss, moved)
        leftover = moved - collateral_to_lp
        collateral_to_team = min(team_fee, leftover)
        collateral_to_user = leftover - collateral_to_team

    if full_close:
        new_position = ZERO_POSITION
    else:
        new_position = replace(
            position,
            token_size=size - decrease_size,
            open_cost=position.open_cost - cost_part,
            collateral=remaining_collateral,
            cumulative_borrowing_fee=position.cumulative_borrowing_fee - borrowing_part,
            cumulative_team_fee=position.cumulative_team_fee - team_part,
            cumulative_funding_fee=position.cumulative_funding_fee - funding_part,
        )

    return DecreaseBreakdown(
        position=new_position,
        moved_collateral=moved,
        collateral_to_user=collateral_to_user,
        collateral_to_lp=collateral_to_lp,
        collateral_to_team=collateral_to_team,
        lp_to_user=lp_to_user,
        lp_to_team=lp_to_team,
        realized_pnl=pnl,
        unlocked_amount=unlocked,
        lp_fee_shortfall=shortfall,
    )
