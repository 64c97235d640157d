"""Funding and borrowing fee indices.

Each instrument carries two running indices that grow linearly with time at the
current per-second rates:

- ``borrowing_fee_per_token``: unsigned and monotonic (rates are never negative);
- ``funding_fee_per_token``: signed; an increase means holders pay the pool.

Positions store an entry snapshot of each index. The fee owed since the snapshot
is ``size * (index - entry) / (INDEX_PRECISION * 10**token_decimals)``. Accrual
is pure: nothing here touches a position until the engine asks for it.

Rate updates are rate-limited in time and capped relative to the USD value of
one token at the supplied price. Both checks are hard aborts.
"""

from __future__ import annotations

from dataclasses import replace

from ...config import InstrumentConfig
from ..errors import AbortKind, LedgerAbort
from .math import (
    FEE_RATE_PRECISION,
    abs_val,
    bps_of,
    index_fee,
    one_token_index_value,
    require_int,
    require_uint,
)
from .types import FeeIndexState, Position


def accrue(state: FeeIndexState, now: int) -> FeeIndexState:
    """Roll both indices forward to *now* at the current rates."""
    if now < state.last_accrual_time:
        raise LedgerAbort(
            AbortKind.INVARIANT_VIOLATED,
            f"clock moved backwards: {now} < {state.last_accrual_time}",
        )
    elapsed = now - state.last_accrual_time
    if elapsed == 0:
        return state
    return replace(
        state,
        borrowing_fee_per_token=state.borrowing_fee_per_token + state.borrowing_rate * elapsed,
        funding_fee_per_token=state.funding_fee_per_token + state.funding_rate * elapsed,
        last_accrual_time=now,
    )


def max_rate(price: int, max_fee_per_second: int) -> int:
    """Largest admissible per-second rate at *price*, in index units."""
    return (one_token_index_value(price) * max_fee_per_second) // FEE_RATE_PRECISION


def _check_interval(last_update: int, interval: int, now: int, *, what: str) -> None:
    # last_update == 0 means the rate has never been set.
    if last_update and now < last_update + interval:
        raise LedgerAbort(
            AbortKind.FEE_UPDATE_TOO_SOON,
            f"{what} update at {now} before {last_update + interval}",
        )


def update_borrowing_rate(
    state: FeeIndexState, inst: InstrumentConfig, new_rate: int, price: int, now: int,
) -> FeeIndexState:
    new_rate = require_uint(new_rate, name="borrowing_rate")
    price = require_uint(price, name="price")
    _check_interval(state.last_borrowing_update, inst.borrowing_fee_update_interval, now, what="borrowing fee")

    cap = max_rate(price, inst.max_borrowing_fee_per_second)
    if new_rate > cap:
        raise LedgerAbort(
            AbortKind.FEE_RATE_EXCEEDS_CAP,
            f"borrowing rate {new_rate} exceeds cap {cap} for instrument {inst.instrument_id}",
        )

    accrued = accrue(state, now)
    return replace(accrued, borrowing_rate=new_rate, last_borrowing_update=now)


def update_funding_rate(
    state: FeeIndexState, inst: InstrumentConfig, new_rate: int, price: int, now: int,
) -> FeeIndexState:
    new_rate = require_int(new_rate, name="funding_rate")
    price = require_uint(price, name="price")
    _check_interval(state.last_funding_update, inst.funding_fee_update_interval, now, what="funding fee")

    cap = max_rate(price, inst.max_funding_fee_per_second)
    if abs_val(new_rate) > cap:
        raise LedgerAbort(
            AbortKind.FEE_RATE_EXCEEDS_CAP,
            f"funding rate {new_rate} exceeds cap {cap} for instrument {inst.instrument_id}",
        )

    accrued = accrue(state, now)
    return replace(accrued, funding_rate=new_rate, last_funding_update=now)


def pending_fees(
    position: Position, state: FeeIndexState, inst: InstrumentConfig,
) -> tuple[int, int, int]:
    """(borrowing-to-pool, team, funding) owed since the position's entry snapshot."""
    if position.token_size == 0:
        return 0, 0, 0
    borrowing = index_fee(
        position.token_size,
        state.borrowing_fee_per_token - position.entry_borrowing_index,
        inst.token_decimals,
    )
    team = bps_of(borrowing, inst.team_fee_share_bps)
    funding = index_fee(
        position.token_size,
        state.funding_fee_per_token - position.entry_funding_index,
        inst.token_decimals,
    )
    return borrowing - team, team, funding


def accrue_position(position: Position, state: FeeIndexState, inst: InstrumentConfig) -> Position:
    """Book pending fees into the position and advance its entry snapshots."""
    borrowing, team, funding = pending_fees(position, state, inst)
    return replace(
        position,
        cumulative_borrowing_fee=position.cumulative_borrowing_fee + borrowing,
        cumulative_team_fee=position.cumulative_team_fee + team,
        cumulative_funding_fee=position.cumulative_funding_fee + funding,
        entry_borrowing_index=state.borrowing_fee_per_token,
        entry_funding_index=state.funding_fee_per_token,
    )
