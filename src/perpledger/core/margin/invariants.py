"""Invariant checkers for margin positions and instrument aggregates.

Each ``inv_*`` function returns True when the invariant holds, and
``check_position()`` returns the list of violated invariant IDs (empty = all
pass). The engine runs ``check_position()`` after every mutation and treats any
violation as fatal.

``check_aggregates()`` is the audit counterpart of the incremental aggregate
maintenance: it recomputes every aggregate by a full scan. The engine never
calls it on the hot path.
"""

from __future__ import annotations

from typing import Callable, Iterable

from .types import InstrumentState, Position


def inv_flat_has_no_collateral(p: Position) -> bool:
    return p.token_size != 0 or p.collateral == 0


def inv_open_has_collateral(p: Position) -> bool:
    return p.token_size == 0 or p.collateral > 0


def inv_flat_has_no_cost(p: Position) -> bool:
    return p.token_size != 0 or p.open_cost == 0


def inv_flat_has_no_fees(p: Position) -> bool:
    if p.token_size != 0:
        return True
    return p.cumulative_borrowing_fee == 0 and p.cumulative_funding_fee == 0 and p.cumulative_team_fee == 0


def inv_unsigned_fields(p: Position) -> bool:
    return min(
        p.open_cost,
        p.token_size,
        p.collateral,
        p.cumulative_borrowing_fee,
        p.cumulative_team_fee,
        p.max_profit_ratio,
    ) >= 0


INVARIANT_REGISTRY: dict[str, Callable[[Position], bool]] = {
    "inv_flat_has_no_collateral": inv_flat_has_no_collateral,
    "inv_open_has_collateral": inv_open_has_collateral,
    "inv_flat_has_no_cost": inv_flat_has_no_cost,
    "inv_flat_has_no_fees": inv_flat_has_no_fees,
    "inv_unsigned_fields": inv_unsigned_fields,
}


def check_position(position: Position) -> list[str]:
    """Return list of violated invariant IDs (empty = all pass)."""
    return [
        inv_id
        for inv_id, check_fn in INVARIANT_REGISTRY.items()
        if not check_fn(position)
    ]


def aggregate_of(positions: Iterable[Position]) -> InstrumentState:
    """Recompute instrument aggregates by scanning *positions*."""
    size = cost = borrowing = funding = b_weight = f_weight = 0
    for p in positions:
        size += p.token_size
        cost += p.open_cost
        borrowing += p.cumulative_borrowing_fee
        funding += p.cumulative_funding_fee
        b_weight += p.token_size * p.entry_borrowing_index
        f_weight += p.token_size * p.entry_funding_index
    return InstrumentState(
        size_global=size,
        cost_global=cost,
        borrowing_fee_global=borrowing,
        funding_fee_global=funding,
        borrowing_entry_weight=b_weight,
        funding_entry_weight=f_weight,
    )


def check_aggregates(positions: Iterable[Position], aggregate: InstrumentState) -> list[str]:
    """Names of aggregate fields that disagree with a full scan."""
    expected = aggregate_of(positions)
    return [
        name
        for name in InstrumentState.__dataclass_fields__
        if getattr(expected, name) != getattr(aggregate, name)
    ]
