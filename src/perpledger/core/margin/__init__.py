"""`margin`: per-position margin accounting.

- `fee_index`: funding/borrowing index accrual and rate updates,
- `settlement`: the decrease-and-distribute algorithm,
- `engine`: `MarginEngine`, the stateful entry points,
- `invariants`: position and aggregate checks.

Integer-only throughout; records are frozen dataclasses.
"""

from .sides import LONG, SHORT, SideStrategy, side_for
from .types import (
    FeeIndexState,
    FeeParams,
    InstrumentState,
    Operation,
    Outcome,
    Position,
    SettlementResult,
    ZERO_POSITION,
)

__all__ = [
    "LONG",
    "SHORT",
    "SideStrategy",
    "side_for",
    "FeeIndexState",
    "FeeParams",
    "InstrumentState",
    "Operation",
    "Outcome",
    "Position",
    "SettlementResult",
    "ZERO_POSITION",
]
