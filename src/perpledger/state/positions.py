"""
Position table keyed by the composite (user_id, instrument_id) tuple.

Unlike the balance tables, records are never removed: a liquidated or closed
position persists as the zero record.
"""

from __future__ import annotations

from typing import Dict, Iterator, Tuple

from ..core.margin.types import ZERO_POSITION, Position

UserId = str
InstrumentId = int
PositionKey = Tuple[UserId, InstrumentId]


class PositionTable:
    def __init__(self) -> None:
        self._positions: Dict[PositionKey, Position] = {}

    def get(self, user_id: UserId, instrument_id: InstrumentId) -> Position:
        """Position for (user, instrument); the zero record if never opened."""
        return self._positions.get((user_id, instrument_id), ZERO_POSITION)

    def put(self, user_id: UserId, instrument_id: InstrumentId, position: Position) -> None:
        if not isinstance(position, Position):
            raise TypeError("position must be a Position")
        self._positions[(user_id, instrument_id)] = position

    def for_instrument(self, instrument_id: InstrumentId) -> Iterator[Tuple[UserId, Position]]:
        for (user_id, iid), position in self._positions.items():
            if iid == instrument_id:
                yield user_id, position

    def items(self) -> Iterator[Tuple[PositionKey, Position]]:
        return iter(list(self._positions.items()))

    def copy(self) -> "PositionTable":
        clone = PositionTable()
        clone._positions = dict(self._positions)
        return clone

    def __len__(self) -> int:
        return len(self._positions)

    def __repr__(self) -> str:
        return f"PositionTable({len(self._positions)} entries)"
