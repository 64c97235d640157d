"""Long/short P&L strategies.

The side of an instrument is configuration, not a subclass: both sides are
instances of ``SideStrategy`` that differ only in the sign applied to
``value - cost``.
"""

from __future__ import annotations

from dataclasses import dataclass

from .math import usd_value


@dataclass(frozen=True)
class SideStrategy:
    name: str
    direction: int  # +1 long, -1 short

    def position_pnl(self, value: int, cost: int) -> int:
        """Signed P&L of a slot whose current USD value is *value* and cost basis *cost*."""
        return self.direction * (value - cost)

    def unrealized_pnl(self, size: int, cost: int, price: int, token_decimals: int) -> int:
        """Signed P&L of *size* base units opened at total cost *cost*, marked at *price*."""
        return self.position_pnl(usd_value(size, price, token_decimals), cost)


LONG = SideStrategy(name="long", direction=1)
SHORT = SideStrategy(name="short", direction=-1)

_BY_NAME = {LONG.name: LONG, SHORT.name: SHORT}


def side_for(name: str) -> SideStrategy:
    try:
        return _BY_NAME[name]
    except KeyError:
        raise ValueError(f"unknown side: {name!r}") from None
