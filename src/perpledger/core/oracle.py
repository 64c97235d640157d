"""
Price oracle collaborator.

The functional core (``FeedState``, ``is_fresh``, ``within_band``) computes
freshness and deviation decisions deterministically. ``PriceOracle`` is the thin
stateful shell the orchestrator talks to: a reference feed per
(product, instrument). Staleness and deviation limits are read from the
config snapshot of each call.

Prices are 1e8 fixed-point USD per whole token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..config import CallContext
from .errors import AbortKind, LedgerAbort
from .margin.math import BPS_SCALE, require_uint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedState:
    """Last reference price of one feed and when it was published."""

    price: int
    price_timestamp: int

    def __post_init__(self) -> None:
        if self.price <= 0:
            raise ValueError(f"price must be positive: {self.price}")
        if self.price_timestamp < 0:
            raise ValueError(f"price_timestamp must be non-negative: {self.price_timestamp}")


def is_fresh(feed: FeedState, now: int, max_staleness_seconds: int) -> bool:
    """Return True if the feed timestamp is within the max staleness window."""
    if now < 0:
        raise ValueError(f"now must be non-negative: {now}")
    if feed.price_timestamp > now:
        return False
    return (now - feed.price_timestamp) <= max_staleness_seconds


def within_band(price: int, reference: int, max_deviation_bps: int) -> bool:
    return abs(price - reference) * BPS_SCALE <= max_deviation_bps * reference


class PriceOracle:
    def __init__(self) -> None:
        self._feeds: Dict[Tuple[int, int], FeedState] = {}

    def set_reference_price(self, product_id: int, instrument_id: int, price: int, now: int) -> None:
        price = require_uint(price, name="price")
        if price == 0:
            raise LedgerAbort(AbortKind.INVALID_AMOUNT, "reference price must be positive")
        self._feeds[(product_id, instrument_id)] = FeedState(price=price, price_timestamp=now)

    def reference(self, product_id: int, instrument_id: int) -> Optional[FeedState]:
        return self._feeds.get((product_id, instrument_id))

    def validate_price(self, ctx: CallContext, product_id: int, instrument_id: int, price: int) -> int:
        """Return *price* if it is fresh and within band of the reference feed.

        Limits come from ``ctx.config.oracle``, the snapshot of this call.
        """
        limits = ctx.config.oracle
        price = require_uint(price, name="price")
        feed = self._feeds.get((product_id, instrument_id))
        if feed is None or not is_fresh(feed, ctx.now, limits.max_staleness_seconds):
            raise LedgerAbort(
                AbortKind.STALE_PRICE,
                f"no fresh reference price for product {product_id} instrument {instrument_id}",
            )
        if not within_band(price, feed.price, limits.max_deviation_bps):
            logger.warning(
                "price %s outside band of reference %s (instrument %s)",
                price, feed.price, instrument_id,
            )
            raise LedgerAbort(
                AbortKind.PRICE_OUT_OF_BAND,
                f"price {price} deviates more than {limits.max_deviation_bps} bps from {feed.price}",
            )
        return price
