"""Tests for perpledger/core/margin/fee_index.py: index accrual and rate updates."""

import pytest

from perpledger.config import InstrumentConfig
from perpledger.core.errors import AbortKind, LedgerAbort
from perpledger.core.margin.fee_index import (
    accrue,
    accrue_position,
    max_rate,
    pending_fees,
    update_borrowing_rate,
    update_funding_rate,
)
from perpledger.core.margin.math import INDEX_PRECISION, PRICE_SCALE
from perpledger.core.margin.types import FeeIndexState, Position

PRICE = 100 * PRICE_SCALE
# Cap at $100 with the default 10_000 / 1e10 per-second limit.
CAP = 10**14


def _inst(**kwargs) -> InstrumentConfig:
    return InstrumentConfig(instrument_id=1, side="long", token_decimals=0, **kwargs)


class TestAccrue:
    def test_linear_growth(self):
        s = FeeIndexState(borrowing_rate=5, funding_rate=-2, last_accrual_time=100)
        out = accrue(s, 110)
        assert out.borrowing_fee_per_token == 50
        assert out.funding_fee_per_token == -20
        assert out.last_accrual_time == 110

    def test_zero_elapsed_is_identity(self):
        s = FeeIndexState(borrowing_rate=5, last_accrual_time=100)
        assert accrue(s, 100) is s

    def test_clock_backwards_aborts(self):
        s = FeeIndexState(last_accrual_time=100)
        with pytest.raises(LedgerAbort) as exc:
            accrue(s, 99)
        assert exc.value.kind is AbortKind.INVARIANT_VIOLATED


class TestBorrowingRateUpdate:
    def test_max_rate(self):
        assert max_rate(PRICE, 10_000) == CAP

    def test_first_update_has_no_interval(self):
        out = update_borrowing_rate(FeeIndexState(), _inst(), CAP, PRICE, now=1_000)
        assert out.borrowing_rate == CAP
        assert out.last_borrowing_update == 1_000

    def test_too_soon(self):
        s = update_borrowing_rate(FeeIndexState(), _inst(), 1, PRICE, now=1_000)
        with pytest.raises(LedgerAbort) as exc:
            update_borrowing_rate(s, _inst(), 2, PRICE, now=1_000 + 3_599)
        assert exc.value.kind is AbortKind.FEE_UPDATE_TOO_SOON

    def test_after_interval_but_above_cap(self):
        s = update_borrowing_rate(FeeIndexState(), _inst(), 1, PRICE, now=1_000)
        with pytest.raises(LedgerAbort) as exc:
            update_borrowing_rate(s, _inst(), CAP + 1, PRICE, now=1_000 + 3_600)
        assert exc.value.kind is AbortKind.FEE_RATE_EXCEEDS_CAP

    def test_accrues_at_old_rate_before_switching(self):
        s = update_borrowing_rate(FeeIndexState(), _inst(), 7, PRICE, now=1_000)
        out = update_borrowing_rate(s, _inst(), 9, PRICE, now=4_600)
        assert out.borrowing_fee_per_token == 7 * 3_600
        assert out.borrowing_rate == 9

    def test_negative_borrowing_rate_rejected(self):
        with pytest.raises(LedgerAbort) as exc:
            update_borrowing_rate(FeeIndexState(), _inst(), -1, PRICE, now=1_000)
        assert exc.value.kind is AbortKind.INVALID_AMOUNT


class TestFundingRateUpdate:
    def test_negative_within_cap(self):
        out = update_funding_rate(FeeIndexState(), _inst(), -CAP, PRICE, now=1_000)
        assert out.funding_rate == -CAP

    def test_magnitude_above_cap(self):
        with pytest.raises(LedgerAbort) as exc:
            update_funding_rate(FeeIndexState(), _inst(), -(CAP + 1), PRICE, now=1_000)
        assert exc.value.kind is AbortKind.FEE_RATE_EXCEEDS_CAP

    def test_interval_is_per_rate(self):
        s = update_borrowing_rate(FeeIndexState(), _inst(), 1, PRICE, now=1_000)
        out = update_funding_rate(s, _inst(), 1, PRICE, now=1_001)
        assert out.funding_rate == 1


class TestPositionAccrual:
    def test_flat_position_owes_nothing(self):
        s = FeeIndexState(borrowing_fee_per_token=INDEX_PRECISION)
        assert pending_fees(Position(), s, _inst()) == (0, 0, 0)

    def test_team_share_of_borrowing(self):
        p = Position(token_size=100, collateral=1, open_cost=1)
        s = FeeIndexState(borrowing_fee_per_token=10 * INDEX_PRECISION, funding_fee_per_token=-INDEX_PRECISION)
        borrowing, team, funding = pending_fees(p, s, _inst(team_fee_share_bps=1_000))
        assert (borrowing, team, funding) == (900, 100, -100)

    def test_accrue_position_books_and_advances(self):
        p = Position(token_size=100, collateral=1, open_cost=1, entry_borrowing_index=INDEX_PRECISION)
        s = FeeIndexState(borrowing_fee_per_token=3 * INDEX_PRECISION, funding_fee_per_token=2 * INDEX_PRECISION)
        out = accrue_position(p, s, _inst())
        assert out.cumulative_borrowing_fee == 200
        assert out.cumulative_funding_fee == 200
        assert out.entry_borrowing_index == s.borrowing_fee_per_token
        assert out.entry_funding_index == s.funding_fee_per_token
        # A second accrual at the same index is a no-op.
        assert accrue_position(out, s, _inst()) == out
