"""Tests for perpledger/core/margin/settlement.py: decrease-and-distribute waterfall."""

import pytest

from perpledger.config import InstrumentConfig
from perpledger.core.errors import AbortKind, LedgerAbort
from perpledger.core.margin.math import PRICE_SCALE, USD_SCALE
from perpledger.core.margin.settlement import compute_decrease, locked_capital, max_profit
from perpledger.core.margin.sides import LONG, SHORT, side_for
from perpledger.core.margin.types import ZERO_POSITION, FeeParams, Position

USD = USD_SCALE
INST = InstrumentConfig(instrument_id=1, side="long", token_decimals=0)


def _position(**kwargs) -> Position:
    base = dict(open_cost=10_000 * USD, token_size=100, collateral=1_000 * USD, max_profit_ratio=90_000)
    base.update(kwargs)
    return Position(**base)


def _decrease(position, *, size, price, side=LONG, fees=FeeParams(), pool_free=10**15, **kwargs):
    return compute_decrease(
        position, inst=INST, side=side, decrease_size=size,
        price=price * PRICE_SCALE, fees=fees, pool_free=pool_free, **kwargs,
    )


class TestSides:
    def test_long_and_short_are_mirrors(self):
        assert LONG.position_pnl(110, 100) == 10
        assert SHORT.position_pnl(110, 100) == -10

    def test_lookup(self):
        assert side_for("short") is SHORT
        with pytest.raises(ValueError):
            side_for("sideways")


class TestLockedCapital:
    def test_locked_capital(self):
        assert locked_capital(1_000 * USD, 5_000) == 500 * USD

    def test_max_profit_of_position(self):
        assert max_profit(_position()) == 9_000 * USD


class TestComputeDecrease:
    def test_full_close_in_loss(self):
        b = _decrease(_position(), size=100, price=96)
        assert b.realized_pnl == -400 * USD
        assert b.collateral_to_lp == 400 * USD
        assert b.collateral_to_user == 600 * USD
        assert b.position == ZERO_POSITION

    def test_short_gains_when_price_falls(self):
        b = _decrease(_position(), size=100, price=90, side=SHORT)
        assert b.realized_pnl == 1_000 * USD
        assert b.lp_to_user == 1_000 * USD
        assert b.collateral_to_user == 1_000 * USD

    def test_loss_beyond_collateral_is_capped(self):
        b = _decrease(_position(), size=100, price=80)
        assert b.collateral_to_lp == 1_000 * USD
        assert b.collateral_to_user == 0

    def test_partial_slices_fees_pro_rata(self):
        p = _position(cumulative_borrowing_fee=30, cumulative_funding_fee=-7, cumulative_team_fee=10)
        b = _decrease(p, size=50, price=100)
        assert b.position.cumulative_borrowing_fee == 15
        assert b.position.cumulative_funding_fee == -4
        assert b.position.cumulative_team_fee == 5
        assert b.position.collateral == 500 * USD

    def test_team_fee_from_gain_when_collateral_short(self):
        # Tiny collateral slice: the remainder of the team fee comes out of the gain.
        p = _position(collateral=1, max_profit_ratio=10_000)
        b = _decrease(p, size=100, price=110, fees=FeeParams(tx_fee_bps=10))
        assert b.collateral_to_team == 1
        assert b.lp_to_team == 11 * USD - 1
        assert b.lp_to_user == 1_000 * USD - (11 * USD - 1)

    def test_pool_owed_fee_truncated_to_free_capital(self):
        p = _position(cumulative_funding_fee=-500 * USD, max_profit_ratio=1_000)
        b = _decrease(p, size=100, price=100, pool_free=50 * USD)
        assert b.lp_fee_shortfall == 350 * USD
        assert b.lp_to_user == 150 * USD
        assert b.collateral_to_user == 1_000 * USD

    def test_profit_is_paid_before_pool_owed_fee(self):
        p = _position(cumulative_funding_fee=-1_000 * USD)
        b = _decrease(p, size=100, price=185, pool_free=0)
        assert b.realized_pnl == 8_500 * USD
        assert b.lp_fee_shortfall == 500 * USD
        assert b.lp_to_user + b.lp_to_team == b.unlocked_amount == 9_000 * USD

    def test_no_pool_owed_fee_when_profit_uses_all_capital(self):
        p = _position(cumulative_funding_fee=-200 * USD, max_profit_ratio=5_000)
        b = _decrease(p, size=100, price=105, pool_free=0)
        assert b.lp_fee_shortfall == 200 * USD
        assert b.lp_to_user == 500 * USD

    def test_pnl_cap(self):
        p = _position(max_profit_ratio=5_000)
        b = _decrease(p, size=100, price=106, pnl_cap=500 * USD)
        assert b.realized_pnl == 500 * USD
        assert b.lp_to_user == 500 * USD

    def test_liquidation_fee_only_when_liquidating(self):
        fees = FeeParams(liquidation_fee_bps=50)
        assert _decrease(_position(), size=100, price=96, fees=fees).collateral_to_team == 0
        liq = _decrease(_position(), size=100, price=96, fees=fees, liquidation=True)
        assert liq.collateral_to_team == 48 * USD

    @pytest.mark.parametrize("size", [0, 101])
    def test_size_out_of_range(self, size):
        with pytest.raises(LedgerAbort) as exc:
            _decrease(_position(), size=size, price=100)
        assert exc.value.kind is AbortKind.INVALID_AMOUNT
