"""Tests for perpledger/core/margin/math.py: fixed-point helpers."""

import pytest

from perpledger.core.errors import AbortKind, LedgerAbort
from perpledger.core.margin.math import (
    INDEX_PRECISION,
    PRICE_SCALE,
    USD_SCALE,
    abs_val,
    bps_of,
    index_fee,
    index_weight_fee,
    one_token_index_value,
    pro_rata,
    require_int,
    require_uint,
    sign,
    signed_pro_rata,
    to_unsigned,
    usd_value,
)


class TestBasics:
    def test_abs_val(self):
        assert abs_val(-7) == 7
        assert abs_val(7) == 7
        assert abs_val(0) == 0

    def test_sign(self):
        assert sign(-3) == -1
        assert sign(0) == 0
        assert sign(9) == 1

    def test_require_uint_rejects_negative(self):
        with pytest.raises(LedgerAbort) as exc:
            require_uint(-1, name="x")
        assert exc.value.kind is AbortKind.INVALID_AMOUNT

    def test_require_uint_rejects_bool_and_float(self):
        for bad in (True, 1.0, "1"):
            with pytest.raises(LedgerAbort):
                require_uint(bad, name="x")

    def test_require_int_accepts_negative(self):
        assert require_int(-5, name="x") == -5

    def test_to_unsigned_fails_instead_of_wrapping(self):
        with pytest.raises(LedgerAbort) as exc:
            to_unsigned(-1, name="pool_amount")
        assert exc.value.kind is AbortKind.INVARIANT_VIOLATED


class TestProRata:
    def test_floor(self):
        assert pro_rata(10, 1, 3) == 3
        assert pro_rata(10, 3, 3) == 10

    def test_signed_truncates_toward_zero(self):
        assert signed_pro_rata(-10, 1, 3) == -3
        assert signed_pro_rata(10, 1, 3) == 3

    def test_empty_whole_aborts(self):
        with pytest.raises(LedgerAbort):
            pro_rata(10, 1, 0)

    def test_bps_of(self):
        assert bps_of(1_000, 250) == 25
        assert bps_of(399, 25) == 0


class TestValuation:
    def test_usd_value_whole_tokens(self):
        # 100 tokens at $100 = $10,000
        assert usd_value(100, 100 * PRICE_SCALE, 0) == 10_000 * USD_SCALE

    def test_usd_value_decimals(self):
        # 1.5 tokens with 8 decimals at $2,000 = $3,000
        assert usd_value(150_000_000, 2_000 * PRICE_SCALE, 8) == 3_000 * USD_SCALE

    def test_one_token_index_value(self):
        assert one_token_index_value(PRICE_SCALE) == USD_SCALE * INDEX_PRECISION

    def test_index_fee_signed(self):
        assert index_fee(100, 3 * INDEX_PRECISION, 0) == 300
        assert index_fee(100, -3 * INDEX_PRECISION, 0) == -300

    def test_index_fee_truncates_toward_zero(self):
        assert index_fee(1, INDEX_PRECISION - 1, 0) == 0
        assert index_fee(1, -(INDEX_PRECISION - 1), 0) == 0

    def test_index_weight_fee_matches_per_position_sum(self):
        # Two positions entered at different index values.
        entries = [(40, 2 * INDEX_PRECISION), (60, 5 * INDEX_PRECISION)]
        current = 9 * INDEX_PRECISION
        weight = sum(size * entry for size, entry in entries)
        per_position = sum(index_fee(size, current - entry, 0) for size, entry in entries)
        assert index_weight_fee(100, current, weight, 0) == per_position
