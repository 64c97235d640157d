"""Tests for perpledger/core/margin/invariants.py: position and aggregate checks."""

from perpledger.core.margin.invariants import (
    INVARIANT_REGISTRY,
    aggregate_of,
    check_aggregates,
    check_position,
)
from perpledger.core.margin.types import InstrumentState, Position


class TestPositionInvariants:
    def test_zero_record_passes(self):
        assert check_position(Position()) == []

    def test_open_position_passes(self):
        p = Position(token_size=10, collateral=5, open_cost=100, max_profit_ratio=9_000)
        assert check_position(p) == []

    def test_open_without_collateral(self):
        assert "inv_open_has_collateral" in check_position(Position(token_size=10, open_cost=100))

    def test_flat_with_collateral(self):
        assert "inv_flat_has_no_collateral" in check_position(Position(collateral=5))

    def test_flat_with_fees(self):
        assert "inv_flat_has_no_fees" in check_position(Position(cumulative_funding_fee=-1))

    def test_negative_unsigned_field(self):
        p = Position(token_size=10, collateral=5, cumulative_borrowing_fee=-1)
        assert check_position(p) == ["inv_unsigned_fields"]

    def test_negative_funding_is_allowed(self):
        p = Position(token_size=10, collateral=5, cumulative_funding_fee=-50)
        assert check_position(p) == []

    def test_registry_size(self):
        assert len(INVARIANT_REGISTRY) == 5


class TestAggregates:
    def test_scan(self):
        positions = [
            Position(token_size=10, open_cost=100, collateral=1, cumulative_funding_fee=-4, entry_borrowing_index=3),
            Position(token_size=5, open_cost=60, collateral=1, cumulative_borrowing_fee=2, entry_borrowing_index=7),
        ]
        agg = aggregate_of(positions)
        assert agg.size_global == 15
        assert agg.cost_global == 160
        assert agg.borrowing_fee_global == 2
        assert agg.funding_fee_global == -4
        assert agg.borrowing_entry_weight == 10 * 3 + 5 * 7

    def test_mismatch_is_named(self):
        positions = [Position(token_size=10, open_cost=100, collateral=1)]
        bad = InstrumentState(size_global=11, cost_global=100)
        assert check_aggregates(positions, bad) == ["size_global"]
