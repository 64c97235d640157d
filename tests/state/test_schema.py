"""Tests for perpledger/state/schema.py: snapshot commitments, restore and migration."""

import copy

import pytest

from perpledger.config import CallContext, EngineConfig, InstrumentConfig, PoolConfig
from perpledger.core.errors import AbortKind, LedgerAbort
from perpledger.core.margin.engine import MarginEngine
from perpledger.core.margin.math import PRICE_SCALE
from perpledger.core.margin.types import FeeParams, Outcome
from perpledger.core.pool import LiquidityPoolLedger
from perpledger.state.balances import BalanceLedger
from perpledger.state.canonical import canonical_json_bytes, commitment, domain_sep_bytes
from perpledger.state.schema import SCHEMA_VERSION, migrate, restore_ledger, snapshot_ledger

CONFIG = EngineConfig(
    instruments={
        1: InstrumentConfig(instrument_id=1, side="long", token_decimals=0),
        2: InstrumentConfig(instrument_id=2, side="short", token_decimals=0),
    },
    pool=PoolConfig(epoch_duration=1_000, request_time_delay=100),
)


def _fresh():
    balances = BalanceLedger()
    pool = LiquidityPoolLedger(balances)
    return MarginEngine(pool), pool, balances


def _populated():
    engine, pool, balances = _fresh()
    ctx = CallContext(caller="orchestrator", now=0, config=CONFIG)
    pool.move_to_next_epoch(ctx, 0)
    balances.increase_balance("USD", "lp_pool", 10**12)
    pool.increase_liquidity(ctx, 10**12)
    balances.increase_balance("USD", "alice", 5_000_000)
    pool.lp_provide_liquidity(CallContext(caller="alice", now=10, config=CONFIG), "alice", 5_000_000)

    ctx = CallContext(caller="orchestrator", now=500, config=CONFIG)
    engine.update_funding_fee(ctx, 2, -7, 100 * PRICE_SCALE)
    r = engine.increase_position(ctx, 1, "alice", 100 * PRICE_SCALE, 10, 500_000_000, FeeParams(), "a")
    pool.lock_liquidity(ctx, 1, 1, r.locked_amount)
    engine.increase_position(ctx, 2, "bob", 100 * PRICE_SCALE, 3, 200_000_000, FeeParams(), "b")
    return engine, pool, balances


class TestCanonical:
    def test_sorted_compact(self):
        assert canonical_json_bytes({"b": 1, "a": [2, 3]}) == b'{"a":[2,3],"b":1}'

    def test_floats_rejected(self):
        with pytest.raises(TypeError):
            canonical_json_bytes({"a": 1.5})

    def test_domain_separator(self):
        assert domain_sep_bytes("ledger_snapshot", 2) == b"perpledger:ledger_snapshot:v2\x00"

    def test_only_snapshot_types_encode(self):
        assert canonical_json_bytes({"a": None, "b": True, "c": -1}) == b'{"a":null,"b":true,"c":-1}'
        with pytest.raises(TypeError):
            canonical_json_bytes({"a": {1, 2}})
        with pytest.raises(TypeError):
            canonical_json_bytes({1: "x"})

    def test_commitment_is_domain_separated(self):
        assert commitment("ledger_snapshot", 2, {}) != commitment("ledger_snapshot", 1, {})
        with pytest.raises(ValueError):
            domain_sep_bytes("a:b")


class TestSnapshot:
    def test_commitment_is_deterministic(self):
        engine, pool, balances = _populated()
        a = snapshot_ledger(engine, pool, balances)
        b = snapshot_ledger(engine, pool, balances)
        assert a.version == SCHEMA_VERSION
        assert a.commitment_hex() == b.commitment_hex()
        assert a.commitment_hex().startswith("0x")

    def test_commitment_tracks_state(self):
        engine, pool, balances = _populated()
        before = snapshot_ledger(engine, pool, balances).commitment_hex()
        balances.increase_balance("USD", "carol", 1)
        assert snapshot_ledger(engine, pool, balances).commitment_hex() != before

    def test_restore_into_fresh_components(self):
        engine, pool, balances = _populated()
        snap = snapshot_ledger(engine, pool, balances)
        engine2, pool2, balances2 = _fresh()
        restore_ledger(copy.deepcopy(snap.data), engine=engine2, pool=pool2, balances=balances2)
        assert snapshot_ledger(engine2, pool2, balances2).commitment_hex() == snap.commitment_hex()
        assert engine2.get_position("alice", 1) == engine.get_position("alice", 1)
        assert pool2.state.user_deposit_amount == {("alice", 1): 5_000_000}

    def test_labels_survive_restore(self):
        engine, pool, balances = _populated()
        snap = snapshot_ledger(engine, pool, balances)
        assert [e["label"] for e in snap.data["labels"]] == ["a", "b"]

        engine2, pool2, balances2 = _fresh()
        restore_ledger(copy.deepcopy(snap.data), engine=engine2, pool=pool2, balances=balances2)
        assert engine2.recorded("a") == engine.recorded("a")

        ctx = CallContext(caller="orchestrator", now=600, config=CONFIG)
        replay = engine2.increase_position(ctx, 1, "alice", 100 * PRICE_SCALE, 10, 500_000_000, FeeParams(), "a")
        assert replay.outcome is Outcome.APPLIED
        assert replay == engine.recorded("a")
        assert engine2.get_position("alice", 1) == engine.get_position("alice", 1)
        assert engine2.get_instrument(1).size_global == 10
        assert snapshot_ledger(engine2, pool2, balances2).commitment_hex() == snap.commitment_hex()

    def test_declined_label_round_trips(self):
        engine, pool, balances = _populated()
        ctx = CallContext(caller="orchestrator", now=500, config=CONFIG)
        declined = engine.increase_position(ctx, 1, "carol", 100 * PRICE_SCALE, 10, 1, FeeParams(), "c")
        assert declined.outcome is Outcome.DECLINED

        snap = snapshot_ledger(engine, pool, balances)
        engine2, pool2, balances2 = _fresh()
        restore_ledger(copy.deepcopy(snap.data), engine=engine2, pool=pool2, balances=balances2)
        assert engine2.recorded("c") == declined
        assert engine2.recorded("c").decline_reason is not None

    def test_rejects_unknown_write_version(self):
        engine, pool, balances = _fresh()
        with pytest.raises(LedgerAbort) as exc:
            snapshot_ledger(engine, pool, balances, version=1)
        assert exc.value.kind is AbortKind.UNSUPPORTED_SCHEMA

    def test_invalid_snapshot_leaves_components_untouched(self):
        engine, pool, balances = _populated()
        data = copy.deepcopy(snapshot_ledger(engine, pool, balances).data)
        data["balances"].append({"account": "x", "token": "USD", "amount": -1})
        before = snapshot_ledger(engine, pool, balances).commitment_hex()
        with pytest.raises(ValueError):
            restore_ledger(data, engine=engine, pool=pool, balances=balances)
        assert snapshot_ledger(engine, pool, balances).commitment_hex() == before


class TestMigration:
    def test_v1_positions_gain_team_fee(self):
        engine, pool, balances = _populated()
        snap = snapshot_ledger(engine, pool, balances)
        v1 = copy.deepcopy(snap.data)
        v1["version"] = 1
        for entry in v1["positions"]:
            del entry["cumulative_team_fee"]
        del v1["labels"]

        upgraded = migrate(v1)
        assert upgraded["version"] == SCHEMA_VERSION
        assert all(e["cumulative_team_fee"] == 0 for e in upgraded["positions"])
        assert upgraded["labels"] == []

        engine2, pool2, balances2 = _fresh()
        restore_ledger(v1, engine=engine2, pool=pool2, balances=balances2)
        restored = snapshot_ledger(engine2, pool2, balances2).data
        assert {k: v for k, v in restored.items() if k != "labels"} == {
            k: v for k, v in snap.data.items() if k != "labels"
        }
        assert engine2.recorded("a") is None

    @pytest.mark.parametrize("version", [0, 3, "2", None])
    def test_unsupported_versions(self, version):
        with pytest.raises(LedgerAbort) as exc:
            migrate({"version": version})
        assert exc.value.kind is AbortKind.UNSUPPORTED_SCHEMA
