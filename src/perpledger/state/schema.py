"""
Versioned ledger snapshots.

Goals:
- Deterministic JSON serialization of engine, pool, share and balance state.
- Round-trippable into a fresh engine/pool/balance ledger.
- Explicit versioning with an in-code migration path for older snapshots.

Version history:
- v1: positions without ``cumulative_team_fee``.
- v2: adds ``cumulative_team_fee`` (team share of borrowing accrual) and the
  idempotency labels with their recorded results.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from typing import TYPE_CHECKING, Any, Dict, List, Mapping

from ..core.errors import AbortKind, LedgerAbort
from ..core.margin.types import (
    FeeIndexState,
    InstrumentState,
    Operation,
    Outcome,
    Position,
    SettlementResult,
)
from ..core.pool.types import BurnInfo, MintInfo, PoolState
from .balances import BalanceLedger
from .canonical import canonical_json_bytes, commitment
from .labels import require_label
from .shares import ShareTable

if TYPE_CHECKING:
    from ..core.margin.engine import MarginEngine
    from ..core.pool.ledger import LiquidityPoolLedger

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Fields whose values may be negative.
_SIGNED_FIELDS = frozenset({
    "cumulative_funding_fee",
    "entry_funding_index",
    "funding_fee_global",
    "funding_entry_weight",
    "funding_fee_per_token",
    "funding_rate",
    "realized_pnl",
})

# Amount fields of a recorded result; the rest are identity, enums and the position.
_RESULT_AMOUNTS = tuple(
    f.name for f in fields(SettlementResult)
    if f.name not in {"label", "operation", "instrument_id", "user_id", "outcome", "position", "decline_reason"}
)


def _require_str(value: Any, *, name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a string")
    if not value:
        raise ValueError(f"{name} must be non-empty")
    return value


def _require_int(value: Any, *, name: str, non_negative: bool = True) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int")
    if non_negative and value < 0:
        raise ValueError(f"{name} must be non-negative")
    return int(value)


def _record_from(cls, entry: Mapping[str, Any], *, name: str):
    kwargs = {}
    for f in fields(cls):
        if f.name not in entry:
            raise ValueError(f"{name}.{f.name} is required")
        kwargs[f.name] = _require_int(entry[f.name], name=f"{name}.{f.name}", non_negative=f.name not in _SIGNED_FIELDS)
    return cls(**kwargs)


def _list(snapshot: Mapping[str, Any], key: str) -> List[Any]:
    entries = snapshot.get(key)
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise TypeError(f"snapshot.{key} must be a list")
    return entries


@dataclass(frozen=True)
class LedgerSnapshot:
    """
    Deterministic, versioned snapshot of ledger state.

    The commitment is *not* included inside ``data`` to avoid self-reference.
    """

    version: int
    data: Dict[str, Any]

    def canonical_bytes(self) -> bytes:
        return canonical_json_bytes(self.data)

    def commitment_bytes(self) -> bytes:
        return commitment("ledger_snapshot", self.version, self.data)

    def commitment_hex(self) -> str:
        return "0x" + self.commitment_bytes().hex()


# -- Encoding ----------------------------------------------------------------

def _result_to_dict(result: SettlementResult) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "label": result.label,
        "operation": result.operation.value,
        "instrument_id": result.instrument_id,
        "user_id": result.user_id,
        "outcome": result.outcome.value,
        "position": asdict(result.position),
        "decline_reason": result.decline_reason,
    }
    for name in _RESULT_AMOUNTS:
        entry[name] = getattr(result, name)
    return entry


def _pool_to_dict(state: PoolState) -> Dict[str, Any]:
    def user_epoch(table: Mapping) -> List[Dict[str, Any]]:
        return sorted(
            ({"user": user, "epoch": epoch, "amount": amount} for (user, epoch), amount in table.items()),
            key=lambda e: (e["user"], e["epoch"]),
        )

    def per_epoch(table: Mapping) -> List[Dict[str, Any]]:
        return [{"epoch": e, "amount": table[e]} for e in sorted(table)]

    return {
        "epoch_number": state.epoch_number,
        "epoch_end_time": state.epoch_end_time,
        "closing_price_claimed": state.closing_price_claimed,
        "pool_amount": state.pool_amount,
        "pool_locked_amount": state.pool_locked_amount,
        "product_locked": [{"product_id": p, "amount": state.product_locked[p]} for p in sorted(state.product_locked)],
        "instrument_locked": [
            {"product_id": p, "instrument_id": i, "amount": state.instrument_locked[(p, i)]}
            for p, i in sorted(state.instrument_locked)
        ],
        "global_deposit_amount": per_epoch(state.global_deposit_amount),
        "global_withdraw_amount": per_epoch(state.global_withdraw_amount),
        "user_deposit_amount": user_epoch(state.user_deposit_amount),
        "user_withdraw_amount": user_epoch(state.user_withdraw_amount),
        "epoch_mint_info": [{"epoch": e, **asdict(state.epoch_mint_info[e])} for e in sorted(state.epoch_mint_info)],
        "epoch_burn_info": [{"epoch": e, **asdict(state.epoch_burn_info[e])} for e in sorted(state.epoch_burn_info)],
    }


def snapshot_ledger(
    engine: "MarginEngine",
    pool: "LiquidityPoolLedger",
    balances: BalanceLedger,
    *,
    version: int = SCHEMA_VERSION,
) -> LedgerSnapshot:
    if version != SCHEMA_VERSION:
        raise LedgerAbort(AbortKind.UNSUPPORTED_SCHEMA, f"cannot write snapshot version {version}")

    exported = engine.export_state()
    positions = [
        {"user_id": user_id, "instrument_id": instrument_id, **asdict(position)}
        for (user_id, instrument_id), position in exported["positions"].items()
    ]
    positions.sort(key=lambda e: (e["user_id"], e["instrument_id"]))
    instruments = [
        {"instrument_id": i, **asdict(agg)} for i, agg in sorted(exported["instruments"].items())
    ]
    fee_indices = [
        {"instrument_id": i, **asdict(index)} for i, index in sorted(exported["fee_indices"].items())
    ]
    shares = [{"account": a, "amount": n} for a, n in sorted(pool.shares.get_all_balances().items())]
    balance_entries = [
        {"account": account, "token": token, "amount": amount}
        for (account, token), amount in balances.get_all_balances().items()
    ]
    balance_entries.sort(key=lambda e: (e["account"], e["token"]))
    labels = [_result_to_dict(result) for _, result in sorted(exported["labels"].items())]

    data: Dict[str, Any] = {
        "version": version,
        "positions": positions,
        "instruments": instruments,
        "fee_indices": fee_indices,
        "pool": _pool_to_dict(pool.state),
        "shares": shares,
        "balances": balance_entries,
        "labels": labels,
    }
    return LedgerSnapshot(version=version, data=data)


# -- Migration ---------------------------------------------------------------

def _migrate_v1_to_v2(data: Dict[str, Any]) -> Dict[str, Any]:
    positions = []
    for entry in _list(data, "positions"):
        if not isinstance(entry, Mapping):
            raise TypeError("snapshot.positions entries must be objects")
        upgraded = dict(entry)
        upgraded.setdefault("cumulative_team_fee", 0)
        positions.append(upgraded)
    out = dict(data)
    out["positions"] = positions
    out.setdefault("labels", [])
    out["version"] = 2
    return out


_MIGRATIONS = {1: _migrate_v1_to_v2}


def migrate(snapshot: Mapping[str, Any]) -> Dict[str, Any]:
    """Upgrade *snapshot* step by step to ``SCHEMA_VERSION``."""
    if not isinstance(snapshot, Mapping):
        raise TypeError("snapshot must be a mapping")
    data = dict(snapshot)
    version = data.get("version")
    if not isinstance(version, int) or isinstance(version, bool):
        raise LedgerAbort(AbortKind.UNSUPPORTED_SCHEMA, f"snapshot version must be an int: {version!r}")
    if version > SCHEMA_VERSION or (version != SCHEMA_VERSION and version not in _MIGRATIONS):
        raise LedgerAbort(AbortKind.UNSUPPORTED_SCHEMA, f"unsupported snapshot version: {version}")
    while data["version"] != SCHEMA_VERSION:
        from_version = data["version"]
        data = _MIGRATIONS[from_version](data)
        logger.info("migrated ledger snapshot v%s -> v%s", from_version, data["version"])
    return data


# -- Decoding ----------------------------------------------------------------

def _pool_from_dict(obj: Any) -> PoolState:
    if not isinstance(obj, Mapping):
        raise TypeError("snapshot.pool must be an object")

    def entries(key: str) -> List[Mapping[str, Any]]:
        raw = obj.get(key) or []
        if not isinstance(raw, list) or not all(isinstance(e, Mapping) for e in raw):
            raise TypeError(f"snapshot.pool.{key} must be a list of objects")
        return raw

    def amount(e: Mapping[str, Any], key: str) -> int:
        return _require_int(e.get("amount"), name=f"pool.{key}.amount")

    claimed = obj.get("closing_price_claimed", False)
    if not isinstance(claimed, bool):
        raise TypeError("pool.closing_price_claimed must be a bool")

    state = PoolState(
        epoch_number=_require_int(obj.get("epoch_number", 0), name="pool.epoch_number"),
        epoch_end_time=_require_int(obj.get("epoch_end_time", 0), name="pool.epoch_end_time"),
        closing_price_claimed=claimed,
        pool_amount=_require_int(obj.get("pool_amount", 0), name="pool.pool_amount"),
        pool_locked_amount=_require_int(obj.get("pool_locked_amount", 0), name="pool.pool_locked_amount"),
    )
    if state.pool_locked_amount > state.pool_amount:
        raise ValueError("pool.pool_locked_amount exceeds pool.pool_amount")
    for e in entries("product_locked"):
        state.product_locked[_require_int(e.get("product_id"), name="pool.product_id")] = amount(e, "product_locked")
    for e in entries("instrument_locked"):
        key = (
            _require_int(e.get("product_id"), name="pool.product_id"),
            _require_int(e.get("instrument_id"), name="pool.instrument_id"),
        )
        state.instrument_locked[key] = amount(e, "instrument_locked")
    for key, table in (
        ("global_deposit_amount", state.global_deposit_amount),
        ("global_withdraw_amount", state.global_withdraw_amount),
    ):
        for e in entries(key):
            table[_require_int(e.get("epoch"), name=f"pool.{key}.epoch")] = amount(e, key)
    for key, table in (
        ("user_deposit_amount", state.user_deposit_amount),
        ("user_withdraw_amount", state.user_withdraw_amount),
    ):
        for e in entries(key):
            user = _require_str(e.get("user"), name=f"pool.{key}.user")
            table[(user, _require_int(e.get("epoch"), name=f"pool.{key}.epoch"))] = amount(e, key)
    for e in entries("epoch_mint_info"):
        state.epoch_mint_info[_require_int(e.get("epoch"), name="pool.epoch_mint_info.epoch")] = _record_from(
            MintInfo, e, name="pool.epoch_mint_info",
        )
    for e in entries("epoch_burn_info"):
        state.epoch_burn_info[_require_int(e.get("epoch"), name="pool.epoch_burn_info.epoch")] = _record_from(
            BurnInfo, e, name="pool.epoch_burn_info",
        )
    return state


def _result_from_dict(entry: Any) -> SettlementResult:
    if not isinstance(entry, Mapping):
        raise TypeError("snapshot.labels entries must be objects")
    position = entry.get("position")
    if not isinstance(position, Mapping):
        raise TypeError("label.position must be an object")
    reason = entry.get("decline_reason")
    if reason is not None and not isinstance(reason, str):
        raise TypeError("label.decline_reason must be a string or null")
    amounts = {
        name: _require_int(entry.get(name), name=f"label.{name}", non_negative=name not in _SIGNED_FIELDS)
        for name in _RESULT_AMOUNTS
    }
    return SettlementResult(
        label=require_label(entry.get("label")),
        operation=Operation(_require_str(entry.get("operation"), name="label.operation")),
        instrument_id=_require_int(entry.get("instrument_id"), name="label.instrument_id"),
        user_id=_require_str(entry.get("user_id"), name="label.user_id"),
        outcome=Outcome(_require_str(entry.get("outcome"), name="label.outcome")),
        position=_record_from(Position, position, name="label.position"),
        decline_reason=reason,
        **amounts,
    )


def restore_ledger(
    snapshot: Mapping[str, Any],
    *,
    engine: "MarginEngine",
    pool: "LiquidityPoolLedger",
    balances: BalanceLedger,
) -> None:
    """Load *snapshot* (any supported version) into the given components."""
    data = migrate(snapshot)

    positions: Dict[tuple, Position] = {}
    for entry in _list(data, "positions"):
        if not isinstance(entry, Mapping):
            raise TypeError("snapshot.positions entries must be objects")
        key = (
            _require_str(entry.get("user_id"), name="position.user_id"),
            _require_int(entry.get("instrument_id"), name="position.instrument_id"),
        )
        if key in positions:
            raise ValueError(f"duplicate position entry {key}")
        positions[key] = _record_from(Position, entry, name="position")

    instruments: Dict[int, InstrumentState] = {}
    for entry in _list(data, "instruments"):
        instrument_id = _require_int(entry.get("instrument_id"), name="instrument.instrument_id")
        if instrument_id in instruments:
            raise ValueError(f"duplicate instrument entry {instrument_id}")
        instruments[instrument_id] = _record_from(InstrumentState, entry, name="instrument")

    fee_indices: Dict[int, FeeIndexState] = {}
    for entry in _list(data, "fee_indices"):
        instrument_id = _require_int(entry.get("instrument_id"), name="fee_index.instrument_id")
        if instrument_id in fee_indices:
            raise ValueError(f"duplicate fee index entry {instrument_id}")
        fee_indices[instrument_id] = _record_from(FeeIndexState, entry, name="fee_index")

    pool_state = _pool_from_dict(data.get("pool") or {})

    shares = ShareTable()
    for entry in _list(data, "shares"):
        account = _require_str(entry.get("account"), name="share.account")
        if shares.get(account):
            raise ValueError(f"duplicate share entry {account}")
        shares.set(account, _require_int(entry.get("amount"), name="share.amount"))

    loaded = BalanceLedger()
    for entry in _list(data, "balances"):
        account = _require_str(entry.get("account"), name="balance.account")
        token = _require_str(entry.get("token"), name="balance.token")
        if loaded.get(account, token):
            raise ValueError(f"duplicate balance entry ({account}, {token})")
        loaded.increase_balance(token, account, _require_int(entry.get("amount"), name="balance.amount"))

    labels: Dict[str, SettlementResult] = {}
    for entry in _list(data, "labels"):
        result = _result_from_dict(entry)
        if result.label in labels:
            raise ValueError(f"duplicate label entry {result.label!r}")
        labels[result.label] = result

    # Everything validated; now commit.
    engine.load_state(positions=positions, instruments=instruments, fee_indices=fee_indices, labels=labels)
    pool.load_state(pool_state, shares)
    balances.restore(loaded)
