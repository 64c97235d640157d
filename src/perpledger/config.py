"""
Versioned configuration snapshots for the margin engine and pool ledger.

Configuration is never read from ambient global state. Callers build one
immutable ``EngineConfig`` (usually via ``load_config``) and pass it by
reference inside a ``CallContext`` to every operation, so a single call sees a
single consistent snapshot.

YAML layout (all integers are fixed-point per ``perpledger.core.margin.math``)::

    version: 1
    usd_token: USD
    margin_vault_account: margin_vault
    team_account: team
    pool: {epoch_duration: 86400, request_time_delay: 3600, ...}
    oracle: {max_staleness_seconds: 300, max_deviation_bps: 200}
    instruments:
      - {instrument_id: 1, side: long, remain_collateral_ratio_bps: 500, ...}
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, FrozenSet, Literal, Mapping

import yaml

from .core.errors import AbortKind, LedgerAbort

CONFIG_VERSION = 1

BPS_MAX = 10_000

Side = Literal["long", "short"]


def _require_cfg_int(value: Any, *, name: str, minimum: int = 0, maximum: int | None = None) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}: {value}")


@dataclass(frozen=True)
class InstrumentConfig:
    """Per-instrument risk and fee parameters."""

    instrument_id: int
    side: Side
    product_id: int = 1
    token_decimals: int = 6
    max_leverage: int = 20
    remain_collateral_ratio_bps: int = 500
    predicted_liquidation_fee_bps: int = 100
    max_profit_ratio_bps: int = 90_000
    team_fee_share_bps: int = 0
    borrowing_fee_update_interval: int = 3600
    funding_fee_update_interval: int = 3600
    # Fractions of one token's USD value per second, scaled by FEE_RATE_PRECISION.
    max_borrowing_fee_per_second: int = 10_000
    max_funding_fee_per_second: int = 10_000
    max_lock_ratio_bps: int = BPS_MAX

    def __post_init__(self) -> None:
        _require_cfg_int(self.instrument_id, name="instrument_id", minimum=1)
        if self.side not in ("long", "short"):
            raise ValueError(f"side must be 'long' or 'short': {self.side!r}")
        _require_cfg_int(self.product_id, name="product_id", minimum=1)
        _require_cfg_int(self.token_decimals, name="token_decimals", maximum=36)
        _require_cfg_int(self.max_leverage, name="max_leverage", minimum=1)
        for name in (
            "remain_collateral_ratio_bps",
            "predicted_liquidation_fee_bps",
            "team_fee_share_bps",
            "max_lock_ratio_bps",
        ):
            _require_cfg_int(getattr(self, name), name=name, maximum=BPS_MAX)
        _require_cfg_int(self.max_profit_ratio_bps, name="max_profit_ratio_bps", minimum=1)
        _require_cfg_int(self.borrowing_fee_update_interval, name="borrowing_fee_update_interval")
        _require_cfg_int(self.funding_fee_update_interval, name="funding_fee_update_interval")
        _require_cfg_int(self.max_borrowing_fee_per_second, name="max_borrowing_fee_per_second")
        _require_cfg_int(self.max_funding_fee_per_second, name="max_funding_fee_per_second")


@dataclass(frozen=True)
class PoolConfig:
    """Epoch timing, share pricing and capital-role parameters of the pool."""

    epoch_duration: int = 86_400
    request_time_delay: int = 3_600
    initial_share_price: int = 1_000_000
    withdraw_fee_bps: int = 0
    pool_account: str = "lp_pool"
    product_lock_caps: Mapping[int, int] = field(default_factory=dict)
    capital_managers: FrozenSet[str] = frozenset({"orchestrator"})
    orchestrators: FrozenSet[str] = frozenset({"orchestrator"})

    def __post_init__(self) -> None:
        _require_cfg_int(self.epoch_duration, name="epoch_duration", minimum=1)
        _require_cfg_int(self.request_time_delay, name="request_time_delay")
        if self.request_time_delay >= self.epoch_duration:
            raise ValueError("request_time_delay must be shorter than epoch_duration")
        _require_cfg_int(self.initial_share_price, name="initial_share_price", minimum=1)
        _require_cfg_int(self.withdraw_fee_bps, name="withdraw_fee_bps", maximum=BPS_MAX)
        if not isinstance(self.pool_account, str) or not self.pool_account:
            raise TypeError("pool_account must be a non-empty string")
        for product_id, cap in self.product_lock_caps.items():
            _require_cfg_int(product_id, name="product_lock_caps key", minimum=1)
            _require_cfg_int(cap, name=f"product_lock_caps[{product_id}]")


@dataclass(frozen=True)
class OracleConfig:
    max_staleness_seconds: int = 300
    max_deviation_bps: int = 200

    def __post_init__(self) -> None:
        _require_cfg_int(self.max_staleness_seconds, name="max_staleness_seconds", minimum=1)
        _require_cfg_int(self.max_deviation_bps, name="max_deviation_bps", maximum=BPS_MAX)


@dataclass(frozen=True)
class EngineConfig:
    """Top-level configuration snapshot."""

    instruments: Dict[int, InstrumentConfig]
    pool: PoolConfig = field(default_factory=PoolConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    usd_token: str = "USD"
    margin_vault_account: str = "margin_vault"
    team_account: str = "team"
    version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        if self.version != CONFIG_VERSION:
            raise ValueError(f"unsupported config version: {self.version}")
        if not isinstance(self.instruments, dict):
            raise TypeError("instruments must be a dict")
        for instrument_id, inst in self.instruments.items():
            if not isinstance(inst, InstrumentConfig):
                raise TypeError("instruments values must be InstrumentConfig")
            if inst.instrument_id != instrument_id:
                raise ValueError(f"instrument key {instrument_id} does not match id {inst.instrument_id}")
        accounts = {self.margin_vault_account, self.team_account, self.pool.pool_account}
        if len(accounts) != 3:
            raise ValueError("margin vault, team and pool accounts must be distinct")

    def instrument(self, instrument_id: int) -> InstrumentConfig:
        inst = self.instruments.get(instrument_id)
        if inst is None:
            raise LedgerAbort(AbortKind.INVALID_INSTRUMENT, f"unknown instrument id {instrument_id}")
        return inst

    def instrument_ids(self, side: Side) -> list[int]:
        """Instrument ids of one side, in ascending order (rollover order)."""
        return sorted(i for i, inst in self.instruments.items() if inst.side == side)


@dataclass(frozen=True)
class CallContext:
    """Per-call context: effective caller, block time and the config snapshot."""

    caller: str
    now: int
    config: EngineConfig

    def __post_init__(self) -> None:
        if not isinstance(self.caller, str) or not self.caller:
            raise TypeError("caller must be a non-empty string")
        _require_cfg_int(self.now, name="now")


# -- Loading -----------------------------------------------------------------

def _build(cls, raw: Any, *, name: str):
    if not isinstance(raw, Mapping):
        raise TypeError(f"{name} must be a mapping")
    allowed = {f.name for f in fields(cls)}
    extra = set(raw) - allowed
    if extra:
        raise ValueError(f"{name} has unknown keys: {sorted(extra)[:8]}")
    return cls(**dict(raw))


def config_from_dict(data: Mapping[str, Any]) -> EngineConfig:
    """Build an ``EngineConfig`` from plain data. Fails closed on unknown keys."""
    try:
        if not isinstance(data, Mapping):
            raise TypeError("config must be a mapping")
        allowed = {f.name for f in fields(EngineConfig)}
        extra = set(data) - allowed
        if extra:
            raise ValueError(f"config has unknown keys: {sorted(extra)[:8]}")

        raw_instruments = data.get("instruments") or []
        if not isinstance(raw_instruments, list):
            raise TypeError("instruments must be a list")
        instruments: Dict[int, InstrumentConfig] = {}
        for i, raw in enumerate(raw_instruments):
            inst = _build(InstrumentConfig, raw, name=f"instruments[{i}]")
            if inst.instrument_id in instruments:
                raise ValueError(f"duplicate instrument id {inst.instrument_id}")
            instruments[inst.instrument_id] = inst

        pool_raw = dict(data.get("pool") or {})
        for key in ("capital_managers", "orchestrators"):
            if key in pool_raw:
                pool_raw[key] = frozenset(pool_raw[key])
        if "product_lock_caps" in pool_raw:
            pool_raw["product_lock_caps"] = {int(k): v for k, v in dict(pool_raw["product_lock_caps"]).items()}

        kwargs: Dict[str, Any] = {
            "instruments": instruments,
            "pool": _build(PoolConfig, pool_raw, name="pool"),
            "oracle": _build(OracleConfig, data.get("oracle") or {}, name="oracle"),
        }
        for key in ("usd_token", "margin_vault_account", "team_account", "version"):
            if key in data:
                kwargs[key] = data[key]
        return EngineConfig(**kwargs)
    except (TypeError, ValueError) as exc:
        raise LedgerAbort(AbortKind.INVALID_CONFIG, str(exc)) from exc


def load_config(path: str | Path) -> EngineConfig:
    """Load an ``EngineConfig`` from a YAML file."""
    text = Path(path).read_text(encoding="utf-8")
    obj = yaml.safe_load(text)
    if obj is None:
        obj = {}
    return config_from_dict(obj)
