"""
perpledger: margin and liquidity-pool accounting for a perpetuals exchange.
"""

from .config import CallContext, EngineConfig, InstrumentConfig, OracleConfig, PoolConfig, load_config
from .core.errors import AbortKind, FatalInvariantError, LedgerAbort
from .core.margin.engine import MarginEngine
from .core.margin.types import FeeParams, Outcome, Position, SettlementResult
from .core.oracle import PriceOracle
from .core.pool.ledger import LiquidityPoolLedger
from .integration.orchestrator import RolloverProgress, SettlementOrchestrator
from .state.balances import BalanceLedger
from .state.schema import SCHEMA_VERSION, migrate, restore_ledger, snapshot_ledger

__version__ = "0.1.0"

__all__ = [
    "CallContext",
    "EngineConfig",
    "InstrumentConfig",
    "OracleConfig",
    "PoolConfig",
    "load_config",
    "AbortKind",
    "FatalInvariantError",
    "LedgerAbort",
    "MarginEngine",
    "FeeParams",
    "Outcome",
    "Position",
    "SettlementResult",
    "PriceOracle",
    "LiquidityPoolLedger",
    "RolloverProgress",
    "SettlementOrchestrator",
    "BalanceLedger",
    "SCHEMA_VERSION",
    "migrate",
    "restore_ledger",
    "snapshot_ledger",
]
