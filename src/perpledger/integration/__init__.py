"""
Settlement layer: routes engine results into the pool and balance ledger.
"""

from .orchestrator import RolloverProgress, SettlementOrchestrator

__all__ = ["RolloverProgress", "SettlementOrchestrator"]
