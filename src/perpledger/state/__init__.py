"""
State tables for the ledger
"""

from .balances import BalanceLedger
from .shares import ShareTable
from .labels import LabelTable
from .positions import PositionTable

__all__ = [
    "BalanceLedger",
    "ShareTable",
    "LabelTable",
    "PositionTable",
]
