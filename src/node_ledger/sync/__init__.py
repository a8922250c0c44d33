"""
NODE LEDGER - Gateway Sync Module
"""

from .client import GatewayClient, parse_page
from .engine import GatewaySyncEngine, SyncResult, SyncStatistics, JobStatistics

__all__ = [
    "GatewayClient",
    "parse_page",
    "GatewaySyncEngine",
    "SyncResult",
    "SyncStatistics",
    "JobStatistics",
]
