"""
Ledgers

Task and earning lifecycle rules on top of the repository layer.
"""

from .tasks import TaskLedger
from .earnings import EarningsLedger

__all__ = [
    "TaskLedger",
    "EarningsLedger",
]
