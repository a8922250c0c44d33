"""
Persistence Layer for Node Ledger

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, get_database
from .models import DeviceRecord, TaskRecord, EarningRecord, utc_now, normalize_timestamp
from .repository import DeviceRepository, TaskRepository, EarningRepository

__all__ = [
    "Database",
    "get_database",
    "DeviceRecord",
    "TaskRecord",
    "EarningRecord",
    "utc_now",
    "normalize_timestamp",
    "DeviceRepository",
    "TaskRepository",
    "EarningRepository",
]
