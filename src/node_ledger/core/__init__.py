"""
NODE LEDGER - Core Module

Task lifecycle vocabulary and the ledger error taxonomy.
"""

from .errors import (
    LedgerError,
    NotFound,
    ImmutableSourceViolation,
    ReferentialIntegrityViolation,
    InvalidTransition,
    RemoteUnavailable,
    MalformedRemotePayload,
)
from .task import TaskStatus, Source, normalize_status, normalize_source, check_transition

__all__ = [
    "LedgerError",
    "NotFound",
    "ImmutableSourceViolation",
    "ReferentialIntegrityViolation",
    "InvalidTransition",
    "RemoteUnavailable",
    "MalformedRemotePayload",
    "TaskStatus",
    "Source",
    "normalize_status",
    "normalize_source",
    "check_transition",
]
