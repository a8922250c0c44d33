"""
Ledger Error Taxonomy

Every failure the ledger, metering and sync layers raise on purpose.
None of these ever reach a caller of the inference API; they are
operational concerns, logged at the boundary that catches them.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""
    pass


class NotFound(LedgerError):
    """Operating on a Task or Earning id that does not exist."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class ImmutableSourceViolation(LedgerError):
    """
    Attempt to mutate a record outside the caller's source authority.

    Local records belong to the metering interceptor, gateway records
    belong to the sync engine.
    """

    def __init__(self, kind: str, record_id: str, record_source: str, authority: str):
        self.kind = kind
        self.record_id = record_id
        self.record_source = record_source
        self.authority = authority
        super().__init__(
            f"Cannot mutate {record_source} {kind} {record_id} with {authority} authority"
        )


class ReferentialIntegrityViolation(LedgerError):
    """An earning references a task or device that is not in the ledger."""

    def __init__(self, field_name: str, reference: Optional[str], earning_id: Optional[str] = None):
        self.field_name = field_name
        self.reference = reference
        self.earning_id = earning_id
        super().__init__(f"Invalid {field_name} reference: {reference}")


class InvalidTransition(LedgerError):
    """A status change that would re-open or rewrite a terminal task."""

    def __init__(self, task_id: str, current: str, requested: str):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(f"Task {task_id}: illegal transition {current} -> {requested}")


class RemoteUnavailable(LedgerError):
    """Gateway call failed, was refused, or timed out."""
    pass


class MalformedRemotePayload(LedgerError):
    """Gateway answered with a body of unexpected shape."""
    pass
