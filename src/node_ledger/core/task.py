"""
Task Lifecycle Vocabulary

States: pending -> running -> {completed, failed}

pending/running are open, completed/failed are terminal. A terminal
task is never re-opened and never switched to the other terminal state.

Older gateway generations report success as "succeed"; every write
normalizes the success vocabulary to the canonical "completed".
"""

from enum import Enum
from typing import Any, Optional

from .errors import InvalidTransition


class TaskStatus(Enum):
    """Lifecycle states of a unit of work."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class Source(Enum):
    """Partition tag deciding which actor may mutate a record."""
    LOCAL = "local"
    GATEWAY = "gateway"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

LEGACY_SUCCESS_STATUS = "succeed"

# Aliases seen across gateway and sync-service generations
_STATUS_ALIASES = {
    "succeed": TaskStatus.COMPLETED,
    "succeeded": TaskStatus.COMPLETED,
    "success": TaskStatus.COMPLETED,
    "completed": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "failure": TaskStatus.FAILED,
    "error": TaskStatus.FAILED,
    "running": TaskStatus.RUNNING,
    "in-progress": TaskStatus.RUNNING,
    "in_progress": TaskStatus.RUNNING,
    "pending": TaskStatus.PENDING,
    "queued": TaskStatus.PENDING,
}

USAGE_FIELDS = (
    "total_duration",
    "load_duration",
    "prompt_eval_count",
    "prompt_eval_duration",
    "eval_count",
    "eval_duration",
)


def normalize_status(value: Any) -> TaskStatus:
    """
    Map any known status spelling to its canonical TaskStatus.

    Raises ValueError for values outside the known vocabulary.
    """
    if isinstance(value, TaskStatus):
        return value
    key = str(value).strip().lower()
    try:
        return _STATUS_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unknown task status: {value!r}")


def normalize_source(value: Any) -> Source:
    if isinstance(value, Source):
        return value
    return Source(str(value).strip().lower())


def check_transition(task_id: str, current: TaskStatus, requested: Optional[TaskStatus]) -> None:
    """Reject transitions out of a terminal state."""
    if requested is None or requested == current:
        return
    if current.is_terminal:
        raise InvalidTransition(task_id, current.value, requested.value)
    if current == TaskStatus.RUNNING and requested == TaskStatus.PENDING:
        raise InvalidTransition(task_id, current.value, requested.value)
