"""
Data Models for Persistence Layer

Tasks and earnings as stored. Timestamps are ISO-8601 UTC strings so
that ordering comparisons in SQL and in Python agree.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..core.task import TaskStatus, Source, USAGE_FIELDS, normalize_status, normalize_source


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_timestamp(value: Any) -> str:
    """
    Coerce a timestamp to ISO-8601 UTC.

    Accepts datetimes, ISO strings (with or without offset, with a trailing
    "Z"), and epoch numbers in seconds or milliseconds. Missing values
    become "now".
    """
    if value is None or value == "":
        return utc_now()

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _non_negative_int(value: Any) -> int:
    if value is None:
        return 0
    return max(0, int(value))


@dataclass
class DeviceRecord:
    """A device known to the ledger."""
    device_id: str
    registered_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {"device_id": self.device_id, "registered_at": self.registered_at}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DeviceRecord":
        return cls(device_id=row["device_id"], registered_at=row["registered_at"])


@dataclass
class TaskRecord:
    """Persisted task record."""
    id: str
    model: str
    device_id: str
    status: TaskStatus = TaskStatus.RUNNING
    source: Source = Source.LOCAL
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None
    error_message: Optional[str] = None

    # Usage
    total_duration: int = 0
    load_duration: int = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0

    def usage(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in USAGE_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "device_id": self.device_id,
            "status": self.status.value,
            "source": self.source.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
            **self.usage(),
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.id,
            self.model,
            self.device_id,
            self.status.value,
            self.source.value,
            self.created_at,
            self.updated_at,
            self.completed_at,
            self.error_message,
            self.total_duration,
            self.load_duration,
            self.prompt_eval_count,
            self.prompt_eval_duration,
            self.eval_count,
            self.eval_duration,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TaskRecord":
        return cls(
            id=row["id"],
            model=row["model"],
            device_id=row["device_id"],
            status=normalize_status(row["status"]),
            source=normalize_source(row["source"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row.get("completed_at"),
            error_message=row.get("error_message"),
            **{name: _non_negative_int(row.get(name)) for name in USAGE_FIELDS},
        )


@dataclass
class EarningRecord:
    """Persisted earning (payout) record."""
    id: str
    device_id: str
    task_id: Optional[str] = None
    block_rewards: float = 0.0
    job_rewards: float = 0.0
    source: Source = Source.LOCAL
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def total_rewards(self) -> float:
        return self.block_rewards + self.job_rewards

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "device_id": self.device_id,
            "block_rewards": self.block_rewards,
            "job_rewards": self.job_rewards,
            "source": self.source.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.task_id,
            self.device_id,
            self.block_rewards,
            self.job_rewards,
            self.source.value,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EarningRecord":
        return cls(
            id=row["id"],
            task_id=row.get("task_id"),
            device_id=row["device_id"],
            block_rewards=float(row.get("block_rewards") or 0.0),
            job_rewards=float(row.get("job_rewards") or 0.0),
            source=normalize_source(row["source"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
