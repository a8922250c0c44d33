"""
Task Ledger

CRUD and state machine over units of work, partitioned by source:
- local tasks are opened and closed by the metering interceptor
- gateway tasks are created and refreshed by the sync engine

Every mutation is a read-modify-write inside one store transaction, so
concurrent callers working on different ids never contend.
"""

import uuid
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Set, Tuple
import structlog

from ..core.errors import NotFound, ImmutableSourceViolation
from ..core.task import (
    TaskStatus,
    Source,
    LEGACY_SUCCESS_STATUS,
    USAGE_FIELDS,
    check_transition,
    normalize_status,
)
from ..persistence.models import TaskRecord, utc_now, normalize_timestamp
from ..persistence.repository import TaskRepository

logger = structlog.get_logger()

# Fields a partial update may never overwrite
_PROTECTED_FIELDS = frozenset({"id", "source", "created_at"})
_TASK_FIELDS = frozenset(f.name for f in fields(TaskRecord))
_TEXT_FIELDS = frozenset({"model", "device_id", "error_message"})
_TIMESTAMP_FIELDS = frozenset({"completed_at", "updated_at"})


def _optional_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _coerce_remote(remote: Mapping[str, Any]) -> Dict[str, Any]:
    """Gateway fields as partial-update values the store can bind."""
    values: Dict[str, Any] = {}
    for key, value in remote.items():
        if key in _PROTECTED_FIELDS or value is None:
            continue
        if key in _TEXT_FIELDS:
            value = str(value)
        elif key in _TIMESTAMP_FIELDS:
            value = normalize_timestamp(value)
        values[key] = value
    return values


class TaskLedger:
    """Lifecycle owner for Task records."""

    def __init__(self, repository: TaskRepository):
        self.repository = repository

    # ------------------------------------------------------------------
    # Local lifecycle
    # ------------------------------------------------------------------

    def create(self, model: str, device_id: str) -> TaskRecord:
        """Open a local task in the running state."""
        now = utc_now()
        task = TaskRecord(
            id=str(uuid.uuid4()),
            model=model or "unknown",
            device_id=device_id,
            status=TaskStatus.RUNNING,
            source=Source.LOCAL,
            created_at=now,
            updated_at=now,
        )
        self.repository.upsert(task)
        logger.debug("task_created", task_id=task.id, model=task.model, device_id=device_id)
        return task

    def update(
        self,
        task_id: str,
        partial: Mapping[str, Any],
        authority: Source = Source.LOCAL,
    ) -> TaskRecord:
        """
        Merge a partial update into an existing task.

        Raises:
            NotFound: no task with this id
            ImmutableSourceViolation: authority does not own the task
            InvalidTransition: the status change would leave a terminal state
        """
        with self.repository.transaction():
            task = self.repository.get(task_id, for_update=True)
            if task is None:
                raise NotFound("task", task_id)
            if task.source != authority:
                raise ImmutableSourceViolation("task", task_id, task.source.value, authority.value)

            updated = self._merge(task, partial)
            self.repository.upsert(updated)

        if updated.status != task.status:
            logger.debug(
                "task_status_changed",
                task_id=task_id,
                old=task.status.value,
                new=updated.status.value,
            )
        return updated

    def complete(self, task_id: str, usage: Optional[Mapping[str, Any]] = None) -> TaskRecord:
        partial: Dict[str, Any] = dict(usage or {})
        partial["status"] = TaskStatus.COMPLETED
        return self.update(task_id, partial, authority=Source.LOCAL)

    def fail(self, task_id: str, error_message: str) -> TaskRecord:
        return self.update(
            task_id,
            {"status": TaskStatus.FAILED, "error_message": error_message},
            authority=Source.LOCAL,
        )

    def _merge(self, task: TaskRecord, partial: Mapping[str, Any]) -> TaskRecord:
        values = task.to_dict()
        requested_status: Optional[TaskStatus] = None

        for key, value in partial.items():
            if key not in _TASK_FIELDS or key in _PROTECTED_FIELDS:
                continue
            if key == "status":
                requested_status = normalize_status(value)
            elif key in USAGE_FIELDS:
                values[key] = max(0, int(value or 0))
            else:
                values[key] = value

        check_transition(task.id, task.status, requested_status)

        now = utc_now()
        status = requested_status or task.status
        values["status"] = status.value
        values["updated_at"] = now
        if status.is_terminal and not task.status.is_terminal and not values.get("completed_at"):
            values["completed_at"] = now
        return TaskRecord.from_row(values)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def sweep_stale(self, timeout: float) -> int:
        """
        Fail local running tasks older than timeout seconds.

        Recovers tasks left open by a crashed or hung call. The underlying
        call is not retried. Returns the number of tasks swept.
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=timeout)).isoformat()
        stale = list(self.repository.iterate(
            source=Source.LOCAL.value,
            status=TaskStatus.RUNNING.value,
            created_before=cutoff,
        ))
        if not stale:
            logger.debug("no_stale_tasks")
            return 0

        swept = 0
        for task in stale:
            try:
                with self.repository.transaction():
                    current = self.repository.get(task.id, for_update=True)
                    # Closed by its own call since the scan
                    if current is None or current.status != TaskStatus.RUNNING:
                        continue
                    self.repository.upsert(self._merge(current, {
                        "status": TaskStatus.FAILED,
                        "error_message": f"Task exceeded stale timeout of {int(timeout)}s",
                    }))
                swept += 1
            except Exception as e:
                logger.warning("stale_task_sweep_failed", task_id=task.id, error=str(e))

        logger.info("stale_tasks_swept", count=swept, timeout=timeout)
        return swept

    def normalize_status_vocabulary(self) -> int:
        """Rewrite gateway tasks still carrying the legacy success status."""
        count = self.repository.rename_status(
            Source.GATEWAY.value, LEGACY_SUCCESS_STATUS, TaskStatus.COMPLETED.value
        )
        if count:
            logger.debug("task_statuses_normalized", count=count)
        return count

    # ------------------------------------------------------------------
    # Gateway partition
    # ------------------------------------------------------------------

    def upsert_from_gateway(self, remote: Mapping[str, Any], device_id: str) -> Tuple[TaskRecord, bool]:
        """
        Find-or-create a gateway task from a remote record.

        Returns (task, created). Applying the same record twice yields the
        same state apart from updated_at.
        """
        task_id = remote.get("id")
        if not task_id:
            raise ValueError("Remote task has no id")
        task_id = str(task_id)

        with self.repository.transaction():
            existing = self.repository.get(task_id, for_update=True)

            if existing is None:
                now = utc_now()
                task = TaskRecord(
                    id=task_id,
                    model=str(remote.get("model") or "unknown"),
                    device_id=str(remote.get("device_id") or device_id),
                    status=normalize_status(remote.get("status") or TaskStatus.PENDING),
                    source=Source.GATEWAY,
                    created_at=normalize_timestamp(remote.get("created_at")),
                    updated_at=now,
                    error_message=_optional_text(remote.get("error_message")),
                    **{name: max(0, int(remote.get(name) or 0)) for name in USAGE_FIELDS},
                )
                if task.status.is_terminal:
                    task.completed_at = normalize_timestamp(remote.get("completed_at") or now)
                self.repository.upsert(task)
                return task, True

            if existing.source != Source.GATEWAY:
                raise ImmutableSourceViolation("task", task_id, existing.source.value, Source.GATEWAY.value)

            partial = _coerce_remote(remote)
            partial.setdefault("device_id", existing.device_id)
            updated = self._merge(existing, partial)
            self.repository.upsert(updated)
            return updated, False

    def find_gateway_task(self, task_id: str) -> Optional[TaskRecord]:
        task = self.repository.get(task_id)
        return task if task and task.source == Source.GATEWAY else None

    def gateway_task_ids(self) -> Set[str]:
        return self.repository.ids(Source.GATEWAY.value)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> TaskRecord:
        task = self.repository.get(task_id)
        if task is None:
            raise NotFound("task", task_id)
        return task

    def exists(self, task_id: str) -> bool:
        return self.repository.get(task_id) is not None

    def list_for_device(self, device_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """Paginated task history for a device, newest first."""
        page = max(1, page)
        limit = max(1, min(limit, 500))
        tasks = self.repository.list_page(device_id, limit=limit, offset=(page - 1) * limit)
        return {
            "page": page,
            "limit": limit,
            "total": self.repository.count(device_id),
            "tasks": [t.to_dict() for t in tasks],
        }

    def statistics(self, device_id: str) -> Dict[str, int]:
        counts = self.repository.status_counts(device_id)
        stats = {status.value: 0 for status in TaskStatus}
        for raw, count in counts.items():
            try:
                stats[normalize_status(raw).value] += count
            except ValueError:
                logger.warning("unknown_task_status", status=raw, count=count)
        stats["total"] = sum(counts.values())
        return stats
