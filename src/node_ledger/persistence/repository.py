"""
Repository Layer for Node Ledger

The record-store contract the ledgers depend on: get / upsert / iterate,
plus transaction() for atomic per-record read-modify-write. Nothing here
enforces ledger rules; that is the job of node_ledger.ledger.
"""

from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterator, List, Optional, Set
import structlog

from .database import Database
from .models import DeviceRecord, TaskRecord, EarningRecord, utc_now

logger = structlog.get_logger()

_TASK_COLUMNS = (
    "id, model, device_id, status, source, created_at, updated_at, completed_at, "
    "error_message, total_duration, load_duration, prompt_eval_count, "
    "prompt_eval_duration, eval_count, eval_duration"
)

_EARNING_COLUMNS = (
    "id, task_id, device_id, block_rewards, job_rewards, source, created_at, updated_at"
)


def _upsert_sql(table: str, columns: str) -> str:
    names = [c.strip() for c in columns.split(",")]
    placeholders = ", ".join("?" for _ in names)
    updates = ", ".join(f"{n} = excluded.{n}" for n in names if n != "id")
    return (
        f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
        f"ON CONFLICT (id) DO UPDATE SET {updates}"
    )


class _Repository:
    def __init__(self, db: Database):
        self.db = db

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        with self.db.transaction() as conn:
            yield conn

    def _for_update(self) -> str:
        return " FOR UPDATE" if self.db.is_postgres else ""


class DeviceRepository(_Repository):
    """Repository for known devices."""

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        results = self.db.execute(
            "SELECT * FROM devices WHERE device_id = ?",
            (device_id,)
        )
        return DeviceRecord.from_row(results[0]) if results else None

    def exists(self, device_id: str) -> bool:
        return bool(self.db.execute(
            "SELECT 1 AS present FROM devices WHERE device_id = ?",
            (device_id,)
        ))

    def register(self, device_id: str) -> DeviceRecord:
        """Record a device if it is not known yet."""
        with self.transaction():
            existing = self.get(device_id)
            if existing:
                return existing
            record = DeviceRecord(device_id=device_id, registered_at=utc_now())
            self.db.execute(
                "INSERT INTO devices (device_id, registered_at) VALUES (?, ?)",
                (record.device_id, record.registered_at)
            )
        logger.info("device_registered", device_id=device_id)
        return record


class TaskRepository(_Repository):
    """Repository for task records."""

    def get(self, task_id: str, for_update: bool = False) -> Optional[TaskRecord]:
        """Get a task by ID."""
        query = f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?"
        if for_update:
            query += self._for_update()
        results = self.db.execute(query, (task_id,))
        return TaskRecord.from_row(results[0]) if results else None

    def upsert(self, task: TaskRecord) -> TaskRecord:
        """Insert or fully overwrite a task by ID."""
        self.db.execute(_upsert_sql("tasks", _TASK_COLUMNS), task.to_db_tuple())
        return task

    def upsert_many(self, tasks: List[TaskRecord]) -> int:
        return self.db.execute_many(
            _upsert_sql("tasks", _TASK_COLUMNS),
            [t.to_db_tuple() for t in tasks]
        )

    def iterate(
        self,
        source: Optional[str] = None,
        status: Optional[str] = None,
        device_id: Optional[str] = None,
        created_before: Optional[str] = None,
    ) -> Iterator[TaskRecord]:
        """Iterate tasks matching all given filters, oldest first."""
        clauses = []
        params: List[Any] = []
        if source is not None:
            clauses.append("source = ?")
            params.append(source)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if device_id is not None:
            clauses.append("device_id = ?")
            params.append(device_id)
        if created_before is not None:
            clauses.append("created_at < ?")
            params.append(created_before)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        results = self.db.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks{where} ORDER BY created_at ASC",
            tuple(params)
        )
        for row in results:
            yield TaskRecord.from_row(row)

    def ids(self, source: str) -> Set[str]:
        results = self.db.execute("SELECT id FROM tasks WHERE source = ?", (source,))
        return {r["id"] for r in results}

    def list_page(self, device_id: str, limit: int = 20, offset: int = 0) -> List[TaskRecord]:
        """Tasks for a device, newest first."""
        results = self.db.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE device_id = ? "
            "ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (device_id, limit, offset)
        )
        return [TaskRecord.from_row(r) for r in results]

    def count(self, device_id: str) -> int:
        results = self.db.execute(
            "SELECT COUNT(*) AS cnt FROM tasks WHERE device_id = ?",
            (device_id,)
        )
        return results[0]["cnt"] if results else 0

    def status_counts(self, device_id: str) -> Dict[str, int]:
        results = self.db.execute(
            "SELECT status, COUNT(*) AS cnt FROM tasks WHERE device_id = ? GROUP BY status",
            (device_id,)
        )
        return {r["status"]: r["cnt"] for r in results}

    def rename_status(self, source: str, old: str, new: str) -> int:
        """Rewrite a stored status value for one source. Returns rows changed."""
        with self.transaction():
            results = self.db.execute(
                "SELECT id FROM tasks WHERE source = ? AND status = ?",
                (source, old)
            )
            if not results:
                return 0
            now = utc_now()
            self.db.execute_many(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                [(new, now, r["id"], old) for r in results]
            )
        return len(results)


class EarningRepository(_Repository):
    """Repository for earning records."""

    def get(self, earning_id: str, for_update: bool = False) -> Optional[EarningRecord]:
        query = f"SELECT {_EARNING_COLUMNS} FROM earnings WHERE id = ?"
        if for_update:
            query += self._for_update()
        results = self.db.execute(query, (earning_id,))
        return EarningRecord.from_row(results[0]) if results else None

    def upsert(self, earning: EarningRecord) -> EarningRecord:
        self.db.execute(_upsert_sql("earnings", _EARNING_COLUMNS), earning.to_db_tuple())
        return earning

    def iterate(
        self,
        device_id: Optional[str] = None,
        source: Optional[str] = None,
        since: Optional[str] = None,
    ) -> Iterator[EarningRecord]:
        """Iterate earnings matching all given filters, oldest first."""
        clauses = []
        params: List[Any] = []
        if device_id is not None:
            clauses.append("device_id = ?")
            params.append(device_id)
        if source is not None:
            clauses.append("source = ?")
            params.append(source)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        results = self.db.execute(
            f"SELECT {_EARNING_COLUMNS} FROM earnings{where} ORDER BY created_at ASC",
            tuple(params)
        )
        for row in results:
            yield EarningRecord.from_row(row)

    def list_recent(self, device_id: str, limit: int = 100) -> List[EarningRecord]:
        results = self.db.execute(
            f"SELECT {_EARNING_COLUMNS} FROM earnings WHERE device_id = ? "
            "ORDER BY created_at DESC LIMIT ?",
            (device_id, limit)
        )
        return [EarningRecord.from_row(r) for r in results]

    def for_task(self, task_id: str) -> List[EarningRecord]:
        results = self.db.execute(
            f"SELECT {_EARNING_COLUMNS} FROM earnings WHERE task_id = ?",
            (task_id,)
        )
        return [EarningRecord.from_row(r) for r in results]
