"""
Earnings Ledger

Payout records with referential integrity checks:
- device_id must name a known device
- task_id, when present, must name an existing task at write time

An earning with no task is allowed (e.g. block rewards not tied to a job).
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple
import structlog

from ..core.errors import NotFound, ImmutableSourceViolation, ReferentialIntegrityViolation
from ..core.task import Source, normalize_source
from ..persistence.models import EarningRecord, utc_now, normalize_timestamp
from ..persistence.repository import DeviceRepository, EarningRepository, TaskRepository

logger = structlog.get_logger()

_MUTABLE_FIELDS = ("task_id", "device_id", "block_rewards", "job_rewards")


def _reward(value: Any) -> float:
    amount = float(value or 0.0)
    if amount < 0:
        raise ValueError(f"Reward must be non-negative, got {amount}")
    return amount


class EarningsLedger:
    """Lifecycle owner for Earning records."""

    def __init__(
        self,
        repository: EarningRepository,
        tasks: TaskRepository,
        devices: DeviceRepository,
    ):
        self.repository = repository
        self.tasks = tasks
        self.devices = devices

    def _check_references(self, device_id: str, task_id: Optional[str], earning_id: Optional[str] = None) -> None:
        if not device_id or not self.devices.exists(device_id):
            raise ReferentialIntegrityViolation("device_id", device_id, earning_id)
        if task_id is not None and self.tasks.get(task_id) is None:
            raise ReferentialIntegrityViolation("task_id", task_id, earning_id)

    def create(
        self,
        block_rewards: float,
        job_rewards: float,
        task_id: Optional[str],
        device_id: str,
        source: Source = Source.LOCAL,
    ) -> EarningRecord:
        """
        Record a payout.

        Raises:
            ReferentialIntegrityViolation: unknown device, or task_id set
                but no such task
        """
        now = utc_now()
        earning = EarningRecord(
            id=str(uuid.uuid4()),
            device_id=device_id,
            task_id=task_id,
            block_rewards=_reward(block_rewards),
            job_rewards=_reward(job_rewards),
            source=normalize_source(source),
            created_at=now,
            updated_at=now,
        )

        with self.repository.transaction():
            self._check_references(device_id, task_id, earning.id)
            self.repository.upsert(earning)

        logger.info(
            "earning_created",
            earning_id=earning.id,
            task_id=task_id,
            device_id=device_id,
            job_rewards=earning.job_rewards,
            source=earning.source.value,
        )
        return earning

    def update(
        self,
        earning_id: str,
        partial: Mapping[str, Any],
        authority: Source = Source.LOCAL,
    ) -> EarningRecord:
        with self.repository.transaction():
            earning = self.repository.get(earning_id, for_update=True)
            if earning is None:
                raise NotFound("earning", earning_id)
            if earning.source != authority:
                raise ImmutableSourceViolation("earning", earning_id, earning.source.value, authority.value)

            updated = self._merge(earning, partial)
            self._check_references(updated.device_id, updated.task_id, earning_id)
            self.repository.upsert(updated)
        return updated

    def _merge(self, earning: EarningRecord, partial: Mapping[str, Any]) -> EarningRecord:
        values = earning.to_dict()
        for key in _MUTABLE_FIELDS:
            if key in partial:
                values[key] = partial[key]
        values["block_rewards"] = _reward(values["block_rewards"])
        values["job_rewards"] = _reward(values["job_rewards"])
        values["updated_at"] = utc_now()
        return EarningRecord.from_row(values)

    def upsert_from_gateway(
        self,
        remote: Mapping[str, Any],
        device_id: str,
        known_task_ids: Optional[Set[str]] = None,
    ) -> Tuple[EarningRecord, bool]:
        """
        Find-or-create a gateway earning from a remote record.

        known_task_ids lets a sync run check task references against one
        snapshot instead of querying per record.
        Returns (earning, created).
        """
        earning_id = remote.get("id")
        if not earning_id:
            raise ValueError("Remote earning has no id")
        earning_id = str(earning_id)

        task_id = remote.get("task_id")
        task_id = str(task_id) if task_id else None
        if task_id is not None and known_task_ids is not None and task_id not in known_task_ids:
            raise ReferentialIntegrityViolation("task_id", task_id, earning_id)

        with self.repository.transaction():
            existing = self.repository.get(earning_id, for_update=True)

            if existing is None:
                now = utc_now()
                earning = EarningRecord(
                    id=earning_id,
                    device_id=str(remote.get("device_id") or device_id),
                    task_id=task_id,
                    block_rewards=_reward(remote.get("block_rewards")),
                    job_rewards=_reward(remote.get("job_rewards")),
                    source=Source.GATEWAY,
                    created_at=normalize_timestamp(remote.get("created_at")),
                    updated_at=now,
                )
                self._check_references(earning.device_id, task_id, earning_id)
                self.repository.upsert(earning)
                return earning, True

            if existing.source != Source.GATEWAY:
                raise ImmutableSourceViolation("earning", earning_id, existing.source.value, Source.GATEWAY.value)

            partial = {key: remote[key] for key in _MUTABLE_FIELDS if remote.get(key) is not None}
            partial["task_id"] = task_id
            partial["device_id"] = str(partial.get("device_id") or existing.device_id)
            updated = self._merge(existing, partial)
            self._check_references(updated.device_id, task_id, earning_id)
            self.repository.upsert(updated)
            return updated, False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, earning_id: str) -> EarningRecord:
        earning = self.repository.get(earning_id)
        if earning is None:
            raise NotFound("earning", earning_id)
        return earning

    def for_task(self, task_id: str) -> List[EarningRecord]:
        return self.repository.for_task(task_id)

    def list_recent(self, device_id: str, limit: int = 100) -> List[EarningRecord]:
        return self.repository.list_recent(device_id, limit=max(1, min(limit, 1000)))

    def summary(self, device_id: str) -> Dict[str, Any]:
        """
        Reward totals for a device.

        Windows (today, this week, this month) are measured from UTC
        midnight, Monday, and the first of the month respectively.
        """
        now = datetime.now(timezone.utc)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        windows = {
            "today": midnight,
            "week": midnight - timedelta(days=midnight.weekday()),
            "month": midnight.replace(day=1),
        }

        totals = {"block_rewards": 0.0, "job_rewards": 0.0}
        period = {name: 0.0 for name in windows}
        count = 0
        for earning in self.repository.iterate(device_id=device_id):
            count += 1
            totals["block_rewards"] += earning.block_rewards
            totals["job_rewards"] += earning.job_rewards
            created = datetime.fromisoformat(earning.created_at)
            for name, start in windows.items():
                if created >= start:
                    period[name] += earning.total_rewards

        return {
            "device_id": device_id,
            "count": count,
            "block_rewards": round(totals["block_rewards"], 6),
            "job_rewards": round(totals["job_rewards"], 6),
            "total_rewards": round(totals["block_rewards"] + totals["job_rewards"], 6),
            **{name: round(value, 6) for name, value in period.items()},
        }
