"""
Gateway Sync Engine

Keeps the gateway partition of the local ledger reconciled with the
gateway. Three independent periodic jobs:

    task-sync      every TASK_SYNC_INTERVAL seconds (default 5)
    earnings-sync  every EARNINGS_SYNC_INTERVAL seconds (default 10)
    stale sweep    every STALE_SWEEP_INTERVAL seconds (default 60)

The sync jobs are no-ops until the device is registered and holds a
gateway address and auth key. Each record is upserted on its own, so a
duplicate or out-of-order page converges to the same state, and one bad
record never aborts the rest of its page. A failed page fetch abandons
only that tick; the next tick retries.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
import structlog

from ..config import DeviceIdentity, NodeSettings
from ..core.errors import RemoteUnavailable
from ..core.task import Source
from ..ledger.earnings import EarningsLedger
from ..ledger.tasks import TaskLedger
from .client import GatewayClient

logger = structlog.get_logger()


@dataclass
class SyncResult:
    """Outcome of one job run."""
    job: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    pages: int = 0
    duration_ms: float = 0.0
    ran: bool = True
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "ran": self.ran,
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "pages": self.pages,
            "duration_ms": round(self.duration_ms, 1),
            "error": self.error,
        }


@dataclass
class JobStatistics:
    """Cumulative counters for one job."""
    runs: int = 0
    failures: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None

    def record(self, result: SyncResult) -> None:
        self.runs += 1
        self.created += result.created
        self.updated += result.updated
        self.skipped += result.skipped
        self.errors += result.errors
        self.last_run_at = datetime.now(timezone.utc).isoformat()
        if result.error:
            self.failures += 1
            self.last_error = result.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "failures": self.failures,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
        }


@dataclass
class SyncStatistics:
    """Cumulative statistics exposed through the API."""
    tasks: JobStatistics = field(default_factory=JobStatistics)
    earnings: JobStatistics = field(default_factory=JobStatistics)
    sweeps: JobStatistics = field(default_factory=JobStatistics)
    swept_tasks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks": self.tasks.to_dict(),
            "earnings": self.earnings.to_dict(),
            "sweeps": self.sweeps.to_dict(),
            "swept_tasks": self.swept_tasks,
        }


class GatewaySyncEngine:
    """
    Periodic reconciliation of the gateway partition.

    Usage:
        engine = GatewaySyncEngine(tasks, earnings, client, device, settings)
        engine.start()        # inside a running event loop
        ...
        await engine.stop()

    run_once() runs every job a single time, for the CLI and tests.
    """

    def __init__(
        self,
        tasks: TaskLedger,
        earnings: EarningsLedger,
        client: Optional[GatewayClient],
        device: DeviceIdentity,
        settings: Optional[NodeSettings] = None,
    ):
        self.tasks = tasks
        self.earnings = earnings
        self.client = client
        self.device = device
        self.settings = settings or NodeSettings()
        self.statistics = SyncStatistics()
        self._jobs: List[asyncio.Task] = []
        self._stopping: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return any(not job.done() for job in self._jobs)

    def _can_sync(self) -> bool:
        return self.client is not None and self.device.can_sync()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def _fetch_pages(self, fetch: Callable[..., Awaitable[List[Dict[str, Any]]]], result: SyncResult) -> List[Dict[str, Any]]:
        page_size = max(1, self.settings.sync_page_size)
        records: List[Dict[str, Any]] = []
        for page in range(1, max(1, self.settings.sync_max_pages) + 1):
            batch = await fetch(page=page, page_size=page_size)
            result.pages += 1
            records.extend(batch)
            if len(batch) < page_size:
                break
        result.fetched = len(records)
        return records

    async def sync_tasks(self) -> SyncResult:
        """Pull gateway tasks into the local ledger."""
        result = SyncResult(job="tasks")
        if not self._can_sync():
            result.ran = False
            return result

        started = time.monotonic()
        try:
            await asyncio.to_thread(self.tasks.normalize_status_vocabulary)
            records = await self._fetch_pages(self.client.fetch_tasks, result)
            await asyncio.to_thread(self._apply_tasks, records, result)
        except RemoteUnavailable as e:
            result.error = str(e)
            logger.warning("task_sync_aborted", error=str(e))
        finally:
            result.duration_ms = (time.monotonic() - started) * 1000
            self.statistics.tasks.record(result)

        if result.fetched:
            logger.info("task_sync_completed", **result.to_dict())
        return result

    def _apply_tasks(self, records: List[Dict[str, Any]], result: SyncResult) -> None:
        for remote in records:
            record = dict(remote)
            record["source"] = Source.GATEWAY.value
            if not record.get("device_id"):
                record["device_id"] = self.device.device_id
            try:
                _, created = self.tasks.upsert_from_gateway(record, self.device.device_id)
            except Exception as e:
                result.errors += 1
                logger.warning("task_sync_record_failed", task_id=remote.get("id"), error=str(e))
                continue
            if created:
                result.created += 1
            else:
                result.updated += 1

    async def sync_earnings(self) -> SyncResult:
        """Pull gateway earnings, skipping any whose task is not known locally."""
        result = SyncResult(job="earnings")
        if not self._can_sync():
            result.ran = False
            return result

        started = time.monotonic()
        try:
            records = await self._fetch_pages(self.client.fetch_earnings, result)
            await asyncio.to_thread(self._apply_earnings, records, result)
        except RemoteUnavailable as e:
            result.error = str(e)
            logger.warning("earnings_sync_aborted", error=str(e))
        finally:
            result.duration_ms = (time.monotonic() - started) * 1000
            self.statistics.earnings.record(result)

        if result.fetched:
            logger.info("earnings_sync_completed", **result.to_dict())
        return result

    def _apply_earnings(self, records: List[Dict[str, Any]], result: SyncResult) -> None:
        known_task_ids = self.tasks.gateway_task_ids()
        for remote in records:
            task_id = remote.get("task_id")
            if task_id and str(task_id) not in known_task_ids:
                result.skipped += 1
                logger.warning(
                    "earning_skipped_unknown_task",
                    earning_id=remote.get("id"),
                    task_id=task_id,
                )
                continue

            record = dict(remote)
            record["source"] = Source.GATEWAY.value
            if not record.get("device_id"):
                record["device_id"] = self.device.device_id
            try:
                _, created = self.earnings.upsert_from_gateway(record, self.device.device_id, known_task_ids)
            except Exception as e:
                result.errors += 1
                logger.warning("earning_sync_record_failed", earning_id=remote.get("id"), error=str(e))
                continue
            if created:
                result.created += 1
            else:
                result.updated += 1

    async def sweep_stale(self) -> SyncResult:
        """Fail local tasks stuck in running past the stale timeout."""
        result = SyncResult(job="sweep")
        started = time.monotonic()
        try:
            result.updated = await asyncio.to_thread(self.tasks.sweep_stale, self.settings.stale_task_timeout)
            self.statistics.swept_tasks += result.updated
        finally:
            result.duration_ms = (time.monotonic() - started) * 1000
            self.statistics.sweeps.record(result)
        return result

    async def run_once(self) -> Dict[str, SyncResult]:
        """Run every job once, tasks before earnings."""
        return {
            "tasks": await self.sync_tasks(),
            "earnings": await self.sync_earnings(),
            "sweep": await self.sweep_stale(),
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _periodic(self, name: str, interval: float, job: Callable[[], Awaitable[SyncResult]]) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                await job()
            except Exception as e:
                logger.error("sync_job_failed", job=name, error=str(e))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        """Schedule the periodic jobs on the running event loop."""
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._jobs = [
            asyncio.create_task(self._periodic("tasks", self.settings.task_sync_interval, self.sync_tasks)),
            asyncio.create_task(self._periodic("earnings", self.settings.earnings_sync_interval, self.sync_earnings)),
            asyncio.create_task(self._periodic("sweep", self.settings.stale_sweep_interval, self.sweep_stale)),
        ]
        logger.info(
            "sync_engine_started",
            device_id=self.device.device_id,
            can_sync=self._can_sync(),
            task_interval=self.settings.task_sync_interval,
            earnings_interval=self.settings.earnings_sync_interval,
        )

    async def stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()
        if self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)
        self._jobs = []
        logger.info("sync_engine_stopped")
