"""
Tests for the Gateway Sync Engine

Reconciliation of the gateway partition under duplicate delivery,
missing references and gateway outages.
"""

import asyncio

import httpx
import pytest

from node_ledger.config import DeviceIdentity, NodeSettings
from node_ledger.core import NotFound, Source, TaskStatus
from node_ledger.sync import GatewayClient, GatewaySyncEngine

from conftest import DEVICE_ID


class FakeGateway:
    """Serves fixed task and earning pages and counts requests."""

    def __init__(self, tasks=None, earnings=None, status_code=200):
        self.tasks = tasks or []
        self.earnings = earnings or []
        self.status_code = status_code
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "unavailable"})
        records = self.tasks if request.url.path.endswith("/tasks") else self.earnings
        page = int(request.url.params.get("page", 1))
        size = int(request.url.params.get("pageSize", 100))
        chunk = records[(page - 1) * size:page * size]
        return httpx.Response(200, json={"success": True, "data": {"data": chunk}})


def _engine(task_ledger, earnings_ledger, device, gateway, **settings):
    client = GatewayClient(device, transport=httpx.MockTransport(gateway))
    return GatewaySyncEngine(task_ledger, earnings_ledger, client, device, NodeSettings(**settings))


def _run(engine, job):
    async def run():
        try:
            return await getattr(engine, job)()
        finally:
            if engine.client is not None:
                await engine.client.close()

    return asyncio.run(run())


class TestPreconditions:
    """Test that sync is a no-op until the device can sync."""

    @pytest.mark.parametrize("device", [
        DeviceIdentity(device_id=DEVICE_ID),
        DeviceIdentity(device_id=DEVICE_ID, gateway_address="http://gw", auth_key="k", registered=False),
        DeviceIdentity(device_id=DEVICE_ID, gateway_address="http://gw", registered=True),
    ])
    def test_not_ready_is_noop(self, task_ledger, earnings_ledger, device):
        gateway = FakeGateway(tasks=[{"id": "t1", "model": "m", "status": "running"}])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "run_once")

        assert not result["tasks"].ran
        assert not result["earnings"].ran
        assert gateway.requests == []
        assert task_ledger.gateway_task_ids() == set()

    def test_no_client(self, task_ledger, earnings_ledger, device):
        engine = GatewaySyncEngine(task_ledger, earnings_ledger, None, device)
        assert not asyncio.run(engine.sync_tasks()).ran


class TestTaskSync:
    """Test pulling gateway tasks."""

    def test_tasks_created_as_gateway(self, task_ledger, earnings_ledger, device):
        gateway = FakeGateway(tasks=[
            {"id": "t1", "model": "llama3", "status": "running", "source": "local"},
            {"id": "t2", "model": "llama3", "status": "succeed", "device_id": DEVICE_ID, "eval_count": 4},
        ])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_tasks")

        assert (result.fetched, result.created, result.updated, result.errors) == (2, 2, 0, 0)
        t1 = task_ledger.get("t1")
        assert t1.source == Source.GATEWAY
        assert t1.device_id == DEVICE_ID
        assert task_ledger.get("t2").status == TaskStatus.COMPLETED
        assert task_ledger.get("t2").eval_count == 4

    def test_double_tick_is_idempotent(self, task_ledger, earnings_ledger, device):
        gateway = FakeGateway(tasks=[{"id": "t1", "model": "llama3", "status": "completed", "eval_count": 3}])
        first = _engine(task_ledger, earnings_ledger, device, gateway)
        _run(first, "sync_tasks")
        before = task_ledger.get("t1").to_dict()

        second = _engine(task_ledger, earnings_ledger, device, gateway)
        result = _run(second, "sync_tasks")
        after = task_ledger.get("t1").to_dict()

        assert (result.created, result.updated) == (0, 1)
        before.pop("updated_at")
        after.pop("updated_at")
        assert before == after
        assert task_ledger.statistics(DEVICE_ID)["total"] == 1

    def test_local_task_never_overwritten(self, task_ledger, earnings_ledger, device):
        local = task_ledger.create("llama3", DEVICE_ID)
        gateway = FakeGateway(tasks=[
            {"id": local.id, "model": "evil", "status": "failed"},
            {"id": "t2", "model": "llama3", "status": "running"},
        ])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_tasks")

        assert result.errors == 1
        assert result.created == 1
        assert task_ledger.get(local.id).status == TaskStatus.RUNNING
        assert task_ledger.get(local.id).model == "llama3"

    def test_bad_record_does_not_abort_page(self, task_ledger, earnings_ledger, device):
        gateway = FakeGateway(tasks=[
            {"model": "no-id"},
            {"id": "t1", "model": "m", "status": "exploded"},
            {"id": "t2", "model": "m", "status": "pending"},
        ])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_tasks")

        assert result.errors == 2
        assert task_ledger.gateway_task_ids() == {"t2"}

    def test_legacy_statuses_normalized_first(self, task_ledger, earnings_ledger, device, db):
        db.execute(
            "INSERT INTO tasks (id, model, device_id, status, source, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            ("old", "m", DEVICE_ID, "succeed", "gateway", "2024-01-01T00:00:00+00:00",
             "2024-01-01T00:00:00+00:00")
        )
        engine = _engine(task_ledger, earnings_ledger, device, FakeGateway())

        _run(engine, "sync_tasks")

        assert db.execute("SELECT status FROM tasks WHERE id = 'old'")[0]["status"] == "completed"

    def test_gateway_outage_abandons_tick(self, task_ledger, earnings_ledger, device):
        engine = _engine(task_ledger, earnings_ledger, device, FakeGateway(status_code=503))

        result = _run(engine, "sync_tasks")

        assert result.error is not None
        assert engine.statistics.tasks.failures == 1
        assert task_ledger.gateway_task_ids() == set()

    def test_store_error_does_not_block_page(self, task_ledger, earnings_ledger, device, monkeypatch):
        task_ledger.upsert_from_gateway({"id": "t1", "model": "m", "status": "running"}, DEVICE_ID)
        real_upsert = task_ledger.repository.upsert

        def upsert(task):
            if task.id == "t1":
                raise RuntimeError("store rejected record")
            return real_upsert(task)

        monkeypatch.setattr(task_ledger.repository, "upsert", upsert)
        gateway = FakeGateway(tasks=[
            {"id": "t1", "model": {"name": "m"}},
            {"id": "t2", "model": "m", "status": "running"},
        ])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_tasks")

        assert result.error is None
        assert (result.created, result.errors) == (1, 1)
        assert task_ledger.gateway_task_ids() == {"t1", "t2"}

    def test_non_scalar_fields_are_stored(self, task_ledger, earnings_ledger, device):
        task_ledger.upsert_from_gateway({"id": "t1", "model": "m", "status": "running"}, DEVICE_ID)
        gateway = FakeGateway(tasks=[
            {"id": "t1", "model": {"name": "m"}},
            {"id": "t2", "model": "m", "status": "running"},
        ])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_tasks")

        assert (result.created, result.updated, result.errors) == (1, 1, 0)
        assert task_ledger.gateway_task_ids() == {"t1", "t2"}

    def test_multiple_pages(self, task_ledger, earnings_ledger, device):
        tasks = [{"id": f"t{i}", "model": "m", "status": "running"} for i in range(5)]
        gateway = FakeGateway(tasks=tasks)
        engine = _engine(task_ledger, earnings_ledger, device, gateway, sync_page_size=2, sync_max_pages=10)

        result = _run(engine, "sync_tasks")

        assert result.pages == 3
        assert result.created == 5

    def test_single_page_by_default(self, task_ledger, earnings_ledger, device):
        tasks = [{"id": f"t{i}", "model": "m", "status": "running"} for i in range(5)]
        engine = _engine(task_ledger, earnings_ledger, device, FakeGateway(tasks=tasks), sync_page_size=2)

        result = _run(engine, "sync_tasks")

        assert result.pages == 1
        assert task_ledger.gateway_task_ids() == {"t0", "t1"}


class TestEarningsSync:
    """Test pulling gateway earnings."""

    def test_earning_with_unknown_task_skipped(self, task_ledger, earnings_ledger, earning_repo, device):
        task_ledger.upsert_from_gateway({"id": "A", "model": "m", "status": "completed"}, DEVICE_ID)
        gateway = FakeGateway(earnings=[
            {"id": "e1", "task_id": "A", "job_rewards": 0.2},
            {"id": "e2", "task_id": "B", "job_rewards": 0.3},
        ])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_earnings")

        assert (result.created, result.skipped, result.errors) == (1, 1, 0)
        assert [e.id for e in earning_repo.iterate()] == ["e1"]
        assert earnings_ledger.get("e1").source == Source.GATEWAY

    def test_skip_does_not_stop_batch(self, task_ledger, earnings_ledger, device):
        task_ledger.upsert_from_gateway({"id": "A", "model": "m", "status": "completed"}, DEVICE_ID)
        gateway = FakeGateway(earnings=[
            {"id": "e1", "task_id": "t-missing", "job_rewards": 0.5},
            {"id": "e2", "task_id": "A", "job_rewards": 0.2},
            {"id": "e3", "task_id": None, "block_rewards": 1.0},
        ])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_earnings")

        assert (result.created, result.skipped) == (2, 1)
        assert earnings_ledger.get("e2").task_id == "A"
        assert earnings_ledger.get("e3").block_rewards == 1.0
        with pytest.raises(NotFound):
            earnings_ledger.get("e1")

    def test_earning_without_task(self, task_ledger, earnings_ledger, device):
        gateway = FakeGateway(earnings=[{"id": "e1", "task_id": None, "block_rewards": 3.0}])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_earnings")

        assert result.created == 1
        earning = earnings_ledger.get("e1")
        assert earning.task_id is None
        assert earning.device_id == DEVICE_ID

    def test_local_task_reference_is_skipped(self, task_ledger, earnings_ledger, device):
        """Gateway earnings may only reference gateway tasks."""
        local = task_ledger.create("llama3", DEVICE_ID)
        gateway = FakeGateway(earnings=[{"id": "e1", "task_id": local.id, "job_rewards": 0.1}])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_earnings")

        assert result.skipped == 1

    def test_unknown_device_is_record_error(self, task_ledger, earnings_ledger, device):
        gateway = FakeGateway(earnings=[
            {"id": "e1", "device_id": "someone-else", "job_rewards": 0.1},
            {"id": "e2", "job_rewards": 0.1},
        ])
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        result = _run(engine, "sync_earnings")

        assert (result.created, result.errors) == (1, 1)


class TestRunOnce:
    """Test the combined run and statistics."""

    def test_run_once_orders_tasks_before_earnings(self, task_ledger, earnings_ledger, device):
        gateway = FakeGateway(
            tasks=[{"id": "A", "model": "m", "status": "completed"}],
            earnings=[{"id": "e1", "task_id": "A", "job_rewards": 0.5}],
        )
        engine = _engine(task_ledger, earnings_ledger, device, gateway)

        results = _run(engine, "run_once")

        assert results["tasks"].created == 1
        assert results["earnings"].created == 1
        assert results["sweep"].updated == 0
        stats = engine.statistics.to_dict()
        assert stats["tasks"]["runs"] == 1
        assert stats["earnings"]["created"] == 1
