"""
NODE LEDGER - FastAPI Server

Metered inference pass-through plus read access to the local ledger.

Endpoints:
- GET  /health - Liveness, device and sync state
- GET  /tasks - Paginated task history
- GET  /tasks/stats - Task counts per status
- GET  /tasks/{task_id} - One task
- GET  /earnings - Recent earnings
- GET  /earnings/summary - Reward totals
- GET  /rates - Rate catalog and metered routes
- GET  /sync/status - Cumulative sync statistics
- POST /sync/run - Run task sync, earnings sync and the stale sweep once
- POST /api/*, /ollama/api/*, /openai/* - Inference routes, metered
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import structlog

import httpx
from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .. import __version__
from ..billing import EarningsCalculator, RateCatalog, RequestClassifier
from ..billing.classifier import ROUTE_TABLE
from ..config import DeviceIdentity, NodeSettings
from ..core.errors import NotFound
from ..ledger import EarningsLedger, TaskLedger
from ..metering import MeteringInterceptor, MeteringMiddleware, metered_routes
from ..persistence import DeviceRepository, EarningRepository, TaskRepository, get_database
from ..sync import GatewayClient, GatewaySyncEngine
from .backend import ProxyBackend

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    device_id: str
    registered: bool
    sync_enabled: bool
    framework: str
    uptime_seconds: float


class TaskResponse(BaseModel):
    """A task as stored in the ledger."""
    id: str
    model: str
    device_id: str
    status: str
    source: str
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    total_duration: int = 0
    load_duration: int = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0


class TaskPageResponse(BaseModel):
    """One page of task history."""
    page: int
    limit: int
    total: int
    tasks: List[TaskResponse]


class EarningResponse(BaseModel):
    """An earning as stored in the ledger."""
    id: str
    task_id: Optional[str] = None
    device_id: str
    block_rewards: float
    job_rewards: float
    source: str
    created_at: str
    updated_at: str


class EarningsSummaryResponse(BaseModel):
    """Reward totals for the node's device."""
    device_id: str
    count: int
    block_rewards: float
    job_rewards: float
    total_rewards: float
    today: float
    week: float
    month: float


class SyncRunResponse(BaseModel):
    """Results of a manual sync run."""
    results: Dict[str, Dict[str, Any]]
    statistics: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(
        self,
        settings: NodeSettings,
        device: DeviceIdentity,
        backend_transport: Optional[httpx.AsyncBaseTransport] = None,
        gateway_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.device = device

        self.db = get_database(settings.database_url)
        self.device_repo = DeviceRepository(self.db)
        self.task_repo = TaskRepository(self.db)
        self.earning_repo = EarningRepository(self.db)
        self.device_repo.register(device.device_id)

        self.tasks = TaskLedger(self.task_repo)
        self.earnings = EarningsLedger(self.earning_repo, self.task_repo, self.device_repo)

        self.catalog = RateCatalog()
        self.calculator = EarningsCalculator()
        self.classifier = RequestClassifier(settings.inference_framework)
        self.interceptor = MeteringInterceptor(
            classifier=self.classifier,
            catalog=self.catalog,
            calculator=self.calculator,
            tasks=self.tasks,
            earnings=self.earnings,
            device=device,
        )

        self.gateway: Optional[GatewayClient] = None
        if device.gateway_address:
            self.gateway = GatewayClient(device, timeout=settings.gateway_timeout, transport=gateway_transport)
        self.engine = GatewaySyncEngine(self.tasks, self.earnings, self.gateway, device, settings)

        self.backend = ProxyBackend(settings.inference_backend_url, transport=backend_transport)
        self.start_time = datetime.now(timezone.utc)

    async def close(self) -> None:
        await self.engine.stop()
        if self.gateway is not None:
            await self.gateway.close()
        await self.backend.close()
        self.db.close()


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = getattr(request.app.state, "node", None)
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Application Factory
# ============================================================================

def create_app(
    settings: Optional[NodeSettings] = None,
    device: Optional[DeviceIdentity] = None,
    backend_transport: Optional[httpx.AsyncBaseTransport] = None,
    gateway_transport: Optional[httpx.AsyncBaseTransport] = None,
    start_sync: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or NodeSettings.from_env()
    device = device or DeviceIdentity.from_env()
    node = AppState(settings, device, backend_transport, gateway_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "node_ledger_starting",
            version=__version__,
            device_id=device.device_id,
            registered=device.is_registered(),
            framework=settings.inference_framework,
        )
        if start_sync:
            node.engine.start()
        yield
        logger.info("node_ledger_stopping")
        await node.close()

    application = FastAPI(
        title="Node Ledger",
        description="""
# Task & Earnings Ledger for Inference Nodes

Every inference call served by this node is metered into a **task** and an
**earning**. Once the device is registered, the gateway's ledger is pulled
in periodically and kept reconciled with the local one.
        """,
        version=__version__,
        lifespan=lifespan,
    )
    application.state.node = node

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(MeteringMiddleware, interceptor=node.interceptor)

    _register_ledger_routes(application)
    _register_inference_routes(application)
    return application


# ============================================================================
# Endpoints
# ============================================================================

def _register_ledger_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(state: AppState = Depends(get_state)):
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
        return HealthResponse(
            status="healthy",
            version=__version__,
            device_id=state.device.device_id,
            registered=state.device.is_registered(),
            sync_enabled=state.device.can_sync(),
            framework=state.settings.inference_framework,
            uptime_seconds=uptime,
        )

    @app.get("/tasks", response_model=TaskPageResponse, tags=["Ledger"])
    async def list_tasks(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=500),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """Task history for this device, newest first."""
        return state.tasks.list_for_device(state.device.device_id, page=page, limit=limit)

    @app.get("/tasks/stats", tags=["Ledger"])
    async def task_statistics(
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """Task counts per status."""
        return state.tasks.statistics(state.device.device_id)

    @app.get("/tasks/{task_id}", response_model=TaskResponse, tags=["Ledger"])
    async def get_task(
        task_id: str,
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        try:
            task = state.tasks.get(task_id)
        except NotFound:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        return task.to_dict()

    @app.get("/earnings", response_model=List[EarningResponse], tags=["Ledger"])
    async def list_earnings(
        limit: int = Query(100, ge=1, le=1000),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """Most recent earnings for this device."""
        return [e.to_dict() for e in state.earnings.list_recent(state.device.device_id, limit=limit)]

    @app.get("/earnings/summary", response_model=EarningsSummaryResponse, tags=["Ledger"])
    async def earnings_summary(
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        return state.earnings.summary(state.device.device_id)

    @app.get("/rates", tags=["Billing"])
    async def get_rates(
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """Rate catalog and the routes it prices."""
        return {
            "rates": state.catalog.to_dict(),
            "default": state.catalog.default_rate.to_dict(),
            "summary": state.catalog.summary(),
            "routes": metered_routes(state.interceptor),
        }

    @app.get("/sync/status", tags=["Sync"])
    async def sync_status(
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        return {
            "enabled": state.device.can_sync(),
            "running": state.engine.running,
            "statistics": state.engine.statistics.to_dict(),
        }

    @app.post("/sync/run", response_model=SyncRunResponse, tags=["Sync"])
    async def run_sync(
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """
        Run every sync job once.

        Jobs that cannot run (unregistered device) report ran=false.
        """
        results = await state.engine.run_once()
        return SyncRunResponse(
            results={name: r.to_dict() for name, r in results.items()},
            statistics=state.engine.statistics.to_dict(),
        )


def _register_inference_routes(app: FastAPI) -> None:

    async def forward(request: Request):
        state = get_state(request)
        body = await request.body()
        return await state.backend.forward(
            request.method,
            request.url.path,
            body,
            headers=request.headers.items(),
            query=request.url.query,
        )

    for route in sorted(ROUTE_TABLE):
        app.add_api_route(route, forward, methods=["POST"], tags=["Inference"], include_in_schema=True)


# ============================================================================
# Run
# ============================================================================

def run(host: str = "0.0.0.0", port: Optional[int] = None, reload: bool = False) -> None:
    """Run the server."""
    import uvicorn
    settings = NodeSettings.from_env()
    uvicorn.run(
        "node_ledger.api.server:create_app",
        factory=True,
        host=host,
        port=port or settings.port,
        reload=reload,
    )


if __name__ == "__main__":
    run()
