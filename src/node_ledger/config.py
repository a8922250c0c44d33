"""
Node Configuration

Settings and device identity are plain dataclasses built once at startup
and passed explicitly to the app, the sync engine and the interceptor.
Values come from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional


def _env_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DeviceIdentity:
    """
    The node's identity towards the gateway.

    A device only synchronizes once it is registered and holds both a
    gateway address and an auth key.
    """
    device_id: str
    gateway_address: Optional[str] = None
    auth_key: Optional[str] = None
    registered: bool = False

    def is_registered(self) -> bool:
        return self.registered

    def can_sync(self) -> bool:
        return self.registered and bool(self.gateway_address) and bool(self.auth_key)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DeviceIdentity":
        env = os.environ if environ is None else environ
        gateway = env.get("GATEWAY_ADDRESS") or None
        return cls(
            device_id=env.get("DEVICE_ID", "local-device"),
            gateway_address=gateway.rstrip("/") if gateway else None,
            auth_key=env.get("GATEWAY_AUTH_KEY") or None,
            registered=_env_bool(env.get("DEVICE_REGISTERED")),
        )


@dataclass
class NodeSettings:
    """Runtime settings for the ledger service."""
    database_url: str = "sqlite:///node_ledger.db"
    api_key: str = "dev-key-change-in-production"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # Inference backend reached by the pass-through routes
    inference_backend_url: str = "http://127.0.0.1:11434"
    inference_framework: str = "ollama"

    # Seconds
    task_sync_interval: float = 5.0
    earnings_sync_interval: float = 10.0
    stale_sweep_interval: float = 60.0
    stale_task_timeout: float = 300.0
    gateway_timeout: float = 10.0

    sync_page_size: int = 100
    sync_max_pages: int = 1

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "NodeSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            database_url=env.get("DATABASE_URL", defaults.database_url),
            api_key=env.get("API_KEY", defaults.api_key),
            port=int(env.get("PORT", defaults.port)),
            cors_origins=env.get("CORS_ORIGINS", "*").split(","),
            inference_backend_url=env.get("INFERENCE_BACKEND_URL", defaults.inference_backend_url),
            inference_framework=env.get("INFERENCE_FRAMEWORK", defaults.inference_framework).lower(),
            task_sync_interval=float(env.get("TASK_SYNC_INTERVAL", defaults.task_sync_interval)),
            earnings_sync_interval=float(env.get("EARNINGS_SYNC_INTERVAL", defaults.earnings_sync_interval)),
            stale_sweep_interval=float(env.get("STALE_SWEEP_INTERVAL", defaults.stale_sweep_interval)),
            stale_task_timeout=float(env.get("STALE_TASK_TIMEOUT", defaults.stale_task_timeout)),
            gateway_timeout=float(env.get("GATEWAY_TIMEOUT", defaults.gateway_timeout)),
            sync_page_size=int(env.get("SYNC_PAGE_SIZE", defaults.sync_page_size)),
            sync_max_pages=int(env.get("SYNC_MAX_PAGES", defaults.sync_max_pages)),
        )
