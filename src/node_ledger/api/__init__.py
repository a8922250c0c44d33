"""
NODE LEDGER - API Module

FastAPI server exposing:
- Metered inference pass-through
- Task and earnings history
- Rate catalog
- Gateway sync status and manual runs
"""

from .server import create_app, AppState
from .backend import ProxyBackend

__all__ = ["create_app", "AppState", "ProxyBackend"]
