"""
Gateway Client

Paged reads of a device's tasks and earnings from the gateway:

    GET {gateway}/node/devices/{device_id}/tasks?page=1&pageSize=100
    GET {gateway}/node/devices/{device_id}/earnings?page=1&pageSize=100
    Authorization: Bearer {auth_key}

Accepted response shapes:
    {"success": true, "data": {"data": [...]}}
    {"data": [...]}
    [...]

Transport failures raise RemoteUnavailable. A body of any other shape is
logged and read as an empty page.
"""

from typing import Any, Dict, List, Optional
import httpx
import structlog

from ..config import DeviceIdentity
from ..core.errors import MalformedRemotePayload, RemoteUnavailable

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 100


def parse_page(payload: Any) -> List[Dict[str, Any]]:
    """
    Extract the record list from a gateway response body.

    Raises:
        MalformedRemotePayload: the body matches none of the known shapes
    """
    records: Any = None
    if isinstance(payload, list):
        records = payload
    elif isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            records = data
        elif isinstance(data, dict) and isinstance(data.get("data"), list):
            if payload.get("success") is False:
                raise MalformedRemotePayload("Gateway reported success=false")
            records = data["data"]

    if records is None:
        raise MalformedRemotePayload(f"Unexpected gateway payload of type {type(payload).__name__}")
    return [r for r in records if isinstance(r, dict)]


class GatewayClient:
    """
    Async HTTP client for the gateway's device endpoints.

    One client per device identity; close() releases the connection pool.
    """

    def __init__(
        self,
        device: DeviceIdentity,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.device = device
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=device.gateway_address or "",
            timeout=float(timeout),
            transport=transport,
            headers={
                "Authorization": f"Bearer {device.auth_key}" if device.auth_key else "",
                "Content-Type": "application/json",
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_page(self, resource: str, page: int, page_size: int) -> List[Dict[str, Any]]:
        path = f"/node/devices/{self.device.device_id}/{resource}"
        try:
            response = await self._client.get(path, params={"page": page, "pageSize": page_size})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteUnavailable(
                f"Gateway returned HTTP {e.response.status_code} for {resource}"
            ) from e
        except httpx.HTTPError as e:
            raise RemoteUnavailable(f"Gateway request for {resource} failed: {e!r}") from e

        try:
            records = parse_page(response.json())
        except (ValueError, MalformedRemotePayload) as e:
            logger.warning("gateway_payload_malformed", resource=resource, page=page, error=str(e))
            return []

        logger.debug("gateway_page_fetched", resource=resource, page=page, count=len(records))
        return records

    async def fetch_tasks(self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> List[Dict[str, Any]]:
        return await self._get_page("tasks", page, page_size)

    async def fetch_earnings(self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> List[Dict[str, Any]]:
        return await self._get_page("earnings", page, page_size)
