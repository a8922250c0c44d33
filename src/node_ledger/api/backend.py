"""
Inference Backend Pass-Through

Forwards inference routes to the local Ollama or vLLM server and streams
the answer back unchanged. Route prefixes map onto the backend's own paths:

    /ollama/api/chat          -> /api/chat
    /api/generate             -> /api/generate
    /openai/chat/completions  -> /v1/chat/completions
"""

from typing import Dict, Iterable, Optional, Tuple
import httpx
import structlog

from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

logger = structlog.get_logger()

# Hop-by-hop and length headers are recomputed by the ASGI server
_DROPPED_HEADERS = frozenset({
    "host",
    "content-length",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "upgrade",
    "te",
    "trailer",
    "proxy-authorization",
    "proxy-authenticate",
    "x-api-key",
    "accept-encoding",
})


def backend_path(route: str) -> str:
    if route.startswith("/ollama/"):
        return route[len("/ollama"):]
    if route.startswith("/openai/"):
        return "/v1/" + route[len("/openai/"):]
    return route


def _forward_headers(headers: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    return {k: v for k, v in headers if k.lower() not in _DROPPED_HEADERS}


class ProxyBackend:
    """Streaming HTTP pass-through to the inference server."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def forward(
        self,
        method: str,
        route: str,
        body: bytes,
        headers: Iterable[Tuple[str, str]] = (),
        query: str = "",
    ) -> Response:
        """Send one request to the backend and stream its response."""
        path = backend_path(route)
        url = f"{path}?{query}" if query else path
        forwarded = _forward_headers(headers)
        # Uncompressed, so the metering layer can read the body
        forwarded["accept-encoding"] = "identity"
        request = self._client.build_request(method, url, content=body, headers=forwarded)

        try:
            upstream = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("backend_unreachable", backend=self.base_url, path=path, error=repr(e))
            return JSONResponse(
                status_code=502,
                content={"error": "Inference backend unavailable", "detail": str(e) or type(e).__name__},
            )

        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=_forward_headers(upstream.headers.items()),
            background=BackgroundTask(upstream.aclose),
        )
