"""
Metering Middleware

ASGI middleware placing the MeteringInterceptor around inference routes.

The response is observed through a wrapped `send` callable: every message
is forwarded to the client unchanged while a ResponseRecorder keeps the
status, content type and (bounded) body for token counting. The task
is opened before the handler runs and closed after the last body chunk
has been sent; both writes run in a worker thread.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, MutableMapping, Optional
import structlog

from .interceptor import MeteringInterceptor
from .tokens import parse_request_body

logger = structlog.get_logger()

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]

DEFAULT_MAX_BODY_BYTES = 8 * 1024 * 1024

# Inference routes only accept POST; preflights and other methods pass through
METERED_METHODS = frozenset({"POST"})


class ResponseRecorder:
    """A `send` wrapper that records what passes through it."""

    def __init__(self, send: Send, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES):
        self._send = send
        self.max_body_bytes = max_body_bytes
        self.status: Optional[int] = None
        self.content_type = ""
        self.finished = False
        self.truncated = False
        self._chunks: List[bytes] = []
        self._size = 0

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.status = int(message["status"])
            for name, value in message.get("headers", []):
                if name.lower() == b"content-type":
                    self.content_type = value.decode("latin-1").lower()
        elif message["type"] == "http.response.body":
            self._record(message.get("body", b""))
            if not message.get("more_body", False):
                self.finished = True
        await self._send(message)

    def _record(self, chunk: bytes) -> None:
        if not chunk or self.truncated:
            return
        room = self.max_body_bytes - self._size
        if len(chunk) > room:
            chunk = chunk[:room]
            self.truncated = True
        self._chunks.append(chunk)
        self._size += len(chunk)

    @property
    def body(self) -> bytes:
        return b"".join(self._chunks)


async def _read_body(receive: Receive) -> List[Message]:
    """Drain the request body, keeping the messages for replay."""
    messages: List[Message] = []
    while True:
        message = await receive()
        messages.append(message)
        if message["type"] != "http.request" or not message.get("more_body", False):
            return messages


class MeteringMiddleware:
    """
    Meters classified routes, passes everything else through untouched.

    Usage:
        app.add_middleware(MeteringMiddleware, interceptor=interceptor)
    """

    def __init__(
        self,
        app: ASGIApp,
        interceptor: MeteringInterceptor,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    ):
        self.app = app
        self.interceptor = interceptor
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("method") not in METERED_METHODS:
            await self.app(scope, receive, send)
            return

        classification = self.interceptor.classify(scope.get("path", ""))
        if classification is None:
            await self.app(scope, receive, send)
            return

        buffered = await _read_body(receive)
        body = b"".join(m.get("body", b"") for m in buffered if m["type"] == "http.request")

        async def replay() -> Message:
            if buffered:
                return buffered.pop(0)
            return await receive()

        call = await asyncio.to_thread(self.interceptor.begin, classification, parse_request_body(body))
        if call is None:
            await self.app(scope, replay, send)
            return

        recorder = ResponseRecorder(send, self.max_body_bytes)
        try:
            await self.app(scope, replay, recorder)
        except Exception as e:
            await asyncio.to_thread(self.interceptor.fail, call, f"{type(e).__name__}: {e}")
            raise

        if recorder.status is None:
            await asyncio.to_thread(self.interceptor.fail, call, "No response from backend")
        elif recorder.status >= 400:
            await asyncio.to_thread(self.interceptor.fail, call, f"Backend returned HTTP {recorder.status}")
        elif not recorder.finished:
            await asyncio.to_thread(self.interceptor.fail, call, "Response stream ended early")
        else:
            if recorder.truncated:
                logger.warning("metered_body_truncated", task_id=call.task_id, limit=self.max_body_bytes)
            await asyncio.to_thread(
                self.interceptor.complete_response, call, recorder.body, recorder.content_type
            )


def metered_routes(interceptor: MeteringInterceptor) -> Dict[str, str]:
    """Route -> "family:kind" for every route the middleware meters."""
    routes = {}
    for route in interceptor.classifier.supported_routes():
        classification = interceptor.classify(route)
        if classification is not None:
            routes[route] = f"{classification.family}:{classification.kind}"
    return routes
