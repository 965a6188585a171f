"""
HTTP client for calls from the payment service to other internal services.

    async with internal_client(PROJECT_SERVICE_URL, INTERNAL_SECRET, timeout=30.0) as client:
        resp = await client.post("/internal/projects/create-with-modules", json=body)

Requests are relative to base_url and carry the shared X-Internal-Secret
plus the X-Trace-ID of the webhook or request being handled.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from services.shared.logging import trace_id_var

TRACE_HEADER = "X-Trace-ID"
INTERNAL_SECRET_HEADER = "X-Internal-Secret"


class TraceTransport(httpx.AsyncBaseTransport):
    """Wraps a transport and stamps the current trace id on each request."""

    def __init__(self, inner: Optional[httpx.AsyncBaseTransport] = None):
        self._inner = inner or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        trace_id = trace_id_var.get("")
        if trace_id and TRACE_HEADER not in request.headers:
            request.headers[TRACE_HEADER] = trace_id
        return await self._inner.handle_async_request(request)

    async def aclose(self) -> None:
        await self._inner.aclose()


@asynccontextmanager
async def internal_client(
    base_url: str,
    internal_secret: str,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """
    Yield an httpx.AsyncClient bound to one internal service.

    transport replaces the network layer (tests pass httpx.MockTransport);
    trace propagation wraps whichever transport is used.
    """
    async with httpx.AsyncClient(
        base_url=base_url.rstrip("/"),
        headers={INTERNAL_SECRET_HEADER: internal_secret},
        transport=TraceTransport(transport),
        timeout=timeout,
    ) as client:
        yield client
