"""
Request-scoped trace ids and HTTP metrics.
"""

import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from services.shared.logging import get_logger, trace_id_var
from services.shared.metrics import http_request_duration_seconds, http_requests_total

logger = get_logger("payments.http")

# Checkout session ids (cs_test_..., cs_live_...) and UUIDs in paths.
_SESSION_ID_RE = re.compile(r"/cs_(?:test|live)_[A-Za-z0-9]+")
_UUID_RE = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)


def normalize_path(path: str) -> str:
    """
    Replace ids in URL paths with placeholders to keep Prometheus label
    cardinality bounded.

        /auth/session/cs_test_a1B2c3 -> /auth/session/{id}
    """
    result = _SESSION_ID_RE.sub("/{id}", path)
    return _UUID_RE.sub("{id}", result)


class TraceMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        trace_id = request.headers.get("X-Trace-ID") or str(uuid.uuid4())
        token = trace_id_var.set(trace_id)
        request.state.trace_id = trace_id
        started = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            elapsed = time.monotonic() - started
            status_code = getattr(response, "status_code", 500)
            path_template = normalize_path(request.url.path)
            labels = {
                "method": request.method,
                "path_template": path_template,
                "status_code": str(status_code),
            }
            http_request_duration_seconds.labels(**labels).observe(elapsed)
            http_requests_total.labels(**labels).inc()

            logger.info(
                "http_request",
                extra={
                    "method": request.method,
                    "path": path_template,
                    "status": status_code,
                    "elapsed_ms": round(elapsed * 1000, 1),
                },
            )
            trace_id_var.reset(token)
            if response is not None:
                response.headers["X-Trace-ID"] = trace_id
