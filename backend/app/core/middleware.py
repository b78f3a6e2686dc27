"""
Request middleware — correlation IDs, timing and one log line per request.

Provides:
    • X-Request-ID header (taken from the caller or generated)
    • X-Process-Time header
    • Request context so dispatch / store logs carry the request_id
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_UNLOGGED_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon")
_PROBE_PREFIXES = ("/health", "/api/health")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every request with timing and inject a correlation ID.

    Health probes are logged at DEBUG so load balancers do not fill the
    log; 4xx/5xx responses are logged at WARNING.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
        )
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": 500, "endpoint": path},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_UNLOGGED_PREFIXES):
            if response.status_code >= 400:
                log_level = logging.WARNING
            elif path.startswith(_PROBE_PREFIXES):
                log_level = logging.DEBUG
            else:
                log_level = logging.INFO
            logger.log(
                log_level,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code,
                duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )

        set_request_context()
        return response
