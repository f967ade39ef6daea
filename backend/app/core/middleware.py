"""
Request middleware: correlation id, caller and alert binding, timing.

Every request gets an X-Request-ID (echoed from the client when supplied)
and an X-Process-Time header. The caller (X-User-ID) and, on alert routes,
the alert id from the path are bound into the log context so that store
and dispatcher log lines emitted while serving the request carry them.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import bind_request_context, reset_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")
_ALERT_PATH = re.compile(r"^/api/v1/alerts/([^/]+)")


def alert_id_from_path(path: str) -> Optional[str]:
    match = _ALERT_PATH.match(path)
    return match.group(1) if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request; 4xx at WARNING, unhandled errors at ERROR."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        context = bind_request_context(
            request_id=request_id,
            caller_id=request.headers.get("X-User-ID"),
            alert_id=alert_id_from_path(path),
            endpoint=path,
            method=request.method,
        )
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.error(
                    "%s %s → 500 (%.1fms)", request.method, path,
                    (time.perf_counter() - start) * 1000,
                    extra={"status_code": 500, "endpoint": path},
                )
                raise

            duration_ms = (time.perf_counter() - start) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

            if not path.startswith(_QUIET_PREFIXES):
                logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    "%s %s → %d (%.1fms)",
                    request.method, path, response.status_code, duration_ms,
                    extra={
                        "duration_ms": round(duration_ms, 1),
                        "status_code": response.status_code,
                        "endpoint": path,
                    },
                )
            return response
        finally:
            reset_request_context(context)
