"""
Request middleware — correlation IDs, caller context, access log.

Provides:
    • X-Request-ID echo (caller-supplied when well formed, generated otherwise)
    • X-Process-Time header
    • Caller identity (X-User-Id / X-User-Role) in the log context
    • One access line per request; live push subscribes log a
      "stream opened" line instead
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

from carewatch.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

STREAM_PATH = "/api/sse/subscribe"

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def is_event_stream(method: str, path: str) -> bool:
    """True for the request that opens a live push stream."""
    return method == "GET" and path.rstrip("/") == STREAM_PATH


def correlation_id(supplied: Optional[str]) -> str:
    """Reuse the caller's X-Request-ID unless it is missing or malformed."""
    if supplied and _REQUEST_ID_RE.match(supplied):
        return supplied
    return uuid.uuid4().hex[:16]


def describe_caller(user_id: Optional[str], role: Optional[str]) -> str:
    if not user_id:
        return "anonymous"
    return f"{(role or '?').upper()}:{user_id}"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation ID and caller, then log it."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = correlation_id(request.headers.get("X-Request-ID"))
        method, path = request.method, request.url.path
        user_id = request.headers.get("X-User-Id")
        caller = describe_caller(user_id, request.headers.get("X-User-Role"))

        set_request_context(
            request_id=request_id,
            endpoint=path,
            method=method,
            user_id=user_id,
        )
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s failed for %s", method, path, caller,
                    extra={"status_code": 500, "endpoint": path},
                )
                raise

            duration_ms = (time.perf_counter() - start) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
            self._log(method, path, caller, response.status_code, duration_ms)
            return response
        finally:
            set_request_context()

    @staticmethod
    def _log(method: str, path: str, caller: str, status: int, duration_ms: float) -> None:
        extra = {"duration_ms": duration_ms, "status_code": status, "endpoint": path}
        if is_event_stream(method, path) and status < 400:
            # Handler returned with the stream still open; its lifetime is logged by the registry.
            logger.info(
                "%s %s → stream opened for %s (%.1fms)",
                method, path, caller, duration_ms, extra=extra,
            )
            return
        if path.startswith(_QUIET_PREFIXES):
            return
        logger.log(
            logging.WARNING if status >= 400 else logging.INFO,
            "%s %s → %d for %s (%.1fms)",
            method, path, status, caller, duration_ms, extra=extra,
        )
