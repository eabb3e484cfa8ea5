"""
ai_gateway/middleware/logging_middleware.py

Request/response structured logging middleware.

Logs every request with:
- HTTP method and path
- Response status code
- Latency in milliseconds
- Client IP (first hop of X-Forwarded-For, else the socket peer)
- Caller digest (redacted X-API-Key), never the key itself
- Remaining quota, when the gateway charged the request
- Correlation/request ID (injected into contextvars for child logs)

Design Decisions:
- The correlation ID is taken from an incoming X-Request-ID header when
  present, generated otherwise, and echoed back on the response.
- Quota rejections (429) and upstream or server failures (5xx) are
  logged at WARNING so they stand out from routine traffic.
- Request and response bodies are never logged: they carry prompts
  and completions.
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ai_gateway.utils.logger import get_logger, redact, request_id_ctx

logger = get_logger(__name__)

QUOTA_HEADER = "X-Quota-Remaining"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs structured metadata for every HTTP request."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)

        start = time.monotonic()
        status_code = 500  # Default in case of unhandled exception
        quota_remaining: str | None = None

        try:
            response = await call_next(request)
            status_code = response.status_code
            quota_remaining = response.headers.get(QUOTA_HEADER)
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as exc:
            logger.error(f"Unhandled exception: {exc}")
            raise
        finally:
            elapsed_ms = round((time.monotonic() - start) * 1000, 2)
            client_ip = (
                request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
                or (request.client.host if request.client else "unknown")
            )
            level = "WARNING" if status_code == 429 or status_code >= 500 else "INFO"

            logger.log(
                level,
                "HTTP Request",
                method=request.method,
                path=request.url.path,
                status=status_code,
                latency_ms=elapsed_ms,
                ip=client_ip,
                caller=redact(request.headers.get("X-API-Key", "")),
                quota_remaining=int(quota_remaining) if quota_remaining else None,
                request_id=request_id,
            )

            request_id_ctx.reset(token)
