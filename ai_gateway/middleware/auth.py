"""
ai_gateway/middleware/auth.py

API key authentication middleware for the gateway.

Design Decisions:
- API keys are passed in the X-API-Key header (not query params,
  which appear in server logs).
- Several keys may be valid at once (API_KEYS, comma-separated): each
  client gets its own key, and the key doubles as its quota identifier.
- Keys are compared using hmac.compare_digest() against every
  configured key so the check time does not reveal which one matched.
- When no key is configured, authentication is disabled and the
  gateway falls back to per-IP quotas.
- Routes listed in OPEN_PATHS bypass authentication (health/metrics).
"""

from __future__ import annotations

import hmac
from datetime import datetime, timezone

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ai_gateway.schemas.gateway_schema import ErrorResponse
from ai_gateway.utils.exceptions import AuthenticationError
from ai_gateway.utils.logger import get_logger

logger = get_logger(__name__)

# Paths that do not require authentication
OPEN_PATHS: frozenset[str] = frozenset({
    "/health",
    "/ready",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
})


class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Validates the X-API-Key header on all protected endpoints.

    Args:
        app: The ASGI app to wrap.
        api_keys: Accepted keys. Empty disables authentication.
    """

    def __init__(self, app: object, api_keys: list[str] | None = None) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._keys = [key.encode() for key in (api_keys or [])]
        if not self._keys:
            logger.warning(
                "API_KEYS is not set: authentication is disabled and quotas "
                "are tracked per client IP."
            )

    def _is_valid(self, provided: str) -> bool:
        provided_bytes = provided.encode()
        matched = False
        for key in self._keys:
            matched |= hmac.compare_digest(provided_bytes, key)
        return matched

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not self._keys or request.url.path in OPEN_PATHS:
            return await call_next(request)

        if not self._is_valid(request.headers.get("X-API-Key", "")):
            logger.warning(
                "Unauthorised request",
                path=request.url.path,
                ip=request.client.host if request.client else "unknown",
            )
            return JSONResponse(
                status_code=AuthenticationError.http_status,
                content=ErrorResponse(
                    error=AuthenticationError.error_code,
                    detail="Missing or invalid X-API-Key header.",
                    timestamp=datetime.now(timezone.utc),
                ).model_dump(mode="json"),
            )

        return await call_next(request)
