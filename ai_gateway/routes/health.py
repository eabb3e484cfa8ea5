"""
ai_gateway/routes/health.py

Health and readiness check endpoints.

GET /health  → Liveness probe: is the process running?
GET /ready   → Readiness probe: can the gateway serve traffic?

Design Decisions:
- Health (liveness) is a cheap check that returns 200 as long as
  the process is alive.
- Readiness requires at least one configured provider and writable
  cache / quota directories (for whichever of the two is enabled).
  Providers are not pinged: that would spend upstream quota.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ai_gateway.schemas.gateway_schema import HealthResponse, ReadinessResponse
from ai_gateway.utils.config import GatewaySettings
from ai_gateway.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness Check",
    description="Returns 200 if the gateway process is running.",
)
async def health_check() -> HealthResponse:
    """Liveness probe endpoint."""
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness Check",
    description=(
        "Returns 200 if a provider is configured and storage is writable. "
        "Returns 503 otherwise."
    ),
)
async def readiness_check(request: Request) -> JSONResponse:
    """Readiness probe endpoint."""
    checks: dict[str, str] = {}
    providers = sorted(getattr(request.app.state, "gateways", None) or {})
    settings: GatewaySettings = getattr(request.app.state, "settings", None) or GatewaySettings()

    # ── Providers ─────────────────────────────────────────────
    if providers:
        checks["providers"] = ", ".join(providers)
    else:
        checks["providers"] = "none configured"
        logger.warning("Readiness: no provider configured")

    # ── Storage ───────────────────────────────────────────────
    storage_ok = True
    for name, section in (("cache", settings.cache), ("rate_limit", settings.rate_limit)):
        if not section.enabled:
            checks[name] = "disabled"
            continue
        if os.path.isdir(section.path) and os.access(section.path, os.W_OK):
            checks[name] = "writable"
        else:
            storage_ok = False
            checks[name] = f"not writable: {section.path}"
            logger.warning(f"Readiness: {name} directory not writable")

    all_ready = bool(providers) and storage_ok

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content=ReadinessResponse(
            status="ready" if all_ready else "not_ready",
            providers=providers,
            storage_writable=storage_ok,
            details=checks,
        ).model_dump(mode="json"),
    )
