"""
ai_gateway/routes/chat.py

Chat API routes for the gateway.

Endpoints:
  POST   /v1/chat        → Route a chat request through quota, cache and provider
  GET    /v1/providers   → List configured providers and their known models

Design Decisions:
- One GatewayMiddleware per provider lives on app.state.gateways and is
  injected with Depends, so tests can swap in their own.
- GatewayMiddleware.handle() is blocking (file locks, HTTP call), so it
  runs in the app's ThreadPoolExecutor (app.state.executor, owned by the
  lifespan) via run_in_executor and never stalls the event loop. Without
  one, the loop's default executor is used.
- The quota identifier is the caller's X-API-Key when authentication
  is enabled, and the client IP otherwise.
- Gateway errors propagate to the GatewayError handler in main.py,
  which renders them as ErrorResponse with the error's http_status.
"""

from __future__ import annotations

import asyncio
from fastapi import APIRouter, Depends, Request, Response

from ai_gateway.schemas.gateway_schema import (
    ChatCompletionRequest,
    ErrorResponse,
    GatewayResponse,
    ProviderInfo,
    ProvidersResponse,
)
from ai_gateway.services.gateway_middleware import GatewayMiddleware
from ai_gateway.utils.exceptions import ProviderNotConfiguredError

router = APIRouter(prefix="/v1", tags=["Chat"])

def _get_gateways(request: Request) -> dict[str, GatewayMiddleware]:
    """FastAPI dependency: retrieve the per-provider gateways from app state."""
    return getattr(request.app.state, "gateways", None) or {}


def _get_identifier(request: Request) -> str:
    """
    Quota identifier: the caller's X-API-Key when authentication is on,
    otherwise the client IP (an unchecked header would let clients pick
    a fresh quota on every call).
    """
    settings = getattr(request.app.state, "settings", None)
    api_key = request.headers.get("X-API-Key")
    if api_key and settings is not None and settings.api_keys:
        return api_key
    return request.client.host if request.client else "unknown"


# ── Chat ───────────────────────────────────────────────────────

@router.post(
    "/chat",
    response_model=GatewayResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown or unconfigured provider"},
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        429: {"model": ErrorResponse, "description": "Quota exhausted for this window"},
        502: {"model": ErrorResponse, "description": "Upstream provider failed"},
    },
    summary="Send a chat request through the gateway",
    description=(
        "Checks the caller's quota, serves identical requests from the cache, "
        "and otherwise forwards to the selected provider. `tries_remaining` is "
        "present only when a quota unit was consumed."
    ),
)
async def chat(
    request: Request,
    response: Response,
    body: ChatCompletionRequest,
    gateways: dict[str, GatewayMiddleware] = Depends(_get_gateways),
) -> GatewayResponse:
    """Non-streaming chat endpoint."""
    gateway = gateways.get(body.provider)
    if gateway is None:
        raise ProviderNotConfiguredError(
            f"Provider '{body.provider}' is not configured.",
            detail=f"Configured providers: {', '.join(sorted(gateways)) or 'none'}.",
        )

    result = await asyncio.get_running_loop().run_in_executor(
        getattr(request.app.state, "executor", None),
        gateway.handle,
        body.to_gateway_request(),
        _get_identifier(request),
    )

    if result.tries_remaining is not None:
        response.headers["X-Quota-Remaining"] = str(result.tries_remaining)
    return result


# ── Providers ──────────────────────────────────────────────────

@router.get(
    "/providers",
    response_model=ProvidersResponse,
    summary="List configured providers",
)
async def list_providers(
    gateways: dict[str, GatewayMiddleware] = Depends(_get_gateways),
) -> ProvidersResponse:
    return ProvidersResponse(
        providers=[
            ProviderInfo(name=name, models=list(gateway.provider.known_models))
            for name, gateway in sorted(gateways.items())
        ]
    )
