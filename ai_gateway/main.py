"""
ai_gateway/main.py

FastAPI application entry point for the AI gateway.

Startup sequence:
  1. Load environment variables from .env
  2. Configure structured logging
  3. Read GatewaySettings from the environment
  4. Build provider adapters for every configured API key
  5. Wrap each provider in a GatewayMiddleware (quota + cache)
  6. Register middleware (auth, logging, CORS)
  7. Mount routers
  8. Expose Prometheus metrics endpoint

Shutdown sequence:
  1. Close provider HTTP clients

Design Decisions:
- asynccontextmanager lifespan is used instead of the deprecated
  @app.on_event handlers.
- Gateways are attached to app.state so routes reach them via Depends.
  create_app() accepts prebuilt gateways so tests never touch the
  network or the real storage directories.
- All gateways share one quota directory and scope, so a client's quota
  covers every provider. Cache keys include the provider name.
- The /metrics endpoint is exposed by prometheus-fastapi-instrumentator
  and does NOT require API key auth (listed in OPEN_PATHS in auth.py).
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import AsyncIterator

from dotenv import load_dotenv

# Load .env BEFORE importing anything that reads env vars
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from ai_gateway.middleware.auth import APIKeyMiddleware
from ai_gateway.middleware.logging_middleware import RequestLoggingMiddleware
from ai_gateway.providers.registry import create_providers
from ai_gateway.routes.chat import router as chat_router
from ai_gateway.routes.health import router as health_router
from ai_gateway.schemas.gateway_schema import ErrorResponse
from ai_gateway.services.gateway_middleware import GatewayMiddleware
from ai_gateway.utils.config import GatewaySettings
from ai_gateway.utils.exceptions import GatewayError
from ai_gateway.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

# Worker threads for blocking GatewayMiddleware.handle() calls
UPSTREAM_WORKERS = 16


# ── Application lifespan ───────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Manage application startup and graceful shutdown.

    Startup:
        - Build providers and gateways (unless injected by create_app)
        - Start the worker pool for blocking gateway calls

    Shutdown:
        - Stop the worker pool
        - Close provider HTTP clients
    """
    settings: GatewaySettings = app.state.settings
    logger.info("AI gateway starting up", **settings.as_dict())

    if getattr(app.state, "gateways", None) is None:
        providers = create_providers(settings)
        app.state.gateways = {
            name: GatewayMiddleware.from_config(provider, settings)
            for name, provider in providers.items()
        }

    app.state.executor = ThreadPoolExecutor(
        max_workers=UPSTREAM_WORKERS, thread_name_prefix="gateway-upstream"
    )

    logger.info("AI gateway is ready to serve requests")

    yield  # Application runs here

    logger.info("AI gateway shutting down...")
    app.state.executor.shutdown(wait=True)
    app.state.executor = None
    for gateway in app.state.gateways.values():
        gateway.provider.close()
    logger.info("Shutdown complete")


# ── FastAPI app factory ────────────────────────────────────────

def create_app(
    settings: GatewaySettings | None = None,
    gateways: dict[str, GatewayMiddleware] | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Gateway settings; read from the environment when omitted.
        gateways: Prebuilt gateways keyed by provider name. When omitted
            they are built from `settings` during startup.
    """
    settings = settings or GatewaySettings.from_env()
    setup_logging(
        level=settings.log_level,
        log_format="text" if settings.app_env == "development" else "json",
    )

    app = FastAPI(
        title="AI Gateway API",
        description=(
            "**AI Gateway**: quota-aware, cached access to OpenAI and Anthropic "
            "chat models.\n\n"
            "When API keys are configured, all endpoints (except `/health`, "
            "`/ready`, `/metrics`) require an `X-API-Key` header."
        ),
        version="1.0.0",
        docs_url="/docs" if settings.app_env != "production" else None,
        redoc_url="/redoc" if settings.app_env != "production" else None,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.gateways = gateways
    app.state.executor = None

    # ── Middleware (applied in reverse order: last added runs first) ──

    # 1. API Key authentication
    app.add_middleware(APIKeyMiddleware, api_keys=settings.api_keys)

    # 2. Request/response logging (outermost, so 401s are logged too)
    app.add_middleware(RequestLoggingMiddleware)

    # 3. CORS
    cors_origins = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ORIGINS",
            "http://localhost:3000,http://localhost:5173",
        ).split(",")
        if origin.strip()
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-API-Key", "X-Request-ID"],
        expose_headers=["X-Quota-Remaining", "X-Request-ID"],
    )

    # ── Exception handlers ─────────────────────────────────────
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content=ErrorResponse(
                error=exc.error_code,
                detail=exc.message,
            ).model_dump(mode="json"),
        )

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(
                error="NOT_FOUND",
                detail=f"The path '{request.url.path}' was not found.",
            ).model_dump(mode="json"),
        )

    @app.exception_handler(500)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Internal server error: {exc}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_SERVER_ERROR",
                detail="An unexpected error occurred. Please try again.",
            ).model_dump(mode="json"),
        )

    # ── Routers ────────────────────────────────────────────────
    app.include_router(health_router)
    app.include_router(chat_router)

    # ── Prometheus metrics ─────────────────────────────────────
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=False,
        excluded_handlers=["/health", "/ready"],
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    logger.info("FastAPI application created", env=settings.app_env)
    return app


# ── Application instance ───────────────────────────────────────
# Imported by uvicorn: uvicorn ai_gateway.main:app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ai_gateway.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("APP_ENV", "development") == "development",
        workers=1,
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )
