"""
ai_gateway/utils/exceptions.py

Exception hierarchy for the AI gateway.

Design Decisions:
- Every gateway error inherits from GatewayError so callers can catch
  the broad class or a specific subclass.
- Each exception carries a machine-readable `error_code` and the HTTP
  status the route layer maps it to.
- Only QuotaExceededError and UpstreamError are meant to reach callers
  of GatewayMiddleware.handle(). CorruptStateError is raised and caught
  inside the storage layer and never escapes it.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Root exception for all gateway errors."""

    error_code: str = "GATEWAY_ERROR"
    http_status: int = 500

    def __init__(self, message: str, detail: str = "", **kwargs: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.extra = kwargs


# ── Quota / Upstream Errors ───────────────────────────────────

class QuotaExceededError(GatewayError):
    """Raised when an identifier has used up its quota for the current window."""

    error_code = "QUOTA_EXCEEDED"
    http_status = 429


class UpstreamError(GatewayError):
    """Raised when the provider call fails. The original error is the __cause__."""

    error_code = "UPSTREAM_FAILURE"
    http_status = 502


class ProviderError(GatewayError):
    """Raised by provider adapters on transport, status or decoding failures."""

    error_code = "PROVIDER_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        detail: str = "",
        status_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, detail, **kwargs)
        self.status_code = status_code


# ── Storage Errors ────────────────────────────────────────────

class CorruptStateError(GatewayError):
    """A cache or quota record could not be decoded. Treated as absence."""

    error_code = "CORRUPT_STATE"
    http_status = 500


# ── Auth / Routing Errors ─────────────────────────────────────

class AuthenticationError(GatewayError):
    """Raised when an API key is missing or invalid."""

    error_code = "AUTHENTICATION_FAILED"
    http_status = 401


class ProviderNotConfiguredError(GatewayError):
    """Raised when a request names a provider that has no credentials configured."""

    error_code = "PROVIDER_NOT_CONFIGURED"
    http_status = 400


# ── Configuration Errors ──────────────────────────────────────

class ConfigurationError(GatewayError):
    """Raised when required configuration or environment variables are invalid."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500
