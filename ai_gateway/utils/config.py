"""
ai_gateway/utils/config.py

Typed settings for the gateway, loaded from environment variables.

Design Decisions:
- Settings are plain pydantic models so the middleware can also be
  built from a dict (tests, embedding applications) via model_validate.
- `.env` is loaded by main.py before anything reads the environment;
  this module only reads os.environ.
- Invalid values are reported as ConfigurationError at startup rather
  than surfacing later as a 500 on the first request.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Annotated

from pydantic import BaseModel, Field, ValidationError

from ai_gateway.utils.exceptions import ConfigurationError

DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 60.0


class CacheSettings(BaseModel):
    """Response cache options."""

    enabled: bool = True
    path: str = "storage/cache"
    ttl_seconds: Annotated[int, Field(gt=0)] = DEFAULT_CACHE_TTL_SECONDS


class RateLimitSettings(BaseModel):
    """Fixed-window quota options."""

    enabled: bool = False
    path: str = "storage/ratelimit"
    scope_id: Annotated[str, Field(min_length=1)] = "default"
    max_requests: Annotated[int, Field(ge=1)] = 60
    window_seconds: Annotated[int, Field(gt=0)] = 60
    lock_timeout_seconds: Annotated[float, Field(gt=0)] = DEFAULT_LOCK_TIMEOUT_SECONDS


class ProviderSettings(BaseModel):
    """Credentials and endpoints for the upstream providers."""

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_api_key: str | None = None
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    timeout_seconds: Annotated[float, Field(gt=0)] = DEFAULT_PROVIDER_TIMEOUT_SECONDS


class GatewaySettings(BaseModel):
    """Top-level settings object consumed by GatewayMiddleware and the app."""

    cache: CacheSettings = Field(default_factory=CacheSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    api_keys: list[str] = Field(default_factory=list)
    app_env: str = "development"
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, config: Mapping[str, object]) -> "GatewaySettings":
        """Validate a plain mapping, reporting problems as ConfigurationError."""
        try:
            return cls.model_validate(dict(config))
        except ValidationError as exc:
            raise ConfigurationError(
                "Invalid gateway configuration.", detail=str(exc)
            ) from exc

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewaySettings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Raises:
            ConfigurationError: If a value cannot be parsed or fails validation.
        """
        env = os.environ if environ is None else environ

        def _get(name: str) -> str | None:
            value = env.get(name)
            return value.strip() if value and value.strip() else None

        def _flag(name: str) -> bool | None:
            value = _get(name)
            return None if value is None else value.lower() in ("1", "true", "yes", "on")

        api_keys = [
            key.strip()
            for key in (env.get("API_KEYS") or env.get("API_KEY") or "").split(",")
            if key.strip()
        ]

        raw: dict[str, object] = {
            "cache": _drop_none({
                "enabled": _flag("CACHE_ENABLED"),
                "path": _get("CACHE_PATH"),
                "ttl_seconds": _get("CACHE_TTL_SECONDS"),
            }),
            "rate_limit": _drop_none({
                "enabled": _flag("RATE_LIMIT_ENABLED"),
                "path": _get("RATE_LIMIT_PATH"),
                "scope_id": _get("RATE_LIMIT_SCOPE_ID"),
                "max_requests": _get("RATE_LIMIT_MAX_REQUESTS"),
                "window_seconds": _get("RATE_LIMIT_WINDOW_SECONDS"),
                "lock_timeout_seconds": _get("RATE_LIMIT_LOCK_TIMEOUT_SECONDS"),
            }),
            "providers": _drop_none({
                "openai_api_key": _get("OPENAI_API_KEY"),
                "openai_base_url": _get("OPENAI_BASE_URL"),
                "anthropic_api_key": _get("ANTHROPIC_API_KEY"),
                "anthropic_base_url": _get("ANTHROPIC_BASE_URL"),
                "timeout_seconds": _get("PROVIDER_TIMEOUT_SECONDS"),
            }),
            "api_keys": api_keys,
            "app_env": _get("APP_ENV") or "development",
            "log_level": _get("LOG_LEVEL") or "INFO",
        }
        return cls.from_mapping(raw)

    def as_dict(self) -> dict[str, object]:
        """Settings safe to expose in logs (secrets replaced by flags)."""
        return {
            "cache": self.cache.model_dump(),
            "rate_limit": self.rate_limit.model_dump(),
            "has_openai_key": self.providers.openai_api_key is not None,
            "has_anthropic_key": self.providers.anthropic_api_key is not None,
            "api_key_count": len(self.api_keys),
            "app_env": self.app_env,
        }


def _drop_none(values: dict[str, object]) -> dict[str, object]:
    return {k: v for k, v in values.items() if v is not None}
