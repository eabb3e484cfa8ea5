"""
ai_gateway/schemas/gateway_schema.py

Pydantic v2 schemas shared by the gateway core and its HTTP API.

Design Decisions:
- GatewayRequest is provider-agnostic. Provider adapters translate it
  into their own wire payloads; the core never sees those.
- `fresh` is a delivery option, not part of the request's meaning, so
  it is excluded from `cache_fields()` and never affects the cache key.
- GatewayResponse drops `tries_remaining` from its serialised form when
  it is None: absence tells the caller that no quota was consumed.
- `ErrorResponse` mirrors RFC 7807 Problem Details for alignment
  with standard API error conventions.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationError, computed_field

from ai_gateway.utils.exceptions import CorruptStateError

Role = Literal["system", "user", "assistant"]

# Fields that decide what the upstream model would answer.
_CACHE_FIELDS = {"model", "messages", "temperature", "max_tokens", "system_prompt"}
_CACHE_PAYLOAD_FIELDS = {"content", "model", "prompt_tokens", "completion_tokens"}


# ── Core request / response ────────────────────────────────────

class ChatMessage(BaseModel):
    """A single turn in the conversation sent upstream."""

    role: Role
    content: str

    model_config = {"frozen": True}


class GatewayRequest(BaseModel):
    """
    Normalised chat request handled by GatewayMiddleware.

    Fields:
        model: Upstream model name (e.g. 'gpt-4o-mini').
        messages: Ordered conversation turns, at least one.
        temperature: Sampling temperature; None lets the provider decide.
        max_tokens: Upper bound on completion tokens.
        fresh: Skip the cache read (the response is still cached).
        system_prompt: Optional system instruction.
    """

    model: Annotated[
        str,
        Field(
            min_length=1,
            description="Upstream model name.",
            examples=["gpt-4o-mini"],
        ),
    ]

    messages: Annotated[
        list[ChatMessage],
        Field(min_length=1, description="Ordered conversation turns."),
    ]

    temperature: Annotated[
        float | None,
        Field(ge=0.0, le=2.0, description="Sampling temperature."),
    ] = 0.7

    max_tokens: Annotated[
        int,
        Field(ge=1, description="Maximum completion tokens."),
    ] = 1024

    fresh: Annotated[
        bool,
        Field(
            description="Bypass the cache read. The response is still written back.",
        ),
    ] = False

    system_prompt: Annotated[
        str | None,
        Field(description="Optional system instruction."),
    ] = None

    def cache_fields(self) -> dict[str, Any]:
        """The fields that identify this request for caching purposes."""
        return self.model_dump(include=_CACHE_FIELDS, mode="json")


class GatewayResponse(BaseModel):
    """
    Normalised provider response, decorated by the gateway.

    Fields:
        content: Generated text.
        model: Model that produced the answer, as reported upstream.
        prompt_tokens: Input tokens billed upstream.
        completion_tokens: Output tokens billed upstream.
        from_cache: True when served from the response cache.
        tries_remaining: Quota left in the window; only set when a unit
            was consumed for this call.
    """

    content: str
    model: str
    prompt_tokens: Annotated[int, Field(ge=0)] = 0
    completion_tokens: Annotated[int, Field(ge=0)] = 0
    from_cache: bool = False
    tries_remaining: Annotated[int | None, Field(ge=0)] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, Any]:
        """Serialised form; `tries_remaining` is omitted when None."""
        return self.model_dump(mode="json", exclude_none=True)

    def to_cache_payload(self) -> str:
        return json.dumps(self.model_dump(include=_CACHE_PAYLOAD_FIELDS), sort_keys=True)

    @classmethod
    def from_cache_payload(cls, raw: str) -> "GatewayResponse":
        """
        Rebuild a response from a cached payload.

        Raises:
            CorruptStateError: If the payload is not a valid cached response.
        """
        try:
            data = json.loads(raw)
            if not isinstance(data, dict) or not _CACHE_PAYLOAD_FIELDS <= data.keys():
                raise ValueError("cached payload is missing fields")
            response = cls.model_validate({k: data[k] for k in _CACHE_PAYLOAD_FIELDS})
        except (ValueError, TypeError, ValidationError) as exc:
            raise CorruptStateError("Cached response could not be decoded.") from exc
        return response.model_copy(update={"from_cache": True})


# ── HTTP request schemas ───────────────────────────────────────

class ChatCompletionRequest(GatewayRequest):
    """Payload for POST /v1/chat: a GatewayRequest plus the provider to route to."""

    provider: Annotated[
        str,
        Field(
            description="Provider to route the request to.",
            examples=["openai", "anthropic"],
        ),
    ] = "openai"

    def to_gateway_request(self) -> GatewayRequest:
        return GatewayRequest.model_validate(self.model_dump(exclude={"provider"}))

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "provider": "openai",
                    "model": "gpt-4o-mini",
                    "messages": [{"role": "user", "content": "What is a fixed window?"}],
                    "temperature": 0.2,
                    "max_tokens": 256,
                },
                {
                    "provider": "anthropic",
                    "model": "claude-haiku-4-5-20251001",
                    "messages": [{"role": "user", "content": "Summarise cache-aside."}],
                    "system_prompt": "Answer in one sentence.",
                    "fresh": True,
                },
            ]
        }
    }


# ── HTTP response schemas ──────────────────────────────────────

class ProviderInfo(BaseModel):
    name: str
    models: list[str] = Field(default_factory=list)


class ProvidersResponse(BaseModel):
    """Response for GET /v1/providers."""

    providers: list[ProviderInfo]


class HealthResponse(BaseModel):
    """Response for GET /health (liveness check)."""

    status: str = "ok"
    service: str = "ai-gateway"
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ReadinessResponse(BaseModel):
    """Response for GET /ready (at least one provider and writable storage)."""

    status: str          # "ready" | "not_ready"
    providers: list[str]
    storage_writable: bool
    details: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ErrorResponse(BaseModel):
    """
    RFC 7807-aligned error response for all 4xx/5xx responses.

    Fields:
        error: Machine-readable error code (e.g. 'QUOTA_EXCEEDED').
        detail: Human-readable explanation safe to surface to the client.
        timestamp: UTC timestamp of the error.
    """

    error: Annotated[
        str,
        Field(description="Machine-readable error code."),
    ]

    detail: Annotated[
        str,
        Field(description="Human-readable error explanation."),
    ]

    timestamp: Annotated[
        datetime,
        Field(
            default_factory=lambda: datetime.now(timezone.utc),
        ),
    ]

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "error": "QUOTA_EXCEEDED",
                    "detail": "Request quota exhausted for the current window.",
                    "timestamp": "2025-01-01T12:00:00Z",
                }
            ]
        }
    }
