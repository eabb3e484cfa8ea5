"""
ai_gateway/providers/anthropic.py

Anthropic Messages API adapter.

The system prompt is a top-level `system` field rather than a message.
System-role turns are folded into it after `system_prompt`. The reply
is a list of content blocks of which only `text` blocks carry the answer.
"""

from __future__ import annotations

from typing import Any

from ai_gateway.providers.base import HTTPProvider, as_token_count
from ai_gateway.schemas.gateway_schema import GatewayRequest, GatewayResponse

ANTHROPIC_VERSION = "2023-06-01"

CLAUDE_HAIKU_4_5 = "claude-haiku-4-5-20251001"
CLAUDE_SONNET_4_5 = "claude-sonnet-4-5"
CLAUDE_SONNET_4_6 = "claude-sonnet-4-6"
CLAUDE_OPUS_4_6 = "claude-opus-4-6"


class AnthropicProvider(HTTPProvider):
    """Calls POST {base_url}/messages with the x-api-key header."""

    name = "anthropic"
    endpoint = "/messages"
    known_models = (CLAUDE_HAIKU_4_5, CLAUDE_SONNET_4_5, CLAUDE_SONNET_4_6, CLAUDE_OPUS_4_6)

    def headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def build_payload(self, request: GatewayRequest) -> dict[str, Any]:
        # The Messages API only accepts user/assistant turns
        system_parts = [request.system_prompt] if request.system_prompt is not None else []
        system_parts += [m.content for m in request.messages if m.role == "system"]

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [m.model_dump() for m in request.messages if m.role != "system"],
            "max_tokens": request.max_tokens,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        return payload

    def parse_response(self, body: dict[str, Any], request: GatewayRequest) -> GatewayResponse:
        blocks = body.get("content")
        content = ""
        if isinstance(blocks, list):
            content = "".join(
                block.get("text", "")
                for block in blocks
                if isinstance(block, dict) and block.get("type") == "text"
            )
        usage = body.get("usage") or {}

        return GatewayResponse(
            content=content,
            model=body.get("model") or request.model,
            prompt_tokens=as_token_count(usage.get("input_tokens")),
            completion_tokens=as_token_count(usage.get("output_tokens")),
        )
