"""
ai_gateway/providers/openai.py

OpenAI chat-completions adapter.

The system prompt travels as a leading `system` message, which is how
the chat-completions API expects it.
"""

from __future__ import annotations

from typing import Any

from ai_gateway.providers.base import HTTPProvider, as_token_count
from ai_gateway.schemas.gateway_schema import GatewayRequest, GatewayResponse


GPT_4O = "gpt-4o"
GPT_4O_MINI = "gpt-4o-mini"
GPT_4_TURBO = "gpt-4-turbo"
GPT_3_5_TURBO = "gpt-3.5-turbo"
O1 = "o1"
O1_MINI = "o1-mini"
O3_MINI = "o3-mini"


class OpenAIProvider(HTTPProvider):
    """Calls POST {base_url}/chat/completions with bearer auth."""

    name = "openai"
    endpoint = "/chat/completions"
    known_models = (GPT_4O, GPT_4O_MINI, GPT_4_TURBO, GPT_3_5_TURBO, O1, O1_MINI, O3_MINI)

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, request: GatewayRequest) -> dict[str, Any]:
        messages = [m.model_dump() for m in request.messages]
        if request.system_prompt is not None:
            messages.insert(0, {"role": "system", "content": request.system_prompt})

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    def parse_response(self, body: dict[str, Any], request: GatewayRequest) -> GatewayResponse:
        choices = body.get("choices") or []
        message = choices[0].get("message", {}) if choices and isinstance(choices[0], dict) else {}
        usage = body.get("usage") or {}

        return GatewayResponse(
            content=message.get("content") or "",
            model=body.get("model") or request.model,
            prompt_tokens=as_token_count(usage.get("prompt_tokens")),
            completion_tokens=as_token_count(usage.get("completion_tokens")),
        )
