"""
ai_gateway/providers/registry.py

Builds the provider adapters enabled by the current settings.
"""

from __future__ import annotations

from ai_gateway.providers.anthropic import AnthropicProvider
from ai_gateway.providers.base import Provider
from ai_gateway.providers.openai import OpenAIProvider
from ai_gateway.utils.config import GatewaySettings
from ai_gateway.utils.logger import get_logger

logger = get_logger(__name__)


def create_providers(settings: GatewaySettings) -> dict[str, Provider]:
    """
    Create one adapter per provider whose API key is configured.

    Returns:
        Mapping of provider name ('openai', 'anthropic') to adapter.
        Empty when no key is set; the app then reports not-ready.
    """
    cfg = settings.providers
    providers: dict[str, Provider] = {}

    if cfg.openai_api_key:
        providers[OpenAIProvider.name] = OpenAIProvider(
            api_key=cfg.openai_api_key,
            base_url=cfg.openai_base_url,
            timeout=cfg.timeout_seconds,
        )
    if cfg.anthropic_api_key:
        providers[AnthropicProvider.name] = AnthropicProvider(
            api_key=cfg.anthropic_api_key,
            base_url=cfg.anthropic_base_url,
            timeout=cfg.timeout_seconds,
        )

    if not providers:
        logger.warning("No provider API key configured; /v1/chat will reject every request")
    else:
        logger.info(f"Providers configured: {', '.join(sorted(providers))}")
    return providers
