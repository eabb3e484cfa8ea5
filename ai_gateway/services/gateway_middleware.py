"""
ai_gateway/services/gateway_middleware.py

Quota-and-cache middleware wrapped around a single provider.

Flow:
    1. Gate       → reject over-quota identifiers (nothing else runs)
    2. Cache      → serve a live cached answer unless `fresh` (no quota used)
    3. Upstream   → call the provider; failures become UpstreamError
    4. Persist    → write the answer back to the cache
    5. Consume    → charge one quota unit, attach the remaining count

Design Decisions:
- Gating comes before the cache lookup, so an over-quota identifier
  cannot read cached answers through the gateway either.
- Quota is only charged for real upstream work. Cache hits are free,
  which rewards callers for repeating prompts.
- `fresh` skips the cache read only. The new answer is still written,
  so the next non-fresh call sees it.
- A failed cache write is logged and counted but never fails the call:
  the caller already has a valid answer.
- Everything is synchronous; the HTTP layer runs handle() in a thread.
"""

from __future__ import annotations

import time
from collections.abc import Mapping

from ai_gateway.providers.base import Provider
from ai_gateway.schemas.gateway_schema import GatewayRequest, GatewayResponse
from ai_gateway.services.expiring_store import (
    DEFAULT_TTL_SECONDS,
    ExpiringStore,
    FileExpiringStore,
    derive_cache_key,
)
from ai_gateway.services.quota_counter import FileQuotaCounter, QuotaCounter
from ai_gateway.utils.config import GatewaySettings
from ai_gateway.utils.exceptions import CorruptStateError, QuotaExceededError, UpstreamError
from ai_gateway.utils.logger import get_logger, redact
from ai_gateway.utils.metrics import (
    cache_lookups_total,
    cache_write_failures_total,
    gateway_requests_total,
    quota_rejections_total,
    upstream_errors_total,
    upstream_latency_seconds,
)

logger = get_logger(__name__)


class GatewayMiddleware:
    """
    Applies quota and caching policy around one provider.

    Args:
        provider: Upstream adapter that answers cache misses.
        quota_counter: Optional limiter. None disables gating and consumption.
        store: Optional response cache. None disables caching.
        cache_ttl_seconds: Lifetime of cached answers. Must be positive.

    Raises:
        ValueError: If cache_ttl_seconds is not positive.
    """

    def __init__(
        self,
        provider: Provider,
        quota_counter: QuotaCounter | None = None,
        store: ExpiringStore | None = None,
        cache_ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        if cache_ttl_seconds <= 0:
            raise ValueError(f"cache_ttl_seconds must be positive, got {cache_ttl_seconds}")

        self._provider = provider
        self._quota = quota_counter
        self._store = store
        self._cache_ttl = cache_ttl_seconds

    @classmethod
    def from_config(
        cls,
        provider: Provider,
        config: GatewaySettings | Mapping[str, object],
    ) -> "GatewayMiddleware":
        """
        Build a middleware from settings and an already-built provider.

        Args:
            provider: Upstream adapter.
            config: GatewaySettings, or a mapping with `cache` and
                `rate_limit` sections that validates into one.

        Raises:
            ConfigurationError: If a mapping fails validation.
        """
        settings = config if isinstance(config, GatewaySettings) else GatewaySettings.from_mapping(config)

        quota_counter = None
        if settings.rate_limit.enabled:
            quota_counter = FileQuotaCounter.from_settings(settings.rate_limit)

        store = None
        if settings.cache.enabled:
            store = FileExpiringStore(settings.cache.path)

        return cls(
            provider=provider,
            quota_counter=quota_counter,
            store=store,
            cache_ttl_seconds=settings.cache.ttl_seconds,
        )

    @property
    def provider(self) -> Provider:
        return self._provider

    def handle(self, request: GatewayRequest, identifier: str = "") -> GatewayResponse:
        """
        Answer `request` on behalf of `identifier`.

        Returns:
            GatewayResponse. `from_cache` is True on a cache hit;
            `tries_remaining` is set only when a quota unit was consumed.

        Raises:
            QuotaExceededError: The identifier has no quota left in this window.
            UpstreamError: The provider call failed.
        """
        provider_name = self._provider.name

        # ── Gate ──────────────────────────────────────────────
        if self._quota is not None and not self._quota.is_allowed(identifier):
            gateway_requests_total.labels(provider=provider_name, outcome="rejected").inc()
            quota_rejections_total.labels(scope=self._quota.scope_id).inc()
            logger.info(
                "Request rejected: quota exhausted",
                provider=provider_name,
                scope=self._quota.scope_id,
                identifier=redact(identifier),
            )
            raise QuotaExceededError(
                "Request quota exhausted for the current window.",
                limit=self._quota.max_requests,
            )

        cache_key = derive_cache_key(request, provider=provider_name)

        # ── Cache lookup ──────────────────────────────────────
        if self._store is not None:
            if request.fresh:
                cache_lookups_total.labels(result="bypass").inc()
            else:
                cached = self._read_cached(cache_key)
                if cached is not None:
                    cache_lookups_total.labels(result="hit").inc()
                    gateway_requests_total.labels(provider=provider_name, outcome="cache_hit").inc()
                    logger.debug("Served from cache", provider=provider_name)
                    return cached
                cache_lookups_total.labels(result="miss").inc()

        # ── Upstream call ─────────────────────────────────────
        upstream_start = time.monotonic()
        try:
            response = self._provider.chat(request)
        except Exception as exc:
            upstream_errors_total.labels(provider=provider_name).inc()
            gateway_requests_total.labels(provider=provider_name, outcome="failed").inc()
            logger.error(f"Upstream call to {provider_name} failed: {exc}")
            raise UpstreamError(
                f"The {provider_name} provider call failed.",
                detail=str(exc),
            ) from exc
        finally:
            upstream_latency_seconds.labels(provider=provider_name).observe(
                time.monotonic() - upstream_start
            )

        # ── Persist ───────────────────────────────────────────
        if self._store is not None:
            try:
                self._store.put(cache_key, response.to_cache_payload(), self._cache_ttl)
            except OSError as exc:
                cache_write_failures_total.inc()
                logger.warning(f"Could not cache {provider_name} response: {exc}")

        # ── Consume ───────────────────────────────────────────
        tries_remaining = None
        if self._quota is not None:
            tries_remaining = self._quota.consume(identifier)

        gateway_requests_total.labels(provider=provider_name, outcome="upstream").inc()
        logger.info(
            "Upstream response served",
            provider=provider_name,
            model=response.model,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            tries_remaining=tries_remaining,
        )

        return response.model_copy(
            update={"from_cache": False, "tries_remaining": tries_remaining}
        )

    def _read_cached(self, cache_key: str) -> GatewayResponse | None:
        raw = self._store.get(cache_key)  # type: ignore[union-attr]
        if raw is None:
            return None
        try:
            return GatewayResponse.from_cache_payload(raw)
        except CorruptStateError:
            logger.warning("Discarding undecodable cached response")
            return None
