"""
ai_gateway/utils/metrics.py

Prometheus metrics definitions for the gateway.

Design Decisions:
- Metrics are defined at module level (singletons) so they can
  be imported anywhere without double-registration.
- Label cardinality is kept low: provider, scope and outcome only,
  never client identifiers.
- prometheus-fastapi-instrumentator handles HTTP-level metrics;
  these are gateway-level business metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ── Traffic ───────────────────────────────────────────────────

gateway_requests_total = Counter(
    name="ai_gateway_requests_total",
    documentation="Gateway requests by provider and outcome "
                  "(cache_hit, upstream, rejected, failed)",
    labelnames=["provider", "outcome"],
)

cache_lookups_total = Counter(
    name="ai_gateway_cache_lookups_total",
    documentation="Response cache lookups by result (hit, miss, bypass)",
    labelnames=["result"],
)

# ── Latency ───────────────────────────────────────────────────

upstream_latency_seconds = Histogram(
    name="ai_gateway_upstream_latency_seconds",
    documentation="Time spent waiting on the upstream provider",
    labelnames=["provider"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, float("inf")),
)

# ── Errors ────────────────────────────────────────────────────

upstream_errors_total = Counter(
    name="ai_gateway_upstream_errors_total",
    documentation="Total number of failed provider calls",
    labelnames=["provider"],
)

quota_rejections_total = Counter(
    name="ai_gateway_quota_rejections_total",
    documentation="Requests rejected because the identifier was over quota",
    labelnames=["scope"],
)

quota_lock_timeouts_total = Counter(
    name="ai_gateway_quota_lock_timeouts_total",
    documentation="consume() calls that gave up waiting for the record lock",
    labelnames=["scope"],
)

cache_write_failures_total = Counter(
    name="ai_gateway_cache_write_failures_total",
    documentation="Responses that could not be written to the cache",
)

quota_storage_errors_total = Counter(
    name="ai_gateway_quota_storage_errors_total",
    documentation="consume() calls that could not read or write the quota files",
    labelnames=["scope"],
)
