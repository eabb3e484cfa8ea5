"""
tests/unit/test_gateway_middleware.py

Unit tests for GatewayMiddleware.

Strategy:
- The provider is the scripted StubProvider from conftest; quota and
  cache are either real file-backed components in tmp_path or
  MagicMocks when a test only cares about call order.
- Each test class covers one stage of the gate → cache → upstream →
  persist → consume flow.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from ai_gateway.services.expiring_store import FileExpiringStore, derive_cache_key
from ai_gateway.services.gateway_middleware import GatewayMiddleware
from ai_gateway.services.quota_counter import FileQuotaCounter
from ai_gateway.utils.exceptions import ConfigurationError, QuotaExceededError, UpstreamError


# ── Fixtures ────────────────────────────────────────────────────

@pytest.fixture
def store(tmp_path, clock):
    return FileExpiringStore(tmp_path / "cache", clock=clock)


@pytest.fixture
def quota(tmp_path, clock):
    return FileQuotaCounter(
        tmp_path / "ratelimit",
        scope_id="test",
        max_requests=2,
        window_seconds=60,
        clock=clock,
    )


@pytest.fixture
def gateway(provider, quota, store):
    return GatewayMiddleware(provider, quota_counter=quota, store=store, cache_ttl_seconds=3600)


# ── Test Cases ───────────────────────────────────────────────────

class TestQuotaScenario:
    """max_requests=2, distinct prompts, no cache reuse."""

    def test_third_distinct_request_is_rejected(self, gateway, provider, make_request):
        first = gateway.handle(make_request("one"), "alice")
        second = gateway.handle(make_request("two"), "alice")

        assert first.tries_remaining == 1
        assert second.tries_remaining == 0

        with pytest.raises(QuotaExceededError) as exc_info:
            gateway.handle(make_request("three"), "alice")

        assert exc_info.value.http_status == 429
        assert exc_info.value.extra["limit"] == 2
        assert len(provider.calls) == 2

    def test_other_identifier_keeps_its_quota(self, gateway, make_request):
        gateway.handle(make_request("one"), "alice")
        gateway.handle(make_request("two"), "alice")
        assert gateway.handle(make_request("three"), "bob").tries_remaining == 1

    def test_quota_returns_after_window(self, gateway, clock, make_request):
        gateway.handle(make_request("one"), "alice")
        gateway.handle(make_request("two"), "alice")
        clock.advance(61)
        assert gateway.handle(make_request("three"), "alice").tries_remaining == 1


class TestGating:
    def test_rejection_happens_before_cache_lookup(self, provider, make_request):
        quota = MagicMock()
        quota.is_allowed.return_value = False
        quota.scope_id = "test"
        quota.max_requests = 2
        store = MagicMock()
        gateway = GatewayMiddleware(provider, quota_counter=quota, store=store)

        with pytest.raises(QuotaExceededError):
            gateway.handle(make_request(), "alice")

        store.get.assert_not_called()
        store.put.assert_not_called()
        quota.consume.assert_not_called()
        assert provider.calls == []

    def test_exhausted_identifier_cannot_read_cached_answers(self, gateway, make_request):
        request = make_request("cached prompt")
        gateway.handle(request, "alice")
        gateway.handle(make_request("other"), "alice")

        with pytest.raises(QuotaExceededError):
            gateway.handle(request, "alice")


class TestCaching:
    """TTL=3600, identical prompt twice."""

    def test_repeat_is_served_from_cache(self, gateway, provider, make_request):
        first = gateway.handle(make_request(), "alice")
        second = gateway.handle(make_request(), "alice")

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.content == first.content
        assert second.prompt_tokens == first.prompt_tokens
        assert len(provider.calls) == 1

    def test_cache_hit_does_not_consume_quota(self, gateway, quota, make_request):
        gateway.handle(make_request(), "alice")
        hit = gateway.handle(make_request(), "alice")

        assert hit.tries_remaining is None
        assert quota.consume("alice") == 0

    def test_cache_hit_serialises_without_tries_remaining(self, gateway, make_request):
        gateway.handle(make_request(), "alice")
        payload = gateway.handle(make_request(), "alice").to_dict()
        assert "tries_remaining" not in payload
        assert payload["from_cache"] is True

    def test_cache_is_shared_across_identifiers(self, gateway, provider, make_request):
        gateway.handle(make_request(), "alice")
        assert gateway.handle(make_request(), "bob").from_cache is True
        assert len(provider.calls) == 1

    def test_expired_entry_triggers_upstream_call(self, gateway, provider, clock, make_request):
        gateway.handle(make_request(), "alice")
        clock.advance(3601)
        again = gateway.handle(make_request(), "bob")
        assert again.from_cache is False
        assert len(provider.calls) == 2

    def test_entry_is_written_with_configured_ttl(self, provider, make_request):
        store = MagicMock()
        store.get.return_value = None
        gateway = GatewayMiddleware(provider, store=store, cache_ttl_seconds=120)
        request = make_request()

        gateway.handle(request)

        key, _payload, ttl = store.put.call_args.args
        assert key == derive_cache_key(request, provider="stub")
        assert ttl == 120

    def test_corrupt_cached_payload_is_a_miss(self, gateway, store, provider, make_request):
        request = make_request()
        store.put(derive_cache_key(request, provider="stub"), '{"content": 1}', 3600)

        response = gateway.handle(request, "alice")

        assert response.from_cache is False
        assert len(provider.calls) == 1

    def test_cache_write_failure_does_not_fail_request(self, provider, make_request):
        store = MagicMock()
        store.get.return_value = None
        store.put.side_effect = OSError("read-only file system")
        gateway = GatewayMiddleware(provider, store=store)

        response = gateway.handle(make_request())

        assert response.content == "Hello from upstream #1"


class TestStorageFailures:
    """Broken quota or cache files never cost the caller a paid-for answer."""

    def test_unreadable_cache_entry_is_a_miss(self, gateway, store, provider, make_request):
        request = make_request()
        store._path(derive_cache_key(request, provider="stub")).mkdir()

        response = gateway.handle(request, "alice")

        assert response.from_cache is False
        assert len(provider.calls) == 1

    def test_unreadable_quota_record_does_not_block_requests(self, gateway, quota, make_request):
        quota._record_path("alice").mkdir()

        response = gateway.handle(make_request(), "alice")

        assert response.content == "Hello from upstream #1"
        assert response.tries_remaining == 1

    def test_unusable_quota_lock_still_returns_the_answer(self, gateway, quota, provider, make_request):
        record = quota._record_path("alice")
        record.with_name(f"{record.name}.lock").mkdir()

        response = gateway.handle(make_request(), "alice")

        assert response.content == "Hello from upstream #1"
        assert response.tries_remaining == 1
        assert len(provider.calls) == 1

    @pytest.mark.parametrize("ttl", [0, -1])
    def test_non_positive_cache_ttl_is_rejected_up_front(self, provider, store, ttl):
        with pytest.raises(ValueError):
            GatewayMiddleware(provider, store=store, cache_ttl_seconds=ttl)


class TestFreshRequests:
    def test_fresh_skips_cache_read(self, gateway, provider, make_request):
        gateway.handle(make_request(), "alice")
        fresh = gateway.handle(make_request(fresh=True), "alice")

        assert fresh.from_cache is False
        assert fresh.content == "Hello from upstream #2"
        assert len(provider.calls) == 2

    def test_fresh_answer_is_written_for_later_reads(self, gateway, make_request):
        gateway.handle(make_request(), "alice")
        gateway.handle(make_request(fresh=True), "alice")
        later = gateway.handle(make_request(), "bob")

        assert later.from_cache is True
        assert later.content == "Hello from upstream #2"

    def test_fresh_consumes_quota(self, gateway, make_request):
        gateway.handle(make_request(), "alice")
        assert gateway.handle(make_request(fresh=True), "alice").tries_remaining == 0


class TestUpstreamFailure:
    def test_provider_error_becomes_upstream_error(self, failing_provider, quota, store, make_request):
        gateway = GatewayMiddleware(failing_provider, quota_counter=quota, store=store)

        with pytest.raises(UpstreamError) as exc_info:
            gateway.handle(make_request(), "alice")

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "connection reset" in exc_info.value.detail
        assert exc_info.value.http_status == 502

    def test_failed_call_consumes_nothing_and_caches_nothing(
        self, failing_provider, quota, store, make_request
    ):
        gateway = GatewayMiddleware(failing_provider, quota_counter=quota, store=store)
        request = make_request()

        with pytest.raises(UpstreamError):
            gateway.handle(request, "alice")

        assert quota.consume("alice") == 1
        assert store.get(derive_cache_key(request, provider="stub")) is None


class TestWithoutComponents:
    def test_no_limiter_means_no_tries_remaining(self, provider, store, make_request):
        gateway = GatewayMiddleware(provider, store=store)
        response = gateway.handle(make_request(), "alice")
        assert response.tries_remaining is None
        assert "tries_remaining" not in response.to_dict()

    def test_no_store_always_calls_upstream(self, provider, make_request):
        gateway = GatewayMiddleware(provider)
        gateway.handle(make_request())
        second = gateway.handle(make_request())
        assert second.from_cache is False
        assert len(provider.calls) == 2

    def test_consume_runs_after_persist(self, provider, make_request):
        calls: list[str] = []
        quota = MagicMock()
        quota.is_allowed.return_value = True
        quota.consume.side_effect = lambda identifier: calls.append("consume") or 4
        store = MagicMock()
        store.get.return_value = None
        store.put.side_effect = lambda *args: calls.append("put")
        gateway = GatewayMiddleware(provider, quota_counter=quota, store=store)

        response = gateway.handle(make_request(), "alice")

        assert calls == ["put", "consume"]
        assert response.tries_remaining == 4


class TestFromConfig:
    def test_builds_components_from_mapping(self, provider, tmp_path, make_request):
        gateway = GatewayMiddleware.from_config(
            provider,
            {
                "cache": {"enabled": True, "path": str(tmp_path / "c"), "ttl_seconds": 30},
                "rate_limit": {
                    "enabled": True,
                    "path": str(tmp_path / "r"),
                    "max_requests": 1,
                    "window_seconds": 60,
                },
            },
        )

        assert gateway.handle(make_request("one"), "alice").tries_remaining == 0
        assert len(list((tmp_path / "c").glob("*.cache"))) == 1
        with pytest.raises(QuotaExceededError):
            gateway.handle(make_request("one"), "alice")
        assert gateway.handle(make_request("one"), "bob").from_cache is True

    def test_disabled_sections_build_nothing(self, provider, tmp_path, make_request):
        gateway = GatewayMiddleware.from_config(
            provider,
            {
                "cache": {"enabled": False, "path": str(tmp_path / "c")},
                "rate_limit": {"enabled": False, "path": str(tmp_path / "r")},
            },
        )

        response = gateway.handle(make_request())

        assert response.tries_remaining is None
        assert not (tmp_path / "c").exists()
        assert not (tmp_path / "r").exists()

    def test_invalid_mapping_raises_configuration_error(self, provider):
        with pytest.raises(ConfigurationError):
            GatewayMiddleware.from_config(provider, {"rate_limit": {"max_requests": 0}})
