"""
tests/unit/test_expiring_store.py

Unit tests for FileExpiringStore and derive_cache_key.

Strategy:
- Every store lives in pytest's tmp_path and reads time from the
  FakeClock fixture, so expiry is tested without sleeping.
"""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from ai_gateway.schemas.gateway_schema import ChatMessage
from ai_gateway.services.expiring_store import FileExpiringStore, derive_cache_key


@pytest.fixture
def store(tmp_path, clock):
    return FileExpiringStore(tmp_path / "cache", clock=clock)


class TestPutAndGet:
    def test_get_returns_stored_value(self, store):
        store.put("k", "hello", ttl_seconds=60)
        assert store.get("k") == "hello"

    def test_missing_key_returns_none(self, store):
        assert store.get("never-written") is None

    def test_put_replaces_existing_entry(self, store):
        store.put("k", "first", ttl_seconds=60)
        store.put("k", "second", ttl_seconds=60)
        assert store.get("k") == "second"

    def test_base_dir_is_created(self, tmp_path):
        FileExpiringStore(tmp_path / "a" / "b")
        assert (tmp_path / "a" / "b").is_dir()

    def test_values_with_unicode_survive(self, store):
        store.put("k", "héllo → wörld", ttl_seconds=60)
        assert store.get("k") == "héllo → wörld"

    def test_one_file_per_key(self, store):
        store.put("a", "1", ttl_seconds=60)
        store.put("b", "2", ttl_seconds=60)
        assert len(list(store.base_dir.glob("*.cache"))) == 2

    def test_no_temp_files_left_behind(self, store):
        store.put("k", "v", ttl_seconds=60)
        assert list(store.base_dir.glob("*.tmp")) == []

    def test_entry_records_creation_and_expiry(self, store, clock):
        store.put("k", "v", ttl_seconds=60)
        entry = json.loads(store._path("k").read_text())
        assert entry["created_at"] == clock.now
        assert entry["expires_at"] == clock.now + 60

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_non_positive_ttl_is_rejected(self, store, ttl):
        with pytest.raises(ValueError):
            store.put("k", "v", ttl_seconds=ttl)
        assert store.get("k") is None

    def test_failed_write_leaves_previous_entry_and_no_temp_file(self, store):
        store.put("k", "old", ttl_seconds=60)
        with patch("ai_gateway.services.expiring_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.put("k", "new", ttl_seconds=60)
        assert store.get("k") == "old"
        assert list(store.base_dir.glob("*.tmp")) == []


class TestExpiry:
    def test_entry_is_live_until_expiry_instant(self, store, clock):
        store.put("k", "v", ttl_seconds=60)
        clock.advance(60)
        assert store.get("k") == "v"

    def test_entry_expires_after_ttl(self, store, clock):
        store.put("k", "v", ttl_seconds=60)
        clock.advance(60.5)
        assert store.get("k") is None

    def test_expired_entry_is_deleted_on_read(self, store, clock):
        store.put("k", "v", ttl_seconds=1)
        clock.advance(2)
        store.get("k")
        assert not store._path("k").exists()

    def test_rewrite_extends_lifetime(self, store, clock):
        store.put("k", "v1", ttl_seconds=10)
        clock.advance(8)
        store.put("k", "v2", ttl_seconds=10)
        clock.advance(8)
        assert store.get("k") == "v2"


class TestDeleteAndExists:
    def test_delete_removes_entry(self, store):
        store.put("k", "v", ttl_seconds=60)
        store.delete("k")
        assert store.get("k") is None

    def test_delete_missing_key_is_a_no_op(self, store):
        store.delete("never-written")

    def test_exists_tracks_liveness(self, store, clock):
        assert store.exists("k") is False
        store.put("k", "v", ttl_seconds=5)
        assert store.exists("k") is True
        clock.advance(6)
        assert store.exists("k") is False


class TestCorruptEntries:
    @pytest.mark.parametrize(
        "raw",
        [
            b"not json at all",
            b"\xff\xfe\x00garbage",
            b"[1, 2, 3]",
            b'{"value": 42, "expires_at": 9999999999}',
            b'{"value": "v"}',
            b'{"value": "v", "expires_at": "tomorrow"}',
        ],
    )
    def test_unreadable_entry_is_a_miss(self, store, raw):
        store._path("k").write_bytes(raw)
        assert store.get("k") is None

    def test_entry_path_that_cannot_be_read_is_a_miss(self, store):
        # A directory where the entry file should be makes every read fail
        store._path("k").mkdir()
        assert store.get("k") is None
        assert store.exists("k") is False

    def test_corrupt_entry_is_replaced_by_next_put(self, store):
        store._path("k").write_bytes(b"{truncated")
        store.put("k", "fixed", ttl_seconds=60)
        assert store.get("k") == "fixed"


class TestDeriveCacheKey:
    def _request(self, make_request, **overrides):
        return make_request("Explain TTL caches", **overrides)

    def test_identical_requests_share_a_key(self, make_request):
        assert derive_cache_key(self._request(make_request)) == derive_cache_key(
            self._request(make_request)
        )

    def test_key_is_sha256_hex(self, make_request):
        key = derive_cache_key(self._request(make_request))
        assert len(key) == 64
        int(key, 16)

    def test_fresh_does_not_change_the_key(self, make_request):
        assert derive_cache_key(self._request(make_request, fresh=True)) == derive_cache_key(
            self._request(make_request, fresh=False)
        )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"model": "other-model"},
            {"temperature": 0.1},
            {"temperature": None},
            {"max_tokens": 99},
            {"system_prompt": "Be terse."},
        ],
    )
    def test_answer_shaping_fields_change_the_key(self, make_request, overrides):
        assert derive_cache_key(self._request(make_request, **overrides)) != derive_cache_key(
            self._request(make_request)
        )

    def test_message_content_changes_the_key(self, make_request):
        assert derive_cache_key(make_request("a")) != derive_cache_key(make_request("b"))

    def test_message_order_changes_the_key(self, make_request):
        first = ChatMessage(role="user", content="one")
        second = ChatMessage(role="assistant", content="two")
        assert derive_cache_key(make_request(messages=[first, second])) != derive_cache_key(
            make_request(messages=[second, first])
        )

    def test_provider_name_changes_the_key(self, make_request):
        request = self._request(make_request)
        assert derive_cache_key(request, provider="openai") != derive_cache_key(
            request, provider="anthropic"
        )
