"""
ai_gateway/services/expiring_store.py

File-backed key/value store with per-entry TTL, used as the response cache.

Directory structure:
    {base_dir}/
        {sha256(key)}.cache    JSON: {"value", "created_at", "expires_at"}

Design Decisions:
- One file per key. Writes go to a temp file that is atomically renamed
  over the target, so readers never see a half-written entry and a
  failed write cannot damage any other key.
- No locking. Two writers racing on the same key is a lost update we
  accept: the same request recomputes an equivalent answer, and a stale
  entry is replaced on the next miss or `fresh` call.
- Expiry is lazy. An expired entry is deleted by the read that finds it.
- Unreadable entries are CorruptStateError internally and a plain miss
  to callers; the gateway must stay up when the disk holds garbage.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ai_gateway.schemas.gateway_schema import GatewayRequest
from ai_gateway.utils.exceptions import CorruptStateError
from ai_gateway.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600


def derive_cache_key(request: GatewayRequest, provider: str = "") -> str:
    """
    Canonical cache key for a request.

    Covers the provider name, model, messages, temperature, max_tokens
    and system_prompt. `fresh` is not part of the key, so a
    fresh call overwrites the entry a later non-fresh call will read.
    """
    payload = {"provider": provider, **request.cache_fields()}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ExpiringStore(ABC):
    """Key to string store where every entry carries its own TTL."""

    @abstractmethod
    def put(self, key: str, value: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        """Store `value` under `key` for `ttl_seconds`, replacing any entry."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the live value for `key`, or None if absent, expired or unreadable."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove `key`. A missing key is not an error."""

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class FileExpiringStore(ExpiringStore):
    """
    ExpiringStore that keeps one JSON file per key under `base_dir`.

    Usage:
        store = FileExpiringStore("storage/cache")
        store.put(key, payload, ttl_seconds=600)
        payload = store.get(key)
    """

    def __init__(
        self,
        base_dir: str | Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def put(self, key: str, value: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

        now = self._clock()
        entry = {"value": value, "created_at": now, "expires_at": now + ttl_seconds}
        path = self._path(key)

        fd, tmp_path = tempfile.mkstemp(dir=self.base_dir, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry, f)
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning(f"Ignoring unreadable cache entry {path.name}: {exc}")
            return None

        try:
            entry = _decode_entry(raw)
        except CorruptStateError:
            logger.warning(f"Ignoring unreadable cache entry {path.name}")
            return None

        if self._clock() > entry["expires_at"]:
            self.delete(key)
            return None

        return entry["value"]

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.base_dir / f"{digest}.cache"


def _decode_entry(raw: bytes) -> dict[str, Any]:
    try:
        entry = json.loads(raw.decode("utf-8"))
    except ValueError as exc:
        raise CorruptStateError("Cache entry is not valid JSON.") from exc

    if (
        not isinstance(entry, dict)
        or not isinstance(entry.get("value"), str)
        or not isinstance(entry.get("expires_at"), (int, float))
    ):
        raise CorruptStateError("Cache entry has an unexpected shape.")
    return entry
