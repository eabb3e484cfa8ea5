"""
ai_gateway/services/quota_counter.py

Fixed-window request quota per (scope, identifier), backed by files.

Directory structure:
    {base_dir}/
        {sha256([scope_id, identifier])}.rl        JSON: {"count", "window_start"}
        {sha256([scope_id, identifier])}.rl.lock   flock target, never deleted

Design Decisions:
- consume() is the authoritative path. It holds an exclusive flock on
  the record's sidecar lock file across read, rollover, increment and
  write, so concurrent callers on the same record are serialised.
- is_allowed() takes no lock. It is an early-rejection hint; a caller
  that passes it still goes through consume() afterwards.
- Records are replaced atomically (temp file + rename), so the unlocked
  reader in is_allowed() always sees a whole record.
- The lock lives in a separate file because the record file's inode
  changes on every rename; locking it would lock a stale file.
- Lock wait is bounded. If the lock cannot be taken within
  `lock_timeout_seconds`, consume() fails open: it logs, counts the
  timeout and returns the remaining count from an unlocked read without
  persisting. A finished upstream call is never thrown away because
  another process held the lock too long.
- An OSError on the lock or record file is handled the same way.
  Storage trouble costs accuracy, never a paid-for answer.
- A missing, corrupt or unreadable record is a fresh window, never an
  error.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ai_gateway.utils.config import DEFAULT_LOCK_TIMEOUT_SECONDS, RateLimitSettings
from ai_gateway.utils.exceptions import CorruptStateError
from ai_gateway.utils.logger import get_logger, redact
from ai_gateway.utils.metrics import quota_lock_timeouts_total, quota_storage_errors_total

logger = get_logger(__name__)

_LOCK_POLL_INTERVAL_SECONDS = 0.01


@dataclass(frozen=True)
class QuotaWindow:
    """Request count for one (scope, identifier) since `window_start`."""

    count: int
    window_start: float


class QuotaLockTimeout(Exception):
    """The record lock could not be acquired in time."""


class QuotaCounter(ABC):
    """Fixed-window limiter keyed by identifier within one scope."""

    scope_id: str
    max_requests: int

    @abstractmethod
    def is_allowed(self, identifier: str) -> bool:
        """Return True if `identifier` still has quota. Never mutates state."""

    @abstractmethod
    def consume(self, identifier: str) -> int:
        """Record one request for `identifier` and return the quota left."""


class FileQuotaCounter(QuotaCounter):
    """
    QuotaCounter storing one small JSON record per (scope, identifier).

    Args:
        base_dir: Directory for record and lock files (created if missing).
        scope_id: Namespace separating independent quota pools.
        max_requests: Requests allowed per window.
        window_seconds: Window length.
        lock_timeout_seconds: Longest consume() waits for the record lock.
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        base_dir: str | Path,
        scope_id: str,
        max_requests: int,
        window_seconds: int,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests < 1:
            raise ValueError(f"max_requests must be at least 1, got {max_requests}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")

        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.scope_id = scope_id
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.lock_timeout_seconds = lock_timeout_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: RateLimitSettings) -> "FileQuotaCounter":
        return cls(
            base_dir=settings.path,
            scope_id=settings.scope_id,
            max_requests=settings.max_requests,
            window_seconds=settings.window_seconds,
            lock_timeout_seconds=settings.lock_timeout_seconds,
        )

    # ── Public API ─────────────────────────────────────────────

    def is_allowed(self, identifier: str) -> bool:
        window = self._current_window(self._record_path(identifier))
        return window.count < self.max_requests

    def consume(self, identifier: str) -> int:
        record = self._record_path(identifier)
        try:
            with self._locked(record):
                window = self._current_window(record)
                window = QuotaWindow(count=window.count + 1, window_start=window.window_start)
                self._write(record, window)
        except QuotaLockTimeout:
            quota_lock_timeouts_total.labels(scope=self.scope_id).inc()
            logger.warning(
                "Quota lock timed out; request not counted",
                scope=self.scope_id,
                identifier=redact(identifier),
                timeout_s=self.lock_timeout_seconds,
            )
            window = self._estimate_after_consume(record)
        except OSError as exc:
            quota_storage_errors_total.labels(scope=self.scope_id).inc()
            logger.warning(
                "Quota record could not be updated; request not counted",
                scope=self.scope_id,
                identifier=redact(identifier),
                error=str(exc),
            )
            window = self._estimate_after_consume(record)

        return max(0, self.max_requests - window.count)

    # ── Internal helpers ───────────────────────────────────────

    def _record_path(self, identifier: str) -> Path:
        key = json.dumps([self.scope_id, identifier], ensure_ascii=False)
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.base_dir / f"{digest}.rl"

    def _current_window(self, record: Path) -> QuotaWindow:
        """Stored window for `record`, rolled over if it has expired."""
        now = self._clock()
        try:
            window = _read_window(record)
        except FileNotFoundError:
            return QuotaWindow(count=0, window_start=now)
        except CorruptStateError:
            logger.warning(f"Resetting unreadable quota record {record.name}")
            return QuotaWindow(count=0, window_start=now)
        except OSError as exc:
            logger.warning(f"Treating unreadable quota record {record.name} as empty: {exc}")
            return QuotaWindow(count=0, window_start=now)

        if now > window.window_start + self.window_seconds:
            return QuotaWindow(count=0, window_start=now)
        return window

    def _estimate_after_consume(self, record: Path) -> QuotaWindow:
        """Unlocked view of the window as if this request had been counted."""
        window = self._current_window(record)
        return QuotaWindow(count=window.count + 1, window_start=window.window_start)

    def _write(self, record: Path, window: QuotaWindow) -> None:
        payload = {"count": window.count, "window_start": window.window_start}
        fd, tmp_path = tempfile.mkstemp(dir=self.base_dir, prefix=f".{record.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, record)
        except Exception:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    @contextmanager
    def _locked(self, record: Path) -> Iterator[None]:
        """Hold an exclusive flock on the record's lock file, waiting at most the timeout."""
        lock_path = record.with_name(f"{record.name}.lock")
        deadline = time.monotonic() + self.lock_timeout_seconds

        with open(lock_path, "a") as lock_file:
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise QuotaLockTimeout(lock_path.name) from None
                    time.sleep(_LOCK_POLL_INTERVAL_SECONDS)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def _read_window(record: Path) -> QuotaWindow:
    raw = record.read_bytes()
    try:
        data = json.loads(raw.decode("utf-8"))
    except ValueError as exc:
        raise CorruptStateError("Quota record is not valid JSON.") from exc

    if not isinstance(data, dict):
        raise CorruptStateError("Quota record has an unexpected shape.")
    count = data.get("count")
    window_start = data.get("window_start")
    if (
        not isinstance(count, int)
        or isinstance(count, bool)
        or count < 0
        or not isinstance(window_start, (int, float))
    ):
        raise CorruptStateError("Quota record has an unexpected shape.")
    return QuotaWindow(count=count, window_start=float(window_start))
