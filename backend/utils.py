# Raid Scholar - Utility Functions
# Per-client rate limiting + TTL response cache for the API layer

import hashlib
import json
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from backend.errors import RateLimitExceeded


# ─────────────────────────────────────────
# RATE LIMITING
# ─────────────────────────────────────────

class RateLimitResult(NamedTuple):
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds when the current window ends


class RateLimiter:
    """
    Fixed-window request counter keyed by client identifier.

    The first request from a client opens a window of `window_seconds`; every
    request inside it counts against `max_requests`. An expired window is
    dropped on the next check for that key, and once the table holds
    `sweep_threshold` windows every expired one is swept. In-process only, so
    each worker keeps its own counts.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_threshold: int = 1024):
        self._clock = clock
        self.sweep_threshold = sweep_threshold
        self._windows: Dict[str, List[float]] = {}  # key -> [count, reset_at]

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        expired = [key for key, record in self._windows.items() if record[1] < now]
        for key in expired:
            del self._windows[key]

    def check(self, identifier: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        now = self._clock()
        if len(self._windows) >= self.sweep_threshold:
            self._sweep(now)
        record = self._windows.get(identifier)

        if record is not None and record[1] < now:
            del self._windows[identifier]
            record = None

        if record is None:
            record = [1, now + window_seconds]
            self._windows[identifier] = record
            return RateLimitResult(True, max_requests - 1, record[1])

        if record[0] >= max_requests:
            return RateLimitResult(False, 0, record[1])

        record[0] += 1
        return RateLimitResult(True, max_requests - int(record[0]), record[1])

    def enforce(self, identifier: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        """check(), raising RateLimitExceeded instead of returning a rejection."""
        result = self.check(identifier, max_requests, window_seconds)
        if not result.allowed:
            raise RateLimitExceeded(identifier, result.reset_at)
        return result

    def reset(self) -> None:
        self._windows.clear()


def get_client_identifier(headers) -> str:
    """
    Best-effort client IP from proxy headers (first x-forwarded-for hop, then
    x-real-ip). Everything without either header shares the "unknown" bucket.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip

    return "unknown"


# ─────────────────────────────────────────
# RESPONSE CACHE
# ─────────────────────────────────────────

class TTLCache:
    """
    Dict cache whose entries expire `ttl` seconds after they were set.
    Expired entries are removed when read. Once max_entries is reached the
    oldest insertion is evicted (FIFO).
    """

    def __init__(self, default_ttl: float = 60.0, max_entries: int = 256, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at < self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._entries.pop(next(iter(self._entries)))
        self._entries[key] = (value, self._clock() + (ttl if ttl is not None else self.default_ttl))

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


def search_cache_key(query: str, filters: Optional[dict] = None, limit: Optional[int] = None) -> str:
    filter_str = json.dumps(filters, sort_keys=True) if filters else ""
    limit_str = "" if limit is None else str(limit)
    return f"search:{query}:{filter_str}:{limit_str}"


def chat_cache_key(query: str, history: Optional[list] = None) -> str:
    history_hash = hashlib.sha1(json.dumps(history or [], sort_keys=True).encode("utf-8")).hexdigest()[:16]
    return f"chat:{history_hash}:{query}"
