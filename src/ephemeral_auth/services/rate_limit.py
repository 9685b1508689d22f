"""Fixed-window rate limiting for credential issuance."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def try_acquire(self, scope_key: str, limit: int, window_seconds: float) -> bool: ...

    def sweep_expired(self, max_age_seconds: float) -> int: ...


def scope_key(action: str, realm: str, contact: str, subject_id: str | None = None) -> str:
    """Compose the counter key for an action performed on behalf of a subject."""
    parts = [action, realm, contact.strip().lower()]
    if subject_id:
        parts.append(subject_id)
    return ":".join(parts)


@dataclass
class RateWindow:
    """Counter for a single scope within its current window."""

    window_start: float
    count: int = 0


class InMemoryRateLimiter:
    """Fixed-window counter keyed by scope.

    A new window starts on the first request after the previous one elapsed,
    so bursts at a window edge can reach twice the nominal limit.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._lock = Lock()

    def try_acquire(self, scope_key: str, limit: int, window_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            window = self._windows.get(scope_key)
            if window is None or now - window.window_start >= window_seconds:
                window = RateWindow(window_start=now)
                self._windows[scope_key] = window
            if window.count >= limit:
                logger.warning("Rate limit exceeded for %s (%d/%d)", scope_key, window.count, limit)
                return False
            window.count += 1
            return True

    def sweep_expired(self, max_age_seconds: float) -> int:
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            stale = [key for key, window in self._windows.items() if window.window_start < cutoff]
            for key in stale:
                del self._windows[key]
        return len(stale)


class RedisRateLimiter:
    """Fixed-window counter stored in Redis using ``INCR`` with a window expiry."""

    def __init__(self, client: Any, *, prefix: str = "ratelimit") -> None:
        self._redis = client
        self._prefix = prefix

    def try_acquire(self, scope_key: str, limit: int, window_seconds: float) -> bool:
        key = f"{self._prefix}:{scope_key}"
        pipe = self._redis.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        count, ttl = pipe.execute()
        if ttl is None or int(ttl) < 0:
            self._redis.expire(key, max(1, int(window_seconds)))
        if int(count) > limit:
            # Undo so a denial never eats into the counter.
            self._redis.decr(key)
            logger.warning("Rate limit exceeded for %s (%d/%d)", scope_key, limit, limit)
            return False
        return True

    def sweep_expired(self, max_age_seconds: float) -> int:
        return 0
