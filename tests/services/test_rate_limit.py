"""Tests for fixed-window rate limiting."""

from __future__ import annotations

from unittest.mock import MagicMock

from ephemeral_auth.services.rate_limit import InMemoryRateLimiter, RedisRateLimiter, scope_key


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_scope_key_normalizes_contact() -> None:
    assert scope_key("otp", "acme", " Alice@Example.com ") == "otp:acme:alice@example.com"
    assert scope_key("magiclink", "acme", "a@b.c", "42") == "magiclink:acme:a@b.c:42"


def test_limit_of_three_per_window() -> None:
    clock = FakeClock(0.0)
    limiter = InMemoryRateLimiter(clock=clock)
    key = scope_key("otp", "acme", "alice@example.com")

    assert [limiter.try_acquire(key, 3, 60) for _ in range(4)] == [True, True, True, False]

    clock.now = 59.0
    assert limiter.try_acquire(key, 3, 60) is False

    clock.now = 61.0
    assert limiter.try_acquire(key, 3, 60) is True


def test_scopes_are_counted_separately() -> None:
    limiter = InMemoryRateLimiter(clock=FakeClock())
    assert limiter.try_acquire("otp:acme:a@x.io", 1, 60) is True
    assert limiter.try_acquire("otp:acme:a@x.io", 1, 60) is False
    assert limiter.try_acquire("otp:acme:b@x.io", 1, 60) is True
    assert limiter.try_acquire("otp:other:a@x.io", 1, 60) is True


def test_denied_requests_do_not_extend_the_window() -> None:
    clock = FakeClock(0.0)
    limiter = InMemoryRateLimiter(clock=clock)
    limiter.try_acquire("k", 1, 60)
    clock.now = 30.0
    assert limiter.try_acquire("k", 1, 60) is False
    clock.now = 60.0
    assert limiter.try_acquire("k", 1, 60) is True


def test_sweep_drops_old_windows() -> None:
    clock = FakeClock(0.0)
    limiter = InMemoryRateLimiter(clock=clock)
    limiter.try_acquire("old", 5, 60)
    clock.now = 4_000.0
    limiter.try_acquire("fresh", 5, 60)
    assert limiter.sweep_expired(3_600) == 1
    assert limiter.sweep_expired(3_600) == 0


def test_redis_limiter_undoes_denied_increment() -> None:
    client = MagicMock()
    pipe = client.pipeline.return_value
    pipe.execute.return_value = [4, 30]
    limiter = RedisRateLimiter(client)

    assert limiter.try_acquire("otp:acme:a@x.io", 3, 60) is False
    client.decr.assert_called_once_with("ratelimit:otp:acme:a@x.io")
    client.expire.assert_not_called()


def test_redis_limiter_sets_window_expiry_on_first_hit() -> None:
    client = MagicMock()
    pipe = client.pipeline.return_value
    pipe.execute.return_value = [1, -1]
    limiter = RedisRateLimiter(client)

    assert limiter.try_acquire("otp:acme:a@x.io", 3, 60) is True
    client.expire.assert_called_once_with("ratelimit:otp:acme:a@x.io", 60)
    client.decr.assert_not_called()
