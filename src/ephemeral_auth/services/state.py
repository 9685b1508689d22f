"""Process-wide credential state shared by all requests.

The stores are created once per process and injected into the services that
use them. With ``STORE_BACKEND=redis`` they live in Redis so several
instances share one view.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis

from ephemeral_auth.core.settings import Settings, settings
from ephemeral_auth.services.rate_limit import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from ephemeral_auth.services.store import (
    CredentialStore,
    InMemoryCredentialStore,
    InMemoryReplayLedger,
    RedisCredentialStore,
    RedisReplayLedger,
    ReplayLedger,
)

logger = logging.getLogger(__name__)


@dataclass
class CredentialState:
    """Shared mutable state: codes, flow sessions, replay ledger and rate counters."""

    codes: CredentialStore
    sessions: CredentialStore
    ledger: ReplayLedger
    limiter: RateLimiter


def build_credential_state(source: Settings | None = None) -> CredentialState:
    """Create the stores for the configured backend."""
    cfg = source or settings
    if cfg.use_redis:
        client = redis.from_url(cfg.redis_url)  # type: ignore[no-untyped-call]
        logger.info("Using Redis credential state at %s", cfg.redis_url)
        return CredentialState(
            codes=RedisCredentialStore(client, prefix="otp"),
            sessions=RedisCredentialStore(client, prefix="flow"),
            ledger=RedisReplayLedger(client, retention_seconds=cfg.replay_retention_seconds),
            limiter=RedisRateLimiter(client),
        )
    return CredentialState(
        codes=InMemoryCredentialStore(),
        sessions=InMemoryCredentialStore(),
        ledger=InMemoryReplayLedger(),
        limiter=InMemoryRateLimiter(),
    )


class _CredentialStateSingleton:
    """Singleton wrapper for CredentialState."""

    _instance: CredentialState | None = None

    @classmethod
    def get_instance(cls) -> CredentialState:
        if cls._instance is None:
            cls._instance = build_credential_state()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None


def get_credential_state() -> CredentialState:
    """Return the process-wide credential state."""
    return _CredentialStateSingleton.get_instance()


def reset_credential_state() -> None:
    """Forget the current state so the next call builds a fresh one."""
    _CredentialStateSingleton.reset()
