"""TTL-bounded one-time-use storage for issued credentials.

Two kinds of state live here:

- ``CredentialStore``: records keyed by an opaque identifier (OTP codes and
  interactive flow sessions). Records expire after their TTL and can be
  consumed exactly once.
- ``ReplayLedger``: ids of link tokens that were already redeemed, kept for
  a retention window so a replayed token is rejected.

Both come with an in-process backend guarded by a lock and a Redis backend
that relies on atomic ``SET NX`` for the first-wins guarantee.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Protocol

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Redis keys outlive the logical expiry so a late read reports "expired", not "absent".
_REDIS_EXPIRY_GRACE_SECONDS = 60


class ConsumeStatus(str, Enum):
    """Outcome of an attempt to consume a stored credential."""

    CONSUMED = "consumed"
    ALREADY_USED = "already_used"
    ABSENT = "absent"
    EXPIRED = "expired"


@dataclass(frozen=True)
class StoredRecord:
    """Snapshot of a stored record."""

    data: dict[str, Any]
    expires_at: float
    used: bool = False

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class CredentialStore(Protocol):
    def put(self, key: str, record: Mapping[str, Any], ttl_seconds: float) -> None: ...

    def get(self, key: str, *, include_expired: bool = False) -> StoredRecord | None: ...

    def update(self, key: str, changes: Mapping[str, Any]) -> bool: ...

    def consume(self, key: str) -> ConsumeStatus: ...

    def delete(self, key: str) -> None: ...

    def sweep_expired(self) -> int: ...


class ReplayLedger(Protocol):
    def is_consumed(self, token_id: str) -> bool: ...

    def mark_consumed(self, token_id: str) -> bool: ...

    def sweep(self, retention_seconds: float) -> int: ...


class InMemoryCredentialStore:
    """Process-local credential store with lazy expiry and a sweep."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._records: dict[str, StoredRecord] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def put(self, key: str, record: Mapping[str, Any], ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        expires_at = self._clock() + float(ttl_seconds)
        with self._lock:
            self._records[key] = StoredRecord(data=dict(record), expires_at=expires_at)

    def get(self, key: str, *, include_expired: bool = False) -> StoredRecord | None:
        with self._lock:
            record = self._records.get(key)
        if record is None:
            return None
        if not include_expired and record.is_expired(self._clock()):
            return None
        return record

    def update(self, key: str, changes: Mapping[str, Any]) -> bool:
        """Merge ``changes`` into a live record, keeping its expiry."""
        with self._lock:
            record = self._records.get(key)
            if record is None or record.is_expired(self._clock()):
                return False
            self._records[key] = StoredRecord(
                data={**record.data, **changes},
                expires_at=record.expires_at,
                used=record.used,
            )
            return True

    def consume(self, key: str) -> ConsumeStatus:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return ConsumeStatus.ABSENT
            if record.used:
                return ConsumeStatus.ALREADY_USED
            if record.is_expired(self._clock()):
                return ConsumeStatus.EXPIRED
            self._records[key] = StoredRecord(
                data=record.data,
                expires_at=record.expires_at,
                used=True,
            )
            return ConsumeStatus.CONSUMED

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._records.items() if record.is_expired(now)]
            for key in expired:
                del self._records[key]
        if expired:
            logger.debug("Swept %d expired credential records", len(expired))
        return len(expired)


class InMemoryReplayLedger:
    """Process-local ledger of consumed link-token ids."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._consumed: dict[str, float] = {}
        self._lock = Lock()

    def consumed_at(self, token_id: str) -> float | None:
        with self._lock:
            return self._consumed.get(token_id)

    def is_consumed(self, token_id: str) -> bool:
        return self.consumed_at(token_id) is not None

    def mark_consumed(self, token_id: str) -> bool:
        """Record ``token_id`` as consumed; return False if it already was."""
        with self._lock:
            if token_id in self._consumed:
                return False
            self._consumed[token_id] = self._clock()
            return True

    def sweep(self, retention_seconds: float) -> int:
        cutoff = self._clock() - retention_seconds
        with self._lock:
            stale = [key for key, ts in self._consumed.items() if ts < cutoff]
            for key in stale:
                del self._consumed[key]
        return len(stale)


class RedisCredentialStore:
    """Credential store backed by Redis, shared across instances."""

    def __init__(self, client: Any, *, prefix: str = "cred", clock: Clock = time.time) -> None:
        self._redis = client
        self._prefix = prefix
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _used_key(self, key: str) -> str:
        return f"{self._prefix}:{key}:used"

    def put(self, key: str, record: Mapping[str, Any], ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        expires_at = self._clock() + float(ttl_seconds)
        payload = json.dumps({"data": dict(record), "expires_at": expires_at})
        self._redis.set(
            self._key(key),
            payload,
            ex=int(ttl_seconds) + _REDIS_EXPIRY_GRACE_SECONDS,
        )
        self._redis.delete(self._used_key(key))

    def get(self, key: str, *, include_expired: bool = False) -> StoredRecord | None:
        raw = self._redis.get(self._key(key))
        if raw is None:
            return None
        decoded = json.loads(raw)
        record = StoredRecord(
            data=decoded["data"],
            expires_at=float(decoded["expires_at"]),
            used=bool(self._redis.exists(self._used_key(key))),
        )
        if not include_expired and record.is_expired(self._clock()):
            return None
        return record

    def update(self, key: str, changes: Mapping[str, Any]) -> bool:
        record = self.get(key)
        if record is None:
            return False
        remaining = max(1, int(record.expires_at - self._clock()))
        payload = json.dumps({"data": {**record.data, **changes}, "expires_at": record.expires_at})
        self._redis.set(self._key(key), payload, ex=remaining + _REDIS_EXPIRY_GRACE_SECONDS)
        return True

    def consume(self, key: str) -> ConsumeStatus:
        record = self.get(key, include_expired=True)
        if record is None:
            return ConsumeStatus.ABSENT
        if record.used:
            return ConsumeStatus.ALREADY_USED
        if record.is_expired(self._clock()):
            return ConsumeStatus.EXPIRED
        remaining = max(1, int(record.expires_at - self._clock()))
        claimed = self._redis.set(
            self._used_key(key),
            "1",
            nx=True,
            ex=remaining + _REDIS_EXPIRY_GRACE_SECONDS,
        )
        return ConsumeStatus.CONSUMED if claimed else ConsumeStatus.ALREADY_USED

    def delete(self, key: str) -> None:
        self._redis.delete(self._key(key), self._used_key(key))

    def sweep_expired(self) -> int:
        # Redis expires keys on its own.
        return 0


class RedisReplayLedger:
    """Replay ledger backed by Redis keys that expire after the retention window."""

    def __init__(
        self,
        client: Any,
        *,
        retention_seconds: int,
        prefix: str = "replay",
        clock: Clock = time.time,
    ) -> None:
        self._redis = client
        self._retention = int(retention_seconds)
        self._prefix = prefix
        self._clock = clock

    def is_consumed(self, token_id: str) -> bool:
        return bool(self._redis.exists(f"{self._prefix}:{token_id}"))

    def mark_consumed(self, token_id: str) -> bool:
        return bool(
            self._redis.set(
                f"{self._prefix}:{token_id}",
                str(self._clock()),
                nx=True,
                ex=self._retention,
            )
        )

    def sweep(self, retention_seconds: float) -> int:
        return 0
