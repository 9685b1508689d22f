"""Tests for the credential store and replay ledger."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from ephemeral_auth.services.store import (
    ConsumeStatus,
    InMemoryCredentialStore,
    InMemoryReplayLedger,
    RedisCredentialStore,
    RedisReplayLedger,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryCredentialStore:
    return InMemoryCredentialStore(clock=clock)


def test_put_and_get_returns_record(store: InMemoryCredentialStore) -> None:
    store.put("otp_1", {"code": "123456"}, ttl_seconds=300)
    record = store.get("otp_1")
    assert record is not None
    assert record.data == {"code": "123456"}
    assert record.used is False


def test_put_rejects_non_positive_ttl(store: InMemoryCredentialStore) -> None:
    with pytest.raises(ValueError):
        store.put("otp_1", {"code": "1"}, ttl_seconds=0)


def test_record_readable_at_expiry_and_gone_after(store: InMemoryCredentialStore, clock: FakeClock) -> None:
    store.put("otp_1", {"code": "1"}, ttl_seconds=300)
    clock.advance(300)
    assert store.get("otp_1") is not None
    clock.advance(0.001)
    assert store.get("otp_1") is None
    assert store.get("otp_1", include_expired=True) is not None


def test_consume_is_single_use(store: InMemoryCredentialStore) -> None:
    store.put("otp_1", {"code": "1"}, ttl_seconds=300)
    assert store.consume("otp_1") is ConsumeStatus.CONSUMED
    assert store.consume("otp_1") is ConsumeStatus.ALREADY_USED
    record = store.get("otp_1")
    assert record is not None and record.used is True


def test_consume_reports_absent_and_expired(store: InMemoryCredentialStore, clock: FakeClock) -> None:
    assert store.consume("missing") is ConsumeStatus.ABSENT
    store.put("otp_1", {"code": "1"}, ttl_seconds=60)
    clock.advance(61)
    assert store.consume("otp_1") is ConsumeStatus.EXPIRED


def test_concurrent_consume_has_exactly_one_winner(store: InMemoryCredentialStore) -> None:
    store.put("otp_1", {"code": "1"}, ttl_seconds=300)
    results: list[ConsumeStatus] = []
    barrier = threading.Barrier(16)

    def worker() -> None:
        barrier.wait()
        results.append(store.consume("otp_1"))

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(ConsumeStatus.CONSUMED) == 1
    assert results.count(ConsumeStatus.ALREADY_USED) == 15


def test_update_keeps_expiry_and_merges(store: InMemoryCredentialStore, clock: FakeClock) -> None:
    store.put("flow_1", {"state": "START", "attempts": 0}, ttl_seconds=100)
    before = store.get("flow_1")
    assert before is not None
    clock.advance(10)
    assert store.update("flow_1", {"attempts": 1}) is True
    after = store.get("flow_1")
    assert after is not None
    assert after.data == {"state": "START", "attempts": 1}
    assert after.expires_at == before.expires_at
    assert store.update("missing", {"attempts": 1}) is False


def test_sweep_removes_only_expired(store: InMemoryCredentialStore, clock: FakeClock) -> None:
    store.put("short", {}, ttl_seconds=10)
    store.put("long", {}, ttl_seconds=1_000)
    clock.advance(11)
    assert store.sweep_expired() == 1
    assert len(store) == 1
    assert store.get("long") is not None


def test_ledger_first_mark_wins(clock: FakeClock) -> None:
    ledger = InMemoryReplayLedger(clock=clock)
    assert ledger.is_consumed("jti-1") is False
    assert ledger.mark_consumed("jti-1") is True
    assert ledger.mark_consumed("jti-1") is False
    assert ledger.is_consumed("jti-1") is True
    assert ledger.consumed_at("jti-1") == clock.now


def test_ledger_concurrent_marks_have_one_winner() -> None:
    ledger = InMemoryReplayLedger()
    results: list[bool] = []
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        results.append(ledger.mark_consumed("jti-1"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1


def test_ledger_sweep_honours_retention(clock: FakeClock) -> None:
    ledger = InMemoryReplayLedger(clock=clock)
    ledger.mark_consumed("old")
    clock.advance(100)
    ledger.mark_consumed("new")
    assert ledger.sweep(retention_seconds=50) == 1
    assert ledger.is_consumed("old") is False
    assert ledger.is_consumed("new") is True


def test_redis_store_consume_uses_set_nx(clock: FakeClock) -> None:
    client = MagicMock()
    client.get.return_value = '{"data": {"code": "1"}, "expires_at": 1300.0}'
    client.exists.return_value = 0
    client.set.return_value = True
    store = RedisCredentialStore(client, prefix="otp", clock=clock)

    assert store.consume("abc") is ConsumeStatus.CONSUMED
    client.set.assert_called_once_with("otp:abc:used", "1", nx=True, ex=360)

    client.set.return_value = None
    assert store.consume("abc") is ConsumeStatus.ALREADY_USED


def test_redis_store_reports_used_flag_and_expiry(clock: FakeClock) -> None:
    client = MagicMock()
    client.get.return_value = '{"data": {"code": "1"}, "expires_at": 900.0}'
    client.exists.return_value = 0
    store = RedisCredentialStore(client, prefix="otp", clock=clock)

    assert store.get("abc") is None
    assert store.consume("abc") is ConsumeStatus.EXPIRED

    client.get.return_value = None
    assert store.consume("abc") is ConsumeStatus.ABSENT


def test_redis_put_clears_used_marker(clock: FakeClock) -> None:
    client = MagicMock()
    store = RedisCredentialStore(client, prefix="flow", clock=clock)
    store.put("s1", {"state": "START"}, ttl_seconds=900)
    key, _payload = client.set.call_args.args
    assert key == "flow:s1"
    assert client.set.call_args.kwargs["ex"] == 960
    client.delete.assert_called_once_with("flow:s1:used")


def test_redis_ledger_marks_with_retention() -> None:
    client = MagicMock()
    client.set.side_effect = [True, None]
    ledger = RedisReplayLedger(client, retention_seconds=86_400, clock=lambda: 5.0)
    assert ledger.mark_consumed("jti-1") is True
    assert ledger.mark_consumed("jti-1") is False
    client.set.assert_called_with("replay:jti-1", "5.0", nx=True, ex=86_400)
