"""Tests for the background credential sweeper."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session

from ephemeral_auth.db.time import utcnow
from ephemeral_auth.models import Subject
from ephemeral_auth.repositories import PendingCredentialRef, PendingCredentialRepository
from ephemeral_auth.services.rate_limit import InMemoryRateLimiter
from ephemeral_auth.services.state import CredentialState
from ephemeral_auth.services.store import InMemoryCredentialStore, InMemoryReplayLedger
from ephemeral_auth.services.sweeper import CredentialSweeper


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state(clock: FakeClock) -> CredentialState:
    return CredentialState(
        codes=InMemoryCredentialStore(clock=clock),
        sessions=InMemoryCredentialStore(clock=clock),
        ledger=InMemoryReplayLedger(clock=clock),
        limiter=InMemoryRateLimiter(clock=clock),
    )


def test_sweep_once_clears_expired_state(state: CredentialState, clock: FakeClock) -> None:
    state.codes.put("otp_old", {"code": "1"}, ttl_seconds=60)
    state.codes.put("otp_new", {"code": "2"}, ttl_seconds=100_000)
    state.sessions.put("flow_old", {}, ttl_seconds=60)
    state.ledger.mark_consumed("jti-old")
    state.limiter.try_acquire("otp:r:a@x.io", 5, 60)
    clock.now = 90_000.0

    report = CredentialSweeper(state, session_factory=None).sweep_once()

    assert report.codes == 1
    assert report.sessions == 1
    assert report.ledger == 1
    assert report.rate_windows == 1
    assert report.pending_refs == 0
    assert report.total == 4
    assert state.codes.get("otp_new") is not None


def test_sweep_purges_abandoned_pending_refs(
    state: CredentialState,
    db_session: Session,
    alice: Subject,
    bob: Subject,
) -> None:
    repo = PendingCredentialRepository(db_session)
    now = utcnow()
    repo.save(alice.id, PendingCredentialRef("otp_a", alice.email, now - timedelta(hours=1)))
    repo.save(bob.id, PendingCredentialRef("otp_b", bob.email, now))

    factory = MagicMock()
    factory.return_value.__enter__.return_value = db_session
    factory.return_value.__exit__.return_value = None

    report = CredentialSweeper(state, session_factory=factory).sweep_once()

    assert report.pending_refs == 1
    assert repo.load(alice.id) is None
    assert repo.load(bob.id) is not None


@pytest.mark.asyncio
async def test_start_and_stop(state: CredentialState) -> None:
    sweeper = CredentialSweeper(state, interval_seconds=0.1, session_factory=None)
    await sweeper.start()
    await asyncio.sleep(0.05)
    await sweeper.stop()
    assert sweeper._task is None
