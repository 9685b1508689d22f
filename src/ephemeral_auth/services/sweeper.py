"""Background sweeps of expired credential state.

Expired codes and flow sessions are already invisible to readers; the sweep
only bounds memory. Consumed link ids leave the replay ledger once the
retention window passes, stale rate windows are dropped, and direct-grant
references abandoned for longer than the maximum code lifetime are cleared.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

import redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ephemeral_auth.core.realms import OTP_TTL_RANGE
from ephemeral_auth.core.settings import settings
from ephemeral_auth.db.session import SessionLocal
from ephemeral_auth.db.time import utcnow
from ephemeral_auth.repositories.pending_repo import PendingCredentialRepository
from ephemeral_auth.services.state import CredentialState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    """Number of entries removed by one sweep."""

    codes: int = 0
    sessions: int = 0
    ledger: int = 0
    rate_windows: int = 0
    pending_refs: int = 0

    @property
    def total(self) -> int:
        return self.codes + self.sessions + self.ledger + self.rate_windows + self.pending_refs


class CredentialSweeper:
    """Periodically removes expired entries from the shared credential state."""

    def __init__(
        self,
        state: CredentialState,
        *,
        interval_seconds: float | None = None,
        session_factory: Callable[[], Session] | None = SessionLocal,
    ) -> None:
        self.state = state
        self.interval = max(0.1, float(interval_seconds or settings.sweep_interval_seconds))
        self._session_factory = session_factory
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    def _purge_pending(self) -> int:
        if self._session_factory is None:
            return 0
        cutoff = utcnow() - timedelta(seconds=OTP_TTL_RANGE[1])
        with self._session_factory() as db:
            removed = PendingCredentialRepository(db).purge_issued_before(cutoff)
            db.commit()
        return removed

    def sweep_once(self) -> SweepReport:
        """Run every sweep a single time."""
        report = SweepReport(
            codes=self.state.codes.sweep_expired(),
            sessions=self.state.sessions.sweep_expired(),
            ledger=self.state.ledger.sweep(settings.replay_retention_seconds),
            rate_windows=self.state.limiter.sweep_expired(settings.rate_window_retention_seconds),
            pending_refs=self._purge_pending(),
        )
        if report.total:
            logger.info(
                "Sweep removed %d codes, %d sessions, %d ledger entries, %d rate windows, %d pending refs",
                report.codes,
                report.sessions,
                report.ledger,
                report.rate_windows,
                report.pending_refs,
            )
        return report

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(self.sweep_once)
            except SQLAlchemyError as exc:
                logger.warning("Pending reference sweep failed: %s", exc)
            except (redis.RedisError, OSError) as exc:
                logger.warning("Credential sweep failed: %s", exc)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except TimeoutError:
                continue
