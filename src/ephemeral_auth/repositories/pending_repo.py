"""Durable per-subject state for the two calls of the direct-grant flow."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ephemeral_auth.models.pending_credential import PendingCredential

__all__ = ["PendingCredentialRef", "PendingCredentialRepository"]


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@dataclass(frozen=True)
class PendingCredentialRef:
    """Reference to a code issued in the first call, awaiting the second."""

    credential_id: str
    contact: str
    issued_at: datetime


class PendingCredentialRepository:
    """save / load / clear of the pending credential attached to a subject."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def save(self, subject_id: str, ref: PendingCredentialRef) -> None:
        """Attach ``ref`` to the subject, replacing any earlier one."""
        row = self.session.get(PendingCredential, subject_id)
        if row is None:
            row = PendingCredential(subject_id=subject_id)
            self.session.add(row)
        row.credential_id = ref.credential_id
        row.contact = ref.contact
        row.issued_at = ref.issued_at
        self.session.flush()

    def load(self, subject_id: str) -> PendingCredentialRef | None:
        row = self.session.get(PendingCredential, subject_id)
        if row is None:
            return None
        return PendingCredentialRef(
            credential_id=row.credential_id,
            contact=row.contact,
            issued_at=_aware(row.issued_at),
        )

    def clear(self, subject_id: str) -> None:
        row = self.session.get(PendingCredential, subject_id)
        if row is not None:
            self.session.delete(row)
            self.session.flush()

    def purge_issued_before(self, cutoff: datetime) -> int:
        """Drop references abandoned before ``cutoff``; return how many."""
        stale = list(
            self.session.scalars(
                select(PendingCredential.subject_id).where(PendingCredential.issued_at < cutoff)
            )
        )
        if stale:
            self.session.execute(
                delete(PendingCredential).where(PendingCredential.subject_id.in_(stale))
            )
            self.session.flush()
        return len(stale)
