# src/ephemeral_auth/models/pending_credential.py
"""Per-subject record bridging the two calls of the direct-grant flow."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from ephemeral_auth.db.session import Base


class PendingCredential(Base):
    """Identifier of an OTP issued to a subject and not yet validated."""

    __tablename__ = "pending_credentials"

    subject_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("subjects.id", ondelete="CASCADE"),
        primary_key=True,
    )
    credential_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact: Mapped[str] = mapped_column(String(320), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
