# src/ephemeral_auth/models/subject.py
"""SQLAlchemy model for subjects that can receive one-time credentials."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ephemeral_auth.db.session import Base
from ephemeral_auth.db.time import utcnow


def _new_subject_id() -> str:
    return str(uuid4())


class Subject(Base):
    """A user identity within a realm, resolved by its contact address."""

    __tablename__ = "subjects"
    __table_args__ = (UniqueConstraint("realm", "email", name="uq_subject_realm_email"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_subject_id)
    realm: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
