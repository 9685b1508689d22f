"""Data access helpers for working with subjects."""
from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ephemeral_auth.core.security import hash_password, verify_password
from ephemeral_auth.models.subject import Subject

__all__ = ["SubjectRepository", "normalize_email"]


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SubjectRepository:
    """Resolves contacts and usernames to subjects within a realm."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, realm: str, subject_id: str) -> Subject | None:
        """Return the subject with ``subject_id`` if it belongs to ``realm``."""
        return self.session.scalars(
            select(Subject).where(Subject.realm == realm, Subject.id == subject_id)
        ).first()

    def find_by_email(self, realm: str, email: str) -> Subject | None:
        """Return the subject registered under ``email``."""
        return self.session.scalars(
            select(Subject).where(Subject.realm == realm, Subject.email == normalize_email(email))
        ).first()

    def find_by_login(self, realm: str, login: str) -> Subject | None:
        """Return the subject whose username or email equals ``login``."""
        value = login.strip()
        return self.session.scalars(
            select(Subject).where(
                Subject.realm == realm,
                or_(
                    func.lower(Subject.username) == value.lower(),
                    Subject.email == normalize_email(value),
                ),
            )
        ).first()

    def create(
        self,
        *,
        realm: str,
        email: str,
        username: str | None = None,
        password: str | None = None,
        enabled: bool = True,
    ) -> Subject:
        """Insert a subject and return the persisted ORM instance."""
        subject = Subject(
            realm=realm,
            email=normalize_email(email),
            username=username,
            password_hash=hash_password(password) if password else None,
            enabled=enabled,
        )
        self.session.add(subject)
        self.session.flush()
        return subject

    def authenticate(self, realm: str, login: str, password: str | None) -> Subject | None:
        """Return the enabled subject behind ``login`` when ``password`` matches its hash."""
        subject = self.find_by_login(realm, login)
        if subject is None or not subject.enabled:
            return None
        if not verify_password(password, subject.password_hash):
            return None
        return subject
