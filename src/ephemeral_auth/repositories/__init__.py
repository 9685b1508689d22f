"""Data access helpers for subjects and pending credentials."""

from .pending_repo import PendingCredentialRef, PendingCredentialRepository
from .subject_repo import SubjectRepository

__all__ = ["PendingCredentialRef", "PendingCredentialRepository", "SubjectRepository"]
