# src/ephemeral_auth/models/__init__.py
"""SQLAlchemy models for the Ephemeral Auth service."""

from .pending_credential import PendingCredential
from .subject import Subject

__all__ = ["PendingCredential", "Subject"]
