# src/ephemeral_auth/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .magiclink import router as magiclink_router
from .otp import router as otp_router
from .system import router as system_router
from .token import router as token_router

__all__ = [
    "magiclink_router",
    "otp_router",
    "token_router",
    "system_router",
]
