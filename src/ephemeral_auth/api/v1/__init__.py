# src/ephemeral_auth/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import magiclink_router, otp_router, system_router, token_router

__all__ = [
    "magiclink_router",
    "otp_router",
    "token_router",
    "system_router",
]
