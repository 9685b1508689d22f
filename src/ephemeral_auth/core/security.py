"""Signing key derivation and access-token helpers."""
from __future__ import annotations

import hashlib
import hmac
from datetime import timedelta
from typing import Any

import bcrypt
from jose import jwt

from ephemeral_auth.core.settings import settings
from ephemeral_auth.db.time import utcnow


def derive_realm_secret(realm: str, secret_key: str | None = None) -> str:
    """Return the HMAC signing secret for a realm.

    Each realm gets its own key derived from the service secret, so a token
    signed for one realm never verifies in another.
    """
    master = (secret_key or settings.secret_key).encode("utf-8")
    digest = hmac.new(master, f"realm:{realm}".encode(), hashlib.sha256)
    return digest.hexdigest()


def create_access_token(
    subject: str,
    realm: str,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    """Create a signed access token for an authenticated subject."""
    now = utcnow()
    payload: dict[str, Any] = {
        "sub": subject,
        "aud": realm,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_expire_minutes)).timestamp()),
        "typ": "access",
    }
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, derive_realm_secret(realm), algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, realm: str) -> dict[str, Any]:
    """Decode and verify an access token minted by :func:`create_access_token`."""
    return jwt.decode(
        token,
        derive_realm_secret(realm),
        algorithms=[settings.jwt_algorithm],
        audience=realm,
    )


def hash_password(password: str) -> str:
    """Return a salted bcrypt hash suitable for storing on a subject."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str | None, password_hash: str | None) -> bool:
    """Check ``password`` against a stored hash; a missing side never matches."""
    if not password or not password_hash:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
