"""Signed link-credential encoding and validation.

Link credentials are compact HS256 JWTs signed with a per-realm secret. The
token carries everything needed to authenticate; the only server state is the
replay ledger, consulted read-only here and written by the redeeming caller.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import quote

from jose import JWTError, jwt

from ephemeral_auth.core.errors import (
    CredentialAlreadyUsed,
    CredentialError,
    CredentialExpired,
    CredentialInvalid,
)
from ephemeral_auth.core.realms import MAGICLINK_EXPIRY_RANGE
from ephemeral_auth.core.security import derive_realm_secret
from ephemeral_auth.services.store import ReplayLedger

ALGORITHM = "HS256"
TOKEN_TYPE = "magiclink"


def issuer_for(realm: str) -> str:
    return f"ephemeral-auth-{realm}"


class LinkInvalidReason(str, Enum):
    """Distinct reasons a link credential fails validation."""

    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    CLAIMS_MISMATCH = "claims_mismatch"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"


@dataclass(frozen=True)
class IssuedLink:
    token: str
    token_id: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class LinkClaims:
    subject: str
    contact: str
    destination_url: str
    audience: str
    token_id: str
    issued_at: int
    expires_at: int
    single_use: bool
    client_id: str | None = None


@dataclass(frozen=True)
class LinkValidation:
    """Result of validating a link credential."""

    valid: bool
    claims: LinkClaims | None = None
    reason: LinkInvalidReason | None = None
    detail: str | None = None

    def to_error(self) -> CredentialError:
        """Map an invalid result onto the error taxonomy."""
        if self.reason is LinkInvalidReason.EXPIRED:
            return CredentialExpired(self.detail, reason=self.reason.value)
        if self.reason is LinkInvalidReason.ALREADY_USED:
            return CredentialAlreadyUsed(self.detail, reason=self.reason.value)
        reason = self.reason.value if self.reason else "invalid"
        return CredentialInvalid(self.detail, reason=reason)


def _invalid(reason: LinkInvalidReason, detail: str) -> LinkValidation:
    return LinkValidation(valid=False, reason=reason, detail=detail)


class LinkCredentialCodec:
    """Issues and validates signed link credentials."""

    def __init__(
        self,
        *,
        secret_for: Callable[[str], str] = derive_realm_secret,
        clock: Callable[[], float] = time.time,
        ttl_bounds: tuple[int, int] = MAGICLINK_EXPIRY_RANGE,
    ) -> None:
        self._secret_for = secret_for
        self._clock = clock
        self._ttl_bounds = ttl_bounds

    def clamp_ttl(self, ttl_minutes: int) -> int:
        low, high = self._ttl_bounds
        return max(low, min(high, int(ttl_minutes)))

    def issue(
        self,
        subject: str,
        contact: str,
        destination_url: str,
        audience: str,
        ttl_minutes: int,
        *,
        client_id: str | None = None,
    ) -> IssuedLink:
        """Sign a single-use link credential.

        ``destination_url`` must already have passed the realm's redirect
        allow-list.
        """
        issued_at = int(self._clock())
        expires_at = issued_at + self.clamp_ttl(ttl_minutes) * 60
        token_id = str(uuid.uuid4())
        claims: dict[str, Any] = {
            "iss": issuer_for(audience),
            "sub": subject,
            "aud": audience,
            "iat": issued_at,
            "exp": expires_at,
            "jti": token_id,
            "userId": subject,
            "email": contact,
            "redirectUrl": destination_url,
            "realm": audience,
            "tokenType": TOKEN_TYPE,
            "oneTimeUse": True,
        }
        if client_id:
            claims["clientId"] = client_id
        token = jwt.encode(claims, self._secret_for(audience), algorithm=ALGORITHM)
        return IssuedLink(token=token, token_id=token_id, issued_at=issued_at, expires_at=expires_at)

    def validate(
        self,
        token: str,
        audience: str,
        ledger: ReplayLedger | None = None,
    ) -> LinkValidation:
        """Check signature, claims, expiry and prior consumption of ``token``.

        Does not record consumption.
        """
        if not token or not isinstance(token, str):
            return _invalid(LinkInvalidReason.MALFORMED, "Token is empty")
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            return _invalid(LinkInvalidReason.MALFORMED, f"Token is malformed: {exc}")

        try:
            claims = jwt.decode(
                token,
                self._secret_for(audience),
                algorithms=[ALGORITHM],
                options={
                    "verify_aud": False,
                    "verify_iss": False,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except JWTError as exc:
            return _invalid(LinkInvalidReason.INVALID_SIGNATURE, f"Signature verification failed: {exc}")

        if (
            claims.get("iss") != issuer_for(audience)
            or claims.get("aud") != audience
            or claims.get("tokenType") != TOKEN_TYPE
        ):
            return _invalid(LinkInvalidReason.CLAIMS_MISMATCH, "Issuer, audience or type mismatch")

        required = ("sub", "email", "redirectUrl", "jti", "exp", "iat")
        if any(claims.get(name) in (None, "") for name in required):
            return _invalid(LinkInvalidReason.CLAIMS_MISMATCH, "Token is missing required claims")

        if self._clock() > int(claims["exp"]):
            return _invalid(LinkInvalidReason.EXPIRED, "Token has expired")

        token_id = str(claims["jti"])
        single_use = bool(claims.get("oneTimeUse", True))
        if single_use and ledger is not None and ledger.is_consumed(token_id):
            return _invalid(LinkInvalidReason.ALREADY_USED, "Token has already been used")

        return LinkValidation(
            valid=True,
            claims=LinkClaims(
                subject=str(claims["sub"]),
                contact=str(claims["email"]),
                destination_url=str(claims["redirectUrl"]),
                audience=audience,
                token_id=token_id,
                issued_at=int(claims["iat"]),
                expires_at=int(claims["exp"]),
                single_use=single_use,
                client_id=claims.get("clientId"),
            ),
        )

    @staticmethod
    def extract_token_id(token: str) -> str | None:
        """Return the unverified ``jti`` for logging, or None if unreadable."""
        try:
            return jwt.get_unverified_claims(token).get("jti")
        except JWTError:
            return None


def build_link_url(base_url: str, realm: str, token: str) -> str:
    """Return the URL delivered to the user."""
    return (
        f"{base_url.rstrip('/')}/api/v1/realms/{quote(realm, safe='')}"
        f"/magiclink/authenticate?token={quote(token, safe='')}"
    )
