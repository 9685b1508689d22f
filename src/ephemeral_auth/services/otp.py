"""Numeric one-time code issuance and validation."""

from __future__ import annotations

import hmac
import logging
import secrets
import string
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ephemeral_auth.core.errors import (
    ConfigurationError,
    CredentialAlreadyUsed,
    CredentialExpired,
    CredentialInvalid,
    DeliveryFailed,
    FeatureDisabled,
    NotEligible,
    RateLimitExceeded,
)
from ephemeral_auth.core.realms import RealmConfig
from ephemeral_auth.services.gateway import (
    DeliveryOutcome,
    DeliveryPayload,
    EligibilityResult,
    GatewayFactory,
)
from ephemeral_auth.services.rate_limit import RateLimiter, scope_key
from ephemeral_auth.services.store import ConsumeStatus, CredentialStore

logger = logging.getLogger(__name__)

OTP_KIND = "otp"
OTP_ID_PREFIX = "otp_"
ATTEMPTS_EXHAUSTED = "attempts_exhausted"


def generate_code(length: int) -> str:
    """Return a random numeric code of ``length`` digits."""
    return "".join(secrets.choice(string.digits) for _ in range(length))


def generate_credential_id() -> str:
    """Return an opaque identifier unrelated to the code it names."""
    return OTP_ID_PREFIX + secrets.token_urlsafe(16)


@dataclass(frozen=True)
class OtpIssue:
    """A code that was stored and handed to the delivery endpoint."""

    otp_id: str
    email: str
    user_id: str
    issued_at: float
    expires_at: float
    delivery: DeliveryOutcome


class OtpService:
    """Issues codes, stores them and validates user submissions."""

    def __init__(
        self,
        store: CredentialStore,
        limiter: RateLimiter,
        gateways: GatewayFactory,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.gateways = gateways
        self._clock = clock

    def ensure_enabled(self, config: RealmConfig) -> None:
        if not config.otp.enabled:
            raise FeatureDisabled(f"OTP authentication is disabled for realm {config.realm}")

    def enforce_rate_limit(self, config: RealmConfig, email: str, user_id: str | None) -> None:
        """Count an issuance attempt, raising when the scope is exhausted."""
        policy = config.otp
        if not policy.rate_limit_enabled:
            return
        key = scope_key(OTP_KIND, config.realm, email, user_id)
        if not self.limiter.try_acquire(key, policy.rate_limit_requests, policy.rate_limit_window_seconds):
            raise RateLimitExceeded("Too many OTP requests. Please try again later.")

    async def check_eligibility(self, config: RealmConfig, email: str) -> EligibilityResult:
        return await self.gateways.eligibility(config).check(email)

    async def issue(
        self,
        config: RealmConfig,
        *,
        email: str,
        user_id: str,
        session_ref: str | None = None,
        redirect_url: str | None = None,
    ) -> OtpIssue:
        """Generate, store and deliver a code.

        The stored record is discarded again when delivery fails, so a code
        the user never received cannot be redeemed.
        """
        gateway = self.gateways.otp_delivery(config)
        if not gateway.configured:
            raise ConfigurationError("OTP delivery endpoint is not configured")

        code = generate_code(config.otp.length)
        otp_id = generate_credential_id()
        issued_at = self._clock()
        record: dict[str, Any] = {
            "code": code,
            "email": email,
            "user_id": user_id,
            "realm": config.realm,
            "session_ref": session_ref,
            "redirect_url": redirect_url,
            "issued_at": issued_at,
            "failed_attempts": 0,
            "max_attempts": config.otp.max_retry_attempts,
        }
        self.store.put(otp_id, record, config.otp.ttl_seconds)
        logger.info("Issued OTP %s for %s in realm %s", otp_id, email, config.realm)

        outcome = await gateway.deliver(
            DeliveryPayload(
                email=email,
                code_or_link=code,
                credential_id=otp_id,
                user_id=user_id,
                kind=OTP_KIND,
            )
        )
        if not outcome.success:
            self.store.delete(otp_id)
            raise DeliveryFailed(
                f"Failed to send OTP: {outcome.reason}",
                attempts=outcome.attempts,
                reason=outcome.reason,
            )
        return OtpIssue(
            otp_id=otp_id,
            email=email,
            user_id=user_id,
            issued_at=issued_at,
            expires_at=issued_at + config.otp.ttl_seconds,
            delivery=outcome,
        )

    async def generate(self, config: RealmConfig, *, email: str, user_id: str) -> OtpIssue:
        """Full issuance pipeline for callers outside an authentication flow."""
        self.ensure_enabled(config)
        self.enforce_rate_limit(config, email, user_id)
        eligibility = await self.check_eligibility(config, email)
        if not eligibility.eligible:
            raise NotEligible(eligibility.reason or "User is not eligible for OTP")
        return await self.issue(config, email=email, user_id=user_id)

    def validate(self, otp_id: str, code: str) -> dict[str, Any]:
        """Check ``code`` against the record and consume it on a match.

        Returns the stored record data. Raises a ``CredentialError`` subclass
        whose ``reason`` tells the failed check apart. Each mismatch counts
        against the code; once ``max_attempts`` is reached the code is
        discarded and the failure reports ``attempts_exhausted``.
        """
        record = self.store.get(otp_id, include_expired=True)
        if record is None:
            logger.info("OTP validation failed for %s: not found", otp_id)
            raise CredentialInvalid("OTP not found", reason="not_found")
        if record.used:
            logger.info("OTP validation failed for %s: already used", otp_id)
            raise CredentialAlreadyUsed("OTP has already been used")
        if record.is_expired(self._clock()):
            logger.info("OTP validation failed for %s: expired", otp_id)
            raise CredentialExpired("OTP has expired")
        if not hmac.compare_digest(str(code or "").strip(), str(record.data["code"])):
            if self._record_failure(otp_id, record.data):
                raise CredentialInvalid("Too many failed attempts", reason=ATTEMPTS_EXHAUSTED)
            raise CredentialInvalid("OTP does not match", reason="mismatch")

        result = self.store.consume(otp_id)
        if result is ConsumeStatus.CONSUMED:
            logger.info("OTP %s validated for %s", otp_id, record.data.get("email"))
            return record.data
        if result is ConsumeStatus.ALREADY_USED:
            raise CredentialAlreadyUsed("OTP has already been used")
        if result is ConsumeStatus.EXPIRED:
            raise CredentialExpired("OTP has expired")
        raise CredentialInvalid("OTP not found", reason="not_found")

    def status(self, otp_id: str) -> str:
        """Return ``valid``, ``used``, ``expired`` or ``not_found``."""
        record = self.store.get(otp_id, include_expired=True)
        if record is None:
            return "not_found"
        if record.used:
            return "used"
        if record.is_expired(self._clock()):
            return "expired"
        return "valid"

    def discard(self, otp_id: str | None) -> None:
        if otp_id:
            self.store.delete(otp_id)

    def _record_failure(self, otp_id: str, data: dict[str, Any]) -> bool:
        """Count a mismatch; return True when the code has been discarded."""
        failures = int(data.get("failed_attempts", 0)) + 1
        limit = data.get("max_attempts")
        if limit is not None and failures >= int(limit):
            self.store.delete(otp_id)
            logger.warning("OTP %s discarded after %d failed attempts", otp_id, failures)
            return True
        self.store.update(otp_id, {"failed_attempts": failures})
        logger.info("OTP validation failed for %s: code mismatch (%d/%s)", otp_id, failures, limit)
        return False
