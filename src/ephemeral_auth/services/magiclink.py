"""Magic-link issuance, redemption and status checks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from ephemeral_auth.core.errors import (
    CredentialAlreadyUsed,
    CredentialInvalid,
    DeliveryFailed,
    FeatureDisabled,
    RateLimitExceeded,
    RedirectNotAllowed,
    RequestValidationFailed,
    SubjectNotFound,
)
from ephemeral_auth.core.realms import RealmConfig, is_safe_redirect
from ephemeral_auth.models.subject import Subject
from ephemeral_auth.repositories.subject_repo import SubjectRepository
from ephemeral_auth.schemas.magiclink import MagiclinkGenerateRequest
from ephemeral_auth.services.codec import LinkClaims, LinkCredentialCodec, build_link_url
from ephemeral_auth.services.gateway import DeliveryOutcome, DeliveryPayload, GatewayFactory
from ephemeral_auth.services.rate_limit import RateLimiter, scope_key
from ephemeral_auth.services.store import ReplayLedger

logger = logging.getLogger(__name__)

MAGICLINK_KIND = "magiclink"


@dataclass(frozen=True)
class MagiclinkIssue:
    """A freshly issued magic link."""

    magiclink: str
    token_id: str
    expires_at: datetime
    subject_id: str
    delivery: DeliveryOutcome | None


@dataclass(frozen=True)
class LinkAuthentication:
    """A redeemed magic link bound to its subject."""

    subject: Subject
    claims: LinkClaims

    @property
    def redirect_url(self) -> str:
        return self.claims.destination_url


class MagiclinkService:
    """Ties the codec, replay ledger, limiter and delivery together."""

    def __init__(
        self,
        ledger: ReplayLedger,
        limiter: RateLimiter,
        gateways: GatewayFactory,
        codec: LinkCredentialCodec,
        base_url: str,
    ) -> None:
        self.ledger = ledger
        self.limiter = limiter
        self.gateways = gateways
        self.codec = codec
        self.base_url = base_url

    def ensure_enabled(self, config: RealmConfig) -> None:
        if not config.magiclink.enabled:
            raise FeatureDisabled("Magiclink feature is disabled")

    def enforce_rate_limit(self, config: RealmConfig, email: str, subject_id: str | None) -> None:
        policy = config.magiclink
        if not policy.rate_limit_enabled:
            return
        key = scope_key(MAGICLINK_KIND, config.realm, email, subject_id)
        if not self.limiter.try_acquire(key, policy.rate_limit_requests, policy.rate_limit_window_seconds):
            raise RateLimitExceeded("Rate limit exceeded")

    def ensure_redirect_allowed(self, config: RealmConfig, redirect_url: str) -> None:
        if not config.magiclink.is_redirect_allowed(redirect_url):
            logger.warning("Unauthorized redirect URL attempted for realm %s: %s", config.realm, redirect_url)
            raise RedirectNotAllowed()

    async def issue(
        self,
        config: RealmConfig,
        subject: Subject,
        *,
        redirect_url: str,
        expiration_minutes: int | None = None,
        client_id: str | None = None,
    ) -> MagiclinkIssue:
        """Sign a link for ``subject`` and hand it to the delivery endpoint.

        Without a configured endpoint the link is only returned to the caller.
        """
        ttl = expiration_minutes if expiration_minutes is not None else config.magiclink.token_expiry_minutes
        issued = self.codec.issue(
            subject.id,
            subject.email,
            redirect_url,
            config.realm,
            ttl,
            client_id=client_id,
        )
        link = build_link_url(self.base_url, config.realm, issued.token)
        logger.info(
            "Issued magic link %s for %s in realm %s",
            issued.token_id,
            subject.email,
            config.realm,
        )

        delivery: DeliveryOutcome | None = None
        gateway = self.gateways.magiclink_delivery(config)
        if gateway.configured:
            delivery = await gateway.deliver(
                DeliveryPayload(
                    email=subject.email,
                    code_or_link=link,
                    credential_id=issued.token_id,
                    user_id=subject.id,
                    kind=MAGICLINK_KIND,
                )
            )
            if not delivery.success:
                raise DeliveryFailed(
                    "Failed to send magiclink",
                    attempts=delivery.attempts,
                    reason=delivery.reason,
                )

        return MagiclinkIssue(
            magiclink=link,
            token_id=issued.token_id,
            expires_at=datetime.fromtimestamp(issued.expires_at, UTC),
            subject_id=subject.id,
            delivery=delivery,
        )

    async def generate(
        self,
        config: RealmConfig,
        subjects: SubjectRepository,
        request: MagiclinkGenerateRequest,
    ) -> MagiclinkIssue:
        """Validate a generation request and issue a link for it."""
        self.ensure_enabled(config)
        self.ensure_redirect_allowed(config, request.redirect_url)

        subject = subjects.find_by_email(config.realm, request.email)
        if subject is None or not subject.enabled:
            logger.warning("User not found for email: %s", request.email)
            raise SubjectNotFound("User not found")

        self.enforce_rate_limit(config, subject.email, subject.id)
        return await self.issue(
            config,
            subject,
            redirect_url=request.redirect_url,
            expiration_minutes=request.expiration_minutes,
            client_id=request.client_id,
        )

    def authenticate(
        self,
        config: RealmConfig,
        subjects: SubjectRepository,
        token: str,
    ) -> LinkAuthentication:
        """Redeem ``token``; the first successful call wins."""
        if not token or not token.strip():
            raise RequestValidationFailed("Token is required")

        validation = self.codec.validate(token.strip(), config.realm, self.ledger)
        if not validation.valid or validation.claims is None:
            error = validation.to_error()
            logger.warning(
                "Magic link %s rejected in realm %s: %s",
                self.codec.extract_token_id(token),
                config.realm,
                error.reason,
            )
            raise error

        claims = validation.claims
        subject = subjects.get(config.realm, claims.subject)
        if subject is None or not subject.enabled:
            logger.warning("Magic link %s names an unknown or disabled subject", claims.token_id)
            raise CredentialInvalid("Subject unavailable", reason="subject_unavailable")

        if not is_safe_redirect(claims.destination_url):
            logger.warning("Magic link %s carries an unsafe redirect: %s", claims.token_id, claims.destination_url)
            raise RequestValidationFailed("Invalid redirect URL format")

        if claims.single_use and not self.ledger.mark_consumed(claims.token_id):
            logger.warning("Magic link %s replayed in realm %s", claims.token_id, config.realm)
            raise CredentialAlreadyUsed("Token has already been used")

        logger.info(
            "Magic link %s redeemed by %s, redirecting to %s",
            claims.token_id,
            subject.email,
            claims.destination_url,
        )
        return LinkAuthentication(subject=subject, claims=claims)

    def status(self, config: RealmConfig, token: str) -> dict[str, object]:
        """Report whether ``token`` would currently be accepted, without redeeming it."""
        validation = self.codec.validate(token, config.realm, self.ledger)
        if not validation.valid or validation.claims is None:
            return {
                "valid": False,
                "tokenId": self.codec.extract_token_id(token),
                "email": None,
                "error": validation.reason.value if validation.reason else "invalid",
            }
        return {
            "valid": True,
            "tokenId": validation.claims.token_id,
            "email": validation.claims.contact,
            "error": None,
        }
