"""Authentication flow orchestration.

Two entry protocols share one state machine::

    START -> ISSUE_PENDING -> CHALLENGE_ISSUED -> VALIDATING -> SUCCESS | FAILED

The interactive flow keeps its state in a server-side flow session referenced
by a cookie. The direct-grant flow has no session channel between its two
calls, so the pending credential reference is stored on the subject's own
durable record instead.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ephemeral_auth.core.errors import (
    CredentialError,
    CredentialExpired,
    CredentialInvalid,
    DeliveryFailed,
    RequestValidationFailed,
    SubjectNotFound,
)
from ephemeral_auth.core.realms import RealmConfig
from ephemeral_auth.core.security import verify_password
from ephemeral_auth.models.subject import Subject
from ephemeral_auth.repositories.pending_repo import (
    PendingCredentialRef,
    PendingCredentialRepository,
)
from ephemeral_auth.repositories.subject_repo import SubjectRepository
from ephemeral_auth.services.magiclink import MagiclinkService
from ephemeral_auth.services.otp import ATTEMPTS_EXHAUSTED, OtpService
from ephemeral_auth.services.store import CredentialStore

logger = logging.getLogger(__name__)

CODE_SENT_MESSAGE = "A one-time code has been sent"
LINK_SENT_MESSAGE = "A sign-in link has been sent"

# Validation failures after which the pending code can never succeed.
_DEAD_CODE_REASONS = frozenset({"already_used", "not_found", ATTEMPTS_EXHAUSTED})


class FlowState(str, Enum):
    START = "START"
    ISSUE_PENDING = "ISSUE_PENDING"
    CHALLENGE_ISSUED = "CHALLENGE_ISSUED"
    VALIDATING = "VALIDATING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class CredentialKind(str, Enum):
    OTP = "otp"
    MAGICLINK = "magiclink"


@dataclass
class FlowSession:
    """Server-side state of one interactive authentication."""

    session_id: str
    realm: str
    subject_id: str
    contact: str
    kind: str = CredentialKind.OTP.value
    state: str = FlowState.START.value
    credential_id: str | None = None
    failed_attempts: int = 0
    resends: int = 0
    redirect_url: str | None = None
    first_factor: bool = False

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> FlowSession:
        return cls(**data)


@dataclass(frozen=True)
class FlowResult:
    """What the interactive flow reports back after a request."""

    state: FlowState
    session_id: str | None = None
    subject_id: str | None = None
    challenge: str | None = None
    message: str | None = None
    expires_at: int | None = None
    redirect_url: str | None = None
    attempts_remaining: int | None = None
    first_factor: bool = False
    second_factor: bool = False
    error_code: str | None = None
    reason: str | None = None


class GrantStatus(str, Enum):
    GRANTED = "granted"
    OTP_SENT = "otp_sent"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DirectGrantResult:
    """Outcome of one direct-grant call.

    ``OTP_SENT`` is a success-in-progress that callers report as a 401.
    """

    status: GrantStatus
    subject: Subject | None = None
    otp_verified: bool = False
    error: str | None = None
    error_description: str | None = None
    reason: str | None = None


class AuthenticationOrchestrator:
    """Drives the interactive and direct-grant authentication flows."""

    def __init__(
        self,
        otp: OtpService,
        magiclink: MagiclinkService,
        sessions: CredentialStore,
        *,
        session_ttl_seconds: int = 900,
    ) -> None:
        self.otp = otp
        self.magiclink = magiclink
        self.sessions = sessions
        self.session_ttl_seconds = session_ttl_seconds

    # --- Interactive flow ---------------------------------------------------------

    def _save(self, session: FlowSession) -> None:
        self.sessions.put(session.session_id, asdict(session), self.session_ttl_seconds)

    def _load(self, config: RealmConfig, session_id: str | None) -> FlowSession:
        record = self.sessions.get(session_id) if session_id else None
        if record is None:
            raise CredentialExpired("Authentication session expired", reason="session_expired")
        session = FlowSession.from_record(record.data)
        if session.realm != config.realm:
            raise CredentialInvalid("Session belongs to another realm", reason="session_realm_mismatch")
        return session

    def _finish(self, session: FlowSession, state: FlowState, **extra: Any) -> FlowResult:
        session.state = state.value
        self.sessions.delete(session.session_id)
        return FlowResult(
            state=state,
            session_id=session.session_id,
            subject_id=session.subject_id,
            redirect_url=session.redirect_url if state is FlowState.SUCCESS else None,
            first_factor=session.first_factor,
            **extra,
        )

    def _challenge(self, config: RealmConfig, session: FlowSession, message: str, **extra: Any) -> FlowResult:
        self._save(session)
        return FlowResult(
            state=FlowState.CHALLENGE_ISSUED,
            session_id=session.session_id,
            subject_id=session.subject_id,
            challenge=CredentialKind.OTP.value,
            message=message,
            attempts_remaining=config.otp.max_retry_attempts - session.failed_attempts,
            **extra,
        )

    async def _issue_code(self, config: RealmConfig, session: FlowSession) -> FlowResult:
        session.state = FlowState.ISSUE_PENDING.value
        self.otp.discard(session.credential_id)
        issue = await self.otp.issue(
            config,
            email=session.contact,
            user_id=session.subject_id,
            session_ref=session.session_id,
            redirect_url=session.redirect_url,
        )
        session.credential_id = issue.otp_id
        session.state = FlowState.CHALLENGE_ISSUED.value
        return self._challenge(config, session, CODE_SENT_MESSAGE, expires_at=int(issue.expires_at))

    async def start(
        self,
        config: RealmConfig,
        subjects: SubjectRepository,
        *,
        email: str,
        kind: CredentialKind = CredentialKind.OTP,
        redirect_url: str | None = None,
        password: str | None = None,
    ) -> FlowResult:
        """Begin an interactive login for the subject behind ``email``.

        Ineligible subjects, and realms with OTP disabled, complete immediately
        without a second factor. Such a result only marks ``first_factor``
        when ``password`` was supplied and matched; a wrong password is
        rejected before anything is issued.
        Rate-limit and delivery failures propagate to the caller.
        """
        subject = subjects.find_by_email(config.realm, email)
        if subject is None or not subject.enabled:
            raise SubjectNotFound("User not found")

        first_factor = False
        if password is not None:
            if not verify_password(password, subject.password_hash):
                logger.warning("Password mismatch for %s in realm %s", subject.email, config.realm)
                raise CredentialInvalid("Invalid user credentials", reason="invalid_password")
            first_factor = True

        if kind is CredentialKind.MAGICLINK:
            self.magiclink.ensure_enabled(config)
            if not redirect_url:
                raise RequestValidationFailed("redirectUrl is required for magic links")
            self.magiclink.ensure_redirect_allowed(config, redirect_url)
            self.magiclink.enforce_rate_limit(config, subject.email, subject.id)
        elif redirect_url:
            self.magiclink.ensure_redirect_allowed(config, redirect_url)

        session = FlowSession(
            session_id=secrets.token_urlsafe(24),
            realm=config.realm,
            subject_id=subject.id,
            contact=subject.email,
            kind=kind.value,
            redirect_url=redirect_url,
            first_factor=first_factor,
        )

        if kind is CredentialKind.OTP:
            if not config.otp.enabled:
                logger.info("OTP disabled for realm %s; skipping second factor", config.realm)
                return self._finish(session, FlowState.SUCCESS, message="Second factor not required")
            self.otp.enforce_rate_limit(config, subject.email, subject.id)

        eligibility = await self.otp.check_eligibility(config, subject.email)
        if not eligibility.eligible:
            logger.info(
                "Subject %s not eligible for a second factor (source=%s); completing login",
                subject.email,
                eligibility.source.value,
            )
            return self._finish(session, FlowState.SUCCESS, message="Second factor not required")

        if kind is CredentialKind.MAGICLINK:
            session.state = FlowState.ISSUE_PENDING.value
            issue = await self.magiclink.issue(config, subject, redirect_url=redirect_url or "")
            # The user continues through the delivered link, so this request ends here.
            return FlowResult(
                state=FlowState.CHALLENGE_ISSUED,
                subject_id=subject.id,
                challenge=CredentialKind.MAGICLINK.value,
                message=LINK_SENT_MESSAGE,
                expires_at=int(issue.expires_at.timestamp()),
            )

        return await self._issue_code(config, session)

    async def submit(
        self,
        config: RealmConfig,
        subjects: SubjectRepository,
        session_id: str | None,
        *,
        code: str | None = None,
        resend: bool = False,
    ) -> FlowResult:
        """Handle a form submission for a code challenge."""
        session = self._load(config, session_id)
        subject = subjects.get(config.realm, session.subject_id)
        if subject is None or not subject.enabled:
            self.otp.discard(session.credential_id)
            return self._finish(
                session,
                FlowState.FAILED,
                message="User not found",
                error_code=SubjectNotFound.code,
                reason="subject_unavailable",
            )

        eligibility = await self.otp.check_eligibility(config, session.contact)
        if not eligibility.eligible:
            logger.info("Subject %s no longer eligible for OTP; completing login", session.contact)
            self.otp.discard(session.credential_id)
            return self._finish(session, FlowState.SUCCESS, message="Second factor not required")

        if resend:
            if session.resends >= config.otp.max_retry_attempts:
                logger.warning("Resend limit reached for %s", session.contact)
                self.otp.discard(session.credential_id)
                return self._finish(
                    session,
                    FlowState.FAILED,
                    message="Too many code requests",
                    error_code="RESEND_LIMIT_EXCEEDED",
                    reason="resend_limit",
                )
            self.otp.enforce_rate_limit(config, session.contact, session.subject_id)
            session.resends += 1
            try:
                return await self._issue_code(config, session)
            except DeliveryFailed:
                # Keep the session so the user can ask again.
                session.state = FlowState.CHALLENGE_ISSUED.value
                session.credential_id = None
                self._save(session)
                raise

        if not code or not code.strip():
            return self._challenge(config, session, "Please enter the code")

        if not session.credential_id:
            return self._challenge(config, session, "Please request a new code")

        session.state = FlowState.VALIDATING.value
        try:
            self.otp.validate(session.credential_id, code.strip())
        except CredentialError as exc:
            session.failed_attempts += 1
            logger.warning(
                "Invalid code for %s (%s), attempt %d/%d",
                session.contact,
                exc.reason,
                session.failed_attempts,
                config.otp.max_retry_attempts,
            )
            if session.failed_attempts >= config.otp.max_retry_attempts:
                self.otp.discard(session.credential_id)
                return self._finish(
                    session,
                    FlowState.FAILED,
                    message=exc.public_message,
                    error_code=exc.code,
                    reason=exc.reason,
                    attempts_remaining=0,
                )
            session.state = FlowState.CHALLENGE_ISSUED.value
            return self._challenge(
                config,
                session,
                "Invalid code. Please try again.",
                error_code=exc.code,
                reason=exc.reason,
            )

        logger.info("OTP authentication successful for %s", session.contact)
        return self._finish(session, FlowState.SUCCESS, message="Authenticated", second_factor=True)

    # --- Direct-grant flow --------------------------------------------------------

    async def direct_grant(
        self,
        config: RealmConfig,
        subject: Subject,
        pending: PendingCredentialRepository,
        *,
        request_otp: bool = False,
        otp: str | None = None,
    ) -> DirectGrantResult:
        """Run the code step of a programmatic token request.

        The first call (``request_otp``) sends a code and answers ``OTP_SENT``.
        The second call (``otp``) validates against the reference stored on
        the subject. With neither the step is skipped.
        """
        if not config.otp.enabled:
            return DirectGrantResult(status=GrantStatus.GRANTED, subject=subject)

        if request_otp:
            return await self._request_code(config, subject, pending)
        if otp is not None and otp.strip():
            return await self._validate_code(config, subject, pending, otp.strip())

        logger.info("No OTP parameters in direct grant for %s; skipping OTP step", subject.email)
        return DirectGrantResult(status=GrantStatus.GRANTED, subject=subject)

    async def _request_code(
        self,
        config: RealmConfig,
        subject: Subject,
        pending: PendingCredentialRepository,
    ) -> DirectGrantResult:
        if not subject.email:
            return DirectGrantResult(
                status=GrantStatus.REJECTED,
                error="invalid_grant",
                error_description="User has no email address",
                reason="no_contact",
            )

        self.otp.enforce_rate_limit(config, subject.email, subject.id)
        eligibility = await self.otp.check_eligibility(config, subject.email)
        if not eligibility.eligible:
            logger.info("Subject %s not eligible for OTP in direct grant; skipping", subject.email)
            return DirectGrantResult(status=GrantStatus.GRANTED, subject=subject)

        previous = pending.load(subject.id)
        if previous is not None:
            self.otp.discard(previous.credential_id)

        try:
            issue = await self.otp.issue(config, email=subject.email, user_id=subject.id)
        except DeliveryFailed as exc:
            logger.error("Failed to send OTP for direct grant to %s: %s", subject.email, exc.message)
            return DirectGrantResult(
                status=GrantStatus.REJECTED,
                error="otp_delivery_failed",
                error_description="Failed to send OTP",
                reason=exc.reason or exc.code,
            )

        pending.save(
            subject.id,
            PendingCredentialRef(
                credential_id=issue.otp_id,
                contact=subject.email,
                issued_at=datetime.fromtimestamp(issue.issued_at, UTC),
            ),
        )
        logger.info("OTP sent for direct grant user %s", subject.email)
        return DirectGrantResult(
            status=GrantStatus.OTP_SENT,
            subject=subject,
            error="otp_sent",
            error_description="OTP sent successfully. Please authenticate with the OTP code",
        )

    async def _validate_code(
        self,
        config: RealmConfig,
        subject: Subject,
        pending: PendingCredentialRepository,
        code: str,
    ) -> DirectGrantResult:
        eligibility = await self.otp.check_eligibility(config, subject.email)
        if not eligibility.eligible:
            # Ineligible subjects pass without the code being checked or consumed.
            logger.info("Subject %s not eligible for OTP in direct grant; skipping validation", subject.email)
            return DirectGrantResult(status=GrantStatus.GRANTED, subject=subject)

        ref = pending.load(subject.id)
        if ref is None:
            logger.warning("No pending OTP for direct grant user %s", subject.email)
            return DirectGrantResult(
                status=GrantStatus.REJECTED,
                error="otp_session_expired",
                error_description="OTP session expired. Please request a new OTP",
                reason="no_pending_credential",
            )

        try:
            self.otp.validate(ref.credential_id, code)
        except CredentialError as exc:
            logger.warning("Invalid OTP in direct grant for %s: %s", subject.email, exc.reason)
            if isinstance(exc, CredentialExpired) or exc.reason in _DEAD_CODE_REASONS:
                pending.clear(subject.id)
            return DirectGrantResult(
                status=GrantStatus.REJECTED,
                error="invalid_otp",
                error_description=exc.public_message,
                reason=exc.reason,
            )

        pending.clear(subject.id)
        logger.info("OTP validation successful for direct grant user %s", subject.email)
        return DirectGrantResult(status=GrantStatus.GRANTED, subject=subject, otp_verified=True)
