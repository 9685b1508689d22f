"""Error taxonomy for credential issuance and validation.

Every error carries a stable machine-readable ``code`` and the HTTP status it
maps to. Credential validation errors additionally keep an internal
``reason`` for logs and tests while exposing only a generic message.
"""

from __future__ import annotations

from fastapi import status

GENERIC_CREDENTIAL_MESSAGE = "Invalid or expired credential"


class EphemeralAuthError(RuntimeError):
    """Base exception for all service failures."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self.args[0])

    @property
    def public_message(self) -> str:
        """Message safe to show to end users."""
        return self.message


class RequestValidationFailed(EphemeralAuthError):
    """The request is malformed."""

    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class RedirectNotAllowed(RequestValidationFailed):
    """Redirect URL not allowed"""

    code = "REDIRECT_URL_NOT_ALLOWED"


class FeatureDisabled(EphemeralAuthError):
    """The requested authentication method is disabled for this realm."""

    code = "FEATURE_DISABLED"
    status_code = status.HTTP_400_BAD_REQUEST


class NotEligible(EphemeralAuthError):
    """The subject is not eligible for this credential."""

    code = "USER_NOT_ELIGIBLE"
    status_code = status.HTTP_403_FORBIDDEN


class SubjectNotFound(EphemeralAuthError):
    """No subject matches the supplied contact."""

    code = "USER_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class RateLimitExceeded(EphemeralAuthError):
    """Too many requests for this subject."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class CredentialError(EphemeralAuthError):
    """Base class for credential validation failures."""

    code = "INVALID_CREDENTIAL"
    status_code = status.HTTP_401_UNAUTHORIZED
    reason = "invalid"

    def __init__(self, message: str | None = None, *, reason: str | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason

    @property
    def public_message(self) -> str:
        return GENERIC_CREDENTIAL_MESSAGE


class CredentialExpired(CredentialError):
    """The credential has expired."""

    reason = "expired"


class CredentialAlreadyUsed(CredentialError):
    """The credential was already consumed."""

    reason = "already_used"


class CredentialInvalid(CredentialError):
    """The credential is malformed, tampered with or unknown."""


class DeliveryFailed(EphemeralAuthError):
    """The credential could not be delivered."""

    code = "EXTERNAL_API_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str | None = None,
        *,
        attempts: int = 0,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.reason = reason


class ConfigurationError(EphemeralAuthError):
    """A required external endpoint or setting is missing."""

    code = "CONFIGURATION_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class InternalError(EphemeralAuthError):
    """Unexpected internal failure."""
