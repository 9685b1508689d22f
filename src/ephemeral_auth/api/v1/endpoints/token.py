# src/ephemeral_auth/api/v1/endpoints/token.py
"""Direct-grant token endpoint with an optional OTP step."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Form, status
from fastapi.responses import JSONResponse

from ephemeral_auth.api.v1.dependencies import (
    OrchestratorDep,
    PendingDep,
    RealmDep,
    SessionDep,
    SubjectsDep,
)
from ephemeral_auth.core.security import create_access_token
from ephemeral_auth.core.settings import settings
from ephemeral_auth.schemas.otp import TokenResponse
from ephemeral_auth.services.orchestrator import GrantStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realms/{realm}/protocol", tags=["token"])

SUPPORTED_GRANT_TYPE = "password"


def _grant_error(error: str, description: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": error, "error_description": description},
    )


@router.post("/token", response_model=TokenResponse)
async def issue_token(
    config: RealmDep,
    orchestrator: OrchestratorDep,
    subjects: SubjectsDep,
    pending: PendingDep,
    db: SessionDep,
    grant_type: Annotated[str, Form()],
    username: Annotated[str, Form(min_length=1, max_length=320)],
    password: Annotated[str | None, Form(max_length=256)] = None,
    request_otp: Annotated[str | None, Form()] = None,
    otp: Annotated[str | None, Form(max_length=10)] = None,
) -> TokenResponse | JSONResponse:
    """Exchange username and password for an access token, gated by a one-time code.

    The password is checked first; without a match no code is sent and no
    token is issued. The first call with ``request_otp=true`` sends a code
    and answers 401 ``otp_sent``. The second call carries ``otp`` and
    receives the token.

    Args:
        config: Realm configuration
        orchestrator: Flow orchestrator
        subjects: Subject lookup for the realm
        pending: Pending code references keyed by subject
        db: Database session, committed once the grant step is done
        grant_type: Must be ``password``
        username: Username or email of the subject
        password: The subject's password
        request_otp: ``true`` to have a code sent
        otp: The code received on the contact channel

    Returns:
        The token on success, otherwise an OAuth-style error body
    """
    if grant_type != SUPPORTED_GRANT_TYPE:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "unsupported_grant_type",
                "error_description": f"Grant type {grant_type!r} is not supported",
            },
        )

    subject = subjects.authenticate(config.realm, username, password)
    if subject is None:
        logger.warning("Direct grant with invalid credentials for %s in realm %s", username, config.realm)
        return _grant_error("invalid_grant", "Invalid user credentials")

    result = await orchestrator.direct_grant(
        config,
        subject,
        pending,
        request_otp=(request_otp or "").strip().lower() == "true",
        otp=otp,
    )
    db.commit()

    if result.status is not GrantStatus.GRANTED:
        return _grant_error(result.error or "invalid_grant", result.error_description or "")

    token = create_access_token(
        subject.id,
        config.realm,
        {"amr": ["pwd", "otp"] if result.otp_verified else ["pwd"]},
    )
    return TokenResponse(
        access_token=token,
        expires_in=settings.access_token_expire_minutes * 60,
        otp_verified=result.otp_verified,
    )
