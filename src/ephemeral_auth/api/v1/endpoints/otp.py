# src/ephemeral_auth/api/v1/endpoints/otp.py
"""Interactive OTP flow and standalone code endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Cookie, Form, Query, Response
from pydantic import BaseModel, Field, field_validator

from ephemeral_auth.api.v1.dependencies import (
    OrchestratorDep,
    OtpServiceDep,
    RealmDep,
    SubjectsDep,
)
from ephemeral_auth.core.errors import SubjectNotFound
from ephemeral_auth.core.security import create_access_token
from ephemeral_auth.core.settings import settings
from ephemeral_auth.schemas.magiclink import EMAIL_PATTERN
from ephemeral_auth.schemas.otp import FlowResponse, OtpStatusResponse
from ephemeral_auth.services.orchestrator import CredentialKind, FlowResult, FlowState

router = APIRouter(prefix="/realms/{realm}/otp", tags=["otp"])


class OtpSendRequest(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value


class OtpVerifyRequest(BaseModel):
    otp_id: str = Field(..., alias="otpId", min_length=1, max_length=64)
    otp: str = Field(..., min_length=1, max_length=10)


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"true", "1", "yes", "on"}


def authentication_methods(result: FlowResult) -> list[str]:
    """Return the ``amr`` values for the factors the flow actually verified."""
    methods: list[str] = []
    if result.first_factor:
        methods.append("pwd")
    if result.second_factor:
        methods.append("otp")
    return methods


def _flow_response(realm: str, result: FlowResult, response: Response) -> FlowResponse:
    """Translate a flow result into the HTTP response and manage the cookie."""
    body = FlowResponse(
        state=result.state.value,
        challenge=result.challenge,
        message=result.message,
        expires_at=result.expires_at,
        attempts_remaining=result.attempts_remaining,
    )
    if result.state is FlowState.CHALLENGE_ISSUED and result.session_id:
        response.set_cookie(
            settings.session_cookie_name,
            result.session_id,
            max_age=settings.flow_session_ttl_seconds,
            httponly=True,
            samesite="lax",
            secure=settings.public_base_url.startswith("https://"),
        )
        return body

    response.delete_cookie(settings.session_cookie_name)
    if result.state is FlowState.SUCCESS:
        body.redirect_url = result.redirect_url
        methods = authentication_methods(result)
        # A login that skipped the code without a password leaves binding to the host.
        if methods and result.subject_id:
            body.access_token = create_access_token(result.subject_id, realm, {"amr": methods})
            body.token_type = "bearer"
    elif result.state is FlowState.FAILED:
        response.status_code = 401
    return body


@router.post("/start", response_model=FlowResponse, response_model_exclude_none=True)
async def start_flow(
    config: RealmDep,
    orchestrator: OrchestratorDep,
    subjects: SubjectsDep,
    response: Response,
    email: Annotated[str, Form(max_length=320)],
    redirect_url: Annotated[str | None, Form(alias="redirectUrl")] = None,
    kind: Annotated[CredentialKind, Form()] = CredentialKind.OTP,
    password: Annotated[str | None, Form(max_length=256)] = None,
) -> FlowResponse:
    """Begin an interactive login and send the challenge.

    A matching ``password`` counts as the first factor. Without one, a
    login that needs no code succeeds without an access token.
    """
    result = await orchestrator.start(
        config,
        subjects,
        email=email,
        kind=kind,
        redirect_url=redirect_url or None,
        password=password or None,
    )
    return _flow_response(config.realm, result, response)


@router.post("/action", response_model=FlowResponse, response_model_exclude_none=True)
async def flow_action(
    config: RealmDep,
    orchestrator: OrchestratorDep,
    subjects: SubjectsDep,
    response: Response,
    otp: Annotated[str | None, Form(max_length=10)] = None,
    resend_otp: Annotated[str | None, Form()] = None,
    session_id: Annotated[str | None, Cookie(alias=settings.session_cookie_name)] = None,
) -> FlowResponse:
    """Submit a code, or ask for a new one, for the flow in the session cookie."""
    result = await orchestrator.submit(
        config,
        subjects,
        session_id,
        code=otp,
        resend=_truthy(resend_otp),
    )
    return _flow_response(config.realm, result, response)


@router.post("/send")
async def send_otp(
    payload: OtpSendRequest,
    config: RealmDep,
    service: OtpServiceDep,
    subjects: SubjectsDep,
) -> dict[str, object]:
    """Send a code outside an interactive flow; the caller keeps the id."""
    subject = subjects.find_by_email(config.realm, payload.email)
    if subject is None or not subject.enabled:
        raise SubjectNotFound("User not found")
    issue = await service.generate(config, email=subject.email, user_id=subject.id)
    return {"success": True, "otpId": issue.otp_id, "expiresAt": int(issue.expires_at)}


@router.post("/verify")
async def verify_otp(payload: OtpVerifyRequest, service: OtpServiceDep) -> dict[str, object]:
    """Validate and consume a code sent through ``/send``."""
    record = service.validate(payload.otp_id, payload.otp)
    return {"success": True, "valid": True, "userId": record.get("user_id")}


@router.get("/status", response_model=OtpStatusResponse)
async def otp_status(
    service: OtpServiceDep,
    otp_id: Annotated[str, Query(alias="otpId", min_length=1)],
) -> OtpStatusResponse:
    """Report whether a code is still redeemable."""
    return OtpStatusResponse(otp_id=otp_id, status=service.status(otp_id))
