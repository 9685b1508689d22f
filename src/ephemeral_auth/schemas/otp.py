"""Schemas for the OTP flows and token issuance."""

from pydantic import BaseModel, Field


class FlowResponse(BaseModel):
    """State of an interactive authentication flow after a request."""

    state: str = Field(..., description="Flow state after handling the request")
    challenge: str | None = Field(
        None,
        description="What the client must submit next, e.g. 'otp'",
    )
    message: str | None = None
    otp_id: str | None = None
    expires_at: int | None = None
    redirect_url: str | None = None
    access_token: str | None = None
    token_type: str | None = None
    attempts_remaining: int | None = None


class OtpStatusResponse(BaseModel):
    otp_id: str
    status: str


class TokenResponse(BaseModel):
    """Access token issued by the direct-grant endpoint."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    otp_verified: bool = Field(..., description="False when the OTP step was skipped")
