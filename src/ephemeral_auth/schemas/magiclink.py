"""Magic-link Pydantic schemas."""

import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")


class MagiclinkGenerateRequest(BaseModel):
    """Request to issue a magic link for a subject."""

    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., max_length=320, description="Contact address of the subject")
    redirect_url: str = Field(
        ...,
        alias="redirectUrl",
        min_length=1,
        max_length=2048,
        description="Destination after successful authentication",
    )
    expiration_minutes: int | None = Field(
        None,
        alias="expirationMinutes",
        description="Link lifetime in minutes, clamped to 1-60; defaults to the realm setting",
    )
    client_id: str | None = Field(None, alias="clientId", max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("redirectUrl must be an absolute HTTP(S) URL")
        return value


class MagiclinkGenerateResponse(BaseModel):
    """Successful magic-link issuance."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    magiclink: str
    token_id: str = Field(..., alias="tokenId")
    expires_at: datetime = Field(..., alias="expiresAt")


class MagiclinkErrorResponse(BaseModel):
    """Error envelope shared by the JSON endpoints."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = False
    error: str
    error_code: str = Field(..., alias="errorCode")


class MagiclinkStatusResponse(BaseModel):
    """Non-consuming status of a magic-link token."""

    model_config = ConfigDict(populate_by_name=True)

    valid: bool
    token_id: str | None = Field(None, alias="tokenId")
    email: str | None = None
    error: str | None = None


class MagiclinkHealthResponse(BaseModel):
    """Health summary for the magic-link feature of a realm."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    enabled: bool
    external_api_configured: bool = Field(..., alias="externalApiConfigured")
    rate_limit_enabled: bool = Field(..., alias="rateLimitEnabled")
    realm: str
    timestamp: int
