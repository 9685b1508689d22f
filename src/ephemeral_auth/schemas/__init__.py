"""Pydantic schemas for request and response payloads."""

from .magiclink import (
    MagiclinkErrorResponse,
    MagiclinkGenerateRequest,
    MagiclinkGenerateResponse,
    MagiclinkHealthResponse,
    MagiclinkStatusResponse,
)
from .otp import FlowResponse, OtpStatusResponse, TokenResponse

__all__ = [
    "FlowResponse",
    "MagiclinkErrorResponse",
    "MagiclinkGenerateRequest",
    "MagiclinkGenerateResponse",
    "MagiclinkHealthResponse",
    "MagiclinkStatusResponse",
    "OtpStatusResponse",
    "TokenResponse",
]
