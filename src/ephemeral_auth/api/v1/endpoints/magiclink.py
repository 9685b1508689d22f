# src/ephemeral_auth/api/v1/endpoints/magiclink.py
"""Magic-link endpoints: generate, authenticate, status and diagnostics."""

from __future__ import annotations

import html
import logging
import time
from typing import Annotated
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Query, status
from fastapi.responses import HTMLResponse, RedirectResponse

from ephemeral_auth.api.v1.dependencies import (
    GatewaysDep,
    MagiclinkServiceDep,
    RealmDep,
    SubjectsDep,
)
from ephemeral_auth.core.errors import EphemeralAuthError
from ephemeral_auth.core.realms import sanitized_snapshot
from ephemeral_auth.core.security import create_access_token
from ephemeral_auth.core.settings import settings
from ephemeral_auth.schemas.magiclink import (
    MagiclinkErrorResponse,
    MagiclinkGenerateRequest,
    MagiclinkGenerateResponse,
    MagiclinkHealthResponse,
    MagiclinkStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realms/{realm}/magiclink", tags=["magiclink"])

ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": MagiclinkErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": MagiclinkErrorResponse},
    status.HTTP_429_TOO_MANY_REQUESTS: {"model": MagiclinkErrorResponse},
    status.HTTP_502_BAD_GATEWAY: {"model": MagiclinkErrorResponse},
}


def render_error_page(title: str, message: str, error_code: str) -> str:
    """Return a minimal HTML error page with every value escaped."""
    return (
        "<!DOCTYPE html>\n"
        "<html>\n<head>\n<meta charset=\"utf-8\">\n"
        f"<title>{html.escape(title)}</title>\n"
        "</head>\n<body>\n"
        f"<h1 class=\"error-title\">{html.escape(title)}</h1>\n"
        f"<p class=\"error-message\">{html.escape(message)}</p>\n"
        f"<p class=\"error-code\">Error Code: {html.escape(error_code)}</p>\n"
        "</body>\n</html>\n"
    )


def with_token_fragment(url: str, access_token: str) -> str:
    """Append the access token parameters to the fragment of ``url``."""
    parts = urlsplit(url)
    params = urlencode(
        {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": settings.access_token_expire_minutes * 60,
        }
    )
    fragment = f"{parts.fragment}&{params}" if parts.fragment else params
    return urlunsplit(parts._replace(fragment=fragment))


@router.post(
    "/generate",
    response_model=MagiclinkGenerateResponse,
    responses=ERROR_RESPONSES,
)
async def generate_magiclink(
    payload: MagiclinkGenerateRequest,
    config: RealmDep,
    service: MagiclinkServiceDep,
    subjects: SubjectsDep,
) -> MagiclinkGenerateResponse:
    """Issue a magic link and hand it to the delivery endpoint.

    Args:
        payload: Contact, destination and optional lifetime
        config: Realm configuration
        service: Magic-link service
        subjects: Subject lookup for the realm

    Returns:
        The link, its token id and expiry
    """
    issue = await service.generate(config, subjects, payload)
    return MagiclinkGenerateResponse(
        magiclink=issue.magiclink,
        token_id=issue.token_id,
        expires_at=issue.expires_at,
    )


@router.get("/authenticate", response_model=None)
async def authenticate_magiclink(
    config: RealmDep,
    service: MagiclinkServiceDep,
    subjects: SubjectsDep,
    token: Annotated[str | None, Query()] = None,
) -> RedirectResponse | HTMLResponse:
    """Redeem a magic link and redirect to its destination.

    The access token for the redeemed subject travels in the URL fragment,
    so it reaches the destination page without being sent to its server.
    """
    if not token or not token.strip():
        logger.warning("Authentication attempted without token")
        return HTMLResponse(
            render_error_page("Authentication Failed", "Token is required", "MISSING_TOKEN"),
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    try:
        result = service.authenticate(config, subjects, token)
    except EphemeralAuthError as exc:
        return HTMLResponse(
            render_error_page("Authentication Failed", exc.public_message, exc.code),
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    access_token = create_access_token(result.subject.id, config.realm, {"amr": ["magiclink"]})
    return RedirectResponse(
        with_token_fragment(result.redirect_url, access_token),
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/status", response_model=MagiclinkStatusResponse)
async def magiclink_status(
    config: RealmDep,
    service: MagiclinkServiceDep,
    token: Annotated[str, Query(min_length=1)],
) -> dict[str, object]:
    """Report whether a token would currently be accepted, without redeeming it."""
    return service.status(config, token)


@router.get("/health", response_model=MagiclinkHealthResponse)
async def magiclink_health(config: RealmDep) -> MagiclinkHealthResponse:
    """Summarize the magic-link feature state for a realm."""
    return MagiclinkHealthResponse(
        status="healthy" if config.magiclink.enabled else "disabled",
        enabled=config.magiclink.enabled,
        external_api_configured=config.magiclink.external_api_configured,
        rate_limit_enabled=config.magiclink.rate_limit_enabled,
        realm=config.realm,
        timestamp=int(time.time()),
    )


@router.get("/config")
async def magiclink_config(config: RealmDep) -> dict[str, object]:
    """Return the realm configuration with secrets masked, plus validation problems."""
    snapshot = sanitized_snapshot(config)
    snapshot["errors"] = config.validate()
    return snapshot


@router.get("/test-api")
async def test_delivery_api(config: RealmDep, gateways: GatewaysDep) -> dict[str, object]:
    """Send a single probe request to the magic-link delivery endpoint."""
    outcome = await gateways.magiclink_delivery(config).test_connection()
    return {
        "success": outcome.success,
        "statusCode": outcome.status_code,
        "error": outcome.reason,
        "errorCode": outcome.error_code,
    }
