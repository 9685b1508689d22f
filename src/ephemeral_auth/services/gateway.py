"""Outbound HTTP calls: eligibility pre-checks and credential delivery.

The eligibility checker asks an external endpoint whether a contact should
receive a second-factor challenge. Infrastructure failures never raise; they
resolve to a decision through the fail-open or fail-closed policy and the
decision is logged with its source.

The delivery gateway POSTs the generated credential to an external endpoint
with bounded exponential backoff. It reports an explicit ``DeliveryOutcome``
carrying the attempt count and terminal reason instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from ephemeral_auth.core.realms import RealmConfig
from ephemeral_auth.core.settings import settings
from ephemeral_auth.db.time import utcnow

logger = logging.getLogger(__name__)

SOURCE_NAME = "ephemeral-auth"
INTERRUPTED = "interrupted"

Sleep = Callable[[float], Awaitable[None]]


def build_auth_headers(token: str | None, auth_type: str | None) -> dict[str, str]:
    """Return the ``Authorization`` header for the configured scheme."""
    if not token:
        return {}
    scheme = (auth_type or "").lower()
    if scheme == "bearer":
        return {"Authorization": f"Bearer {token}"}
    if scheme == "basic":
        return {"Authorization": f"Basic {token}"}
    # "apikey" and unknown schemes send the raw token.
    return {"Authorization": token}


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
    return min(base * (2 ** (attempt - 1)), cap)


class EligibilitySource(str, Enum):
    """Where an eligibility decision came from."""

    API_SUCCESS = "api-success"
    API_FAILURE_FALLBACK = "api-failure-fallback"
    NOT_CONFIGURED = "not-configured"


@dataclass(frozen=True)
class EligibilityResult:
    """Outcome of a single eligibility check."""

    eligible: bool
    source: EligibilitySource
    reason: str | None = None
    status_code: int | None = None


class EligibilityChecker:
    """Client for the external eligibility endpoint."""

    def __init__(
        self,
        url: str | None,
        *,
        token: str | None = None,
        auth_type: str = "bearer",
        fail_closed: bool = False,
        connect_timeout: float = 5.0,
        read_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.auth_type = auth_type
        self.fail_closed = fail_closed
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._transport = transport

    def _fallback(
        self,
        contact: str,
        reason: str,
        *,
        source: EligibilitySource = EligibilitySource.API_FAILURE_FALLBACK,
        status_code: int | None = None,
    ) -> EligibilityResult:
        eligible = not self.fail_closed
        logger.warning(
            "Eligibility check for %s unavailable (%s); policy=%s -> eligible=%s source=%s",
            contact,
            reason,
            "fail-closed" if self.fail_closed else "fail-open",
            eligible,
            source.value,
        )
        return EligibilityResult(
            eligible=eligible,
            source=source,
            reason=reason,
            status_code=status_code,
        )

    async def check(self, contact: str) -> EligibilityResult:
        """Return whether ``contact`` should receive a one-time credential."""
        if not self.url:
            return self._fallback(
                contact,
                "Eligibility API not configured",
                source=EligibilitySource.NOT_CONFIGURED,
            )

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(
                    self.url,
                    params={"email": contact},
                    headers={"Accept": "application/json", **build_auth_headers(self.token, self.auth_type)},
                )
        except httpx.HTTPError as exc:
            return self._fallback(contact, f"Eligibility request failed: {exc}")

        if not response.is_success:
            return self._fallback(
                contact,
                f"API returned status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            return self._fallback(
                contact,
                "Eligibility API returned invalid JSON",
                status_code=response.status_code,
            )
        if not isinstance(body, Mapping):
            return self._fallback(
                contact,
                "Eligibility API returned an unexpected body",
                status_code=response.status_code,
            )

        eligible = bool(body.get("enabled", False))
        reason = body.get("reason")
        logger.info(
            "Eligibility check for %s: eligible=%s source=%s reason=%s",
            contact,
            eligible,
            EligibilitySource.API_SUCCESS.value,
            reason,
        )
        return EligibilityResult(
            eligible=eligible,
            source=EligibilitySource.API_SUCCESS,
            reason=str(reason) if reason is not None else None,
            status_code=response.status_code,
        )


@dataclass(frozen=True)
class DeliveryPayload:
    """Credential to hand over to the delivery endpoint."""

    email: str
    code_or_link: str
    credential_id: str
    user_id: str
    kind: str
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())
    source: str = SOURCE_NAME

    def to_json(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "email": self.email,
            "code_or_link": self.code_or_link,
            "id": self.credential_id,
            "userId": self.user_id,
            "timestamp": self.timestamp,
            "source": self.source,
        }
        # Receivers written for a single credential kind read it under its own name.
        body[self.kind] = self.code_or_link
        return body


@dataclass(frozen=True)
class DeliveryOutcome:
    """Terminal result of a delivery, including how many attempts were made."""

    success: bool
    attempts: int
    status_code: int | None = None
    reason: str | None = None
    error_code: str | None = None

    @property
    def interrupted(self) -> bool:
        return self.reason == INTERRUPTED


class DeliveryGateway:
    """POSTs credentials to an external endpoint with bounded retry."""

    def __init__(
        self,
        url: str | None,
        *,
        token: str | None = None,
        auth_type: str = "bearer",
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.url = url
        self.token = token
        self.auth_type = auth_type
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self.url)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", **build_auth_headers(self.token, self.auth_type)}

    async def _post_once(
        self,
        client: httpx.AsyncClient,
        url: str,
        attempt: int,
        body: Mapping[str, Any],
    ) -> DeliveryOutcome:
        try:
            response = await client.post(url, json=dict(body), headers=self._headers())
        except httpx.HTTPError as exc:
            return DeliveryOutcome(
                success=False,
                attempts=attempt,
                reason=f"API call failed: {exc}",
                error_code="NETWORK_ERROR",
            )
        if response.is_success:
            return DeliveryOutcome(success=True, attempts=attempt, status_code=response.status_code)
        return DeliveryOutcome(
            success=False,
            attempts=attempt,
            status_code=response.status_code,
            reason=f"API call failed with status {response.status_code}",
            error_code=f"HTTP_ERROR_{response.status_code}",
        )

    async def deliver(self, payload: DeliveryPayload) -> DeliveryOutcome:
        """Send ``payload``, retrying failed attempts with exponential backoff."""
        if not self.url:
            logger.error("Delivery endpoint not configured; %s %s not sent", payload.kind, payload.credential_id)
            return DeliveryOutcome(
                success=False,
                attempts=0,
                reason="Delivery endpoint not configured",
                error_code="CONFIG_ERROR",
            )

        body = payload.to_json()
        outcome = DeliveryOutcome(success=False, attempts=0)
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                outcome = await self._post_once(client, self.url, attempt, body)
                if outcome.success:
                    logger.info(
                        "Delivered %s %s to %s on attempt %d",
                        payload.kind,
                        payload.credential_id,
                        payload.email,
                        attempt,
                    )
                    return outcome

                logger.warning(
                    "Delivery attempt %d/%d for %s %s failed: %s",
                    attempt,
                    self.max_attempts,
                    payload.kind,
                    payload.credential_id,
                    outcome.reason,
                )
                if attempt == self.max_attempts:
                    break
                delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                try:
                    await self._sleep(delay)
                except asyncio.CancelledError:
                    logger.warning(
                        "Delivery of %s %s interrupted during backoff after %d attempts",
                        payload.kind,
                        payload.credential_id,
                        attempt,
                    )
                    return DeliveryOutcome(
                        success=False,
                        attempts=attempt,
                        status_code=outcome.status_code,
                        reason=INTERRUPTED,
                        error_code="INTERRUPTED",
                    )

        logger.error(
            "Delivery of %s %s failed after %d attempts: %s",
            payload.kind,
            payload.credential_id,
            outcome.attempts,
            outcome.reason,
        )
        return outcome

    async def test_connection(self) -> DeliveryOutcome:
        """Send a single probe request to the delivery endpoint."""
        if not self.url:
            return DeliveryOutcome(
                success=False,
                attempts=0,
                reason="Delivery endpoint not configured",
                error_code="CONFIG_ERROR",
            )
        probe = {"test": True, "timestamp": utcnow().isoformat(), "source": f"{SOURCE_NAME}-test"}
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            return await self._post_once(client, self.url, 1, probe)


@dataclass
class GatewayFactory:
    """Builds realm-specific gateways; tests inject a mock transport here."""

    transport: httpx.AsyncBaseTransport | None = None
    sleep: Sleep = asyncio.sleep

    def eligibility(self, config: RealmConfig) -> EligibilityChecker:
        return EligibilityChecker(
            config.otp.eligibility_api_url,
            token=config.otp.api_token,
            auth_type=config.otp.api_type,
            fail_closed=config.otp.fail_if_eligibility_fails,
            connect_timeout=settings.eligibility_connect_timeout_seconds,
            read_timeout=settings.eligibility_read_timeout_seconds,
            transport=self.transport,
        )

    def _delivery(self, url: str | None, token: str | None, auth_type: str) -> DeliveryGateway:
        return DeliveryGateway(
            url,
            token=token,
            auth_type=auth_type,
            max_attempts=settings.delivery_max_attempts,
            backoff_base=settings.delivery_backoff_base_seconds,
            backoff_cap=settings.delivery_backoff_cap_seconds,
            timeout=settings.delivery_timeout_seconds,
            transport=self.transport,
            sleep=self.sleep,
        )

    def otp_delivery(self, config: RealmConfig) -> DeliveryGateway:
        return self._delivery(config.otp.api_url, config.otp.api_token, config.otp.api_type)

    def magiclink_delivery(self, config: RealmConfig) -> DeliveryGateway:
        return self._delivery(
            config.magiclink.api_endpoint,
            config.magiclink.api_token,
            config.magiclink.api_type,
        )
