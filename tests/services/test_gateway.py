"""Tests for the eligibility checker and the delivery gateway."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from ephemeral_auth.services.gateway import (
    DeliveryGateway,
    DeliveryPayload,
    EligibilityChecker,
    EligibilitySource,
    backoff_delay,
    build_auth_headers,
)

URL = "https://api.example/endpoint"


def _payload() -> DeliveryPayload:
    return DeliveryPayload(
        email="alice@example.com",
        code_or_link="123456",
        credential_id="otp_abc",
        user_id="user-1",
        kind="otp",
    )


def test_auth_headers_per_scheme() -> None:
    assert build_auth_headers("t", "bearer") == {"Authorization": "Bearer t"}
    assert build_auth_headers("t", "Basic") == {"Authorization": "Basic t"}
    assert build_auth_headers("t", "apikey") == {"Authorization": "t"}
    assert build_auth_headers(None, "bearer") == {}


def test_backoff_delay_doubles_and_caps() -> None:
    assert [backoff_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert backoff_delay(10, base=1.0, cap=30.0) == 30.0


@pytest.mark.asyncio
async def test_eligibility_api_success() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"enabled": False, "reason": "sso user"})

    checker = EligibilityChecker(URL, token="secret", transport=httpx.MockTransport(handler))
    result = await checker.check("alice@example.com")

    assert result.eligible is False
    assert result.source is EligibilitySource.API_SUCCESS
    assert result.reason == "sso user"
    assert seen[0].url.params["email"] == "alice@example.com"
    assert seen[0].headers["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
@pytest.mark.parametrize(("fail_closed", "expected"), [(False, True), (True, False)])
async def test_eligibility_failure_uses_policy(fail_closed: bool, expected: bool) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    checker = EligibilityChecker(URL, fail_closed=fail_closed, transport=transport)
    result = await checker.check("alice@example.com")

    assert result.eligible is expected
    assert result.source is EligibilitySource.API_FAILURE_FALLBACK
    assert result.status_code == 500


@pytest.mark.asyncio
async def test_eligibility_network_error_falls_back() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    checker = EligibilityChecker(URL, transport=httpx.MockTransport(handler))
    result = await checker.check("alice@example.com")
    assert result.eligible is True
    assert result.source is EligibilitySource.API_FAILURE_FALLBACK


@pytest.mark.asyncio
async def test_eligibility_invalid_json_falls_back() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"not json"))
    checker = EligibilityChecker(URL, fail_closed=True, transport=transport)
    result = await checker.check("alice@example.com")
    assert result.eligible is False
    assert result.source is EligibilitySource.API_FAILURE_FALLBACK


@pytest.mark.asyncio
async def test_eligibility_not_configured() -> None:
    result = await EligibilityChecker(None).check("alice@example.com")
    assert result.eligible is True
    assert result.source is EligibilitySource.NOT_CONFIGURED


@pytest.mark.asyncio
async def test_delivery_succeeds_on_third_attempt() -> None:
    responses = iter([httpx.Response(503), httpx.Response(502), httpx.Response(200)])
    bodies: list[dict[str, object]] = []
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return next(responses)

    async def sleep(delay: float) -> None:
        delays.append(delay)

    gateway = DeliveryGateway(URL, token="k", transport=httpx.MockTransport(handler), sleep=sleep)
    outcome = await gateway.deliver(_payload())

    assert outcome.success is True
    assert outcome.attempts == 3
    assert delays == [1.0, 2.0]
    assert bodies[0]["otp"] == "123456"
    assert bodies[0]["code_or_link"] == "123456"
    assert bodies[0]["id"] == "otp_abc"
    assert bodies[0]["userId"] == "user-1"
    assert bodies[0]["source"] == "ephemeral-auth"


@pytest.mark.asyncio
async def test_delivery_gives_up_after_max_attempts() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(500)

    async def sleep(delay: float) -> None:
        return None

    gateway = DeliveryGateway(URL, transport=httpx.MockTransport(handler), sleep=sleep)
    outcome = await gateway.deliver(_payload())

    assert outcome.success is False
    assert outcome.attempts == 3
    assert calls == 3
    assert outcome.error_code == "HTTP_ERROR_500"


@pytest.mark.asyncio
async def test_delivery_network_errors_are_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(204)

    async def sleep(delay: float) -> None:
        return None

    gateway = DeliveryGateway(URL, transport=httpx.MockTransport(handler), sleep=sleep)
    outcome = await gateway.deliver(_payload())
    assert outcome.success is True
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_delivery_interrupted_during_backoff() -> None:
    async def sleep(delay: float) -> None:
        raise asyncio.CancelledError()

    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    gateway = DeliveryGateway(URL, transport=transport, sleep=sleep)
    outcome = await gateway.deliver(_payload())

    assert outcome.success is False
    assert outcome.interrupted is True
    assert outcome.attempts == 1


@pytest.mark.asyncio
async def test_delivery_without_endpoint_is_config_error() -> None:
    outcome = await DeliveryGateway(None).deliver(_payload())
    assert outcome.success is False
    assert outcome.attempts == 0
    assert outcome.error_code == "CONFIG_ERROR"


@pytest.mark.asyncio
async def test_connection_probe_is_single_request() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        assert json.loads(request.content)["test"] is True
        return httpx.Response(500)

    gateway = DeliveryGateway(URL, transport=httpx.MockTransport(handler))
    outcome = await gateway.test_connection()
    assert outcome.success is False
    assert outcome.status_code == 500
    assert calls == 1


@pytest.mark.asyncio
async def test_connection_check_without_endpoint_sends_nothing() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200)

    gateway = DeliveryGateway("", transport=httpx.MockTransport(handler))
    outcome = await gateway.test_connection()
    assert outcome.success is False
    assert outcome.error_code == "CONFIG_ERROR"
    assert calls == 0
