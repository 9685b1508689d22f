# tests/conftest.py
from __future__ import annotations

import json
import os
from collections.abc import Generator, Iterator
from dataclasses import dataclass, field
from typing import Annotated, Any

import httpx
import pytest
from fastapi import FastAPI, Path
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-ephemeral-auth")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "3600")
os.environ.setdefault("PUBLIC_BASE_URL", "http://test")

from ephemeral_auth.api.v1.dependencies import (
    REALM_PATTERN,
    get_credential_state_dep,
    get_gateway_factory,
    get_realm_config,
)
from ephemeral_auth.core.realms import RealmConfig, load_realm_config, with_overrides
from ephemeral_auth.db.session import Base
from ephemeral_auth.db.session import get_db as app_get_session
from ephemeral_auth.main import app as fastapi_app
from ephemeral_auth.models import Subject
from ephemeral_auth.repositories import SubjectRepository
from ephemeral_auth.services.gateway import GatewayFactory
from ephemeral_auth.services.state import CredentialState, build_credential_state, reset_credential_state

TEST_DB_URL = "sqlite://"
TEST_REALM = "test-realm"

OTP_API_URL = "https://delivery.example/otp"
MAGICLINK_API_URL = "https://delivery.example/magiclink"
ELIGIBILITY_API_URL = "https://eligibility.example/check"

ALICE_PASSWORD = "correct horse battery staple"


@dataclass
class FakeExternalApis:
    """In-process stand-in for the eligibility and delivery endpoints."""

    eligible: bool = True
    eligibility_status: int = 200
    delivery_failures: int = 0
    delivery_status: int = 200
    deliveries: list[dict[str, Any]] = field(default_factory=list)
    eligibility_calls: list[httpx.Request] = field(default_factory=list)
    delivery_attempts: int = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.eligibility_calls.append(request)
            if self.eligibility_status != 200:
                return httpx.Response(self.eligibility_status)
            return httpx.Response(200, json={"enabled": self.eligible, "reason": "test"})

        self.delivery_attempts += 1
        if self.delivery_failures > 0:
            self.delivery_failures -= 1
            return httpx.Response(503)
        if self.delivery_status != 200:
            return httpx.Response(self.delivery_status)
        self.deliveries.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    @property
    def last_delivery(self) -> dict[str, Any]:
        return self.deliveries[-1]

    def last_code(self) -> str:
        return str(self.last_delivery["otp"])


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    session.begin_nested()

    @event.listens_for(session, "after_transaction_end")
    def restart_savepoint(sess: Session, trans) -> None:  # pragma: no cover - SQLAlchemy internals
        if trans.nested and not getattr(trans._parent, "nested", False):
            session.begin_nested()

    try:
        yield session
    finally:
        event.remove(session, "after_transaction_end", restart_savepoint)
        session.close()

        if transaction.is_active:
            transaction.rollback()
        connection.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def external_apis() -> FakeExternalApis:
    return FakeExternalApis()


@pytest.fixture()
def gateways(external_apis: FakeExternalApis) -> GatewayFactory:
    """Gateway factory wired to the fake endpoints, with backoff sleeps skipped."""
    return GatewayFactory(transport=httpx.MockTransport(external_apis.handler), sleep=_no_sleep)


@pytest.fixture()
def realm_config() -> RealmConfig:
    """Configuration for the test realm with every external endpoint set."""
    return with_overrides(
        load_realm_config(TEST_REALM),
        otp_enabled=True,
        otp_api_url=OTP_API_URL,
        otp_eligibility_api_url=ELIGIBILITY_API_URL,
        otp_api_token="otp-token",
        magiclink_enabled=True,
        magiclink_api_endpoint=MAGICLINK_API_URL,
        magiclink_api_token="link-token",
        magiclink_allowed_redirect_urls=("https://app.example/",),
    )


@pytest.fixture()
def credential_state() -> Iterator[CredentialState]:
    reset_credential_state()
    state = build_credential_state()
    try:
        yield state
    finally:
        reset_credential_state()


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def wired_app(
    app: FastAPI,
    gateways: GatewayFactory,
    realm_config: RealmConfig,
    credential_state: CredentialState,
) -> Iterator[FastAPI]:
    """Route realm config, outbound HTTP and shared state to test doubles."""

    def _realm_override(
        realm: Annotated[str, Path(pattern=REALM_PATTERN, description="Realm name")],
    ) -> RealmConfig:
        if realm == realm_config.realm:
            return realm_config
        return load_realm_config(realm)

    overrides = {
        get_gateway_factory: lambda: gateways,
        get_credential_state_dep: lambda: credential_state,
        get_realm_config: _realm_override,
    }
    app.dependency_overrides.update(overrides)
    try:
        yield app
    finally:
        for dependency in overrides:
            app.dependency_overrides.pop(dependency, None)


@pytest.fixture()
def client(wired_app: FastAPI) -> Iterator[TestClient]:
    with TestClient(wired_app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def subjects(db_session: Session) -> SubjectRepository:
    return SubjectRepository(db_session)


@pytest.fixture()
def alice(subjects: SubjectRepository) -> Subject:
    """Create and return the primary test subject."""
    return subjects.create(
        realm=TEST_REALM,
        email="alice@example.com",
        username="alice",
        password=ALICE_PASSWORD,
    )


@pytest.fixture()
def bob(subjects: SubjectRepository) -> Subject:
    """Create and return a second subject in the same realm."""
    return subjects.create(realm=TEST_REALM, email="bob@example.com", username="bob")
