"""Shared API dependencies for realm resolution and service wiring."""

from typing import Annotated

from fastapi import Depends, Path
from sqlalchemy.orm import Session

from ephemeral_auth.core.realms import RealmConfig, load_realm_config
from ephemeral_auth.core.settings import settings
from ephemeral_auth.db.session import get_db
from ephemeral_auth.repositories import PendingCredentialRepository, SubjectRepository
from ephemeral_auth.services.codec import LinkCredentialCodec
from ephemeral_auth.services.gateway import GatewayFactory
from ephemeral_auth.services.magiclink import MagiclinkService
from ephemeral_auth.services.orchestrator import AuthenticationOrchestrator
from ephemeral_auth.services.otp import OtpService
from ephemeral_auth.services.state import CredentialState, get_credential_state

REALM_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$"

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_realm_config(
    realm: Annotated[str, Path(pattern=REALM_PATTERN, description="Realm name")],
) -> RealmConfig:
    """Resolve the configuration for the realm named in the path."""
    return load_realm_config(realm)


def get_credential_state_dep() -> CredentialState:
    return get_credential_state()


def get_gateway_factory() -> GatewayFactory:
    return GatewayFactory()


def get_link_codec() -> LinkCredentialCodec:
    return LinkCredentialCodec()


RealmDep = Annotated[RealmConfig, Depends(get_realm_config)]
StateDep = Annotated[CredentialState, Depends(get_credential_state_dep)]
GatewaysDep = Annotated[GatewayFactory, Depends(get_gateway_factory)]
CodecDep = Annotated[LinkCredentialCodec, Depends(get_link_codec)]


def get_subject_repository(db: SessionDep) -> SubjectRepository:
    return SubjectRepository(db)


def get_pending_repository(db: SessionDep) -> PendingCredentialRepository:
    return PendingCredentialRepository(db)


def get_otp_service(state: StateDep, gateways: GatewaysDep) -> OtpService:
    return OtpService(state.codes, state.limiter, gateways)


def get_magiclink_service(
    state: StateDep,
    gateways: GatewaysDep,
    codec: CodecDep,
) -> MagiclinkService:
    return MagiclinkService(state.ledger, state.limiter, gateways, codec, settings.public_base_url)


OtpServiceDep = Annotated[OtpService, Depends(get_otp_service)]
MagiclinkServiceDep = Annotated[MagiclinkService, Depends(get_magiclink_service)]


def get_orchestrator(
    state: StateDep,
    otp: OtpServiceDep,
    magiclink: MagiclinkServiceDep,
) -> AuthenticationOrchestrator:
    return AuthenticationOrchestrator(
        otp,
        magiclink,
        state.sessions,
        session_ttl_seconds=settings.flow_session_ttl_seconds,
    )


SubjectsDep = Annotated[SubjectRepository, Depends(get_subject_repository)]
PendingDep = Annotated[PendingCredentialRepository, Depends(get_pending_repository)]
OrchestratorDep = Annotated[AuthenticationOrchestrator, Depends(get_orchestrator)]
