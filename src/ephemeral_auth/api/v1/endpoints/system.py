"""Service health and public configuration endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ephemeral_auth.api.v1.dependencies import SessionDep, StateDep
from ephemeral_auth.core.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health")
async def system_health(db: SessionDep, state: StateDep) -> dict[str, object]:
    """Check the database and report which credential backend is active."""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        database = "unavailable"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "store_backend": settings.store_backend,
        "store": type(state.codes).__name__,
    }


@router.get("/config")
async def get_public_config() -> dict[str, object]:
    """Return a sanitized snapshot of service-wide settings.

    Per-realm settings are served by each realm's ``magiclink/config``.
    """
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
            "jwt_algorithm": settings.jwt_algorithm,
            "access_token_expire_minutes": settings.access_token_expire_minutes,
            "debug": settings.debug,
        },
        "state": {
            "backend": settings.store_backend,
            "sweep_interval_seconds": settings.sweep_interval_seconds,
            "replay_retention_seconds": settings.replay_retention_seconds,
            "flow_session_ttl_seconds": settings.flow_session_ttl_seconds,
        },
        "delivery": {
            "max_attempts": settings.delivery_max_attempts,
            "backoff_base_seconds": settings.delivery_backoff_base_seconds,
            "backoff_cap_seconds": settings.delivery_backoff_cap_seconds,
        },
        "realm_overrides": sorted(settings.realm_overrides),
    }
