# src/ephemeral_auth/core/realms.py
"""Per-realm configuration resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any
from urllib.parse import urlparse

from ephemeral_auth.core.settings import Settings, settings

logger = logging.getLogger(__name__)

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0"})

MAGICLINK_EXPIRY_RANGE = (1, 60)
OTP_LENGTH_RANGE = (4, 10)
OTP_TTL_RANGE = (60, 900)
MAX_RETRY_RANGE = (1, 10)


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, int(value)))


def _split_csv(raw: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    if not raw:
        return ()
    items = raw.split(",") if isinstance(raw, str) else raw
    return tuple(item.strip() for item in items if item and item.strip())


def is_local_host(host: str | None) -> bool:
    return (host or "").lower() in LOCAL_HOSTS


def is_safe_redirect(url: str | None) -> bool:
    """Return True for absolute HTTPS URLs, or HTTP ones on a loopback host."""
    if not url:
        return False
    parsed = urlparse(url.strip())
    if not parsed.netloc:
        return False
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and (parsed.hostname or "") in {"localhost", "127.0.0.1"}


@dataclass(frozen=True)
class MagiclinkPolicy:
    """Immutable magic-link configuration for one realm."""

    enabled: bool
    api_endpoint: str | None
    api_token: str | None
    api_type: str
    token_expiry_minutes: int
    rate_limit_enabled: bool
    rate_limit_requests: int
    rate_limit_window_seconds: int
    allowed_redirect_urls: tuple[str, ...]

    @property
    def external_api_configured(self) -> bool:
        return bool(self.api_endpoint)

    def is_redirect_allowed(self, url: str) -> bool:
        """Return True if ``url`` may be used as a post-login destination.

        Without configured prefixes any HTTPS URL is accepted, and HTTP only
        for local hosts. With prefixes the URL must start with one of them.
        """
        if not url:
            return False
        if not self.allowed_redirect_urls:
            parsed = urlparse(url)
            if parsed.scheme == "https":
                return bool(parsed.netloc)
            return parsed.scheme == "http" and is_local_host(parsed.hostname)
        return any(url.startswith(prefix) for prefix in self.allowed_redirect_urls)


@dataclass(frozen=True)
class OtpPolicy:
    """Immutable OTP configuration for one realm."""

    enabled: bool
    api_url: str | None
    eligibility_api_url: str | None
    api_token: str | None
    api_type: str
    length: int
    ttl_seconds: int
    fail_if_eligibility_fails: bool
    max_retry_attempts: int
    rate_limit_enabled: bool
    rate_limit_requests: int
    rate_limit_window_seconds: int


@dataclass(frozen=True)
class RealmConfig:
    """Resolved configuration for a single realm."""

    realm: str
    magiclink: MagiclinkPolicy
    otp: OtpPolicy

    def validate(self) -> list[str]:
        """Return human-readable configuration problems, empty when valid."""
        errors: list[str] = []
        link = self.magiclink
        if link.api_endpoint and urlparse(link.api_endpoint).scheme not in {"http", "https"}:
            errors.append("External API endpoint must be a valid HTTP/HTTPS URL")
        for prefix in link.allowed_redirect_urls:
            parsed = urlparse(prefix)
            if parsed.scheme != "https" and not (
                parsed.scheme == "http" and is_local_host(parsed.hostname)
            ):
                errors.append(
                    f"Allowed redirect URLs must use HTTPS (or HTTP for localhost): {prefix}"
                )
        if self.otp.enabled and not (self.otp.api_url and self.otp.eligibility_api_url):
            errors.append("External OTP API URL and Eligibility API URL must be configured")
        return errors


def _realm_enabled_for_otp(source: Settings, realm: str) -> bool:
    realms = _split_csv(source.otp_enabled_realms)
    return not realms or realm in realms


def load_realm_config(realm: str, source: Settings | None = None) -> RealmConfig:
    """Build the configuration for ``realm`` from global settings and overrides.

    Out-of-range numeric values are clamped into their accepted range.
    """
    cfg = source or settings
    overrides: dict[str, Any] = dict(cfg.realm_overrides.get(realm, {}))
    if overrides:
        known = set(Settings.model_fields)
        unknown = sorted(key for key in overrides if key not in known)
        if unknown:
            logger.warning("Ignoring unknown overrides for realm %s: %s", realm, unknown)
        cfg = cfg.model_copy(update={k: v for k, v in overrides.items() if k in known})

    magiclink = MagiclinkPolicy(
        enabled=cfg.magiclink_enabled,
        api_endpoint=cfg.magiclink_api_endpoint or None,
        api_token=cfg.magiclink_api_token,
        api_type=cfg.magiclink_api_type.lower(),
        token_expiry_minutes=_clamp(cfg.magiclink_token_expiry_minutes, MAGICLINK_EXPIRY_RANGE),
        rate_limit_enabled=cfg.magiclink_rate_limit_enabled,
        rate_limit_requests=max(1, cfg.magiclink_rate_limit_requests),
        rate_limit_window_seconds=max(1, cfg.magiclink_rate_limit_window_seconds),
        allowed_redirect_urls=_split_csv(cfg.magiclink_allowed_redirect_urls),
    )
    otp = OtpPolicy(
        enabled=cfg.otp_enabled and _realm_enabled_for_otp(cfg, realm),
        api_url=cfg.otp_api_url or None,
        eligibility_api_url=cfg.otp_eligibility_api_url or None,
        api_token=cfg.otp_api_token,
        api_type=cfg.otp_api_type.lower(),
        length=_clamp(cfg.otp_length, OTP_LENGTH_RANGE),
        ttl_seconds=_clamp(cfg.otp_ttl_seconds, OTP_TTL_RANGE),
        fail_if_eligibility_fails=cfg.otp_fail_if_eligibility_fails,
        max_retry_attempts=_clamp(cfg.otp_max_retry_attempts, MAX_RETRY_RANGE),
        rate_limit_enabled=cfg.otp_rate_limit_enabled,
        rate_limit_requests=max(1, cfg.otp_rate_limit_requests),
        rate_limit_window_seconds=max(1, cfg.otp_rate_limit_window_seconds),
    )
    return RealmConfig(realm=realm, magiclink=magiclink, otp=otp)


def sanitized_snapshot(config: RealmConfig) -> dict[str, object]:
    """Return the realm configuration without secrets."""
    link = {f.name: getattr(config.magiclink, f.name) for f in fields(config.magiclink)}
    otp = {f.name: getattr(config.otp, f.name) for f in fields(config.otp)}
    link["api_token"] = "***" if config.magiclink.api_token else None
    otp["api_token"] = "***" if config.otp.api_token else None
    link["allowed_redirect_urls"] = list(config.magiclink.allowed_redirect_urls)
    return {"realm": config.realm, "magiclink": link, "otp": otp}


def with_overrides(config: RealmConfig, **changes: Any) -> RealmConfig:
    """Return a copy of ``config`` with OTP or magic-link fields replaced.

    Keys are prefixed with ``otp_`` or ``magiclink_`` to pick the policy.
    """
    link_changes = {k[len("magiclink_"):]: v for k, v in changes.items() if k.startswith("magiclink_")}
    otp_changes = {k[len("otp_"):]: v for k, v in changes.items() if k.startswith("otp_")}
    return replace(
        config,
        magiclink=replace(config.magiclink, **link_changes),
        otp=replace(config.otp, **otp_changes),
    )
