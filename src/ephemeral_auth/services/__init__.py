# src/ephemeral_auth/services/__init__.py
"""Credential lifecycle services."""

from .codec import LinkCredentialCodec
from .gateway import DeliveryGateway, EligibilityChecker, GatewayFactory
from .magiclink import MagiclinkService
from .orchestrator import AuthenticationOrchestrator
from .otp import OtpService

__all__ = [
    "AuthenticationOrchestrator",
    "DeliveryGateway",
    "EligibilityChecker",
    "GatewayFactory",
    "LinkCredentialCodec",
    "MagiclinkService",
    "OtpService",
]
