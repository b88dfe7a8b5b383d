"""Adaptive authentication risk engine and MFA verification core."""

from .config import EngineConfig, MFAConfig, RiskPolicy
from .mfa import MFAVerifier
from .models import (
    DeviceFingerprint,
    GeolocationSnapshot,
    MFAMethodType,
    MFAVerificationResult,
    RiskFactors,
    ThreatAssessment,
    ThreatLevel,
)
from .risk_engine import RiskEngine
from .security_monitors import ChangeMonitor

__all__ = [
    "EngineConfig",
    "MFAConfig",
    "RiskPolicy",
    "MFAVerifier",
    "DeviceFingerprint",
    "GeolocationSnapshot",
    "MFAMethodType",
    "MFAVerificationResult",
    "RiskFactors",
    "ThreatAssessment",
    "ThreatLevel",
    "RiskEngine",
    "ChangeMonitor",
]
