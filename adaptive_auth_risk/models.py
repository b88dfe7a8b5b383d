from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from .errors import MFAErrorCode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_score(value: float) -> int:
    return int(max(0, min(100, value)))


class ThreatLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def requires_action(self) -> bool:
        return self in (ThreatLevel.HIGH, ThreatLevel.CRITICAL)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEventType(str, Enum):
    SECURITY_VIOLATION = "security_violation"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_CHALLENGE_VERIFIED = "mfa_challenge_verified"
    MFA_CHALLENGE_FAILED = "mfa_challenge_failed"
    ACCOUNT_LOCKED = "account_locked"


class MFAMethodType(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    BACKUP_CODES = "backup_codes"
    HARDWARE = "hardware"


@dataclass(frozen=True, slots=True)
class DeviceFingerprint:
    device_id: str
    os_version: str = ""
    app_version: str = ""
    screen_resolution: str = ""
    time_zone: str = ""
    language: str = ""
    is_emulator: bool = False
    is_jailbroken: bool = False


@dataclass(frozen=True, slots=True)
class GeolocationSnapshot:
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None
    isp: Optional[str] = None
    vpn_detected: bool = False
    proxy_detected: bool = False

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def coordinates(self) -> Tuple[float, float] | None:
        if not self.has_coordinates:
            return None
        return (float(self.latitude), float(self.longitude))  # type: ignore[arg-type]


@dataclass(slots=True)
class RiskFactors:
    device_trust: int = 0
    location_risk: int = 0
    behavior_risk: int = 0
    network_risk: int = 0

    def __post_init__(self) -> None:
        self.device_trust = clamp_score(self.device_trust)
        self.location_risk = clamp_score(self.location_risk)
        self.behavior_risk = clamp_score(self.behavior_risk)
        self.network_risk = clamp_score(self.network_risk)

    def as_dict(self) -> Dict[str, int]:
        return {
            "device_trust": self.device_trust,
            "location_risk": self.location_risk,
            "behavior_risk": self.behavior_risk,
            "network_risk": self.network_risk,
        }


@dataclass(frozen=True, slots=True)
class ThreatAssessment:
    score: int
    threat_level: ThreatLevel
    indicators: Tuple[str, ...]
    recommendations: Tuple[str, ...]
    requires_action: bool
    factors: RiskFactors
    degraded_signals: Tuple[str, ...] = ()
    assessed_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class SecurityEvent:
    type: SecurityEventType
    severity: Severity
    details: Mapping[str, Any]
    user_id: str
    id: str = field(default_factory=lambda: f"evt-{uuid4().hex}")
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        prefix: str,
        event_type: SecurityEventType,
        severity: Severity,
        user_id: str,
        details: Mapping[str, Any],
        timestamp: datetime | None = None,
    ) -> "SecurityEvent":
        return cls(
            id=f"{prefix}-{uuid4().hex}",
            type=event_type,
            severity=severity,
            details=dict(details),
            user_id=user_id,
            timestamp=timestamp or utcnow(),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "event_id": self.id,
            "user_id": self.user_id,
            "event_type": self.type.value,
            "severity": self.severity.value,
            "details": dict(self.details),
            "created_at": self.timestamp,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "SecurityEvent":
        return cls(
            id=str(document["event_id"]),
            type=SecurityEventType(document["event_type"]),
            severity=Severity(document["severity"]),
            details=dict(document.get("details", {})),
            user_id=str(document["user_id"]),
            timestamp=document["created_at"],
        )


@dataclass(slots=True)
class MFAMethod:
    id: str
    type: MFAMethodType
    name: str
    enabled: bool = True
    is_primary: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def to_document(self, user_id: str) -> Dict[str, Any]:
        return {
            "method_id": self.id,
            "user_id": user_id,
            "type": self.type.value,
            "name": self.name,
            "enabled": self.enabled,
            "is_primary": self.is_primary,
            "created_at": self.created_at,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "MFAMethod":
        return cls(
            id=str(document["method_id"]),
            type=MFAMethodType(document["type"]),
            name=str(document.get("name", "")),
            enabled=bool(document.get("enabled", True)),
            is_primary=bool(document.get("is_primary", False)),
            created_at=document["created_at"],
        )


@dataclass(slots=True)
class RateLimitState:
    user_id: str
    method: MFAMethodType
    attempt_count: int = 0
    window_start: Optional[datetime] = None
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def lock_expired(self, now: datetime) -> bool:
        return self.locked_until is not None and now >= self.locked_until


@dataclass(slots=True)
class SmsChallenge:
    code_digest: str
    expires_at: datetime


@dataclass(slots=True)
class MFASetupResult:
    success: bool
    secret: Optional[str] = None
    qr_code: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(slots=True)
class MFAVerificationResult:
    success: bool
    verified: bool
    remaining_attempts: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[MFAErrorCode] = None

    @classmethod
    def accepted(cls) -> "MFAVerificationResult":
        return cls(success=True, verified=True)

    @classmethod
    def rejected(cls, remaining_attempts: int, error: str) -> "MFAVerificationResult":
        return cls(
            success=True,
            verified=False,
            remaining_attempts=remaining_attempts,
            error=error,
            error_code=MFAErrorCode.INVALID_CODE,
        )

    @classmethod
    def failed(
        cls, error_code: MFAErrorCode, error: str, remaining_attempts: Optional[int] = None
    ) -> "MFAVerificationResult":
        return cls(
            success=False,
            verified=False,
            remaining_attempts=remaining_attempts,
            error=error,
            error_code=error_code,
        )


@dataclass(slots=True)
class OperationResult:
    success: bool
    error: Optional[str] = None
