from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import FrozenSet, Tuple

from .errors import ConfigurationError
from .models import MFAMethodType, ThreatLevel


@dataclass(slots=True)
class RiskPolicy:
    """Weights, thresholds and signal lists used by the risk scorer and assessors."""

    device_weight: float = 0.4
    location_weight: float = 0.3
    behavior_weight: float = 0.2
    network_weight: float = 0.1
    critical_threshold: int = 80
    high_threshold: int = 60
    medium_threshold: int = 40
    high_risk_indicator_score: int = 70
    min_supported_os_major: int = 10
    legacy_os_markers: FrozenSet[str] = frozenset({"old", "legacy"})
    high_risk_countries: FrozenSet[str] = frozenset({"Unknown", "Anonymous"})
    suspicious_isps: FrozenSet[str] = frozenset({"Unknown ISP", "Anonymous Network", "Tor Network"})
    behavior_window: timedelta = timedelta(hours=24)
    behavior_high_volume: int = 50
    behavior_elevated_volume: int = 20

    def validate(self) -> "RiskPolicy":
        weights = (self.device_weight, self.location_weight, self.behavior_weight, self.network_weight)
        if any(weight < 0 for weight in weights):
            raise ConfigurationError("risk weights must be non-negative")
        if abs(sum(weights) - 1.0) > 1e-9:
            raise ConfigurationError(f"risk weights must sum to 1.0, got {sum(weights):.4f}")
        if not 0 < self.medium_threshold < self.high_threshold < self.critical_threshold <= 100:
            raise ConfigurationError(
                "threat thresholds must satisfy 0 < medium < high < critical <= 100, got "
                f"{self.medium_threshold}/{self.high_threshold}/{self.critical_threshold}"
            )
        if self.behavior_elevated_volume >= self.behavior_high_volume:
            raise ConfigurationError("behavior_elevated_volume must be below behavior_high_volume")
        return self

    def classify(self, score: int) -> ThreatLevel:
        if score >= self.critical_threshold:
            return ThreatLevel.CRITICAL
        if score >= self.high_threshold:
            return ThreatLevel.HIGH
        if score >= self.medium_threshold:
            return ThreatLevel.MEDIUM
        return ThreatLevel.LOW


@dataclass(slots=True)
class MFAConfig:
    """Verification limits and setup parameters for the MFA verifier.

    ``require_mfa`` is advisory. The verifier never reads it; it is published
    through ``GET /mfa/config`` so clients can decide whether to prompt for a
    second factor.
    """

    issuer: str = "AdaptiveAuth"
    totp_window: int = 1
    totp_interval: int = 30
    sms_code_ttl: timedelta = timedelta(seconds=300)
    max_attempts: int = 3
    lockout_duration: timedelta = timedelta(seconds=900)
    attempt_window: timedelta | None = None
    backup_code_count: int = 10
    backup_code_length: int = 8
    require_mfa: bool = True
    allowed_methods: Tuple[MFAMethodType, ...] = (
        MFAMethodType.TOTP,
        MFAMethodType.SMS,
        MFAMethodType.BACKUP_CODES,
    )

    @property
    def effective_attempt_window(self) -> timedelta:
        return self.attempt_window or self.lockout_duration

    def validate(self) -> "MFAConfig":
        if self.max_attempts <= 0:
            raise ConfigurationError("max_attempts must be positive")
        if self.lockout_duration.total_seconds() <= 0:
            raise ConfigurationError("lockout_duration must be positive")
        if self.totp_window < 0:
            raise ConfigurationError("totp_window must not be negative")
        if self.backup_code_count <= 0 or self.backup_code_length <= 0:
            raise ConfigurationError("backup code count and length must be positive")
        if not self.issuer or ":" in self.issuer:
            raise ConfigurationError("issuer must be a non-empty label without ':'")
        return self


@dataclass(slots=True)
class EngineConfig:
    """Top-level configuration assembled once at startup."""

    risk: RiskPolicy = field(default_factory=RiskPolicy)
    mfa: MFAConfig = field(default_factory=MFAConfig)
    collector_timeout: float = 2.0
    significant_distance_km: float = 100.0
    distant_travel_km: float = 1000.0
    mongodb_uri: str = "mongodb://mongo:27017/"
    mongodb_database: str = "adaptive_auth"
    webhook_url: str | None = None
    geolocation_api_url: str | None = None

    def validate(self) -> "EngineConfig":
        self.risk.validate()
        self.mfa.validate()
        if self.collector_timeout <= 0:
            raise ConfigurationError("collector_timeout must be positive")
        if self.significant_distance_km >= self.distant_travel_km:
            raise ConfigurationError("significant_distance_km must be below distant_travel_km")
        return self

    @classmethod
    def from_env(cls) -> "EngineConfig":
        try:
            mfa = MFAConfig(
                issuer=os.getenv("MFA_ISSUER", "AdaptiveAuth"),
                max_attempts=int(os.getenv("MFA_MAX_ATTEMPTS", "3")),
                lockout_duration=timedelta(seconds=int(os.getenv("MFA_LOCKOUT_SECONDS", "900"))),
            )
            config = cls(
                mfa=mfa,
                collector_timeout=float(os.getenv("COLLECTOR_TIMEOUT_SECONDS", "2.0")),
                mongodb_uri=os.getenv("MONGODB_URI", "mongodb://mongo:27017/"),
                mongodb_database=os.getenv("MONGODB_DATABASE", "adaptive_auth"),
                webhook_url=os.getenv("ASSESSMENT_WEBHOOK_URL"),
                geolocation_api_url=os.getenv("GEOLOCATION_API_URL"),
            )
        except ValueError as exc:
            raise ConfigurationError(f"invalid numeric setting in environment: {exc}") from exc
        return config.validate()
