from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, List, Mapping, Sequence, Tuple, TypeVar

from .advisor import ThreatAdvisor
from .assessors import DeviceTrustAssessor, LocationRiskAssessor, NetworkRiskAssessor
from .behavior_analyzer import BehaviorRiskAssessor
from .config import EngineConfig
from .fingerprinting import DeviceFingerprintCollector
from .geolocation import GeolocationCollector
from .models import DeviceFingerprint, GeolocationSnapshot, RiskFactors, SecurityEvent, ThreatAssessment
from .scoring import RiskScorer
from .stores import AuditLogStore


logger = logging.getLogger(__name__)

T = TypeVar("T")

UNKNOWN_DEVICE = DeviceFingerprint(device_id="unknown")


@dataclass(frozen=True, slots=True)
class SignalResult(Generic[T]):
    name: str
    value: T
    degraded: bool = False
    reason: str = ""


class RiskEngine:
    """Collects signals, scores them and advises on the resulting threat level.

    Device, geolocation and behavior lookups run concurrently, each bounded by
    ``collector_timeout``. A lookup that fails or times out contributes a
    neutral value and is reported in ``ThreatAssessment.degraded_signals``.
    """

    def __init__(
        self,
        audit_store: AuditLogStore,
        config: EngineConfig | None = None,
        device_collector: DeviceFingerprintCollector | None = None,
        geo_collector: GeolocationCollector | None = None,
    ):
        self.config = (config or EngineConfig()).validate()
        policy = self.config.risk
        self.device_collector = device_collector
        self.geo_collector = geo_collector
        self.device_trust = DeviceTrustAssessor(policy)
        self.location_risk = LocationRiskAssessor(policy)
        self.network_risk = NetworkRiskAssessor(policy)
        self.behavior = BehaviorRiskAssessor(audit_store, policy, timeout=self.config.collector_timeout)
        self.scorer = RiskScorer(policy)
        self.advisor = ThreatAdvisor(policy)

    async def _guarded(self, name: str, call: Awaitable[T] | None, default: T) -> SignalResult[T]:
        if call is None:
            return SignalResult(name, default, degraded=True, reason="no collector configured")
        try:
            value = await asyncio.wait_for(call, timeout=self.config.collector_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s signal timed out after %.1fs", name, self.config.collector_timeout)
            return SignalResult(name, default, degraded=True, reason="timeout")
        except Exception as exc:
            logger.warning("%s signal unavailable: %s", name, exc)
            return SignalResult(name, default, degraded=True, reason=str(exc))
        return SignalResult(name, value)

    async def assess_threat(self, user_id: str) -> ThreatAssessment:
        """Collect every signal for ``user_id`` and assess it."""
        device, geo, events = await asyncio.gather(
            self._guarded(
                "device",
                self.device_collector.collect() if self.device_collector else None,
                UNKNOWN_DEVICE,
            ),
            self._guarded(
                "geolocation",
                self.geo_collector.fetch() if self.geo_collector else None,
                GeolocationSnapshot(),
            ),
            self._guarded("behavior", self.behavior.fetch_events(user_id), []),
        )
        return self._assess(user_id, device.value, geo.value, events, degraded=(device, geo, events))

    async def perform_threat_assessment(
        self,
        user_id: str,
        fingerprint: DeviceFingerprint,
        geolocation: GeolocationSnapshot | None = None,
    ) -> ThreatAssessment:
        """Assess caller-supplied device and location signals."""
        events = await self._guarded("behavior", self.behavior.fetch_events(user_id), [])
        return self._assess(user_id, fingerprint, geolocation or GeolocationSnapshot(), events, degraded=(events,))

    def _assess(
        self,
        user_id: str,
        fingerprint: DeviceFingerprint,
        geo: GeolocationSnapshot,
        events: SignalResult[Sequence[SecurityEvent]],
        degraded: Tuple[SignalResult[Any], ...],
    ) -> ThreatAssessment:
        factors = RiskFactors(
            device_trust=self.device_trust.assess(fingerprint),
            location_risk=self.location_risk.assess(geo),
            behavior_risk=0 if events.degraded else self.behavior.score_events(events.value),
            network_risk=self.network_risk.assess(geo),
        )
        composite = self.scorer.score(factors)
        indicators, recommendations = self.advisor.advise(
            fingerprint, geo, composite.score, composite.threat_level
        )
        assessment = ThreatAssessment(
            score=composite.score,
            threat_level=composite.threat_level,
            indicators=tuple(indicators),
            recommendations=tuple(recommendations),
            requires_action=composite.requires_action,
            factors=factors,
            degraded_signals=tuple(result.name for result in degraded if result.degraded),
        )
        logger.info(
            "Threat assessment completed user=%s level=%s score=%d indicators=%d degraded=%s",
            user_id,
            assessment.threat_level.value,
            assessment.score,
            len(assessment.indicators),
            ",".join(assessment.degraded_signals) or "none",
        )
        return assessment

    def detect_anomalies(self, signals: Mapping[str, Any]) -> List[str]:
        """Flag anomalies in an ad-hoc bundle of authentication signals."""
        anomalies: List[str] = []
        fingerprint = signals.get("device_fingerprint")
        geolocation = signals.get("geolocation")
        if _flag(fingerprint, "is_emulator"):
            anomalies.append("Emulator device detected")
        if _flag(geolocation, "vpn_detected"):
            anomalies.append("VPN usage anomaly")
        if int(signals.get("authentication_attempts") or 0) > 10:
            anomalies.append("Excessive authentication attempts")
        if int(signals.get("location_jumps") or 0) > 5:
            anomalies.append("Suspicious location jumping pattern")

        if len(anomalies) > 3:
            level = "high"
        elif len(anomalies) > 1:
            level = "medium"
        else:
            level = "low"
        logger.info("Anomaly detection completed count=%d level=%s", len(anomalies), level)
        return anomalies


def _flag(source: Any, name: str) -> bool:
    if source is None:
        return False
    if isinstance(source, Mapping):
        return bool(source.get(name))
    return bool(getattr(source, name, False))
