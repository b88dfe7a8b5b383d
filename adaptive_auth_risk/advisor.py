from __future__ import annotations

from typing import List, Sequence, Tuple

from .config import RiskPolicy
from .models import DeviceFingerprint, GeolocationSnapshot, ThreatLevel


EMULATOR_DETECTED = "Device emulator detected"
JAILBREAK_DETECTED = "Rooted/jailbroken device detected"
VPN_DETECTED = "VPN usage detected"
PROXY_DETECTED = "Proxy usage detected"
HIGH_RISK_ATTEMPT = "High-risk authentication attempt"
UNKNOWN_NETWORK = "Unknown network provider"

LEVEL_RECOMMENDATIONS = {
    ThreatLevel.CRITICAL: (
        "Block authentication attempt immediately",
        "Require administrator approval for access",
        "Initiate security incident response",
    ),
    ThreatLevel.HIGH: (
        "Require multi-factor authentication",
        "Implement additional identity verification",
        "Monitor user activity closely",
    ),
    ThreatLevel.MEDIUM: (
        "Consider additional verification steps",
        "Log security event for review",
        "Monitor for suspicious patterns",
    ),
    ThreatLevel.LOW: (
        "Proceed with standard authentication",
        "Continue routine security monitoring",
    ),
}

# Appended after the level recommendations, in this order.
INDICATOR_RECOMMENDATIONS = (
    (EMULATOR_DETECTED, "Block emulator access per security policy"),
    (VPN_DETECTED, "Verify user identity through alternative channels"),
    (JAILBREAK_DETECTED, "Restrict access on compromised devices"),
)


class ThreatAdvisor:
    def __init__(self, policy: RiskPolicy | None = None):
        self.policy = policy or RiskPolicy()

    def indicators(self, fingerprint: DeviceFingerprint, geo: GeolocationSnapshot, score: int) -> List[str]:
        found: List[str] = []
        if fingerprint.is_emulator:
            found.append(EMULATOR_DETECTED)
        if fingerprint.is_jailbroken:
            found.append(JAILBREAK_DETECTED)
        if geo.vpn_detected:
            found.append(VPN_DETECTED)
        if geo.proxy_detected:
            found.append(PROXY_DETECTED)
        if score > self.policy.high_risk_indicator_score:
            found.append(HIGH_RISK_ATTEMPT)
        if not geo.isp:
            found.append(UNKNOWN_NETWORK)
        return found

    def recommendations(self, level: ThreatLevel, indicators: Sequence[str]) -> List[str]:
        result = list(LEVEL_RECOMMENDATIONS[ThreatLevel(level)])
        for indicator, recommendation in INDICATOR_RECOMMENDATIONS:
            if indicator in indicators:
                result.append(recommendation)
        return result

    def advise(
        self, fingerprint: DeviceFingerprint, geo: GeolocationSnapshot, score: int, level: ThreatLevel
    ) -> Tuple[List[str], List[str]]:
        found = self.indicators(fingerprint, geo, score)
        return found, self.recommendations(level, found)
