"""Signal-to-score mappings for device, location and network risk.

Each assessor is a pure function of its input and the policy; the result is
always an integer in [0, 100].
"""

from __future__ import annotations

import re
from typing import Optional

from .config import RiskPolicy
from .models import DeviceFingerprint, GeolocationSnapshot, clamp_score


_MAJOR_VERSION = re.compile(r"(\d+)")
_TOKEN = re.compile(r"[a-z]+")

EMULATOR_SCORE = 40
JAILBREAK_SCORE = 30
LEGACY_OS_SCORE = 20
VPN_SCORE = 30
PROXY_SCORE = 25
HIGH_RISK_COUNTRY_SCORE = 40
SUSPICIOUS_ISP_SCORE = 35
MISSING_ISP_SCORE = 15


def os_major_version(os_version: str) -> Optional[int]:
    match = _MAJOR_VERSION.search(os_version or "")
    return int(match.group(1)) if match else None


class DeviceTrustAssessor:
    def __init__(self, policy: RiskPolicy | None = None):
        self.policy = policy or RiskPolicy()

    def is_legacy_os(self, os_version: str) -> bool:
        tokens = set(_TOKEN.findall((os_version or "").lower()))
        if tokens & self.policy.legacy_os_markers:
            return True
        major = os_major_version(os_version)
        return major is not None and major < self.policy.min_supported_os_major

    def assess(self, fingerprint: DeviceFingerprint) -> int:
        score = 0
        if fingerprint.is_emulator:
            score += EMULATOR_SCORE
        if fingerprint.is_jailbroken:
            score += JAILBREAK_SCORE
        if self.is_legacy_os(fingerprint.os_version):
            score += LEGACY_OS_SCORE
        return clamp_score(score)


class LocationRiskAssessor:
    def __init__(self, policy: RiskPolicy | None = None):
        self.policy = policy or RiskPolicy()

    def assess(self, geo: GeolocationSnapshot) -> int:
        score = 0
        if geo.vpn_detected:
            score += VPN_SCORE
        if geo.proxy_detected:
            score += PROXY_SCORE
        if geo.country is not None and geo.country in self.policy.high_risk_countries:
            score += HIGH_RISK_COUNTRY_SCORE
        return clamp_score(score)


class NetworkRiskAssessor:
    def __init__(self, policy: RiskPolicy | None = None):
        self.policy = policy or RiskPolicy()

    def assess(self, geo: GeolocationSnapshot) -> int:
        score = 0
        if geo.isp and geo.isp in self.policy.suspicious_isps:
            score += SUSPICIOUS_ISP_SCORE
        if not geo.isp:
            score += MISSING_ISP_SCORE
        return clamp_score(score)
