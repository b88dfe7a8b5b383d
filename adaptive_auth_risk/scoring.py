from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .config import RiskPolicy
from .models import RiskFactors, ThreatLevel, clamp_score


@dataclass(frozen=True, slots=True)
class CompositeScore:
    score: int
    threat_level: ThreatLevel
    requires_action: bool


class RiskScorer:
    """Weighted composite of the four risk factors.

    Arithmetic is done in ``Decimal`` so that half scores such as 26.5 round
    up deterministically instead of depending on binary float error.
    """

    def __init__(self, policy: RiskPolicy | None = None):
        self.policy = (policy or RiskPolicy()).validate()

    def composite(self, factors: RiskFactors) -> int:
        weighted = (
            Decimal(str(self.policy.device_weight)) * factors.device_trust
            + Decimal(str(self.policy.location_weight)) * factors.location_risk
            + Decimal(str(self.policy.behavior_weight)) * factors.behavior_risk
            + Decimal(str(self.policy.network_weight)) * factors.network_risk
        )
        return clamp_score(int(weighted.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))

    def score(self, factors: RiskFactors) -> CompositeScore:
        value = self.composite(factors)
        level = self.policy.classify(value)
        return CompositeScore(score=value, threat_level=level, requires_action=level.requires_action)
