import pytest

from adaptive_auth_risk.config import RiskPolicy
from adaptive_auth_risk.errors import ConfigurationError
from adaptive_auth_risk.models import RiskFactors, ThreatLevel
from adaptive_auth_risk.scoring import RiskScorer


def test_emulator_on_vpn_scores_low():
    result = RiskScorer().score(RiskFactors(device_trust=40, location_risk=30, behavior_risk=0, network_risk=0))

    assert result.score == 25
    assert result.threat_level is ThreatLevel.LOW
    assert result.requires_action is False


def test_half_points_round_up():
    result = RiskScorer().score(RiskFactors(device_trust=40, location_risk=30, behavior_risk=0, network_risk=15))

    assert result.score == 27
    assert result.threat_level is ThreatLevel.LOW


def test_compromised_device_scores_critical():
    result = RiskScorer().score(RiskFactors(device_trust=100, location_risk=55, behavior_risk=100, network_risk=50))

    assert result.score == 82
    assert result.threat_level is ThreatLevel.CRITICAL
    assert result.requires_action is True


@pytest.mark.parametrize(
    "score,level",
    [
        (0, ThreatLevel.LOW),
        (39, ThreatLevel.LOW),
        (40, ThreatLevel.MEDIUM),
        (59, ThreatLevel.MEDIUM),
        (60, ThreatLevel.HIGH),
        (79, ThreatLevel.HIGH),
        (80, ThreatLevel.CRITICAL),
        (100, ThreatLevel.CRITICAL),
    ],
)
def test_threshold_boundaries(score, level):
    assert RiskPolicy().classify(score) is level


def test_requires_action_only_for_high_and_critical():
    assert [level.requires_action for level in ThreatLevel] == [False, False, True, True]


def test_factors_are_clamped():
    factors = RiskFactors(device_trust=140, location_risk=-5, behavior_risk=50, network_risk=101)

    assert factors.as_dict() == {"device_trust": 100, "location_risk": 0, "behavior_risk": 50, "network_risk": 100}
    assert RiskScorer().composite(RiskFactors(100, 100, 100, 100)) == 100


def test_weights_must_sum_to_one():
    with pytest.raises(ConfigurationError):
        RiskScorer(RiskPolicy(device_weight=0.5))


def test_thresholds_must_be_ordered():
    with pytest.raises(ConfigurationError):
        RiskPolicy(high_threshold=85).validate()


def test_custom_weights_change_composite():
    policy = RiskPolicy(device_weight=0.7, location_weight=0.1, behavior_weight=0.1, network_weight=0.1)

    assert RiskScorer(policy).composite(RiskFactors(device_trust=50)) == 35
