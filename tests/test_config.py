from datetime import timedelta

import pytest

from adaptive_auth_risk.config import EngineConfig, MFAConfig
from adaptive_auth_risk.errors import ConfigurationError


def test_defaults_are_valid():
    config = EngineConfig().validate()

    assert config.mfa.max_attempts == 3
    assert config.mfa.lockout_duration == timedelta(minutes=15)
    assert config.mfa.effective_attempt_window == config.mfa.lockout_duration
    assert config.risk.min_supported_os_major == 10


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("MFA_ISSUER", "Acme")
    monkeypatch.setenv("MFA_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("MFA_LOCKOUT_SECONDS", "60")
    monkeypatch.setenv("COLLECTOR_TIMEOUT_SECONDS", "0.5")
    monkeypatch.setenv("MONGODB_DATABASE", "auth_test")
    monkeypatch.setenv("ASSESSMENT_WEBHOOK_URL", "https://hooks.example.com/risk")

    config = EngineConfig.from_env()

    assert config.mfa.issuer == "Acme"
    assert config.mfa.max_attempts == 5
    assert config.mfa.lockout_duration == timedelta(seconds=60)
    assert config.collector_timeout == 0.5
    assert config.mongodb_database == "auth_test"
    assert config.webhook_url == "https://hooks.example.com/risk"


def test_from_env_rejects_non_numeric(monkeypatch):
    monkeypatch.setenv("MFA_MAX_ATTEMPTS", "three")

    with pytest.raises(ConfigurationError):
        EngineConfig.from_env()


def test_from_env_rejects_zero_attempts(monkeypatch):
    monkeypatch.setenv("MFA_MAX_ATTEMPTS", "0")

    with pytest.raises(ConfigurationError):
        EngineConfig.from_env()


@pytest.mark.parametrize(
    "config",
    [
        MFAConfig(lockout_duration=timedelta(0)),
        MFAConfig(totp_window=-1),
        MFAConfig(backup_code_count=0),
        MFAConfig(issuer="Bad:Issuer"),
    ],
)
def test_invalid_mfa_settings(config):
    with pytest.raises(ConfigurationError):
        config.validate()


def test_distance_thresholds_must_be_ordered():
    with pytest.raises(ConfigurationError):
        EngineConfig(significant_distance_km=2000).validate()
