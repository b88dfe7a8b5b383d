import pyotp
import pytest
from fastapi.testclient import TestClient

from adaptive_auth_risk import api
from adaptive_auth_risk.api import create_app
from adaptive_auth_risk.config import EngineConfig, MFAConfig
from adaptive_auth_risk.mfa import MFAVerifier
from adaptive_auth_risk.risk_engine import RiskEngine
from adaptive_auth_risk.security_monitors import ChangeMonitor
from adaptive_auth_risk.stores import InMemoryAuditLogStore, InMemoryMFACredentialStore, InMemoryRateLimitStore


EMULATOR_ON_VPN = {
    "user_id": "user-42",
    "device_fingerprint": {"device_id": "device-1", "os_version": "recent", "is_emulator": True},
    "geolocation": {"country": "Germany", "isp": "Deutsche Telekom", "vpn_detected": True},
}

COMPROMISED = {
    "user_id": "user-42",
    "device_fingerprint": {"device_id": "device-1", "os_version": "8.1", "is_emulator": True, "is_jailbroken": True},
    "geolocation": {"country": "Anonymous", "isp": "Tor Network", "vpn_detected": True, "proxy_detected": True},
}


@pytest.fixture
def audit():
    return InMemoryAuditLogStore()


@pytest.fixture
def client(audit, sms_sender):
    config = EngineConfig()
    app = create_app(
        engine=RiskEngine(audit, config),
        verifier=MFAVerifier(InMemoryMFACredentialStore(), InMemoryRateLimitStore(), audit, sms_sender, config.mfa),
        monitor=ChangeMonitor(audit, config),
        config=config,
    )
    return TestClient(app)


def test_healthcheck(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_assess_endpoint_returns_threat_assessment(client):
    response = client.post("/assess", json=EMULATOR_ON_VPN)
    assert response.status_code == 200

    body = response.json()
    assert body["score"] == 25
    assert body["threat_level"] == "low"
    assert body["requires_action"] is False
    assert body["indicators"] == ["Device emulator detected", "VPN usage detected"]
    assert body["factors"]["device_trust"] == 40


def test_assess_rejects_missing_fingerprint(client):
    response = client.post("/assess", json={"user_id": "user-42"})
    assert response.status_code == 422


def test_high_risk_assessment_triggers_webhook(audit, monkeypatch):
    delivered = []

    async def fake_deliver(url, payload):
        delivered.append((url, payload))
        return True

    monkeypatch.setattr(api, "deliver_webhook", fake_deliver)
    config = EngineConfig()
    client = TestClient(
        create_app(
            engine=RiskEngine(audit, config),
            verifier=MFAVerifier(InMemoryMFACredentialStore(), InMemoryRateLimitStore()),
            monitor=ChangeMonitor(audit, config),
            config=config,
            webhook_url="https://hooks.example.com/risk",
        )
    )

    assert client.post("/assess", json=EMULATOR_ON_VPN).json()["requires_action"] is False
    body = client.post("/assess", json=COMPROMISED).json()

    assert body["threat_level"] == "high"
    assert len(delivered) == 1
    url, payload = delivered[0]
    assert url == "https://hooks.example.com/risk"
    assert payload["assessment"]["score"] == 68


def test_anomalies_endpoint(client):
    response = client.post(
        "/anomalies",
        json={"device_fingerprint": {"is_emulator": True}, "authentication_attempts": 12},
    )
    assert response.json() == {"anomalies": ["Emulator device detected", "Excessive authentication attempts"]}


def test_monitor_endpoint_enqueues_task(client, monkeypatch):
    captured = {}

    def fake_enqueue(**kwargs):
        captured.update(kwargs)
        return "task-123"

    monkeypatch.setattr(api, "enqueue_change_monitoring", fake_enqueue)

    response = client.post(
        "/monitor",
        json={"user_id": "user-42", "previous_device_id": "device-0", "current_device": {"device_id": "device-1"}},
    )

    assert response.status_code == 202
    assert response.json() == {"task_id": "task-123", "status": "queued"}
    assert captured["current_device"]["device_id"] == "device-1"


def test_monitor_sync_endpoint(client, audit):
    response = client.post(
        "/monitor/sync",
        json={
            "user_id": "user-42",
            "previous_location": {"latitude": 52.52, "longitude": 13.405},
            "current_location": {"latitude": 48.8566, "longitude": 2.3522},
        },
    )

    body = response.json()
    assert body["reports"][0]["kind"] == "location"
    assert body["reports"][0]["detected"] is True
    assert body["reports"][0]["severity"] == "low"
    assert len(audit.events) == 1


def test_mfa_config_endpoint(client):
    body = client.get("/mfa/config").json()

    assert body["max_attempts"] == 3
    assert body["lockout_duration_seconds"] == 900
    assert body["allowed_methods"] == ["totp", "sms", "backup_codes"]
    assert body["require_mfa"] is True


def test_mfa_config_publishes_advisory_flag(audit):
    config = EngineConfig(mfa=MFAConfig(require_mfa=False))
    client = TestClient(
        create_app(
            engine=RiskEngine(audit, config),
            verifier=MFAVerifier(InMemoryMFACredentialStore(), InMemoryRateLimitStore(), config=config.mfa),
            monitor=ChangeMonitor(audit, config),
            config=config,
        )
    )

    assert client.get("/mfa/config").json()["require_mfa"] is False


def test_totp_setup_and_verify_flow(client):
    setup = client.post("/mfa/user-42/totp/setup").json()
    assert setup["success"] is True
    assert len(setup["backup_codes"]) == 10

    code = pyotp.TOTP(setup["secret"]).now()
    verified = client.post("/mfa/user-42/verify", json={"method": "totp", "code": code}).json()
    assert verified["verified"] is True

    methods = client.get("/mfa/user-42/methods").json()
    assert {method["id"] for method in methods} == {"totp_user-42", "backup_codes_user-42"}


def test_verify_lockout_over_http(client):
    setup = client.post("/mfa/user-42/totp/setup").json()
    backup = setup["backup_codes"][0]
    wrong = "ZZZZZZZZ" if backup != "ZZZZZZZZ" else "YYYYYYYY"

    results = [
        client.post("/mfa/user-42/verify", json={"method": "backup_codes", "code": wrong}).json() for _ in range(4)
    ]

    assert [r["remaining_attempts"] for r in results[:3]] == [2, 1, 0]
    assert results[3]["error_code"] == "locked_out"
    blocked = client.post("/mfa/user-42/verify", json={"method": "backup_codes", "code": backup}).json()
    assert blocked["error_code"] == "locked_out"


def test_sms_flow(client, sms_sender):
    setup = client.post("/mfa/user-42/sms/setup", json={"phone_number": "+15551234567"}).json()
    assert setup["success"] is True

    assert client.post("/mfa/user-42/sms/send").json() == {"success": True, "error": None}
    verified = client.post("/mfa/user-42/verify", json={"method": "sms", "code": sms_sender.last_code}).json()
    assert verified["verified"] is True


def test_disable_unknown_method_returns_404(client):
    response = client.delete("/mfa/user-42/methods/unknown")
    assert response.status_code == 404


def test_backup_code_regeneration(client):
    response = client.post("/mfa/user-42/backup-codes")
    assert len(response.json()["backup_codes"]) == 10
