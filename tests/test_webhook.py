import httpx
import pytest

from adaptive_auth_risk.models import RiskFactors, ThreatAssessment, ThreatLevel
from adaptive_auth_risk.webhook import build_assessment_payload, deliver_webhook, resolve_webhook_url


def make_assessment() -> ThreatAssessment:
    return ThreatAssessment(
        score=68,
        threat_level=ThreatLevel.HIGH,
        indicators=("Device emulator detected",),
        recommendations=("Require multi-factor authentication",),
        requires_action=True,
        factors=RiskFactors(device_trust=90, location_risk=95, network_risk=35),
    )


def test_payload_is_json_ready():
    payload = build_assessment_payload(user_id="user-1", assessment=make_assessment())

    assert payload["user_id"] == "user-1"
    assert payload["source"] == "sync"
    assert payload["assessment"]["threat_level"] == "high"
    assert payload["assessment"]["indicators"] == ["Device emulator detected"]
    assert payload["assessment"]["factors"]["device_trust"] == 90
    assert isinstance(payload["assessment"]["assessed_at"], str)


def test_env_url_takes_precedence(monkeypatch):
    monkeypatch.setenv("ASSESSMENT_WEBHOOK_URL", "https://hooks.example.com/env")
    assert resolve_webhook_url("https://hooks.example.com/default") == "https://hooks.example.com/env"

    monkeypatch.delenv("ASSESSMENT_WEBHOOK_URL")
    assert resolve_webhook_url("https://hooks.example.com/default") == "https://hooks.example.com/default"


@pytest.mark.asyncio
async def test_delivery_posts_payload():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        delivered = await deliver_webhook("https://hooks.example.com/risk", {"user_id": "user-1"}, client=client)

    assert delivered is True
    assert received[0].method == "POST"


@pytest.mark.asyncio
async def test_delivery_failure_is_logged_not_raised(caplog):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as client:
        delivered = await deliver_webhook("https://hooks.example.com/risk", {"user_id": "user-1"}, client=client)

    assert delivered is False
    assert "Failed to deliver assessment webhook" in caplog.text


@pytest.mark.asyncio
async def test_no_url_skips_delivery():
    assert await deliver_webhook(None, {"user_id": "user-1"}) is False
