from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest

from adaptive_auth_risk.config import MFAConfig
from adaptive_auth_risk.mfa import MFAVerifier
from adaptive_auth_risk.stores import InMemoryAuditLogStore, InMemoryMFACredentialStore, InMemoryRateLimitStore


# 30-second step boundary plus ten seconds
START = datetime(2024, 1, 1, 12, 0, 10, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingSmsSender:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, str]] = []

    async def send(self, phone_number: str, message: str) -> None:
        if self.fail:
            raise ConnectionError("gateway unreachable")
        self.sent.append((phone_number, message))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1][-6:]


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def audit_store():
    return InMemoryAuditLogStore()


@pytest.fixture
def rate_limits():
    return InMemoryRateLimitStore()


@pytest.fixture
def credentials():
    return InMemoryMFACredentialStore()


@pytest.fixture
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture
def verifier(credentials, rate_limits, audit_store, sms_sender, clock):
    return MFAVerifier(credentials, rate_limits, audit_store, sms_sender, MFAConfig(), clock=clock)


@pytest.fixture
def failing_sms_sender():
    return RecordingSmsSender(fail=True)
