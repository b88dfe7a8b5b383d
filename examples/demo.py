import asyncio

import pyotp

from adaptive_auth_risk import (
    ChangeMonitor,
    DeviceFingerprint,
    EngineConfig,
    GeolocationSnapshot,
    MFAVerifier,
    RiskEngine,
)
from adaptive_auth_risk.stores import InMemoryAuditLogStore, InMemoryMFACredentialStore, InMemoryRateLimitStore


async def main() -> None:
    config = EngineConfig()
    audit = InMemoryAuditLogStore()
    engine = RiskEngine(audit, config)
    monitor = ChangeMonitor(audit, config)
    verifier = MFAVerifier(InMemoryMFACredentialStore(), InMemoryRateLimitStore(), audit, config=config.mfa)

    fingerprint = DeviceFingerprint(device_id="device-x", os_version="8.1", is_emulator=True, is_jailbroken=True)
    berlin = GeolocationSnapshot(latitude=52.52, longitude=13.405, country="Germany", isp="Deutsche Telekom")
    tor_exit = GeolocationSnapshot(
        latitude=40.7128,
        longitude=-74.0060,
        country="Anonymous",
        isp="Tor Network",
        vpn_detected=True,
        proxy_detected=True,
    )

    assessment = await engine.perform_threat_assessment("alice", fingerprint, tor_exit)
    print("Risk score:", assessment.score, f"({assessment.threat_level.value})")
    for name, value in assessment.factors.as_dict().items():
        print(f"- {name}: {value}")
    print("Indicators:", ", ".join(assessment.indicators))
    print("Recommendations:")
    for recommendation in assessment.recommendations:
        print(f"  * {recommendation}")

    for report in await monitor.check_changes("alice", "device-a", fingerprint, berlin, tor_exit):
        print(f"{report.kind} change detected: {report.detected}")

    if assessment.requires_action:
        setup = await verifier.setup_totp("alice")
        print("Provisioning URI:", setup.qr_code)
        result = await verifier.verify_totp("alice", pyotp.TOTP(setup.secret).now())
        print("Step-up verified:", result.verified)

    print("Security events recorded:", len(audit.events))


if __name__ == "__main__":
    asyncio.run(main())
