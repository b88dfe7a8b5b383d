from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import EngineConfig
from .geolocation import GeolocationCollector, HttpGeolocationProvider
from .mfa import MFAVerifier, SmsSender
from .models import (
    DeviceFingerprint,
    GeolocationSnapshot,
    MFAMethod,
    MFAMethodType,
    MFAVerificationResult,
    ThreatAssessment,
)
from .persistence import MongoStores
from .risk_engine import RiskEngine
from .security_monitors import ChangeMonitor, ChangeReport
from .tasks import enqueue_change_monitoring
from .webhook import build_assessment_payload, deliver_webhook, resolve_webhook_url


class DeviceFingerprintPayload(BaseModel):
    device_id: str
    os_version: str = ""
    app_version: str = ""
    screen_resolution: str = ""
    time_zone: str = ""
    language: str = ""
    is_emulator: bool = False
    is_jailbroken: bool = False


class GeolocationPayload(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None
    isp: Optional[str] = None
    vpn_detected: bool = False
    proxy_detected: bool = False


class AssessRequest(BaseModel):
    user_id: str = Field(min_length=1)
    device_fingerprint: DeviceFingerprintPayload
    geolocation: Optional[GeolocationPayload] = None
    ip_address: Optional[str] = None


class RiskFactorsResponse(BaseModel):
    device_trust: int
    location_risk: int
    behavior_risk: int
    network_risk: int


class AssessmentResponse(BaseModel):
    score: int
    threat_level: str
    requires_action: bool
    indicators: List[str]
    recommendations: List[str]
    factors: RiskFactorsResponse
    degraded_signals: List[str]
    assessed_at: datetime


class AnomalyRequest(BaseModel):
    device_fingerprint: Optional[Dict[str, Any]] = None
    geolocation: Optional[Dict[str, Any]] = None
    authentication_attempts: int = 0
    location_jumps: int = 0


class AnomalyResponse(BaseModel):
    anomalies: List[str]


class MonitorRequest(BaseModel):
    user_id: str = Field(min_length=1)
    previous_device_id: Optional[str] = None
    current_device: Optional[DeviceFingerprintPayload] = None
    previous_location: Optional[GeolocationPayload] = None
    current_location: Optional[GeolocationPayload] = None


class ChangeReportResponse(BaseModel):
    kind: str
    detected: bool
    distance_km: Optional[float] = None
    event_id: Optional[str] = None
    severity: Optional[str] = None
    error: Optional[str] = None


class MonitorResponse(BaseModel):
    user_id: str
    reports: List[ChangeReportResponse]


class TaskEnqueueResponse(BaseModel):
    task_id: str
    status: str


class MFAConfigResponse(BaseModel):
    issuer: str
    require_mfa: bool
    allowed_methods: List[str]
    max_attempts: int
    lockout_duration_seconds: int
    totp_window: int
    backup_code_count: int


class MFAMethodResponse(BaseModel):
    id: str
    type: str
    name: str
    enabled: bool
    is_primary: bool
    created_at: datetime


class SetupResponse(BaseModel):
    success: bool
    secret: Optional[str] = None
    qr_code: Optional[str] = None
    backup_codes: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class SmsSetupRequest(BaseModel):
    phone_number: str


class OperationResponse(BaseModel):
    success: bool
    error: Optional[str] = None


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class VerifyRequest(BaseModel):
    method: MFAMethodType
    code: str


class VerificationResponse(BaseModel):
    success: bool
    verified: bool
    remaining_attempts: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


def _to_fingerprint(payload: DeviceFingerprintPayload) -> DeviceFingerprint:
    return DeviceFingerprint(**payload.model_dump())


def _to_geolocation(payload: GeolocationPayload | None) -> GeolocationSnapshot | None:
    if payload is None:
        return None
    return GeolocationSnapshot(**payload.model_dump())


def _serialize_assessment(assessment: ThreatAssessment) -> AssessmentResponse:
    return AssessmentResponse(
        score=assessment.score,
        threat_level=assessment.threat_level.value,
        requires_action=assessment.requires_action,
        indicators=list(assessment.indicators),
        recommendations=list(assessment.recommendations),
        factors=RiskFactorsResponse(**assessment.factors.as_dict()),
        degraded_signals=list(assessment.degraded_signals),
        assessed_at=assessment.assessed_at,
    )


def _serialize_report(report: ChangeReport) -> ChangeReportResponse:
    return ChangeReportResponse(
        kind=report.kind,
        detected=report.detected,
        distance_km=report.distance_km,
        event_id=report.event.id if report.event else None,
        severity=report.event.severity.value if report.event else None,
        error=report.error,
    )


def _serialize_method(method: MFAMethod) -> MFAMethodResponse:
    return MFAMethodResponse(
        id=method.id,
        type=method.type.value,
        name=method.name,
        enabled=method.enabled,
        is_primary=method.is_primary,
        created_at=method.created_at,
    )


def _serialize_verification(result: MFAVerificationResult) -> VerificationResponse:
    return VerificationResponse(
        success=result.success,
        verified=result.verified,
        remaining_attempts=result.remaining_attempts,
        error=result.error,
        error_code=result.error_code.value if result.error_code else None,
    )


def create_app(
    engine: RiskEngine | None = None,
    verifier: MFAVerifier | None = None,
    monitor: ChangeMonitor | None = None,
    config: EngineConfig | None = None,
    sms_sender: SmsSender | None = None,
    webhook_url: str | None = None,
) -> FastAPI:
    config = config or EngineConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stores: MongoStores | None = None
        if app.state.engine is None or app.state.verifier is None or app.state.monitor is None:
            stores = MongoStores(uri=config.mongodb_uri, database=config.mongodb_database)
            await stores.ensure_indexes()
            if app.state.engine is None:
                app.state.engine = RiskEngine(stores.audit, config)
            if app.state.verifier is None:
                app.state.verifier = MFAVerifier(
                    stores.credentials, stores.rate_limits, stores.audit, sms_sender, config.mfa
                )
            if app.state.monitor is None:
                app.state.monitor = ChangeMonitor(stores.audit, config)
        try:
            yield
        finally:
            if stores is not None:
                await stores.close()

    app = FastAPI(title="Adaptive Authentication Risk API", version="1.0.0", lifespan=lifespan)
    app.state.config = config
    app.state.engine = engine
    app.state.verifier = verifier
    app.state.monitor = monitor
    app.state.webhook_url = webhook_url or resolve_webhook_url(config.webhook_url)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/assess", response_model=AssessmentResponse)
    async def assess(request: AssessRequest, background_tasks: BackgroundTasks) -> AssessmentResponse:
        geolocation = _to_geolocation(request.geolocation)
        if geolocation is None and request.ip_address and config.geolocation_api_url:
            provider = HttpGeolocationProvider(
                config.geolocation_api_url, request.ip_address, timeout=config.collector_timeout
            )
            geolocation = await GeolocationCollector(provider).collect()
        assessment = await app.state.engine.perform_threat_assessment(
            request.user_id, _to_fingerprint(request.device_fingerprint), geolocation
        )
        if assessment.requires_action and app.state.webhook_url:
            payload = build_assessment_payload(user_id=request.user_id, assessment=assessment)
            background_tasks.add_task(deliver_webhook, app.state.webhook_url, payload)
        return _serialize_assessment(assessment)

    @app.post("/anomalies", response_model=AnomalyResponse)
    def anomalies(request: AnomalyRequest) -> AnomalyResponse:
        return AnomalyResponse(anomalies=app.state.engine.detect_anomalies(request.model_dump()))

    @app.post("/monitor", response_model=TaskEnqueueResponse, status_code=202)
    def queue_monitoring(request: MonitorRequest) -> TaskEnqueueResponse:
        body = request.model_dump(mode="json")
        task_id = enqueue_change_monitoring(
            user_id=body["user_id"],
            previous_device_id=body["previous_device_id"],
            current_device=body["current_device"],
            previous_location=body["previous_location"],
            current_location=body["current_location"],
        )
        return TaskEnqueueResponse(task_id=task_id, status="queued")

    @app.post("/monitor/sync", response_model=MonitorResponse)
    async def monitor_sync(request: MonitorRequest) -> MonitorResponse:
        reports = await app.state.monitor.check_changes(
            request.user_id,
            previous_device_id=request.previous_device_id,
            current_device=_to_fingerprint(request.current_device) if request.current_device else None,
            previous_location=_to_geolocation(request.previous_location),
            current_location=_to_geolocation(request.current_location),
        )
        return MonitorResponse(user_id=request.user_id, reports=[_serialize_report(r) for r in reports])

    @app.get("/mfa/config", response_model=MFAConfigResponse)
    def mfa_config() -> MFAConfigResponse:
        mfa = app.state.verifier.get_config()
        return MFAConfigResponse(
            issuer=mfa.issuer,
            require_mfa=mfa.require_mfa,
            allowed_methods=[method.value for method in mfa.allowed_methods],
            max_attempts=mfa.max_attempts,
            lockout_duration_seconds=int(mfa.lockout_duration.total_seconds()),
            totp_window=mfa.totp_window,
            backup_code_count=mfa.backup_code_count,
        )

    @app.get("/mfa/{user_id}/methods", response_model=List[MFAMethodResponse])
    async def mfa_methods(user_id: str) -> List[MFAMethodResponse]:
        methods = await app.state.verifier.get_mfa_methods(user_id)
        return [_serialize_method(method) for method in methods]

    @app.delete("/mfa/{user_id}/methods/{method_id}", response_model=OperationResponse)
    async def disable_method(user_id: str, method_id: str) -> OperationResponse:
        result = await app.state.verifier.disable_mfa(user_id, method_id)
        if not result.success and result.error == "MFA method not found":
            raise HTTPException(status_code=404, detail=result.error)
        return OperationResponse(success=result.success, error=result.error)

    @app.post("/mfa/{user_id}/totp/setup", response_model=SetupResponse)
    async def setup_totp(user_id: str) -> SetupResponse:
        result = await app.state.verifier.setup_totp(user_id)
        return SetupResponse(
            success=result.success,
            secret=result.secret,
            qr_code=result.qr_code,
            backup_codes=result.backup_codes,
            error=result.error,
        )

    @app.post("/mfa/{user_id}/sms/setup", response_model=SetupResponse)
    async def setup_sms(user_id: str, request: SmsSetupRequest) -> SetupResponse:
        result = await app.state.verifier.setup_sms(user_id, request.phone_number)
        return SetupResponse(success=result.success, error=result.error)

    @app.post("/mfa/{user_id}/sms/send", response_model=OperationResponse)
    async def send_sms(user_id: str) -> OperationResponse:
        result = await app.state.verifier.send_sms_code(user_id)
        return OperationResponse(success=result.success, error=result.error)

    @app.post("/mfa/{user_id}/backup-codes", response_model=BackupCodesResponse)
    async def backup_codes(user_id: str) -> BackupCodesResponse:
        codes = await app.state.verifier.generate_backup_codes(user_id)
        return BackupCodesResponse(backup_codes=codes)

    @app.post("/mfa/{user_id}/verify", response_model=VerificationResponse)
    async def verify(user_id: str, request: VerifyRequest) -> VerificationResponse:
        result = await app.state.verifier.verify(user_id, request.method, request.code)
        return _serialize_verification(result)

    return app


app = create_app()
