from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import EngineConfig
from .fingerprinting import DeviceFingerprintCollector
from .geolocation import GeolocationCollector
from .models import DeviceFingerprint, GeolocationSnapshot, SecurityEvent, SecurityEventType, Severity
from .stores import AuditLogStore


logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: GeolocationSnapshot, b: GeolocationSnapshot) -> Optional[float]:
    """Great-circle distance in km, or None when either side lacks coordinates."""
    first, second = a.coordinates, b.coordinates
    if first is None or second is None:
        return None
    return haversine_km(first[0], first[1], second[0], second[1])


@dataclass(frozen=True, slots=True)
class LocationChange:
    distance_km: Optional[float]
    significant: bool
    severity: Optional[Severity]


@dataclass(frozen=True, slots=True)
class ChangeReport:
    kind: str
    detected: bool
    distance_km: Optional[float] = None
    event: Optional[SecurityEvent] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "detected": self.detected,
            "distance_km": self.distance_km,
            "event": self.event.to_document() if self.event else None,
            "error": self.error,
        }


class ChangeMonitor:
    """Compares current device and location snapshots against previous ones.

    Monitoring is advisory: collector and audit-store failures are logged and
    reported, never raised to the caller.
    """

    def __init__(
        self,
        audit_store: AuditLogStore,
        config: EngineConfig | None = None,
        device_collector: DeviceFingerprintCollector | None = None,
        geo_collector: GeolocationCollector | None = None,
    ):
        self.audit_store = audit_store
        self.config = config or EngineConfig()
        self.device_collector = device_collector
        self.geo_collector = geo_collector

    def evaluate_location_change(self, previous: GeolocationSnapshot, current: GeolocationSnapshot) -> LocationChange:
        distance = distance_between(previous, current)
        if distance is None or distance <= self.config.significant_distance_km:
            return LocationChange(distance_km=distance, significant=False, severity=None)
        severity = Severity.MEDIUM if distance > self.config.distant_travel_km else Severity.LOW
        return LocationChange(distance_km=distance, significant=True, severity=severity)

    async def monitor_device_changes(
        self,
        user_id: str,
        previous_device_id: Optional[str],
        current: DeviceFingerprint | None = None,
    ) -> ChangeReport:
        try:
            if current is None:
                if self.device_collector is None:
                    raise RuntimeError("no device collector configured")
                current = await self.device_collector.collect()
        except Exception as exc:
            logger.error("Device monitoring failed for user %s: %s", user_id, exc)
            return ChangeReport(kind="device", detected=False, error=str(exc))

        if not previous_device_id or previous_device_id == current.device_id:
            return ChangeReport(kind="device", detected=False)

        event = SecurityEvent.create(
            "device-change",
            SecurityEventType.SECURITY_VIOLATION,
            Severity.MEDIUM,
            user_id,
            {
                "previous_fingerprint": previous_device_id,
                "current_fingerprint": current.device_id,
                "changes": ["Device fingerprint changed"],
                "user_id": user_id,
            },
        )
        await self._emit(event)
        logger.info("Device change detected user=%s", user_id)
        return ChangeReport(kind="device", detected=True, event=event)

    async def monitor_location_changes(
        self,
        user_id: str,
        previous: GeolocationSnapshot | None,
        current: GeolocationSnapshot | None = None,
    ) -> ChangeReport:
        try:
            if current is None:
                if self.geo_collector is None:
                    raise RuntimeError("no geolocation collector configured")
                current = await self.geo_collector.fetch()
        except Exception as exc:
            logger.error("Location monitoring failed for user %s: %s", user_id, exc)
            return ChangeReport(kind="location", detected=False, error=str(exc))

        if previous is None:
            return ChangeReport(kind="location", detected=False)

        change = self.evaluate_location_change(previous, current)
        if not change.significant:
            return ChangeReport(kind="location", detected=False, distance_km=change.distance_km)

        event = SecurityEvent.create(
            "location-change",
            SecurityEventType.SECURITY_VIOLATION,
            change.severity,  # type: ignore[arg-type]
            user_id,
            {
                "previous_location": _location_details(previous),
                "current_location": _location_details(current),
                "distance_km": change.distance_km,
                "user_id": user_id,
            },
        )
        await self._emit(event)
        logger.info(
            "Location change detected user=%s distance_km=%d severity=%s",
            user_id,
            round(change.distance_km or 0),
            event.severity.value,
        )
        return ChangeReport(kind="location", detected=True, distance_km=change.distance_km, event=event)

    async def check_changes(
        self,
        user_id: str,
        previous_device_id: Optional[str] = None,
        current_device: DeviceFingerprint | None = None,
        previous_location: GeolocationSnapshot | None = None,
        current_location: GeolocationSnapshot | None = None,
    ) -> List[ChangeReport]:
        """Run the device and location checks that have a baseline to compare against."""
        checks = []
        if previous_device_id:
            checks.append(self.monitor_device_changes(user_id, previous_device_id, current_device))
        if previous_location is not None:
            checks.append(self.monitor_location_changes(user_id, previous_location, current_location))
        if not checks:
            return []
        return list(await asyncio.gather(*checks))

    async def _emit(self, event: SecurityEvent) -> None:
        try:
            await self.audit_store.append(event)
        except Exception as exc:
            logger.error("Security event logging failed id=%s type=%s: %s", event.id, event.type.value, exc)


def _location_details(snapshot: GeolocationSnapshot) -> dict:
    return {
        "latitude": snapshot.latitude,
        "longitude": snapshot.longitude,
        "country": snapshot.country,
        "city": snapshot.city,
    }
