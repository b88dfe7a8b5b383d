from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, Dict, Mapping, Protocol

from .errors import SignalUnavailable
from .models import DeviceFingerprint


logger = logging.getLogger(__name__)


class DeviceMetadataProvider(Protocol):
    async def get_unique_id(self) -> str: ...

    async def get_system_version(self) -> str: ...

    async def get_app_version(self) -> str: ...

    async def get_screen_resolution(self) -> str: ...

    async def get_time_zone(self) -> str: ...

    async def get_language(self) -> str: ...

    async def is_emulator(self) -> bool: ...

    async def is_jailbroken(self) -> bool: ...


_FIELDS = {
    "device_id": ("get_unique_id", ""),
    "os_version": ("get_system_version", ""),
    "app_version": ("get_app_version", ""),
    "screen_resolution": ("get_screen_resolution", ""),
    "time_zone": ("get_time_zone", ""),
    "language": ("get_language", ""),
    "is_emulator": ("is_emulator", False),
    "is_jailbroken": ("is_jailbroken", False),
}


def fingerprint_hash(values: Dict[str, Any]) -> str:
    payload = "|".join(f"{key}={values[key]}" for key in sorted(values))
    return hashlib.sha256(payload.encode()).hexdigest()


def fingerprint_from_mapping(payload: Mapping[str, Any]) -> DeviceFingerprint:
    return DeviceFingerprint(
        device_id=str(payload.get("device_id") or "unknown"),
        os_version=str(payload.get("os_version") or ""),
        app_version=str(payload.get("app_version") or ""),
        screen_resolution=str(payload.get("screen_resolution") or ""),
        time_zone=str(payload.get("time_zone") or ""),
        language=str(payload.get("language") or ""),
        is_emulator=bool(payload.get("is_emulator")),
        is_jailbroken=bool(payload.get("is_jailbroken")),
    )


class DeviceFingerprintCollector:
    """Builds a fresh ``DeviceFingerprint`` from the platform metadata provider.

    Every field is requested concurrently. A field whose lookup fails keeps its
    default; when the provider has no stable identifier the device id falls
    back to a hash of the fields that were collected.
    """

    def __init__(self, provider: DeviceMetadataProvider):
        self.provider = provider

    async def collect(self) -> DeviceFingerprint:
        names = list(_FIELDS)
        calls = [getattr(self.provider, _FIELDS[name][0])() for name in names]
        results = await asyncio.gather(*calls, return_exceptions=True)

        values: Dict[str, Any] = {}
        failed = []
        for name, result in zip(names, results):
            if isinstance(result, Exception) or result is None:
                failed.append(name)
                values[name] = _FIELDS[name][1]
            else:
                values[name] = result

        if len(failed) == len(names):
            raise SignalUnavailable("device", "every metadata lookup failed")
        if failed:
            logger.warning("Device metadata unavailable for fields: %s", ", ".join(failed))

        if not values["device_id"]:
            values["device_id"] = fingerprint_hash({k: v for k, v in values.items() if k != "device_id"})

        fingerprint = DeviceFingerprint(
            device_id=str(values["device_id"]),
            os_version=str(values["os_version"]),
            app_version=str(values["app_version"]),
            screen_resolution=str(values["screen_resolution"]),
            time_zone=str(values["time_zone"]),
            language=str(values["language"]),
            is_emulator=bool(values["is_emulator"]),
            is_jailbroken=bool(values["is_jailbroken"]),
        )
        logger.info(
            "Device fingerprint generated device_id=%s os_version=%s emulator=%s",
            fingerprint.device_id,
            fingerprint.os_version,
            fingerprint.is_emulator,
        )
        return fingerprint
