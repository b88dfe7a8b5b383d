from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Protocol

import httpx

from .errors import SignalUnavailable
from .models import GeolocationSnapshot


logger = logging.getLogger(__name__)


class GeolocationProvider(Protocol):
    async def locate(self) -> Mapping[str, Any] | GeolocationSnapshot | None: ...


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def snapshot_from_mapping(payload: Mapping[str, Any]) -> GeolocationSnapshot:
    """Normalize a provider payload; unknown or malformed fields are dropped."""
    return GeolocationSnapshot(
        latitude=_as_float(_first(payload, "latitude", "lat")),
        longitude=_as_float(_first(payload, "longitude", "lon", "lng")),
        accuracy=_as_float(_first(payload, "accuracy")),
        country=_first(payload, "country"),
        region=_first(payload, "region", "regionName"),
        city=_first(payload, "city"),
        timezone=_first(payload, "timezone"),
        isp=_first(payload, "isp"),
        vpn_detected=bool(_first(payload, "vpn_detected", "vpnDetected", "vpn", "hosting")),
        proxy_detected=bool(_first(payload, "proxy_detected", "proxyDetected", "proxy")),
    )


class HttpGeolocationProvider:
    """IP geolocation lookup against an ip-api compatible JSON endpoint."""

    def __init__(
        self,
        api_url: str,
        ip_address: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 2.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.ip_address = ip_address
        self.client = client
        self.timeout = timeout

    async def locate(self) -> Mapping[str, Any] | None:
        url = f"{self.api_url}/{self.ip_address}"
        if self.client is not None:
            response = await self.client.get(url, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, Mapping) and payload.get("status") == "fail":
            return None
        return payload


class GeolocationCollector:
    def __init__(self, provider: GeolocationProvider | None, consent_granted: bool = True):
        self.provider = provider
        self.consent_granted = consent_granted

    async def fetch(self) -> GeolocationSnapshot:
        """Return the current location or raise ``SignalUnavailable``."""
        if self.provider is None:
            raise SignalUnavailable("geolocation", "no provider configured")
        if not self.consent_granted:
            raise SignalUnavailable("geolocation", "user consent not granted")
        try:
            payload = await self.provider.locate()
        except Exception as exc:
            raise SignalUnavailable("geolocation", str(exc)) from exc
        if payload is None:
            raise SignalUnavailable("geolocation")
        if isinstance(payload, GeolocationSnapshot):
            snapshot = payload
        else:
            snapshot = snapshot_from_mapping(payload)
        logger.info(
            "Geolocation data retrieved country=%s vpn=%s",
            snapshot.country,
            snapshot.vpn_detected,
        )
        return snapshot

    async def collect(self) -> GeolocationSnapshot:
        """Return the current location, or an empty snapshot when none is available."""
        try:
            return await self.fetch()
        except SignalUnavailable as exc:
            logger.warning("Geolocation collection failed: %s", exc)
            return GeolocationSnapshot()
