from __future__ import annotations

import logging
import os
from typing import Any, Mapping, MutableMapping, Optional

import httpx
from fastapi.encoders import jsonable_encoder

from .models import ThreatAssessment


logger = logging.getLogger(__name__)


def resolve_webhook_url(default: Optional[str] = None) -> Optional[str]:
    """Return the assessment webhook URL from environment or provided default."""
    return os.getenv("ASSESSMENT_WEBHOOK_URL", default)


def build_assessment_payload(
    *,
    user_id: str,
    assessment: ThreatAssessment,
    source: str = "sync",
) -> MutableMapping[str, Any]:
    """Create a JSON-serializable payload describing a threat assessment."""
    payload: MutableMapping[str, Any] = {
        "user_id": user_id,
        "source": source,
        "assessment": {
            "score": assessment.score,
            "threat_level": assessment.threat_level,
            "requires_action": assessment.requires_action,
            "indicators": assessment.indicators,
            "recommendations": assessment.recommendations,
            "factors": assessment.factors.as_dict(),
            "degraded_signals": assessment.degraded_signals,
            "assessed_at": assessment.assessed_at,
        },
    }
    return jsonable_encoder(payload)  # normalizes datetimes, enums and tuples


async def deliver_webhook(
    webhook_url: Optional[str], payload: Mapping[str, Any], client: httpx.AsyncClient | None = None
) -> bool:
    """Send the payload to the configured webhook endpoint if present."""
    if not webhook_url:
        return False

    try:
        if client is not None:
            response = await client.post(str(webhook_url), json=payload)
        else:
            async with httpx.AsyncClient(timeout=5.0) as owned:
                response = await owned.post(str(webhook_url), json=payload)
        response.raise_for_status()
    except Exception as exc:  # delivery failures never fail the assessment
        logger.warning("Failed to deliver assessment webhook to %s: %s", webhook_url, exc)
        return False
    return True
