from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Sequence

from .config import RiskPolicy
from .models import SecurityEvent, SecurityEventType, clamp_score, utcnow
from .stores import AuditLogStore


logger = logging.getLogger(__name__)

HIGH_VOLUME_SCORE = 30
ELEVATED_VOLUME_SCORE = 15
SUSPICIOUS_EVENT_SCORE = 10


class BehaviorRiskAssessor:
    """Scores recent audit activity for a user.

    The audit query is bounded by ``timeout``; a slow or failing store yields
    the neutral score 0 so that losing this signal never blocks sign-in.
    """

    def __init__(
        self,
        audit_store: AuditLogStore,
        policy: RiskPolicy | None = None,
        timeout: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.audit_store = audit_store
        self.policy = policy or RiskPolicy()
        self.timeout = timeout
        self.clock = clock

    def score_events(self, events: Sequence[SecurityEvent]) -> int:
        score = 0
        count = len(events)
        if count > self.policy.behavior_high_volume:
            score += HIGH_VOLUME_SCORE
        elif count > self.policy.behavior_elevated_volume:
            score += ELEVATED_VOLUME_SCORE
        suspicious = sum(1 for event in events if event.type == SecurityEventType.SUSPICIOUS_ACTIVITY)
        score += suspicious * SUSPICIOUS_EVENT_SCORE
        return clamp_score(score)

    async def fetch_events(self, user_id: str) -> Sequence[SecurityEvent]:
        since = self.clock() - self.policy.behavior_window
        return await asyncio.wait_for(self.audit_store.query(user_id, since), timeout=self.timeout)

    async def assess(self, user_id: str) -> int:
        try:
            events = await self.fetch_events(user_id)
        except asyncio.TimeoutError:
            logger.warning("Behavior assessment timed out for user %s after %.1fs", user_id, self.timeout)
            return 0
        except Exception as exc:
            logger.warning("Behavior assessment failed for user %s: %s", user_id, exc)
            return 0
        return self.score_events(events)
