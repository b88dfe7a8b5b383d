"""Store ports and in-process implementations.

The in-process stores keep state in the memory of a single worker. They are
suitable for tests and single-instance deployments; anything that runs more
than one service instance must use the MongoDB stores in ``persistence``.
Each read-modify-write below completes without awaiting, so it cannot
interleave with another coroutine on the same event loop.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Set, Tuple

from .models import MFAMethod, MFAMethodType, RateLimitState, SecurityEvent, SmsChallenge


class AuditLogStore(Protocol):
    async def query(self, user_id: str, since: datetime) -> List[SecurityEvent]: ...

    async def append(self, event: SecurityEvent) -> None: ...


class RateLimitStore(Protocol):
    """Per (user, method) attempt counter.

    ``begin_attempt`` reserves an attempt before a code is checked and returns
    None once the pair is locked or every attempt in the window is reserved.
    ``record_failure`` locks the pair when the reserved attempts are used up.
    ``reset`` only clears state that is not under an active lock.
    """

    async def get(self, user_id: str, method: MFAMethodType, now: datetime) -> RateLimitState: ...

    async def begin_attempt(
        self,
        user_id: str,
        method: MFAMethodType,
        now: datetime,
        max_attempts: int,
        attempt_window: timedelta,
    ) -> Optional[RateLimitState]: ...

    async def record_failure(
        self,
        user_id: str,
        method: MFAMethodType,
        now: datetime,
        max_attempts: int,
        lockout_duration: timedelta,
    ) -> RateLimitState: ...

    async def reset(self, user_id: str, method: MFAMethodType, now: datetime) -> bool: ...


class MFACredentialStore(Protocol):
    async def save_totp_secret(self, user_id: str, secret: str) -> None: ...

    async def get_totp_secret(self, user_id: str) -> Optional[str]: ...

    async def save_phone_number(self, user_id: str, phone_number: str) -> None: ...

    async def get_phone_number(self, user_id: str) -> Optional[str]: ...

    async def save_sms_challenge(self, user_id: str, challenge: SmsChallenge) -> None: ...

    async def consume_sms_challenge(self, user_id: str, code_digest: str, now: datetime) -> bool: ...

    async def discard_sms_challenge(self, user_id: str) -> None: ...

    async def replace_backup_codes(self, user_id: str, code_digests: List[str]) -> None: ...

    async def consume_backup_code(self, user_id: str, code_digest: str) -> bool: ...

    async def remaining_backup_codes(self, user_id: str) -> int: ...

    async def save_method(self, user_id: str, method: MFAMethod) -> None: ...

    async def list_methods(self, user_id: str) -> List[MFAMethod]: ...

    async def disable_method(self, user_id: str, method_id: str) -> bool: ...


class InMemoryAuditLogStore:
    def __init__(self) -> None:
        self.events: List[SecurityEvent] = []

    async def query(self, user_id: str, since: datetime) -> List[SecurityEvent]:
        return [event for event in self.events if event.user_id == user_id and event.timestamp >= since]

    async def append(self, event: SecurityEvent) -> None:
        self.events.append(event)


class InMemoryRateLimitStore:
    def __init__(self) -> None:
        self.states: Dict[Tuple[str, str], RateLimitState] = {}

    def _state(self, user_id: str, method: MFAMethodType) -> RateLimitState:
        return self.states.setdefault((user_id, method.value), RateLimitState(user_id=user_id, method=method))

    @staticmethod
    def _copy(state: RateLimitState) -> RateLimitState:
        return RateLimitState(
            user_id=state.user_id,
            method=state.method,
            attempt_count=state.attempt_count,
            window_start=state.window_start,
            locked_until=state.locked_until,
        )

    @staticmethod
    def _clear(state: RateLimitState) -> None:
        state.attempt_count = 0
        state.window_start = None
        state.locked_until = None

    async def get(self, user_id: str, method: MFAMethodType, now: datetime) -> RateLimitState:
        state = self._state(user_id, method)
        if state.lock_expired(now):
            self._clear(state)
        return self._copy(state)

    async def begin_attempt(
        self,
        user_id: str,
        method: MFAMethodType,
        now: datetime,
        max_attempts: int,
        attempt_window: timedelta,
    ) -> Optional[RateLimitState]:
        state = self._state(user_id, method)
        if state.lock_expired(now):
            self._clear(state)
        elif state.locked_until is None and state.window_start is not None and state.window_start < now - attempt_window:
            self._clear(state)
        if state.locked_until is not None or state.attempt_count >= max_attempts:
            return None
        state.attempt_count += 1
        if state.window_start is None:
            state.window_start = now
        return self._copy(state)

    async def record_failure(
        self,
        user_id: str,
        method: MFAMethodType,
        now: datetime,
        max_attempts: int,
        lockout_duration: timedelta,
    ) -> RateLimitState:
        state = self._state(user_id, method)
        if state.locked_until is None and state.attempt_count >= max_attempts:
            state.locked_until = now + lockout_duration
        return self._copy(state)

    async def reset(self, user_id: str, method: MFAMethodType, now: datetime) -> bool:
        state = self._state(user_id, method)
        if state.is_locked(now):
            return False
        self._clear(state)
        return True


class InMemoryMFACredentialStore:
    def __init__(self) -> None:
        self.totp_secrets: Dict[str, str] = {}
        self.phone_numbers: Dict[str, str] = {}
        self.sms_challenges: Dict[str, SmsChallenge] = {}
        self.backup_codes: Dict[str, Set[str]] = {}
        self.used_backup_codes: Dict[str, Set[str]] = {}
        self.methods: Dict[str, Dict[str, MFAMethod]] = {}

    async def save_totp_secret(self, user_id: str, secret: str) -> None:
        self.totp_secrets[user_id] = secret

    async def get_totp_secret(self, user_id: str) -> Optional[str]:
        return self.totp_secrets.get(user_id)

    async def save_phone_number(self, user_id: str, phone_number: str) -> None:
        self.phone_numbers[user_id] = phone_number

    async def get_phone_number(self, user_id: str) -> Optional[str]:
        return self.phone_numbers.get(user_id)

    async def save_sms_challenge(self, user_id: str, challenge: SmsChallenge) -> None:
        self.sms_challenges[user_id] = challenge

    async def consume_sms_challenge(self, user_id: str, code_digest: str, now: datetime) -> bool:
        challenge = self.sms_challenges.get(user_id)
        if challenge is None or challenge.expires_at <= now or challenge.code_digest != code_digest:
            return False
        del self.sms_challenges[user_id]
        return True

    async def discard_sms_challenge(self, user_id: str) -> None:
        self.sms_challenges.pop(user_id, None)

    async def replace_backup_codes(self, user_id: str, code_digests: List[str]) -> None:
        self.backup_codes[user_id] = set(code_digests)
        self.used_backup_codes[user_id] = set()

    async def consume_backup_code(self, user_id: str, code_digest: str) -> bool:
        unused = self.backup_codes.get(user_id, set())
        if code_digest not in unused:
            return False
        unused.remove(code_digest)
        self.used_backup_codes.setdefault(user_id, set()).add(code_digest)
        return True

    async def remaining_backup_codes(self, user_id: str) -> int:
        return len(self.backup_codes.get(user_id, set()))

    async def save_method(self, user_id: str, method: MFAMethod) -> None:
        self.methods.setdefault(user_id, {})[method.id] = method

    async def list_methods(self, user_id: str) -> List[MFAMethod]:
        return list(self.methods.get(user_id, {}).values())

    async def disable_method(self, user_id: str, method_id: str) -> bool:
        method = self.methods.get(user_id, {}).get(method_id)
        if method is None:
            return False
        method.enabled = False
        return True
