"""Multi-factor verification with per (user, method) rate limiting.

Every verification passes through the same state machine. An attempt is
reserved in the rate limit store before the submitted code is checked, so at
most ``max_attempts`` codes are ever checked per window. The failure that uses
up the last attempt locks the pair for ``lockout_duration``. While locked, calls
are refused before the code is looked at. A success clears the counter only
when no lock is active. The lock lapses lazily: the next call after
``locked_until`` sees a fresh counter.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
import string
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol
from urllib.parse import quote

import pyotp

from .config import MFAConfig
from .errors import MFAErrorCode
from .models import (
    MFAMethod,
    MFAMethodType,
    MFASetupResult,
    MFAVerificationResult,
    OperationResult,
    SecurityEvent,
    SecurityEventType,
    Severity,
    SmsChallenge,
    utcnow,
)
from .stores import AuditLogStore, MFACredentialStore, RateLimitStore


logger = logging.getLogger(__name__)

OTP_PATTERN = re.compile(r"^\d{6}$")
PHONE_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
INVALID_CODE_MESSAGES = {
    MFAMethodType.TOTP: "Invalid TOTP token",
    MFAMethodType.SMS: "Invalid SMS code",
    MFAMethodType.BACKUP_CODES: "Invalid backup code",
}


class SmsSender(Protocol):
    async def send(self, phone_number: str, message: str) -> None: ...


def code_digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def build_otpauth_uri(issuer: str, user_id: str, secret: str) -> str:
    issuer_label = quote(issuer, safe="")
    return f"otpauth://totp/{issuer_label}:{quote(user_id, safe='')}?secret={secret}&issuer={issuer_label}"


def mask_phone_number(phone_number: str) -> str:
    return f"{phone_number[:2]}***{phone_number[-4:]}"


class MFAVerifier:
    def __init__(
        self,
        credentials: MFACredentialStore,
        rate_limits: RateLimitStore,
        audit_store: AuditLogStore | None = None,
        sms_sender: SmsSender | None = None,
        config: MFAConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.credentials = credentials
        self.rate_limits = rate_limits
        self.audit_store = audit_store
        self.sms_sender = sms_sender
        self.config = (config or MFAConfig()).validate()
        self.clock = clock
        self.backup_code_pattern = re.compile(rf"^[A-Z0-9]{{{self.config.backup_code_length}}}$")
        logger.info(
            "MFA verifier initialized max_attempts=%d lockout=%ss methods=%d",
            self.config.max_attempts,
            int(self.config.lockout_duration.total_seconds()),
            len(self.config.allowed_methods),
        )

    def get_config(self) -> MFAConfig:
        return self.config

    # --- Setup ---

    async def setup_totp(self, user_id: str) -> MFASetupResult:
        if not user_id:
            return MFASetupResult(success=False, error="Invalid user id")
        if MFAMethodType.TOTP not in self.config.allowed_methods:
            return MFASetupResult(success=False, error="TOTP is not an allowed MFA method")
        try:
            secret = pyotp.random_base32()
            await self.credentials.save_totp_secret(user_id, secret)
            is_primary = not await self._has_primary(user_id, excluding=MFAMethodType.TOTP)
            await self.credentials.save_method(
                user_id,
                MFAMethod(
                    id=f"totp_{user_id}",
                    type=MFAMethodType.TOTP,
                    name="Authenticator App",
                    is_primary=is_primary,
                    created_at=self.clock(),
                ),
            )
            backup_codes = await self._issue_backup_codes(user_id)
        except Exception as exc:
            logger.error("TOTP setup failed for user %s: %s", user_id, exc)
            return MFASetupResult(success=False, error="TOTP setup failed")

        await self._emit(user_id, SecurityEventType.MFA_ENABLED, Severity.LOW, {"method": MFAMethodType.TOTP.value})
        logger.info("TOTP setup successful user=%s backup_codes=%d", user_id, len(backup_codes))
        return MFASetupResult(
            success=True,
            secret=secret,
            qr_code=build_otpauth_uri(self.config.issuer, user_id, secret),
            backup_codes=backup_codes,
        )

    async def setup_sms(self, user_id: str, phone_number: str) -> MFASetupResult:
        if not user_id:
            return MFASetupResult(success=False, error="Invalid user id")
        if MFAMethodType.SMS not in self.config.allowed_methods:
            return MFASetupResult(success=False, error="SMS is not an allowed MFA method")
        if not PHONE_PATTERN.fullmatch(phone_number or ""):
            return MFASetupResult(success=False, error="Invalid phone number format")
        try:
            await self.credentials.save_phone_number(user_id, phone_number)
            is_primary = not await self._has_primary(user_id, excluding=MFAMethodType.SMS)
            await self.credentials.save_method(
                user_id,
                MFAMethod(
                    id=f"sms_{user_id}",
                    type=MFAMethodType.SMS,
                    name=f"SMS to {mask_phone_number(phone_number)}",
                    is_primary=is_primary,
                    created_at=self.clock(),
                ),
            )
        except Exception as exc:
            logger.error("SMS setup failed for user %s: %s", user_id, exc)
            return MFASetupResult(success=False, error="SMS setup failed")

        await self._emit(user_id, SecurityEventType.MFA_ENABLED, Severity.LOW, {"method": MFAMethodType.SMS.value})
        logger.info("SMS setup successful user=%s", user_id)
        return MFASetupResult(success=True)

    async def send_sms_code(self, user_id: str) -> OperationResult:
        if self.sms_sender is None:
            return OperationResult(success=False, error="SMS delivery is not available")
        try:
            phone_number = await self.credentials.get_phone_number(user_id)
            if phone_number is None or not await self._method_enabled(user_id, MFAMethodType.SMS):
                return OperationResult(success=False, error="SMS method not configured")
            code = f"{secrets.randbelow(10 ** 6):06d}"
            challenge = SmsChallenge(code_digest=code_digest(code), expires_at=self.clock() + self.config.sms_code_ttl)
            await self.credentials.save_sms_challenge(user_id, challenge)
        except Exception as exc:
            logger.error("SMS challenge creation failed for user %s: %s", user_id, exc)
            return OperationResult(success=False, error="SMS sending failed")

        try:
            await self.sms_sender.send(phone_number, f"Your verification code is {code}")
        except Exception as exc:
            logger.error("SMS dispatch failed for user %s: %s", user_id, exc)
            try:
                await self.credentials.discard_sms_challenge(user_id)
            except Exception as discard_exc:
                logger.warning("Could not discard undelivered SMS code for user %s: %s", user_id, discard_exc)
            return OperationResult(success=False, error="SMS sending failed")

        logger.info("SMS code sent user=%s", user_id)
        return OperationResult(success=True)

    async def generate_backup_codes(self, user_id: str) -> List[str]:
        try:
            return await self._issue_backup_codes(user_id)
        except Exception as exc:
            logger.error("Backup code generation failed for user %s: %s", user_id, exc)
            return []

    async def _issue_backup_codes(self, user_id: str) -> List[str]:
        codes: List[str] = []
        while len(codes) < self.config.backup_code_count:
            code = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(self.config.backup_code_length))
            if code not in codes:
                codes.append(code)
        await self.credentials.replace_backup_codes(user_id, [code_digest(code) for code in codes])
        await self.credentials.save_method(
            user_id,
            MFAMethod(
                id=f"backup_codes_{user_id}",
                type=MFAMethodType.BACKUP_CODES,
                name="Backup codes",
                created_at=self.clock(),
            ),
        )
        logger.info("Generated %d backup codes for user %s", len(codes), user_id)
        return codes

    # --- Methods ---

    async def get_mfa_methods(self, user_id: str) -> List[MFAMethod]:
        try:
            return await self.credentials.list_methods(user_id)
        except Exception as exc:
            logger.error("Listing MFA methods failed for user %s: %s", user_id, exc)
            return []

    async def disable_mfa(self, user_id: str, method_id: str) -> OperationResult:
        try:
            disabled = await self.credentials.disable_method(user_id, method_id)
        except Exception as exc:
            logger.error("Disabling MFA method %s failed for user %s: %s", method_id, user_id, exc)
            return OperationResult(success=False, error="MFA disable failed")
        if not disabled:
            return OperationResult(success=False, error="MFA method not found")
        await self._emit(user_id, SecurityEventType.MFA_DISABLED, Severity.MEDIUM, {"method_id": method_id})
        logger.info("MFA method %s disabled for user %s", method_id, user_id)
        return OperationResult(success=True)

    async def _has_primary(self, user_id: str, excluding: MFAMethodType) -> bool:
        methods = await self.credentials.list_methods(user_id)
        return any(m.is_primary and m.enabled and m.type is not excluding for m in methods)

    async def _method_enabled(self, user_id: str, method: MFAMethodType) -> bool:
        methods = await self.credentials.list_methods(user_id)
        return any(m.type is method and m.enabled for m in methods)

    # --- Verification ---

    async def verify_totp(self, user_id: str, code: str) -> MFAVerificationResult:
        return await self._verify(user_id, MFAMethodType.TOTP, code, OTP_PATTERN, self._check_totp)

    async def verify_sms_code(self, user_id: str, code: str) -> MFAVerificationResult:
        return await self._verify(user_id, MFAMethodType.SMS, code, OTP_PATTERN, self._check_sms)

    async def verify_backup_code(self, user_id: str, code: str) -> MFAVerificationResult:
        return await self._verify(
            user_id, MFAMethodType.BACKUP_CODES, code, self.backup_code_pattern, self._check_backup_code
        )

    async def verify(self, user_id: str, method: MFAMethodType, code: str) -> MFAVerificationResult:
        if method is MFAMethodType.TOTP:
            return await self.verify_totp(user_id, code)
        if method is MFAMethodType.SMS:
            return await self.verify_sms_code(user_id, code)
        if method is MFAMethodType.BACKUP_CODES:
            return await self.verify_backup_code(user_id, code)
        return MFAVerificationResult.failed(
            MFAErrorCode.METHOD_NOT_CONFIGURED, f"{method.value} verification is not supported"
        )

    async def _check_totp(self, user_id: str, code: str, now: datetime) -> bool:
        secret = await self.credentials.get_totp_secret(user_id)
        if not secret:
            return False
        totp = pyotp.TOTP(secret, interval=self.config.totp_interval)
        return totp.verify(code, for_time=int(now.timestamp()), valid_window=self.config.totp_window)

    async def _check_sms(self, user_id: str, code: str, now: datetime) -> bool:
        return await self.credentials.consume_sms_challenge(user_id, code_digest(code), now)

    async def _check_backup_code(self, user_id: str, code: str, now: datetime) -> bool:
        return await self.credentials.consume_backup_code(user_id, code_digest(code))

    async def _verify(
        self,
        user_id: str,
        method: MFAMethodType,
        code: Optional[str],
        pattern: re.Pattern,
        check: Callable[[str, str, datetime], Awaitable[bool]],
    ) -> MFAVerificationResult:
        if not user_id or not code:
            return MFAVerificationResult.failed(MFAErrorCode.INVALID_INPUT, "Invalid verification parameters")

        now = self.clock()
        try:
            state = await self.rate_limits.get(user_id, method, now)
        except Exception as exc:
            logger.error("Rate limit lookup failed user=%s method=%s: %s", user_id, method.value, exc)
            return _service_unavailable()

        if state.is_locked(now):
            return _locked_out()

        code = code.strip()
        if not pattern.fullmatch(code):
            return MFAVerificationResult.failed(
                MFAErrorCode.INVALID_INPUT,
                "Invalid code format",
                remaining_attempts=max(0, self.config.max_attempts - state.attempt_count),
            )

        try:
            if not await self._method_enabled(user_id, method):
                return MFAVerificationResult.failed(
                    MFAErrorCode.METHOD_NOT_CONFIGURED, f"{method.value} is not configured for this user"
                )
            reserved = await self.rate_limits.begin_attempt(
                user_id, method, now, self.config.max_attempts, self.config.effective_attempt_window
            )
        except Exception as exc:
            logger.error("Attempt reservation failed user=%s method=%s: %s", user_id, method.value, exc)
            return _service_unavailable()
        if reserved is None:
            logger.warning("MFA attempt refused user=%s method=%s: no attempts left", user_id, method.value)
            return _locked_out()

        try:
            valid = await check(user_id, code, now)
        except Exception as exc:
            logger.error("Code check failed user=%s method=%s: %s", user_id, method.value, exc)
            return _service_unavailable()

        if valid:
            try:
                cleared = await self.rate_limits.reset(user_id, method, now)
            except Exception as exc:
                logger.warning("Rate limit reset failed user=%s method=%s: %s", user_id, method.value, exc)
            else:
                if not cleared:
                    logger.warning("Lock kept after concurrent failures user=%s method=%s", user_id, method.value)
            await self._emit(
                user_id, SecurityEventType.MFA_CHALLENGE_VERIFIED, Severity.LOW, {"method": method.value}
            )
            logger.info("MFA verification successful user=%s method=%s", user_id, method.value)
            return MFAVerificationResult.accepted()

        try:
            state = await self.rate_limits.record_failure(
                user_id, method, now, self.config.max_attempts, self.config.lockout_duration
            )
        except Exception as exc:
            logger.error("Recording failed attempt failed user=%s method=%s: %s", user_id, method.value, exc)
            return _service_unavailable()

        remaining = max(0, self.config.max_attempts - state.attempt_count)
        if state.is_locked(now):
            logger.warning(
                "MFA verification blocked user=%s method=%s attempts=%d", user_id, method.value, state.attempt_count
            )
            await self._emit(
                user_id,
                SecurityEventType.ACCOUNT_LOCKED,
                Severity.HIGH,
                {
                    "method": method.value,
                    "attempts": state.attempt_count,
                    "locked_until": state.locked_until.isoformat() if state.locked_until else None,
                },
            )
            remaining = 0
        else:
            logger.warning(
                "MFA verification failed user=%s method=%s attempts=%d", user_id, method.value, state.attempt_count
            )
            await self._emit(
                user_id,
                SecurityEventType.MFA_CHALLENGE_FAILED,
                Severity.MEDIUM,
                {"method": method.value, "attempts": state.attempt_count},
            )
        return MFAVerificationResult.rejected(remaining, INVALID_CODE_MESSAGES[method])

    async def _emit(self, user_id: str, event_type: SecurityEventType, severity: Severity, details: dict) -> None:
        if self.audit_store is None:
            return
        event = SecurityEvent.create(
            f"mfa-{event_type.value}", event_type, severity, user_id, details, timestamp=self.clock()
        )
        try:
            await self.audit_store.append(event)
        except Exception as exc:
            logger.error("Security event logging failed id=%s type=%s: %s", event.id, event_type.value, exc)


def _service_unavailable() -> MFAVerificationResult:
    return MFAVerificationResult.failed(
        MFAErrorCode.SERVICE_UNAVAILABLE, "Verification service unavailable, please try again later"
    )


def _locked_out() -> MFAVerificationResult:
    return MFAVerificationResult.failed(
        MFAErrorCode.LOCKED_OUT,
        "Too many verification attempts, please try again later",
        remaining_attempts=0,
    )
