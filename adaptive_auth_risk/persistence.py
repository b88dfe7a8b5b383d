from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from pymongo import ASCENDING, AsyncMongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from .errors import StoreUnavailable
from .models import MFAMethod, MFAMethodType, RateLimitState, SecurityEvent, SmsChallenge


_CLEARED: Dict[str, Any] = {"attempt_count": 0, "window_start": None, "locked_until": None}


class MongoStores:
    """Owns the MongoDB client and hands out the collection-backed stores."""

    def __init__(self, uri: str, database: str = "adaptive_auth") -> None:
        self.client: AsyncMongoClient = AsyncMongoClient(uri, tz_aware=True)
        self.db = self.client[database]
        self.audit = MongoAuditLogStore(self.db["security_events"])
        self.rate_limits = MongoRateLimitStore(self.db["mfa_rate_limits"])
        self.credentials = MongoMFACredentialStore(
            secrets=self.db["mfa_secrets"],
            challenges=self.db["mfa_sms_challenges"],
            backup_codes=self.db["mfa_backup_codes"],
            methods=self.db["mfa_methods"],
        )

    async def ensure_indexes(self) -> None:
        await self.audit.collection.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
        await self.audit.collection.create_index("event_id", unique=True)
        await self.rate_limits.collection.create_index(
            [("user_id", ASCENDING), ("method", ASCENDING)], unique=True
        )
        await self.credentials.secrets.create_index("user_id", unique=True)
        await self.credentials.challenges.create_index("user_id", unique=True)
        await self.credentials.backup_codes.create_index([("user_id", ASCENDING), ("code", ASCENDING)], unique=True)
        await self.credentials.methods.create_index([("user_id", ASCENDING), ("method_id", ASCENDING)], unique=True)

    async def close(self) -> None:
        await self.client.close()


class MongoAuditLogStore:
    def __init__(self, collection) -> None:
        self.collection = collection

    async def query(self, user_id: str, since: datetime) -> List[SecurityEvent]:
        cursor = self.collection.find({"user_id": user_id, "created_at": {"$gte": since}})
        return [SecurityEvent.from_document(document) async for document in cursor]

    async def append(self, event: SecurityEvent) -> None:
        await self.collection.insert_one(event.to_document())


class MongoRateLimitStore:
    """Rate-limit counters kept as one document per (user, method).

    An attempt is reserved with a conditional ``find_one_and_update`` that only
    matches an unlocked document below ``max_attempts``, so concurrent requests
    from several service instances can never check more codes than allowed.
    Lapsing an expired lock and restarting a stale window are conditional
    updates that stop matching once another request has applied them.
    """

    def __init__(self, collection) -> None:
        self.collection = collection

    @staticmethod
    def _key(user_id: str, method: MFAMethodType) -> Dict[str, str]:
        return {"user_id": user_id, "method": method.value}

    @staticmethod
    def _to_state(user_id: str, method: MFAMethodType, document: Optional[Mapping[str, Any]]) -> RateLimitState:
        if document is None:
            return RateLimitState(user_id=user_id, method=method)
        return RateLimitState(
            user_id=user_id,
            method=method,
            attempt_count=int(document.get("attempt_count") or 0),
            window_start=document.get("window_start"),
            locked_until=document.get("locked_until"),
        )

    async def _lapse_expired_lock(self, key: Dict[str, str], now: datetime) -> None:
        await self.collection.update_one({**key, "locked_until": {"$lte": now}}, {"$set": _CLEARED})

    async def get(self, user_id: str, method: MFAMethodType, now: datetime) -> RateLimitState:
        key = self._key(user_id, method)
        try:
            await self._lapse_expired_lock(key, now)
            document = await self.collection.find_one(key)
        except PyMongoError as exc:
            raise StoreUnavailable(f"rate limit lookup failed: {exc}") from exc
        return self._to_state(user_id, method, document)

    async def begin_attempt(
        self,
        user_id: str,
        method: MFAMethodType,
        now: datetime,
        max_attempts: int,
        attempt_window: timedelta,
    ) -> Optional[RateLimitState]:
        key = self._key(user_id, method)
        try:
            await self.collection.update_one(key, {"$setOnInsert": dict(_CLEARED)}, upsert=True)
            await self._lapse_expired_lock(key, now)
            await self.collection.update_one(
                {**key, "locked_until": None, "window_start": {"$lt": now - attempt_window}},
                {"$set": _CLEARED},
            )
            document = await self.collection.find_one_and_update(
                {
                    **key,
                    "locked_until": None,
                    "attempt_count": {"$lt": max_attempts},
                    "$or": [{"window_start": None}, {"window_start": {"$gte": now - attempt_window}}],
                },
                {"$inc": {"attempt_count": 1}},
                return_document=ReturnDocument.AFTER,
            )
            if document is None:
                return None
            if document.get("window_start") is None:
                await self.collection.update_one({**key, "window_start": None}, {"$set": {"window_start": now}})
        except PyMongoError as exc:
            raise StoreUnavailable(f"rate limit reservation failed: {exc}") from exc
        return self._to_state(user_id, method, {**document, "window_start": document.get("window_start") or now})

    async def record_failure(
        self,
        user_id: str,
        method: MFAMethodType,
        now: datetime,
        max_attempts: int,
        lockout_duration: timedelta,
    ) -> RateLimitState:
        key = self._key(user_id, method)
        try:
            document = await self.collection.find_one_and_update(
                {**key, "locked_until": None, "attempt_count": {"$gte": max_attempts}},
                {"$set": {"locked_until": now + lockout_duration}},
                return_document=ReturnDocument.AFTER,
            )
            if document is None:
                document = await self.collection.find_one(key)
        except PyMongoError as exc:
            raise StoreUnavailable(f"rate limit update failed: {exc}") from exc
        return self._to_state(user_id, method, document)

    async def reset(self, user_id: str, method: MFAMethodType, now: datetime) -> bool:
        try:
            result = await self.collection.update_one(
                {
                    **self._key(user_id, method),
                    "$or": [{"locked_until": None}, {"locked_until": {"$lte": now}}],
                },
                {"$set": _CLEARED},
            )
        except PyMongoError as exc:
            raise StoreUnavailable(f"rate limit reset failed: {exc}") from exc
        return result.matched_count == 1


class MongoMFACredentialStore:
    def __init__(self, secrets, challenges, backup_codes, methods) -> None:
        self.secrets = secrets
        self.challenges = challenges
        self.backup_codes = backup_codes
        self.methods = methods

    async def save_totp_secret(self, user_id: str, secret: str) -> None:
        await self.secrets.update_one({"user_id": user_id}, {"$set": {"totp_secret": secret}}, upsert=True)

    async def get_totp_secret(self, user_id: str) -> Optional[str]:
        document = await self.secrets.find_one({"user_id": user_id})
        return document.get("totp_secret") if document else None

    async def save_phone_number(self, user_id: str, phone_number: str) -> None:
        await self.secrets.update_one({"user_id": user_id}, {"$set": {"phone_number": phone_number}}, upsert=True)

    async def get_phone_number(self, user_id: str) -> Optional[str]:
        document = await self.secrets.find_one({"user_id": user_id})
        return document.get("phone_number") if document else None

    async def save_sms_challenge(self, user_id: str, challenge: SmsChallenge) -> None:
        await self.challenges.replace_one(
            {"user_id": user_id},
            {"user_id": user_id, "code": challenge.code_digest, "expires_at": challenge.expires_at},
            upsert=True,
        )

    async def consume_sms_challenge(self, user_id: str, code_digest: str, now: datetime) -> bool:
        document = await self.challenges.find_one_and_delete(
            {"user_id": user_id, "code": code_digest, "expires_at": {"$gt": now}}
        )
        return document is not None

    async def discard_sms_challenge(self, user_id: str) -> None:
        await self.challenges.delete_one({"user_id": user_id})

    async def replace_backup_codes(self, user_id: str, code_digests: List[str]) -> None:
        await self.backup_codes.delete_many({"user_id": user_id})
        if code_digests:
            await self.backup_codes.insert_many(
                [{"user_id": user_id, "code": digest, "used": False} for digest in code_digests]
            )

    async def consume_backup_code(self, user_id: str, code_digest: str) -> bool:
        result = await self.backup_codes.update_one(
            {"user_id": user_id, "code": code_digest, "used": False},
            {"$set": {"used": True}},
        )
        return result.modified_count == 1

    async def remaining_backup_codes(self, user_id: str) -> int:
        return await self.backup_codes.count_documents({"user_id": user_id, "used": False})

    async def save_method(self, user_id: str, method: MFAMethod) -> None:
        await self.methods.replace_one(
            {"user_id": user_id, "method_id": method.id},
            method.to_document(user_id),
            upsert=True,
        )

    async def list_methods(self, user_id: str) -> List[MFAMethod]:
        cursor = self.methods.find({"user_id": user_id})
        return [MFAMethod.from_document(document) async for document in cursor]

    async def disable_method(self, user_id: str, method_id: str) -> bool:
        result = await self.methods.update_one(
            {"user_id": user_id, "method_id": method_id},
            {"$set": {"enabled": False}},
        )
        return result.matched_count == 1
