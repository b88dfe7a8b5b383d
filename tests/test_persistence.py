from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from adaptive_auth_risk.errors import StoreUnavailable
from adaptive_auth_risk.models import MFAMethod, MFAMethodType, SecurityEvent, SecurityEventType, Severity
from adaptive_auth_risk.persistence import MongoRateLimitStore


NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
WINDOW = LOCKOUT = timedelta(minutes=15)


class UnreachableCollection:
    async def update_one(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers available")

    async def find_one(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers available")

    async def find_one_and_update(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers available")


class UpdateResult:
    def __init__(self, matched_count, modified_count=0, upserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id


def field_matches(value, condition):
    if isinstance(condition, dict):
        for operator, operand in condition.items():
            if value is None:
                return False
            if operator == "$lt" and not value < operand:
                return False
            if operator == "$lte" and not value <= operand:
                return False
            if operator == "$gte" and not value >= operand:
                return False
        return True
    return value == condition


def document_matches(document, query):
    for field, condition in query.items():
        if field == "$or":
            if not any(document_matches(document, branch) for branch in condition):
                return False
        elif not field_matches(document.get(field), condition):
            return False
    return True


class InMemoryCollection:
    """Evaluates the query and update operators the rate limit store sends."""

    def __init__(self):
        self.documents = []

    def _find(self, query):
        return next((document for document in self.documents if document_matches(document, query)), None)

    @staticmethod
    def _apply(document, update, inserted=False):
        for operator, fields in update.items():
            if operator == "$set" or (operator == "$setOnInsert" and inserted):
                document.update(fields)
            elif operator == "$inc":
                for field, amount in fields.items():
                    document[field] = document.get(field, 0) + amount

    async def update_one(self, query, update, upsert=False):
        document = self._find(query)
        if document is None:
            if not upsert:
                return UpdateResult(0)
            document = {field: value for field, value in query.items() if not field.startswith("$")}
            self._apply(document, update, inserted=True)
            self.documents.append(document)
            return UpdateResult(0, upserted_id=len(self.documents))
        self._apply(document, update)
        return UpdateResult(1, 1)

    async def find_one(self, query):
        document = self._find(query)
        return dict(document) if document is not None else None

    async def find_one_and_update(self, query, update, return_document=None):
        document = self._find(query)
        if document is None:
            return None
        self._apply(document, update)
        return dict(document)


@pytest.mark.asyncio
async def test_unreachable_mongo_raises_store_unavailable():
    store = MongoRateLimitStore(UnreachableCollection())

    with pytest.raises(StoreUnavailable):
        await store.get("user-1", MFAMethodType.TOTP, NOW)
    with pytest.raises(StoreUnavailable):
        await store.begin_attempt("user-1", MFAMethodType.TOTP, NOW, 3, WINDOW)
    with pytest.raises(StoreUnavailable):
        await store.record_failure("user-1", MFAMethodType.TOTP, NOW, 3, LOCKOUT)
    with pytest.raises(StoreUnavailable):
        await store.reset("user-1", MFAMethodType.TOTP, NOW)

async def fail_three_times(store, now=NOW):
    for _ in range(3):
        await store.begin_attempt("user-1", MFAMethodType.TOTP, now, 3, WINDOW)
        state = await store.record_failure("user-1", MFAMethodType.TOTP, now, 3, LOCKOUT)
    return state


@pytest.mark.asyncio
async def test_attempts_are_reserved_up_to_max():
    collection = InMemoryCollection()
    store = MongoRateLimitStore(collection)

    reserved = [await store.begin_attempt("user-1", MFAMethodType.TOTP, NOW, 3, WINDOW) for _ in range(4)]

    assert [state.attempt_count for state in reserved[:3]] == [1, 2, 3]
    assert all(state.window_start == NOW for state in reserved[:3])
    assert reserved[3] is None
    assert collection.documents == [
        {"user_id": "user-1", "method": "totp", "attempt_count": 3, "window_start": NOW, "locked_until": None}
    ]


@pytest.mark.asyncio
async def test_failure_locks_once_attempts_are_used_up():
    store = MongoRateLimitStore(InMemoryCollection())

    await store.begin_attempt("user-1", MFAMethodType.TOTP, NOW, 3, WINDOW)
    first = await store.record_failure("user-1", MFAMethodType.TOTP, NOW, 3, LOCKOUT)
    assert first.attempt_count == 1
    assert first.locked_until is None

    locked = await fail_three_times(store)
    assert locked.locked_until == NOW + LOCKOUT
    assert (await store.get("user-1", MFAMethodType.TOTP, NOW)).is_locked(NOW)
    assert await store.begin_attempt("user-1", MFAMethodType.TOTP, NOW, 3, WINDOW) is None

    again = await store.record_failure("user-1", MFAMethodType.TOTP, NOW + timedelta(minutes=1), 3, LOCKOUT)
    assert again.locked_until == NOW + LOCKOUT


@pytest.mark.asyncio
async def test_expired_lock_lapses_on_get():
    collection = InMemoryCollection()
    store = MongoRateLimitStore(collection)
    await fail_three_times(store)

    state = await store.get("user-1", MFAMethodType.TOTP, NOW + LOCKOUT)

    assert state.attempt_count == 0
    assert state.locked_until is None
    assert collection.documents[0]["attempt_count"] == 0


@pytest.mark.asyncio
async def test_expired_lock_lapses_on_reservation():
    store = MongoRateLimitStore(InMemoryCollection())
    await fail_three_times(store)
    later = NOW + LOCKOUT + timedelta(seconds=1)

    state = await store.begin_attempt("user-1", MFAMethodType.TOTP, later, 3, WINDOW)

    assert state.attempt_count == 1
    assert state.window_start == later
    assert state.locked_until is None


@pytest.mark.asyncio
async def test_stale_window_restarts_counter():
    store = MongoRateLimitStore(InMemoryCollection())
    for _ in range(2):
        await store.begin_attempt("user-1", MFAMethodType.TOTP, NOW, 3, WINDOW)
        await store.record_failure("user-1", MFAMethodType.TOTP, NOW, 3, LOCKOUT)
    later = NOW + WINDOW + timedelta(seconds=1)

    state = await store.begin_attempt("user-1", MFAMethodType.TOTP, later, 3, WINDOW)

    assert state.attempt_count == 1
    assert state.window_start == later


@pytest.mark.asyncio
async def test_reset_skips_active_lock():
    collection = InMemoryCollection()
    store = MongoRateLimitStore(collection)
    await fail_three_times(store)

    assert await store.reset("user-1", MFAMethodType.TOTP, NOW + timedelta(minutes=5)) is False
    assert collection.documents[0]["locked_until"] == NOW + LOCKOUT

    assert await store.reset("user-1", MFAMethodType.TOTP, NOW + LOCKOUT) is True
    assert collection.documents[0] == {
        "user_id": "user-1",
        "method": "totp",
        "attempt_count": 0,
        "window_start": None,
        "locked_until": None,
    }


@pytest.mark.asyncio
async def test_reset_clears_unlocked_counter():
    store = MongoRateLimitStore(InMemoryCollection())
    await store.begin_attempt("user-1", MFAMethodType.TOTP, NOW, 3, WINDOW)
    await store.record_failure("user-1", MFAMethodType.TOTP, NOW, 3, LOCKOUT)

    assert await store.reset("user-1", MFAMethodType.TOTP, NOW) is True
    assert (await store.get("user-1", MFAMethodType.TOTP, NOW)).attempt_count == 0


def test_event_document_round_trip():
    event = SecurityEvent.create(
        "mfa-account_locked", SecurityEventType.ACCOUNT_LOCKED, Severity.HIGH, "user-1", {"attempts": 3}, NOW
    )

    document = event.to_document()
    restored = SecurityEvent.from_document(document)

    assert document["event_type"] == "account_locked"
    assert restored.id == event.id
    assert restored.timestamp == NOW


def test_method_document_keeps_flags():
    method = MFAMethod(id="totp_user-1", type=MFAMethodType.TOTP, name="Authenticator App", is_primary=True)

    restored = MFAMethod.from_document(method.to_document("user-1"))

    assert restored.is_primary is True
    assert restored.type is MFAMethodType.TOTP
