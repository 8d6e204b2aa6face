"""
API Key and Session Tests
"""

from datetime import timedelta

import pytest

from app.core.api_keys import API_KEY_PREFIX, APIKeyService, SessionRegistry, hash_token
from app.core.cache import InMemoryStore
from app.core.context import AuthMethod


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def keys(store) -> APIKeyService:
    return APIKeyService(store)


# =============================================================================
# API Keys
# =============================================================================

@pytest.mark.anyio
async def test_create_returns_plaintext_once(keys, store):
    raw, record = await keys.create("u1", "warehouse sync")
    assert raw.startswith(API_KEY_PREFIX)
    assert record.key_hash == hash_token(raw)
    assert raw[:10] == record.prefix
    assert "key_hash" not in record.public()

    stored = [await store.get(k) for k in await store.keys("api_key:")]
    assert not any(raw in value for value in stored)


@pytest.mark.anyio
async def test_validate(keys):
    raw, record = await keys.create("u1", "sync", roles=["service", "manager"])
    found = await keys.validate(raw)
    assert found.id == record.id
    assert found.last_used_at is not None

    principal = keys.principal_for(found)
    assert principal.auth_method == AuthMethod.API_KEY
    assert principal.user_id == "u1"
    assert principal.api_key_id == record.id
    assert principal.has_role("manager")


@pytest.mark.anyio
@pytest.mark.parametrize("raw", ["", "not-prefixed", API_KEY_PREFIX + "unknown"])
async def test_validate_rejects_unknown_keys(keys, raw):
    assert await keys.validate(raw) is None


@pytest.mark.anyio
async def test_revoked_keys_are_rejected(keys):
    raw, record = await keys.create("u1", "sync")
    assert await keys.revoke(record.id)
    assert await keys.validate(raw) is None
    assert not await keys.revoke(record.id)
    assert not await keys.revoke("missing")


@pytest.mark.anyio
async def test_expired_keys_are_rejected(keys, store):
    raw, record = await keys.create("u1", "sync", ttl=timedelta(hours=1))
    expired = record.model_copy(update={"expires_at": record.created_at - timedelta(seconds=1)})
    await store.set(f"api_key:hash:{record.key_hash}", expired.model_dump_json())
    assert await keys.validate(raw) is None


@pytest.mark.anyio
async def test_list_for_owner(keys):
    await keys.create("u1", "one")
    await keys.create("u1", "two")
    await keys.create("u2", "other")
    assert sorted(k.name for k in await keys.list_for("u1")) == ["one", "two"]
    assert await keys.list_for("nobody") == []


# =============================================================================
# Sessions
# =============================================================================

@pytest.mark.anyio
async def test_session_round_trip(store):
    sessions = SessionRegistry(store, ttl_seconds=60)
    token = await sessions.create("u1", "alice", ["user", "manager"])
    principal = await sessions.resolve(token)
    assert principal.user_id == "u1"
    assert principal.username == "alice"
    assert principal.auth_method == AuthMethod.SESSION
    assert principal.roles == frozenset({"user", "manager"})
    assert principal.session_id

    assert await store.get(f"session:{token}") is None
    assert 0 < await store.ttl(f"session:{hash_token(token)}") <= 60


@pytest.mark.anyio
async def test_session_revoke(store):
    sessions = SessionRegistry(store)
    token = await sessions.create("u1")
    assert await sessions.revoke(token)
    assert await sessions.resolve(token) is None
    assert await sessions.resolve("") is None
