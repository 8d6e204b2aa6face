"""
API Keys and Bearer Sessions for the ERP API.

Both credential kinds are opaque random tokens. Only their SHA-256
digests are persisted (in the shared store), so a leaked store dump
cannot be replayed.

API keys look like `erp_<random>` and are shown once at creation.
Session tokens are issued at login and expire with the session TTL.
"""

import hashlib
import json
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field

from app.core.cache import Store
from app.core.context import AuthMethod, RequestPrincipal, UserRole

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "erp_"


def generate_token() -> str:
    """Generate a secure URL-safe token."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    """SHA-256 hash a token for secure storage."""
    return hashlib.sha256(token.encode()).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# API Keys
# =============================================================================

class APIKey(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    owner_id: str
    roles: list[str] = Field(default_factory=lambda: [UserRole.SERVICE.value])
    key_hash: str
    prefix: str
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    active: bool = True

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and (now or _utcnow()) >= self.expires_at

    def public(self) -> dict:
        """Record without the digest, for listing endpoints."""
        return self.model_dump(mode="json", exclude={"key_hash"})


class APIKeyService:
    """Create, validate, revoke and list API keys."""

    def __init__(self, store: Store, key_prefix: str = "api_key:"):
        self.store = store
        self.key_prefix = key_prefix

    def _digest_key(self, digest: str) -> str:
        return f"{self.key_prefix}hash:{digest}"

    def _id_key(self, key_id: str) -> str:
        return f"{self.key_prefix}id:{key_id}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self.key_prefix}owner:{owner_id}"

    async def _save(self, record: APIKey) -> None:
        ttl = None
        if record.expires_at is not None:
            ttl = max(1, int((record.expires_at - _utcnow()).total_seconds()))
        await self.store.set(self._digest_key(record.key_hash), record.model_dump_json(), ttl=ttl)
        await self.store.set(self._id_key(record.id), record.key_hash, ttl=ttl)

    async def create(
        self,
        owner_id: str,
        name: str,
        roles: list[str] | None = None,
        ttl: timedelta | None = None,
    ) -> tuple[str, APIKey]:
        """
        Create a key for owner_id.
        Returns: (plaintext key, record). The plaintext is not retrievable later.
        """
        raw = API_KEY_PREFIX + generate_token()
        record = APIKey(
            name=name,
            owner_id=owner_id,
            roles=roles or [UserRole.SERVICE.value],
            key_hash=hash_token(raw),
            prefix=raw[:len(API_KEY_PREFIX) + 6],
            expires_at=_utcnow() + ttl if ttl else None,
        )
        await self._save(record)

        ids = await self._owner_ids(owner_id)
        ids.append(record.id)
        await self.store.set(self._owner_key(owner_id), json.dumps(ids))

        logger.info("API key created: %s (%s) for %s", record.id, record.prefix, owner_id)
        return raw, record

    async def _owner_ids(self, owner_id: str) -> list[str]:
        raw = await self.store.get(self._owner_key(owner_id))
        return json.loads(raw) if raw else []

    async def _load(self, digest: str) -> APIKey | None:
        raw = await self.store.get(self._digest_key(digest))
        return APIKey.model_validate_json(raw) if raw else None

    async def validate(self, raw_key: str) -> APIKey | None:
        """Record for an active, unexpired key; None otherwise."""
        if not raw_key or not raw_key.startswith(API_KEY_PREFIX):
            return None
        record = await self._load(hash_token(raw_key))
        if record is None or not record.active or record.is_expired():
            return None
        record = record.model_copy(update={"last_used_at": _utcnow()})
        await self._save(record)
        return record

    async def get(self, key_id: str) -> APIKey | None:
        digest = await self.store.get(self._id_key(key_id))
        return await self._load(digest) if digest else None

    async def revoke(self, key_id: str) -> bool:
        record = await self.get(key_id)
        if record is None or not record.active:
            return False
        await self._save(record.model_copy(update={"active": False}))
        logger.info("API key revoked: %s", key_id)
        return True

    async def list_for(self, owner_id: str) -> list[APIKey]:
        records = []
        for key_id in await self._owner_ids(owner_id):
            record = await self.get(key_id)
            if record is not None:
                records.append(record)
        return records

    @staticmethod
    def principal_for(record: APIKey) -> RequestPrincipal:
        return RequestPrincipal(
            user_id=record.owner_id,
            roles=frozenset(record.roles),
            api_key_id=record.id,
            auth_method=AuthMethod.API_KEY,
        )


# =============================================================================
# Sessions
# =============================================================================

class SessionRegistry:
    """Opaque bearer session tokens held in the shared store with a TTL."""

    def __init__(self, store: Store, ttl_seconds: int = 3600, key_prefix: str = "session:"):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, token: str) -> str:
        return f"{self.key_prefix}{hash_token(token)}"

    async def create(self, user_id: str, username: str | None = None, roles: list[str] | None = None) -> str:
        token = generate_token()
        payload = {
            "session_id": str(uuid.uuid4()),
            "user_id": user_id,
            "username": username,
            "roles": roles or [UserRole.USER.value],
            "created_at": _utcnow().isoformat(),
        }
        await self.store.set(self._key(token), json.dumps(payload), ttl=self.ttl_seconds)
        logger.info("Session created for user %s", user_id)
        return token

    async def resolve(self, token: str) -> RequestPrincipal | None:
        if not token:
            return None
        raw = await self.store.get(self._key(token))
        if raw is None:
            return None
        data = json.loads(raw)
        return RequestPrincipal(
            user_id=data["user_id"],
            roles=frozenset(data.get("roles") or ()),
            auth_method=AuthMethod.SESSION,
            username=data.get("username"),
            session_id=data.get("session_id"),
        )

    async def revoke(self, token: str) -> bool:
        return await self.store.delete(self._key(token))
