"""
In-memory user directory.

Stands in for the user repository so the auth and user routers have
something to authenticate against. Passwords go through PasswordService;
only hashes are kept.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field

from app.core.api_keys import hash_token
from app.core.context import UserRole
from app.core.errors import ConflictError, NotFoundError
from app.core.password import PasswordPolicyError, PasswordService

logger = logging.getLogger(__name__)

RESET_TOKEN_TTL = timedelta(hours=1)


class User(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    username: str
    email: str
    password_hash: str = Field(repr=False)
    roles: list[str] = Field(default_factory=lambda: [UserRole.USER.value])
    full_name: str | None = None
    active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime | None = None

    def public(self) -> dict:
        return self.model_dump(mode="json", exclude={"password_hash"})


class UserDirectory:
    def __init__(self, passwords: PasswordService):
        self.passwords = passwords
        self._users: dict[str, User] = {}
        self._reset_tokens: dict[str, tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._users)

    def _find(self, login: str) -> User | None:
        login = login.lower()
        for user in self._users.values():
            if user.username.lower() == login or user.email.lower() == login:
                return user
        return None

    async def create(
        self,
        username: str,
        email: str,
        password: str,
        roles: list[str] | None = None,
        full_name: str | None = None,
    ) -> User:
        """Raises PasswordPolicyError for weak passwords, ConflictError for duplicates."""
        password_hash = await self.passwords.hash_async(password)
        async with self._lock:
            if self._find(username) or self._find(email):
                raise ConflictError("Username or email already registered")
            user = User(
                username=username,
                email=email,
                password_hash=password_hash,
                roles=roles or [UserRole.USER.value],
                full_name=full_name,
            )
            self._users[user.id] = user
        logger.info("User created: %s (%s)", user.id, username)
        return user

    async def authenticate(self, login: str, password: str) -> User | None:
        user = self._find(login)
        if user is None or not user.active:
            return None
        if not await self.passwords.verify_async(password, user.password_hash):
            return None
        if self.passwords.needs_rehash(user.password_hash):
            try:
                new_hash = await self.passwords.hash_async(password)
            except PasswordPolicyError:
                # legacy password below current policy; keep the old hash
                return user
            self._users[user.id] = user.model_copy(update={"password_hash": new_hash})
        return user

    def get(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def update(self, user_id: str, **changes) -> User:
        async with self._lock:
            user = self.get(user_id)
            changes = {k: v for k, v in changes.items() if v is not None}
            if "username" in changes or "email" in changes:
                for other in self._users.values():
                    if other.id == user_id:
                        continue
                    if other.username == changes.get("username") or other.email == changes.get("email"):
                        raise ConflictError("Username or email already registered")
            user = user.model_copy(update={**changes, "updated_at": datetime.now(timezone.utc)})
            self._users[user_id] = user
        return user

    async def delete(self, user_id: str) -> None:
        async with self._lock:
            self.get(user_id)
            del self._users[user_id]
        logger.info("User deleted: %s", user_id)

    # -------------------------------------------------------------------------
    # Password reset
    # -------------------------------------------------------------------------

    def issue_reset_token(self, email: str) -> str | None:
        """Reset token for the account, or None when the email is unknown."""
        user = self._find(email)
        if user is None:
            return None
        token = self.passwords.generate_reset_token()
        self._reset_tokens[hash_token(token)] = (user.id, datetime.now(timezone.utc) + RESET_TOKEN_TTL)
        return token

    async def reset_password(self, token: str, new_password: str) -> bool:
        """Raises PasswordPolicyError before the token is consumed."""
        digest = hash_token(token)
        entry = self._reset_tokens.get(digest)
        if entry is None:
            return False
        user_id, expires_at = entry
        if datetime.now(timezone.utc) >= expires_at or user_id not in self._users:
            self._reset_tokens.pop(digest, None)
            return False
        password_hash = await self.passwords.hash_async(new_password)
        if self._reset_tokens.pop(digest, None) is None:
            return False
        await self.update(user_id, password_hash=password_hash)
        logger.info("Password reset for user %s", user_id)
        return True
