"""
Shared fixtures for the ERP API test suite.

Every test gets a fresh application with an in-memory store and a
temporary audit directory, so counters and audit files never leak
between tests.
"""

import os

# Module-level app in app.main reads these on import
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("PASSWORD_PEPPER", "test-pepper")
os.environ.setdefault("BCRYPT_COST", "4")
os.environ.setdefault("AUDIT_FILE_ENABLED", "false")

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.config import Settings
from app.main import create_app

STRONG_PASSWORD = "Str0ng!Pass2024"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        password_pepper="test-pepper",
        bcrypt_cost=4,
        audit_log_dir=str(tmp_path / "audit"),
        audit_file_enabled=True,
        redis_url="",
        validation_strict_mode=True,
        rate_limit_penalty_enabled=True,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def coordinator(app):
    return app.state.coordinator


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_user(app):
    """Create a user directly in the directory; returns the User."""
    async def _make(username="alice", email=None, password=STRONG_PASSWORD, roles=None):
        return await app.state.users.create(
            username=username,
            email=email or f"{username}@example.com",
            password=password,
            roles=roles,
        )
    return _make


@pytest.fixture
def bearer(coordinator):
    """Issue a session for a user; returns Authorization headers."""
    async def _bearer(user):
        token = await coordinator.sessions.create(user.id, user.username, user.roles)
        return {"Authorization": f"Bearer {token}"}
    return _bearer
