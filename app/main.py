"""
ERP API - application factory.

Every request passes through SecurityMiddleware (headers, CORS, input
validation, credential authentication, rate limiting, CSRF, audit,
security events) before reaching the routers.

Run:
    uvicorn app.main:app
    python -m app.main
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from app.core.cache import create_store
from app.core.config import Settings, get_settings
from app.core.errors import ShutdownError, setup_exception_handlers
from app.core.logging_config import setup_logging
from app.core.password import PasswordPolicy, PasswordService
from app.core.security import SecurityConfig, SecurityCoordinator, SecurityMiddleware
from app.core.shutdown import (
    BackgroundTaskManager,
    CoordinatorHook,
    HTTPServerHook,
    ShutdownManager,
    StoreHook,
    TaskManagerHook,
)
from app.routers import admin, auth, catalogue, health, users
from app.services.users import UserDirectory

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    if settings.environment != "test":
        setup_logging(settings.log_level, settings.log_json, settings.log_file)

    store = create_store(settings.redis_url)
    coordinator = SecurityCoordinator(SecurityConfig.from_settings(settings), store)
    passwords = PasswordService(
        settings.password_pepper,
        PasswordPolicy(min_length=settings.password_min_length, max_length=settings.password_max_length),
        cost=settings.bcrypt_cost,
    )
    tasks = BackgroundTaskManager()

    shutdown = ShutdownManager(timeout=settings.shutdown_timeout_seconds)
    shutdown.register(CoordinatorHook(coordinator, priority=10))
    shutdown.register(TaskManagerHook(tasks, priority=50))
    shutdown.register(StoreHook(store, priority=90))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting %s (%s)", settings.app_name, settings.environment)
        await coordinator.start()
        yield
        logger.info("Shutting down %s", settings.app_name)
        try:
            await shutdown.shutdown()
        except ShutdownError as e:
            logger.error("%s", e)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.passwords = passwords
    app.state.users = UserDirectory(passwords)
    app.state.tasks = tasks
    app.state.shutdown = shutdown

    setup_exception_handlers(app)
    app.add_middleware(SecurityMiddleware, coordinator=coordinator)

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(users.router)
    app.include_router(catalogue.router)
    app.include_router(admin.router)

    return app


app = create_app()


def run() -> None:
    settings = app.state.settings
    config = uvicorn.Config(app, host=settings.host, port=settings.port, log_config=None)
    server = uvicorn.Server(config)
    app.state.shutdown.register(HTTPServerHook(server, priority=0))
    server.run()


if __name__ == "__main__":
    run()
