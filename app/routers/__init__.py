# API Routers - thin handlers behind the security pipeline

from app.routers import admin, auth, catalogue, health, users

__all__ = ["admin", "auth", "catalogue", "health", "users"]
