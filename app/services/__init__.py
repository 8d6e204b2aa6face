# Application services

from app.services.users import User, UserDirectory

__all__ = ["User", "UserDirectory"]
