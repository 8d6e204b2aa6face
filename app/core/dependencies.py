"""
FastAPI dependencies shared by the routers.

Application-scoped services live on app.state (set up by create_app);
the principal comes from the security pipeline via request.state.
"""

from fastapi import Depends, Request

from app.core.context import RequestPrincipal, UserRole, get_principal
from app.core.errors import AuthenticationError, AuthorizationError
from app.core.security import SecurityCoordinator


def get_coordinator(request: Request) -> SecurityCoordinator:
    return request.app.state.coordinator


def get_users(request: Request):
    return request.app.state.users


def current_principal(request: Request) -> RequestPrincipal:
    return get_principal(request)


def require_user(principal: RequestPrincipal = Depends(current_principal)) -> RequestPrincipal:
    """Any authenticated caller (session or API key)."""
    if not principal.is_authenticated:
        raise AuthenticationError()
    return principal


def require_admin(principal: RequestPrincipal = Depends(require_user)) -> RequestPrincipal:
    if not principal.is_admin:
        raise AuthorizationError("Administrator role required")
    return principal


def ensure_self_or_admin(principal: RequestPrincipal, user_id: str) -> None:
    if principal.user_id == user_id or principal.has_role(UserRole.ADMIN, UserRole.MANAGER):
        return
    raise AuthorizationError("Cannot access another user's account")
