"""
Authentication Router
Session login/logout, registration and password reset.

Sessions are opaque bearer tokens held in the shared store
(SessionRegistry); the security pipeline resolves them on each request.
State-changing endpoints here other than logout are CSRF-exempt and
carry their own strict rate limits.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from app.core.context import RequestPrincipal
from app.core.dependencies import get_coordinator, get_users, require_user
from app.core.errors import AuthenticationError, ValidationError
from app.core.password import PasswordPolicyError
from app.core.security import SecurityCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


# =============================================================================
# Schemas
# =============================================================================

class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, description="Username or email")
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str
    full_name: str | None = None


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: dict


# =============================================================================
# Helpers
# =============================================================================

def policy_error(e: PasswordPolicyError) -> ValidationError:
    return ValidationError("Password does not meet requirements", details={"password": "; ".join(e.violations)})


async def register_user(payload: RegisterRequest, users) -> dict:
    """Shared by /auth/register and /users/register."""
    try:
        user = await users.create(
            username=payload.username,
            email=payload.email,
            password=payload.password,
            full_name=payload.full_name,
        )
    except PasswordPolicyError as e:
        raise policy_error(e)
    return user.public()


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/csrf")
async def csrf_token(request: Request):
    """Current CSRF token; the pipeline sets the matching cookie."""
    return {"csrf_token": getattr(request.state, "csrf_token", None)}


@router.post("/login", response_model=TokenResponse)
async def login(
    payload: LoginRequest,
    users=Depends(get_users),
    coordinator: SecurityCoordinator = Depends(get_coordinator),
):
    user = await users.authenticate(payload.username, payload.password)
    if user is None:
        raise AuthenticationError("Invalid username or password")

    token = await coordinator.sessions.create(user.id, user.username, user.roles)
    logger.info("User logged in: %s", user.id)
    return TokenResponse(
        access_token=token,
        expires_in=coordinator.sessions.ttl_seconds,
        user=user.public(),
    )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterRequest, users=Depends(get_users)):
    return await register_user(payload, users)


@router.post("/forgot-password", status_code=status.HTTP_202_ACCEPTED)
async def forgot_password(payload: ForgotPasswordRequest, users=Depends(get_users)):
    """Same response whether or not the email exists."""
    token = users.issue_reset_token(payload.email)
    if token is not None:
        # Delivery (email) is outside this service
        logger.info("Password reset requested for %s", payload.email)
    return {"message": "If the account exists, reset instructions have been sent"}


@router.post("/reset-password")
async def reset_password(payload: ResetPasswordRequest, users=Depends(get_users)):
    try:
        ok = await users.reset_password(payload.token, payload.password)
    except PasswordPolicyError as e:
        raise policy_error(e)
    if not ok:
        raise ValidationError("Invalid or expired reset token")
    return {"message": "Password has been reset"}


@router.post("/logout")
async def logout(
    request: Request,
    principal: RequestPrincipal = Depends(require_user),
    coordinator: SecurityCoordinator = Depends(get_coordinator),
):
    _, _, token = request.headers.get("authorization", "").partition(" ")
    revoked = await coordinator.sessions.revoke(token.strip()) if token.strip() else False
    return {"logged_out": revoked, "user_id": principal.user_id}
