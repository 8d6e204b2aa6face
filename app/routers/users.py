"""
Users Router
Registration and account management.

Callers may read and update their own account; managers and admins may
read and update any account, and only admins may delete.
"""

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from app.core.context import RequestPrincipal
from app.core.dependencies import ensure_self_or_admin, get_users, require_admin, require_user
from app.routers.auth import RegisterRequest, register_user

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


class UserUpdate(BaseModel):
    username: str | None = None
    email: str | None = None
    full_name: str | None = None


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterRequest, users=Depends(get_users)):
    return await register_user(payload, users)


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    principal: RequestPrincipal = Depends(require_user),
    users=Depends(get_users),
):
    ensure_self_or_admin(principal, user_id)
    return users.get(user_id).public()


@router.put("/{user_id}")
async def update_user(
    user_id: str,
    payload: UserUpdate,
    principal: RequestPrincipal = Depends(require_user),
    users=Depends(get_users),
):
    ensure_self_or_admin(principal, user_id)
    user = await users.update(user_id, **payload.model_dump(exclude_unset=True))
    return user.public()


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: str,
    principal: RequestPrincipal = Depends(require_admin),
    users=Depends(get_users),
):
    await users.delete(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
