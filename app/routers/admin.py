"""
Admin Router
Audit trail queries, security statistics and API-key management.
All endpoints require the admin role.
"""

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from app.core.audit import AuditQuery
from app.core.context import RequestPrincipal
from app.core.dependencies import get_coordinator, require_admin
from app.core.errors import NotFoundError
from app.core.security import SecurityCoordinator

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


class APIKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    owner_id: str | None = None
    roles: list[str] | None = None
    ttl_days: int | None = Field(None, ge=1, le=3650)


# =============================================================================
# Audit
# =============================================================================

@router.get("/audit")
async def query_audit(
    event: list[str] | None = Query(None),
    category: str | None = None,
    level: str | None = None,
    user_id: str | None = None,
    ip_address: str | None = None,
    path_prefix: str | None = None,
    success: bool | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    coordinator: SecurityCoordinator = Depends(get_coordinator),
):
    query = AuditQuery(
        events=tuple(event) if event else None,
        category=category,
        level=level,
        user_id=user_id,
        ip_address=ip_address,
        path_prefix=path_prefix,
        success=success,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    events = coordinator.audit.query(query)
    return {
        "total": coordinator.audit.count(query),
        "events": [e.model_dump(mode="json") for e in events],
    }


# =============================================================================
# Security
# =============================================================================

@router.get("/security/stats")
async def security_stats(
    recent: int = Query(20, ge=0, le=500),
    coordinator: SecurityCoordinator = Depends(get_coordinator),
):
    stats = coordinator.get_security_stats()
    stats["recent_events"] = [e.to_dict() for e in coordinator.monitor.recent_events(recent)]
    return stats


# =============================================================================
# API keys
# =============================================================================

@router.post("/api-keys", status_code=status.HTTP_201_CREATED)
async def create_api_key(
    payload: APIKeyCreate,
    principal: RequestPrincipal = Depends(require_admin),
    coordinator: SecurityCoordinator = Depends(get_coordinator),
):
    """The plaintext key is returned once and cannot be retrieved later."""
    raw, record = await coordinator.api_keys.create(
        owner_id=payload.owner_id or principal.user_id,
        name=payload.name,
        roles=payload.roles,
        ttl=timedelta(days=payload.ttl_days) if payload.ttl_days else None,
    )
    return {"key": raw, "api_key": record.public()}


@router.get("/api-keys")
async def list_api_keys(
    owner_id: str | None = None,
    principal: RequestPrincipal = Depends(require_admin),
    coordinator: SecurityCoordinator = Depends(get_coordinator),
):
    records = await coordinator.api_keys.list_for(owner_id or principal.user_id)
    return {"items": [r.public() for r in records]}


@router.delete("/api-keys/{key_id}")
async def revoke_api_key(key_id: str, coordinator: SecurityCoordinator = Depends(get_coordinator)):
    if not await coordinator.api_keys.revoke(key_id):
        raise NotFoundError("API key", key_id)
    return {"revoked": key_id}
