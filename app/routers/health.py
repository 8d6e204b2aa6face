"""
Health & Metrics Router
Observability endpoints for load balancers and scrapers.

Endpoints:
- /healthz - Basic liveness check (is the process running?)
- /health  - Alias for /healthz
- /readyz  - Readiness check (shared store reachable, audit sink writable)
- /metrics - Prometheus text metrics from the security pipeline
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, PlainTextResponse

from app.core.cache import StoreError
from app.core.dependencies import get_coordinator
from app.core.security import SecurityCoordinator


router = APIRouter(tags=["Health"])

# Track startup time for uptime calculation
_start_time = time.time()


@router.get("/healthz")
async def health_check():
    """
    Liveness probe - is the app process running?
    Returns 200 if the process is alive.
    """
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/health")
async def health_alias():
    """Alias for /healthz for compatibility."""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_check(coordinator: SecurityCoordinator = Depends(get_coordinator)):
    """
    Readiness check - is the app ready to serve traffic?
    Returns 503 when the shared store cannot be reached.
    """
    checks = {}
    start = time.perf_counter()

    try:
        checks["store"] = await coordinator.store.ping()
    except StoreError:
        checks["store"] = False

    checks["audit_file"] = coordinator.audit.file_sink_active or not coordinator.config.audit.file_enabled
    checks["security_started"] = coordinator.started

    ready = checks["store"]
    body = {
        "status": "ready" if ready else "degraded",
        "checks": checks,
        "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if ready else 503, content=body)


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(coordinator: SecurityCoordinator = Depends(get_coordinator)):
    """Prometheus exposition format."""
    stats = coordinator.get_security_stats()
    lines = [
        "# HELP erp_uptime_seconds Time since process start",
        "# TYPE erp_uptime_seconds gauge",
        f"erp_uptime_seconds {time.time() - _start_time:.3f}",
    ]

    lines.append("# TYPE erp_security_requests_total counter")
    for name, value in stats["counters"].items():
        lines.append(f'erp_security_requests_total{{outcome="{name}"}} {value}')

    lines.append("# TYPE erp_security_stage_enabled gauge")
    for stage, enabled in stats["stages"].items():
        lines.append(f'erp_security_stage_enabled{{stage="{stage}"}} {int(enabled)}')

    audit = stats["audit"]
    lines.append("# TYPE erp_audit_events_total counter")
    lines.append(f"erp_audit_events_total {audit['emitted']}")
    lines.append(f"erp_audit_store_failures_total {audit['store_failures']}")

    monitor = stats["monitor"]
    lines.append("# TYPE erp_security_events_total counter")
    for key in ("received", "processed", "dropped", "alerts_sent"):
        lines.append(f'erp_security_events_total{{state="{key}"}} {monitor[key]}')

    return "\n".join(lines) + "\n"
