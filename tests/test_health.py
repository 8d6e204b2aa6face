"""
ERP API - Health & Monitoring Tests
Tests for health checks, readiness, and metrics.
"""

import re

import pytest
from httpx import AsyncClient


# =============================================================================
# Health Check Tests
# =============================================================================

@pytest.mark.anyio
async def test_healthz(client: AsyncClient):
    """Test basic health check endpoint."""
    response = await client.get("/healthz")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "timestamp" in data


@pytest.mark.anyio
async def test_health_alias(client: AsyncClient):
    """Test /health alias endpoint."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.anyio
async def test_healthz_response_format(client: AsyncClient):
    response = await client.get("/healthz")
    data = response.json()
    assert re.match(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}", data["timestamp"])


@pytest.mark.anyio
async def test_health_carries_security_headers(client: AsyncClient):
    response = await client.get("/healthz")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "X-Request-ID" in response.headers


# =============================================================================
# Readiness Check Tests
# =============================================================================

@pytest.mark.anyio
async def test_readyz(client: AsyncClient):
    response = await client.get("/readyz")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"]["store"] is True
    assert data["checks"]["audit_file"] is True


@pytest.mark.anyio
async def test_readyz_reports_store_outage(client: AsyncClient, coordinator):
    async def broken_ping():
        return False

    coordinator.store.ping = broken_ping
    response = await client.get("/readyz")
    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


# =============================================================================
# Metrics Tests
# =============================================================================

@pytest.mark.anyio
async def test_metrics_prometheus_format(client: AsyncClient):
    await client.get("/healthz")
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]
    body = response.text
    assert "erp_uptime_seconds" in body
    assert 'erp_security_requests_total{outcome="requests"}' in body
    assert 'erp_security_stage_enabled{stage="csrf"} 1' in body
