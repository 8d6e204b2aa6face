"""
CORS Policy and Security Header Tests
"""

import pytest
from starlette.responses import JSONResponse

from app.core.cors import CORSConfig, CORSPolicy
from app.core.security_headers import SecurityHeaders, SecurityHeadersConfig

ORIGIN = "https://erp.example.com"


# =============================================================================
# CORS
# =============================================================================

@pytest.fixture
def policy() -> CORSPolicy:
    return CORSPolicy(CORSConfig(origins=[ORIGIN, "https://*.erp.example.com"]))


def test_no_origin_is_left_alone(policy):
    decision = policy.evaluate(None, "GET")
    assert decision.allowed
    assert not decision.reject
    assert decision.headers == {}


def test_allowed_origin_gets_cors_headers(policy):
    decision = policy.evaluate(ORIGIN, "GET")
    assert decision.allowed
    assert decision.headers["Access-Control-Allow-Origin"] == ORIGIN
    assert decision.headers["Access-Control-Allow-Credentials"] == "true"
    assert "X-Request-ID" in decision.headers["Access-Control-Expose-Headers"]
    assert decision.headers["Vary"] == "Origin"


def test_wildcard_subdomain(policy):
    assert policy.evaluate("https://eu.erp.example.com", "GET").allowed


def test_allowed_preflight(policy):
    decision = policy.evaluate(ORIGIN, "OPTIONS")
    assert decision.preflight
    assert decision.allowed
    assert "PATCH" in decision.headers["Access-Control-Allow-Methods"]
    assert "X-CSRF-Token" in decision.headers["Access-Control-Allow-Headers"]


def test_unknown_preflight_rejected(policy):
    decision = policy.evaluate("https://evil.example", "OPTIONS")
    assert decision.reject
    assert decision.headers == {}


def test_unknown_simple_request_only_rejected_in_production(policy):
    decision = policy.evaluate("https://evil.example", "GET")
    assert not decision.allowed
    assert not decision.reject

    production = CORSPolicy(CORSConfig(origins=[ORIGIN], production=True))
    assert production.evaluate("https://evil.example", "GET").reject


def test_wildcard_origin_ignored_in_production():
    assert CORSPolicy(CORSConfig(origins=["*"])).is_allowed("https://anything.example")
    assert not CORSPolicy(CORSConfig(origins=["*"], production=True)).is_allowed("https://anything.example")


def test_credentials_header_optional():
    policy = CORSPolicy(CORSConfig(origins=[ORIGIN], credentials=False))
    assert "Access-Control-Allow-Credentials" not in policy.response_headers(ORIGIN)


# =============================================================================
# Security headers
# =============================================================================

def test_default_headers():
    headers = SecurityHeaders().headers_for("/api/v1/products")
    assert headers["X-Content-Type-Options"] == "nosniff"
    assert headers["X-Frame-Options"] == "DENY"
    assert headers["X-XSS-Protection"] == "1; mode=block"
    assert headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert "camera=()" in headers["Permissions-Policy"]
    assert "Strict-Transport-Security" not in headers
    assert "Content-Security-Policy" not in headers
    assert "Cache-Control" not in headers


def test_production_preset_adds_hsts_and_csp():
    headers = SecurityHeaders(SecurityHeadersConfig.production_preset()).headers_for("/")
    assert headers["Strict-Transport-Security"] == "max-age=31536000; includeSubDomains"
    csp = headers["Content-Security-Policy"]
    assert "default-src 'self'" in csp
    assert "frame-ancestors 'none'" in csp
    assert csp.endswith("upgrade-insecure-requests")


def test_hsts_preload():
    config = SecurityHeadersConfig(production=True, hsts_enabled=True, hsts_preload=True)
    assert config.build_hsts().endswith("; preload")


def test_development_preset_relaxes_script_src():
    config = SecurityHeadersConfig.development_preset()
    assert "'unsafe-eval'" in config.csp["script-src"]
    assert "Content-Security-Policy" not in SecurityHeaders(config).headers_for("/")


def test_api_preset():
    headers = SecurityHeaders(SecurityHeadersConfig.api_preset()).headers_for("/")
    assert "script-src 'none'" in headers["Content-Security-Policy"]
    assert headers["X-API-Version"] == "v1"


@pytest.mark.parametrize("path", ["/api/v1/auth/login", "/api/v1/users/7", "/api/v1/admin/audit"])
def test_sensitive_paths_are_not_cached(path):
    headers = SecurityHeaders().headers_for(path)
    assert headers["Cache-Control"] == "no-store, no-cache, must-revalidate, proxy-revalidate"
    assert headers["Pragma"] == "no-cache"
    assert headers["Expires"] == "0"


def test_apply_sets_headers_on_response():
    response = JSONResponse({"ok": True})
    SecurityHeaders(SecurityHeadersConfig(custom_headers={"X-Service": "erp"})).apply(response, "/")
    assert response.headers["X-Service"] == "erp"
    assert response.headers["X-DNS-Prefetch-Control"] == "off"
