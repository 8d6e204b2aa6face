"""
CSRF Protection Tests
Double-submit tokens, bypass order, origin matching and cookie attributes.
"""

import pytest
from starlette.datastructures import Headers
from starlette.responses import Response

from app.core import csrf
from app.core.csrf import CSRFConfig, CSRFProtector, OriginMatcher, generate_token, tokens_match

TOKEN = "c2VjcmV0LXRva2VuLXZhbHVlLWZvci10ZXN0cw"


def headers(**values) -> Headers:
    return Headers({k.replace("_", "-"): v for k, v in values.items()})


@pytest.fixture
def protector() -> CSRFProtector:
    return CSRFProtector(CSRFConfig(trusted_origins=["https://app.example.com", "https://*.partner.example"]))


# =============================================================================
# Tokens
# =============================================================================

def test_generated_tokens_are_urlsafe_and_unique():
    tokens = {generate_token() for _ in range(100)}
    assert len(tokens) == 100
    assert all(len(t) == 43 for t in tokens)
    assert all(set(t) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_") for t in tokens)


def test_tokens_compared_in_constant_time(monkeypatch):
    calls = []

    def fake_compare(a, b):
        calls.append((a, b))
        return a == b

    monkeypatch.setattr(csrf.hmac, "compare_digest", fake_compare)
    assert tokens_match(TOKEN, TOKEN)
    assert not tokens_match(TOKEN, TOKEN[:-1] + "X")
    assert len(calls) == 2


# =============================================================================
# Protect
# =============================================================================

def test_safe_methods_receive_a_token(protector):
    result = protector.protect("GET", "/api/v1/products", headers(), {})
    assert result.ok
    assert result.issue_token


def test_excluded_paths_receive_a_token(protector):
    result = protector.protect("POST", "/api/v1/auth/login", headers(), {})
    assert result.ok
    assert result.issue_token


def test_missing_cookie_rejected(protector):
    result = protector.protect("POST", "/api/v1/orders", headers(x_csrf_token=TOKEN), {})
    assert not result.ok
    assert result.error == "CSRF cookie missing"


def test_missing_request_token_rejected(protector):
    result = protector.protect("POST", "/api/v1/orders", headers(), {"_csrf": TOKEN})
    assert result.error == "CSRF token missing from request"


def test_mismatched_token_rejected(protector):
    result = protector.protect("PUT", "/api/v1/users/1", headers(x_csrf_token="other"), {"_csrf": TOKEN})
    assert not result.ok
    assert result.error == "Invalid CSRF token"


def test_matching_header_accepted(protector):
    result = protector.protect("DELETE", "/api/v1/users/1", headers(x_csrf_token=TOKEN), {"_csrf": TOKEN})
    assert result.ok
    assert result.issue_token is None


def test_token_sources_in_order(protector):
    cookies = {"_csrf": TOKEN}
    # Form field and query parameter are accepted when the header is absent
    assert protector.protect("POST", "/x", headers(), cookies, form={"csrf_token": TOKEN}).ok
    assert protector.protect("POST", "/x", headers(), cookies, query={"csrf_token": TOKEN}).ok
    # Header wins over a correct form value
    result = protector.protect(
        "POST", "/x", headers(x_csrf_token="wrong"), cookies, form={"csrf_token": TOKEN},
    )
    assert not result.ok


def test_trusted_origin_bypasses(protector):
    result = protector.protect("POST", "/api/v1/orders", headers(origin="https://app.example.com"), {})
    assert result.ok
    assert result.bypass == "trusted"


def test_trusted_referer_bypasses(protector):
    result = protector.protect(
        "POST", "/api/v1/orders", headers(referer="https://eu.partner.example/checkout?step=2"), {},
    )
    assert result.bypass == "trusted"


def test_trusted_ip_bypasses():
    protector = CSRFProtector(CSRFConfig(trusted_ips=["10.0.0.5"]))
    assert protector.protect("POST", "/x", headers(), {}, client_ip="10.0.0.5").bypass == "trusted"
    assert not protector.protect("POST", "/x", headers(), {}, client_ip="10.0.0.6").ok


def test_api_key_bypass(protector):
    result = protector.protect("POST", "/api/v1/orders", headers(), {}, api_key_authenticated=True)
    assert result.bypass == "api_key"

    strict = CSRFProtector(CSRFConfig(skip_with_api_key=False))
    assert not strict.protect("POST", "/api/v1/orders", headers(), {}, api_key_authenticated=True).ok


# =============================================================================
# Origin Matching
# =============================================================================

def test_wildcards_are_anchored():
    matcher = OriginMatcher(["https://*.example.com"])
    assert matcher.matches("https://shop.example.com")
    assert not matcher.matches("https://example.com.evil.net")
    assert not matcher.matches("http://shop.example.com")
    assert not matcher.matches(None)


def test_referer_must_be_absolute():
    matcher = OriginMatcher(["https://app.example.com"])
    assert matcher.matches_referer("https://app.example.com/orders/1")
    assert not matcher.matches_referer("/orders/1")
    assert not matcher.matches_referer("")


def test_origin_cache_is_bounded():
    matcher = OriginMatcher(["https://app.example.com"], cache_size=3)
    for i in range(10):
        matcher.matches(f"https://attacker-{i}.example")
    assert matcher.cache_info() == {"size": 3, "max_size": 3}


def test_origin_cache_evicts_least_recently_used():
    matcher = OriginMatcher(["https://a.example"], cache_size=2)
    matcher.matches("https://a.example")
    matcher.matches("https://b.example")
    matcher.matches("https://a.example")
    matcher.matches("https://c.example")
    assert list(matcher._cache) == ["https://a.example", "https://c.example"]


# =============================================================================
# Configuration and cookies
# =============================================================================

@pytest.mark.parametrize("kwargs", [
    {"same_site": "sometimes"},
    {"same_site": "none", "secure": False},
    {"token_length": 8},
])
def test_invalid_configs_rejected(kwargs):
    with pytest.raises(ValueError):
        CSRFConfig(**kwargs)


def test_development_config():
    config = CSRFConfig.development()
    assert config.secure is False
    assert config.same_site == "lax"
    assert CSRFProtector(config).origins.matches("http://localhost:5173")


def test_cookie_attributes(protector):
    response = Response()
    protector.set_cookie(response, TOKEN)
    cookie = response.headers["set-cookie"]
    assert cookie.startswith(f"_csrf={TOKEN}")
    assert "Max-Age=86400" in cookie
    assert "Secure" in cookie
    assert "SameSite=strict" in cookie
    assert "HttpOnly" not in cookie
