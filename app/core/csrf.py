"""
CSRF Protection for the ERP API.

Stateless double-submit tokens: safe methods receive a rolling token in
the `_csrf` cookie; state-changing requests must echo the cookie value in
the X-CSRF-Token header, the csrf_token form field, or the csrf_token
query parameter. Comparison is constant time.

Usage:
    protector = CSRFProtector(CSRFConfig.development())
    result = protector.protect(method, path, headers, cookies, ...)
    if result.issue_token:
        protector.set_cookie(response, result.issue_token)
"""

import hmac
import logging
import re
import secrets
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Mapping
from urllib.parse import urlsplit

from starlette.responses import Response

logger = logging.getLogger(__name__)

SAFE_METHODS = ("GET", "HEAD", "OPTIONS", "TRACE")

DEFAULT_EXCLUDED_PATHS = (
    "/health",
    "/metrics",
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/users/register",
    "/api/v1/auth/forgot-password",
    "/api/v1/auth/reset-password",
)


def generate_token(length: int = 32) -> str:
    """`length` CSPRNG bytes, base64url encoded."""
    return secrets.token_urlsafe(length)


def tokens_match(cookie_token: str, request_token: str) -> bool:
    """Constant-time comparison; never short-circuits on the first differing byte."""
    return hmac.compare_digest(cookie_token.encode("utf-8"), request_token.encode("utf-8"))


# =============================================================================
# Origin Matching
# =============================================================================

class OriginMatcher:
    """
    Matches origins against exact entries and `*` wildcards.

    Verdicts are memoised in a bounded LRU so arbitrary client-supplied
    origins cannot grow the cache without limit.
    """

    def __init__(self, patterns: list[str] | tuple[str, ...], cache_size: int = 1024):
        self.patterns = list(patterns)
        self.cache_size = cache_size
        self._exact = {p for p in self.patterns if "*" not in p}
        self._wildcards = [
            re.compile("^" + ".*".join(re.escape(part) for part in p.split("*")) + "$")
            for p in self.patterns
            if "*" in p
        ]
        self._cache: OrderedDict[str, bool] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def allows_any(self) -> bool:
        return "*" in self.patterns

    def _compute(self, origin: str) -> bool:
        if origin in self._exact:
            return True
        return any(pattern.match(origin) for pattern in self._wildcards)

    def matches(self, origin: str | None) -> bool:
        if not origin or not self.patterns:
            return False
        with self._lock:
            verdict = self._cache.get(origin)
            if verdict is not None:
                self._cache.move_to_end(origin)
                return verdict
        verdict = self._compute(origin)
        with self._lock:
            self._cache[origin] = verdict
            self._cache.move_to_end(origin)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return verdict

    def matches_referer(self, referer: str | None) -> bool:
        if not referer:
            return False
        parts = urlsplit(referer)
        if not parts.scheme or not parts.netloc:
            return False
        return self.matches(f"{parts.scheme}://{parts.netloc}")

    def cache_info(self) -> dict[str, int]:
        with self._lock:
            return {"size": len(self._cache), "max_size": self.cache_size}


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class CSRFConfig:
    token_length: int = 32
    cookie_name: str = "_csrf"
    header_name: str = "X-CSRF-Token"
    form_field: str = "csrf_token"
    cookie_path: str = "/"
    cookie_domain: str | None = None
    max_age: int = 24 * 3600
    secure: bool = True
    http_only: bool = False
    same_site: str = "strict"
    excluded_methods: tuple[str, ...] = SAFE_METHODS
    excluded_paths: tuple[str, ...] = DEFAULT_EXCLUDED_PATHS
    trusted_origins: list[str] = field(default_factory=list)
    trusted_ips: list[str] = field(default_factory=list)
    skip_with_api_key: bool = True
    origin_cache_size: int = 1024

    def __post_init__(self):
        self.same_site = self.same_site.lower()
        if self.same_site not in ("strict", "lax", "none"):
            raise ValueError(f"invalid SameSite value: {self.same_site}")
        if self.same_site == "none" and not self.secure:
            raise ValueError("SameSite=None requires the Secure cookie flag")
        if self.token_length < 16:
            raise ValueError("CSRF tokens must be at least 16 bytes")

    @classmethod
    def development(cls, **overrides) -> "CSRFConfig":
        values = {
            "secure": False,
            "same_site": "lax",
            "trusted_origins": ["http://localhost:*", "http://127.0.0.1:*"],
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class CSRFResult:
    ok: bool
    issue_token: str | None = None
    error: str | None = None
    bypass: str | None = None


# =============================================================================
# Protector
# =============================================================================

class CSRFProtector:
    def __init__(self, config: CSRFConfig | None = None):
        self.config = config or CSRFConfig()
        self.origins = OriginMatcher(self.config.trusted_origins, self.config.origin_cache_size)
        self._trusted_ips = set(self.config.trusted_ips)
        self._excluded_methods = {m.upper() for m in self.config.excluded_methods}

    def is_excluded_path(self, path: str) -> bool:
        return any(path.startswith(excluded) for excluded in self.config.excluded_paths)

    def is_trusted(self, headers: Mapping[str, str], client_ip: str | None) -> bool:
        if client_ip and client_ip in self._trusted_ips:
            return True
        return self.origins.matches(headers.get("origin")) or self.origins.matches_referer(headers.get("referer"))

    def request_token(
        self,
        headers: Mapping[str, str],
        form: Mapping[str, str] | None,
        query: Mapping[str, str],
    ) -> str | None:
        """Header first, then form field, then query parameter."""
        token = headers.get(self.config.header_name)
        if token:
            return token
        if form:
            token = form.get(self.config.form_field)
            if token:
                return token
        return query.get(self.config.form_field) or None

    def protect(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
        query: Mapping[str, str] | None = None,
        form: Mapping[str, str] | None = None,
        client_ip: str | None = None,
        api_key_authenticated: bool = False,
    ) -> CSRFResult:
        """Decide whether the request may proceed and whether to issue a token."""
        if self.is_trusted(headers, client_ip):
            return CSRFResult(ok=True, bypass="trusted")

        if api_key_authenticated and self.config.skip_with_api_key:
            return CSRFResult(ok=True, bypass="api_key")

        if method.upper() in self._excluded_methods or self.is_excluded_path(path):
            return CSRFResult(ok=True, issue_token=generate_token(self.config.token_length))

        cookie_token = cookies.get(self.config.cookie_name)
        if not cookie_token:
            logger.warning("CSRF cookie missing: %s %s from %s", method, path, client_ip)
            return CSRFResult(ok=False, error="CSRF cookie missing")

        request_token = self.request_token(headers, form, query or {})
        if not request_token:
            logger.warning("CSRF token missing from request: %s %s from %s", method, path, client_ip)
            return CSRFResult(ok=False, error="CSRF token missing from request")

        if not tokens_match(cookie_token, request_token):
            logger.warning("CSRF token validation failed: %s %s from %s", method, path, client_ip)
            return CSRFResult(ok=False, error="Invalid CSRF token")

        return CSRFResult(ok=True)

    def set_cookie(self, response: Response, token: str) -> None:
        config = self.config
        response.set_cookie(
            key=config.cookie_name,
            value=token,
            max_age=config.max_age,
            path=config.cookie_path,
            domain=config.cookie_domain,
            secure=config.secure,
            httponly=config.http_only,
            samesite=config.same_site,
        )
