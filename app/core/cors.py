"""
CORS origin policy for the ERP API.

Runs inside the security pipeline rather than as Starlette's
CORSMiddleware so unknown origins can be rejected with the standard
error shape in production, and so the origin cache is shared with CSRF.
"""

import logging
from dataclasses import dataclass, field

from app.core.csrf import OriginMatcher

logger = logging.getLogger(__name__)

EXPOSED_HEADERS = ("X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset")


@dataclass
class CORSConfig:
    origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    methods: tuple[str, ...] = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")
    headers: tuple[str, ...] = (
        "Authorization", "Content-Type", "X-CSRF-Token", "X-API-Key", "X-Request-ID",
    )
    credentials: bool = True
    max_age: int = 600
    production: bool = False
    origin_cache_size: int = 1024


@dataclass
class CORSDecision:
    origin: str | None
    allowed: bool
    preflight: bool = False
    reject: bool = False
    headers: dict[str, str] = field(default_factory=dict)


class CORSPolicy:
    """Evaluates the Origin header of one request."""

    def __init__(self, config: CORSConfig | None = None, matcher: OriginMatcher | None = None):
        self.config = config or CORSConfig()
        origins = list(self.config.origins)
        if "*" in origins and self.config.production:
            logger.warning("Wildcard CORS origin ignored in production")
            origins = [o for o in origins if o != "*"]
        self.matcher = matcher or OriginMatcher(origins, self.config.origin_cache_size)

    def is_allowed(self, origin: str) -> bool:
        return self.matcher.matches(origin)

    def response_headers(self, origin: str) -> dict[str, str]:
        config = self.config
        headers = {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Methods": ", ".join(config.methods),
            "Access-Control-Allow-Headers": ", ".join(config.headers),
            "Access-Control-Max-Age": str(config.max_age),
            "Access-Control-Expose-Headers": ", ".join(EXPOSED_HEADERS),
            "Vary": "Origin",
        }
        if config.credentials:
            headers["Access-Control-Allow-Credentials"] = "true"
        return headers

    def evaluate(self, origin: str | None, method: str) -> CORSDecision:
        """
        No Origin: nothing to do. Preflight: 204 when allowed, rejected
        otherwise. Simple requests from unknown origins are rejected only
        in production.
        """
        preflight = method.upper() == "OPTIONS"
        if not origin:
            return CORSDecision(origin=None, allowed=True)

        allowed = self.is_allowed(origin)
        if not allowed:
            logger.warning("CORS request denied - origin not allowed: %s", origin)
            return CORSDecision(
                origin=origin,
                allowed=False,
                preflight=preflight,
                reject=preflight or self.config.production,
            )

        return CORSDecision(
            origin=origin,
            allowed=True,
            preflight=preflight,
            headers=self.response_headers(origin),
        )
