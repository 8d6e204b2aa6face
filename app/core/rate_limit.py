"""
Rate Limiting for the ERP API.

Fixed-window counters in the shared store, per-endpoint policies,
penalty escalation and IP allow/deny lists.

Limit strings use the same notation as slowapi ("5/minute",
"1000/hour") and are parsed with the `limits` package slowapi is built on.

Usage:
    from app.core.rate_limit import RateLimiter, RateLimitConfig

    limiter = RateLimiter(RateLimitConfig(), store)
    decision = await limiter.check("POST", "/api/v1/auth/login", "1.2.3.4", principal)
    if not decision.allowed:
        ...
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from limits import parse as parse_limit

from app.core.cache import InMemoryStore, Store, StoreError
from app.core.context import ANONYMOUS, RequestPrincipal, ip_in_networks, parse_networks
from app.core.errors import ErrorCode

logger = logging.getLogger(__name__)


# =============================================================================
# Policies
# =============================================================================

@dataclass(frozen=True)
class RatePolicy:
    """Requests-per-window with the sources that make up the client id."""
    limit: int
    window_seconds: int = 60
    by_ip: bool = True
    by_user: bool = False
    by_api_key: bool = False

    def __post_init__(self):
        if self.limit < 1:
            raise ValueError("rate limit must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("rate window must be positive")
        if not (self.by_ip or self.by_user or self.by_api_key):
            raise ValueError("rate policy must key on at least one of ip, user, api key")

    @classmethod
    def parse(cls, value: str, by_ip: bool = True, by_user: bool = False, by_api_key: bool = False) -> "RatePolicy":
        """Build a policy from a slowapi-style limit string, e.g. "5/minute"."""
        item = parse_limit(value)
        return cls(
            limit=item.amount,
            window_seconds=item.get_expiry(),
            by_ip=by_ip,
            by_user=by_user,
            by_api_key=by_api_key,
        )


def default_endpoint_policies() -> dict[str, RatePolicy]:
    return {
        # Brute-force sensitive authentication flows
        "POST:/api/v1/auth/login": RatePolicy.parse("5/minute"),
        "POST:/api/v1/auth/register": RatePolicy.parse("3/minute"),
        "POST:/api/v1/users/register": RatePolicy.parse("3/minute"),
        "POST:/api/v1/auth/forgot-password": RatePolicy.parse("2/hour"),
        "POST:/api/v1/auth/reset-password": RatePolicy.parse("1/hour"),
        # Catalogue reads and order writes
        "GET:/api/v1/products": RatePolicy.parse("50/minute"),
        "POST:/api/v1/orders": RatePolicy.parse("20/minute", by_ip=False, by_user=True),
        # Back office
        "GET:/api/v1/admin/*": RatePolicy.parse("30/minute", by_user=True),
    }


@dataclass
class RateLimitConfig:
    default_policy: RatePolicy = field(default_factory=lambda: RatePolicy.parse("100/minute"))
    endpoint_policies: dict[str, RatePolicy] = field(default_factory=default_endpoint_policies)
    allow_list: list[str] = field(default_factory=list)
    deny_list: list[str] = field(default_factory=list)
    admin_exempt: bool = True
    key_prefix: str = "rate_limit:"
    penalty_enabled: bool = True
    penalty_seconds: int = 300
    penalty_factor: float = 2.0

    @property
    def penalty_ttl(self) -> int:
        return max(1, int(self.penalty_seconds * self.penalty_factor))


# =============================================================================
# Decisions
# =============================================================================

@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int = 0
    remaining: int = 0
    reset: int = 0
    retry_after: int | None = None
    code: ErrorCode | None = None
    status_code: int = 200
    message: str = ""
    client_id: str = ""
    policy: RatePolicy | None = None

    @property
    def limited(self) -> bool:
        """True when a counter was consulted (rate-limit headers apply)."""
        return self.policy is not None and self.limit > 0

    def headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.limited:
            headers["X-RateLimit-Limit"] = str(self.limit)
            headers["X-RateLimit-Remaining"] = str(self.remaining)
            headers["X-RateLimit-Reset"] = str(self.reset)
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def window_label(window_start: int) -> str:
    """UTC ISO minute of the window start; seconds appended when not minute aligned."""
    moment = datetime.fromtimestamp(window_start, timezone.utc)
    if window_start % 60:
        return moment.strftime("%Y-%m-%dT%H:%M:%S")
    return moment.strftime("%Y-%m-%dT%H:%M")


# =============================================================================
# Limiter
# =============================================================================

class RateLimiter:
    """
    Fixed-window limiter over the shared store.

    The store's atomic increment is the only source of truth: concurrent
    requests for one client id see strictly increasing counts, so exactly
    one of them observes the value that crosses the limit.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        store: Store | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RateLimitConfig()
        if store is None:
            logger.warning("Rate limiter has no shared store; using per-process counters")
            store = InMemoryStore()
        self.store = store
        self._clock = clock
        self._allow = parse_networks(self.config.allow_list)
        self._deny = parse_networks(self.config.deny_list)
        self._exact: dict[str, RatePolicy] = {}
        self._wildcards: list[tuple[str, RatePolicy]] = []
        for key, policy in self.config.endpoint_policies.items():
            if key.endswith("*"):
                self._wildcards.append((key[:-1], policy))
            else:
                self._exact[key] = policy
        # Longest prefix first
        self._wildcards.sort(key=lambda item: len(item[0]), reverse=True)

    def select_policy(self, method: str, path: str) -> RatePolicy:
        key = f"{method.upper()}:{path}"
        policy = self._exact.get(key)
        if policy is not None:
            return policy
        for prefix, wildcard_policy in self._wildcards:
            if key.startswith(prefix):
                return wildcard_policy
        return self.config.default_policy

    @staticmethod
    def client_id(policy: RatePolicy, ip: str | None, principal: RequestPrincipal = ANONYMOUS) -> str:
        parts = []
        if policy.by_ip and ip:
            parts.append(f"ip:{ip}")
        if policy.by_user and principal.user_id:
            parts.append(f"user:{principal.user_id}")
        if policy.by_api_key and principal.api_key_id:
            parts.append(f"api:{principal.api_key_id}")
        return ":".join(parts)

    def counter_key(self, client_id: str, window_start: int) -> str:
        return f"{self.config.key_prefix}{client_id}:{window_label(window_start)}"

    def penalty_key(self, client_id: str) -> str:
        return f"{self.config.key_prefix}penalty:{client_id}"

    async def check(
        self,
        method: str,
        path: str,
        ip: str | None,
        principal: RequestPrincipal = ANONYMOUS,
    ) -> RateLimitDecision:
        """Admission decision for one request."""
        if ip and self._deny and ip_in_networks(ip, self._deny):
            logger.warning("Blocked request from denied IP %s", ip)
            return RateLimitDecision(
                allowed=False, code=ErrorCode.IP_BLOCKED, status_code=403,
                message="Access denied", client_id=f"ip:{ip}",
            )

        if self._allow and not (ip and ip_in_networks(ip, self._allow)):
            logger.warning("Rejected request from IP %s outside allow list", ip)
            return RateLimitDecision(
                allowed=False, code=ErrorCode.IP_NOT_ALLOWED, status_code=403,
                message="Access denied", client_id=f"ip:{ip}",
            )

        policy = self.select_policy(method, path)
        client_id = self.client_id(policy, ip, principal)
        if not client_id:
            return RateLimitDecision(allowed=True)

        now = self._clock()
        window = policy.window_seconds
        window_start = int(now // window) * window
        reset = window_start + window

        try:
            if self.config.penalty_enabled:
                penalty_ttl = await self.store.ttl(self.penalty_key(client_id))
                if penalty_ttl != -2:
                    retry_after = penalty_ttl if penalty_ttl > 0 else self.config.penalty_ttl
                    logger.info("Client %s in penalty box for %ss", client_id, retry_after)
                    return RateLimitDecision(
                        allowed=False, limit=policy.limit, remaining=0,
                        reset=int(now) + retry_after, retry_after=retry_after,
                        code=ErrorCode.RATE_LIMIT_PENALTY, status_code=429,
                        message="Too many requests; temporarily blocked",
                        client_id=client_id, policy=policy,
                    )

            if self.config.admin_exempt and principal.is_admin:
                return RateLimitDecision(allowed=True, client_id=client_id)

            count = await self.store.incr_with_ttl(self.counter_key(client_id, window_start), window)
        except StoreError as e:
            logger.error("Rate limit store error, failing open: %s", e)
            return RateLimitDecision(allowed=True, client_id=client_id)

        if count <= policy.limit:
            return RateLimitDecision(
                allowed=True, limit=policy.limit, remaining=policy.limit - count,
                reset=reset, client_id=client_id, policy=policy,
            )

        retry_after = max(1, math.ceil(reset - now))
        if self.config.penalty_enabled:
            retry_after = self.config.penalty_ttl
            # Only the request that crosses the limit installs the marker
            if count == policy.limit + 1:
                try:
                    await self.store.set(self.penalty_key(client_id), str(int(now)), ttl=self.config.penalty_ttl)
                except StoreError as e:
                    logger.error("Failed to set rate limit penalty for %s: %s", client_id, e)

        logger.warning(
            "Rate limit exceeded: %s on %s %s (%d/%d)",
            client_id, method, path, count, policy.limit,
            extra={"client_id": client_id, "path": path},
        )
        return RateLimitDecision(
            allowed=False, limit=policy.limit, remaining=0, reset=reset,
            retry_after=retry_after, code=ErrorCode.RATE_LIMIT_EXCEEDED, status_code=429,
            message="Rate limit exceeded", client_id=client_id, policy=policy,
        )
