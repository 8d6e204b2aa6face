"""
Rate Limiter Tests
Policies, fixed windows, penalties, IP lists and store failure handling.
"""

import asyncio

import pytest

from app.core.cache import InMemoryStore, StoreError
from app.core.context import AuthMethod, RequestPrincipal
from app.core.errors import ErrorCode
from app.core.rate_limit import (
    RateLimitConfig,
    RateLimiter,
    RatePolicy,
    window_label,
)

LOGIN = ("POST", "/api/v1/auth/login")
IP = "203.0.113.7"


class FakeClock:
    def __init__(self, now: float = 1_700_000_040.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenStore(InMemoryStore):
    async def incr_with_ttl(self, key, ttl):
        raise StoreError("connection refused")

    async def ttl(self, key):
        raise StoreError("connection refused")


def make_limiter(clock=None, **overrides) -> RateLimiter:
    return RateLimiter(RateLimitConfig(**overrides), InMemoryStore(), clock=clock or FakeClock())


# =============================================================================
# Policies
# =============================================================================

def test_policy_parse_uses_limit_notation():
    policy = RatePolicy.parse("5/minute")
    assert policy.limit == 5
    assert policy.window_seconds == 60
    assert RatePolicy.parse("2/hour").window_seconds == 3600


@pytest.mark.parametrize("kwargs", [
    {"limit": 0},
    {"limit": 5, "window_seconds": 0},
    {"limit": 5, "by_ip": False},
])
def test_invalid_policies_rejected(kwargs):
    with pytest.raises(ValueError):
        RatePolicy(**kwargs)


def test_policy_selection_prefers_exact_then_longest_wildcard():
    limiter = make_limiter(endpoint_policies={
        "GET:/api/v1/admin/*": RatePolicy(30),
        "GET:/api/v1/admin/audit/*": RatePolicy(10),
        "GET:/api/v1/admin/audit/export": RatePolicy(2),
    })
    assert limiter.select_policy("GET", "/api/v1/admin/audit/export").limit == 2
    assert limiter.select_policy("GET", "/api/v1/admin/audit/today").limit == 10
    assert limiter.select_policy("GET", "/api/v1/admin/users").limit == 30
    assert limiter.select_policy("GET", "/api/v1/products/1").limit == 100


def test_default_endpoint_policies():
    limiter = make_limiter()
    assert limiter.select_policy(*LOGIN).limit == 5
    assert limiter.select_policy("post", "/api/v1/auth/login").limit == 5
    orders = limiter.select_policy("POST", "/api/v1/orders")
    assert orders.by_user and not orders.by_ip


def test_client_id_concatenates_enabled_sources():
    principal = RequestPrincipal(user_id="u1", api_key_id="k1", auth_method=AuthMethod.API_KEY)
    policy = RatePolicy(10, by_ip=True, by_user=True, by_api_key=True)
    assert RateLimiter.client_id(policy, IP, principal) == f"ip:{IP}:user:u1:api:k1"
    assert RateLimiter.client_id(RatePolicy(10, by_ip=False, by_user=True), IP) == ""


def test_window_label():
    assert window_label(1_700_000_040) == "2023-11-14T22:14"
    assert window_label(1_700_000_050) == "2023-11-14T22:14:10"


# =============================================================================
# Fixed window
# =============================================================================

@pytest.mark.anyio
async def test_limit_plus_one_is_rejected():
    limiter = make_limiter(penalty_enabled=False)
    decisions = [await limiter.check(*LOGIN, IP) for _ in range(6)]

    assert all(d.allowed for d in decisions[:5])
    assert [d.remaining for d in decisions[:5]] == [4, 3, 2, 1, 0]
    assert not decisions[5].allowed
    assert decisions[5].status_code == 429
    assert decisions[5].code == ErrorCode.RATE_LIMIT_EXCEEDED


@pytest.mark.anyio
async def test_headers_and_reset_epoch():
    clock = FakeClock(1_700_000_070.0)
    limiter = make_limiter(clock=clock, penalty_enabled=False)
    decision = await limiter.check(*LOGIN, IP)
    headers = decision.headers()
    assert headers["X-RateLimit-Limit"] == "5"
    assert headers["X-RateLimit-Remaining"] == "4"
    assert headers["X-RateLimit-Reset"] == "1700000100"
    assert "Retry-After" not in headers

    for _ in range(5):
        decision = await limiter.check(*LOGIN, IP)
    assert decision.headers()["Retry-After"] == "30"


@pytest.mark.anyio
async def test_new_window_resets_counter():
    clock = FakeClock()
    limiter = make_limiter(clock=clock, penalty_enabled=False)
    for _ in range(6):
        await limiter.check(*LOGIN, IP)
    clock.now += 60
    assert (await limiter.check(*LOGIN, IP)).allowed


@pytest.mark.anyio
async def test_concurrent_requests_never_exceed_limit():
    limiter = make_limiter(penalty_enabled=False)
    decisions = await asyncio.gather(*(limiter.check(*LOGIN, IP) for _ in range(20)))
    assert sum(d.allowed for d in decisions) == 5


@pytest.mark.anyio
async def test_identifiers_are_counted_separately():
    limiter = make_limiter(penalty_enabled=False)
    for _ in range(5):
        await limiter.check(*LOGIN, IP)
    assert not (await limiter.check(*LOGIN, IP)).allowed
    assert (await limiter.check(*LOGIN, "198.51.100.1")).allowed


@pytest.mark.anyio
async def test_user_keyed_policy_skips_anonymous_callers():
    limiter = make_limiter()
    decision = await limiter.check("POST", "/api/v1/orders", IP)
    assert decision.allowed
    assert not decision.limited


# =============================================================================
# Penalty
# =============================================================================

@pytest.mark.anyio
async def test_penalty_applies_after_overflow():
    clock = FakeClock()
    limiter = make_limiter(clock=clock)
    for _ in range(5):
        assert (await limiter.check(*LOGIN, IP)).allowed

    overflow = await limiter.check(*LOGIN, IP)
    assert overflow.code == ErrorCode.RATE_LIMIT_EXCEEDED
    assert overflow.retry_after == 600

    # A new window does not lift the penalty
    clock.now += 120
    blocked = await limiter.check(*LOGIN, IP)
    assert blocked.status_code == 429
    assert blocked.code == ErrorCode.RATE_LIMIT_PENALTY
    assert 0 < blocked.retry_after <= 600


@pytest.mark.anyio
async def test_penalty_does_not_increment_counters():
    clock = FakeClock()
    limiter = make_limiter(clock=clock)
    for _ in range(6):
        await limiter.check(*LOGIN, IP)
    for _ in range(3):
        await limiter.check(*LOGIN, IP)
    counter = limiter.counter_key(f"ip:{IP}", int(clock.now))
    assert counter == f"rate_limit:ip:{IP}:2023-11-14T22:14"
    assert await limiter.store.get(counter) == "6"


@pytest.mark.anyio
async def test_penalty_ttl_is_base_times_factor():
    limiter = make_limiter(penalty_seconds=30, penalty_factor=3.0)
    for _ in range(6):
        await limiter.check(*LOGIN, IP)
    ttl = await limiter.store.ttl(limiter.penalty_key(f"ip:{IP}"))
    assert 0 < ttl <= 90


# =============================================================================
# Allow / deny lists and exemptions
# =============================================================================

@pytest.mark.anyio
async def test_deny_list_checked_first():
    limiter = make_limiter(deny_list=["203.0.113.0/24"], allow_list=["203.0.113.7"])
    decision = await limiter.check(*LOGIN, IP)
    assert decision.status_code == 403
    assert decision.code == ErrorCode.IP_BLOCKED


@pytest.mark.anyio
async def test_allow_list_rejects_other_addresses():
    limiter = make_limiter(allow_list=["10.0.0.0/8"])
    assert (await limiter.check(*LOGIN, "10.1.2.3")).allowed
    decision = await limiter.check(*LOGIN, IP)
    assert decision.code == ErrorCode.IP_NOT_ALLOWED
    assert decision.headers() == {}


@pytest.mark.anyio
async def test_admin_exemption():
    admin = RequestPrincipal(user_id="root", roles=frozenset({"admin"}), auth_method=AuthMethod.SESSION)
    limiter = make_limiter()
    assert all([(await limiter.check(*LOGIN, IP, admin)).allowed for _ in range(10)])

    strict = make_limiter(admin_exempt=False, penalty_enabled=False)
    results = [(await strict.check(*LOGIN, IP, admin)).allowed for _ in range(6)]
    assert results[-1] is False


# =============================================================================
# Failure policy
# =============================================================================

@pytest.mark.anyio
async def test_store_errors_fail_open():
    limiter = RateLimiter(RateLimitConfig(), BrokenStore(), clock=FakeClock())
    for _ in range(10):
        assert (await limiter.check(*LOGIN, IP)).allowed


def test_missing_store_falls_back_to_memory():
    limiter = RateLimiter(RateLimitConfig())
    assert isinstance(limiter.store, InMemoryStore)
