"""
Per-request context shared by the middleware stages.

The principal is attached to request.state once credential
authentication runs; later stages (rate limiting, audit) only read it.
"""

import ipaddress
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from slowapi.util import get_remote_address
from starlette.requests import Request

logger = logging.getLogger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


# =============================================================================
# Roles
# =============================================================================

class UserRole(str, Enum):
    """Roles carried by a principal."""
    ADMIN = "admin"            # Full access, optionally exempt from rate limits
    MANAGER = "manager"        # Back-office management
    USER = "user"              # Default: standard customer/employee access
    SERVICE = "service"        # Machine clients using API keys


class AuthMethod(str, Enum):
    ANONYMOUS = "anonymous"
    SESSION = "session"
    API_KEY = "api_key"


# =============================================================================
# Principal
# =============================================================================

@dataclass(frozen=True)
class RequestPrincipal:
    """
    Authenticated caller identity for one request.
    Lifetime = one request.
    """
    user_id: str | None = None
    roles: frozenset[str] = field(default_factory=frozenset)
    api_key_id: str | None = None
    auth_method: AuthMethod = AuthMethod.ANONYMOUS
    username: str | None = None
    session_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.auth_method != AuthMethod.ANONYMOUS

    @property
    def is_admin(self) -> bool:
        return UserRole.ADMIN.value in self.roles

    def has_role(self, *roles: UserRole | str) -> bool:
        wanted = {r.value if isinstance(r, UserRole) else r for r in roles}
        return bool(wanted & self.roles)


ANONYMOUS = RequestPrincipal()


def get_principal(request: Request) -> RequestPrincipal:
    """Principal for this request (anonymous if authentication has not run)."""
    return getattr(request.state, "principal", ANONYMOUS)


def set_principal(request: Request, principal: RequestPrincipal) -> None:
    request.state.principal = principal


# =============================================================================
# Request helpers
# =============================================================================

def parse_networks(entries: Sequence[str]) -> list[IPNetwork]:
    """Addresses or CIDR blocks; invalid entries are logged and skipped."""
    networks = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry.strip(), strict=False))
        except ValueError:
            logger.error("Ignoring invalid IP list entry: %r", entry)
    return networks


def ip_in_networks(ip: str, networks: Sequence[IPNetwork]) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(address in network for network in networks)


def get_client_ip(request: Request, trusted_proxies: Sequence[IPNetwork] = ()) -> str:
    """
    Client IP for rate limiting, IP lists and CSRF trust.

    Proxy headers are only honoured when the socket peer is a trusted
    proxy. X-Forwarded-For is walked right to left and the first hop that
    is not itself a trusted proxy wins; a client can prepend entries but
    cannot forge the ones our proxies append.
    """
    peer = get_remote_address(request)
    if not trusted_proxies or not ip_in_networks(peer, trusted_proxies):
        return peer

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not ip_in_networks(hop, trusted_proxies):
                return hop
        if hops:
            return hops[0]

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return peer


def get_request_id(request: Request) -> str:
    """Request id from X-Request-ID, generated once per request otherwise."""
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id
