"""
Security response headers for the ERP API.

Applied to every response leaving the security pipeline, including
terminal error responses written by earlier stages.
"""

from dataclasses import dataclass, field

DEFAULT_PERMISSIONS = (
    "geolocation=()",
    "microphone=()",
    "camera=()",
    "payment=()",
    "usb=()",
    "magnetometer=()",
    "gyroscope=()",
    "accelerometer=()",
    "ambient-light-sensor=()",
    "autoplay=(self)",
    "encrypted-media=(self)",
    "fullscreen=(self)",
    "picture-in-picture=(self)",
)

DEFAULT_CSP = {
    "default-src": "'self'",
    "script-src": "'self'",
    "style-src": "'self' 'unsafe-inline'",
    "img-src": "'self' data: https:",
    "font-src": "'self' data:",
    "connect-src": "'self'",
    "media-src": "'self'",
    "object-src": "'none'",
    "child-src": "'self'",
    "frame-src": "'none'",
    "worker-src": "'self'",
    "manifest-src": "'self'",
    "frame-ancestors": "'none'",
}

SENSITIVE_PREFIXES = (
    "/api/v1/auth",
    "/api/v1/users",
    "/api/v1/admin",
)


@dataclass
class SecurityHeadersConfig:
    production: bool = False
    csp_enabled: bool = True
    csp: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CSP))
    upgrade_insecure_requests: bool = False
    hsts_enabled: bool = False
    hsts_max_age: int = 31536000
    hsts_include_subdomains: bool = True
    hsts_preload: bool = False
    frame_options: str = "DENY"
    content_type_options: str = "nosniff"
    xss_protection: str = "1; mode=block"
    referrer_policy: str = "strict-origin-when-cross-origin"
    permissions: tuple[str, ...] = DEFAULT_PERMISSIONS
    sensitive_prefixes: tuple[str, ...] = SENSITIVE_PREFIXES
    custom_headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def production_preset(cls) -> "SecurityHeadersConfig":
        return cls(production=True, hsts_enabled=True, upgrade_insecure_requests=True)

    @classmethod
    def development_preset(cls) -> "SecurityHeadersConfig":
        csp = dict(DEFAULT_CSP)
        csp["script-src"] = "'self' 'unsafe-inline' 'unsafe-eval' localhost:* 127.0.0.1:*"
        csp["connect-src"] = "'self' localhost:* 127.0.0.1:* ws://localhost:* wss://localhost:*"
        return cls(production=False, csp=csp)

    @classmethod
    def api_preset(cls, production: bool = True) -> "SecurityHeadersConfig":
        """Locked-down CSP for JSON-only services."""
        csp = {name: "'none'" for name in DEFAULT_CSP}
        return cls(
            production=production,
            csp=csp,
            hsts_enabled=production,
            upgrade_insecure_requests=production,
            custom_headers={"X-API-Version": "v1"},
        )

    def build_csp(self) -> str:
        directives = [f"{name} {value}" for name, value in self.csp.items() if value]
        if self.upgrade_insecure_requests:
            directives.append("upgrade-insecure-requests")
        return "; ".join(directives)

    def build_hsts(self) -> str:
        parts = [f"max-age={self.hsts_max_age}"]
        if self.hsts_include_subdomains:
            parts.append("includeSubDomains")
        if self.hsts_preload:
            parts.append("preload")
        return "; ".join(parts)


class SecurityHeaders:
    def __init__(self, config: SecurityHeadersConfig | None = None):
        self.config = config or SecurityHeadersConfig()
        self._static = self._build_static()

    def _build_static(self) -> dict[str, str]:
        config = self.config
        headers = {
            "X-Content-Type-Options": config.content_type_options,
            "X-Frame-Options": config.frame_options,
            "X-XSS-Protection": config.xss_protection,
            "Referrer-Policy": config.referrer_policy,
            "Permissions-Policy": ", ".join(config.permissions),
            "X-DNS-Prefetch-Control": "off",
            "X-Permitted-Cross-Domain-Policies": "none",
        }
        if config.production:
            if config.hsts_enabled:
                headers["Strict-Transport-Security"] = config.build_hsts()
            if config.csp_enabled:
                headers["Content-Security-Policy"] = config.build_csp()
        headers.update(config.custom_headers)
        return headers

    def is_sensitive(self, path: str) -> bool:
        return path.startswith(self.config.sensitive_prefixes)

    def headers_for(self, path: str) -> dict[str, str]:
        headers = dict(self._static)
        if self.is_sensitive(path):
            headers["Cache-Control"] = "no-store, no-cache, must-revalidate, proxy-revalidate"
            headers["Pragma"] = "no-cache"
            headers["Expires"] = "0"
        return headers

    def apply(self, response, path: str) -> None:
        for name, value in self.headers_for(path).items():
            response.headers[name] = value
