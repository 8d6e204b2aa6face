"""
ERP API - Security Coordinator

Composes the request pipeline every call passes through:

    1. security headers   (applied to every response, terminal ones included)
    2. CORS origin check
    3. input validation
    4. credential authentication (X-API-Key, Bearer session)
    5. rate limiting
    6. CSRF            (skipped for API-key callers)
    7. audit capture   (after the handler or the terminal response)
    8. security events (monitor)

Any stage may terminate the request with a standard error response;
later stages and the handler then never run. Stages never raise: a
failing dependency degrades the stage and is logged.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable

from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.api_keys import APIKeyService, SessionRegistry
from app.core.audit import AuditConfig, AuditLogger
from app.core.cache import InMemoryStore, Store, StoreError
from app.core.config import Settings
from app.core.context import (
    AuthMethod,
    get_client_ip,
    get_principal,
    get_request_id,
    parse_networks,
    set_principal,
)
from app.core.cors import CORSConfig, CORSPolicy
from app.core.csrf import CSRFConfig, CSRFProtector
from app.core.errors import ErrorCode, error_response
from app.core.logging_config import LogContext
from app.core.monitoring import MonitorConfig, SecurityMonitor, is_suspicious_user_agent
from app.core.rate_limit import RateLimitConfig, RateLimitDecision, RateLimiter
from app.core.security_headers import SecurityHeaders, SecurityHeadersConfig
from app.core.validation import InputValidator, RequestView, ValidationPolicy, build_request_view

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

API_KEY_HEADER = "X-API-Key"

STAGES = (
    "security_headers", "cors", "input_validation", "api_key_auth",
    "rate_limit", "csrf", "audit", "monitoring",
)


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class SecurityConfig:
    """Component configs plus one toggle per pipeline stage."""
    production: bool = False
    security_headers_enabled: bool = True
    cors_enabled: bool = True
    input_validation_enabled: bool = True
    api_key_auth_enabled: bool = True
    rate_limit_enabled: bool = True
    csrf_enabled: bool = True
    audit_enabled: bool = True
    monitoring_enabled: bool = True
    session_ttl_seconds: int = 3600
    trusted_proxies: list[str] = field(default_factory=list)

    headers: SecurityHeadersConfig = field(default_factory=SecurityHeadersConfig)
    cors: CORSConfig = field(default_factory=CORSConfig)
    validation: ValidationPolicy = field(default_factory=ValidationPolicy)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    csrf: CSRFConfig = field(default_factory=CSRFConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecurityConfig":
        """
        Environment presets: development (and test) relaxes validation to
        log-only, turns rate-limit penalties off and uses the development
        CSRF and header presets. Explicit settings override the presets.
        """
        dev = settings.is_development
        production = settings.is_production

        if production:
            headers = SecurityHeadersConfig.production_preset()
        elif dev:
            headers = SecurityHeadersConfig.development_preset()
        else:
            headers = SecurityHeadersConfig()

        validation = ValidationPolicy.development() if dev else ValidationPolicy()
        if settings.validation_strict_mode is not None:
            validation.strict_mode = settings.validation_strict_mode

        penalty = not dev
        if settings.rate_limit_penalty_enabled is not None:
            penalty = settings.rate_limit_penalty_enabled
        rate_limit = RateLimitConfig(
            allow_list=list(settings.ip_allow_list),
            deny_list=list(settings.ip_deny_list),
            penalty_enabled=penalty,
        )

        if dev:
            csrf = CSRFConfig.development()
            csrf.trusted_origins = [*csrf.trusted_origins, *settings.trusted_origins]
            csrf.trusted_ips = list(settings.trusted_ips)
        else:
            csrf = CSRFConfig(
                trusted_origins=list(settings.trusted_origins),
                trusted_ips=list(settings.trusted_ips),
            )

        audit = AuditConfig(
            enabled=settings.audit_enabled,
            log_dir=settings.audit_log_dir,
            file_name=settings.audit_file_name,
            file_enabled=settings.audit_file_enabled,
            store_prefix=settings.audit_store_prefix,
            max_file_size=settings.audit_max_file_size_mb * 1024 * 1024,
            retention=timedelta(days=settings.audit_retention_days),
            slow_request_seconds=settings.audit_slow_request_seconds,
            cleanup_interval_seconds=settings.audit_cleanup_interval_seconds,
        )

        return cls(
            production=production,
            security_headers_enabled=settings.security_headers_enabled,
            cors_enabled=settings.cors_enabled,
            input_validation_enabled=settings.input_validation_enabled,
            api_key_auth_enabled=settings.api_key_auth_enabled,
            rate_limit_enabled=settings.rate_limit_enabled,
            csrf_enabled=settings.csrf_enabled,
            audit_enabled=settings.audit_enabled,
            monitoring_enabled=settings.monitoring_enabled,
            session_ttl_seconds=settings.session_ttl_seconds,
            trusted_proxies=list(settings.trusted_proxies),
            headers=headers,
            cors=CORSConfig(origins=list(settings.cors_origins), production=production),
            validation=validation,
            rate_limit=rate_limit,
            csrf=csrf,
            audit=audit,
            monitor=MonitorConfig(enabled=settings.monitoring_enabled, webhook_url=settings.alert_webhook_url),
        )

    def stage_flags(self) -> dict[str, bool]:
        return {stage: getattr(self, f"{stage}_enabled") for stage in STAGES}


# =============================================================================
# Per-request state
# =============================================================================

@dataclass
class _Exchange:
    request: Request
    method: str
    path: str
    client_ip: str
    user_agent: str
    request_id: str
    started: float
    view: RequestView | None = None
    cors_headers: dict[str, str] = field(default_factory=dict)
    rate: RateLimitDecision | None = None
    csrf_cookie: str | None = None
    terminated_by: str | None = None

    @property
    def request_size(self) -> int:
        if self.view is not None:
            return self.view.body_size
        try:
            return int(self.request.headers.get("content-length", 0))
        except ValueError:
            return 0


# =============================================================================
# Coordinator
# =============================================================================

class SecurityCoordinator:
    """Owns every security component and runs them in pipeline order."""

    def __init__(self, config: SecurityConfig | None = None, store: Store | None = None):
        self.config = config or SecurityConfig()
        if store is None:
            logger.warning("Security coordinator has no shared store; using in-process store")
            store = InMemoryStore()
        self.store = store
        config = self.config
        self._trusted_proxies = parse_networks(config.trusted_proxies)

        self.headers = SecurityHeaders(config.headers)
        self.cors = CORSPolicy(config.cors)
        self.validator = InputValidator(config.validation)
        self.api_keys = APIKeyService(store)
        self.sessions = SessionRegistry(store, ttl_seconds=config.session_ttl_seconds)
        self.limiter = RateLimiter(config.rate_limit, store)
        self.csrf = CSRFProtector(config.csrf)
        self.audit = AuditLogger(config.audit, store)
        self.monitor = SecurityMonitor(config.monitor, store)

        self.counters: dict[str, int] = {
            "requests": 0,
            "cors_rejected": 0,
            "validation_rejected": 0,
            "validation_findings": 0,
            "auth_rejected": 0,
            "rate_limited": 0,
            "csrf_rejected": 0,
            "handler_errors": 0,
        }
        self._started = False
        self._disabled_logged = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    def log_disabled_stages(self) -> list[str]:
        disabled = [stage for stage, on in self.config.stage_flags().items() if not on]
        if disabled and not self._disabled_logged:
            logger.warning("Security stages disabled: %s", ", ".join(disabled))
        self._disabled_logged = True
        return disabled

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.log_disabled_stages()
        if self.config.audit_enabled:
            self.audit.start()
        if self.config.monitoring_enabled:
            self.monitor.start()
        logger.info("Security coordinator started")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.monitor.stop()
        await self.audit.stop()
        logger.info("Security coordinator stopped")

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def handle(self, request: Request, call_next: CallNext) -> Response:
        ex = _Exchange(
            request=request,
            method=request.method.upper(),
            path=request.url.path,
            client_ip=get_client_ip(request, self._trusted_proxies),
            user_agent=request.headers.get("user-agent", ""),
            request_id=get_request_id(request),
            started=time.perf_counter(),
        )
        self.counters["requests"] += 1

        with LogContext(request_id=ex.request_id, client_ip=ex.client_ip):
            if self.config.monitoring_enabled and is_suspicious_user_agent(
                ex.user_agent, self.config.monitor.suspicious_user_agents
            ):
                self.monitor.suspicious_user_agent(ex.client_ip, ex.user_agent, ex.path)

            response = await self._admit(ex)
            if response is None:
                response = await self._call_handler(ex, call_next)

            self._finalize(ex, response)
            await self._record(ex, response)
        return response

    async def _admit(self, ex: _Exchange) -> Response | None:
        """Run the admission stages; a returned response terminates the request."""
        config = self.config
        stages = (
            (config.cors_enabled, self._cors_stage),
            (config.input_validation_enabled, self._validation_stage),
            (True, self._auth_stage),
            (config.rate_limit_enabled, self._rate_limit_stage),
            (config.csrf_enabled, self._csrf_stage),
        )
        for enabled, stage in stages:
            if not enabled:
                continue
            response = await stage(ex)
            if response is not None:
                ex.terminated_by = stage.__name__.strip("_").removesuffix("_stage")
                return response
        return None

    async def _cors_stage(self, ex: _Exchange) -> Response | None:
        decision = self.cors.evaluate(ex.request.headers.get("origin"), ex.method)
        if decision.reject:
            self.counters["cors_rejected"] += 1
            return error_response("Origin not allowed", ErrorCode.ORIGIN_NOT_ALLOWED, 403)
        if decision.allowed and decision.preflight:
            return Response(status_code=204, headers=decision.headers)
        ex.cors_headers = decision.headers
        return None

    async def _validation_stage(self, ex: _Exchange) -> Response | None:
        if not self.validator.applies_to(ex.path):
            return None
        try:
            ex.view = await build_request_view(ex.request, self.config.validation.max_body_size)
        except HTTPException as e:
            # malformed multipart body
            self.counters["validation_rejected"] += 1
            return error_response(str(e.detail), ErrorCode.VALIDATION_ERROR, 400)
        outcome = self.validator.validate(ex.view)

        if outcome.findings:
            self.counters["validation_findings"] += len(outcome.findings)
            threat = next((f for f in outcome.findings if f.threat is not None), None)
            if threat is not None and self.config.monitoring_enabled:
                self.monitor.injection_attempt(
                    ex.client_ip, ex.user_agent,
                    injection_type=threat.threat.category,
                    payload=f"{threat.location}: {threat.message}",
                    path=ex.path,
                )

        rejection = outcome.rejection
        if rejection is None:
            return None
        self.counters["validation_rejected"] += 1
        return error_response(rejection.message, rejection.code, rejection.status_code, details=rejection.details)

    async def _auth_stage(self, ex: _Exchange) -> Response | None:
        request = ex.request
        raw_key = request.headers.get(API_KEY_HEADER)
        if raw_key and self.config.api_key_auth_enabled:
            try:
                record = await self.api_keys.validate(raw_key)
            except StoreError as e:
                logger.error("API key lookup failed: %s", e)
                return error_response("Authentication service unavailable", ErrorCode.SERVICE_UNAVAILABLE, 503)
            if record is None:
                self.counters["auth_rejected"] += 1
                if self.config.monitoring_enabled:
                    self.monitor.authentication_failed(
                        ex.client_ip, ex.user_agent, reason="invalid API key", path=ex.path,
                    )
                return error_response("Invalid or expired API key", ErrorCode.INVALID_API_KEY, 401)
            set_principal(request, self.api_keys.principal_for(record))
            return None

        authorization = request.headers.get("authorization", "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            try:
                principal = await self.sessions.resolve(token.strip())
            except StoreError as e:
                logger.error("Session lookup failed: %s", e)
                principal = None
            if principal is not None:
                set_principal(request, principal)
        return None

    async def _rate_limit_stage(self, ex: _Exchange) -> Response | None:
        principal = get_principal(ex.request)
        decision = await self.limiter.check(ex.method, ex.path, ex.client_ip, principal)
        ex.rate = decision
        if decision.allowed:
            return None
        self.counters["rate_limited"] += 1
        if self.config.monitoring_enabled:
            self.monitor.rate_limit_exceeded(
                ex.client_ip, ex.user_agent, principal.user_id,
                endpoint=f"{ex.method} {ex.path}",
                code=decision.code.value if decision.code else "",
            )
        return error_response(decision.message, decision.code, decision.status_code)

    async def _csrf_stage(self, ex: _Exchange) -> Response | None:
        request = ex.request
        principal = get_principal(request)
        form = None
        if ex.view is not None and ex.view.form_fields is not None:
            form = dict(ex.view.form_fields)
        result = self.csrf.protect(
            ex.method,
            ex.path,
            request.headers,
            request.cookies,
            query=request.query_params,
            form=form,
            client_ip=ex.client_ip,
            api_key_authenticated=principal.auth_method == AuthMethod.API_KEY,
        )
        if not result.ok:
            self.counters["csrf_rejected"] += 1
            if self.config.monitoring_enabled:
                self.monitor.csrf_violation(ex.client_ip, ex.user_agent, ex.path, result.error or "")
            return error_response(
                result.error or "CSRF validation failed", ErrorCode.CSRF_VALIDATION_FAILED, 403,
            )

        if result.issue_token:
            existing = request.cookies.get(self.config.csrf.cookie_name)
            if existing:
                request.state.csrf_token = existing
            else:
                request.state.csrf_token = result.issue_token
                ex.csrf_cookie = result.issue_token
        return None

    async def _call_handler(self, ex: _Exchange, call_next: CallNext) -> Response:
        try:
            return await call_next(ex.request)
        except Exception as e:
            self.counters["handler_errors"] += 1
            logger.error(
                "Unhandled exception on %s %s: %s", ex.method, ex.path, e,
                exc_info=True, extra={"path": ex.path, "method": ex.method},
            )
            return error_response("An unexpected error occurred", ErrorCode.INTERNAL_ERROR, 500)

    def _finalize(self, ex: _Exchange, response: Response) -> None:
        if self.config.security_headers_enabled:
            self.headers.apply(response, ex.path)
        for name, value in ex.cors_headers.items():
            response.headers[name] = value
        if ex.rate is not None:
            for name, value in ex.rate.headers().items():
                response.headers[name] = value
        if ex.csrf_cookie:
            self.csrf.set_cookie(response, ex.csrf_cookie)
        response.headers["X-Request-ID"] = ex.request_id

    async def _record(self, ex: _Exchange, response: Response) -> None:
        status = response.status_code
        principal = get_principal(ex.request)

        if self.config.audit_enabled:
            try:
                response_size = int(response.headers.get("content-length", 0))
            except ValueError:
                response_size = 0
            await self.audit.record_request(
                method=ex.method,
                path=ex.path,
                status_code=status,
                duration=time.perf_counter() - ex.started,
                principal=principal,
                client_ip=ex.client_ip,
                user_agent=ex.user_agent,
                request_id=ex.request_id,
                request_size=ex.request_size,
                response_size=response_size,
                request_headers=ex.request.headers,
                request_body=ex.view.body if ex.view is not None else None,
                content_type=ex.request.headers.get("content-type", ""),
                message=f"terminated by {ex.terminated_by}" if ex.terminated_by else None,
            )

        # Terminal rejections already emitted their own event
        if not self.config.monitoring_enabled or ex.terminated_by is not None:
            return
        if status == 401:
            self.monitor.authentication_failed(
                ex.client_ip, ex.user_agent, principal.user_id, reason="handler returned 401", path=ex.path,
            )
        elif status == 403:
            self.monitor.unauthorized_access(ex.client_ip, ex.user_agent, principal.user_id, ex.path, ex.method)

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_security_stats(self) -> dict:
        return {
            "started": self._started,
            "stages": self.config.stage_flags(),
            "counters": dict(self.counters),
            "validation": {"strict_mode": self.config.validation.strict_mode},
            "rate_limit": {
                "penalty_enabled": self.config.rate_limit.penalty_enabled,
                "default_limit": self.config.rate_limit.default_policy.limit,
            },
            "audit": {
                "emitted": self.audit.emitted,
                "store_failures": self.audit.store_failures,
                "file_sink_active": self.audit.file_sink_active,
            },
            "csrf": {"origin_cache": self.csrf.origins.cache_info()},
            "monitor": self.monitor.get_stats(),
        }


class SecurityMiddleware(BaseHTTPMiddleware):
    """Starlette adapter: every request goes through SecurityCoordinator.handle()."""

    def __init__(self, app, coordinator: SecurityCoordinator):
        super().__init__(app)
        self.coordinator = coordinator

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        return await self.coordinator.handle(request, call_next)


__all__ = [
    "SecurityConfig",
    "SecurityCoordinator",
    "SecurityMiddleware",
]
