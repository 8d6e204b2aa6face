"""
Security Event Monitor for the ERP API.

Collects security-relevant events from the request pipeline (failed
authentication, injection attempts, rate-limit violations, CSRF
rejections, scanner user agents), scores them, tracks per-IP activity
windows, and raises alerts when per-level thresholds are crossed.

Events are queued without blocking the request and processed in batches
by a background task started with `start()`.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from app.core.cache import Store, StoreError

logger = logging.getLogger(__name__)

SUSPICIOUS_USER_AGENTS = (
    "sqlmap", "nikto", "nmap", "masscan", "zap", "burp",
    "python-requests", "curl", "wget", "scanner", "bot",
)

SUSPICIOUS_PATTERNS = (
    r"(?i)(union\s+select|select\s+.*\s+from\s+|insert\s+into)",
    r"(?i)(<script|javascript:|vbscript:)",
    r"(?i)(\.\./|\.\.\\|%2e%2e%2f)",
    r"(?i)(wget\s+|curl\s+|nc\s+|netcat\s+)",
)


class SecurityLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SecuritySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEventType(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    INJECTION = "injection"
    XSS = "xss"
    CSRF = "csrf"
    RATE_LIMIT = "rate_limit"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    PRIVILEGE_ESCALATION = "privilege_escalation"


_LOG_LEVELS = {
    SecurityLevel.INFO: logging.INFO,
    SecurityLevel.WARNING: logging.WARNING,
    SecurityLevel.ERROR: logging.ERROR,
    SecurityLevel.CRITICAL: logging.CRITICAL,
}

_TYPE_SCORES = {
    SecurityEventType.INJECTION: 40,
    SecurityEventType.XSS: 35,
    SecurityEventType.AUTHENTICATION: 20,
    SecurityEventType.AUTHORIZATION: 25,
}


@dataclass
class SecurityEvent:
    type: SecurityEventType
    level: SecurityLevel
    title: str
    description: str = ""
    severity: SecuritySeverity = SecuritySeverity.LOW
    client_ip: str = ""
    user_agent: str = ""
    user_id: str | None = None
    path: str = ""
    method: str = ""
    status_code: int = 0
    request_id: str = ""
    risk_score: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "level": self.level.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "user_id": self.user_id,
            "path": self.path,
            "method": self.method,
            "status_code": self.status_code,
            "request_id": self.request_id,
            "risk_score": self.risk_score,
            "metadata": self.metadata,
        }


@dataclass
class MonitorConfig:
    enabled: bool = True
    buffer_size: int = 10000
    batch_size: int = 100
    flush_interval_seconds: float = 5.0
    cleanup_interval_seconds: float = 3600.0
    history_size: int = 500
    retention_seconds: int = 30 * 24 * 3600
    store_prefix: str = "security:event:"

    alert_enabled: bool = True
    alert_thresholds: dict[SecurityLevel, int] = field(default_factory=lambda: {
        SecurityLevel.INFO: 0,
        SecurityLevel.WARNING: 10,
        SecurityLevel.ERROR: 5,
        SecurityLevel.CRITICAL: 1,
    })
    alert_cooldown_seconds: float = 15 * 60
    webhook_url: str | None = None
    webhook_timeout: float = 5.0

    base_risk_score: int = 10
    malicious_ip_score: int = 50
    suspicious_pattern_score: int = 30
    privilege_escalation_score: int = 40
    malicious_ips: list[str] = field(default_factory=list)
    suspicious_patterns: tuple[str, ...] = SUSPICIOUS_PATTERNS
    suspicious_user_agents: tuple[str, ...] = SUSPICIOUS_USER_AGENTS

    failed_auth_window_seconds: float = 5 * 60
    rate_limit_window_seconds: float = 60


def is_suspicious_user_agent(user_agent: str, markers: tuple[str, ...] = SUSPICIOUS_USER_AGENTS) -> bool:
    lowered = (user_agent or "").lower()
    return any(marker in lowered for marker in markers)


class SecurityMonitor:
    def __init__(
        self,
        config: MonitorConfig | None = None,
        store: Store | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or MonitorConfig()
        self.store = store
        self._transport = transport
        self._queue: asyncio.Queue[SecurityEvent | None] = asyncio.Queue(maxsize=self.config.buffer_size)
        self._patterns = [re.compile(p) for p in self.config.suspicious_patterns]
        self._malicious = set(self.config.malicious_ips)
        self._recent: deque[SecurityEvent] = deque(maxlen=self.config.history_size)
        self._failed_auths: dict[str, list[float]] = defaultdict(list)
        self._rate_limit_hits: dict[str, list[float]] = defaultdict(list)
        self._alert_counters: dict[SecurityLevel, int] = defaultdict(int)
        self._last_alerts: dict[SecurityLevel, float] = {}
        self._processor: asyncio.Task | None = None
        self._cleaner: asyncio.Task | None = None
        self.received = 0
        self.processed = 0
        self.dropped = 0
        self.alerts_sent = 0

    @property
    def running(self) -> bool:
        return self._processor is not None and not self._processor.done()

    # -------------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------------

    def risk_score(self, event: SecurityEvent) -> int:
        config = self.config
        score = config.base_risk_score + _TYPE_SCORES.get(event.type, 0)
        if event.type == SecurityEventType.PRIVILEGE_ESCALATION:
            score += config.privilege_escalation_score
        if event.client_ip in self._malicious:
            score += config.malicious_ip_score
        if event.description and any(p.search(event.description) for p in self._patterns):
            score += config.suspicious_pattern_score
        return min(score, 100)

    def record(self, event: SecurityEvent) -> None:
        """Queue an event without blocking; dropped when the buffer is full."""
        if not self.config.enabled:
            return
        self.received += 1
        event.risk_score = self.risk_score(event)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Security event queue full, dropping event %s", event.type.value)

    def authentication_failed(self, client_ip: str, user_agent: str = "", user_id: str | None = None,
                              reason: str = "", path: str = "") -> None:
        self.record(SecurityEvent(
            type=SecurityEventType.AUTHENTICATION,
            level=SecurityLevel.WARNING,
            severity=SecuritySeverity.MEDIUM,
            title="Authentication Failed",
            description=f"Failed authentication attempt from {client_ip}: {reason}",
            client_ip=client_ip, user_agent=user_agent, user_id=user_id, path=path,
        ))

    def unauthorized_access(self, client_ip: str, user_agent: str = "", user_id: str | None = None,
                            path: str = "", method: str = "") -> None:
        self.record(SecurityEvent(
            type=SecurityEventType.AUTHORIZATION,
            level=SecurityLevel.WARNING,
            severity=SecuritySeverity.MEDIUM,
            title="Unauthorized Access",
            description=f"Unauthorized access to {method} {path}",
            client_ip=client_ip, user_agent=user_agent, user_id=user_id, path=path, method=method,
        ))

    def injection_attempt(self, client_ip: str, user_agent: str = "", user_id: str | None = None,
                          injection_type: str = "", payload: str = "", path: str = "") -> None:
        event_type = SecurityEventType.XSS if injection_type == "xss" else SecurityEventType.INJECTION
        self.record(SecurityEvent(
            type=event_type,
            level=SecurityLevel.ERROR,
            severity=SecuritySeverity.HIGH,
            title="Injection Attempt",
            description=f"{injection_type or 'injection'} attempt: {payload[:200]}",
            client_ip=client_ip, user_agent=user_agent, user_id=user_id, path=path,
            metadata={"injection_type": injection_type},
        ))

    def rate_limit_exceeded(self, client_ip: str, user_agent: str = "", user_id: str | None = None,
                            endpoint: str = "", code: str = "") -> None:
        self.record(SecurityEvent(
            type=SecurityEventType.RATE_LIMIT,
            level=SecurityLevel.WARNING,
            severity=SecuritySeverity.MEDIUM,
            title="Rate Limit Exceeded",
            description=f"Rate limit exceeded on {endpoint}",
            client_ip=client_ip, user_agent=user_agent, user_id=user_id, path=endpoint,
            metadata={"code": code} if code else {},
        ))

    def csrf_violation(self, client_ip: str, user_agent: str = "", path: str = "", reason: str = "") -> None:
        self.record(SecurityEvent(
            type=SecurityEventType.CSRF,
            level=SecurityLevel.WARNING,
            severity=SecuritySeverity.MEDIUM,
            title="CSRF Validation Failed",
            description=reason,
            client_ip=client_ip, user_agent=user_agent, path=path,
        ))

    def suspicious_user_agent(self, client_ip: str, user_agent: str, path: str = "") -> None:
        self.record(SecurityEvent(
            type=SecurityEventType.SUSPICIOUS_ACTIVITY,
            level=SecurityLevel.WARNING,
            severity=SecuritySeverity.LOW,
            title="Suspicious User Agent",
            description=f"Scanner-like user agent: {user_agent[:200]}",
            client_ip=client_ip, user_agent=user_agent, path=path,
        ))

    def privilege_escalation(self, client_ip: str, user_id: str | None, attempted_role: str) -> None:
        self.record(SecurityEvent(
            type=SecurityEventType.PRIVILEGE_ESCALATION,
            level=SecurityLevel.CRITICAL,
            severity=SecuritySeverity.CRITICAL,
            title="Privilege Escalation Attempt",
            description=f"User attempted to assume role {attempted_role}",
            client_ip=client_ip, user_id=user_id,
        ))

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def _process_batch(self, batch: list[SecurityEvent]) -> None:
        for event in batch:
            self.processed += 1
            self._recent.append(event)
            logger.log(
                _LOG_LEVELS[event.level],
                "Security event: %s (%s) from %s risk=%d",
                event.title, event.type.value, event.client_ip, event.risk_score,
                extra={"event_id": event.id, "event_type": event.type.value, "risk_score": event.risk_score},
            )
            self._track(event)
            if self.store is not None:
                try:
                    await self.store.set(
                        f"{self.config.store_prefix}{event.id}",
                        _json(event.to_dict()),
                        ttl=self.config.retention_seconds,
                    )
                except StoreError as e:
                    logger.warning("Failed to store security event %s: %s", event.id, e)
            await self._check_alert(event)

    def _track(self, event: SecurityEvent) -> None:
        now = time.monotonic()
        if event.type == SecurityEventType.AUTHENTICATION and event.level == SecurityLevel.WARNING:
            self._failed_auths[event.client_ip].append(now)
            _trim(self._failed_auths, event.client_ip, now - self.config.failed_auth_window_seconds)
        if event.type == SecurityEventType.RATE_LIMIT:
            self._rate_limit_hits[event.client_ip].append(now)
            _trim(self._rate_limit_hits, event.client_ip, now - self.config.rate_limit_window_seconds)

    def failed_auth_count(self, client_ip: str) -> int:
        cutoff = time.monotonic() - self.config.failed_auth_window_seconds
        return sum(1 for t in self._failed_auths.get(client_ip, ()) if t > cutoff)

    async def _check_alert(self, event: SecurityEvent) -> None:
        config = self.config
        if not config.alert_enabled:
            return
        self._alert_counters[event.level] += 1
        threshold = config.alert_thresholds.get(event.level, 0)
        if threshold <= 0 or self._alert_counters[event.level] < threshold:
            return
        last = self._last_alerts.get(event.level)
        now = time.monotonic()
        if last is not None and now - last < config.alert_cooldown_seconds:
            return
        self._alert_counters[event.level] = 0
        self._last_alerts[event.level] = now
        await self._trigger_alert(event)

    async def _trigger_alert(self, event: SecurityEvent) -> None:
        self.alerts_sent += 1
        logger.error(
            "Security alert triggered: %s level=%s ip=%s risk=%d",
            event.type.value, event.level.value, event.client_ip, event.risk_score,
        )
        if not self.config.webhook_url:
            return
        payload = {
            "alert_id": event.id,
            "timestamp": event.timestamp.isoformat(),
            "severity": event.level.value,
            "risk_score": event.risk_score,
            "event": event.to_dict(),
        }
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(self.config.webhook_url, json=payload, timeout=self.config.webhook_timeout)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to send security alert webhook: %s", e)

    async def _processor_loop(self) -> None:
        batch_size = self.config.batch_size
        while True:
            event = await self._queue.get()
            stop = event is None
            batch = [] if stop else [event]
            while not stop and len(batch) < batch_size:
                try:
                    item = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if item is None:
                    stop = True
                else:
                    batch.append(item)
            if batch:
                await self._process_batch(batch)
            if stop:
                return

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            self.cleanup()

    def cleanup(self) -> None:
        now = time.monotonic()
        for ip in list(self._failed_auths):
            _trim(self._failed_auths, ip, now - self.config.failed_auth_window_seconds)
        for ip in list(self._rate_limit_hits):
            _trim(self._rate_limit_hits, ip, now - self.config.rate_limit_window_seconds)

    async def flush(self) -> None:
        """Process everything queued so far (used by tests and shutdown)."""
        batch = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not None:
                batch.append(item)
        if batch:
            await self._process_batch(batch)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if not self.config.enabled or self.running:
            return
        self._processor = asyncio.create_task(self._processor_loop(), name="security-monitor")
        self._cleaner = asyncio.create_task(self._cleanup_loop(), name="security-monitor-cleanup")
        logger.info("Security monitor started")

    async def stop(self) -> None:
        """Drain pending events, then stop background tasks. Safe to call twice."""
        processor, self._processor = self._processor, None
        cleaner, self._cleaner = self._cleaner, None
        if processor is not None and not processor.done():
            await self._queue.put(None)
            await processor
        if cleaner is not None:
            cleaner.cancel()
            try:
                await cleaner
            except asyncio.CancelledError:
                pass
        await self.flush()
        if processor is not None:
            logger.info("Security monitor stopped")

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def recent_events(self, limit: int = 50) -> list[SecurityEvent]:
        return list(self._recent)[-limit:][::-1]

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "received": self.received,
            "processed": self.processed,
            "dropped": self.dropped,
            "queued": self._queue.qsize(),
            "alerts_sent": self.alerts_sent,
            "failed_auth_ips": len(self._failed_auths),
            "rate_limited_ips": len(self._rate_limit_hits),
            "alert_counters": {level.value: count for level, count in self._alert_counters.items()},
        }


def _trim(entries: dict[str, list[float]], key: str, cutoff: float) -> None:
    kept = [t for t in entries.get(key, ()) if t > cutoff]
    if kept:
        entries[key] = kept
    else:
        entries.pop(key, None)


def _json(data: dict[str, Any]) -> str:
    return json.dumps(data, default=str)
