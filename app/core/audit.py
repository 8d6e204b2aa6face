"""
Audit Logging for the ERP API.

Append-only stream of request audit events for compliance, security,
and debugging. Every event goes to three sinks:

- the application log, at a level derived from the outcome
- the shared store under `audit:<event-id>` (TTL = retention period)
- a JSON lines file with size/date rotation and retention cleanup

The public interface only appends and queries; nothing updates or
deletes an emitted event (cleanup removes whole rotated files past
retention).

Usage:
    from app.core.audit import AuditLogger, AuditConfig, AuditQuery

    audit = AuditLogger(AuditConfig(log_dir="logs/audit"), store)
    await audit.record_request(method="POST", path="/api/v1/auth/login", status_code=200, ...)
    events = audit.query(AuditQuery(user_id="u1", limit=50))
"""

import asyncio
import json
import logging
import os
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field

from app.core.cache import Store, StoreError
from app.core.context import ANONYMOUS, RequestPrincipal

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


# =============================================================================
# Enumerations
# =============================================================================

class AuditLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class AuditCategory(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    USER_MANAGEMENT = "USER_MANAGEMENT"
    ADMINISTRATION = "ADMINISTRATION"
    SECURITY = "SECURITY"
    PERFORMANCE = "PERFORMANCE"
    GENERAL = "GENERAL"


class AuditEventKind(str, Enum):
    """Enumeration of auditable events."""

    # Authentication
    AUTH_LOGIN_SUCCESS = "AUTH_LOGIN_SUCCESS"
    AUTH_LOGIN_FAILED = "AUTH_LOGIN_FAILED"
    AUTH_REGISTER_SUCCESS = "AUTH_REGISTER_SUCCESS"
    AUTH_REGISTER_FAILED = "AUTH_REGISTER_FAILED"
    AUTH_LOGOUT = "AUTH_LOGOUT"
    AUTH_PASSWORD_RESET_REQUEST = "AUTH_PASSWORD_RESET_REQUEST"
    AUTH_PASSWORD_RESET = "AUTH_PASSWORD_RESET"

    # User Management
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"

    # Administration
    ADMIN_ACTION = "ADMIN_ACTION"

    # Security outcomes
    SECURITY_UNAUTHORIZED = "SECURITY_UNAUTHORIZED"
    SECURITY_FORBIDDEN = "SECURITY_FORBIDDEN"
    SECURITY_RATE_LIMITED = "SECURITY_RATE_LIMITED"
    SECURITY_SERVER_ERROR = "SECURITY_SERVER_ERROR"

    # Everything else
    PERFORMANCE_SLOW_REQUEST = "PERFORMANCE_SLOW_REQUEST"
    REQUEST_PROCESSED = "REQUEST_PROCESSED"


_CATEGORY_PREFIXES = (
    ("AUTH_", AuditCategory.AUTHENTICATION),
    ("USER_", AuditCategory.USER_MANAGEMENT),
    ("ADMIN_", AuditCategory.ADMINISTRATION),
    ("SECURITY_", AuditCategory.SECURITY),
    ("PERFORMANCE_", AuditCategory.PERFORMANCE),
)

_LOG_LEVELS = {
    AuditLevel.DEBUG: logging.DEBUG,
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARN: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
}

# Events that carry headers and (redacted) request bodies in metadata
_DETAILED_PREFIXES = (
    "AUTH_LOGIN", "AUTH_REGISTER", "USER_CREATED", "USER_UPDATED",
    "ADMIN_ACTION", "SECURITY_UNAUTHORIZED", "SECURITY_FORBIDDEN",
)

_BODY_LOGGED_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/users",
    "/api/v1/admin",
)


# =============================================================================
# Event Model
# =============================================================================

class AuditEvent(BaseModel):
    """One immutable audit record."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    level: AuditLevel = AuditLevel.INFO
    event: AuditEventKind = AuditEventKind.REQUEST_PROCESSED
    category: AuditCategory = AuditCategory.GENERAL
    user_id: str | None = None
    username: str | None = None
    ip_address: str = ""
    user_agent: str = ""
    method: str = ""
    path: str = ""
    status_code: int = 0
    duration_ms: float = 0.0
    request_size: int = 0
    response_size: int = 0
    success: bool = True
    message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    request_id: str = ""
    session_id: str | None = None


# =============================================================================
# Derivation and Redaction (pure)
# =============================================================================

def derive_event_kind(path: str, method: str, status_code: int, duration: float, slow_threshold: float) -> AuditEventKind:
    """First matching rule wins."""
    method = method.upper()
    ok = 200 <= status_code < 300

    if "/auth/login" in path and method == "POST":
        return AuditEventKind.AUTH_LOGIN_SUCCESS if ok else AuditEventKind.AUTH_LOGIN_FAILED
    if "/auth/register" in path and method == "POST":
        return AuditEventKind.AUTH_REGISTER_SUCCESS if ok else AuditEventKind.AUTH_REGISTER_FAILED
    if "/auth/" in path:
        if "/logout" in path:
            return AuditEventKind.AUTH_LOGOUT
        if "/forgot-password" in path:
            return AuditEventKind.AUTH_PASSWORD_RESET_REQUEST
        if "/reset-password" in path:
            return AuditEventKind.AUTH_PASSWORD_RESET

    if "/users/" in path:
        if method == "POST":
            return AuditEventKind.USER_CREATED
        if method in ("PUT", "PATCH"):
            return AuditEventKind.USER_UPDATED
        if method == "DELETE":
            return AuditEventKind.USER_DELETED

    if "/admin/" in path:
        return AuditEventKind.ADMIN_ACTION

    if status_code == 401:
        return AuditEventKind.SECURITY_UNAUTHORIZED
    if status_code == 403:
        return AuditEventKind.SECURITY_FORBIDDEN
    if status_code == 429:
        return AuditEventKind.SECURITY_RATE_LIMITED
    if status_code >= 500:
        return AuditEventKind.SECURITY_SERVER_ERROR

    if duration > slow_threshold:
        return AuditEventKind.PERFORMANCE_SLOW_REQUEST
    return AuditEventKind.REQUEST_PROCESSED


def derive_category(kind: AuditEventKind | str) -> AuditCategory:
    name = kind.value if isinstance(kind, AuditEventKind) else kind
    for prefix, category in _CATEGORY_PREFIXES:
        if name.startswith(prefix):
            return category
    return AuditCategory.GENERAL


def derive_level(status_code: int, kind: AuditEventKind | str) -> AuditLevel:
    name = kind.value if isinstance(kind, AuditEventKind) else kind
    if status_code >= 500:
        return AuditLevel.ERROR
    if status_code >= 400 or name.startswith("SECURITY_"):
        return AuditLevel.WARN
    return AuditLevel.INFO


def is_sensitive_name(name: str, sensitive: tuple[str, ...]) -> bool:
    lowered = name.lower()
    return any(s in lowered for s in sensitive)


def redact(value: Any, sensitive: tuple[str, ...]) -> Any:
    """Replace values under sensitive keys with [REDACTED], recursively."""
    if isinstance(value, Mapping):
        return {
            k: REDACTED if is_sensitive_name(str(k), sensitive) else redact(v, sensitive)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item, sensitive) for item in value]
    return value


def redact_headers(
    headers: Mapping[str, str],
    include: tuple[str, ...],
    sensitive_headers: tuple[str, ...],
) -> dict[str, str]:
    """Pick the included headers, redacting the sensitive ones."""
    lowered = {k.lower(): v for k, v in headers.items()}
    sensitive = {h.lower() for h in sensitive_headers}
    result = {}
    for name in include:
        value = lowered.get(name.lower())
        if value is None:
            continue
        result[name] = REDACTED if name.lower() in sensitive else value
    return result


# =============================================================================
# Configuration and Queries
# =============================================================================

@dataclass
class AuditConfig:
    enabled: bool = True
    log_dir: str = "logs/audit"
    file_name: str = "audit.log"
    file_enabled: bool = True
    store_enabled: bool = True
    store_prefix: str = "audit:"
    max_file_size: int = 100 * 1024 * 1024
    retention: timedelta = timedelta(days=30)
    slow_request_seconds: float = 1.0
    cleanup_interval_seconds: float = 3600.0
    history_size: int = 1000
    exclude_paths: tuple[str, ...] = ("/health", "/metrics", "/favicon.ico", "/robots.txt")
    include_headers: tuple[str, ...] = (
        "X-Request-ID", "X-Forwarded-For", "X-Real-IP", "User-Agent", "Referer", "Origin",
        "Authorization", "Cookie", "X-API-Key",
    )
    sensitive_headers: tuple[str, ...] = ("Authorization", "Cookie", "X-API-Key", "X-Auth-Token", "Set-Cookie")
    sensitive_fields: tuple[str, ...] = (
        "password", "passwd", "secret", "token", "key", "auth",
        "credit_card", "ssn", "social_security", "bank_account",
        "private_key", "certificate", "credentials",
    )

    @property
    def file_path(self) -> Path:
        return Path(self.log_dir) / self.file_name


@dataclass
class AuditQuery:
    """Filters for AuditLogger.query(); None means no filter."""
    events: tuple[str, ...] | None = None
    category: str | None = None
    level: str | None = None
    user_id: str | None = None
    ip_address: str | None = None
    path_prefix: str | None = None
    success: bool | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = 100
    offset: int = 0

    def __post_init__(self):
        # naive bounds are taken as UTC
        if self.start is not None and self.start.tzinfo is None:
            self.start = self.start.replace(tzinfo=timezone.utc)
        if self.end is not None and self.end.tzinfo is None:
            self.end = self.end.replace(tzinfo=timezone.utc)

    def matches(self, event: AuditEvent) -> bool:
        if self.events and event.event not in self.events:
            return False
        if self.category and event.category != self.category:
            return False
        if self.level and event.level != self.level:
            return False
        if self.user_id and event.user_id != self.user_id:
            return False
        if self.ip_address and event.ip_address != self.ip_address:
            return False
        if self.path_prefix and not event.path.startswith(self.path_prefix):
            return False
        if self.success is not None and event.success != self.success:
            return False
        if self.start and event.timestamp < self.start:
            return False
        if self.end and event.timestamp > self.end:
            return False
        return True


# =============================================================================
# File Sink
# =============================================================================

class AuditFileWriter:
    """
    JSON lines file with rotation.

    Writers serialize on one lock. Before each write the file is rotated
    when it has reached max_bytes or when the local date changed since
    the last write; the rotated name carries the last-write timestamp.
    """

    def __init__(
        self,
        path: str | Path,
        max_bytes: int = 100 * 1024 * 1024,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.path = Path(path)
        self.max_bytes = max_bytes
        self._now = now
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a", encoding="utf-8")
        self._size = self.path.stat().st_size
        self._last_write = (
            datetime.fromtimestamp(self.path.stat().st_mtime) if self._size else self._now()
        )

    @property
    def size(self) -> int:
        return self._size

    def write_line(self, line: str) -> None:
        data = line.rstrip("\n") + "\n"
        with self._lock:
            self._rotate_if_needed()
            self._file.write(data)
            self._file.flush()
            os.fsync(self._file.fileno())
            self._size += len(data.encode("utf-8"))
            self._last_write = self._now()

    def _rotate_if_needed(self) -> None:
        if self.max_bytes > 0 and self._size >= self.max_bytes:
            self._rotate()
        elif self._size and self._now().date() != self._last_write.date():
            self._rotate()

    def _rotate(self) -> None:
        self._file.close()
        stamp = self._last_write.strftime("%Y%m%d-%H%M%S")
        target = self.path.with_name(f"{self.path.name}.{stamp}")
        counter = 1
        while target.exists():
            target = self.path.with_name(f"{self.path.name}.{stamp}-{counter}")
            counter += 1
        os.rename(self.path, target)
        self._file = open(self.path, "a", encoding="utf-8")
        self._size = 0
        logger.info("Audit log rotated: %s -> %s", self.path, target)

    def rotated_files(self) -> list[Path]:
        prefix = self.path.name + "."
        return sorted(p for p in self.path.parent.iterdir() if p.is_file() and p.name.startswith(prefix))

    def all_files(self) -> list[Path]:
        """Rotated files oldest first, then the live file."""
        return self.rotated_files() + [self.path]

    def cleanup(self, retention: timedelta) -> list[Path]:
        """Delete rotated files whose mtime is older than now - retention."""
        cutoff = self._now().timestamp() - retention.total_seconds()
        removed = []
        with self._lock:
            for path in self.rotated_files():
                if path.stat().st_mtime < cutoff:
                    try:
                        path.unlink()
                    except OSError as e:
                        logger.warning("Failed to remove old audit file %s: %s", path, e)
                        continue
                    removed.append(path)
                    logger.info("Removed old audit file %s", path)
        return removed

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()


# =============================================================================
# Logger
# =============================================================================

class AuditLogger:
    """
    Fans events out to the log, the shared store, and the file sink.

    Never raises into the request path: store failures are logged and
    dropped; a file failure disables the file sink for the process. Files
    written before the failure stay queryable; later events go to the
    in-memory history.
    """

    def __init__(self, config: AuditConfig | None = None, store: Store | None = None):
        self.config = config or AuditConfig()
        self.store = store if self.config.store_enabled else None
        self._history: deque[AuditEvent] = deque(maxlen=self.config.history_size)
        self._writer: AuditFileWriter | None = None
        # kept after the sink is disabled so earlier files stay readable
        self._files: AuditFileWriter | None = None
        self._cleanup_task: asyncio.Task | None = None
        self.emitted = 0
        self.store_failures = 0

        if self.config.file_enabled:
            try:
                self._writer = AuditFileWriter(self.config.file_path, self.config.max_file_size)
                self._files = self._writer
            except OSError as e:
                logger.error("Failed to initialize audit file writer: %s", e)

    @property
    def file_sink_active(self) -> bool:
        return self._writer is not None

    def is_excluded(self, path: str) -> bool:
        return any(path.startswith(p) for p in self.config.exclude_paths)

    # -------------------------------------------------------------------------
    # Append
    # -------------------------------------------------------------------------

    async def emit(self, event: AuditEvent) -> AuditEvent:
        """
        Append one event to every configured sink.

        Sensitive metadata is redacted before any sink sees it; the
        redacted event is what gets stored and returned.
        """
        if event.metadata:
            event = event.model_copy(update={"metadata": redact(event.metadata, self.config.sensitive_fields)})
        self.emitted += 1
        self._log_event(event)

        if self.store is not None:
            try:
                await self.store.set(
                    f"{self.config.store_prefix}{event.id}",
                    event.model_dump_json(),
                    ttl=int(self.config.retention.total_seconds()),
                )
            except StoreError as e:
                self.store_failures += 1
                logger.warning("Failed to mirror audit event %s to store: %s", event.id, e)

        if self._writer is not None:
            try:
                self._writer.write_line(event.model_dump_json())
            except (OSError, ValueError) as e:
                logger.error("Audit file sink disabled after write failure: %s", e, extra={"audit_id": event.id})
                self._disable_file_sink()
                self._history.append(event)
        else:
            self._history.append(event)
        return event

    def _disable_file_sink(self) -> None:
        writer, self._writer = self._writer, None
        if writer is not None:
            try:
                writer.close()
            except OSError as e:
                logger.warning("Error closing audit file: %s", e)

    def _log_event(self, event: AuditEvent) -> None:
        logger.log(
            _LOG_LEVELS.get(AuditLevel(event.level), logging.INFO),
            "AUDIT: %s | %s %s -> %s | user=%s",
            event.event,
            event.method,
            event.path,
            event.status_code,
            event.user_id or "anonymous",
            extra={
                "audit_id": event.id,
                "event": event.event,
                "category": event.category,
                "client_ip": event.ip_address,
                "status_code": event.status_code,
                "duration_ms": event.duration_ms,
                "request_id": event.request_id,
            },
        )

    async def record_request(
        self,
        *,
        method: str,
        path: str,
        status_code: int,
        duration: float,
        principal: RequestPrincipal = ANONYMOUS,
        client_ip: str = "",
        user_agent: str = "",
        request_id: str = "",
        request_size: int = 0,
        response_size: int = 0,
        request_headers: Mapping[str, str] | None = None,
        request_body: bytes | None = None,
        content_type: str = "",
        message: str | None = None,
    ) -> AuditEvent | None:
        """Build and emit the audit event for one finished request."""
        if not self.config.enabled or self.is_excluded(path):
            return None

        config = self.config
        kind = derive_event_kind(path, method, status_code, duration, config.slow_request_seconds)
        metadata: dict[str, Any] = {}

        if kind.value.startswith(_DETAILED_PREFIXES):
            if request_headers is not None:
                metadata["request_headers"] = redact_headers(
                    request_headers, config.include_headers, config.sensitive_headers,
                )
            if request_body and path.startswith(_BODY_LOGGED_PREFIXES) and "multipart" not in content_type:
                metadata["request_body"] = self._sanitize_body(request_body)

        if duration > config.slow_request_seconds:
            metadata["slow_request"] = True
        if kind.value.startswith(("SECURITY_", "AUTH_")):
            metadata["security_event"] = True

        event = AuditEvent(
            level=derive_level(status_code, kind),
            event=kind,
            category=derive_category(kind),
            user_id=principal.user_id,
            username=principal.username,
            ip_address=client_ip,
            user_agent=user_agent,
            method=method,
            path=path,
            status_code=status_code,
            duration_ms=round(duration * 1000, 3),
            request_size=request_size,
            response_size=response_size,
            success=status_code < 400,
            message=message,
            metadata=metadata,
            request_id=request_id,
            session_id=principal.session_id,
        )
        return await self.emit(event)

    def _sanitize_body(self, body: bytes) -> Any:
        try:
            data = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return REDACTED
        return redact(data, self.config.sensitive_fields)

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def _iter_events(self):
        """File events oldest first, then anything held in memory."""
        if self._files is not None:
            yield from self._iter_file_events()
        if self._writer is None:
            yield from self._history

    def _iter_file_events(self):
        for path in self._files.all_files():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if line:
                            yield AuditEvent.model_validate_json(line)
            except FileNotFoundError:
                continue
            except (OSError, ValueError) as e:
                logger.error("Error reading audit file %s: %s", path, e)

    def query(self, query: AuditQuery | None = None) -> list[AuditEvent]:
        """Matching events, newest first."""
        query = query or AuditQuery()
        matches = [event for event in self._iter_events() if query.matches(event)]
        matches.reverse()
        return matches[query.offset:query.offset + query.limit]

    def count(self, query: AuditQuery | None = None) -> int:
        query = query or AuditQuery()
        return sum(1 for event in self._iter_events() if query.matches(event))

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def cleanup(self) -> int:
        if self._writer is None or self.config.retention <= timedelta(0):
            return 0
        return len(self._writer.cleanup(self.config.retention))

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            try:
                removed = await asyncio.to_thread(self.cleanup)
            except OSError as e:
                logger.error("Audit cleanup failed: %s", e)
                continue
            if removed:
                logger.info("Audit cleanup removed %d file(s)", removed)

    def start(self) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="audit-cleanup")
        logger.info("Audit cleanup task started (every %ss)", self.config.cleanup_interval_seconds)

    async def stop(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._writer is not None:
            self._writer.close()
            logger.info("Audit file sink closed")
