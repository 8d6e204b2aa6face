"""
Input Validation and Sanitization for the ERP API.

Size, shape, pattern and injection-class checks over headers, query,
form and JSON bodies, and multipart uploads. The validator itself is a
pure function of (policy, request view); the security middleware builds
the RequestView and turns a Rejection into a terminal response.

Sanitizers at the bottom of the module are for the response path and are
never a substitute for rejecting input.
"""

import html
import json
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl

from starlette.datastructures import UploadFile
from starlette.requests import Request

from app.core.errors import ErrorCode

logger = logging.getLogger(__name__)

MiB = 1024 * 1024


# =============================================================================
# Deny Patterns
# =============================================================================

SQL_INJECTION_PATTERNS = (
    r"\bunion\b\s+(?:all\s+)?\bselect\b",
    r"\bselect\s+(?:\*|[\w.`\"]+(?:\s*,\s*[\w.`\"]+)*)\s+from\s+[\w.`\"]+",
    r"\binsert\s+into\s+\S+.*?\bvalues\s*\(",
    r"\bupdate\s+\S+\s+set\s+\S+\s*=",
    r"\bdelete\s+from\s+\S+",
    r"\b(?:drop|create|alter|truncate)\s+(?:table|database|schema)\b",
    r"\bexec(?:ute)?\s*\(|\b(?:xp_cmdshell|sp_executesql)\b",
    r"'\s*(?:or|and)\s+['\"]?[\w-]+['\"]?\s*(?:=|like)\s*['\"]?[\w-]+",
    r"['\"]\s*(?:--|#|/\*)",
    r";\s*(?:--|drop|delete|insert|update|select|shutdown)\b",
    r"\b(?:waitfor\s+delay|benchmark\s*\(|pg_sleep\s*\(|sleep\s*\(\s*\d)",
    r"\b(?:information_schema|sysobjects|syscolumns|pg_user)\b",
)

XSS_PATTERNS = (
    r"<\s*/?\s*script\b",
    r"\b(?:javascript|vbscript)\s*:",
    r"\bon(?:load|error|click|dblclick|mouseover|mouseout|mouseenter|focus|blur|change|submit|keydown|keyup|keypress)\s*=",
    r"<\s*(?:iframe|object|embed|applet|link|meta|style|base|form|svg)\b",
    r"\bexpression\s*\(|@import\b|-moz-binding|\bbehavior\s*:",
    r"\b(?:alert|confirm|prompt|eval|setTimeout|setInterval)\s*\(",
    r"\bdocument\s*\.\s*(?:cookie|domain|write|location)|\bwindow\s*\.\s*location",
    r"data\s*:\s*text/html",
)

PATH_TRAVERSAL_PATTERNS = (
    r"\.\./|\.\.\\",
    r"(?:%2e%2e|%252e%252e|\.\.)(?:%2f|%5c|%252f|%255c)",
    r"%2e%2e[/\\]",
    r"\.\.%c0%af|\.\.%c1%9c",
    r"\bfile://",
    r"^/etc/(?:passwd|shadow|hosts)\b|\b(?:boot|win)\.ini\b",
)

COMMAND_INJECTION_PATTERNS = (
    r"\$\([^)]*\)|\$\{[^}]*\}|`[^`]*`",
    r"(?:;|&&|\|\|?)\s*(?:rm|cat|ls|id|whoami|uname|pwd|wget|curl|nc|netcat|telnet|bash|sh|zsh|python|perl|ruby|php|powershell|cmd)(?:\s|$)",
    r"\brm\s+-[rf]{1,2}\b|\bdel\s+/[fqs]\b|\bmkfifo\b",
    r"/bin/(?:ba|z|c)?sh\b|\bcmd\.exe\b|\bpowershell\.exe\b",
    r"\b(?:wget|curl)\s+(?:-\S+\s+)*(?:https?|ftp)://",
    r"\bnc\s+-[elvp]+\b",
)

DEFAULT_PATTERNS: dict[str, tuple[str, ...]] = {
    "sql_injection": SQL_INJECTION_PATTERNS,
    "xss": XSS_PATTERNS,
    "path_traversal": PATH_TRAVERSAL_PATTERNS,
    "command_injection": COMMAND_INJECTION_PATTERNS,
}

DEFAULT_ALLOWED_MIME_TYPES = (
    "application/json",
    "application/x-www-form-urlencoded",
    "multipart/form-data",
    "text/plain",
    "text/csv",
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/octet-stream",
)

DEFAULT_ALLOWED_EXTENSIONS = (
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".pdf",
    ".txt", ".csv", ".xls", ".xlsx", ".doc", ".docx",
)

DEFAULT_FIELD_MAX_LENGTHS = {
    "name": 100,
    "email": 255,
    "username": 50,
    "password": 128,
    "phone": 20,
    "address": 500,
    "company": 100,
    "title": 200,
    "content": 10000,
}

DEFAULT_FIELD_PATTERNS = {
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "username": r"^[a-zA-Z0-9_-]{3,50}$",
    "phone": r"^\+?[\d\s\-\(\)]{10,20}$",
    "uuid": r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$",
}

DEFAULT_REQUIRED_FIELDS = {
    "POST:/api/v1/users/register": ("email", "password", "username"),
    "POST:/api/v1/auth/register": ("email", "password", "username"),
    "POST:/api/v1/products": ("name", "price"),
    "POST:/api/v1/orders": ("customer_id", "items"),
}


# =============================================================================
# Policy and Results
# =============================================================================

@dataclass
class ValidationPolicy:
    max_body_size: int = 10 * MiB
    max_header_size: int = 8192
    max_url_length: int = 2048
    max_query_params: int = 50
    max_form_fields: int = 100
    min_string_length: int = 1
    max_string_length: int = 10000
    max_file_size: int = 5 * MiB
    max_pagination_limit: int = 1000
    allowed_mime_types: tuple[str, ...] = DEFAULT_ALLOWED_MIME_TYPES
    allowed_extensions: tuple[str, ...] = DEFAULT_ALLOWED_EXTENSIONS
    patterns: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_PATTERNS))
    field_max_lengths: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_FIELD_MAX_LENGTHS))
    field_patterns: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FIELD_PATTERNS))
    required_fields: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_REQUIRED_FIELDS))
    strict_mode: bool = True
    excluded_paths: tuple[str, ...] = ("/health", "/healthz", "/metrics")
    # Bodiless methods: only URL, header and query checks run
    excluded_methods: tuple[str, ...] = ("GET", "HEAD", "OPTIONS")

    @classmethod
    def development(cls) -> "ValidationPolicy":
        return cls(strict_mode=False)


@dataclass
class UploadView:
    field_name: str
    filename: str
    size: int
    content_type: str = ""


@dataclass
class RequestView:
    """What the validator needs to know about a request, decoupled from Starlette."""
    method: str
    path: str
    url: str = ""
    headers: list[tuple[str, str]] = field(default_factory=list)
    query: list[tuple[str, str]] = field(default_factory=list)
    content_type: str = ""
    content_length: int | None = None
    body: bytes = b""
    form_fields: list[tuple[str, str]] | None = None
    uploads: list[UploadView] = field(default_factory=list)

    @property
    def media_type(self) -> str:
        return self.content_type.split(";", 1)[0].strip().lower()

    @property
    def body_size(self) -> int:
        if self.content_length is not None:
            return self.content_length
        return len(self.body)


@dataclass(frozen=True)
class Threat:
    category: str
    pattern: str


@dataclass
class Finding:
    """A suspicious value; rejected in strict mode, logged otherwise."""
    location: str
    message: str
    threat: Threat | None = None


@dataclass
class Rejection:
    status_code: int
    code: ErrorCode
    message: str
    details: dict[str, str] | None = None


@dataclass
class ValidationOutcome:
    rejection: Rejection | None = None
    findings: list[Finding] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.rejection is None


class _Reject(Exception):
    def __init__(self, rejection: Rejection):
        self.rejection = rejection


# =============================================================================
# Validator
# =============================================================================

class InputValidator:
    """Pure request validator: same policy and input always yield the same verdict."""

    def __init__(self, policy: ValidationPolicy | None = None):
        self.policy = policy or ValidationPolicy()
        self._patterns: list[tuple[str, str, re.Pattern]] = [
            (category, pattern, re.compile(pattern, re.IGNORECASE))
            for category, patterns in self.policy.patterns.items()
            for pattern in patterns
        ]
        self._field_patterns = {
            name: re.compile(pattern) for name, pattern in self.policy.field_patterns.items()
        }
        self._allowed_types = {t.lower() for t in self.policy.allowed_mime_types}
        self._allowed_extensions = {e.lower() for e in self.policy.allowed_extensions}

    # -------------------------------------------------------------------------
    # String checks
    # -------------------------------------------------------------------------

    def find_threat(self, value: str) -> Threat | None:
        for category, pattern, compiled in self._patterns:
            if compiled.search(value):
                return Threat(category, pattern)
        return None

    def string_problem(self, value: str) -> str | None:
        """Why the string is invalid, or None when it is valid."""
        policy = self.policy
        if len(value) < policy.min_string_length:
            return f"must be at least {policy.min_string_length} characters"
        if len(value) > policy.max_string_length:
            return f"must be at most {policy.max_string_length} characters"
        for ch in value:
            if ch == "\ufffd":
                return "contains invalid characters"
            if ch not in "\t\n\r" and unicodedata.category(ch) == "Cc":
                return "contains control characters"
        threat = self.find_threat(value)
        if threat:
            return f"potentially malicious content ({threat.category})"
        return None

    def is_valid_string(self, value: str) -> bool:
        return self.string_problem(value) is None

    def _check_string(
        self,
        value: str,
        location: str,
        findings: list[Finding],
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ) -> None:
        problem = self.string_problem(value)
        if problem is None:
            return
        findings.append(Finding(location, problem, self.find_threat(value)))
        if self.policy.strict_mode:
            raise _Reject(Rejection(400, code, f"Invalid input in {location}", {location: problem}))

    # -------------------------------------------------------------------------
    # Request
    # -------------------------------------------------------------------------

    def applies_to(self, path: str) -> bool:
        return not any(
            path == excluded or path.startswith(excluded.rstrip("/") + "/")
            for excluded in self.policy.excluded_paths
        )

    def validate(self, view: RequestView) -> ValidationOutcome:
        """Run every check in order; the first failure becomes the rejection."""
        outcome = ValidationOutcome()
        if not self.applies_to(view.path):
            return outcome
        try:
            self._validate(view, outcome.findings)
        except _Reject as e:
            outcome.rejection = e.rejection
        for finding in outcome.findings:
            logger.warning(
                "Suspicious input in %s on %s %s: %s",
                finding.location, view.method, view.path, finding.message,
                extra={"path": view.path, "location": finding.location},
            )
        return outcome

    def _validate(self, view: RequestView, findings: list[Finding]) -> None:
        policy = self.policy
        has_body = view.method.upper() not in policy.excluded_methods

        if has_body and view.body_size > 0 and view.media_type:
            if view.media_type not in self._allowed_types:
                raise _Reject(Rejection(
                    415, ErrorCode.UNSUPPORTED_MEDIA_TYPE,
                    f"Content type {view.media_type} is not supported",
                ))

        if view.body_size > policy.max_body_size:
            raise _Reject(Rejection(
                413, ErrorCode.REQUEST_TOO_LARGE,
                f"Request body exceeds {policy.max_body_size} bytes",
            ))

        if len(view.url) > policy.max_url_length:
            raise _Reject(Rejection(414, ErrorCode.VALIDATION_ERROR, "Request URL too long"))

        self._validate_headers(view, findings)
        self._validate_query(view, findings)

        if not has_body:
            return

        if view.form_fields is not None:
            self._validate_form(view.form_fields, findings)
        if view.media_type == "application/json" and view.body:
            self._validate_json(view, findings)
        if view.uploads:
            self._validate_uploads(view.uploads)

    def _validate_headers(self, view: RequestView, findings: list[Finding]) -> None:
        for name, value in view.headers:
            if len(name) + len(value) > self.policy.max_header_size:
                raise _Reject(Rejection(
                    431, ErrorCode.VALIDATION_ERROR, f"Header {name} too large",
                ))
            if value:
                self._check_string(value, f"header:{name}", findings)

    def _validate_query(self, view: RequestView, findings: list[Finding]) -> None:
        policy = self.policy
        if len(view.query) > policy.max_query_params:
            raise _Reject(Rejection(
                400, ErrorCode.INVALID_QUERY_PARAMS,
                f"Too many query parameters (max {policy.max_query_params})",
            ))

        for key, value in view.query:
            self._check_string(key, f"query:{key}", findings, ErrorCode.INVALID_QUERY_PARAMS)
            self._check_string(value, f"query:{key}", findings, ErrorCode.INVALID_QUERY_PARAMS)
            problem = self._field_problem(key, value)
            if problem:
                raise _Reject(Rejection(
                    400, ErrorCode.INVALID_QUERY_PARAMS, "Invalid query parameter", {key: problem},
                ))

        self._validate_pagination(view.query)

    def _validate_pagination(self, query: list[tuple[str, str]]) -> None:
        bounds = {
            "limit": (1, self.policy.max_pagination_limit),
            "page": (1, None),
            "offset": (0, None),
        }
        for key, value in query:
            if key not in bounds:
                continue
            low, high = bounds[key]
            try:
                number = int(value)
            except ValueError:
                number = None
            if number is None or number < low or (high is not None and number > high):
                message = f"must be an integer >= {low}" if high is None else f"must be between {low} and {high}"
                raise _Reject(Rejection(
                    400, ErrorCode.INVALID_QUERY_PARAMS, f"Invalid {key} parameter", {key: message},
                ))

    def _validate_form(self, fields: list[tuple[str, str]], findings: list[Finding]) -> None:
        if len(fields) > self.policy.max_form_fields:
            raise _Reject(Rejection(
                400, ErrorCode.VALIDATION_ERROR,
                f"Too many form fields (max {self.policy.max_form_fields})",
            ))
        for key, value in fields:
            self._check_string(key, f"form:{key}", findings)
            self._check_string(value, f"form:{key}", findings)
            problem = self._field_problem(key, value)
            if problem:
                raise _Reject(Rejection(400, ErrorCode.VALIDATION_ERROR, "Validation failed", {key: problem}))

    def _validate_json(self, view: RequestView, findings: list[Finding]) -> None:
        try:
            data = json.loads(view.body)
        except (ValueError, UnicodeDecodeError):
            raise _Reject(Rejection(400, ErrorCode.VALIDATION_ERROR, "Invalid JSON format"))

        errors: dict[str, str] = {}
        required = self.policy.required_fields.get(f"{view.method.upper()}:{view.path}", ())
        for name in required:
            value = data.get(name) if isinstance(data, dict) else None
            if value is None or value == "" or value == [] or value == {}:
                errors[name] = "field is required"
        if errors:
            raise _Reject(Rejection(400, ErrorCode.VALIDATION_ERROR, "Missing required fields", errors))

        self._walk_json(data, "body", findings, errors)
        if errors:
            raise _Reject(Rejection(400, ErrorCode.VALIDATION_ERROR, "Validation failed", errors))

    def _walk_json(self, value: Any, location: str, findings: list[Finding], errors: dict[str, str]) -> None:
        if isinstance(value, dict):
            for key, item in value.items():
                key = str(key)
                self._check_string(key, f"{location}.{key}", findings)
                if not isinstance(item, (dict, list)):
                    problem = self._field_problem(key, item)
                    if problem and key not in errors:
                        errors[key] = problem
                self._walk_json(item, f"{location}.{key}", findings, errors)
        elif isinstance(value, list):
            for index, item in enumerate(value):
                self._walk_json(item, f"{location}[{index}]", findings, errors)
        elif isinstance(value, str):
            self._check_string(value, location, findings)

    def _field_problem(self, name: str, value: Any) -> str | None:
        """Per-field length and pattern rules for a named field."""
        if value is None:
            return None
        text = value if isinstance(value, str) else str(value)
        lowered = name.lower()
        max_length = self.policy.field_max_lengths.get(lowered)
        if max_length is not None and len(text) > max_length:
            return f"must be at most {max_length} characters"
        pattern = self._field_patterns.get(lowered)
        if pattern is not None and not pattern.fullmatch(text):
            return f"invalid {lowered} format"
        return None

    def _validate_uploads(self, uploads: list[UploadView]) -> None:
        for upload in uploads:
            if upload.size > self.policy.max_file_size:
                raise _Reject(Rejection(
                    413, ErrorCode.REQUEST_TOO_LARGE,
                    f"File {upload.filename} exceeds {self.policy.max_file_size} bytes",
                ))
            name = upload.filename.lower()
            extension = name[name.rfind("."):] if "." in name else ""
            if extension not in self._allowed_extensions:
                raise _Reject(Rejection(
                    400, ErrorCode.VALIDATION_ERROR,
                    f"File type {extension or '(none)'} is not allowed",
                    {upload.field_name: "file type not allowed"},
                ))
            media_type = upload.content_type.split(";", 1)[0].strip().lower()
            if media_type and media_type not in self._allowed_types:
                raise _Reject(Rejection(
                    400, ErrorCode.VALIDATION_ERROR,
                    f"File content type {media_type} is not allowed",
                    {upload.field_name: "content type not allowed"},
                ))


async def build_request_view(request: Request, max_body_size: int) -> RequestView:
    """
    Snapshot a Starlette request for validation.

    The body is only read when its declared length is within the limit;
    Starlette caches it so downstream handlers can read it again.
    """
    content_type = request.headers.get("content-type", "")
    declared = request.headers.get("content-length")
    try:
        content_length = int(declared) if declared is not None else None
    except ValueError:
        content_length = None

    view = RequestView(
        method=request.method,
        path=request.url.path,
        url=str(request.url),
        headers=[(k, v) for k, v in request.headers.items()],
        query=list(request.query_params.multi_items()),
        content_type=content_type,
        content_length=content_length,
    )

    if request.method.upper() in ("GET", "HEAD", "OPTIONS"):
        return view
    if content_length is not None and content_length > max_body_size:
        return view

    view.body = await request.body()
    if content_length is None:
        view.content_length = len(view.body)

    media_type = view.media_type
    if media_type == "application/x-www-form-urlencoded":
        view.form_fields = parse_qsl(view.body.decode("utf-8", "replace"), keep_blank_values=True)
    elif media_type == "multipart/form-data":
        form = await request.form()
        view.form_fields = []
        try:
            for key, value in form.multi_items():
                if isinstance(value, UploadFile):
                    view.uploads.append(UploadView(
                        field_name=key,
                        filename=value.filename or "",
                        size=value.size if value.size is not None else 0,
                        content_type=value.content_type or "",
                    ))
                else:
                    view.form_fields.append((key, value))
        finally:
            # spooled upload files; the handler parses its own copy
            await form.close()
    return view


# =============================================================================
# Sanitizers (response path)
# =============================================================================

_DANGEROUS_ELEMENTS = re.compile(
    r"<\s*(script|iframe|object|embed|link|meta)\b[^>]*>.*?<\s*/\s*\1\s*>|<\s*/?\s*(?:script|iframe|object|embed|link|meta)\b[^>]*>",
    re.IGNORECASE | re.DOTALL,
)
_EVENT_HANDLERS = re.compile(r"\s*\bon\w+\s*=\s*(?:\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE)
_PSEUDO_PROTOCOLS = re.compile(r"\b(?:javascript|vbscript)\s*:", re.IGNORECASE)


def sanitize_html(value: str) -> str:
    """
    Strip dangerous elements, event-handler attributes and script
    pseudo-protocols, then escape HTML entities.
    """
    if not value:
        return value
    value = _DANGEROUS_ELEMENTS.sub("", value)
    value = _EVENT_HANDLERS.sub("", value)
    value = _PSEUDO_PROTOCOLS.sub("", value)
    return html.escape(value)


def strip_control_chars(value: str) -> str:
    """
    Remove control characters (except newlines/tabs).
    Prevents null byte injection and similar attacks.
    """
    if not value:
        return value
    return "".join(c for c in value if ord(c) >= 32 or c in "\t\n\r")


def sanitize_data(value: Any) -> Any:
    """Recursively sanitize every string in a JSON-like structure."""
    if isinstance(value, str):
        return sanitize_html(strip_control_chars(value))
    if isinstance(value, dict):
        return {k: sanitize_data(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize_data(v) for v in value]
    return value
