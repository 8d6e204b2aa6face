"""
Input Validator Tests
String validity, check ordering, strict vs log-only mode, uploads and sanitizers.
"""

import json

import pytest
from starlette.datastructures import UploadFile
from starlette.requests import Request

from app.core.errors import ErrorCode
from app.core.validation import (
    InputValidator,
    RequestView,
    UploadView,
    ValidationPolicy,
    build_request_view,
    sanitize_data,
    sanitize_html,
    strip_control_chars,
)

NORMAL_HEADERS = [
    ("host", "erp.example.com"),
    ("accept", "*/*"),
    ("accept-encoding", "gzip, deflate, br"),
    ("user-agent", "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"),
    ("cookie", "_csrf=Zm9vYmFy-_baz; theme=dark"),
    ("authorization", "Bearer 4f2c9a1e-d3b7_x"),
]


def json_view(body, path="/api/v1/things", method="POST", **kwargs) -> RequestView:
    raw = json.dumps(body).encode()
    return RequestView(
        method=method,
        path=path,
        url=f"http://erp.example.com{path}",
        headers=list(NORMAL_HEADERS),
        content_type="application/json",
        content_length=len(raw),
        body=raw,
        **kwargs,
    )


@pytest.fixture
def strict() -> InputValidator:
    return InputValidator(ValidationPolicy())


@pytest.fixture
def lenient() -> InputValidator:
    return InputValidator(ValidationPolicy.development())


# =============================================================================
# String validity
# =============================================================================

@pytest.mark.parametrize("value,category", [
    ("1' OR '1'='1", "sql_injection"),
    ("x UNION SELECT password FROM users", "sql_injection"),
    ("<script>alert(1)</script>", "xss"),
    ("<img src=x onerror=alert(1)>", "xss"),
    ("../../etc/passwd", "path_traversal"),
    ("..%2f..%2fboot.ini", "path_traversal"),
    ("; cat /etc/shadow", "command_injection"),
    ("$(whoami)", "command_injection"),
])
def test_deny_patterns_detected(strict, value, category):
    threat = strict.find_threat(value)
    assert threat is not None
    assert threat.category == category
    assert not strict.is_valid_string(value)


@pytest.mark.parametrize("value", [
    "Quarterly order for O'Brien & Sons",
    "Select the best supplier from the list",
    "Update: shipment delayed; see notes",
    "alice@example.com",
    "Line one\nLine two\tindented",
    "Price 4.50/unit",
])
def test_ordinary_text_is_valid(strict, value):
    assert strict.string_problem(value) is None


def test_string_bounds_and_characters(strict):
    assert strict.string_problem("") is not None
    assert strict.string_problem("a" * 10001) is not None
    assert strict.string_problem("null\x00byte") == "contains control characters"
    assert strict.string_problem("bad \ufffd char") == "contains invalid characters"


def test_validator_is_deterministic(strict):
    view = json_view({"note": "<script>x</script>"})
    assert strict.validate(view).rejection == strict.validate(view).rejection


# =============================================================================
# Check order and status codes
# =============================================================================

def test_unsupported_content_type(strict):
    view = RequestView(method="POST", path="/x", content_type="application/x-evil", body=b"abc")
    rejection = strict.validate(view).rejection
    assert rejection.status_code == 415
    assert rejection.code == ErrorCode.UNSUPPORTED_MEDIA_TYPE


def test_content_type_checked_before_body_size(strict):
    view = RequestView(method="POST", path="/x", content_type="application/x-evil", content_length=50 * 1024 * 1024)
    assert strict.validate(view).rejection.status_code == 415


def test_body_too_large(strict):
    view = RequestView(method="POST", path="/x", content_type="application/json", content_length=11 * 1024 * 1024)
    rejection = strict.validate(view).rejection
    assert rejection.status_code == 413
    assert rejection.code == ErrorCode.REQUEST_TOO_LARGE


def test_url_too_long(strict):
    view = RequestView(method="GET", path="/x", url="http://h/" + "a" * 3000)
    assert strict.validate(view).rejection.status_code == 414


def test_header_too_large(strict):
    view = RequestView(method="GET", path="/x", headers=[("x-big", "a" * 9000)])
    assert strict.validate(view).rejection.status_code == 431


def test_normal_headers_pass(strict):
    view = RequestView(method="GET", path="/api/v1/products", headers=list(NORMAL_HEADERS))
    assert strict.validate(view).ok


def test_header_deny_pattern_applies_to_get(strict):
    view = RequestView(method="GET", path="/api/v1/products", headers=[("referer", "<script>alert(1)</script>")])
    rejection = strict.validate(view).rejection
    assert rejection.status_code == 400
    assert rejection.code == ErrorCode.VALIDATION_ERROR


def test_too_many_query_params(strict):
    view = RequestView(method="GET", path="/x", query=[(f"p{i}", "1") for i in range(51)])
    assert strict.validate(view).rejection.code == ErrorCode.INVALID_QUERY_PARAMS


def test_query_deny_pattern(strict):
    view = RequestView(method="GET", path="/x", query=[("q", "1' OR '1'='1")])
    rejection = strict.validate(view).rejection
    assert rejection.status_code == 400
    assert rejection.code == ErrorCode.INVALID_QUERY_PARAMS


@pytest.mark.parametrize("query", [
    [("limit", "2000")],
    [("limit", "0")],
    [("limit", "ten")],
    [("page", "0")],
    [("offset", "-1")],
])
def test_pagination_bounds(strict, lenient, query):
    for validator in (strict, lenient):
        rejection = validator.validate(RequestView(method="POST", path="/api/v1/orders", query=query)).rejection
        assert rejection.code == ErrorCode.INVALID_QUERY_PARAMS


def test_pagination_within_bounds(strict):
    view = RequestView(method="GET", path="/x", query=[("limit", "1000"), ("page", "3"), ("offset", "0")])
    assert strict.validate(view).ok


def test_excluded_paths_skip_validation(strict):
    view = RequestView(method="GET", path="/health", headers=[("x", "<script>")])
    assert strict.validate(view).ok


# =============================================================================
# Bodies
# =============================================================================

def test_invalid_json(strict):
    view = RequestView(method="POST", path="/x", content_type="application/json", body=b"{not json")
    assert strict.validate(view).rejection.message == "Invalid JSON format"


def test_required_fields(strict):
    view = json_view({"email": "a@b.co"}, path="/api/v1/users/register")
    rejection = strict.validate(view).rejection
    assert rejection.message == "Missing required fields"
    assert set(rejection.details) == {"password", "username"}


def test_field_pattern_rules(strict):
    view = json_view({"email": "a@b.co", "password": "x", "username": "u"}, path="/api/v1/users/register")
    rejection = strict.validate(view).rejection
    assert rejection.status_code == 400
    assert rejection.code == ErrorCode.VALIDATION_ERROR
    assert "username" in rejection.details


def test_field_length_rules(strict):
    view = json_view({"name": "n" * 101})
    assert "name" in strict.validate(view).rejection.details


def test_nested_json_values_are_walked(strict):
    view = json_view({"order": {"lines": [{"note": "ok"}, {"note": "<script>x</script>"}]}})
    rejection = strict.validate(view).rejection
    assert rejection is not None
    assert "body.order.lines[1].note" in rejection.details


def test_lenient_mode_logs_but_allows_deny_patterns(lenient):
    view = json_view({"note": "<script>x</script>"})
    outcome = lenient.validate(view)
    assert outcome.ok
    assert outcome.findings
    assert outcome.findings[0].threat.category == "xss"


def test_lenient_mode_still_enforces_structure(lenient):
    view = json_view({"email": "a@b.co", "password": "x", "username": "u"}, path="/api/v1/users/register")
    assert lenient.validate(view).rejection.code == ErrorCode.VALIDATION_ERROR


def test_form_fields(strict):
    view = RequestView(
        method="POST", path="/x", content_type="application/x-www-form-urlencoded",
        body=b"a=1", form_fields=[(f"f{i}", "v") for i in range(101)],
    )
    assert "Too many form fields" in strict.validate(view).rejection.message

    view.form_fields = [("comment", "'; DROP TABLE users; --")]
    assert strict.validate(view).rejection.status_code == 400


def test_bodiless_methods_skip_body_checks(strict):
    view = json_view({"note": "<script>x</script>"}, method="GET")
    assert strict.validate(view).ok


# =============================================================================
# Uploads
# =============================================================================

def upload_view(*uploads) -> RequestView:
    return RequestView(
        method="POST", path="/api/v1/documents",
        content_type="multipart/form-data; boundary=x", content_length=100,
        form_fields=[], uploads=list(uploads),
    )


def test_upload_accepted(strict):
    assert strict.validate(upload_view(UploadView("file", "invoice.pdf", 1024, "application/pdf"))).ok


def test_upload_too_large(strict):
    view = upload_view(UploadView("file", "scan.png", 6 * 1024 * 1024, "image/png"))
    assert strict.validate(view).rejection.status_code == 413


def test_upload_extension_rejected(strict):
    view = upload_view(UploadView("file", "payload.exe", 10, "application/octet-stream"))
    rejection = strict.validate(view).rejection
    assert rejection.status_code == 400
    assert rejection.details == {"file": "file type not allowed"}


def test_upload_content_type_rejected(strict):
    view = upload_view(UploadView("file", "notes.txt", 10, "application/x-msdownload"))
    assert strict.validate(view).rejection.details == {"file": "content type not allowed"}


# =============================================================================
# Request snapshots
# =============================================================================

def make_request(method, body=b"", content_type="application/json", path="/api/v1/documents"):
    headers = [(b"content-type", content_type.encode()), (b"content-length", str(len(body)).encode())]
    sent = False

    async def receive():
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    scope = {
        "type": "http", "method": method, "path": path, "raw_path": path.encode(),
        "query_string": b"", "headers": headers, "scheme": "http",
        "server": ("erp.example.com", 80), "client": ("203.0.113.9", 5000),
    }
    return Request(scope, receive)


@pytest.mark.anyio
async def test_json_and_bodiless_views_have_no_form_fields():
    json_request = make_request("POST", b'{"name": "Widget"}')
    view = await build_request_view(json_request, 1024)
    assert view.body == b'{"name": "Widget"}'
    assert view.form_fields is None

    view = await build_request_view(make_request("GET"), 1024)
    assert view.form_fields is None


@pytest.mark.anyio
async def test_multipart_form_is_closed_after_snapshot(monkeypatch):
    closed = []
    original_close = UploadFile.close

    async def recording_close(self):
        closed.append(self.filename)
        await original_close(self)

    monkeypatch.setattr(UploadFile, "close", recording_close)

    body = (
        b"--XyZ\r\n"
        b'Content-Disposition: form-data; name="title"\r\n\r\n'
        b"Q3 invoice\r\n"
        b"--XyZ\r\n"
        b'Content-Disposition: form-data; name="file"; filename="invoice.pdf"\r\n'
        b"Content-Type: application/pdf\r\n\r\n"
        b"%PDF-1.4 test\r\n"
        b"--XyZ--\r\n"
    )
    request = make_request("POST", body, content_type="multipart/form-data; boundary=XyZ")
    view = await build_request_view(request, 1024 * 1024)

    assert view.form_fields == [("title", "Q3 invoice")]
    assert [(u.field_name, u.filename, u.content_type) for u in view.uploads] == [
        ("file", "invoice.pdf", "application/pdf"),
    ]
    assert closed == ["invoice.pdf"]


# =============================================================================
# Sanitizers
# =============================================================================

def test_sanitize_html():
    assert sanitize_html('<script>alert(1)</script>hello') == "hello"
    assert "onclick" not in sanitize_html('<b onclick="x()">hi</b>')
    assert sanitize_html('<a href="javascript:go()">x</a>') == "&lt;a href=&quot;go()&quot;&gt;x&lt;/a&gt;"


def test_strip_control_chars():
    assert strip_control_chars("a\x00b\x07c\nd") == "abc\nd"


def test_sanitize_data_recurses():
    data = {"a": ["<script>x</script>ok", 5], "b": {"c": "x\x00y"}}
    assert sanitize_data(data) == {"a": ["ok", 5], "b": {"c": "xy"}}
