"""Tests for injection detection on values, JSON documents and HTTP requests."""

import json

import pytest
from fastapi.testclient import TestClient

from festguard.app import create_app
from festguard.config import Settings
from festguard.service.injection import (
    InjectionCategory,
    InjectionConfig,
    InjectionDetector,
    is_clean_input,
)
from festguard.service.runtime import Runtime


@pytest.fixture
def detector():
    return InjectionDetector()


def _nested(depth, leaf):
    document = leaf
    for level in range(depth):
        document = {f"k{level}": document}
    return document


class TestDetectValues:
    @pytest.mark.parametrize(
        "value,category",
        [
            ("1 UNION SELECT * FROM users", InjectionCategory.SQL),
            ("1 union/**/select password from users", InjectionCategory.SQL),
            ("' OR '1'='1", InjectionCategory.SQL),
            ("admin'--", InjectionCategory.SQL),
            ("1; DROP TABLE tickets", InjectionCategory.SQL),
            ("1 AND SLEEP(5)", InjectionCategory.SQL),
            ('{"$where": "this.price > 0"}', InjectionCategory.NOSQL),
            ('{"price": {"$gt": 0}}', InjectionCategory.NOSQL),
            ("x; cat /etc/hosts", InjectionCategory.COMMAND),
            ("$(whoami)", InjectionCategory.COMMAND),
            ("`id`", InjectionCategory.COMMAND),
            ("../../etc/passwd", InjectionCategory.PATH_TRAVERSAL),
            ("%2e%2e%2fconfig", InjectionCategory.PATH_TRAVERSAL),
            ("%252e%252e%252fconfig", InjectionCategory.PATH_TRAVERSAL),
            ("<script>alert(1)</script>", InjectionCategory.XSS),
            ("<ScRiPt >alert(1)</script>", InjectionCategory.XSS),
            ('<img src=x onerror="alert(1)">', InjectionCategory.XSS),
            ("javascript:alert(1)", InjectionCategory.XSS),
            ('<svg onload="alert(1)">', InjectionCategory.XSS),
            ("{{7*7}}", InjectionCategory.XSS),
            ("*)(uid=*))(|(uid=*", InjectionCategory.LDAP),
            ("admin%00", InjectionCategory.LDAP),
            ('<!DOCTYPE foo [<!ENTITY xxe SYSTEM "file:///etc/passwd">]>', InjectionCategory.XXE),
        ],
    )
    def test_detects_payload(self, detector, value, category):
        detection = detector.detect(value, [category])
        assert detection is not None
        assert detection.category == category

    @pytest.mark.parametrize(
        "value",
        [
            "Main stage opens at 18:00",
            "Rock & Roll night",
            "Tickets from $25, select your seat",
            "O'Brien",
            "user@example.com",
            "https://festival.example/lineup?day=2",
            "Please select a day from the list",
        ],
    )
    def test_benign_text_is_clean(self, detector, value):
        assert detector.scan(value)

    def test_disabled_category_is_not_reported(self, detector):
        payload = "1 UNION SELECT * FROM users"
        assert detector.scan(payload, [InjectionCategory.XSS])
        assert not detector.scan(payload, [InjectionCategory.SQL])

    def test_is_clean_input_helper(self):
        assert is_clean_input("Food court", InjectionCategory.SQL)
        assert not is_clean_input("<script>x</script>", InjectionCategory.XSS)

    def test_parameter_entity_needs_dtd_context(self, detector):
        assert detector.scan("https://shop.example/caf%C3%A9;", [InjectionCategory.XXE])
        detection = detector.detect("<!DOCTYPE r [ %remote; ]>", [InjectionCategory.XXE])
        assert detection is not None
        assert detector.detect("[ %remote; ]", [InjectionCategory.XXE]).pattern == "parameter_entity"


class TestScanJson:
    def test_nested_values_are_scanned(self, detector):
        document = {"order": {"items": [{"note": "fine"}, {"note": "<script>x</script>"}]}}
        detection = detector.scan_json(document)
        assert detection.category == InjectionCategory.XSS
        assert detection.location == "json:root.order.items[1].note"

    def test_operator_keys_are_nosql(self, detector):
        detection = detector.scan_json({"username": {"$ne": None}})
        assert detection.category == InjectionCategory.NOSQL
        assert detection.pattern == "operator_key"

    def test_clean_document(self, detector):
        assert detector.scan_json({"name": "Ada", "tags": ["vip", "backstage"], "n": 3}) is None

    def test_deeply_nested_payload_is_found(self, detector):
        detection = detector.scan_json(_nested(40, "<script>alert(1)</script>"))
        assert detection.category == InjectionCategory.XSS
        assert detection.location.startswith("json:root.k39.k38")

    def test_deeply_nested_operator_key_is_found(self, detector):
        detection = detector.scan_json(_nested(40, {"$ne": ""}))
        assert detection.category == InjectionCategory.NOSQL

    def test_deeply_nested_clean_document(self, detector):
        assert detector.scan_json(_nested(40, "fine")) is None


class TestScanRequest:
    def test_query_parameter(self, detector):
        detection = detector.scan_request(
            path="/v1/events", query=[("q", "1 UNION SELECT * FROM users")]
        )
        assert detection.location == "query:q"

    def test_header(self, detector):
        detection = detector.scan_request(
            path="/v1/events", headers={"User-Agent": "<script>alert(1)</script>"}
        )
        assert detection.location == "header:User-Agent"

    def test_form_body(self, detector):
        detection = detector.scan_request(
            path="/v1/contact",
            body=b"name=x&message=..%2F..%2Fetc%2Fpasswd",
            content_type="application/x-www-form-urlencoded",
        )
        assert detection.category == InjectionCategory.PATH_TRAVERSAL

    def test_deeply_nested_json_body(self, detector):
        body = json.dumps(_nested(40, "<script>alert(1)</script>")).encode()
        detection = detector.scan_request(path="/v1/x", body=body, content_type="application/json")
        assert detection.category == InjectionCategory.XSS

    def test_percent_encoded_referer_is_clean(self, detector):
        headers = {"Referer": "https://festival.example/caf%C3%A9;q=1"}
        assert detector.scan_request(path="/v1/lineup", headers=headers) is None

    def test_excluded_path_is_skipped(self):
        detector = InjectionDetector(InjectionConfig(exclude_paths=("/v1/cms",)))
        assert detector.scan_request(path="/v1/cms/page", query=[("html", "<script>")]) is None

    def test_oversized_body_is_skipped(self):
        detector = InjectionDetector(InjectionConfig(max_body_bytes=16))
        body = b'{"note": "<script>alert(1)</script>"}'
        assert detector.scan_request(path="/v1/x", body=body, content_type="application/json") is None

    def test_custom_patterns(self):
        config = InjectionConfig(custom_patterns={InjectionCategory.SQL: [r"\bshutdown\b"]})
        detector = InjectionDetector(config)
        assert detector.detect("please shutdown now").pattern == "custom_0"


def _client(categories, *, block=True):
    settings = Settings(
        redis_url=None,
        rate_limit_enabled=False,
        injection_categories=categories,
        injection_block_requests=block,
    )
    app = create_app(Runtime(settings))

    @app.get("/v1/search")
    async def search(q: str = ""):
        return {"q": q}

    return TestClient(app)


class TestInjectionMiddleware:
    def test_sql_category_blocks_union_select(self):
        with _client(["sql"]) as client:
            response = client.get("/v1/search", params={"q": "1 UNION SELECT * FROM users"})
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "INJECTION_DETECTED"
        assert "UNION" not in response.text

    def test_xss_only_passes_sql_but_blocks_script(self):
        with _client(["xss"]) as client:
            passed = client.get("/v1/search", params={"q": "1 UNION SELECT * FROM users"})
            blocked = client.get("/v1/search", params={"q": "<script>alert(1)</script>"})
        assert passed.status_code == 200
        assert passed.json() == {"q": "1 UNION SELECT * FROM users"}
        assert blocked.status_code == 403

    def test_json_body_is_scanned(self):
        with _client(["nosql"]) as client:
            response = client.post("/v1/auth/login", json={"username": {"$ne": ""}, "password": "x"})
        assert response.status_code == 403

    def test_log_only_mode_passes_request(self):
        with _client(["sql"], block=False) as client:
            response = client.get("/v1/search", params={"q": "1 UNION SELECT * FROM users"})
        assert response.status_code == 200
