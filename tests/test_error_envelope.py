"""Error responses share one envelope:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from coursegate import app as app_module
from coursegate.api.error_handling import _error_code_for_status, _error_response
from coursegate.api.schemas import Envelope, ErrorBody


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


class TestModels:
    def test_error_body_defaults(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    @pytest.mark.parametrize(
        "code", ["claim_rejected", "no_subscription", "already_verified", "email_not_verified"]
    )
    def test_domain_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")

    def test_envelope_status_pattern_and_request_id(self):
        first = Envelope(status="ok", data={"a": 1})
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorResponseFactory:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_status_mapping(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_explicit_code_and_details(self):
        resp = _error_response(409, "taken", {"field": "email"}, code="claim_rejected")
        body = json.loads(resp.body)
        assert resp.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "claim_rejected",
            "message": "taken",
            "details": {"field": "email"},
        }
        assert body["data"] is None
        assert body["request_id"]


class TestOverHttp:
    def test_validation_failure_is_400_with_field_details(self, client):
        resp = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert any("email" in item["loc"] for item in error["details"])

    def test_request_id_echoed(self, client):
        resp = client.get("/v1/me", headers={"X-Request-ID": "req-1234"})
        assert resp.status_code == 401
        assert resp.headers["X-Request-ID"] == "req-1234"
        assert resp.json()["request_id"] == "req-1234"

    def test_request_id_generated_when_absent(self, client):
        resp = client.get("/v1/lessons/missing/access")
        assert resp.status_code == 404
        assert resp.headers["X-Request-ID"] == resp.json()["request_id"]

    def test_unknown_route_uses_envelope(self, client):
        resp = client.get("/v1/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_unhandled_exception_becomes_server_error(self, runtime, make_user, monkeypatch):
        def explode(_user_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(runtime.claims, "institution_status", explode)
        make_user("ravi@example.com")

        with TestClient(app_module.app, raise_server_exceptions=False) as client:
            token = client.post(
                "/v1/auth/login", json={"email": "ravi@example.com", "password": "CorrectHorse9!"}
            ).json()["data"]["access_token"]
            resp = client.get(
                "/v1/auth/institution-status", headers={"Authorization": f"Bearer {token}"}
            )
        assert resp.status_code == 500
        assert resp.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }

    def test_security_headers(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["checks"]["redis"] == {"status": "not_configured"}
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in resp.headers["Cache-Control"]
