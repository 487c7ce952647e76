"""Tests for the error envelope returned at the HTTP boundary.

Every error response looks like::

    {"error": {"code": "<CODE>", "message": "...", "details": {...}, "request_id": "..."}}

``details`` and ``request_id`` are omitted when empty.
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from festguard.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from festguard.api.schemas import ErrorBody, ErrorEnvelope
from festguard.config import reset_settings_cache
from festguard.service.errors import (
    ErrorCode,
    ExternalServiceError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)


def _body(response) -> dict:
    return json.loads(response.body)


class TestErrorBody:
    def test_known_code_is_accepted(self):
        body = ErrorBody(code="NOT_FOUND", message="Ticket not found")
        assert body.details is None
        assert body.request_id is None

    def test_unknown_code_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_nests_error(self):
        envelope = ErrorEnvelope(error=ErrorBody(code="FORBIDDEN", message="No"))
        assert envelope.model_dump(exclude_none=True) == {
            "error": {"code": "FORBIDDEN", "message": "No"}
        }


class TestErrorResponse:
    def test_client_error_keeps_details(self):
        response = error_response(
            ValidationError("Invalid quantity", details={"field": "quantity"}), "req-1"
        )
        assert response.status_code == 400
        assert _body(response) == {
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Invalid quantity",
                "details": {"field": "quantity"},
                "request_id": "req-1",
            }
        }

    def test_server_error_drops_details(self):
        err = InternalError(details={"sql": "SELECT secret FROM vault"})
        body = _body(error_response(err, "req-2"))
        assert body["error"]["code"] == "INTERNAL_ERROR"
        assert body["error"]["message"] == "An unexpected error occurred"
        assert "details" not in body["error"]

    def test_rate_limited_sets_retry_after(self):
        response = error_response(RateLimitedError("Slow down", retry_after=17))
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "17"

    def test_locked_out_sets_retry_after(self):
        err = RateLimitedError(code=ErrorCode.AUTH_LOCKED_OUT, retry_after=900)
        response = error_response(err)
        assert response.headers["Retry-After"] == "900"
        assert _body(response)["error"]["code"] == "AUTH_LOCKED_OUT"

    def test_cause_exposed_only_when_enabled(self, monkeypatch):
        cause = ConnectionError("could not reach redis://:hunter2@cache:6379")
        err = ExternalServiceError(code=ErrorCode.SERVICE_UNAVAILABLE, cause=cause)
        assert "details" not in _body(error_response(err))["error"]

        monkeypatch.setenv("EXPOSE_ERROR_CAUSES", "true")
        reset_settings_cache()
        details = _body(error_response(err))["error"]["details"]
        assert details["cause"].startswith("ConnectionError")
        assert "hunter2" not in details["cause"]

    def test_status_code_mapping(self):
        assert _error_code_for_status(404) == ErrorCode.NOT_FOUND
        assert _error_code_for_status(418) == ErrorCode.INTERNAL_ERROR
        assert _STATUS_TO_CODE[429] == ErrorCode.RATE_LIMITED


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    class Order(BaseModel):
        quantity: int

    @app.get("/missing")
    async def missing():
        raise NotFoundError("Order not found", details={"order_id": "o-1"})

    @app.get("/teapot")
    async def teapot():
        raise HTTPException(status_code=403, detail="Staff only")

    @app.post("/orders")
    async def create_order(order: Order):
        return {"quantity": order.quantity}

    return app


class TestExceptionHandlers:
    def test_app_error_handler(self):
        client = TestClient(_app())
        response = client.get("/missing")
        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["details"] == {"order_id": "o-1"}

    def test_http_exception_handler(self):
        client = TestClient(_app())
        response = client.get("/teapot")
        assert response.status_code == 403
        assert response.json()["error"] == {"code": "FORBIDDEN", "message": "Staff only"}

    def test_unknown_route_uses_envelope(self):
        client = TestClient(_app())
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_request_validation_handler(self):
        client = TestClient(_app())
        response = client.post("/orders", json={"quantity": "lots"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["errors"][0]["loc"] == ["body", "quantity"]
