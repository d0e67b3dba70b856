"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json
from unittest.mock import patch

import pytest
from fastapi import APIRouter
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

from clinicrecords.api.error_handling import GENERIC_SERVER_MESSAGE, error_response
from clinicrecords.api.schemas import Envelope, ErrorBody
from clinicrecords.app import create_app
from clinicrecords.service.errors import (
    STATUS_FOR_CODE,
    ErrorCode,
    InvalidTokenError,
    ServerError,
)
from clinicrecords.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_every_error_code_is_accepted(self):
        for code in ErrorCode:
            assert ErrorBody(code=code.value, message="m").code == code.value

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="m")

    def test_envelope_status_pattern(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")


def test_status_table_covers_every_code():
    assert set(STATUS_FOR_CODE) == set(ErrorCode)


def test_service_error_status_follows_code():
    assert InvalidTokenError("expired").status_code == 401
    assert ServerError("boom").status_code == 500


def test_error_response_shape():
    response = error_response(ErrorCode.NOT_FOUND, "missing", {"id": "x"})
    body = json.loads(response.body)
    assert response.status_code == 404
    assert body["status"] == "error"
    assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}
    assert body["request_id"]


@pytest.fixture
def app(settings):
    application = create_app(settings)
    router = APIRouter()

    @router.get("/boom")
    async def boom():
        raise RuntimeError("database password is hunter2")

    @router.get("/conflict")
    async def conflict():
        raise ConstraintViolation("duplicate row", {"id": "p-1"})

    @router.get("/server-error")
    async def server_error():
        raise ServerError("signing key unavailable", detail={"internal": "secret detail"})

    application.include_router(router)
    return application


def test_uncaught_exception_is_generic(app):
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/boom")
    assert response.status_code == 500
    body = response.json()
    assert body["error"]["code"] == "server_error"
    assert body["error"]["message"] == GENERIC_SERVER_MESSAGE
    assert "hunter2" not in response.text


def test_uncaught_exception_keeps_request_id(app):
    with patch("clinicrecords.app.logger") as mock_logger:
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get(
                "/boom",
                headers={"X-Request-ID": "req-789", "Origin": "http://localhost:3000"},
            )
    assert response.status_code == 500
    assert response.headers["X-Request-ID"] == "req-789"
    assert response.json()["request_id"] == "req-789"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
    assert "hunter2" not in response.text
    mock_logger.exception.assert_called_once()
    assert mock_logger.exception.call_args.args[0] == "unhandled_exception"
    assert mock_logger.exception.call_args.kwargs["error_type"] == "RuntimeError"


def test_constraint_violation_is_conflict(app):
    with TestClient(app) as client:
        response = client.get("/conflict", headers={"X-Request-ID": "req-409"})
    assert response.status_code == 409
    body = response.json()
    assert body["error"]["code"] == "conflict"
    assert body["error"]["details"] == {"id": "p-1"}
    assert body["request_id"] == "req-409"


def test_server_error_message_is_replaced(app):
    with TestClient(app) as client:
        response = client.get("/server-error")
    assert response.status_code == 500
    assert response.json()["error"]["message"] == GENERIC_SERVER_MESSAGE
    assert "secret detail" not in response.text


def test_unknown_route_uses_envelope(app):
    with TestClient(app) as client:
        response = client.get("/nope")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_request_id_and_security_headers(app):
    with TestClient(app) as client:
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "Content-Security-Policy" in response.headers
    assert "Strict-Transport-Security" not in response.headers


def test_error_envelope_carries_request_id(app):
    with TestClient(app) as client:
        response = client.get("/auth/users/abc", headers={"X-Request-ID": "req-456"})
    assert response.status_code == 401
    assert response.json()["request_id"] == "req-456"
