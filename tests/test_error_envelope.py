"""Error envelope format and exception-to-response mapping.

Every failure leaves the API as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": {...}},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from gatekeeper.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from gatekeeper.api.schemas import Envelope, ErrorBody
from gatekeeper.service.errors import (
    MfaLockedOutError,
    OtpExpiredError,
    ProviderUnavailableError,
    ServiceError,
)
from gatekeeper.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_details_may_be_list(self):
        error = ErrorBody(code="validation_error", message="Multiple", details=[{"f": "a"}])
        assert error.details == [{"f": "a"}]

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_code_must_be_snake_case(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="Not-Snake", message="x")


class TestEnvelope:
    def test_error_envelope(self):
        envelope = Envelope(status="error", error=ErrorBody(code="forbidden", message="no"))
        assert envelope.data is None
        assert len(envelope.request_id) == 36

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (502, "provider_unavailable"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_codes_are_valid_error_bodies(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_basic(self):
        response = error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["request_id"]

    def test_custom_code(self):
        response = error_response(400, "Code expired", code="otp_expired")
        assert json.loads(response.body.decode())["error"]["code"] == "otp_expired"


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service/{kind}")
    async def raise_service(kind: str):
        errors = {
            "otp": OtpExpiredError("Code expired"),
            "lockout": MfaLockedOutError("Too many attempts", detail={"retry_after": 300}),
            "provider": ProviderUnavailableError("Upstream down"),
            "base": ServiceError("Plain failure", status_code=418, error_code="teapot"),
        }
        raise errors[kind]

    @app.get("/constraint")
    async def raise_constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/http")
    async def raise_http():
        raise HTTPException(status_code=404, detail="missing thing")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error_keeps_code_and_domain(self, client):
        response = client.get("/service/otp")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "otp_expired"
        assert error["details"] == {"domain": "otp"}

    def test_detail_merged_with_domain(self, client):
        response = client.get("/service/lockout")
        assert response.status_code == 429
        assert response.json()["error"]["details"] == {"retry_after": 300, "domain": "mfa"}

    def test_provider_outage_is_502(self, client):
        response = client.get("/service/provider")
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "provider_unavailable"

    def test_status_override(self, client):
        response = client.get("/service/base")
        assert response.status_code == 418
        assert response.json()["error"]["code"] == "teapot"

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_http_exception(self, client):
        response = client.get("/http")
        assert response.status_code == 404
        assert response.json()["error"] == {
            "code": "not_found",
            "message": "missing thing",
            "details": None,
        }

    def test_unhandled_exception_hides_internals(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "secret internals" not in response.text
