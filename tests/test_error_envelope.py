"""Tests for the ``{success: false, message}`` error envelope."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

from gadgetgalaxy.api.error_handling import register_exception_handlers, validation_errors
from gadgetgalaxy.api.schemas import LoginRequest, RegisterRequest
from gadgetgalaxy.service.errors import (
    AccountNotFound,
    Forbidden,
    RateLimited,
    ValidationError,
)
from gadgetgalaxy.storage.errors import ConstraintViolation


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/forbidden")
    async def forbidden():
        raise Forbidden("Email not verified", reason="unverified", requires_verification=True)

    @app.get("/google-missing")
    async def google_missing():
        raise AccountNotFound()

    @app.get("/limited")
    async def limited():
        raise RateLimited(retry_after=42)

    @app.get("/field")
    async def field():
        raise ValidationError.for_field("image", "Uploaded file is empty")

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.post("/login")
    async def login(body: LoginRequest):
        return {"success": True}

    return TestClient(app, raise_server_exceptions=False)


class TestServiceErrors:
    def test_forbidden_carries_verification_flag(self, client):
        response = client.get("/forbidden")
        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "message": "Email not verified",
            "requiresVerification": True,
        }

    def test_account_not_found_flags_new_user(self, client):
        response = client.get("/google-missing")
        assert response.status_code == 404
        assert response.json()["isNewUser"] is True

    def test_rate_limited_sets_retry_after(self, client):
        response = client.get("/limited")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["success"] is False

    def test_field_errors_listed(self, client):
        body = client.get("/field").json()
        assert body["message"] == "Validation Error"
        assert body["errors"] == [{"field": "image", "message": "Uploaded file is empty"}]

    def test_constraint_violation_is_400(self, client):
        response = client.get("/duplicate")
        assert response.status_code == 400
        assert response.json()["message"] == "Email is already registered"


class TestFrameworkErrors:
    def test_request_validation_is_400(self, client):
        response = client.post("/login", json={"email": "nope", "password": ""})
        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Validation Error"
        fields = {e["field"]: e["message"] for e in body["errors"]}
        assert fields["email"] == "Please provide a valid email"
        assert fields["password"] == "Password cannot be empty"

    def test_unknown_route(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["message"] == "Route /nowhere not found"

    def test_unhandled_exception_hides_detail(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Internal server error"
        assert "kaboom" not in body["message"]


class TestSchemaMessages:
    def test_register_messages(self):
        with pytest.raises(PydanticValidationError) as excinfo:
            RegisterRequest(name="A", email="bad", password="abcdef")
        errors = {e["field"]: e["message"] for e in validation_errors(excinfo.value.errors())}
        assert errors == {
            "name": "Name must be between 2 and 50 characters",
            "email": "Please provide a valid email",
            "password": "Password must contain at least one number",
        }

    @pytest.mark.parametrize(
        "password,message",
        [
            ("ab1", "Password must be at least 6 characters long"),
            ("abcdefg", "Password must contain at least one number"),
            ("1234567", "Password must contain at least one letter"),
        ],
    )
    def test_password_rules(self, password, message):
        with pytest.raises(PydanticValidationError) as excinfo:
            RegisterRequest(name="Valid Name", email="ok@example.com", password=password)
        errors = validation_errors(excinfo.value.errors())
        assert errors == [{"field": "password", "message": message}]

    def test_email_is_normalized(self):
        body = RegisterRequest(name="  Valid Name ", email=" Shopper@Example.COM", password="abc123")
        assert body.email == "shopper@example.com"
        assert body.name == "Valid Name"
