"""Tests for global exception handlers.

Validates that all exception types are handled consistently with
proper HTTP status codes, error format, and no information leakage.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from throttle.core.errors import (
    AppError,
    AuthenticationAppError,
    InvalidPolicyError,
    RateLimitExceededError,
    StoreUnavailableError,
    ValidationAppError,
)
from throttle.core.exception_handlers import general_exception_handler, setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    """Create test client with handlers enabled."""
    return TestClient(app_with_handlers)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    def test_validation_error_returns_400(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-validation")
        async def test_endpoint():
            raise ValidationAppError(code="test_validation", message="Test validation error")

        response = client.get("/test-validation")

        assert response.status_code == 400
        data = response.json()
        assert data["error"]["code"] == "test_validation"
        assert data["error"]["message"] == "Test validation error"
        assert "request_id" in data["error"]
        assert "details" not in data["error"]

    def test_invalid_policy_includes_details(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify policy errors keep the offending field in details."""
        @app_with_handlers.get("/test-policy")
        async def test_endpoint():
            raise InvalidPolicyError(
                code="invalid_policy",
                message="max_attempts must be a positive integer",
                details={"field": "max_attempts", "value": 0},
            )

        response = client.get("/test-policy")

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "max_attempts", "value": 0}

    def test_authentication_error_returns_403(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-auth")
        async def test_endpoint():
            raise AuthenticationAppError(code="invalid_api_key", message="Invalid API key")

        response = client.get("/test-auth")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_api_key"

    def test_rate_limit_error_returns_429_with_retry_after(
        self, client: TestClient, app_with_handlers: FastAPI
    ):
        @app_with_handlers.get("/test-throttled")
        async def test_endpoint():
            raise RateLimitExceededError(
                code="rate_limit_exceeded",
                message="Too many attempts. Please try again later.",
                details={"retry_after": 899.2},
                retry_after=899.2,
            )

        response = client.get("/test-throttled")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"
        assert response.json()["error"]["details"]["retry_after"] == 899.2

    def test_store_unavailable_returns_503(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-store")
        async def test_endpoint():
            raise StoreUnavailableError(
                code="store_unavailable",
                message="Limiter state store is unavailable",
                details={"backend": "memory"},
            )

        response = client.get("/test-store")

        assert response.status_code == 503
        assert "Retry-After" not in response.headers

    def test_error_response_format_is_consistent(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-format")
        async def test_endpoint():
            raise AppError(code="test_code", message="Test message", details={"key": "value"})

        response = client.get("/test-format")
        data = response.json()

        assert set(data.keys()) == {"error"}
        assert set(data["error"].keys()) == {"code", "message", "request_id", "details"}


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    def test_unexpected_exception_handler_registered(self, app_with_handlers: FastAPI):
        assert Exception in app_with_handlers.exception_handlers

    def test_general_exception_handler_logic(self):
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = RuntimeError("Unexpected error: state store connection failed")
        response = asyncio.run(general_exception_handler(request, exc))

        data = json.loads(bytes(response.body).decode())
        assert response.status_code == 500
        assert data["error"]["code"] == "internal_server_error"
        assert "connection" not in data["error"]["message"]
        assert "request_id" in data["error"]

    def test_general_exception_handler_never_leaks_stack_trace(self):
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        response = asyncio.run(general_exception_handler(request, ValueError("boom")))

        response_text = bytes(response.body).decode()
        assert "Traceback" not in response_text
        assert "ValueError" not in response_text

    def test_unhandled_route_error_returns_500(self, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-crash")
        async def test_endpoint():
            raise RuntimeError("lock poisoned")

        client = TestClient(app_with_handlers, raise_server_exceptions=False)
        response = client.get("/test-crash")

        assert response.status_code == 500
        assert "lock poisoned" not in response.text


class TestErrorHandlerIntegration:
    """Integration tests for exception handler setup."""

    def test_setup_exception_handlers_registers_handlers(self, app_with_handlers: FastAPI):
        assert AppError in app_with_handlers.exception_handlers
        assert Exception in app_with_handlers.exception_handlers

    def test_multiple_handler_setups_does_not_fail(self):
        app = FastAPI()

        setup_exception_handlers(app)
        setup_exception_handlers(app)

        assert AppError in app.exception_handlers
