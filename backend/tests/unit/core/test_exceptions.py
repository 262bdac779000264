"""
Tests for the exception hierarchy.

WHY: Engines raise typed errors and the API maps them to status codes:
1. Each error kind maps to the documented HTTP status
2. Serialization never leaks webhook secrets or signatures
3. Gateway errors carry their retryability
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from billing_core.core.exception_handlers import app_exception_handler, generic_exception_handler
from billing_core.core.exceptions import (
    AccessDeniedError,
    AppException,
    AuditLogImmutableError,
    ConflictError,
    DatabaseError,
    DirectoryUnavailableError,
    DuplicateUpstreamIDError,
    GatewayError,
    InvalidPlanError,
    InvalidSignatureError,
    InvalidStateTransitionError,
    LimitOutOfRangeError,
    NoAvailableLicensesError,
    PayloadTooLargeError,
    QuantityBelowAssignedError,
    StoreError,
    SubscriptionNotFoundError,
    WebhookSourceRejectedError,
)


class TestAppException:
    """Test base AppException class."""

    def test_defaults(self):
        exc = AppException()
        assert exc.message == "An unexpected error occurred"
        assert exc.status_code == 500

    def test_context_is_serialized(self):
        exc = AppException(message="Test error", batch_id="b-1")

        assert exc.to_dict() == {
            "error": "AppException",
            "message": "Test error",
            "status_code": 500,
            "details": {"batch_id": "b-1"},
        }

    def test_sensitive_fields_filtered(self):
        exc = InvalidSignatureError(signature="t=1,v1=abc", secret="whsec", event_id="evt_1")

        assert exc.to_dict()["details"] == {"event_id": "evt_1"}

    def test_empty_context_is_none(self):
        assert AppException(token="x").to_dict()["details"] is None


class TestStatusMapping:
    """Verify every error kind maps to its HTTP status."""

    @pytest.mark.parametrize(
        "exc_class,status",
        [
            (InvalidPlanError, 400),
            (LimitOutOfRangeError, 400),
            (InvalidStateTransitionError, 400),
            (InvalidSignatureError, 401),
            (AccessDeniedError, 403),
            (WebhookSourceRejectedError, 403),
            (AuditLogImmutableError, 403),
            (SubscriptionNotFoundError, 404),
            (ConflictError, 409),
            (NoAvailableLicensesError, 409),
            (QuantityBelowAssignedError, 409),
            (DuplicateUpstreamIDError, 409),
            (PayloadTooLargeError, 413),
            (DatabaseError, 500),
            (GatewayError, 502),
            (DirectoryUnavailableError, 502),
        ],
    )
    def test_status(self, exc_class, status):
        assert exc_class().status_code == status

    def test_store_error_alias(self):
        assert StoreError is DatabaseError

    def test_gateway_retryable(self):
        exc = GatewayError(message="rate limited", retryable=True)

        assert exc.retryable is True
        assert exc.to_dict()["details"] == {"retryable": True}


class TestExceptionHandlers:
    """Test the FastAPI handlers."""

    @pytest.fixture
    def test_app(self):
        app = FastAPI()
        app.add_exception_handler(AppException, app_exception_handler)
        app.add_exception_handler(Exception, generic_exception_handler)

        @app.get("/conflict")
        async def conflict():
            raise NoAvailableLicensesError(batch_id="b-1")

        @app.get("/crash")
        async def crash():
            raise RuntimeError("SELECT * FROM secrets")

        return app

    def test_app_exception_response(self, test_app):
        response = TestClient(test_app).get("/conflict")

        assert response.status_code == 409
        assert response.json()["error"] == "NoAvailableLicensesError"
        assert response.json()["details"] == {"batch_id": "b-1"}

    def test_unexpected_error_is_generic(self, test_app):
        response = TestClient(test_app, raise_server_exceptions=False).get("/crash")

        assert response.status_code == 500
        assert "SELECT" not in response.text
