"""
Request Context Middleware Tests.

WHAT: Unit tests for the RequestContextMiddleware.

WHY: Every audit record carries the caller's IP, user agent and request
id. These tests ensure correct behavior for:
- Client IP extraction (direct and through proxies)
- Request ID reuse and generation
- Context availability during the request and cleanup after it
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from billing_core.middleware.request_context import (
    RequestContextMiddleware,
    get_client_ip,
    get_request_context,
    get_user_agent,
)


def make_request(headers: dict = None, client_host: str = None) -> Request:
    scope = {
        "type": "http",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (client_host, 12345) if client_host else None,
    }
    return Request(scope)


class TestGetClientIp:
    """Tests for the get_client_ip function."""

    def test_x_real_ip_wins(self):
        request = make_request({"X-Real-IP": " 203.0.113.5 ", "X-Forwarded-For": "198.51.100.1"}, "10.0.0.1")
        assert get_client_ip(request) == "203.0.113.5"

    def test_first_forwarded_for(self):
        request = make_request({"X-Forwarded-For": "198.51.100.1, 10.0.0.2"}, "10.0.0.1")
        assert get_client_ip(request) == "198.51.100.1"

    def test_direct_connection(self):
        assert get_client_ip(make_request(client_host="192.0.2.7")) == "192.0.2.7"

    def test_unknown(self):
        assert get_client_ip(make_request()) == "unknown"

    def test_user_agent(self):
        assert get_user_agent(make_request({"User-Agent": "Stripe/1.0"})) == "Stripe/1.0"
        assert get_user_agent(make_request()) is None


class TestRequestContextMiddleware:
    """Tests for the middleware itself."""

    @pytest.fixture
    def client(self) -> TestClient:
        app = FastAPI()
        app.add_middleware(RequestContextMiddleware)

        @app.get("/ctx")
        async def ctx():
            context = get_request_context()
            return {
                "request_id": context.request_id,
                "ip": context.ip_address,
                "session_id": context.session_id,
                "path": context.path,
            }

        return TestClient(app)

    def test_context_available_in_handler(self, client):
        response = client.get("/ctx", headers={"X-Real-IP": "203.0.113.5", "X-Session-ID": "sess-1"})

        body = response.json()
        assert body["ip"] == "203.0.113.5"
        assert body["session_id"] == "sess-1"
        assert body["path"] == "/ctx"
        assert response.headers["X-Request-ID"] == body["request_id"]

    def test_inbound_request_id_is_reused(self, client):
        response = client.get("/ctx", headers={"X-Request-ID": "req-abc"})

        assert response.json()["request_id"] == "req-abc"
        assert response.headers["X-Request-ID"] == "req-abc"

    def test_context_cleared_after_request(self, client):
        client.get("/ctx")

        assert get_request_context() is None
