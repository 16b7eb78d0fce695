"""Tests for the HTTP surface: health, shared-secret gate and CORS."""

import dataclasses

import pytest
from starlette.testclient import TestClient

from salesforce_mcp_gateway.auth import SharedSecretMiddleware, extract_presented_secret
from salesforce_mcp_gateway.server import create_app

from test_sessions import HEADERS, INITIALIZE, initialize

SECRET = "s3cret-key"


@pytest.fixture
def secured_app(settings, provider):
    return create_app(dataclasses.replace(settings, api_key=SECRET), provider=provider, json_response=True)


@pytest.fixture
def secured_client(secured_app):
    with TestClient(secured_app) as client:
        yield client


@pytest.fixture
def open_client(settings, provider):
    with TestClient(create_app(settings, provider=provider, json_response=True)) as client:
        yield client


class TestHealth:
    def test_health(self, open_client):
        resp = open_client.get("/")

        assert resp.status_code == 200
        assert resp.json() == {
            "status": "ok",
            "service": "salesforce-mcp",
            "transports": ["streamable-http", "sse"],
        }

    def test_health_is_exempt_from_auth(self, secured_client):
        assert secured_client.get("/").status_code == 200


class TestSharedSecret:
    def test_missing_secret_rejected_before_session_logic(self, secured_client, secured_app, connector):
        resp = secured_client.post("/mcp", json=INITIALIZE, headers=HEADERS)

        assert resp.status_code == 401
        assert resp.json()["error"]["data"]["kind"] == "gateway_auth"
        assert "mcp-session-id" not in resp.headers
        assert len(secured_app.state.session_manager) == 0
        assert connector.calls == []

    def test_wrong_secret_rejected(self, secured_client, secured_app):
        resp = secured_client.post(
            "/mcp",
            json=INITIALIZE,
            headers={**HEADERS, "Authorization": "Bearer not-the-key"},
        )

        assert resp.status_code == 401
        assert len(secured_app.state.session_manager) == 0

    def test_bearer_secret_accepted(self, secured_client, secured_app):
        resp = secured_client.post(
            "/mcp",
            json=INITIALIZE,
            headers={**HEADERS, "Authorization": f"Bearer {SECRET}"},
        )

        assert resp.status_code == 200
        assert resp.headers["mcp-session-id"] in secured_app.state.session_manager

    def test_query_parameter_accepted(self, secured_client):
        resp = secured_client.post(f"/mcp?api_key={SECRET}", json=INITIALIZE, headers=HEADERS)
        assert resp.status_code == 200

    def test_gate_covers_termination(self, secured_client):
        resp = secured_client.delete("/mcp", headers={"mcp-session-id": "anything"})
        assert resp.status_code == 401

    def test_gate_disabled_without_secret(self, open_client):
        assert initialize(open_client)


class TestPresentedSecret:
    def test_bearer_header(self):
        scope = {"type": "http", "headers": [(b"authorization", b"Bearer abc")], "query_string": b""}
        assert extract_presented_secret(scope) == "abc"

    def test_scheme_is_case_insensitive(self):
        scope = {"type": "http", "headers": [(b"authorization", b"bearer abc")], "query_string": b""}
        assert extract_presented_secret(scope) == "abc"

    def test_other_schemes_ignored(self):
        scope = {"type": "http", "headers": [(b"authorization", b"Basic abc")], "query_string": b""}
        assert extract_presented_secret(scope) is None

    def test_api_key_query_parameter(self):
        scope = {"type": "http", "headers": [], "query_string": b"api_key=xyz&session_id=1"}
        assert extract_presented_secret(scope) == "xyz"

    def test_nothing_presented(self):
        scope = {"type": "http", "headers": [], "query_string": b""}
        assert extract_presented_secret(scope) is None

    def test_middleware_compares_exactly(self):
        middleware = SharedSecretMiddleware(app=None, secret=SECRET)
        prefix = {"type": "http", "headers": [(b"authorization", f"Bearer {SECRET[:-1]}".encode())], "query_string": b""}
        exact = {"type": "http", "headers": [(b"authorization", f"Bearer {SECRET}".encode())], "query_string": b""}

        assert middleware.is_authorized(prefix) is False
        assert middleware.is_authorized(exact) is True


class TestCors:
    def test_preflight_allowed_without_secret(self, secured_client):
        resp = secured_client.options(
            "/mcp",
            headers={
                "Origin": "https://automation.example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization, content-type, mcp-session-id",
            },
        )

        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"

    def test_session_header_exposed(self, open_client):
        resp = open_client.post(
            "/mcp",
            json=INITIALIZE,
            headers={**HEADERS, "Origin": "https://automation.example.com"},
        )

        assert resp.headers["access-control-allow-origin"] == "*"
        assert "mcp-session-id" in resp.headers["access-control-expose-headers"].lower()
