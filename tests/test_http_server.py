import json

import pytest
from fastapi.testclient import TestClient

from whispo.core.config import ServerConfig
from whispo.mcp.http import create_app
from whispo.mcp.session import McpSession


@pytest.fixture
def session(state, dispatcher, handlers):
    return McpSession(state, dispatcher, handlers)


@pytest.fixture
def client(session, state):
    return TestClient(create_app(session, state, ServerConfig()))


def _post(client, payload, path="/mcp", **kwargs):
    body = payload if isinstance(payload, (bytes, str)) else json.dumps(payload)
    return client.post(path, content=body, headers={"Content-Type": "application/json", **kwargs.pop("headers", {})})


def test_request_returns_matching_response(client):
    response = _post(client, {"jsonrpc": "2.0", "id": 11, "method": "tools/list"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["id"] == 11
    assert len(payload["result"]["tools"]) == 7


def test_notification_gets_202_without_body(client, state):
    response = _post(client, {"jsonrpc": "2.0", "method": "notifications/initialized"})
    assert response.status_code == 202
    assert response.content == b""
    assert state.session_state()["initialized"] is True


def test_malformed_body_is_parse_error(client):
    response = _post(client, b"{not json")
    assert response.status_code == 400
    payload = response.json()
    assert payload["id"] is None
    assert payload["error"]["code"] == -32700


def test_deeply_nested_body_is_parse_error(client):
    response = _post(client, b"[" * 200000 + b"]" * 200000)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32700


def test_posted_response_is_invalid_request(client):
    response = _post(client, {"jsonrpc": "2.0", "id": 3, "result": {}})
    assert response.status_code == 400
    payload = response.json()
    assert payload["id"] == 3
    assert payload["error"]["code"] == -32600


def test_tool_error_is_reported_in_body(client):
    response = _post(client, {
        "jsonrpc": "2.0",
        "id": "call-1",
        "method": "tools/call",
        "params": {"name": "update_glossary", "arguments": {"entries": []}},
    })
    assert response.status_code == 200
    assert response.json()["error"]["code"] == -32602


def test_server_survives_handler_faults(client):
    for _ in range(3):
        response = _post(client, {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "tools/call",
            "params": {"name": "switch_profile", "arguments": {"profile_id": "ghost"}},
        })
        assert response.json()["error"]["code"] == -32603
    assert _post(client, {"jsonrpc": "2.0", "id": 2, "method": "ping"}).json()["result"] == {}


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["localTools"] == 7
    assert payload["providers"] == []
    assert "version" in payload


def test_custom_path(session, state):
    client = TestClient(create_app(session, state, ServerConfig(path="rpc")))
    assert _post(client, {"jsonrpc": "2.0", "id": 1, "method": "ping"}, path="/rpc").status_code == 200
    assert _post(client, {"jsonrpc": "2.0", "id": 1, "method": "ping"}, path="/mcp").status_code == 404


class TestBearerToken:
    @pytest.fixture
    def secured(self, session, state):
        return TestClient(create_app(session, state, ServerConfig(auth_token="s3cret")))

    def test_missing_token_is_rejected(self, secured):
        response = _post(secured, {"jsonrpc": "2.0", "id": 1, "method": "ping"})
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_wrong_token_is_rejected(self, secured):
        response = _post(secured, {"jsonrpc": "2.0", "id": 1, "method": "ping"}, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_valid_token_is_accepted(self, secured):
        response = _post(secured, {"jsonrpc": "2.0", "id": 1, "method": "ping"}, headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200
        assert response.json()["result"] == {}

    def test_health_requires_token(self, secured):
        assert secured.get("/health").status_code == 401
        response = secured.get("/health", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
