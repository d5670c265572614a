from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from lazymcp.container import ServerContainer, build_container
from lazymcp.main import create_app
from lazymcp.settings import SessionSettings
from lazymcp.transports.http import SESSION_HEADER, get_client_ip

from .conftest import default_test_tools, make_settings, request


@pytest.fixture
def client(container: ServerContainer) -> Iterator[TestClient]:
    with TestClient(create_app(container)) as test_client:
        yield test_client


def _open_session(client: TestClient, **headers: str) -> str:
    response = client.post(
        "/mcp",
        json=request("initialize", 1, protocolVersion="2025-03-26", capabilities={}),
        headers=headers,
    )
    assert response.status_code == 200
    session_id = response.headers[SESSION_HEADER]
    ack = client.post(
        "/mcp", json=request("notifications/initialized"), headers={SESSION_HEADER: session_id}
    )
    assert ack.status_code == 202
    return session_id


def test_health(client: TestClient) -> None:
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["sessions"] == 0
    assert "calculator" in body["tools"]


def test_initialize_returns_session_header(client: TestClient, container: ServerContainer) -> None:
    response = client.post("/mcp", json=request("initialize", 1, protocolVersion="2025-03-26"))
    assert response.status_code == 200
    assert response.json()["result"]["protocolVersion"] == "2025-03-26"
    session_id = response.headers[SESSION_HEADER]
    assert container.sessions.get(session_id) is not None


def test_tool_call_over_http(client: TestClient) -> None:
    session_id = _open_session(client)
    response = client.post(
        "/mcp",
        json=request("tools/call", 2, name="calculator", arguments={"expression": "2^8"}),
        headers={SESSION_HEADER: session_id},
    )
    assert response.status_code == 200
    assert response.headers[SESSION_HEADER] == session_id
    assert response.json()["result"]["structuredContent"] == {"result": 256}


def test_missing_session_header(client: TestClient) -> None:
    response = client.post("/mcp", json=request("ping", 1))
    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32600
    assert response.json()["id"] == 1


def test_unknown_session(client: TestClient) -> None:
    response = client.post("/mcp", json=request("ping", 1), headers={SESSION_HEADER: "nope"})
    assert response.status_code == 404


def test_parse_error(client: TestClient) -> None:
    response = client.post(
        "/mcp", content=b"{not json", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32700


def test_failed_initialize_does_not_leave_a_session(
    client: TestClient, container: ServerContainer
) -> None:
    response = client.post("/mcp", json={"jsonrpc": "1.0", "id": 1, "method": "initialize"})
    assert response.status_code == 400
    assert SESSION_HEADER not in response.headers
    assert container.sessions.list() == []


def test_sessions_are_isolated(client: TestClient) -> None:
    first = _open_session(client)
    second = client.post("/mcp", json=request("initialize", 1)).headers[SESSION_HEADER]
    assert first != second
    response = client.post(
        "/mcp",
        json=request("tools/call", 2, name="calculator", arguments={"expr": "1"}),
        headers={SESSION_HEADER: second},
    )
    assert response.json()["error"]["code"] == -32002


def test_delete_closes_session(client: TestClient, container: ServerContainer) -> None:
    session_id = _open_session(client)
    assert client.delete("/mcp", headers={SESSION_HEADER: session_id}).status_code == 204
    assert container.sessions.get(session_id) is None
    response = client.post("/mcp", json=request("ping", 5), headers={SESSION_HEADER: session_id})
    assert response.status_code == 404
    assert client.delete("/mcp", headers={SESSION_HEADER: session_id}).status_code == 404


def test_close_method_removes_session(client: TestClient, container: ServerContainer) -> None:
    session_id = _open_session(client)
    response = client.post("/mcp", json=request("close", 9), headers={SESSION_HEADER: session_id})
    assert response.json() == {"jsonrpc": "2.0", "id": 9, "result": {}}
    assert container.sessions.get(session_id) is None


def test_forwarded_address_reaches_tools(client: TestClient) -> None:
    session_id = _open_session(client, **{"X-Forwarded-For": "198.51.100.7, 10.0.0.1"})
    response = client.post(
        "/mcp",
        json=request("tools/call", 2, name="network", arguments={"check": "client_ip"}),
        headers={SESSION_HEADER: session_id},
    )
    assert response.json()["result"]["structuredContent"]["addresses"] == ["198.51.100.7"]


def _scope_request(headers: dict[str, str], client_host: str | None = "10.0.0.1") -> Request:
    scope = {
        "type": "http",
        "headers": [(key.lower().encode(), value.encode()) for key, value in headers.items()],
        "client": (client_host, 5000) if client_host else None,
    }
    return Request(scope)


@pytest.mark.parametrize(
    ("headers", "expected"),
    [
        ({"X-Forwarded-For": "192.0.2.1, 10.0.0.2"}, "192.0.2.1"),
        ({"X-Real-IP": " 192.0.2.2 "}, "192.0.2.2"),
        ({"CF-Connecting-IP": "192.0.2.3"}, "192.0.2.3"),
        ({"X-Real-IP": "192.0.2.2", "CF-Connecting-IP": "192.0.2.3"}, "192.0.2.2"),
        ({}, "10.0.0.1"),
    ],
)
def test_client_ip_header_precedence(headers: dict[str, str], expected: str) -> None:
    assert get_client_ip(_scope_request(headers)) == expected


def test_client_ip_unknown() -> None:
    assert get_client_ip(_scope_request({}, client_host=None)) is None


def test_idle_sessions_are_reclaimed(client: TestClient, container: ServerContainer) -> None:
    idle = _open_session(client)
    active = _open_session(client)
    limit = container.settings.sessions.idle_timeout_seconds
    container.sessions.get(idle).last_activity -= limit + 1

    assert client.get("/health").json()["sessions"] == 1
    response = client.post("/mcp", json=request("ping", 3), headers={SESSION_HEADER: idle})
    assert response.status_code == 404
    response = client.post("/mcp", json=request("ping", 4), headers={SESSION_HEADER: active})
    assert response.json() == {"jsonrpc": "2.0", "id": 4, "result": {}}


def test_session_limit_rejects_initialize() -> None:
    settings = make_settings(sessions=SessionSettings(close_grace_seconds=0.5, max_sessions=1))
    container = build_container(settings, tools=default_test_tools(settings))
    with TestClient(create_app(container)) as client:
        _open_session(client)
        response = client.post("/mcp", json=request("initialize", 7))
    assert response.status_code == 503
    assert SESSION_HEADER not in response.headers
    body = response.json()
    assert body["id"] == 7
    assert body["error"]["code"] == -32005
    assert body["error"]["data"]["retryable"] is True
