from __future__ import annotations

import asyncio
from typing import Any

import pytest

from lazymcp.container import ServerContainer, build_container
from lazymcp.mcp.cancellation import CancellationToken
from lazymcp.mcp.server import MCPServer
from lazymcp.mcp.session import Session
from lazymcp.settings import (
    NetworkSettings,
    ServerSettings,
    SessionSettings,
    Settings,
    ToolSettings,
    WeatherSettings,
)
from lazymcp.tools import CalculatorTool, NetworkTool, WeatherTool
from lazymcp.tools.base import CallContext, Tool, ToolInputModel, ToolOutputModel


def make_settings(
    *,
    sessions: SessionSettings | None = None,
    tools: ToolSettings | None = None,
    network: NetworkSettings | None = None,
    weather: WeatherSettings | None = None,
) -> Settings:
    return Settings(
        server=ServerSettings(
            name="LazyMCP",
            version="1.0.0",
            transport="stdio",
            http_host="127.0.0.1",
            http_port=3000,
            log_level="INFO",
        ),
        sessions=sessions or SessionSettings(close_grace_seconds=0.5),
        tools=tools or ToolSettings(default_timeout_seconds=2.0),
        network=network or NetworkSettings(ip_api_url="http://ip-api.test/json"),
        weather=weather
        or WeatherSettings(api_key="test-key", base_url="https://weather.test/data/2.5"),
    )


class SleepInput(ToolInputModel):
    seconds: float = 0.0
    value: str = "done"


class SleepOutput(ToolOutputModel):
    value: str


class SleepTool(Tool):
    """Test tool that sleeps, then echoes ``value``."""

    name = "sleepy"
    description = "Sleeps for a while."
    input_model = SleepInput
    output_model = SleepOutput

    def __init__(self) -> None:
        self.calls = 0
        self.cancelled = 0

    async def execute(self, arguments: SleepInput, context: CallContext) -> SleepOutput:
        self.calls += 1
        try:
            await asyncio.sleep(arguments.seconds)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return SleepOutput(value=arguments.value)


class CrashInput(ToolInputModel):
    pass


class CrashTool(Tool):
    name = "crashy"
    description = "Always fails with an unexpected exception."
    input_model = CrashInput
    output_model = SleepOutput

    async def execute(self, arguments: CrashInput, context: CallContext) -> SleepOutput:
        raise RuntimeError("boom")


def default_test_tools(settings: Settings) -> list[Tool]:
    return [
        CalculatorTool(),
        NetworkTool(settings.network),
        WeatherTool(settings.weather, settings.network),
        SleepTool(),
        CrashTool(),
    ]


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def container(settings: Settings) -> ServerContainer:
    return build_container(settings, tools=default_test_tools(settings))


@pytest.fixture
def server(container: ServerContainer) -> MCPServer:
    return container.server


@pytest.fixture
def session(settings: Settings) -> Session:
    return Session(settings.sessions, client_address="203.0.113.7")


def request(method: str, request_id: Any = None, **params: Any) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if request_id is not None:
        message["id"] = request_id
    if params:
        message["params"] = params
    return message


async def make_ready(server: MCPServer, session: Session) -> dict[str, Any]:
    response = await server.handle_message(
        session,
        request(
            "initialize",
            0,
            protocolVersion="2025-06-18",
            capabilities={},
            clientInfo={"name": "pytest", "version": "0"},
        ),
    )
    await server.handle_message(session, request("notifications/initialized"))
    return response


def make_context(client_address: str | None = "203.0.113.7") -> CallContext:
    return CallContext(
        cancel=CancellationToken(),
        session_id="test-session",
        client_address=client_address,
    )
