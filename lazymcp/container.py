"""Explicit dependency container for server runtime wiring.

This module is side-effect free on import. ``build_container`` constructs
the dependency graph once, before any transport starts serving.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .mcp.bootstrap import build_registry
from .mcp.dispatcher import Dispatcher
from .mcp.registry import ToolRegistry
from .mcp.server import MCPServer
from .mcp.session import SessionManager
from .settings import Settings, get_settings
from .tools.base import Tool


@dataclass
class ServerContainer:
    """Holds the constructed runtime dependencies for the server."""

    settings: Settings
    registry: ToolRegistry
    dispatcher: Dispatcher
    server: MCPServer
    sessions: SessionManager


def build_container(
    settings: Settings | None = None,
    *,
    tools: Iterable[Tool] | None = None,
) -> ServerContainer:
    settings = settings or get_settings()
    registry = build_registry(settings, tools)
    dispatcher = Dispatcher(registry, settings.tools)
    server = MCPServer(
        registry,
        dispatcher,
        name=settings.server.name,
        version=settings.server.version,
    )
    return ServerContainer(
        settings=settings,
        registry=registry,
        dispatcher=dispatcher,
        server=server,
        sessions=SessionManager(settings.sessions),
    )


async def shutdown(container: ServerContainer) -> None:
    await container.sessions.close_all(container.settings.sessions.close_grace_seconds)
