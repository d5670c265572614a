"""Startup helpers that populate the tool registry."""

from __future__ import annotations

import logging
from typing import Iterable

from ..settings import Settings
from ..tools.base import Tool
from ..tools.calculator import CalculatorTool
from ..tools.network import NetworkTool
from ..tools.weather import WeatherTool
from .registry import ToolRegistry

logger = logging.getLogger(__name__)


def default_tools(settings: Settings) -> list[Tool]:
    return [
        CalculatorTool(),
        NetworkTool(settings.network),
        WeatherTool(settings.weather, settings.network),
    ]


def build_registry(settings: Settings, tools: Iterable[Tool] | None = None) -> ToolRegistry:
    """Register tools and seal the registry.

    A ``DuplicateToolError`` propagates to the caller; the process must not
    start serving with a conflicting tool set.
    """
    registry = ToolRegistry()
    for tool in default_tools(settings) if tools is None else tools:
        registry.register_tool(tool)
    registry.seal()
    logger.info(
        "tool registry ready tools=%s",
        [descriptor.name for descriptor in registry.list()],
        extra={"session_id": "system"},
    )
    return registry
