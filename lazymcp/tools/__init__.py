"""Tool implementations exposed by the server."""

from .base import CallContext, Tool, ToolInputModel, ToolOutputModel
from .calculator import CalculatorTool
from .network import NetworkTool
from .weather import WeatherTool

__all__ = [
    "CalculatorTool",
    "CallContext",
    "NetworkTool",
    "Tool",
    "ToolInputModel",
    "ToolOutputModel",
    "WeatherTool",
]
