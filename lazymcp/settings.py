"""Server settings read from the process environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal, Mapping


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip()
    return normalized or default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


TransportMode = Literal["stdio", "http"]


@dataclass(frozen=True)
class ServerSettings:
    """Identity and transport selection for the server process."""

    name: str
    version: str
    transport: TransportMode
    http_host: str
    http_port: int
    log_level: str

    @classmethod
    def from_env(cls) -> "ServerSettings":
        raw_transport = (_env_str("MCP_TRANSPORT", "stdio") or "stdio").lower()
        transport: TransportMode = "http" if raw_transport == "http" else "stdio"
        return cls(
            name=_env_str("MCP_SERVER_NAME", "LazyMCP") or "LazyMCP",
            version=_env_str("MCP_SERVER_VERSION", "1.0.0") or "1.0.0",
            transport=transport,
            http_host=_env_str("MCP_HTTP_HOST", "127.0.0.1") or "127.0.0.1",
            http_port=_env_int("MCP_HTTP_PORT", 3000),
            log_level=(_env_str("LOG_LEVEL", "INFO") or "INFO").upper(),
        )


@dataclass(frozen=True)
class SessionSettings:
    """Per-session limits."""

    max_concurrent_calls: int = 8
    close_grace_seconds: float = 5.0
    max_sequence_violations: int = 3
    idle_timeout_seconds: float = 1800.0
    max_sessions: int = 1000

    @classmethod
    def from_env(cls) -> "SessionSettings":
        return cls(
            max_concurrent_calls=max(1, _env_int("SESSION_MAX_CONCURRENT_CALLS", 8)),
            close_grace_seconds=max(0.0, _env_float("SESSION_CLOSE_GRACE_SECONDS", 5.0)),
            max_sequence_violations=max(
                1, _env_int("SESSION_MAX_SEQUENCE_VIOLATIONS", 3)
            ),
            idle_timeout_seconds=max(0.0, _env_float("SESSION_IDLE_TIMEOUT_SECONDS", 1800.0)),
            max_sessions=max(1, _env_int("SESSION_MAX_SESSIONS", 1000)),
        )


@dataclass(frozen=True)
class ToolSettings:
    """Execution deadlines applied by the dispatcher."""

    default_timeout_seconds: float = 30.0
    timeouts: Mapping[str, float] = field(default_factory=dict)

    def timeout_for(self, tool_name: str) -> float:
        return self.timeouts.get(tool_name, self.default_timeout_seconds)

    @classmethod
    def from_env(cls) -> "ToolSettings":
        prefix = "TOOL_TIMEOUT_"
        timeouts: dict[str, float] = {}
        for key in os.environ:
            if not key.startswith(prefix):
                continue
            tool_name = key[len(prefix):].lower()
            seconds = _env_float(key, 0.0)
            if tool_name and seconds > 0:
                timeouts[tool_name] = seconds
        return cls(
            default_timeout_seconds=max(
                0.1, _env_float("TOOL_DEFAULT_TIMEOUT_SECONDS", 30.0)
            ),
            timeouts=timeouts,
        )


@dataclass(frozen=True)
class NetworkSettings:
    """Defaults for the network probe tool."""

    probe_timeout_seconds: float = 3.0
    allowed_target_patterns: tuple[str, ...] = ("*",)
    ip_api_url: str = "http://ip-api.com/json"

    @classmethod
    def from_env(cls) -> "NetworkSettings":
        return cls(
            probe_timeout_seconds=max(
                0.1, _env_float("NETWORK_PROBE_TIMEOUT_SECONDS", 3.0)
            ),
            allowed_target_patterns=_env_list("NETWORK_ALLOWED_TARGETS", ("*",)),
            ip_api_url=_env_str("IP_API_URL", "http://ip-api.com/json")
            or "http://ip-api.com/json",
        )


@dataclass(frozen=True)
class WeatherSettings:
    """OpenWeatherMap provider endpoint and credentials."""

    api_key: str | None = None
    base_url: str = "https://api.openweathermap.org/data/2.5"
    request_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "WeatherSettings":
        return cls(
            api_key=_env_str("OPENWEATHER_API_KEY"),
            base_url=_env_str(
                "OPENWEATHER_BASE_URL", "https://api.openweathermap.org/data/2.5"
            )
            or "https://api.openweathermap.org/data/2.5",
            request_timeout_seconds=max(
                0.1, _env_float("WEATHER_REQUEST_TIMEOUT_SECONDS", 5.0)
            ),
        )


class Settings:
    """Container for server settings."""

    def __init__(
        self,
        *,
        server: ServerSettings,
        sessions: SessionSettings,
        tools: ToolSettings,
        network: NetworkSettings,
        weather: WeatherSettings,
    ) -> None:
        self.server = server
        self.sessions = sessions
        self.tools = tools
        self.network = network
        self.weather = weather

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            server=ServerSettings.from_env(),
            sessions=SessionSettings.from_env(),
            tools=ToolSettings.from_env(),
            network=NetworkSettings.from_env(),
            weather=WeatherSettings.from_env(),
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    """Return a cached Settings instance built from the current environment."""

    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    global _SETTINGS
    _SETTINGS = None
