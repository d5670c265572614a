"""Error taxonomy shared by the registry, sessions, dispatcher and tools."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class ErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    INVALID_OPERATION = "InvalidOperation"
    UNREACHABLE = "Unreachable"
    INVALID_TARGET = "InvalidTarget"
    UPSTREAM_ERROR = "UpstreamError"
    CANCELLED = "Cancelled"
    INTERNAL = "Internal"


class MCPError(Exception):
    """Base class for errors surfaced to MCP clients as JSON-RPC errors."""

    code = -32603

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class ProtocolSequenceError(MCPError):
    """A message arrived in a session phase that does not accept it."""

    code = -32002


class UnknownToolError(MCPError):
    code = -32602

    def __init__(self, tool_name: str):
        super().__init__(f"unknown tool: {tool_name}", details={"tool": tool_name})
        self.tool_name = tool_name


class ValidationError(MCPError):
    """Tool arguments are missing or malformed."""

    code = -32602


class DuplicateRequestError(MCPError):
    code = -32003

    def __init__(self, request_id: Any):
        super().__init__(
            f"request id {request_id!r} is already in flight",
            details={"requestId": request_id},
        )
        self.request_id = request_id


class ConcurrencyLimitError(MCPError):
    code = -32004

    def __init__(self, limit: int):
        super().__init__(
            f"session concurrency limit of {limit} calls reached",
            details={"limit": limit, "retryable": True},
        )
        self.limit = limit


class SessionLimitError(MCPError):
    code = -32005

    def __init__(self, limit: int):
        super().__init__(
            f"server session limit of {limit} reached",
            details={"limit": limit, "retryable": True},
        )
        self.limit = limit


class TransportError(MCPError):
    """Connection-level failure; forces the owning session to close."""


class DuplicateToolError(Exception):
    """Raised at startup when two tools share a name."""

    def __init__(self, tool_name: str):
        super().__init__(f"duplicate tool name {tool_name}")
        self.tool_name = tool_name


class ExecutionError(Exception):
    """Raised by tools when execution fails with a classified error."""

    def __init__(self, kind: ErrorKind, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = retryable

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


__all__ = [
    "ConcurrencyLimitError",
    "DuplicateRequestError",
    "DuplicateToolError",
    "ErrorKind",
    "ExecutionError",
    "MCPError",
    "ProtocolSequenceError",
    "TransportError",
    "UnknownToolError",
    "ValidationError",
]
