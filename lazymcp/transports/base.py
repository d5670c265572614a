"""Transport contract and JSON envelope codec shared by transports."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from ..errors import MCPError
from ..mcp.schema import PARSE_ERROR

if TYPE_CHECKING:
    from ..mcp.server import MCPServer


class ParseError(MCPError):
    code = PARSE_ERROR


def decode_message(data: bytes | str) -> Any:
    """Decode one complete JSON-RPC record."""
    try:
        return json.loads(data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ParseError(f"invalid JSON: {exc}") from exc


def encode_message(message: dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class Transport(ABC):
    """Moves protocol envelopes between a client and the MCP server.

    Transports own framing only; every decoded message goes through
    ``MCPServer.handle_message``.
    """

    def __init__(self, server: "MCPServer") -> None:
        self.server = server

    @abstractmethod
    async def serve(self) -> None:
        """Serve until the client disconnects or the session closes."""
