from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from lazymcp.mcp.server import MCPServer
from lazymcp.mcp.session import Session, SessionPhase
from lazymcp.settings import SessionSettings
from lazymcp.transports.stdio import StdioTransport

from .conftest import request


class CollectingWriter:
    def __init__(self) -> None:
        self.buffer = bytearray()
        self.broken = False

    def write(self, data: bytes) -> None:
        if self.broken:
            raise BrokenPipeError(32, "Broken pipe")
        self.buffer.extend(data)

    async def drain(self) -> None:
        return None

    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in bytes(self.buffer).splitlines() if line]


def _line(message: dict[str, Any]) -> bytes:
    return json.dumps(message).encode() + b"\n"


INITIALIZE = _line(request("initialize", 1, protocolVersion="2025-06-18"))
INITIALIZED = _line(request("notifications/initialized"))


async def _serve(
    server: MCPServer, session: Session, *chunks: bytes, eof: bool = True
) -> CollectingWriter:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    if eof:
        reader.feed_eof()
    writer = CollectingWriter()
    await asyncio.wait_for(StdioTransport(server, session, reader, writer).serve(), timeout=5)
    return writer


@pytest.mark.asyncio
async def test_piped_session(server: MCPServer, session: Session) -> None:
    call = _line(request("tools/call", 2, name="calculator", arguments={"expr": "6*7"}))
    writer = await _serve(server, session, INITIALIZE, INITIALIZED, call)

    init, result = writer.messages()
    assert init["id"] == 1 and init["result"]["serverInfo"]["name"] == "LazyMCP"
    assert result == {
        "jsonrpc": "2.0",
        "id": 2,
        "result": {
            "content": [{"type": "text", "text": "42"}],
            "structuredContent": {"result": 42},
            "isError": False,
        },
    }
    assert session.closed


@pytest.mark.asyncio
async def test_records_are_newline_terminated_compact_json(
    server: MCPServer, session: Session
) -> None:
    writer = await _serve(server, session, INITIALIZE)
    raw = bytes(writer.buffer)
    assert raw.endswith(b"\n")
    assert raw.count(b"\n") == 1
    assert b'"jsonrpc":"2.0"' in raw


@pytest.mark.asyncio
async def test_invalid_json_gets_parse_error(server: MCPServer, session: Session) -> None:
    writer = await _serve(server, session, b"{oops\n", b"\n", INITIALIZE)
    parse_error, init = writer.messages()
    assert parse_error["id"] is None
    assert parse_error["error"]["code"] == -32700
    assert init["id"] == 1


@pytest.mark.asyncio
async def test_truncated_final_record_is_discarded(server: MCPServer, session: Session) -> None:
    partial = b'{"jsonrpc": "2.0", "id": 2, "method": "ping"'
    writer = await _serve(server, session, INITIALIZE, partial)
    assert [message["id"] for message in writer.messages()] == [1]
    assert session.closed


@pytest.mark.asyncio
async def test_calls_complete_out_of_order(server: MCPServer, session: Session) -> None:
    slow = _line(request("tools/call", "slow", name="sleepy", arguments={"seconds": 0.2}))
    fast = _line(request("tools/call", "fast", name="calculator", arguments={"expr": "1+1"}))
    writer = await _serve(server, session, INITIALIZE, INITIALIZED, slow, fast)
    assert [message["id"] for message in writer.messages()] == [1, "fast", "slow"]


@pytest.mark.asyncio
async def test_eof_cancels_calls_that_outlive_the_grace_period(server: MCPServer) -> None:
    session = Session(SessionSettings(close_grace_seconds=0.05))
    long_call = _line(request("tools/call", 2, name="sleepy", arguments={"seconds": 5}))
    writer = await _serve(server, session, INITIALIZE, INITIALIZED, long_call)
    assert [message["id"] for message in writer.messages()] == [1]
    assert session.closed
    assert session.in_flight() == frozenset()


@pytest.mark.asyncio
async def test_close_request_ends_the_loop(server: MCPServer, session: Session) -> None:
    close = _line(request("close", 3))
    writer = await _serve(server, session, INITIALIZE, INITIALIZED, close, eof=False)
    assert writer.messages()[-1] == {"jsonrpc": "2.0", "id": 3, "result": {}}
    assert session.closed


@pytest.mark.asyncio
async def test_write_failure_aborts_session(server: MCPServer, session: Session) -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(INITIALIZE)
    writer = CollectingWriter()
    writer.broken = True
    await asyncio.wait_for(StdioTransport(server, session, reader, writer).serve(), timeout=5)
    assert session.closed


@pytest.mark.asyncio
async def test_cancel_is_read_while_close_drains(server: MCPServer, session: Session) -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(INITIALIZE + INITIALIZED)
    reader.feed_data(_line(request("tools/call", 2, name="sleepy", arguments={"seconds": 5})))
    reader.feed_data(_line(request("close", 3)))
    writer = CollectingWriter()
    serving = asyncio.create_task(StdioTransport(server, session, reader, writer).serve())

    await asyncio.sleep(0.05)
    assert session.phase == SessionPhase.CLOSING
    reader.feed_data(_line(request("notifications/cancelled", requestId=2, reason="user abort")))
    await asyncio.wait_for(serving, timeout=5)

    messages = writer.messages()
    assert [message["id"] for message in messages] == [1, 2, 3]
    assert messages[1]["result"]["error"] == {
        "kind": "Cancelled",
        "message": "user abort",
        "retryable": False,
    }
    assert messages[2] == {"jsonrpc": "2.0", "id": 3, "result": {}}
    assert session.closed
