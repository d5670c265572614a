"""Newline-delimited JSON-RPC over a pair of asyncio streams.

Each record is one JSON object terminated by ``\\n``. A final record without
its terminator is treated as truncated and dropped unprocessed.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Protocol

from ..errors import TransportError
from ..mcp.schema import error_response
from ..mcp.server import MCPServer
from ..mcp.session import Session
from ..session_logging import session_extra
from .base import ParseError, Transport, decode_message, encode_message

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024


class LineWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


class StdioTransport(Transport):
    """Serves a single session over a byte stream pair."""

    def __init__(
        self,
        server: MCPServer,
        session: Session,
        reader: asyncio.StreamReader,
        writer: LineWriter,
    ) -> None:
        super().__init__(server)
        self.session = session
        self.reader = reader
        self.writer = writer
        self._write_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self._log_extra = session_extra(session.session_id)

    async def serve(self) -> None:
        try:
            while not self.session.closed:
                record = await self._next_record()
                if record is None:
                    break
                await self._process(record)
        except TransportError as exc:
            logger.warning("stdio transport error: %s", exc, extra=self._log_extra)
            self.session.abort("stdio transport error")
        finally:
            if self._tasks and not self.session.closed:
                # Input is exhausted; requests already read may still be answered.
                await asyncio.wait(
                    set(self._tasks), timeout=self.session.settings.close_grace_seconds
                )
            if not self.session.closed:
                self.session.abort("stdio stream closed")
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _next_record(self) -> bytes | None:
        """Read one record; None at end of input or once the session has closed."""
        read = asyncio.ensure_future(self._read_record())
        closed = asyncio.ensure_future(self.session.wait_closed())
        try:
            await asyncio.wait({read, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
        if not read.done() or self.session.closed:
            read.cancel()
            return None
        return read.result()

    async def _read_record(self) -> bytes | None:
        try:
            return await self.reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            if exc.partial.strip():
                logger.warning(
                    "discarding truncated record bytes=%s", len(exc.partial), extra=self._log_extra
                )
            return None
        except asyncio.LimitOverrunError as exc:
            raise TransportError("record exceeds the stream size limit") from exc
        except ConnectionError as exc:
            raise TransportError(f"read failed: {exc}") from exc

    async def _process(self, record: bytes) -> None:
        if not record.strip():
            return
        try:
            message = decode_message(record)
        except ParseError as exc:
            await self._send(error_response(None, exc.code, exc.message))
            return
        if self.server.is_concurrent(message):
            task = asyncio.create_task(self._handle(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            await self._handle(message)

    async def _handle(self, message: Any) -> None:
        response = await self.server.handle_message(self.session, message)
        if response is not None:
            try:
                await self._send(response)
            except TransportError as exc:
                logger.warning(
                    "dropping session after write failure: %s", exc, extra=self._log_extra
                )
                self.session.abort("stdio write failed")
        if self.server.ends_session(message):
            self.session.finish_close()

    async def _send(self, message: dict[str, Any]) -> None:
        async with self._write_lock:
            try:
                self.writer.write(encode_message(message) + b"\n")
                await self.writer.drain()
            except (ConnectionError, OSError) as exc:
                raise TransportError(f"write failed: {exc}") from exc


async def open_stdio_streams() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Wrap the process stdin/stdout in asyncio streams."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    write_transport, write_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(write_transport, write_protocol, reader, loop)
    return reader, writer
