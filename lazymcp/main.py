"""Process entrypoints: logging setup, FastAPI app factory and stdio runner."""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator, Sequence

from fastapi import FastAPI

from .container import ServerContainer, build_container, shutdown as shutdown_container
from .env import load_dotenv_if_present
from .settings import get_settings
from .transports.http import HttpTransport, get_router
from .transports.stdio import StdioTransport, open_stdio_streams

logger = logging.getLogger(__name__)


class _SessionIdFilter(logging.Filter):
    """Ensure every log record has a session_id attribute."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session_id"):
            record.session_id = "system"
        return True


def _configure_logging(level: str = "INFO") -> None:
    # basicConfig logs to stderr, which keeps stdout free for the stdio transport.
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [session_id=%(session_id)s] %(name)s: %(message)s",
    )
    root_logger = logging.getLogger()
    session_filter = _SessionIdFilter()
    for handler in root_logger.handlers:
        handler.addFilter(session_filter)


def create_app(container: ServerContainer | None = None) -> FastAPI:
    """Construct the FastAPI application for the HTTP transport."""
    if container is None:
        load_dotenv_if_present()
        settings = get_settings()
        _configure_logging(settings.server.log_level)
        container = build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "server ready name=%s version=%s",
            container.settings.server.name,
            container.settings.server.version,
            extra={"session_id": "system"},
        )
        yield
        await shutdown_container(container)

    app = FastAPI(lifespan=lifespan)
    app.state.container = container
    app.include_router(get_router(container))
    return app


async def run_stdio(container: ServerContainer) -> None:
    """Serve a single MCP session over stdin/stdout."""
    reader, writer = await open_stdio_streams()
    session = container.sessions.create()
    transport = StdioTransport(container.server, session, reader, writer)
    try:
        await transport.serve()
    finally:
        container.sessions.remove(session.session_id)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the LazyMCP server.")
    parser.add_argument("--transport", choices=("stdio", "http"), default=None)
    parser.add_argument("--host", default=None, help="HTTP bind host")
    parser.add_argument("--port", type=int, default=None, help="HTTP bind port")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    load_dotenv_if_present()
    settings = get_settings()
    _configure_logging(settings.server.log_level)
    if args.host or args.port:
        settings.server = replace(
            settings.server,
            http_host=args.host or settings.server.http_host,
            http_port=args.port or settings.server.http_port,
        )
    container = build_container(settings)
    transport = args.transport or settings.server.transport
    if transport == "http":
        asyncio.run(HttpTransport(container, create_app(container)).serve())
    else:
        asyncio.run(run_stdio(container))


if __name__ == "__main__":  # pragma: no cover
    main()
