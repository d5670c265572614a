"""HTTP transport: one JSON-RPC message per POST, sessions keyed by header.

This module is safe to import: it builds routes from an explicit container
and does not construct runtime singletons.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import APIRouter, Header, Request, status
from fastapi.responses import JSONResponse, Response
from starlette.background import BackgroundTask

from ..errors import SessionLimitError
from ..mcp.schema import INVALID_REQUEST, error_response
from ..session_logging import session_extra
from .base import ParseError, Transport, decode_message

if TYPE_CHECKING:
    from ..container import ServerContainer
    from ..mcp.session import Session

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


def get_client_ip(request: Request) -> str | None:
    """Best-effort client address, honouring common proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    return request.client.host if request.client else None


def _request_id(message: Any) -> Any:
    if isinstance(message, dict) and isinstance(message.get("id"), (str, int)):
        return message["id"]
    return None


def get_router(container: "ServerContainer") -> APIRouter:
    """Build MCP routes using the provided dependency container."""

    router = APIRouter()
    server = container.server
    sessions = container.sessions

    def _finish_close(session: Session) -> None:
        session.finish_close()
        sessions.remove(session.session_id)

    @router.post("/mcp")
    async def post_message(
        request: Request,
        session_id: str | None = Header(default=None, alias=SESSION_HEADER),
    ) -> Response:
        try:
            message = decode_message(await request.body())
        except ParseError as exc:
            return JSONResponse(
                error_response(None, exc.code, exc.message),
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        if isinstance(message, dict) and message.get("method") == "initialize":
            try:
                session = sessions.create(client_address=get_client_ip(request))
            except SessionLimitError as exc:
                logger.warning("rejecting initialize: %s", exc.message, extra=session_extra(None))
                return JSONResponse(
                    error_response(_request_id(message), exc.code, exc.message, exc.details),
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                )
            response = await server.handle_message(session, message)
            if response is None or "error" in response:
                sessions.remove(session.session_id)
                return JSONResponse(response, status_code=status.HTTP_400_BAD_REQUEST)
            return JSONResponse(response, headers={SESSION_HEADER: session.session_id})

        if not session_id:
            return JSONResponse(
                error_response(
                    _request_id(message), INVALID_REQUEST, f"missing {SESSION_HEADER} header"
                ),
                status_code=status.HTTP_400_BAD_REQUEST,
            )
        sessions.expire_idle()
        session = sessions.get(session_id)
        if session is None:
            return JSONResponse(
                error_response(_request_id(message), INVALID_REQUEST, "unknown session"),
                status_code=status.HTTP_404_NOT_FOUND,
            )

        session.touch()
        response = await server.handle_message(session, message)
        session.touch()
        after_send = None
        if server.ends_session(message):
            after_send = BackgroundTask(_finish_close, session)
        elif session.closed:
            sessions.remove(session.session_id)
        if response is not None:
            return JSONResponse(
                response, headers={SESSION_HEADER: session.session_id}, background=after_send
            )
        if _request_id(message) is not None:
            logger.info(
                "no response delivered for closed session",
                extra=session_extra(session.session_id),
            )
            return Response(status_code=status.HTTP_410_GONE, background=after_send)
        return Response(status_code=status.HTTP_202_ACCEPTED, background=after_send)

    @router.delete("/mcp")
    async def delete_session(
        session_id: str | None = Header(default=None, alias=SESSION_HEADER),
    ) -> Response:
        session = sessions.get(session_id) if session_id else None
        if session is None:
            return Response(status_code=status.HTTP_404_NOT_FOUND)
        await session.close()
        sessions.remove(session.session_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.get("/health")
    async def health() -> dict[str, Any]:
        sessions.expire_idle()
        return {
            "status": "ok",
            "sessions": len(sessions.list()),
            "tools": [descriptor.name for descriptor in container.registry.list()],
        }

    return router


class HttpTransport(Transport):
    """Serves the FastAPI application with uvicorn."""

    def __init__(self, container: "ServerContainer", app: Any) -> None:
        super().__init__(container.server)
        self.container = container
        self.app = app

    async def serve(self) -> None:
        settings = self.container.settings.server
        config = uvicorn.Config(
            self.app,
            host=settings.http_host,
            port=settings.http_port,
            log_config=None,
        )
        logger.info(
            "HTTP server starting on http://%s:%s/mcp",
            settings.http_host,
            settings.http_port,
            extra=session_extra(None),
        )
        await uvicorn.Server(config).serve()
