"""MCP protocol engine: JSON-RPC method routing for a session."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError as SchemaValidationError

from ..errors import MCPError, ProtocolSequenceError
from ..session_logging import session_extra
from .dispatcher import Dispatcher
from .registry import ToolRegistry
from .schema import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    InitializeResult,
    JsonRpcMessage,
    ServerInfo,
    ToolInvocationRequest,
    error_response,
    success_response,
)
from .session import Session, SessionPhase

logger = logging.getLogger(__name__)

Handler = Callable[[Session, JsonRpcMessage], Awaitable[dict[str, Any] | None]]

# Methods whose handling may overlap with other messages of the same session.
CONCURRENT_METHODS = frozenset({"tools/call", "shutdown", "close"})

# Methods after which the transport finishes closing the session.
CLOSE_METHODS = frozenset({"shutdown", "close"})


class MCPServerError(MCPError):
    """Raised when a request is structurally invalid."""

    code = INVALID_REQUEST


class InvalidParamsError(MCPError):
    code = INVALID_PARAMS


class MCPServer:
    """Routes decoded JSON-RPC messages for a session and builds responses.

    ``handle_message`` returns the response envelope, or ``None`` when the
    message was a notification or the session closed before a result was
    ready.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        dispatcher: Dispatcher,
        *,
        name: str = "LazyMCP",
        version: str = "1.0.0",
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.server_info = ServerInfo(name=name, version=version)
        self.capabilities: dict[str, Any] = {"tools": {"listChanged": False}}
        self._handlers: dict[str, Handler] = {
            "initialize": self._initialize,
            "notifications/initialized": self._initialized,
            "initialized": self._initialized,
            "ping": self._ping,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
            "notifications/cancelled": self._cancelled,
            "shutdown": self._close,
            "close": self._close,
        }

    @staticmethod
    def is_concurrent(message: Any) -> bool:
        return isinstance(message, Mapping) and message.get("method") in CONCURRENT_METHODS

    @staticmethod
    def ends_session(message: Any) -> bool:
        """True for close requests; the transport calls ``finish_close`` once it has replied."""
        return isinstance(message, Mapping) and message.get("method") in CLOSE_METHODS

    async def handle_message(self, session: Session, raw: Any) -> dict[str, Any] | None:
        if not isinstance(raw, Mapping):
            return error_response(None, INVALID_REQUEST, "message must be a JSON object")
        if "method" not in raw and ("result" in raw or "error" in raw):
            # Responses from the client are not expected; nothing was requested.
            logger.debug("ignoring client response id=%s", raw.get("id"))
            return None
        try:
            message = JsonRpcMessage.model_validate(raw)
        except SchemaValidationError:
            request_id = raw.get("id") if isinstance(raw.get("id"), (str, int)) else None
            return error_response(request_id, INVALID_REQUEST, "invalid JSON-RPC request")

        log_extra = session_extra(session.session_id)
        request_id = None if message.is_notification else message.id
        try:
            self._check_phase(session, message.method)
            handler = self._handlers.get(message.method)
            if handler is None:
                if message.is_notification:
                    logger.debug("ignoring unknown notification method=%s", message.method)
                    return None
                return error_response(
                    request_id, METHOD_NOT_FOUND, f"method not found: {message.method}"
                )
            result = await handler(session, message)
        except ProtocolSequenceError as exc:
            if session.record_sequence_violation():
                session.abort("repeated protocol sequence violations")
            logger.warning(
                "protocol sequence error method=%s id=%s phase=%s",
                message.method,
                request_id,
                session.phase.value,
                extra=log_extra,
            )
            return self._error(message, exc)
        except MCPError as exc:
            logger.warning(
                "request failed method=%s id=%s error=%s",
                message.method,
                request_id,
                exc.message,
                extra=log_extra,
            )
            return self._error(message, exc)
        except Exception:
            logger.exception(
                "request crashed method=%s id=%s", message.method, request_id, extra=log_extra
            )
            if message.is_notification:
                return None
            return error_response(request_id, INTERNAL_ERROR, "internal error")

        session.reset_sequence_violations()
        if message.is_notification:
            return None
        if result is None:
            # Completed after the session closed; the client no longer listens.
            logger.info(
                "dropping response after close method=%s id=%s",
                message.method,
                request_id,
                extra=log_extra,
            )
            return None
        logger.info(
            "request succeeded method=%s id=%s", message.method, request_id, extra=log_extra
        )
        return success_response(request_id, result)

    @staticmethod
    def _error(message: JsonRpcMessage, exc: MCPError) -> dict[str, Any] | None:
        if message.is_notification:
            return None
        return error_response(message.id, exc.code, exc.message, exc.details or None)

    @staticmethod
    def _check_phase(session: Session, method: str) -> None:
        if session.phase == SessionPhase.CLOSED:
            raise ProtocolSequenceError("session is closed")
        if session.phase == SessionPhase.UNINITIALIZED and method != "initialize":
            raise ProtocolSequenceError(
                f"{method} received before initialize", details={"method": method}
            )

    # ----- handlers ----------------------------------------------------------

    async def _initialize(self, session: Session, message: JsonRpcMessage) -> dict[str, Any]:
        if message.is_notification:
            raise MCPServerError("initialize must be sent as a request")
        params = message.params
        capabilities = params.get("capabilities")
        client_info = params.get("clientInfo")
        version = session.begin_initialize(
            protocol_version=params.get("protocolVersion"),
            capabilities=capabilities if isinstance(capabilities, Mapping) else None,
            client_info=client_info if isinstance(client_info, Mapping) else None,
        )
        return InitializeResult(
            protocol_version=version,
            capabilities=self.capabilities,
            server_info=self.server_info,
            tools=[descriptor.to_wire() for descriptor in self.registry.list()],
        ).to_wire()

    async def _initialized(self, session: Session, message: JsonRpcMessage) -> dict[str, Any]:
        session.mark_ready()
        return {}

    async def _ping(self, session: Session, message: JsonRpcMessage) -> dict[str, Any]:
        return {}

    async def _list_tools(self, session: Session, message: JsonRpcMessage) -> dict[str, Any]:
        session.require_phase(SessionPhase.NEGOTIATING, SessionPhase.READY)
        return {"tools": [descriptor.to_wire() for descriptor in self.registry.list()]}

    async def _call_tool(
        self, session: Session, message: JsonRpcMessage
    ) -> dict[str, Any] | None:
        session.require_phase(SessionPhase.READY)
        if message.is_notification:
            raise MCPServerError("tools/call must be sent as a request")
        params = message.params
        tool_name = params.get("name", params.get("toolName"))
        arguments = params.get("arguments", {})
        if arguments is None:
            arguments = {}
        if not isinstance(tool_name, str) or not tool_name.strip():
            raise InvalidParamsError("tools/call requires a tool name", details={"param": "name"})
        if not isinstance(arguments, Mapping):
            raise InvalidParamsError("tools/call arguments must be an object")
        request = ToolInvocationRequest(
            request_id=message.id,
            tool_name=tool_name.strip(),
            arguments=dict(arguments),
        )
        result = await self.dispatcher.dispatch(session, request)
        if not session.delivers_results:
            return None
        return result.to_wire()

    async def _cancelled(self, session: Session, message: JsonRpcMessage) -> dict[str, Any]:
        request_id = message.params.get("requestId")
        if isinstance(request_id, (str, int)):
            reason = message.params.get("reason") or "cancelled by client"
            cancelled = session.cancel_call(request_id, str(reason))
            logger.info(
                "cancel requested id=%s found=%s",
                request_id,
                cancelled,
                extra=session_extra(session.session_id),
            )
        return {}

    async def _close(self, session: Session, message: JsonRpcMessage) -> dict[str, Any]:
        await session.drain()
        return {}
