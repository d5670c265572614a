"""Dispatcher that routes tools/call requests to tool executors."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from pydantic import ValidationError as SchemaValidationError

from ..errors import ErrorKind, ExecutionError
from ..session_logging import session_extra
from ..settings import ToolSettings
from ..tools.base import CallContext, ToolOutputModel
from .cancellation import CancellationToken
from .registry import RegisteredTool, ToolRegistry
from .schema import ToolError, ToolInvocationRequest, ToolInvocationResult
from .session import Session

logger = logging.getLogger(__name__)


def _discard_outcome(task: asyncio.Task[Any]) -> None:
    # Abandoned executions may still finish or fail; retrieve the outcome so
    # asyncio does not report it as never retrieved.
    if not task.cancelled():
        task.exception()


class Dispatcher:
    """Validates and executes tool calls for a session.

    Every call admitted by ``dispatch`` is removed from the session's
    in-flight set exactly once, whatever the outcome.
    """

    def __init__(self, registry: ToolRegistry, settings: ToolSettings | None = None):
        self.registry = registry
        self.settings = settings or ToolSettings()

    async def dispatch(
        self, session: Session, request: ToolInvocationRequest
    ) -> ToolInvocationResult:
        token = session.begin_call(request.request_id)
        log_extra = session_extra(session.session_id)
        start = time.perf_counter()
        try:
            entry = self.registry.lookup(request.tool_name)
            arguments = entry.executor.validate(request.arguments)
            context = CallContext(
                cancel=token,
                session_id=session.session_id,
                client_address=session.client_address,
            )
            result = await self._execute(entry, request, arguments, context)
        finally:
            session.end_call(request.request_id)
        duration_ms = int((time.perf_counter() - start) * 1000)
        if result.error is not None:
            logger.warning(
                "tool failed tool=%s request_id=%s kind=%s retryable=%s duration_ms=%s",
                request.tool_name,
                request.request_id,
                result.error.kind,
                result.error.retryable,
                duration_ms,
                extra=log_extra,
            )
        else:
            logger.info(
                "tool completed tool=%s request_id=%s duration_ms=%s",
                request.tool_name,
                request.request_id,
                duration_ms,
                extra=log_extra,
            )
        return result

    async def _execute(
        self,
        entry: RegisteredTool,
        request: ToolInvocationRequest,
        arguments: Any,
        context: CallContext,
    ) -> ToolInvocationResult:
        timeout = self.settings.timeout_for(request.tool_name)
        token: CancellationToken = context.cancel
        task = asyncio.create_task(
            entry.executor.execute(arguments, context),
            name=f"tool-{request.tool_name}-{request.request_id}",
        )
        cancel_waiter = asyncio.create_task(token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            token.cancel("dispatch cancelled")
            task.cancel()
            task.add_done_callback(_discard_outcome)
            raise
        finally:
            cancel_waiter.cancel()

        if task not in done:
            task.cancel()
            task.add_done_callback(_discard_outcome)
            if cancel_waiter in done:
                reason = token.reason or "cancelled"
                return self._error(
                    request, ExecutionError(ErrorKind.CANCELLED, reason, retryable=False)
                )
            token.cancel("deadline exceeded")
            return self._error(
                request,
                ExecutionError(
                    ErrorKind.TIMEOUT,
                    f"tool {request.tool_name} exceeded its {timeout:g}s deadline",
                    retryable=True,
                ),
            )

        try:
            output = task.result()
        except ExecutionError as exc:
            return self._error(request, exc)
        except asyncio.CancelledError:
            return self._error(
                request,
                ExecutionError(
                    ErrorKind.CANCELLED, token.reason or "cancelled", retryable=False
                ),
            )
        except Exception:
            logger.exception(
                "tool execution crashed tool=%s request_id=%s",
                request.tool_name,
                request.request_id,
                extra=session_extra(context.session_id),
            )
            return self._error(
                request,
                ExecutionError(
                    ErrorKind.INTERNAL,
                    f"tool {request.tool_name} failed unexpectedly",
                    retryable=False,
                ),
            )
        return self._success(entry, request, output)

    def _success(
        self,
        entry: RegisteredTool,
        request: ToolInvocationRequest,
        output: ToolOutputModel,
    ) -> ToolInvocationResult:
        tool = entry.executor
        try:
            if not isinstance(output, tool.output_model):
                output = tool.output_model.model_validate(output)
        except SchemaValidationError:
            logger.error(
                "tool output violates schema tool=%s request_id=%s",
                request.tool_name,
                request.request_id,
                extra={"session_id": "system"},
            )
            return self._error(
                request,
                ExecutionError(
                    ErrorKind.INTERNAL,
                    f"tool {request.tool_name} produced an invalid result",
                    retryable=False,
                ),
            )
        return ToolInvocationResult(
            request_id=request.request_id,
            tool_name=request.tool_name,
            output=output.model_dump(mode="json"),
            text=tool.summarize(output),
        )

    @staticmethod
    def _error(request: ToolInvocationRequest, exc: ExecutionError) -> ToolInvocationResult:
        return ToolInvocationResult(
            request_id=request.request_id,
            tool_name=request.tool_name,
            error=ToolError(**exc.to_payload()),
        )
