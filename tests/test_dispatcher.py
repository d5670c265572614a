from __future__ import annotations

import asyncio

import pytest

from lazymcp.errors import DuplicateRequestError, UnknownToolError, ValidationError
from lazymcp.mcp.dispatcher import Dispatcher
from lazymcp.mcp.registry import ToolRegistry
from lazymcp.mcp.schema import ToolInvocationRequest
from lazymcp.mcp.session import Session
from lazymcp.settings import SessionSettings, ToolSettings
from lazymcp.tools import CalculatorTool

from .conftest import CrashTool, SleepTool


def _setup(tool_settings: ToolSettings | None = None) -> tuple[Dispatcher, Session, SleepTool]:
    sleepy = SleepTool()
    registry = ToolRegistry()
    for tool in (CalculatorTool(), sleepy, CrashTool()):
        registry.register_tool(tool)
    registry.seal()
    session = Session(SessionSettings(max_concurrent_calls=4))
    session.begin_initialize(protocol_version=None)
    session.mark_ready()
    dispatcher = Dispatcher(registry, tool_settings or ToolSettings(default_timeout_seconds=2.0))
    return dispatcher, session, sleepy


def _request(request_id: object, tool_name: str, **arguments: object) -> ToolInvocationRequest:
    return ToolInvocationRequest(request_id=request_id, tool_name=tool_name, arguments=arguments)


@pytest.mark.asyncio
async def test_successful_call_returns_structured_output() -> None:
    dispatcher, session, _ = _setup()
    result = await dispatcher.dispatch(session, _request(1, "calculator", expr="2+2"))
    assert result.ok
    assert result.request_id == 1
    assert result.output == {"result": 4}
    assert result.to_wire() == {
        "content": [{"type": "text", "text": "4"}],
        "structuredContent": {"result": 4},
        "isError": False,
    }
    assert session.in_flight() == frozenset()


@pytest.mark.asyncio
async def test_timeout_is_reported_and_request_released() -> None:
    dispatcher, session, sleepy = _setup(ToolSettings(default_timeout_seconds=0.05))
    result = await dispatcher.dispatch(session, _request("slow", "sleepy", seconds=5))
    assert result.error is not None
    assert result.error.kind == "Timeout"
    assert result.error.retryable is True
    assert not session.is_in_flight("slow")
    await asyncio.sleep(0.01)
    assert sleepy.cancelled == 1


@pytest.mark.asyncio
async def test_per_tool_timeout_overrides_default() -> None:
    dispatcher, session, _ = _setup(
        ToolSettings(default_timeout_seconds=5.0, timeouts={"sleepy": 0.05})
    )
    result = await dispatcher.dispatch(session, _request(1, "sleepy", seconds=1))
    assert result.error is not None and result.error.kind == "Timeout"

    fast = await dispatcher.dispatch(session, _request(2, "calculator", expr="1"))
    assert fast.ok


@pytest.mark.asyncio
async def test_concurrent_calls_correlate_by_request_id() -> None:
    dispatcher, session, _ = _setup()
    slow, fast = await asyncio.gather(
        dispatcher.dispatch(session, _request("a", "sleepy", seconds=0.1, value="first")),
        dispatcher.dispatch(session, _request("b", "sleepy", seconds=0.01, value="second")),
    )
    assert (slow.request_id, slow.output) == ("a", {"value": "first"})
    assert (fast.request_id, fast.output) == ("b", {"value": "second"})
    assert session.in_flight() == frozenset()


@pytest.mark.asyncio
async def test_duplicate_in_flight_id_is_not_dispatched_twice() -> None:
    dispatcher, session, sleepy = _setup()
    first = asyncio.create_task(
        dispatcher.dispatch(session, _request(1, "sleepy", seconds=0.1))
    )
    await asyncio.sleep(0.01)
    with pytest.raises(DuplicateRequestError):
        await dispatcher.dispatch(session, _request(1, "sleepy", seconds=0))
    result = await first
    assert result.ok
    assert sleepy.calls == 1


@pytest.mark.asyncio
async def test_client_cancel_stops_execution() -> None:
    dispatcher, session, sleepy = _setup()
    call = asyncio.create_task(
        dispatcher.dispatch(session, _request("c", "sleepy", seconds=5))
    )
    await asyncio.sleep(0.01)
    assert session.cancel_call("c", "no longer needed")
    result = await call
    assert result.error is not None
    assert result.error.kind == "Cancelled"
    assert result.error.message == "no longer needed"
    assert result.error.retryable is False
    assert session.in_flight() == frozenset()
    await asyncio.sleep(0.01)
    assert sleepy.cancelled == 1


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_internal_error() -> None:
    dispatcher, session, _ = _setup()
    result = await dispatcher.dispatch(session, _request(1, "crashy"))
    assert result.error is not None
    assert result.error.kind == "Internal"
    assert "boom" not in result.error.message
    assert result.to_wire()["isError"] is True


@pytest.mark.asyncio
async def test_classified_failure_keeps_its_kind() -> None:
    dispatcher, session, _ = _setup()
    result = await dispatcher.dispatch(session, _request(1, "calculator", expr="1/0"))
    assert result.error is not None
    assert result.error.kind == "InvalidOperation"


@pytest.mark.asyncio
async def test_unknown_tool_releases_request_id() -> None:
    dispatcher, session, _ = _setup()
    with pytest.raises(UnknownToolError):
        await dispatcher.dispatch(session, _request(1, "teleport"))
    assert session.in_flight() == frozenset()


@pytest.mark.asyncio
async def test_invalid_arguments_never_reach_the_executor() -> None:
    dispatcher, session, sleepy = _setup()
    with pytest.raises(ValidationError):
        await dispatcher.dispatch(session, _request(1, "sleepy", seconds="soon"))
    assert sleepy.calls == 0
    assert session.in_flight() == frozenset()


@pytest.mark.asyncio
async def test_abort_cancels_running_calls() -> None:
    dispatcher, session, _ = _setup()
    call = asyncio.create_task(dispatcher.dispatch(session, _request(1, "sleepy", seconds=5)))
    await asyncio.sleep(0.01)
    session.abort("transport disconnected")
    result = await call
    assert result.error is not None and result.error.kind == "Cancelled"
    assert session.in_flight() == frozenset()
