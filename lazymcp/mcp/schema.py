"""Shared MCP schema models."""

from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

RequestId = Union[str, int]

JSONRPC_VERSION = "2.0"


class ToolDescriptor(BaseModel):
    """Structured metadata describing a tool exposed by the server."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    name: str
    description: str
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    output_schema: dict[str, Any] = Field(default_factory=dict, alias="outputSchema")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ToolInvocationRequest(BaseModel):
    """A single tools/call request after it has been decoded."""

    model_config = ConfigDict(extra="forbid")

    request_id: RequestId
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolError(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str
    message: str
    retryable: bool = False


class ToolInvocationResult(BaseModel):
    """Response envelope returned by the dispatcher after execution."""

    model_config = ConfigDict(extra="forbid")

    request_id: RequestId
    tool_name: str
    output: dict[str, Any] | None = None
    error: ToolError | None = None
    text: str | None = None

    @model_validator(mode="after")
    def _validate_payloads(self) -> "ToolInvocationResult":
        if self.output is None and self.error is None:
            raise ValueError("tool call result requires output or error payload")
        if self.output is not None and self.error is not None:
            raise ValueError("tool call result cannot include both output and error")
        return self

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_wire(self) -> dict[str, Any]:
        """Render the result in the MCP tools/call result shape."""
        if self.error is not None:
            return {
                "content": [{"type": "text", "text": self.error.message}],
                "isError": True,
                "error": self.error.model_dump(),
            }
        return {
            "content": [{"type": "text", "text": self.text or ""}],
            "structuredContent": self.output,
            "isError": False,
        }


class JsonRpcMessage(BaseModel):
    """Incoming JSON-RPC 2.0 request or notification."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"]
    method: str
    id: RequestId | None = None
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set or self.id is None


class ServerInfo(BaseModel):
    name: str
    version: str


class InitializeResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    protocol_version: str = Field(alias="protocolVersion")
    capabilities: dict[str, Any]
    server_info: ServerInfo = Field(alias="serverInfo")
    tools: list[dict[str, Any]] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def success_response(request_id: RequestId | None, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_response(
    request_id: RequestId | None,
    code: int,
    message: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
