"""Tool contract shared by every tool implementation."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as SchemaValidationError

from ..errors import ValidationError
from ..mcp.cancellation import CancellationToken
from ..mcp.schema import ToolDescriptor


class ToolInputModel(BaseModel):
    """Base class with common config for tool schemas."""

    model_config = ConfigDict(extra="forbid")


class ToolOutputModel(BaseModel):
    """Base class for tool outputs."""

    model_config = ConfigDict(extra="forbid")


@dataclass(frozen=True)
class CallContext:
    """Per-invocation context passed to ``Tool.execute``."""

    cancel: CancellationToken
    session_id: str
    client_address: str | None = None


class Tool(ABC):
    """A named capability with a validated input and a structured output."""

    name: ClassVar[str]
    description: ClassVar[str]
    input_model: ClassVar[type[ToolInputModel]]
    output_model: ClassVar[type[ToolOutputModel]]

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=self.input_model.model_json_schema(),
            output_schema=self.output_model.model_json_schema(),
        )

    def validate(self, arguments: Mapping[str, Any]) -> ToolInputModel:
        """Validate arguments against the tool's declared input schema."""
        try:
            return self.input_model.model_validate(dict(arguments))
        except SchemaValidationError as exc:
            raise ValidationError(
                f"invalid arguments for tool {self.name}",
                details={"errors": _error_details(exc)},
            ) from exc

    @abstractmethod
    async def execute(
        self, arguments: ToolInputModel, context: CallContext
    ) -> ToolOutputModel:
        """Run the tool. Failures are raised as ``ExecutionError``."""

    def summarize(self, output: ToolOutputModel) -> str:
        """Text content sent alongside the structured output."""
        return json.dumps(output.model_dump(mode="json"), sort_keys=True)


def _error_details(exc: SchemaValidationError) -> list[dict[str, Any]]:
    details = []
    for error in exc.errors(include_url=False):
        details.append(
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": error.get("msg", ""),
                "type": error.get("type", ""),
            }
        )
    return details
