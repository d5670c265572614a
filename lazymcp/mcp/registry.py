"""Registry that stores tool descriptors and their executors."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping

from ..errors import DuplicateToolError, UnknownToolError
from .schema import ToolDescriptor

if TYPE_CHECKING:
    from ..tools.base import Tool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredTool:
    descriptor: ToolDescriptor
    executor: "Tool"


class ToolRegistry:
    """In-memory mapping of tool name to descriptor and executor.

    Tools are registered once during startup. ``seal()`` freezes the registry
    before any session accepts traffic; after that it is read-only and needs
    no locking.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def register(self, descriptor: ToolDescriptor, executor: "Tool") -> None:
        if self._sealed:
            raise RuntimeError("tool registry is sealed; register tools before serving")
        if descriptor.name in self._tools:
            raise DuplicateToolError(descriptor.name)
        self._tools[descriptor.name] = RegisteredTool(descriptor=descriptor, executor=executor)
        logger.info("tool registered name=%s", descriptor.name, extra={"session_id": "system"})

    def register_tool(self, tool: "Tool") -> None:
        self.register(tool.descriptor(), tool)

    def seal(self) -> None:
        self._sealed = True

    def lookup(self, name: str) -> RegisteredTool:
        entry = self._tools.get(name)
        if entry is None:
            raise UnknownToolError(name)
        return entry

    def list(self) -> list[ToolDescriptor]:
        """Return all descriptors ordered by name."""
        return [self._tools[name].descriptor for name in sorted(self._tools)]

    def describe(self) -> Mapping[str, ToolDescriptor]:
        """Return a mapping of tool name to descriptor (mainly for diagnostics)."""
        return {name: entry.descriptor for name, entry in self._tools.items()}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
