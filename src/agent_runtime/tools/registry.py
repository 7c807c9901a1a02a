"""Tool registry for a single iteration of the run loop."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from agent_runtime.tools.base import Tool, clean_tool_name


@dataclass(slots=True)
class ToolRegistry:
    """Name-indexed view over the tools offered to the model.

    Later registrations with the same name shadow earlier ones for lookup, but
    :meth:`list_tools` keeps every registered tool in order.
    """

    _tools: list[Tool] = field(default_factory=list)
    _by_name: dict[str, Tool] = field(default_factory=dict)

    @classmethod
    def of(cls, tools: Iterable[Tool]) -> ToolRegistry:
        registry = cls()
        registry.register_all(tools)
        return registry

    def register(self, tool: Tool) -> None:
        self._tools.append(tool)
        self._by_name[tool.name] = tool

    def register_all(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool | None:
        return self._by_name.get(clean_tool_name(name))

    def names(self) -> list[str]:
        return [tool.name for tool in self._tools]

    def list_tools(self) -> list[Tool]:
        return list(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.to_openai() for tool in self._tools]

    def __len__(self) -> int:
        return len(self._tools)
