"""Tool definitions and normalized tool results."""

from __future__ import annotations

import inspect
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pydantic

if TYPE_CHECKING:
    from agent_runtime.agent.errors import ToolError
    from agent_runtime.agent.state import DepsUpdate

JsonValue = Any
ToolFunction = Callable[..., Any]

EMPTY_PARAMETERS: Mapping[str, JsonValue] = {"type": "object", "properties": {}}


def _positional_arity(fn: ToolFunction) -> int:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return 1
    positional = [
        param
        for param in signature.parameters.values()
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD)
        and param.default is param.empty
    ]
    return len(positional)


def _describe(fn: ToolFunction) -> str:
    doc = inspect.getdoc(fn) or ""
    return doc.split("\n\n", 1)[0].strip()


def _parameters_schema(parameters: Any) -> Mapping[str, JsonValue]:
    if parameters is None:
        return dict(EMPTY_PARAMETERS)
    if isinstance(parameters, type) and issubclass(parameters, pydantic.BaseModel):
        return parameters.model_json_schema()
    if isinstance(parameters, Mapping):
        return dict(parameters)
    raise TypeError(f"Unsupported tool parameters: {parameters!r}")


def clean_tool_name(name: str) -> str:
    """Strip stray markup some backends append to tool names."""

    return name.split('"', 1)[0].strip()


@dataclass(slots=True)
class Tool:
    """Caller-supplied function the model may invoke.

    ``function`` receives the decoded argument map, and additionally a
    :class:`~agent_runtime.agent.state.RunContext` first when ``takes_state`` is
    set. ``takes_state`` is derived from the declared positional arity when
    left as ``None``.
    """

    name: str
    description: str
    function: ToolFunction
    parameters: Mapping[str, JsonValue] = field(default_factory=lambda: dict(EMPTY_PARAMETERS))
    takes_state: bool | None = None
    retries: int = 0
    requires_approval: bool = False
    timeout: float | None = None

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("Tool retries must be >= 0")
        if self.takes_state is None:
            self.takes_state = _positional_arity(self.function) >= 2

    @classmethod
    def from_function(
        cls,
        fn: ToolFunction,
        *,
        name: str | None = None,
        description: str | None = None,
        parameters: Any = None,
        retries: int = 0,
        requires_approval: bool = False,
        timeout: float | None = None,
    ) -> Tool:
        return cls(
            name=name or getattr(fn, "__name__", "tool"),
            description=description if description is not None else _describe(fn),
            function=fn,
            parameters=_parameters_schema(parameters),
            retries=retries,
            requires_approval=requires_approval,
            timeout=timeout,
        )

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(slots=True)
class ToolResult:
    """Normalized tool result returned to the agent."""

    name: str
    ok: bool
    content: str
    data: JsonValue | None = None
    error: ToolError | None = None
    deps_update: DepsUpdate | None = None

    @classmethod
    def from_data(
        cls,
        name: str,
        data: JsonValue,
        *,
        content: str | None = None,
        deps_update: DepsUpdate | None = None,
    ) -> ToolResult:
        if content is None:
            content = data if isinstance(data, str) else json.dumps(data, ensure_ascii=True, default=str)
        return cls(name=name, ok=True, content=content, data=data, deps_update=deps_update)

    @classmethod
    def failure(cls, name: str, error: ToolError) -> ToolResult:
        lines = [
            f"Tool execution failed: {name}",
            f"Error: {error.message}",
            f"Attempts: {error.attempt}",
        ]
        if error.cause is not None:
            lines.append(f"Original cause: {error.cause!r}")
        lines += ["", "Please try a different approach or tool if available."]
        return cls(name=name, ok=False, content="\n".join(lines), error=error)
