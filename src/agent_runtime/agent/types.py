"""Shared agent message, tool-call and usage types."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from agent_runtime.agent.errors import AgentError
    from agent_runtime.agent.state import RunState

JsonValue = Any
Role = Literal["system", "user", "assistant", "tool"]

_ROLES = ("system", "user", "assistant", "tool")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class ToolCall:
    """Normalized tool call emitted by the model."""

    id: str
    name: str
    arguments: Mapping[str, JsonValue] = field(default_factory=dict)
    arguments_raw: str | None = None

    def to_openai(self) -> dict[str, Any]:
        arguments = self.arguments_raw or json.dumps(self.arguments, ensure_ascii=True)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments},
        }

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ToolCall:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            arguments=dict(data.get("arguments") or {}),
        )


@dataclass(frozen=True, slots=True)
class Usage:
    """Monotonic usage accumulator; combined only by addition."""

    requests: int = 0
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(**{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)})

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> Usage:
        if not data:
            return cls()
        values: dict[str, int] = {}
        for item in fields(cls):
            raw = data.get(item.name)
            # negative deltas would break monotonicity
            values[item.name] = max(int(raw), 0) if isinstance(raw, (int, float)) else 0
        return cls(**values)

    def to_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True, slots=True)
class Message:
    """Normalized chat message; immutable once appended to a run."""

    role: Role
    content: str | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content, metadata={"timestamp": utc_now_iso()})

    @classmethod
    def assistant(
        cls,
        content: str | None = None,
        *,
        tool_calls: list[ToolCall] | tuple[ToolCall, ...] = (),
        metadata: Mapping[str, Any] | None = None,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls),
            metadata=dict(metadata or {}),
        )

    @classmethod
    def tool(cls, tool_call_id: str, content: str, *, name: str | None = None) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)

    @property
    def has_tool_calls(self) -> bool:
        return self.role == "assistant" and bool(self.tool_calls)

    @property
    def usage(self) -> Usage:
        return Usage.from_mapping(self.metadata.get("usage"))

    def to_openai(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content or ""}
        if self.name and self.role != "tool":
            payload["name"] = self.name
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [call.to_openai() for call in self.tool_calls]
        return payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "name": self.name,
            "tool_call_id": self.tool_call_id,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        return cls(
            role=data["role"],
            content=data.get("content"),
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=tuple(ToolCall.from_dict(call) for call in data.get("tool_calls") or []),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True, slots=True)
class ModelRef:
    """Backend plus model name, parsed from ``"provider:model"``."""

    provider: str
    name: str
    base_url: str | None = None

    @classmethod
    def parse(cls, value: str, *, base_url: str | None = None) -> ModelRef:
        provider, sep, name = value.partition(":")
        if not sep:
            return cls(provider="openai", name=value, base_url=base_url)
        if not provider or not name:
            raise ValueError(f"Invalid model reference: {value!r}")
        return cls(provider=provider, name=name, base_url=base_url)

    def __str__(self) -> str:
        return f"{self.provider}:{self.name}"


@dataclass(slots=True)
class RunResult:
    """Outcome of an agent run: either an output or a typed error, plus the state."""

    output: Any
    usage: Usage
    state: RunState
    error: AgentError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def iterations(self) -> int:
        return self.state.iteration

    @property
    def all_messages(self) -> list[Message]:
        return list(self.state.messages)

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.output
