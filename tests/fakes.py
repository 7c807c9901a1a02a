from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from agent_runtime.agent.types import Message, ModelRef, ToolCall
from agent_runtime.tools.base import Tool


@dataclass(slots=True)
class DispatchRequest:
    model: ModelRef
    messages: list[Message]
    settings: dict[str, Any]


@dataclass(slots=True)
class ScriptedDispatcher:
    responses: list[Message | Exception] = field(default_factory=list)
    stream_events: list[Any] = field(default_factory=list)
    requests: list[DispatchRequest] = field(default_factory=list)

    async def dispatch(
        self,
        model: ModelRef,
        messages: Sequence[Message],
        settings: Mapping[str, Any],
    ) -> Message:
        self.requests.append(DispatchRequest(model, list(messages), dict(settings)))
        item = self.responses[len(self.requests) - 1]
        if isinstance(item, Exception):
            raise item
        return item

    async def stream(self, model: ModelRef, messages: Sequence[Message], settings: Mapping[str, Any]):
        self.requests.append(DispatchRequest(model, list(messages), dict(settings)))
        for event in self.stream_events:
            yield event


@dataclass(slots=True)
class RecordingTool:
    name: str = "lookup"
    result: Any = "ok"
    seen_args: list[Mapping[str, Any]] = field(default_factory=list)

    def __call__(self, arguments: Mapping[str, Any]) -> Any:
        self.seen_args.append(dict(arguments))
        return self.result

    def as_tool(self, **options: Any) -> Tool:
        return Tool(name=self.name, description=f"{self.name} tool", function=self, takes_state=False, **options)


def reply(text: str | None, **usage: int) -> Message:
    return Message.assistant(text, metadata={"usage": usage} if usage else None)


def call(name: str, arguments: Mapping[str, Any] | None = None, call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=dict(arguments or {}))


def calls(*tool_calls: ToolCall) -> Message:
    return Message.assistant(None, tool_calls=tool_calls)
