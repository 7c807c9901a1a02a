"""Run state for a single agent run, plus repair and snapshot helpers.

A ``RunState`` is the canonical mutable record of one agent run. The run loop,
plugins and tool results all write to it through the methods defined here, one
writer at a time. Snapshots produced by :func:`serialize` are pure data and can
be restored with :func:`deserialize`; runtime handles (callbacks, notification
queue, cancellation predicate) are never persisted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

import structlog

from agent_runtime.agent.errors import SnapshotError
from agent_runtime.agent.types import Message, ToolCall, Usage

LOGGER = structlog.get_logger(__name__)

SNAPSHOT_VERSION = 1
INTERRUPTED_TOOL_RESULT = "Tool call was interrupted and not executed. Please retry if needed."

CallbackFn = Callable[[str, Any], Any]
CancellationCheck = Callable[[], Any]


@dataclass(slots=True)
class RunState:
    messages: list[Message] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    system_prompt: str | None = None
    deps: dict[str, Any] = field(default_factory=dict)
    usage: Usage = field(default_factory=Usage)
    needs_response: bool = True
    iteration: int = 0
    max_iterations: int = 10
    started_at: datetime | None = field(default_factory=lambda: datetime.now(timezone.utc))
    agent_name: str | None = None
    # runtime handles, never persisted
    callbacks: dict[str, CallbackFn] = field(default_factory=dict)
    notify: asyncio.Queue | None = None
    cancellation_check: CancellationCheck | None = None

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        if message.role == "assistant":
            self.needs_response = message.has_tool_calls
        elif message.role in ("tool", "user"):
            self.needs_response = True

    def add_messages(self, messages: list[Message]) -> None:
        for message in messages:
            self.add_message(message)

    def add_tool_call(self, call: ToolCall) -> None:
        self.tool_calls.append(call)

    def add_usage(self, usage: Usage) -> None:
        self.usage = self.usage + usage

    def merge_deps(self, updates: Mapping[str, Any]) -> None:
        self.deps.update(updates)

    def increment_iteration(self) -> None:
        self.iteration += 1

    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def assistant_messages(self) -> list[Message]:
        return [message for message in self.messages if message.role == "assistant"]

    def to_run_context(self, attempt: int = 0) -> RunContext:
        return RunContext(
            deps=MappingProxyType(dict(self.deps)),
            usage=self.usage,
            retry=attempt,
            iteration=self.iteration,
            agent_name=self.agent_name,
        )


@dataclass(frozen=True, slots=True)
class RunContext:
    """Read-only view of a run handed to a tool for one attempt.

    ``retry`` is the zero-based attempt index, so a tool can back off or change
    strategy on later attempts. Tools change ``deps`` only by returning a
    :class:`DepsUpdate` (or the reserved ``__update_deps__`` key).
    """

    deps: Mapping[str, Any]
    usage: Usage = field(default_factory=Usage)
    retry: int = 0
    iteration: int = 0
    agent_name: str | None = None


@dataclass(slots=True)
class DepsUpdate:
    """Ordered deps operations returned by a stateful tool."""

    operations: list[tuple[Any, ...]] = field(default_factory=list)

    def set(self, key: str, value: Any) -> DepsUpdate:
        self.operations.append(("set", key, value))
        return self

    def merge(self, key: str, value: Mapping[str, Any]) -> DepsUpdate:
        self.operations.append(("merge", key, dict(value)))
        return self

    def append(self, key: str, item: Any) -> DepsUpdate:
        self.operations.append(("append", key, item))
        return self

    def delete(self, key: str) -> DepsUpdate:
        self.operations.append(("delete", key))
        return self

    def apply(self, deps: Mapping[str, Any]) -> dict[str, Any]:
        """Return a new deps mapping with every operation applied in order."""

        result = dict(deps)
        for op in self.operations:
            kind, key = op[0], op[1]
            if kind == "set":
                result[key] = op[2]
            elif kind == "merge":
                result[key] = {**(result.get(key) or {}), **op[2]}
            elif kind == "append":
                result[key] = [*(result.get(key) or []), op[2]]
            elif kind == "delete":
                result.pop(key, None)
        return result

    def __bool__(self) -> bool:
        return bool(self.operations)


def patch_dangling_tool_calls(state: RunState) -> list[Message]:
    """Append interrupted-call tool messages for every unanswered tool call.

    Synthetic results go at the end of the history, in the order the calls were
    first referenced. Returns the messages that were added; running it again on
    the same state adds nothing.
    """

    answered = {
        message.tool_call_id
        for message in state.messages
        if message.role == "tool" and message.tool_call_id is not None
    }
    dangling: list[str] = []
    for message in state.messages:
        if message.role != "assistant":
            continue
        for call in message.tool_calls:
            if call.id and call.id not in answered and call.id not in dangling:
                dangling.append(call.id)

    patched = [Message.tool(call_id, INTERRUPTED_TOOL_RESULT) for call_id in dangling]
    if patched:
        LOGGER.info("state.patched_dangling_tool_calls", tool_call_ids=dangling)
        state.add_messages(patched)
    return patched


_DROPPED = object()


def _pure_data(value: Any) -> Any:
    """JSON-representable copy of ``value``; anything else becomes ``_DROPPED``."""

    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Mapping):
        cleaned = {key: _pure_data(item) for key, item in value.items() if isinstance(key, str)}
        return {key: item for key, item in cleaned.items() if item is not _DROPPED}
    if isinstance(value, (list, tuple)):
        return [item for item in map(_pure_data, value) if item is not _DROPPED]
    return _DROPPED


def serialize(state: RunState) -> dict[str, Any]:
    """Return a versioned, pure-data snapshot of ``state``."""

    return {
        "version": SNAPSHOT_VERSION,
        "messages": [message.to_dict() for message in state.messages],
        "tool_calls": [call.to_dict() for call in state.tool_calls],
        "system_prompt": state.system_prompt,
        "deps": _pure_data(state.deps),
        "usage": state.usage.to_dict(),
        "needs_response": state.needs_response,
        "iteration": state.iteration,
        "max_iterations": state.max_iterations,
        "started_at": state.started_at.isoformat() if state.started_at else None,
        "agent_name": state.agent_name,
    }


def deserialize(data: Mapping[str, Any]) -> RunState:
    """Restore a snapshot produced by :func:`serialize`.

    Raises :class:`SnapshotError` when the version is missing or unsupported,
    or the document is malformed.
    """

    if not isinstance(data, Mapping) or "version" not in data:
        raise SnapshotError("missing or invalid version field")
    version = data["version"]
    if version != SNAPSHOT_VERSION:
        raise SnapshotError(f"unsupported version: {version!r}")

    try:
        started_at = data.get("started_at")
        return RunState(
            messages=[Message.from_dict(item) for item in data.get("messages") or []],
            tool_calls=[ToolCall.from_dict(item) for item in data.get("tool_calls") or []],
            system_prompt=data.get("system_prompt"),
            deps=dict(data.get("deps") or {}),
            usage=Usage.from_mapping(data.get("usage")),
            needs_response=bool(data.get("needs_response", False)),
            iteration=int(data.get("iteration") or 0),
            max_iterations=int(data.get("max_iterations") or 10),
            started_at=datetime.fromisoformat(started_at) if started_at else None,
            agent_name=data.get("agent_name"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SnapshotError(f"malformed snapshot: {exc}") from exc
