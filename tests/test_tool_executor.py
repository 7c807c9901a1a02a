from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from typing import Any

import pydantic
import pytest

from agent_runtime.agent.errors import ToolError, ToolTimeout
from agent_runtime.agent.state import DepsUpdate, RunContext, RunState
from agent_runtime.infra.events import EventBus
from agent_runtime.tools.base import Tool, ToolResult, clean_tool_name
from agent_runtime.tools.executor import ToolExecutor
from agent_runtime.tools.registry import ToolRegistry


def _recorder(bus: EventBus) -> list[tuple[tuple[str, ...], dict[str, Any], dict[str, Any]]]:
    seen: list[tuple[tuple[str, ...], dict[str, Any], dict[str, Any]]] = []
    bus.attach("test", ("tool", "execute"), lambda event, m, md: seen.append((event, dict(m), dict(md))))
    return seen


def test_flaky_tool_succeeds_on_third_attempt() -> None:
    attempts: list[int] = []

    def flaky(ctx: RunContext, args: Mapping[str, Any]) -> str:
        attempts.append(ctx.retry)
        if ctx.retry < 2:
            raise RuntimeError("temporary outage")
        return "recovered"

    bus = EventBus()
    seen = _recorder(bus)
    tool = Tool.from_function(flaky, retries=2)

    result = asyncio.run(ToolExecutor(bus).execute(tool, {}, RunState()))

    assert result.ok is True
    assert result.content == "recovered"
    assert attempts == [0, 1, 2]

    exceptions = [md for event, _, md in seen if event[-1] == "exception"]
    stops = [md for event, _, md in seen if event[-1] == "stop"]
    assert [md["will_retry"] for md in exceptions] == [True, True]
    assert len(stops) == 1
    assert stops[0]["success"] is True
    assert stops[0]["attempt"] == 3


def test_retry_bound_is_retries_plus_one() -> None:
    calls: list[int] = []

    def always_fails(ctx: RunContext, args: Mapping[str, Any]) -> None:
        calls.append(ctx.retry)
        raise ValueError("boom")

    tool = Tool.from_function(always_fails, retries=3)

    result = asyncio.run(ToolExecutor().execute(tool, {}, RunState()))

    assert calls == [0, 1, 2, 3]
    assert result.ok is False
    assert isinstance(result.error, ToolError)
    assert result.error.tool_name == "always_fails"
    assert result.error.attempt == 4
    assert isinstance(result.error.cause, ValueError)


def test_exhausted_retries_render_model_visible_message() -> None:
    def broken(args: Mapping[str, Any]) -> None:
        raise KeyError("missing")

    bus = EventBus()
    seen = _recorder(bus)

    result = asyncio.run(ToolExecutor(bus).execute(Tool.from_function(broken), {}, RunState()))

    assert result.content.splitlines()[0] == "Tool execution failed: broken"
    assert "Attempts: 1" in result.content
    assert "Original cause: KeyError('missing')" in result.content
    assert result.content.endswith("Please try a different approach or tool if available.")
    assert [md["will_retry"] for event, _, md in seen if event[-1] == "exception"] == [False]


def test_arity_selects_calling_convention() -> None:
    def plain(args: Mapping[str, Any]) -> str:
        return f"plain:{args['x']}"

    def stateful(ctx: RunContext, args: Mapping[str, Any]) -> str:
        return f"{ctx.deps['prefix']}:{args['x']}"

    state = RunState(deps={"prefix": "ctx"})
    executor = ToolExecutor()

    plain_tool = Tool.from_function(plain)
    stateful_tool = Tool.from_function(stateful)

    assert plain_tool.takes_state is False
    assert stateful_tool.takes_state is True
    assert asyncio.run(executor.execute(plain_tool, {"x": 1}, state)).content == "plain:1"
    assert asyncio.run(executor.execute(stateful_tool, {"x": 2}, state)).content == "ctx:2"


def test_async_tool_and_structured_result() -> None:
    async def fetch(args: Mapping[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(0)
        return {"id": args["id"], "found": True}

    result = asyncio.run(ToolExecutor().execute(Tool.from_function(fetch), {"id": 7}, RunState()))

    assert result.data == {"id": 7, "found": True}
    assert result.content == '{"id": 7, "found": true}'


def test_timeout_counts_as_failed_attempt() -> None:
    attempts: list[int] = []

    async def slow(ctx: RunContext, args: Mapping[str, Any]) -> str:
        attempts.append(ctx.retry)
        if ctx.retry == 0:
            await asyncio.sleep(1)
        return "fast enough"

    tool = Tool.from_function(slow, retries=1, timeout=0.05)

    result = asyncio.run(ToolExecutor().execute(tool, {}, RunState()))

    assert attempts == [0, 1]
    assert result.ok is True
    assert result.content == "fast enough"


def test_sync_tool_timeout_uses_default() -> None:
    def blocking(args: Mapping[str, Any]) -> str:
        time.sleep(0.3)
        return "late"

    executor = ToolExecutor(default_timeout=0.05)

    result = asyncio.run(executor.execute(Tool.from_function(blocking), {}, RunState()))

    assert result.ok is False
    assert isinstance(result.error.cause, ToolTimeout)


def test_deps_update_from_tuple_result() -> None:
    def remember(args: Mapping[str, Any]) -> tuple[str, DepsUpdate]:
        return "saved", DepsUpdate().set("note", args["note"])

    result = asyncio.run(ToolExecutor().execute(Tool.from_function(remember), {"note": "hi"}, RunState()))

    assert result.content == "saved"
    assert result.deps_update is not None
    assert result.deps_update.apply({}) == {"note": "hi"}


def test_reserved_deps_key_is_stripped_from_result() -> None:
    def counter(ctx: RunContext, args: Mapping[str, Any]) -> dict[str, Any]:
        count = ctx.deps.get("count", 0) + 1
        return {"count": count, "__update_deps__": {"count": count}}

    result = asyncio.run(ToolExecutor().execute(Tool.from_function(counter), {}, RunState(deps={"count": 4})))

    assert result.data == {"count": 5}
    assert "__update_deps__" not in result.content
    assert result.deps_update.apply({"count": 4}) == {"count": 5}


def test_raising_event_handler_is_detached() -> None:
    bus = EventBus()
    received: list[tuple[str, ...]] = []

    def bad_handler(event, measurements, metadata) -> None:
        raise RuntimeError("handler bug")

    bus.attach("bad", ("tool",), bad_handler)
    bus.attach("good", ("tool",), lambda event, m, md: received.append(event))

    result = asyncio.run(ToolExecutor(bus).execute(Tool.from_function(lambda args: "ok"), {}, RunState()))

    assert result.ok is True
    assert received == [("tool", "execute", "start"), ("tool", "execute", "stop")]
    assert bus.detach("bad") is False


def test_duplicate_handler_id_rejected() -> None:
    bus = EventBus()
    bus.attach("one", ("tool",), lambda *args: None)

    with pytest.raises(ValueError):
        bus.attach("one", ("agent",), lambda *args: None)


def test_tool_from_function_metadata() -> None:
    class SearchArgs(pydantic.BaseModel):
        query: str
        limit: int = 5

    def search(args: Mapping[str, Any]) -> list[str]:
        """Search the knowledge base.

        Longer explanation that is not part of the description.
        """
        return []

    tool = Tool.from_function(search, parameters=SearchArgs, requires_approval=True)

    assert tool.name == "search"
    assert tool.description == "Search the knowledge base."
    assert tool.parameters["properties"]["query"]["type"] == "string"
    assert tool.requires_approval is True
    assert tool.to_openai()["function"]["name"] == "search"


def test_negative_retries_rejected() -> None:
    with pytest.raises(ValueError):
        Tool(name="t", description="", function=lambda args: None, retries=-1)


def test_registry_cleans_backend_tool_names() -> None:
    tool = Tool.from_function(lambda args: None, name="get_weather")
    registry = ToolRegistry.of([tool])

    assert clean_tool_name('get_weather" extra') == "get_weather"
    assert registry.get(' get_weather"}') is tool
    assert registry.get("missing") is None
    assert registry.schemas() == [tool.to_openai()]


def test_tool_result_from_text() -> None:
    result = ToolResult.from_data("echo", "plain text")

    assert result.ok is True
    assert result.content == "plain text"
