"""Tool execution with bounded retries, lifecycle events and tracing."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Mapping
from typing import Any

import structlog

from agent_runtime.agent.errors import ToolError, ToolTimeout
from agent_runtime.agent.state import DepsUpdate, RunContext, RunState
from agent_runtime.infra.events import EventBus
from agent_runtime.infra.tracing import tool_span
from agent_runtime.tools.base import Tool, ToolResult

LOGGER = structlog.get_logger(__name__)

DEPS_UPDATE_KEY = "__update_deps__"


def _split_result(result: Any) -> tuple[Any, DepsUpdate | None]:
    if isinstance(result, tuple) and len(result) == 2 and isinstance(result[1], DepsUpdate):
        return result[0], result[1]
    if isinstance(result, Mapping) and DEPS_UPDATE_KEY in result:
        payload = dict(result)
        updates = payload.pop(DEPS_UPDATE_KEY) or {}
        update = DepsUpdate()
        for key, value in dict(updates).items():
            update.set(key, value)
        return payload, update
    return result, None


class ToolExecutor:
    """Invoke tool functions and normalize failures into ``ToolError``."""

    def __init__(self, events: EventBus | None = None, *, default_timeout: float | None = None) -> None:
        self.events = events or EventBus()
        self._default_timeout = default_timeout

    async def execute(
        self,
        tool: Tool,
        arguments: Mapping[str, Any],
        state: RunState,
    ) -> ToolResult:
        """Run ``tool`` for up to ``tool.retries + 1`` attempts.

        Returns an ok :class:`ToolResult` on the first successful attempt, or a
        failed one carrying the :class:`ToolError` once every attempt failed.
        """

        max_attempts = tool.retries + 1
        timeout = tool.timeout if tool.timeout is not None else self._default_timeout
        LOGGER.debug(
            "tool.execute_start",
            tool=tool.name,
            retries=tool.retries,
            takes_state=tool.takes_state,
            timeout=timeout,
        )

        attempt = 0
        while True:
            ctx = state.to_run_context(attempt)
            metadata = {"tool_name": tool.name, "attempt": attempt + 1, "max_attempts": max_attempts}
            self.events.emit(("tool", "execute", "start"), {"system_time": time.time()}, metadata)
            started = time.monotonic()

            with tool_span("tool.execute", tool_name=tool.name, attempt=attempt + 1):
                try:
                    raw = await self._invoke(tool, arguments, ctx, timeout)
                except Exception as exc:
                    duration = time.monotonic() - started
                    will_retry = attempt < tool.retries
                    self.events.emit(
                        ("tool", "execute", "exception"),
                        {"duration": duration},
                        {**metadata, "will_retry": will_retry, "kind": type(exc).__name__, "reason": exc},
                    )
                    if will_retry:
                        LOGGER.warning(
                            "tool.execute_retry",
                            tool=tool.name,
                            attempt=attempt + 1,
                            max_attempts=max_attempts,
                            error=str(exc),
                            duration_ms=round(duration * 1000, 2),
                        )
                        attempt += 1
                        continue

                    LOGGER.error(
                        "tool.execute_failed",
                        tool=tool.name,
                        attempts=attempt + 1,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    error = ToolError(tool.name, attempt=attempt + 1, cause=exc)
                    return ToolResult.failure(tool.name, error)

            duration = time.monotonic() - started
            self.events.emit(
                ("tool", "execute", "stop"),
                {"duration": duration},
                {**metadata, "success": True},
            )
            if attempt > 0:
                LOGGER.info("tool.execute_recovered", tool=tool.name, attempt=attempt + 1)
            LOGGER.debug("tool.execute_end", tool=tool.name, duration_ms=round(duration * 1000, 2))

            data, update = _split_result(raw)
            return ToolResult.from_data(tool.name, data, deps_update=update)

    async def _invoke(
        self,
        tool: Tool,
        arguments: Mapping[str, Any],
        ctx: RunContext,
        timeout: float | None,
    ) -> Any:
        args = dict(arguments)
        call_args = (ctx, args) if tool.takes_state else (args,)

        if inspect.iscoroutinefunction(tool.function):
            pending = tool.function(*call_args)
        elif timeout is not None:
            pending = asyncio.to_thread(tool.function, *call_args)
        else:
            result = tool.function(*call_args)
            return await result if inspect.isawaitable(result) else result

        if timeout is None:
            return await pending
        try:
            return await asyncio.wait_for(pending, timeout)
        except asyncio.TimeoutError as exc:
            raise ToolTimeout(tool.name, timeout) from exc
