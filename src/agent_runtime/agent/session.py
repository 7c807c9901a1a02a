"""Long-lived per-session actor hosting one conversation."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any

import structlog

from agent_runtime.agent.agent import Agent
from agent_runtime.agent.errors import ExecutionCancelled
from agent_runtime.agent.runner import AgentRunner
from agent_runtime.agent.state import RunState
from agent_runtime.agent.types import Message, RunResult

LOGGER = structlog.get_logger(__name__)


@dataclass(slots=True)
class _RunHandle:
    reply: asyncio.Future
    cancelled: bool = False
    task: asyncio.Task | None = None
    state: RunState | None = None


@dataclass(slots=True)
class _Inbound:
    text: str
    reply: asyncio.Future


@dataclass(slots=True)
class SessionActor:
    """Serialize inbound messages for one session through a mailbox.

    Every inbound message replaces the in-flight run (last write wins): the old
    run is flagged cancelled, its task cancelled and awaited, and a new run
    starts on the accumulated history. Subscribers receive
    ``("thinking" | "response" | "cancelled" | "error", payload)`` tuples.
    """

    runner: AgentRunner
    agent: Agent
    session_id: str
    deps: dict[str, Any] = field(default_factory=dict)
    _mailbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    _history: list[Message] = field(default_factory=list)
    _current: _RunHandle | None = None
    _subscribers: list[asyncio.Queue] = field(default_factory=list)
    _loop_task: asyncio.Task | None = None

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._drain(), name=f"session-{self.session_id}")
            LOGGER.info("session.started", session_id=self.session_id, agent=self.agent.name)

    async def send_message(self, text: str) -> asyncio.Future:
        """Enqueue ``text``; the returned future resolves to its ``RunResult``."""

        self.start()
        reply = asyncio.get_running_loop().create_future()
        await self._mailbox.put(_Inbound(text=text, reply=reply))
        return reply

    async def ask(self, text: str) -> RunResult:
        return await (await self.send_message(text))

    async def cancel(self) -> bool:
        """Stop the in-flight run, if any."""

        return await self._stop_current("cancel requested")

    def history(self) -> list[Message]:
        return list(self._history)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def close(self) -> None:
        await self._stop_current("session closed")
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        LOGGER.info("session.closed", session_id=self.session_id)

    async def _drain(self) -> None:
        while True:
            inbound = await self._mailbox.get()
            await self._replace_task(inbound)

    async def _replace_task(self, inbound: _Inbound) -> None:
        await self._stop_current("replaced by a newer message")
        self._history.append(Message.user(inbound.text))
        handle = _RunHandle(reply=inbound.reply)
        handle.task = asyncio.create_task(self._run(handle))
        self._current = handle
        LOGGER.debug("session.run_started", session_id=self.session_id, messages=len(self._history))

    async def _stop_current(self, reason: str) -> bool:
        handle = self._current
        self._current = None
        if handle is None or handle.task is None or handle.task.done():
            return False
        handle.cancelled = True
        handle.task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await handle.task
        if not handle.reply.done():
            handle.reply.set_result(self._cancelled_result(handle, reason))
        LOGGER.info("session.run_cancelled", session_id=self.session_id, reason=reason)
        self._broadcast("cancelled", {"reason": reason})
        return True

    async def _run(self, handle: _RunHandle) -> None:
        self._broadcast("thinking", {"messages": len(self._history)})
        handle.state = RunState(
            system_prompt=self.agent.instructions,
            deps={**self.agent.deps, **self.deps},
            max_iterations=self.agent.max_iterations,
            agent_name=self.agent.name,
        )
        handle.state.add_messages(list(self._history))
        result = await self.runner.run(
            self.agent,
            state=handle.state,
            cancellation_check=lambda: handle.cancelled,
        )
        if result.ok:
            self._history = result.all_messages
            self._broadcast("response", {"output": result.output, "usage": result.usage.to_dict()})
        elif isinstance(result.error, ExecutionCancelled):
            self._broadcast("cancelled", {"reason": result.error.reason})
        else:
            self._broadcast("error", {"error": result.error.message, "kind": type(result.error).__name__})
        if not handle.reply.done():
            handle.reply.set_result(result)

    def _cancelled_result(self, handle: _RunHandle, reason: str) -> RunResult:
        state = handle.state or RunState(messages=list(self._history), agent_name=self.agent.name)
        return RunResult(output=None, usage=state.usage, state=state, error=ExecutionCancelled(reason))

    def _broadcast(self, kind: str, payload: dict[str, Any]) -> None:
        for queue in self._subscribers:
            queue.put_nowait((kind, payload))
