"""Agent run loop: model dispatch, tool calls, approval and output validation."""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from agent_runtime.agent import plugins
from agent_runtime.agent.agent import Agent
from agent_runtime.agent.approval import REJECTED_TOOL_RESULT, ApprovalGate, Edit, Reject
from agent_runtime.agent.dispatcher import ModelDispatcher, StreamEvent, TextDelta, ThinkingDelta
from agent_runtime.agent.errors import (
    AgentError,
    ConfigurationError,
    ExecutionCancelled,
    MaxIterationsExceeded,
    ModelError,
    ValidationError,
)
from agent_runtime.agent.state import CallbackFn, CancellationCheck, RunState, patch_dangling_tool_calls
from agent_runtime.agent.types import Message, RunResult, ToolCall, Usage
from agent_runtime.infra.events import EventBus
from agent_runtime.infra.tracing import model_span
from agent_runtime.output.contracts import SCHEMA_CONTRACTS, OutputContract, PlainText
from agent_runtime.output.schema import (
    STRUCTURED_OUTPUT_ACCEPTED,
    STRUCTURED_OUTPUT_TOOL,
    SYNTHETIC_TOOL_CHOICE_KEY,
    SYNTHETIC_TOOL_KEY,
    build_retry_message,
    extract_payload,
    find_structured_call,
    parse_and_validate,
    resolve_mode,
    system_prompt_suffix,
    to_provider_settings,
)
from agent_runtime.tools.base import clean_tool_name
from agent_runtime.tools.executor import ToolExecutor
from agent_runtime.tools.registry import ToolRegistry

LOGGER = structlog.get_logger(__name__)


async def _emit_callback(state: RunState, event: str, payload: Any) -> None:
    callback = state.callbacks.get(event)
    if callback is not None:
        result = callback(event, payload)
        if inspect.isawaitable(result):
            await result
    if state.notify is not None:
        try:
            state.notify.put_nowait((event, payload))
        except asyncio.QueueFull:
            LOGGER.warning("agent.notify_queue_full", callback=event)


async def _check_cancelled(state: RunState, point: str) -> None:
    if state.cancellation_check is None:
        return
    signal = state.cancellation_check()
    if inspect.isawaitable(signal):
        signal = await signal
    if signal:
        reason = signal if isinstance(signal, str) else None
        LOGGER.info("agent.run_cancelled", point=point, reason=reason, iteration=state.iteration)
        raise ExecutionCancelled(reason)


def _with_system_prompt(messages: list[Message], parts: list[str]) -> list[Message]:
    if not parts:
        return messages
    prompt = "\n\n".join(parts)
    if messages and messages[0].role == "system":
        head = messages[0]
        content = f"{head.content}\n\n{prompt}" if head.content else prompt
        return [dataclasses.replace(head, content=content), *messages[1:]]
    return [Message.system(prompt), *messages]


@dataclass(slots=True)
class _RunFrame:
    """Latest state of a run; plugin hooks may replace it."""

    state: RunState


@dataclass(slots=True)
class AgentRunner:
    """Run an agent until it produces a final answer or fails with a typed error."""

    dispatcher: ModelDispatcher
    executor: ToolExecutor = field(default_factory=ToolExecutor)

    @property
    def events(self) -> EventBus:
        return self.executor.events

    async def run(
        self,
        agent: Agent,
        prompt: str | None = None,
        *,
        messages: Sequence[Message] | None = None,
        message_history: Sequence[Message] | None = None,
        state: RunState | None = None,
        deps: Mapping[str, Any] | None = None,
        max_iterations: int | None = None,
        cancellation_check: CancellationCheck | None = None,
        callbacks: Mapping[str, CallbackFn] | None = None,
        notify: asyncio.Queue | None = None,
        model_settings: Mapping[str, Any] | None = None,
    ) -> RunResult:
        """Run ``agent`` on a prompt, an explicit message list, or a prior state.

        Never raises: failures are returned as ``RunResult.error``.
        """

        if state is None:
            state = RunState(
                system_prompt=agent.instructions,
                deps={**agent.deps, **(deps or {})},
                max_iterations=max_iterations or agent.max_iterations,
                agent_name=agent.name,
            )
            state.add_messages(list(message_history or []))
            state.add_messages(list(messages or []))
        else:
            if deps:
                state.merge_deps(deps)
            if max_iterations:
                state.max_iterations = max_iterations
        patch_dangling_tool_calls(state)
        if prompt is not None:
            state.add_message(Message.user(prompt))

        self._attach_handles(state, cancellation_check, callbacks, notify)
        return await self._execute(agent, state, model_settings)

    async def run_with_state(
        self,
        agent: Agent,
        state: RunState,
        *,
        cancellation_check: CancellationCheck | None = None,
        callbacks: Mapping[str, CallbackFn] | None = None,
        notify: asyncio.Queue | None = None,
        model_settings: Mapping[str, Any] | None = None,
    ) -> RunResult:
        """Resume a (possibly restored) state after repairing dangling tool calls."""

        patch_dangling_tool_calls(state)
        state.needs_response = True
        self._attach_handles(state, cancellation_check, callbacks, notify)
        return await self._execute(agent, state, model_settings)

    async def run_stream(
        self,
        agent: Agent,
        prompt: str,
        *,
        message_history: Sequence[Message] | None = None,
        deps: Mapping[str, Any] | None = None,
        callbacks: Mapping[str, CallbackFn] | None = None,
        notify: asyncio.Queue | None = None,
        model_settings: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a single model request as normalized events; tools are not executed."""

        state = RunState(
            system_prompt=agent.instructions,
            deps={**agent.deps, **(deps or {})},
            max_iterations=agent.max_iterations,
            agent_name=agent.name,
        )
        state.add_messages(list(message_history or []))
        state.add_message(Message.user(prompt))
        self._attach_handles(state, None, callbacks, notify)

        state = await plugins.run_init(agent.plugins, agent, state)
        state, registry, request_messages, settings = await self._prepare_request(agent, state, model_settings)
        LOGGER.info("agent.stream_start", agent=agent.name, model=str(agent.model), tools=len(registry))

        async for event in self.dispatcher.stream(agent.model, request_messages, settings):
            if isinstance(event, (TextDelta, ThinkingDelta)):
                await _emit_callback(state, "on_llm_new_delta", event)
            yield event

    @staticmethod
    def _attach_handles(
        state: RunState,
        cancellation_check: CancellationCheck | None,
        callbacks: Mapping[str, CallbackFn] | None,
        notify: asyncio.Queue | None,
    ) -> None:
        if cancellation_check is not None:
            state.cancellation_check = cancellation_check
        if callbacks:
            state.callbacks.update(callbacks)
        if notify is not None:
            state.notify = notify

    async def _execute(
        self,
        agent: Agent,
        state: RunState,
        model_settings: Mapping[str, Any] | None,
    ) -> RunResult:
        metadata = {"agent_name": agent.name, "model": str(agent.model)}
        started = time.monotonic()
        self.events.emit(("agent", "run", "start"), {"system_time": time.time()}, metadata)
        LOGGER.info(
            "agent.run_start",
            agent=agent.name,
            model=str(agent.model),
            messages=len(state.messages),
            max_iterations=state.max_iterations,
        )

        frame = _RunFrame(state)
        error: AgentError | None = None
        output: Any = None
        try:
            await _emit_callback(state, "on_agent_start", {"agent_name": agent.name})
            output = await self._loop(agent, frame, model_settings)
        except AgentError as exc:
            error = exc
        except Exception as exc:
            LOGGER.exception("agent.run_crashed", agent=agent.name, error=str(exc))
            error = AgentError(f"Unexpected error: {exc}")
            error.__cause__ = exc

        duration = time.monotonic() - started
        state = frame.state
        if error is not None:
            self.events.emit(
                ("agent", "run", "exception"),
                {"duration": duration},
                {**metadata, "kind": type(error).__name__, "reason": error.message},
            )
            log = LOGGER.info if isinstance(error, ExecutionCancelled) else LOGGER.error
            log(
                "agent.run_failed",
                agent=agent.name,
                error=error.message,
                error_type=type(error).__name__,
                iterations=state.iteration,
            )
            await self._emit_guarded(state, "on_error", error)
            return RunResult(output=None, usage=state.usage, state=state, error=error)

        self.events.emit(
            ("agent", "run", "stop"),
            {"duration": duration, "requests": state.usage.requests, "tool_calls": state.usage.tool_calls},
            metadata,
        )
        LOGGER.info(
            "agent.run_complete",
            agent=agent.name,
            iterations=state.iteration,
            requests=state.usage.requests,
            tool_calls=state.usage.tool_calls,
            duration_ms=round(duration * 1000, 2),
        )
        await self._emit_guarded(state, "on_agent_complete", {"output": output, "usage": state.usage})
        return RunResult(output=output, usage=state.usage, state=state)

    async def _emit_guarded(self, state: RunState, event: str, payload: Any) -> None:
        try:
            await _emit_callback(state, event, payload)
        except Exception:
            LOGGER.exception("agent.callback_failed", callback=event)

    async def _loop(
        self,
        agent: Agent,
        frame: _RunFrame,
        model_settings: Mapping[str, Any] | None,
    ) -> Any:
        state = frame.state = await plugins.run_init(agent.plugins, agent, frame.state)
        if not state.messages:
            raise ConfigurationError("A prompt, messages or message history is required")

        contract = agent.output
        mode = _delivery_mode(agent, contract)
        output_retries = 0

        while True:
            await _check_cancelled(state, "before_dispatch")
            state, registry, request_messages, settings = await self._prepare_request(
                agent, state, model_settings
            )
            frame.state = state
            LOGGER.debug("agent.iteration", iteration=state.iteration, tools=registry.names())

            response = await self._dispatch(agent, request_messages, settings, state)
            state.add_usage(response.usage + Usage(requests=1))
            state.add_message(response)
            await _emit_callback(state, "on_llm_new_message", response)
            await _check_cancelled(state, "after_dispatch")
            state = frame.state = await plugins.run_after_response(agent.plugins, agent, response, state)

            structured_call = find_structured_call(response) if mode == "tool_call" else None
            calls = [call for call in response.tool_calls if call.name != STRUCTURED_OUTPUT_TOOL]
            if calls and structured_call is None:
                for call in calls:
                    await _check_cancelled(state, "before_tool")
                    await self._handle_tool_call(state, registry, call)
                state.increment_iteration()
                if state.iteration > state.max_iterations:
                    raise MaxIterationsExceeded(state.max_iterations)
                continue

            if isinstance(contract, PlainText):
                return response.content or ""

            try:
                output = parse_and_validate(extract_payload(response, mode), contract)
            except ValidationError as exc:
                if output_retries >= agent.structured_output.max_retries:
                    raise
                output_retries += 1
                LOGGER.warning(
                    "agent.output_retry",
                    agent=agent.name,
                    attempt=output_retries,
                    max_retries=agent.structured_output.max_retries,
                    errors=len(exc.errors),
                )
                correction = build_retry_message(exc)
                if structured_call is not None:
                    state.add_message(Message.tool(structured_call.id, correction, name=STRUCTURED_OUTPUT_TOOL))
                    patch_dangling_tool_calls(state)
                else:
                    state.add_message(Message.user(correction))
                continue

            if structured_call is not None:
                # History must not end with unanswered tool calls.
                state.add_message(
                    Message.tool(structured_call.id, STRUCTURED_OUTPUT_ACCEPTED, name=STRUCTURED_OUTPUT_TOOL)
                )
                patch_dangling_tool_calls(state)
            return output

    async def _prepare_request(
        self,
        agent: Agent,
        state: RunState,
        model_settings: Mapping[str, Any] | None,
    ) -> tuple[RunState, ToolRegistry, list[Message], dict[str, Any]]:
        tools = [*agent.tools, *await plugins.collect_tools(agent.plugins, agent, state)]
        state, tools = await plugins.run_before_request(agent.plugins, agent, state, tools)
        registry = ToolRegistry.of(tools)

        contract = agent.output
        mode = _delivery_mode(agent, contract)
        parts = [
            part
            for part in (
                state.system_prompt,
                await plugins.collect_system_prompts(agent.plugins, agent, state),
                system_prompt_suffix(contract, mode or "auto", agent.backend),
            )
            if part
        ]
        request_messages = _with_system_prompt(list(state.messages), parts)

        settings: dict[str, Any] = {**agent.model_settings, **(model_settings or {})}
        schemas = registry.schemas()
        provider_settings = to_provider_settings(
            contract, agent.backend, mode or "auto", has_other_tools=bool(schemas)
        )
        synthetic_tool = provider_settings.pop(SYNTHETIC_TOOL_KEY, None)
        synthetic_choice = provider_settings.pop(SYNTHETIC_TOOL_CHOICE_KEY, None)
        settings.update(provider_settings)
        if synthetic_tool is not None:
            schemas.append(synthetic_tool)
            settings["tool_choice"] = synthetic_choice
        if schemas:
            settings["tools"] = schemas
            settings.setdefault("tool_choice", "auto")
        return state, registry, request_messages, settings

    async def _dispatch(
        self,
        agent: Agent,
        messages: list[Message],
        settings: dict[str, Any],
        state: RunState,
    ) -> Message:
        with model_span("model.request", model=str(agent.model), iteration=state.iteration):
            try:
                response = await self.dispatcher.dispatch(agent.model, messages, settings)
            except ModelError:
                raise
            except Exception as exc:
                raise ModelError(str(exc), backend=agent.backend) from exc
        if response.role != "assistant":
            raise ModelError(f"Dispatcher returned a {response.role} message", backend=agent.backend)
        return response

    async def _handle_tool_call(self, state: RunState, registry: ToolRegistry, call: ToolCall) -> None:
        await _emit_callback(state, "on_tool_call", call)
        tool = registry.get(call.name)
        if tool is None:
            name = clean_tool_name(call.name)
            LOGGER.warning("agent.tool_not_found", tool=name, available=registry.names())
            message = Message.tool(call.id, f"Tool not found: {name}", name=name)
            state.add_message(message)
            await _emit_callback(state, "on_tool_response", message)
            return

        arguments = call.arguments
        if tool.requires_approval:
            decision = await ApprovalGate.from_state(state).resolve(call, tool)
            if isinstance(decision, Reject):
                state.add_usage(Usage(tool_calls=1))
                message = Message.tool(call.id, REJECTED_TOOL_RESULT, name=tool.name)
                state.add_message(message)
                await _emit_callback(state, "on_tool_response", message)
                return
            if isinstance(decision, Edit):
                arguments = decision.arguments

        result = await self.executor.execute(tool, arguments, state)
        if result.deps_update:
            state.deps = result.deps_update.apply(state.deps)
        state.add_tool_call(ToolCall(id=call.id, name=tool.name, arguments=dict(arguments)))
        state.add_usage(Usage(tool_calls=1))
        message = Message.tool(call.id, result.content, name=tool.name)
        state.add_message(message)
        await _emit_callback(state, "on_tool_response", message)


def _delivery_mode(agent: Agent, contract: OutputContract) -> str | None:
    if not isinstance(contract, SCHEMA_CONTRACTS):
        return None
    return resolve_mode(agent.structured_output.mode, agent.backend)


async def fan_out(
    runner: AgentRunner,
    agents: Sequence[Agent],
    prompt: str,
    **options: Any,
) -> list[RunResult]:
    """Run several agents concurrently on the same prompt, one state each.

    A failing run yields an error result in its slot; siblings keep running.
    """

    results = await asyncio.gather(
        *(runner.run(agent, prompt, **options) for agent in agents),
        return_exceptions=True,
    )
    collected: list[RunResult] = []
    for agent, result in zip(agents, results, strict=True):
        if isinstance(result, BaseException):
            LOGGER.error("agent.fan_out_failed", agent=agent.name, error=str(result))
            error = result if isinstance(result, AgentError) else AgentError(f"Unexpected error: {result}")
            result = RunResult(output=None, usage=Usage(), state=RunState(agent_name=agent.name), error=error)
        collected.append(result)
    return collected
