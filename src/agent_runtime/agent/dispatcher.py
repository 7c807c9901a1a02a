"""Model dispatcher interface and the LiteLLM-backed implementation."""

from __future__ import annotations

import json
import math
import re
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

import litellm
import structlog

from agent_runtime.agent.errors import ModelError
from agent_runtime.agent.types import Message, ModelRef, ToolCall, Usage, utc_now_iso

LOGGER = structlog.get_logger(__name__)

# Engine-specific request fields that travel in the OpenAI-compatible body extension.
GUIDED_FIELDS = frozenset(
    {"guided_json", "guided_regex", "guided_grammar", "guided_choice", "regex", "json_schema"}
)

_PROVIDER_PREFIXES = {"vllm": "hosted_vllm", "sglang": "openai", "lmstudio": "lm_studio"}


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    """Partial tool call: ``index`` plus whichever of id/name/argument fragment arrived."""

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True, slots=True)
class Finish:
    reason: str


@dataclass(frozen=True, slots=True)
class StreamError:
    message: str


@dataclass(frozen=True, slots=True)
class Unknown:
    raw: Any = field(default=None)


StreamEvent = Union[TextDelta, ThinkingDelta, ToolCallDelta, Finish, StreamError, Unknown]


class ModelDispatcher(Protocol):
    async def dispatch(
        self,
        model: ModelRef,
        messages: Sequence[Message],
        settings: Mapping[str, Any],
    ) -> Message:
        """Return the assistant message or raise :class:`ModelError`."""

    def stream(
        self,
        model: ModelRef,
        messages: Sequence[Message],
        settings: Mapping[str, Any],
    ) -> AsyncIterator[StreamEvent]:
        """Yield normalized stream events; failures arrive as :class:`StreamError`."""


def _get_attr(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _parse_tool_calls(tool_calls: Iterable[Any]) -> list[ToolCall]:
    parsed: list[ToolCall] = []
    for idx, raw_call in enumerate(tool_calls):
        call_id = _get_attr(raw_call, "id", None) or f"call_{idx}"
        function = _get_attr(raw_call, "function", None)
        if function is None:
            name = _get_attr(raw_call, "name", "")
            arguments = _get_attr(raw_call, "arguments", "")
        else:
            name = _get_attr(function, "name", "")
            arguments = _get_attr(function, "arguments", "")
        arguments_raw = arguments if isinstance(arguments, str) else None
        if isinstance(arguments, str):
            try:
                arguments_obj = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                LOGGER.warning("llm.tool_arguments_invalid", tool=name, arguments=arguments[:200])
                arguments_obj = {}
        elif isinstance(arguments, dict):
            arguments_obj = arguments
        else:
            arguments_obj = {}
        if not isinstance(arguments_obj, dict):
            arguments_obj = {}
        parsed.append(
            ToolCall(
                id=str(call_id),
                name=str(name or ""),
                arguments=arguments_obj,
                arguments_raw=arguments_raw,
            )
        )
    return parsed


def _coerce_text_chunks(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, dict):
        text = value.get("text")
        if isinstance(text, dict):
            text = text.get("value") or text.get("text")
        if text:
            return [str(text)]
        content = value.get("content")
        if content:
            return _coerce_text_chunks(content)
        return []
    if isinstance(value, list):
        chunks: list[str] = []
        for item in value:
            chunks.extend(_coerce_text_chunks(item))
        return chunks
    if hasattr(value, "text"):
        text = value.text
        return [str(text)] if text else []
    return []


def _usage_from_response(raw_usage: Any) -> Usage:
    if raw_usage is None:
        return Usage()
    details = _get_attr(raw_usage, "prompt_tokens_details", None)
    return Usage.from_mapping(
        {
            "input_tokens": _get_attr(raw_usage, "prompt_tokens", 0) or 0,
            "output_tokens": _get_attr(raw_usage, "completion_tokens", 0) or 0,
            "total_tokens": _get_attr(raw_usage, "total_tokens", 0) or 0,
            "cache_read_tokens": (_get_attr(details, "cached_tokens", 0) or 0) if details else 0,
            "cache_write_tokens": _get_attr(raw_usage, "cache_creation_input_tokens", 0) or 0,
        }
    )


def _normalize_response(response: Any, model: ModelRef) -> Message:
    choices = _get_attr(response, "choices", []) or []
    message = _get_attr(choices[0], "message", {}) if choices else {}
    finish_reason = _get_attr(choices[0], "finish_reason", None) if choices else None

    text = "".join(_coerce_text_chunks(_get_attr(message, "content", None)))
    tool_calls = _parse_tool_calls(_get_attr(message, "tool_calls", None) or [])
    thinking = _get_attr(message, "reasoning_content", None)
    usage = _usage_from_response(_get_attr(response, "usage", None))

    metadata: dict[str, Any] = {
        "usage": usage.to_dict(),
        "model": _get_attr(response, "model", None) or str(model),
        "timestamp": utc_now_iso(),
        "finish_reason": finish_reason,
    }
    if thinking:
        metadata["thinking"] = thinking
    if not text and not tool_calls:
        LOGGER.debug("llm.empty_response", model=str(model), finish_reason=finish_reason)
    return Message.assistant(text or None, tool_calls=tool_calls, metadata=metadata)


def _extract_retry_after_seconds(message: str) -> int | None:
    match = re.search(r'"retryDelay"\s*:\s*"([0-9.]+)s"', message) or re.search(
        r"retry after ([0-9.]+) ?s", message, re.IGNORECASE
    )
    if not match:
        return None
    try:
        return int(math.ceil(float(match.group(1))))
    except ValueError:
        return None


def _model_error(exc: Exception, model: ModelRef) -> ModelError:
    details: dict[str, Any] = {"kind": type(exc).__name__}
    status_code = getattr(exc, "status_code", None)
    if isinstance(exc, litellm.RateLimitError):
        status_code = 429
        details["retry_after"] = _extract_retry_after_seconds(str(exc))
    if status_code is not None:
        details["status_code"] = status_code
    return ModelError(str(exc) or "Model request failed", backend=model.provider, details=details)


@dataclass(slots=True)
class LiteLLMDispatcher:
    """Chat-completions dispatcher over ``litellm.acompletion``."""

    timeout_seconds: float = 30
    api_base: str | None = None
    api_key: str | None = None

    def model_name(self, model: ModelRef) -> str:
        return f"{_PROVIDER_PREFIXES.get(model.provider, model.provider)}/{model.name}"

    def build_payload(
        self,
        model: ModelRef,
        messages: Sequence[Message],
        settings: Mapping[str, Any],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model_name(model),
            "messages": [message.to_openai() for message in messages],
            "timeout": self.timeout_seconds,
        }
        extra_body: dict[str, Any] = dict(settings.get("extra_body") or {})
        for key, value in settings.items():
            if key == "extra_body":
                continue
            if key in GUIDED_FIELDS:
                extra_body[key] = value
            else:
                payload[key] = value
        if extra_body:
            payload["extra_body"] = extra_body
        api_base = model.base_url or self.api_base
        if api_base:
            payload["api_base"] = api_base
        if self.api_key:
            payload["api_key"] = self.api_key
        return payload

    async def dispatch(
        self,
        model: ModelRef,
        messages: Sequence[Message],
        settings: Mapping[str, Any],
    ) -> Message:
        payload = self.build_payload(model, messages, settings)
        LOGGER.debug(
            "llm.request",
            model=payload["model"],
            messages=len(payload["messages"]),
            tools=len(payload.get("tools") or []),
        )
        try:
            response = await litellm.acompletion(**payload)
        except Exception as exc:
            LOGGER.error("llm.request_failed", model=payload["model"], error=str(exc))
            raise _model_error(exc, model) from exc
        return _normalize_response(response, model)

    async def stream(
        self,
        model: ModelRef,
        messages: Sequence[Message],
        settings: Mapping[str, Any],
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(model, messages, settings)
        payload["stream"] = True
        try:
            response = await litellm.acompletion(**payload)
            async for chunk in response:
                for event in normalize_chunk(chunk):
                    yield event
        except Exception as exc:
            LOGGER.error("llm.stream_failed", model=payload["model"], error=str(exc))
            yield StreamError(str(exc) or type(exc).__name__)


def normalize_chunk(chunk: Any) -> list[StreamEvent]:
    """Reduce one chat-completions stream chunk to normalized events."""

    choices = _get_attr(chunk, "choices", None) or []
    if not choices:
        return [Unknown(chunk)]

    choice = choices[0]
    delta = _get_attr(choice, "delta", None) or {}
    events: list[StreamEvent] = []

    thinking = _get_attr(delta, "reasoning_content", None)
    if thinking:
        events.append(ThinkingDelta(str(thinking)))
    content = _get_attr(delta, "content", None)
    if content:
        events.append(TextDelta(str(content)))
    for raw_call in _get_attr(delta, "tool_calls", None) or []:
        function = _get_attr(raw_call, "function", None) or {}
        events.append(
            ToolCallDelta(
                index=_get_attr(raw_call, "index", 0) or 0,
                id=_get_attr(raw_call, "id", None),
                name=_get_attr(function, "name", None),
                arguments=_get_attr(function, "arguments", None) or "",
            )
        )
    finish_reason = _get_attr(choice, "finish_reason", None)
    if finish_reason:
        events.append(Finish(str(finish_reason)))
    return events or [Unknown(chunk)]
