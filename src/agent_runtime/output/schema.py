"""Structured output: schema derivation, provider settings and validation."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

import pydantic
import structlog

from agent_runtime.agent.errors import FieldError, ValidationError
from agent_runtime.agent.types import Message, ToolCall
from agent_runtime.output.contracts import (
    Choice,
    FlatFieldMap,
    Grammar,
    OutputContract,
    PlainText,
    RawJsonSchema,
    Regex,
    TypedSchema,
)

LOGGER = structlog.get_logger(__name__)

STRUCTURED_OUTPUT_TOOL = "__structured_output__"
STRUCTURED_OUTPUT_ACCEPTED = "Structured output accepted."
MD_JSON_STOP = "\n```"

MODES = ("auto", "json_schema", "tool_call", "json", "md_json")

# Request keys that the run loop folds into ``tools``/``tool_choice``.
SYNTHETIC_TOOL_KEY = "structured_output_tool"
SYNTHETIC_TOOL_CHOICE_KEY = "structured_output_tool_choice"

_TOOL_CALL_BACKENDS = frozenset({"anthropic"})
_WRAPPING_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\n(.*?)(?:\n```)?\s*", re.DOTALL)
_EMBEDDED_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)(?:\n?```|$)", re.DOTALL)
_SCHEMA_LIST_KEYS = ("anyOf", "allOf", "oneOf", "prefixItems")
_SCHEMA_KEYS = ("items", "not", "additionalProperties")


def _normalize(node: Any, *, require_all: bool) -> Any:
    if not isinstance(node, Mapping):
        return node
    result: dict[str, Any] = {}
    for key, value in node.items():
        if key == "title":
            continue
        if key in ("properties", "$defs"):
            result[key] = {name: _normalize(sub, require_all=require_all) for name, sub in value.items()}
        elif key in _SCHEMA_LIST_KEYS:
            result[key] = [_normalize(sub, require_all=require_all) for sub in value]
        elif key in _SCHEMA_KEYS:
            result[key] = _normalize(value, require_all=require_all)
        else:
            result[key] = value

    if "properties" in result:
        result.setdefault("type", "object")
        if require_all:
            result["required"] = list(result["properties"])
        else:
            result.setdefault("required", [])
        result["additionalProperties"] = False
    return result


def to_json_schema(contract: OutputContract) -> dict[str, Any] | None:
    """Derive a draft JSON schema for schema contracts.

    Titles are dropped, every object is closed with
    ``additionalProperties: false`` and nested models live under ``$defs``.
    Returns ``None`` for plain text and for the choice/regex/grammar
    constraints.
    """

    if isinstance(contract, TypedSchema):
        return _normalize(contract.model.model_json_schema(), require_all=False)
    if isinstance(contract, FlatFieldMap):
        return _normalize(contract.model().model_json_schema(), require_all=True)
    if isinstance(contract, RawJsonSchema):
        return dict(contract.schema)
    return None


def resolve_mode(mode: str, backend: str) -> str:
    if mode not in MODES:
        raise ValueError(f"Unknown structured output mode: {mode!r}")
    if mode != "auto":
        return mode
    return "tool_call" if backend in _TOOL_CALL_BACKENDS else "json_schema"


def _contract_name(contract: OutputContract) -> str:
    return getattr(contract, "name", "output")


def _guided_settings(contract: OutputContract, backend: str) -> dict[str, Any]:
    if backend == "vllm":
        if isinstance(contract, Choice):
            return {"guided_choice": list(contract.values)}
        if isinstance(contract, Regex):
            return {"guided_regex": contract.pattern}
        if isinstance(contract, Grammar):
            return {"guided_grammar": contract.text}
    if backend == "sglang" and isinstance(contract, Regex):
        return {"regex": contract.pattern}
    return {}


def to_provider_settings(
    contract: OutputContract,
    backend: str,
    mode: str = "auto",
    *,
    has_other_tools: bool = False,
) -> dict[str, Any]:
    """Request fragments asking ``backend`` for output matching ``contract``.

    The synthetic tool for ``tool_call`` mode is returned under
    :data:`SYNTHETIC_TOOL_KEY`; it is forced only when the model has no other
    tools to call.
    """

    schema = to_json_schema(contract)
    if schema is None:
        return _guided_settings(contract, backend)

    resolved = resolve_mode(mode, backend)
    name = _contract_name(contract)

    if resolved == "json_schema":
        settings: dict[str, Any] = {
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": name, "schema": schema, "strict": True},
            }
        }
        if backend == "vllm":
            settings["guided_json"] = schema
        elif backend == "sglang":
            settings["json_schema"] = json.dumps(schema)
        return settings

    if resolved == "tool_call":
        description = schema.get("description") or f"Return the final {name} as structured data."
        tool = {
            "type": "function",
            "function": {"name": STRUCTURED_OUTPUT_TOOL, "description": description, "parameters": schema},
        }
        choice: Any = (
            "auto" if has_other_tools else {"type": "function", "function": {"name": STRUCTURED_OUTPUT_TOOL}}
        )
        return {SYNTHETIC_TOOL_KEY: tool, SYNTHETIC_TOOL_CHOICE_KEY: choice}

    if resolved == "json":
        return {"response_format": {"type": "json_object"}}

    return {"stop": [MD_JSON_STOP]}


def find_structured_call(response: Message) -> ToolCall | None:
    for call in response.tool_calls:
        if call.name == STRUCTURED_OUTPUT_TOOL:
            return call
    return None


def extract_payload(response: Message, mode: str | None = None) -> str:
    """Text holding the structured value: synthetic call arguments or content."""

    if mode in (None, "tool_call"):
        call = find_structured_call(response)
        if call is not None:
            return call.arguments_raw or json.dumps(dict(call.arguments))
    return response.content or ""


def _strip_fences(text: str) -> str:
    match = _WRAPPING_FENCE_RE.fullmatch(text) or _EMBEDDED_FENCE_RE.search(text)
    return match.group(1).strip() if match else text


def _decode_json(text: str, contract: OutputContract) -> Any:
    # Bare JSON first: fences inside string values must survive.
    text = text.strip()
    candidates = [text]
    unfenced = _strip_fences(text)
    if unfenced != text:
        candidates.append(unfenced)

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            error = exc
    raise ValidationError(
        f"Failed to parse JSON: {error.msg}",
        errors=[FieldError("json", f"parse error: {error.msg} at position {error.pos}")],
        contract=contract,
    ) from error


def _field_errors(exc: pydantic.ValidationError) -> list[FieldError]:
    return [
        FieldError(".".join(str(part) for part in error["loc"]) or "output", error["msg"])
        for error in exc.errors()
    ]


def _run_validator(contract: TypedSchema | FlatFieldMap, value: Any) -> None:
    if contract.validator is None:
        return
    errors = list(contract.validator(value) or [])
    if errors:
        raise ValidationError(errors=errors, contract=contract)


def parse_and_validate(text: str, contract: OutputContract) -> Any:
    """Validate a raw model answer against ``contract``.

    Returns the model instance for a :class:`TypedSchema`, a plain ``dict`` for
    flat field maps and the decoded JSON for raw schemas. Raises
    :class:`~agent_runtime.agent.errors.ValidationError` otherwise.
    """

    if isinstance(contract, (PlainText, Grammar)):
        return text

    if isinstance(contract, Choice):
        value = text.strip()
        if value in contract.values:
            return value
        allowed = ", ".join(contract.values)
        raise ValidationError(
            f"Expected one of: {allowed}",
            errors=[FieldError("output", f"expected one of: {allowed}, got: {value!r}")],
            contract=contract,
        )

    if isinstance(contract, Regex):
        try:
            matched = re.fullmatch(contract.pattern, text)
        except re.error as exc:
            raise ValidationError(f"Invalid regex pattern: {exc}", contract=contract) from exc
        if matched is None:
            raise ValidationError(
                "Output does not match pattern",
                errors=[FieldError("output", f"does not match pattern {contract.pattern}")],
                contract=contract,
            )
        return text

    data = _decode_json(text, contract)
    if isinstance(contract, RawJsonSchema):
        return data

    model = contract.model if isinstance(contract, TypedSchema) else contract.model()
    try:
        instance = model.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = _field_errors(exc)
        LOGGER.debug("output.validation_failed", model=model.__name__, error_count=len(errors))
        raise ValidationError(errors=errors, contract=contract) from exc

    value = instance if isinstance(contract, TypedSchema) else instance.model_dump()
    _run_validator(contract, value)
    return value


def format_errors(err: ValidationError) -> str:
    if not err.errors:
        return err.message
    return "\n".join(f"{error.field}: {error.message}" for error in err.errors)


def build_retry_message(err: ValidationError) -> str:
    return (
        "Your previous response failed validation:\n"
        f"{format_errors(err)}\n\n"
        "Please correct these errors and respond again in the required format."
    )


def system_prompt_suffix(contract: OutputContract, mode: str = "auto", backend: str = "openai") -> str:
    """Format instructions appended to the system prompt; empty when none apply."""

    if isinstance(contract, Choice):
        return "You must respond with exactly one of: " + ", ".join(contract.values)
    if isinstance(contract, Grammar):
        return "Your response must conform to the following grammar:\n" + contract.text
    schema = to_json_schema(contract)
    if schema is None:
        return ""

    rendered = json.dumps(schema, indent=2)
    if resolve_mode(mode, backend) == "md_json":
        return (
            "Respond with a JSON object inside a ```json code fence that conforms to this schema:\n"
            f"{rendered}\n\n"
            "Start your response with ```json and include nothing else."
        )
    return (
        "Respond with a JSON object that conforms to this schema:\n"
        f"{rendered}\n\n"
        "Return only the JSON object, without additional text."
    )
