from __future__ import annotations

import enum
import json

import pydantic
import pytest

from agent_runtime.agent.errors import FieldError, ValidationError
from agent_runtime.agent.types import Message, ToolCall
from agent_runtime.output.contracts import (
    Choice,
    FlatFieldMap,
    Grammar,
    PlainText,
    RawJsonSchema,
    Regex,
    TypedSchema,
    coerce_contract,
)
from agent_runtime.output.schema import (
    MD_JSON_STOP,
    STRUCTURED_OUTPUT_TOOL,
    SYNTHETIC_TOOL_CHOICE_KEY,
    SYNTHETIC_TOOL_KEY,
    build_retry_message,
    extract_payload,
    format_errors,
    parse_and_validate,
    resolve_mode,
    system_prompt_suffix,
    to_json_schema,
    to_provider_settings,
)


class Priority(enum.Enum):
    LOW = "low"
    HIGH = "high"


class Address(pydantic.BaseModel):
    city: str
    zip_code: str


class Ticket(pydantic.BaseModel):
    """A support ticket."""

    title: str
    priority: Priority
    address: Address
    tags: list[str] = []


PERSON = FlatFieldMap({"name": str, "age": int})


def test_parse_flat_field_map() -> None:
    assert parse_and_validate('{"name":"Alice","age":30}', PERSON) == {"name": "Alice", "age": 30}


def test_parse_rejects_non_json() -> None:
    with pytest.raises(ValidationError) as excinfo:
        parse_and_validate("not json", PERSON)

    assert excinfo.value.errors[0].field == "json"
    assert excinfo.value.contract is PERSON


def test_parse_reports_field_errors() -> None:
    with pytest.raises(ValidationError) as excinfo:
        parse_and_validate('{"name": "Alice", "age": "old"}', PERSON)

    assert [error.field for error in excinfo.value.errors] == ["age"]


def test_typed_schema_round_trip_with_nested_and_enum() -> None:
    ticket = Ticket(title="Printer", priority=Priority.HIGH, address=Address(city="Oslo", zip_code="0150"))

    parsed = parse_and_validate(ticket.model_dump_json(), TypedSchema(Ticket))

    assert parsed == ticket
    assert parsed.priority is Priority.HIGH


def test_typed_schema_nested_error_path() -> None:
    text = json.dumps({"title": "x", "priority": "urgent", "address": {"city": "Oslo"}})

    with pytest.raises(ValidationError) as excinfo:
        parse_and_validate(text, TypedSchema(Ticket))

    fields = {error.field for error in excinfo.value.errors}
    assert fields == {"priority", "address.zip_code"}


def test_code_fences_are_stripped() -> None:
    text = 'Here you go:\n```json\n{"name": "Bob", "age": 41}\n```'

    assert parse_and_validate(text, PERSON) == {"name": "Bob", "age": 41}


def test_unterminated_fence_is_accepted() -> None:
    assert parse_and_validate('```json\n{"name": "Eve", "age": 5}', PERSON) == {"name": "Eve", "age": 5}


class Snippet(pydantic.BaseModel):
    language: str
    code: str


def test_fences_inside_string_values_survive() -> None:
    snippet = Snippet(language="python", code="```py\nprint(1)\n```")

    assert parse_and_validate(snippet.model_dump_json(), TypedSchema(Snippet)) == snippet
    fenced = f"```json\n{snippet.model_dump_json()}\n```"
    assert parse_and_validate(fenced, TypedSchema(Snippet)) == snippet


def test_extra_validator_errors_fail_validation() -> None:
    def adults_only(value: dict) -> list[FieldError]:
        return [FieldError("age", "must be at least 18")] if value["age"] < 18 else []

    contract = FlatFieldMap({"name": str, "age": int}, validator=adults_only)

    assert parse_and_validate('{"name": "A", "age": 30}', contract)["age"] == 30
    with pytest.raises(ValidationError) as excinfo:
        parse_and_validate('{"name": "B", "age": 12}', contract)
    assert format_errors(excinfo.value) == "age: must be at least 18"


def test_raw_json_schema_returns_decoded_value() -> None:
    contract = RawJsonSchema({"type": "array", "items": {"type": "integer"}})

    assert parse_and_validate("[1, 2, 3]", contract) == [1, 2, 3]
    assert to_json_schema(contract) == {"type": "array", "items": {"type": "integer"}}


def test_choice_trims_and_requires_membership() -> None:
    contract = Choice(["yes", "no"])

    assert parse_and_validate("  yes\n", contract) == "yes"
    with pytest.raises(ValidationError):
        parse_and_validate("Yes", contract)


def test_regex_requires_full_match() -> None:
    contract = Regex(r"\d{3}-\d{4}")

    assert parse_and_validate("555-1234", contract) == "555-1234"
    with pytest.raises(ValidationError):
        parse_and_validate("call 555-1234", contract)


def test_invalid_regex_pattern_is_a_validation_error() -> None:
    with pytest.raises(ValidationError):
        parse_and_validate("a", Regex("("))


def test_grammar_and_plain_text_pass_through() -> None:
    assert parse_and_validate("anything at all", Grammar("root ::= .*")) == "anything at all"
    assert parse_and_validate("free text", PlainText()) == "free text"


def test_flat_schema_is_closed_and_fully_required() -> None:
    schema = to_json_schema(PERSON)

    assert schema == {
        "type": "object",
        "properties": {"name": {"type": "string"}, "age": {"type": "integer"}},
        "required": ["name", "age"],
        "additionalProperties": False,
    }


def test_typed_schema_uses_definitions_and_description() -> None:
    schema = to_json_schema(TypedSchema(Ticket))

    assert schema["description"] == "A support ticket."
    assert schema["additionalProperties"] is False
    assert set(schema["required"]) == {"title", "priority", "address"}
    assert schema["properties"]["address"] == {"$ref": "#/$defs/Address"}
    assert schema["$defs"]["Address"]["additionalProperties"] is False
    assert schema["$defs"]["Priority"]["enum"] == ["low", "high"]
    assert "title" in schema["properties"]
    assert "title" not in schema["properties"]["title"]


@pytest.mark.parametrize("contract", [PlainText(), Choice(["a"]), Regex("a"), Grammar("g")])
def test_non_schema_contracts_have_no_schema(contract: object) -> None:
    assert to_json_schema(contract) is None


def test_resolve_auto_mode_per_backend() -> None:
    assert resolve_mode("auto", "anthropic") == "tool_call"
    assert resolve_mode("auto", "openai") == "json_schema"
    assert resolve_mode("md_json", "anthropic") == "md_json"
    with pytest.raises(ValueError):
        resolve_mode("xml", "openai")


def test_json_schema_mode_settings() -> None:
    settings = to_provider_settings(PERSON, "openai", "json_schema")

    response_format = settings["response_format"]
    assert response_format["type"] == "json_schema"
    assert response_format["json_schema"]["strict"] is True
    assert response_format["json_schema"]["schema"] == to_json_schema(PERSON)
    assert "guided_json" not in settings


def test_guided_json_layered_for_vllm_and_sglang() -> None:
    schema = to_json_schema(PERSON)

    assert to_provider_settings(PERSON, "vllm")["guided_json"] == schema
    assert json.loads(to_provider_settings(PERSON, "sglang")["json_schema"]) == schema


def test_tool_call_mode_synthesizes_tool() -> None:
    forced = to_provider_settings(PERSON, "anthropic")
    optional = to_provider_settings(PERSON, "anthropic", has_other_tools=True)

    assert forced[SYNTHETIC_TOOL_KEY]["function"]["name"] == STRUCTURED_OUTPUT_TOOL
    assert forced[SYNTHETIC_TOOL_KEY]["function"]["parameters"] == to_json_schema(PERSON)
    assert forced[SYNTHETIC_TOOL_CHOICE_KEY] == {
        "type": "function",
        "function": {"name": STRUCTURED_OUTPUT_TOOL},
    }
    assert optional[SYNTHETIC_TOOL_CHOICE_KEY] == "auto"


def test_json_and_md_json_modes() -> None:
    assert to_provider_settings(PERSON, "openai", "json") == {"response_format": {"type": "json_object"}}
    assert to_provider_settings(PERSON, "openai", "md_json") == {"stop": [MD_JSON_STOP]}


def test_guided_decoding_fields() -> None:
    assert to_provider_settings(Choice(["a", "b"]), "vllm") == {"guided_choice": ["a", "b"]}
    assert to_provider_settings(Regex("[0-9]+"), "vllm") == {"guided_regex": "[0-9]+"}
    assert to_provider_settings(Grammar("root ::= x"), "vllm") == {"guided_grammar": "root ::= x"}
    assert to_provider_settings(Regex("[0-9]+"), "sglang") == {"regex": "[0-9]+"}
    assert to_provider_settings(Choice(["a"]), "openai") == {}
    assert to_provider_settings(PlainText(), "openai") == {}


def test_extract_payload_prefers_synthetic_call() -> None:
    call = ToolCall(id="c1", name=STRUCTURED_OUTPUT_TOOL, arguments={"name": "Ann", "age": 3})
    response = Message.assistant("ignored", tool_calls=[call])

    assert json.loads(extract_payload(response, "tool_call")) == {"name": "Ann", "age": 3}
    assert extract_payload(response, "json_schema") == "ignored"
    assert extract_payload(Message.assistant(None), "json") == ""


def test_format_errors_falls_back_to_message() -> None:
    assert format_errors(ValidationError("bad output")) == "bad output"
    error = ValidationError(errors=[FieldError("a", "missing"), FieldError("b.c", "wrong type")])
    assert format_errors(error) == "a: missing\nb.c: wrong type"
    assert "a: missing" in build_retry_message(error)


def test_system_prompt_suffix() -> None:
    assert system_prompt_suffix(PlainText()) == ""
    assert system_prompt_suffix(Regex("x")) == ""
    assert system_prompt_suffix(Choice(["red", "blue"])) == "You must respond with exactly one of: red, blue"
    assert '"name"' in system_prompt_suffix(PERSON, "json_schema")
    assert "```json" in system_prompt_suffix(PERSON, "md_json")
    assert "```json" not in system_prompt_suffix(PERSON, "json")


def test_coerce_contract_shorthands() -> None:
    assert coerce_contract(None) == PlainText()
    assert coerce_contract(str) == PlainText()
    assert coerce_contract(Ticket) == TypedSchema(Ticket)
    assert coerce_contract({"name": str}) == FlatFieldMap({"name": str})
    assert coerce_contract({"type": "object", "properties": {}}) == RawJsonSchema(
        {"type": "object", "properties": {}}
    )
    with pytest.raises(TypeError):
        coerce_contract(42)
