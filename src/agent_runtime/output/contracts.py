"""Declared output contracts for an agent's final answer."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

import pydantic

from agent_runtime.agent.errors import FieldError

ExtraValidator = Callable[[Any], Iterable[FieldError] | None]


@dataclass(frozen=True, slots=True)
class PlainText:
    """Free text; no parsing or validation."""


@dataclass(frozen=True, slots=True)
class TypedSchema:
    """Pydantic model describing the answer, nested models and enums included.

    ``validator`` may return extra field errors for a successfully coerced
    instance; any errors fail validation just like a type mismatch.
    """

    model: type[pydantic.BaseModel]
    validator: ExtraValidator | None = None

    @property
    def name(self) -> str:
        return _snake_case(self.model.__name__)


@dataclass(frozen=True, slots=True)
class FlatFieldMap:
    """Field name to Python type; every field is required."""

    fields: Mapping[str, Any]
    validator: ExtraValidator | None = None
    name: str = "output"

    def model(self) -> type[pydantic.BaseModel]:
        definitions = {key: (annotation, ...) for key, annotation in self.fields.items()}
        return pydantic.create_model("Output", **definitions)


@dataclass(frozen=True, slots=True)
class RawJsonSchema:
    """A JSON schema passed through verbatim; the decoded JSON is returned as-is."""

    schema: Mapping[str, Any] = field(default_factory=dict)
    name: str = "output"


@dataclass(frozen=True, slots=True)
class Choice:
    values: Sequence[str]


@dataclass(frozen=True, slots=True)
class Regex:
    pattern: str


@dataclass(frozen=True, slots=True)
class Grammar:
    text: str


OutputContract = Union[PlainText, TypedSchema, FlatFieldMap, RawJsonSchema, Choice, Regex, Grammar]

SCHEMA_CONTRACTS = (TypedSchema, FlatFieldMap, RawJsonSchema)
GUIDED_CONTRACTS = (Choice, Regex, Grammar)


def coerce_contract(value: Any) -> OutputContract:
    """Accept shorthand declarations: ``None``/``str``, a model class or a field map."""

    if value is None or value is str:
        return PlainText()
    if isinstance(value, (PlainText, TypedSchema, FlatFieldMap, RawJsonSchema, Choice, Regex, Grammar)):
        return value
    if isinstance(value, type) and issubclass(value, pydantic.BaseModel):
        return TypedSchema(value)
    if isinstance(value, Mapping):
        if not value or isinstance(value.get("type"), str) or "properties" in value or "$schema" in value:
            return RawJsonSchema(dict(value))
        return FlatFieldMap(dict(value))
    raise TypeError(f"Unsupported output contract: {value!r}")


def _snake_case(name: str) -> str:
    chars: list[str] = []
    for index, char in enumerate(name):
        if char.isupper() and index and not name[index - 1].isupper():
            chars.append("_")
        chars.append(char.lower())
    return "".join(chars)
