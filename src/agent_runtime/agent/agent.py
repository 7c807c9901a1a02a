"""Agent configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agent_runtime.agent.types import ModelRef
from agent_runtime.infra.config import AppSettings
from agent_runtime.output.contracts import OutputContract, coerce_contract
from agent_runtime.output.schema import MODES
from agent_runtime.tools.base import Tool


@dataclass(slots=True)
class StructuredOutputOptions:
    mode: str = "auto"
    max_retries: int = 2

    def __post_init__(self) -> None:
        if self.mode not in MODES:
            raise ValueError(f"Unknown structured output mode: {self.mode!r}")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")


@dataclass(slots=True)
class Agent:
    """Static description of an agent: model, instructions, tools and contract.

    ``output_type`` accepts anything :func:`coerce_contract` does (a pydantic
    model class, a field map, a contract object or ``None`` for plain text).
    ``model_settings`` are passed to the dispatcher on every request and may be
    overridden per run.
    """

    model: ModelRef | str
    name: str = "agent"
    instructions: str | None = None
    tools: list[Tool] = field(default_factory=list)
    plugins: list[Any] = field(default_factory=list)
    output_type: Any = None
    structured_output: StructuredOutputOptions = field(default_factory=StructuredOutputOptions)
    model_settings: dict[str, Any] = field(default_factory=dict)
    max_iterations: int = 10
    deps: dict[str, Any] = field(default_factory=dict)
    output: OutputContract = field(init=False)

    def __post_init__(self) -> None:
        if isinstance(self.model, str):
            self.model = ModelRef.parse(self.model)
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.output = coerce_contract(self.output_type)

    @property
    def backend(self) -> str:
        return self.model.provider

    @classmethod
    def from_settings(cls, settings: AppSettings, **overrides: Any) -> Agent:
        """Build an agent whose model and run defaults come from ``settings``."""

        values: dict[str, Any] = {
            "model": ModelRef.parse(settings.llm.model, base_url=settings.llm.base_url),
            "name": settings.service_name,
            "max_iterations": settings.run.max_iterations,
            "structured_output": StructuredOutputOptions(
                mode=settings.run.structured_output_mode,
                max_retries=settings.run.output_retries,
            ),
            "model_settings": {"temperature": settings.llm.temperature},
        }
        values.update(overrides)
        return cls(**values)
