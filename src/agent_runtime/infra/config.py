"""Configuration for the agent runtime and its service wrapper."""

from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path
from typing import Literal

import pydantic
import pydantic.dataclasses as pydantic_dataclasses

from agent_runtime.agent.errors import ConfigurationError

CONFIG_ENV_VAR = "AGENT_RUNTIME_CONFIG"


@pydantic_dataclasses.dataclass(frozen=True)
class LlmSettings:
    model: str = "openai:gpt-4o-mini"
    timeout_seconds: int = 30
    temperature: float = 0
    base_url: str | None = None


@pydantic_dataclasses.dataclass(frozen=True)
class RunSettings:
    max_iterations: int = pydantic.Field(default=10, ge=1)
    output_retries: int = pydantic.Field(default=2, ge=0)
    structured_output_mode: Literal["auto", "json_schema", "tool_call", "json", "md_json"] = "auto"
    tool_timeout_seconds: float | None = None


@pydantic_dataclasses.dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    json: bool = False


@pydantic_dataclasses.dataclass(frozen=True)
class AppSettings:
    title: str = "Agent Runtime"
    description: str = ""
    version: str = "0.1.0"
    api_prefix: str = "/v1"
    cors_origins: list[str] = dataclasses.field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = False
    service_name: str = "agent-runtime"
    metadata: dict[str, str] = dataclasses.field(default_factory=dict)
    llm: LlmSettings = LlmSettings()
    run: RunSettings = RunSettings()
    logging: LoggingSettings = LoggingSettings()


def load_app_settings(path: str | Path | None = None) -> AppSettings:
    """Load settings from a JSON file, ``$AGENT_RUNTIME_CONFIG``, or defaults."""

    source = path or os.environ.get(CONFIG_ENV_VAR)
    if not source:
        return AppSettings()

    try:
        data = json.loads(Path(source).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read settings from {source}", details=str(exc)) from exc

    try:
        return pydantic.TypeAdapter(AppSettings).validate_python(data)
    except pydantic.ValidationError as exc:
        raise ConfigurationError("Invalid settings", details=exc.errors()) from exc
