"""Error taxonomy for agent runs."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class FieldError:
    """Single field-level validation failure."""

    field: str
    message: str


class AgentError(Exception):
    """Base class for every error surfaced by an agent run."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ModelError(AgentError):
    """The model dispatcher failed. Never retried by the run loop."""

    def __init__(
        self,
        message: str | None = None,
        *,
        backend: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        text = message or "Model request failed" + (f" ({backend})" if backend else "")
        super().__init__(text)
        self.backend = backend
        self.details = dict(details or {})


class ToolError(AgentError):
    """A tool exhausted its retry budget."""

    def __init__(
        self,
        tool_name: str,
        *,
        attempt: int,
        cause: BaseException | None = None,
        message: str | None = None,
    ) -> None:
        if message is None:
            message = f"Tool execution failed: {cause}" if cause else "Tool execution failed"
        super().__init__(message)
        self.tool_name = tool_name
        self.attempt = attempt
        self.cause = cause


class ToolTimeout(AgentError):
    def __init__(self, tool_name: str, timeout: float) -> None:
        super().__init__(f"Tool '{tool_name}' timed out after {timeout}s")
        self.tool_name = tool_name
        self.timeout = timeout


class ValidationError(AgentError):
    """Structured output did not satisfy the declared contract."""

    def __init__(
        self,
        message: str | None = None,
        *,
        errors: list[FieldError] | None = None,
        contract: Any = None,
    ) -> None:
        super().__init__(message or "Output validation failed")
        self.errors = list(errors or [])
        self.contract = contract


class ExecutionCancelled(AgentError):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__("Execution cancelled" + (f": {reason}" if reason else ""))
        self.reason = reason


class MaxIterationsExceeded(AgentError):
    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Maximum iterations exceeded ({max_iterations})")
        self.max_iterations = max_iterations


class ConfigurationError(AgentError):
    def __init__(self, message: str = "Configuration error", *, details: Any = None) -> None:
        super().__init__(message)
        self.details = details


class SnapshotError(AgentError):
    """A persisted run-state document could not be restored."""
