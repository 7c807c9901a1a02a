"""Approval decisions for tool calls flagged ``requires_approval``."""

from __future__ import annotations

import inspect
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

import structlog

from agent_runtime.agent.state import RunState
from agent_runtime.agent.types import ToolCall
from agent_runtime.tools.base import Tool

LOGGER = structlog.get_logger(__name__)

APPROVAL_HANDLER_KEY = "approval_handler"
REJECTED_TOOL_RESULT = "Tool call was rejected by approval handler."


@dataclass(frozen=True, slots=True)
class Approve:
    pass


@dataclass(frozen=True, slots=True)
class Reject:
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class Edit:
    arguments: Mapping[str, Any] = field(default_factory=dict)


ApprovalDecision = Union[Approve, Reject, Edit]
ApprovalHandler = Callable[[ToolCall], Any]


def normalize_decision(value: Any) -> ApprovalDecision:
    """Accept decision objects, ``"approve"``/``"reject"`` or ``("edit", args)``."""

    if isinstance(value, (Approve, Reject, Edit)):
        return value
    if value == "reject" or value is False:
        return Reject()
    if isinstance(value, tuple) and len(value) == 2 and value[0] == "edit" and isinstance(value[1], Mapping):
        return Edit(dict(value[1]))
    if value != "approve" and value is not True:
        LOGGER.warning("approval.unknown_decision", decision=repr(value))
    return Approve()


@dataclass(slots=True)
class ApprovalGate:
    """Resolve a tool call through the configured human-decision handler.

    With no handler configured the gate approves every call (fail-open) and
    logs a warning each time it does so.
    """

    handler: ApprovalHandler | None = None

    @classmethod
    def from_state(cls, state: RunState) -> ApprovalGate:
        handler = state.deps.get(APPROVAL_HANDLER_KEY)
        return cls(handler=handler if callable(handler) else None)

    async def resolve(self, call: ToolCall, tool: Tool) -> ApprovalDecision:
        if self.handler is None:
            LOGGER.warning("approval.no_handler", tool=tool.name, tool_call_id=call.id)
            return Approve()

        result = self.handler(call)
        if inspect.isawaitable(result):
            result = await result
        decision = normalize_decision(result)
        LOGGER.info(
            "approval.decision",
            tool=tool.name,
            tool_call_id=call.id,
            decision=type(decision).__name__.lower(),
        )
        return decision
