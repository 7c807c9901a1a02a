"""Human-in-the-loop approval for selected tools."""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from agent_runtime.agent.agent import Agent
from agent_runtime.agent.approval import APPROVAL_HANDLER_KEY, ApprovalHandler
from agent_runtime.agent.plugins import Plugin
from agent_runtime.agent.state import RunState
from agent_runtime.tools.base import Tool

LOGGER = structlog.get_logger(__name__)

CONFIG_KEY = "hitl_config"


@dataclass(slots=True)
class HumanInTheLoop(Plugin):
    """Install an approval handler and flag the named tools ``requires_approval``.

    Run deps may override both through ``deps["hitl_config"]``, a mapping with
    optional ``handler`` and ``tools`` entries.
    """

    handler: ApprovalHandler | None = None
    tool_names: Iterable[str] = field(default_factory=tuple)
    name: str | None = "human_in_the_loop"

    def _config(self, state: RunState) -> Mapping[str, Any]:
        config = state.deps.get(CONFIG_KEY) or {}
        return config if isinstance(config, Mapping) else {}

    def init(self, agent: Agent, state: RunState) -> RunState:
        handler = self._config(state).get("handler") or self.handler
        if handler is not None:
            state.merge_deps({APPROVAL_HANDLER_KEY: handler})
        else:
            LOGGER.warning("hitl.no_handler", agent=agent.name)
        return state

    def before_request(self, agent: Agent, state: RunState, tools: list[Tool]) -> tuple[RunState, list[Tool]]:
        names = set(self._config(state).get("tools") or self.tool_names)
        if not names:
            return state, tools
        flagged = [
            dataclasses.replace(tool, requires_approval=True)
            if tool.name in names and not tool.requires_approval
            else tool
            for tool in tools
        ]
        return state, flagged
