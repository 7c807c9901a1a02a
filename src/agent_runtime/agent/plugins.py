"""Plugin hooks and the left folds that compose them.

A plugin implements any subset of ``init``, ``tools``, ``system_prompt``,
``before_request`` and ``after_response``. Hooks may be plain functions or
coroutines. Plugins run in declared order and each one sees the cumulative
effect of the plugins before it.
"""

from __future__ import annotations

import inspect
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import structlog

from agent_runtime.agent.state import RunState
from agent_runtime.agent.types import Message
from agent_runtime.tools.base import Tool

if TYPE_CHECKING:
    from agent_runtime.agent.agent import Agent

LOGGER = structlog.get_logger(__name__)

HOOKS = ("init", "tools", "system_prompt", "before_request", "after_response")


class Plugin:
    """Base class with no-op hooks; override only what the plugin needs."""

    name: str | None = None

    def init(self, agent: Agent, state: RunState) -> RunState | None:
        return state

    def tools(self, agent: Agent, state: RunState) -> list[Tool]:
        return []

    def system_prompt(self, agent: Agent, state: RunState) -> str | None:
        return None

    def before_request(
        self, agent: Agent, state: RunState, tools: list[Tool]
    ) -> tuple[RunState, list[Tool]] | None:
        return state, tools

    def after_response(self, agent: Agent, response: Message, state: RunState) -> RunState | None:
        return state


def implements(plugin: Any, hook: str) -> bool:
    """True when ``plugin`` provides ``hook`` beyond the base-class no-op."""

    method = getattr(plugin, hook, None)
    if not callable(method):
        return False
    base = getattr(Plugin, hook)
    return getattr(method, "__func__", None) is not base


def plugin_name(plugin: Any) -> str:
    return getattr(plugin, "name", None) or type(plugin).__name__


async def _call(plugin: Any, hook: str, *args: Any) -> Any:
    result = getattr(plugin, hook)(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def run_init(plugins: Sequence[Any], agent: Agent, state: RunState) -> RunState:
    for plugin in plugins:
        if implements(plugin, "init"):
            state = await _call(plugin, "init", agent, state) or state
    return state


async def collect_tools(plugins: Sequence[Any], agent: Agent, state: RunState) -> list[Tool]:
    collected: list[Tool] = []
    for plugin in plugins:
        if implements(plugin, "tools"):
            collected.extend(await _call(plugin, "tools", agent, state) or [])
    return collected


async def collect_system_prompts(plugins: Sequence[Any], agent: Agent, state: RunState) -> str | None:
    fragments: list[str] = []
    for plugin in plugins:
        if implements(plugin, "system_prompt"):
            fragment = await _call(plugin, "system_prompt", agent, state)
            if fragment is not None:
                fragments.append(fragment)
    return "\n\n".join(fragments) if fragments else None


async def run_before_request(
    plugins: Sequence[Any],
    agent: Agent,
    state: RunState,
    tools: list[Tool],
) -> tuple[RunState, list[Tool]]:
    for plugin in plugins:
        if not implements(plugin, "before_request"):
            continue
        result = await _call(plugin, "before_request", agent, state, tools)
        if result is not None:
            state, tools = result
    return state, list(tools)


async def run_after_response(
    plugins: Sequence[Any],
    agent: Agent,
    response: Message,
    state: RunState,
) -> RunState:
    for plugin in plugins:
        if implements(plugin, "after_response"):
            state = await _call(plugin, "after_response", agent, response, state) or state
            LOGGER.debug("plugin.after_response", plugin=plugin_name(plugin))
    return state
