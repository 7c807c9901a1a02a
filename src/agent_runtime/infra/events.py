"""Lifecycle event bus for run and tool observability."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

LOGGER = structlog.get_logger(__name__)

EventName = tuple[str, ...]
EventHandler = Callable[[EventName, Mapping[str, Any], Mapping[str, Any]], Any]


@dataclass(slots=True)
class _Attachment:
    prefix: EventName
    handler: EventHandler


@dataclass(slots=True)
class EventBus:
    """Dispatch ``(event, measurements, metadata)`` triples to attached handlers.

    A handler is attached to an event-name prefix: ``("tool",)`` receives every
    tool event, ``("tool", "execute", "stop")`` only that one. A handler that
    raises is logged and detached so observability can never break a run.
    """

    _handlers: dict[str, _Attachment] = field(default_factory=dict)

    def attach(self, handler_id: str, prefix: EventName, handler: EventHandler) -> None:
        if handler_id in self._handlers:
            raise ValueError(f"Event handler already attached: {handler_id}")
        self._handlers[handler_id] = _Attachment(prefix=tuple(prefix), handler=handler)

    def detach(self, handler_id: str) -> bool:
        return self._handlers.pop(handler_id, None) is not None

    def emit(
        self,
        event: EventName,
        measurements: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        measurements = measurements or {}
        metadata = metadata or {}
        for handler_id, attachment in list(self._handlers.items()):
            if event[: len(attachment.prefix)] != attachment.prefix:
                continue
            try:
                attachment.handler(event, measurements, metadata)
            except Exception:
                LOGGER.exception("events.handler_failed", handler_id=handler_id, event=".".join(event))
                self.detach(handler_id)
