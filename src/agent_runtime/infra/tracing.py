"""Trace helpers for model requests and tool execution."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.trace import Span


@contextmanager
def traced_span(name: str, **attributes: object) -> Iterator[Span]:
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


@contextmanager
def tool_span(name: str, **attributes: object) -> Iterator[Span]:
    with traced_span(name, **attributes) as span:
        yield span


@contextmanager
def model_span(name: str, **attributes: object) -> Iterator[Span]:
    with traced_span(name, **attributes) as span:
        yield span
