"""
Tracers handed to the reader, the writer and the orchestrator.

Each component takes an optional ``tracer`` argument and falls back to
``create_tracer(__name__, enable_tracing)``. Spans go to whatever
OpenTelemetry tracer provider the embedding application installed; with
none installed they are non-recording and cost next to nothing.

Example:
    >>> tracer = create_tracer(__name__)
    >>> with tracer.span("syn2mas.writer.load_batch", {ATTR_TABLE: "users"}):
    ...     await copy_rows()
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator, Mapping
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span

SpanAttributes = Mapping[str, Any]


@runtime_checkable
class Tracer(Protocol):
    """Creates spans around migration steps."""

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span named ``name``.

        The yielded span may be None, so callers guard attribute updates
        made after the span has started.
        """
        ...

    @property
    def enabled(self) -> bool: ...


class NullTracer:
    """Tracer used when tracing is switched off. Yields None."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by ``opentelemetry.trace.get_tracer``.

    Attributes whose value is None are dropped before the span starts,
    since OpenTelemetry rejects them (a batch without a known table, a
    lock that was never acquired).

    Args:
        tracer_name: Instrumentation scope name, usually the module's __name__
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        cleaned = {k: v for k, v in (attributes or {}).items() if v is not None}
        return self._tracer.start_as_current_span(name, attributes=cleaned)

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Tracer for tests. Records ``(name, attributes)`` for every span opened.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("syn2mas.checks.mas_database"):
        ...     pass
        >>> tracer.span_names
        ['syn2mas.checks.mas_database']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, dict(attributes) if attributes is not None else None))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def attributes_of(self, name: str) -> list[dict[str, Any] | None]:
        """Attributes of every recorded span called ``name``, in order."""
        return [attrs for span_name, attrs in self.spans if span_name == name]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """Return an OpenTelemetryTracer, or a NullTracer when tracing is off."""
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanAttributes",
    "Tracer",
    "create_tracer",
]
