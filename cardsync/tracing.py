"""OpenTelemetry tracing for card persistence.

Spans are created through the OpenTelemetry API; without a configured SDK
the API hands out non-recording spans, so tracing costs next to nothing
when nobody collects it.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator

from opentelemetry import trace
from opentelemetry.trace import StatusCode


class SyncTracer:
    """Tracer for persistence writes. ``enable=False`` makes every span a no-op."""

    def __init__(self, component: str = "cards", enable: bool = True) -> None:
        self.component: str = component
        self.enabled: bool = enable

    @contextmanager
    def span(
        self, name: str, attributes: dict[str, Any] | None = None
    ) -> Generator[Any, None, None]:
        if not self.enabled:
            yield None
            return

        tracer = trace.get_tracer("cardsync", "0.1.0")
        attrs: dict[str, Any] = {"cardsync.component": self.component}
        if attributes:
            attrs.update(attributes)
        with tracer.start_as_current_span(
            name, attributes=attrs, record_exception=False, set_status_on_exception=False
        ) as span:
            try:
                yield span
            except Exception as e:
                span.set_status(StatusCode.ERROR, str(e))
                span.record_exception(e)
                raise


class NoopTracer:
    @contextmanager
    def span(
        self, name: str, attributes: dict[str, Any] | None = None
    ) -> Generator[None, None, None]:
        yield
