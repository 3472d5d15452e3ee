# src/gantry/engine/spans.py
"""OpenTelemetry span factory for the pipeline engine.

Provides structured span creation for pipeline execution.
Falls back to no-op mode when no tracer is configured.

Span Hierarchy:
    run:{pipeline}
    ├── stage:{stage_name}
    │   └── step:{step_name}
    └── post_action:{condition}
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from opentelemetry.trace import Span, Tracer


class NoOpSpan:
    """No-op span for when tracing is disabled."""

    def set_attribute(self, key: str, value: Any) -> None:
        """No-op."""
        pass

    def set_status(self, status: Any) -> None:
        """No-op."""
        pass

    def record_exception(self, exception: Exception) -> None:
        """No-op."""
        pass

    def is_recording(self) -> bool:
        """Always False for no-op."""
        return False


class SpanFactory:
    """Factory for creating OpenTelemetry spans.

    When no tracer is provided, all span methods return no-op contexts.

    Example:
        factory = SpanFactory(tracer=opentelemetry.trace.get_tracer("gantry"))

        with factory.run_span(run_id, "build") as span:
            with factory.stage_span("test", policy="tolerant") as stage_span:
                with factory.step_span("pytest") as step_span:
                    ...
    """

    # Singleton no-op span to avoid repeated allocations
    _NOOP_SPAN = NoOpSpan()

    def __init__(self, tracer: "Tracer | None" = None) -> None:
        self._tracer = tracer

    @property
    def enabled(self) -> bool:
        """Whether tracing is enabled."""
        return self._tracer is not None

    @contextmanager
    def run_span(self, run_id: str, pipeline_name: str) -> Iterator["Span | NoOpSpan"]:
        """Create a span for the entire run.

        Yields:
            Span or NoOpSpan if tracing disabled (never None - uniform interface)
        """
        if self._tracer is None:
            yield self._NOOP_SPAN
            return

        with self._tracer.start_as_current_span(f"run:{pipeline_name}") as span:
            span.set_attribute("run.id", run_id)
            span.set_attribute("pipeline.name", pipeline_name)
            yield span

    @contextmanager
    def stage_span(self, stage_name: str, *, policy: str, attempt: int | None = None) -> Iterator["Span | NoOpSpan"]:
        """Create a span for one stage attempt.

        Args:
            stage_name: Name of the stage
            policy: Failure policy kind ("strict" or "tolerant")
            attempt: Attempt number when the stage has a retry policy
        """
        if self._tracer is None:
            yield self._NOOP_SPAN
            return

        with self._tracer.start_as_current_span(f"stage:{stage_name}") as span:
            span.set_attribute("stage.name", stage_name)
            span.set_attribute("stage.policy", policy)
            if attempt is not None:
                span.set_attribute("stage.attempt", attempt)
            yield span

    @contextmanager
    def step_span(self, step_name: str) -> Iterator["Span | NoOpSpan"]:
        """Create a span for one external command."""
        if self._tracer is None:
            yield self._NOOP_SPAN
            return

        with self._tracer.start_as_current_span(f"step:{step_name}") as span:
            span.set_attribute("step.name", step_name)
            yield span

    @contextmanager
    def post_action_span(self, condition: str) -> Iterator["Span | NoOpSpan"]:
        """Create a span for a post-action handler."""
        if self._tracer is None:
            yield self._NOOP_SPAN
            return

        with self._tracer.start_as_current_span(f"post_action:{condition}") as span:
            span.set_attribute("post_action.condition", condition)
            yield span
