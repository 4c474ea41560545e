"""UI telemetry sink buffering recent session signals for the live view.

The sink is injected into sources, the selector and the flush scheduler. It
keeps a bounded history so the runtime can render diagnostics without global
state.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock

from ..telemetry import (
    FlushErrorEvent,
    FlushMetrics,
    RestartScheduledEvent,
    SourceFallbackEvent,
    TelemetryEvent,
    TelemetryMetric,
    TelemetrySink,
)


@dataclass(frozen=True, slots=True)
class UiTelemetrySnapshot:
    """Immutable snapshot of recent telemetry for UI rendering."""

    generated_at: datetime
    restarts: list[RestartScheduledEvent]
    fallbacks: list[SourceFallbackEvent]
    flushes: list[FlushMetrics]
    flush_errors: list[FlushErrorEvent]


class UiTelemetrySink(TelemetrySink):
    """Thread-safe telemetry sink retaining recent signals for the UI."""

    def __init__(self, *, history: int = 50) -> None:
        """Initialise the sink with bounded history capacity."""
        self._restarts: deque[RestartScheduledEvent] = deque(maxlen=history)
        self._fallbacks: deque[SourceFallbackEvent] = deque(maxlen=history)
        self._flushes: deque[FlushMetrics] = deque(maxlen=history)
        self._flush_errors: deque[FlushErrorEvent] = deque(maxlen=history)
        self._lock = Lock()

    def record_event(self, event: TelemetryEvent) -> None:
        """Buffer events shown in the diagnostics line."""
        with self._lock:
            if isinstance(event, RestartScheduledEvent):
                self._restarts.append(event)
            elif isinstance(event, SourceFallbackEvent):
                self._fallbacks.append(event)
            elif isinstance(event, FlushErrorEvent):
                self._flush_errors.append(event)

    def record_metric(self, metric: TelemetryMetric) -> None:
        """Buffer flush metrics."""
        with self._lock:
            if isinstance(metric, FlushMetrics):
                self._flushes.append(metric)

    def snapshot(self) -> UiTelemetrySnapshot:
        """Return an immutable snapshot of recent telemetry buffers."""
        with self._lock:
            return UiTelemetrySnapshot(
                generated_at=datetime.now(UTC),
                restarts=list(self._restarts),
                fallbacks=list(self._fallbacks),
                flushes=list(self._flushes),
                flush_errors=list(self._flush_errors),
            )


def summarize_telemetry(snapshot: UiTelemetrySnapshot) -> str:
    """Return a one-line diagnostics summary for the footer of the live view."""
    parts = [f"restarts {len(snapshot.restarts)}", f"flushes {len(snapshot.flushes)}"]
    if snapshot.flush_errors:
        parts.append(f"flush errors {len(snapshot.flush_errors)}")
    if snapshot.fallbacks:
        parts.append(f"fallback: {snapshot.fallbacks[-1].reason}")
    return " • ".join(parts)
