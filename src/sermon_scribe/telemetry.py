"""Telemetry hook interfaces for structured logging and metrics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from .models import SessionState, SourceKind


@dataclass(frozen=True, slots=True)
class TelemetrySignal:
    """Base class for telemetry signals."""

    emitted_at: datetime = field(init=False)

    def __post_init__(self) -> None:
        """Stamp the signal with the UTC time it was emitted."""
        object.__setattr__(self, "emitted_at", datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class TelemetryEvent(TelemetrySignal):
    """Represents a discrete telemetry event."""


@dataclass(frozen=True, slots=True)
class TelemetryMetric(TelemetrySignal):
    """Represents a telemetry metric sample."""


@dataclass(frozen=True, slots=True)
class RestartScheduledEvent(TelemetryEvent):
    """Event emitted when a session restart has been scheduled."""

    source: str
    attempt: int
    delay: float
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class SessionTerminatedEvent(TelemetryEvent):
    """Event emitted when a session reaches ``STOPPED`` or ``FAILED``."""

    source: str
    state: SessionState
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class SourceFallbackEvent(TelemetryEvent):
    """Event emitted when the selector demotes the cloud source to local."""

    from_kind: SourceKind
    to_kind: SourceKind
    reason: str


@dataclass(frozen=True, slots=True)
class RelayRejectedEvent(TelemetryEvent):
    """Event emitted when the upstream provider connection cannot be opened."""

    message: str
    status_code: int | None = None


@dataclass(frozen=True, slots=True)
class RelayClosedEvent(TelemetryEvent):
    """Event emitted once a relay bridge has torn down both legs."""

    initiator: str
    code: int | None
    reason: str
    frames_forwarded: int
    frames_dropped: int


@dataclass(frozen=True, slots=True)
class FlushMetrics(TelemetryMetric):
    """Metric payload emitted after a successful flush."""

    reason: str
    words: int
    characters: int
    notes_returned: int
    duration_seconds: float


@dataclass(frozen=True, slots=True)
class FlushErrorEvent(TelemetryEvent):
    """Event emitted when the downstream extractor call fails."""

    words: int
    error_type: str
    message: str | None = None


class TelemetrySink(Protocol):
    """Protocol for emitting structured telemetry signals."""

    def record_event(self, event: TelemetryEvent) -> None:  # pragma: no cover - protocol
        """Record a structured event for diagnostics."""
        ...

    def record_metric(self, metric: TelemetryMetric) -> None:  # pragma: no cover - protocol
        """Record a metric sample."""
        ...


class NullTelemetrySink(TelemetrySink):
    """Telemetry sink that drops all signals."""

    def record_event(self, event: TelemetryEvent) -> None:
        """Drop the event without side effects."""

    def record_metric(self, metric: TelemetryMetric) -> None:
        """Drop the metric without side effects."""
