"""Typed data models for transcript, session, and note events."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionState(str, Enum):
    """Lifecycle states of a single transcription session."""

    IDLE = "idle"
    STARTING = "starting"
    LISTENING = "listening"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    FAILED = "failed"


class SourceKind(str, Enum):
    """Transcription source variants chosen by the selector."""

    NONE = "none"
    LOCAL = "local"
    CLOUD = "cloud"


class ErrorKind(str, Enum):
    """Classification applied to source errors at their point of origin."""

    TRANSIENT = "transient"
    FATAL = "fatal"
    UNAVAILABLE = "unavailable"
    WARNING = "warning"


class ConnectionStatus(str, Enum):
    """Status shown by the live view; transient retries never change it."""

    STOPPED = "stopped"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECORDING = "recording"


@dataclass(frozen=True, slots=True)
class SessionStatus:
    """Current session state with the failure reason when ``FAILED``."""

    state: SessionState
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class RestartAttempt:
    """Restart bookkeeping; reset whenever the session reaches ``LISTENING``."""

    count: int = 0
    next_delay: float | None = None
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class SourceError:
    """Error reported by a transcription source after classification."""

    kind: ErrorKind
    code: str
    message: str

    @property
    def surfaced(self) -> bool:
        """Return ``True`` when the error should be shown to the user."""
        return self.kind is not ErrorKind.TRANSIENT


@dataclass(frozen=True, slots=True)
class TranscriptSegment:
    """A finalized utterance; created exactly once per final event."""

    segment_id: str
    text: str
    created_at: datetime = field(default_factory=_utcnow)
    is_final: bool = True


@dataclass(frozen=True, slots=True)
class RecognitionResult:
    """Single hypothesis emitted by a continuous recognizer."""

    text: str
    is_final: bool
    confidence: float | None = None


@dataclass(frozen=True, slots=True)
class RecognitionBatch:
    """Result list delivered by a recognizer; entries before ``result_index`` are stale."""

    results: Sequence[RecognitionResult]
    result_index: int = 0


@dataclass(frozen=True, slots=True)
class TranscriptEvent:
    """Transcript message received from the cloud provider via the relay."""

    text: str
    is_final: bool
    confidence: float | None = None


@dataclass(frozen=True, slots=True)
class FlushBuffer:
    """Point-in-time view of the flush scheduler's buffer."""

    pending_text: str
    words_since_flush: int
    last_flush_at: datetime | None
    timer_pending: bool
    flush_in_flight: bool


@dataclass(frozen=True, slots=True)
class SermonNote:
    """Structured note extracted from a batch of transcript text."""

    note_id: str
    main_point: str
    sub_points: Sequence[str] = ()
    scripture_references: Sequence[str] = ()
    key_quote: str | None = None
    theme: str | None = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True, slots=True)
class KeyPoint:
    """Key point of a sermon summary with an optional scripture reference."""

    point: str
    scripture: str | None = None


@dataclass(frozen=True, slots=True)
class SermonSummary:
    """Final summary synthesised from accumulated notes."""

    summary_id: str
    title: str
    overview: str
    main_themes: Sequence[str] = ()
    key_points: Sequence[KeyPoint] = ()
    key_quotes: Sequence[str] = ()
    scriptures_summary: Sequence[str] = ()
    closing_thought: str = ""
    generated_at: datetime = field(default_factory=_utcnow)
