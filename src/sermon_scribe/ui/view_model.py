"""Typed UI view model for the Rich live view.

Separates event ingestion from rendering. The builder holds mutable state under
an asyncio lock, while snapshots are immutable dataclasses consumed by pure
renderer functions.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime

from ..models import ConnectionStatus, SermonNote, SermonSummary, SourceError, TranscriptSegment


@dataclass(frozen=True, slots=True)
class UiSnapshot:
    """Immutable snapshot fed to the renderer."""

    generated_at: datetime
    header_text: str
    status: ConnectionStatus
    error: str | None
    segments: list[TranscriptSegment]
    interim: str
    notes: list[SermonNote]
    summary: SermonSummary | None
    # Monotonic deadline until which the newest segment is highlighted.
    highlight_until: float | None = None


class UiStateBuilder:
    """Mutable live-view state with a bounded transcript tail."""

    def __init__(self, *, max_segments: int = 200) -> None:
        """Create a builder retaining at most *max_segments* transcript segments."""
        self._segments: deque[TranscriptSegment] = deque(maxlen=max(1, int(max_segments)))
        self._interim = ""
        self._status = ConnectionStatus.STOPPED
        self._error: str | None = None
        self._notes: list[SermonNote] = []
        self._summary: SermonSummary | None = None
        self._highlight_until: float | None = None
        self._lock = asyncio.Lock()

    async def apply(self, topic: str, event: object) -> None:
        """Apply one event published by a recording session."""
        now_mono = asyncio.get_running_loop().time()
        async with self._lock:
            if topic == "transcript.final" and isinstance(event, TranscriptSegment):
                self._segments.append(event)
                self._interim = ""
                self._highlight_until = now_mono + 3.0
            elif topic == "transcript.interim" and isinstance(event, str):
                self._interim = event
            elif topic == "transcript.cleared":
                self._segments.clear()
                self._interim = ""
                self._notes = []
                self._summary = None
                self._highlight_until = None
            elif topic == "session.status" and isinstance(event, ConnectionStatus):
                self._status = event
                if event is ConnectionStatus.STOPPED:
                    self._interim = ""
                elif event is ConnectionStatus.CONNECTED:
                    self._error = None
            elif topic == "session.error" and isinstance(event, SourceError):
                self._error = event.message
            elif topic == "notes.updated" and isinstance(event, tuple):
                self._notes = [note for note in event if isinstance(note, SermonNote)]
            elif topic == "summary.generated" and isinstance(event, SermonSummary):
                self._summary = event

    async def snapshot(self, *, header_text: str) -> UiSnapshot:
        """Return an immutable snapshot of the current state."""
        async with self._lock:
            return UiSnapshot(
                generated_at=datetime.now(UTC),
                header_text=header_text,
                status=self._status,
                error=self._error,
                segments=list(self._segments),
                interim=self._interim,
                notes=list(self._notes),
                summary=self._summary,
                highlight_until=self._highlight_until,
            )
