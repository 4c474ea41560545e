"""Recording session: the control surface tying sources, transcript and notes together."""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable, Sequence

from .config import FlushConfig
from .eventbus import EventBus
from .flush import FlushScheduler, NoteExtractor
from .models import (
    ConnectionStatus,
    SermonNote,
    SermonSummary,
    SourceError,
    SourceKind,
    TranscriptSegment,
)
from .selector import SourceSelector
from .telemetry import TelemetrySink
from .transcription import TranscriptionCallbacks

logger = logging.getLogger(__name__)

TOPIC_INTERIM = "transcript.interim"
TOPIC_FINAL = "transcript.final"
TOPIC_CLEARED = "transcript.cleared"
TOPIC_STATUS = "session.status"
TOPIC_ERROR = "session.error"
TOPIC_NOTES = "notes.updated"
TOPIC_SUMMARY = "summary.generated"

SelectorFactory = Callable[[TranscriptionCallbacks], SourceSelector]


class RecordingSession:
    """Owns one logical recording: a :class:`SourceSelector` and a :class:`FlushScheduler`.

    Source callbacks arrive synchronously on the event loop; state is updated in
    place and the change is published on the event bus in the background.
    """

    def __init__(
        self,
        selector_factory: SelectorFactory,
        extractor: NoteExtractor,
        *,
        flush_config: FlushConfig | None = None,
        bus: EventBus | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Build the selector and scheduler and wire them to this session."""
        self._bus = bus or EventBus()
        self._scheduler = FlushScheduler(
            extractor, flush_config, on_notes=self._handle_notes, telemetry=telemetry
        )
        self._selector = selector_factory(
            TranscriptionCallbacks(
                on_interim=self._handle_interim,
                on_final=self._handle_final,
                on_error=self._handle_error,
                on_session_started=self._handle_started,
                on_session_ended=self._handle_ended,
            )
        )
        self._segments: list[TranscriptSegment] = []
        self._interim = ""
        self._status = ConnectionStatus.STOPPED
        self._error: str | None = None
        self._summary: SermonSummary | None = None
        self._ended = asyncio.Event()
        self._publishing: set[asyncio.Task[None]] = set()
        self._sequence = 0

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def scheduler(self) -> FlushScheduler:
        return self._scheduler

    @property
    def selector(self) -> SourceSelector:
        return self._selector

    @property
    def segments(self) -> tuple[TranscriptSegment, ...]:
        """Return finalized segments in creation order."""
        return tuple(self._segments)

    @property
    def transcript(self) -> str:
        """Return the finalized transcript as one string."""
        return " ".join(segment.text for segment in self._segments)

    @property
    def interim(self) -> str:
        return self._interim

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def error(self) -> str | None:
        """Return the last user-facing error, if any."""
        return self._error

    @property
    def notes(self) -> tuple[SermonNote, ...]:
        return self._scheduler.notes

    @property
    def summary(self) -> SermonSummary | None:
        return self._summary

    @property
    def is_recording(self) -> bool:
        return self._status is not ConnectionStatus.STOPPED

    async def start_recording(self) -> None:
        """Start transcription; ignored while a recording is active or starting."""
        if self.is_recording:
            logger.debug("start_recording ignored; status is %s", self._status.value)
            return
        self._error = None
        self._interim = ""
        self._ended.clear()
        self._set_status(ConnectionStatus.CONNECTING)
        await self._selector.start()
        if not self._selector.start_in_progress and self._selector.active_kind is SourceKind.NONE:
            # Nothing could be started; the failure was reported through on_error.
            self._mark_stopped()

    async def stop_recording(self) -> None:
        """Stop transcription gracefully, keeping transcript and notes."""
        await self._selector.stop()
        self._mark_stopped()

    def clear_transcript(self) -> None:
        """Reset transcript, interim text, note buffers and accumulated notes."""
        self._segments.clear()
        self._sequence = 0
        self._interim = ""
        self._selector.clear_interim()
        self._summary = None
        self._scheduler.clear()
        self._publish(TOPIC_CLEARED, None)

    async def wait_ended(self) -> None:
        """Wait until the current recording has ended for any reason."""
        await self._ended.wait()

    async def finish(self, *, summarize: bool = False) -> SermonSummary | None:
        """Flush buffered text to the extractor and optionally produce a summary."""
        await self._scheduler.drain()
        if not summarize:
            return None
        summary = await self._scheduler.generate_summary()
        self._summary = summary
        self._publish(TOPIC_SUMMARY, summary)
        return summary

    async def flush_events(self) -> None:
        """Wait for queued event bus deliveries to complete."""
        while self._publishing:
            await asyncio.gather(*list(self._publishing), return_exceptions=True)

    async def close(self) -> None:
        """Abort any source, cancel note timers and deliver pending events."""
        self._selector.abort()
        await self._scheduler.close()
        self._mark_stopped()
        await self.flush_events()

    def _handle_started(self) -> None:
        self._error = None
        self._set_status(ConnectionStatus.CONNECTED)

    def _handle_interim(self, text: str) -> None:
        self._interim = text
        self._mark_receiving()
        self._publish(TOPIC_INTERIM, text)

    def _handle_final(self, text: str) -> None:
        self._sequence += 1
        segment = TranscriptSegment(
            segment_id=f"seg-{self._sequence}-{secrets.token_hex(3)}", text=text
        )
        self._segments.append(segment)
        self._interim = ""
        self._mark_receiving()
        self._scheduler.add_text(text)
        self._publish(TOPIC_FINAL, segment)

    def _handle_error(self, error: SourceError) -> None:
        logger.warning("Transcription error (%s): %s", error.kind.value, error.message)
        self._error = error.message
        self._publish(TOPIC_ERROR, error)

    def _handle_ended(self, explicit: bool) -> None:
        logger.info("Transcription session ended (%s)", "stopped" if explicit else "terminated")
        self._mark_stopped()

    def _handle_notes(self, notes: Sequence[SermonNote]) -> None:
        self._publish(TOPIC_NOTES, tuple(notes))

    def _mark_receiving(self) -> None:
        if self._status is ConnectionStatus.CONNECTED:
            self._set_status(ConnectionStatus.RECORDING)

    def _mark_stopped(self) -> None:
        self._interim = ""
        self._set_status(ConnectionStatus.STOPPED)
        self._ended.set()

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        self._publish(TOPIC_STATUS, status)

    def _publish(self, topic: str, event: object) -> None:
        task = asyncio.get_running_loop().create_task(self._bus.publish(topic, event))
        self._publishing.add(task)
        task.add_done_callback(self._publishing.discard)
