"""Decide when buffered transcript text is handed to the note extractor.

Finalized text accumulates in a buffer. A flush moves the buffered text out
(new text starts the next generation), calls the extractor and, on failure,
puts the unsent text back in front of whatever arrived meanwhile. At most one
extractor call is in flight.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol

from .config import FlushConfig
from .errors import NoteGenerationError, NotEnoughNotesError
from .models import FlushBuffer, SermonNote, SermonSummary
from .telemetry import FlushErrorEvent, FlushMetrics, NullTelemetrySink, TelemetrySink

logger = logging.getLogger(__name__)

SENTENCE_END = re.compile(r"[.?!]\s*$")
MIN_SUMMARY_NOTES = 2


class NoteExtractor(Protocol):
    """Downstream batch consumer turning transcript text into structured notes."""

    async def extract_notes(
        self,
        new_text: str,
        prior_notes: Sequence[SermonNote],
        prior_references: Sequence[str],
    ) -> list[SermonNote]:  # pragma: no cover - protocol
        """Return notes for *new_text*, skipping points already in *prior_notes*."""
        ...

    async def summarize(self, notes: Sequence[SermonNote]) -> SermonSummary:  # pragma: no cover
        """Return one summary synthesised from *notes*."""
        ...


class TranscriptOnlyExtractor:
    """Extractor used when no note provider is configured; it never produces notes."""

    async def extract_notes(
        self,
        new_text: str,
        prior_notes: Sequence[SermonNote],
        prior_references: Sequence[str],
    ) -> list[SermonNote]:
        return []

    async def summarize(self, notes: Sequence[SermonNote]) -> SermonSummary:
        raise NoteGenerationError("Note generation is not configured")


NotesCallback = Callable[[Sequence[SermonNote]], None]


def count_words(text: str) -> int:
    """Return the number of whitespace-separated words in *text*."""
    return len(text.split())


def ends_sentence(text: str) -> bool:
    """Return ``True`` when *text* ends with ``.``, ``?`` or ``!``."""
    return SENTENCE_END.search(text.strip()) is not None


class FlushScheduler:
    """Buffers final transcript text and gates calls to a :class:`NoteExtractor`."""

    def __init__(
        self,
        extractor: NoteExtractor,
        config: FlushConfig | None = None,
        *,
        on_notes: NotesCallback | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create a scheduler feeding *extractor* according to *config*."""
        self._extractor = extractor
        self._config = config or FlushConfig()
        self._on_notes = on_notes
        self._telemetry = telemetry or NullTelemetrySink()
        self._pending = ""
        self._words = 0
        self._last_flush_at: datetime | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._inflight: asyncio.Task[bool] | None = None
        self._notes: list[SermonNote] = []
        self._references: tuple[str, ...] = ()
        self._epoch = 0

    @property
    def notes(self) -> tuple[SermonNote, ...]:
        """Return the notes accumulated so far."""
        return tuple(self._notes)

    @property
    def references(self) -> tuple[str, ...]:
        """Return the scripture references passed to the extractor as context."""
        return self._references

    def snapshot(self) -> FlushBuffer:
        """Return a point-in-time view of the buffer."""
        return FlushBuffer(
            pending_text=self._pending,
            words_since_flush=self._words,
            last_flush_at=self._last_flush_at,
            timer_pending=self._timer is not None,
            flush_in_flight=self._inflight is not None,
        )

    def update_references(self, references: Sequence[str]) -> None:
        """Replace the reference list sent as context with the next flush."""
        self._references = tuple(references)

    def add_text(self, text: str) -> None:
        """Append a finalized segment and apply the flush policy."""
        cleaned = text.strip()
        words = count_words(cleaned)
        if not words:
            return
        self._pending = f"{self._pending} {cleaned}" if self._pending else cleaned
        self._words += words
        config = self._config

        if self._words >= config.hard_cap_words:
            self._trigger("hard_cap")
            self._arm_timer(restart=True)
            return
        if self._words >= config.soft_threshold_words:
            if ends_sentence(self._pending):
                self._trigger("sentence_boundary")
                self._arm_timer(restart=True)
                return
            logger.debug("Soft threshold reached mid-sentence; buffering (%d words)", self._words)
        if self._timer is None:
            self._arm_timer()

    async def flush_now(self) -> bool:
        """Flush whatever is buffered, ignoring thresholds.

        An in-flight flush is awaited first. Returns ``True`` when an extractor
        call succeeded.
        """
        inflight = self._inflight
        if inflight is not None:
            await asyncio.wait({inflight})
        task = self._trigger("manual")
        if task is None:
            return False
        await asyncio.wait({task})
        if task.cancelled():
            return False
        return task.result()

    async def drain(self) -> bool:
        """Flush the remainder at the end of a recording and disarm the timer."""
        flushed = await self.flush_now()
        self._cancel_timer()
        return flushed

    async def generate_summary(self) -> SermonSummary:
        """Summarise the accumulated notes.

        Raises:
            NotEnoughNotesError: When fewer than two notes are available.
        """
        notes = tuple(self._notes)
        if len(notes) < MIN_SUMMARY_NOTES:
            raise NotEnoughNotesError("Not enough notes to generate summary")
        return await self._extractor.summarize(notes)

    def clear(self) -> None:
        """Reset buffer, counters, timer and notes; an in-flight call is abandoned."""
        self._epoch += 1
        inflight = self._inflight
        self._inflight = None
        if inflight is not None and not inflight.done():
            inflight.cancel()
        self._cancel_timer()
        self._pending = ""
        self._words = 0
        self._last_flush_at = None
        self._notes = []
        self._references = ()

    async def close(self) -> None:
        """Cancel the timer and any in-flight call, waiting for the call to finish."""
        self._cancel_timer()
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            inflight.cancel()
            await asyncio.wait({inflight})

    def _trigger(self, reason: str) -> asyncio.Task[bool] | None:
        if self._inflight is not None:
            logger.debug("Flush (%s) skipped; another flush is in flight", reason)
            return None
        text = self._pending.strip()
        if len(text) < self._config.min_flush_chars:
            logger.debug("Flush (%s) skipped; %d characters buffered", reason, len(text))
            return None
        words = self._words
        self._pending = ""
        self._words = 0
        task = asyncio.get_running_loop().create_task(
            self._run_flush(text, words, reason, self._epoch)
        )
        self._inflight = task
        return task

    async def _run_flush(self, text: str, words: int, reason: str, epoch: int) -> bool:
        started = time.perf_counter()
        logger.info("Flushing %d words to the note extractor (%s)", words, reason)
        try:
            notes = await self._extractor.extract_notes(
                text, tuple(self._notes), self._references
            )
        except Exception as exc:  # noqa: BLE001 - any extractor failure keeps the text
            if epoch != self._epoch:
                return False
            logger.warning("Note extraction failed; keeping %d words buffered: %s", words, exc)
            self._pending = f"{text} {self._pending}".strip()
            self._words += words
            self._telemetry.record_event(
                FlushErrorEvent(words=words, error_type=exc.__class__.__name__, message=str(exc))
            )
            self._finish_attempt()
            return False

        if epoch != self._epoch:
            return False
        self._notes.extend(notes)
        self._last_flush_at = datetime.now(UTC)
        self._telemetry.record_metric(
            FlushMetrics(
                reason=reason,
                words=words,
                characters=len(text),
                notes_returned=len(notes),
                duration_seconds=time.perf_counter() - started,
            )
        )
        logger.info("Extractor returned %d notes (%d total)", len(notes), len(self._notes))
        self._finish_attempt()
        if notes and self._on_notes is not None:
            self._on_notes(tuple(self._notes))
        return True

    def _finish_attempt(self) -> None:
        self._inflight = None
        self._arm_timer(restart=True)

    def _arm_timer(self, *, restart: bool = False) -> None:
        if restart:
            self._cancel_timer()
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._config.backup_interval, self._on_timer)

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def _on_timer(self) -> None:
        self._timer = None
        if self._words > self._config.backup_min_words:
            logger.debug("Backup timer fired with %d words buffered", self._words)
            self._trigger("timer")
        else:
            logger.debug("Backup timer fired below the word floor (%d words)", self._words)
