"""Choose between the cloud and local transcription sources for one recording."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Literal, Protocol

from .errors import SermonScribeError
from .models import ErrorKind, SourceError, SourceKind
from .telemetry import NullTelemetrySink, SourceFallbackEvent, TelemetrySink
from .transcription import TranscriptionCallbacks, TranscriptionSource

logger = logging.getLogger(__name__)

Preference = Literal["auto", "cloud", "local"]


class ProbedSource(TranscriptionSource, Protocol):
    """Transcription source that can report provider availability before starting."""

    async def is_available(self) -> bool:  # pragma: no cover - protocol
        ...


LocalFactory = Callable[[TranscriptionCallbacks], TranscriptionSource]
CloudFactory = Callable[[TranscriptionCallbacks], ProbedSource]


def select_source_kind(
    *, cloud_available: bool, fallen_back: bool, local_available: bool = True
) -> SourceKind:
    """Return the source to run given provider availability and prior fallback.

    A fallback earlier in the same session rules the cloud out until a fresh
    start resets it.
    """
    if cloud_available and not fallen_back:
        return SourceKind.CLOUD
    if local_available:
        return SourceKind.LOCAL
    return SourceKind.NONE


class SourceSelector:
    """Runs exactly one transcription source per recording, demoting cloud to local.

    Callbacks from a source that has been replaced or aborted are ignored, so the
    caller sees a single stream of events and a single ``on_session_started`` per
    :meth:`start`.
    """

    def __init__(
        self,
        callbacks: TranscriptionCallbacks,
        *,
        local_factory: LocalFactory | None,
        cloud_factory: CloudFactory | None = None,
        preference: Preference = "auto",
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create a selector reporting to *callbacks*."""
        self._callbacks = callbacks
        self._local_factory = local_factory
        self._cloud_factory = cloud_factory
        self._preference = preference
        self._telemetry = telemetry or NullTelemetrySink()
        self._source: TranscriptionSource | None = None
        self._token: object | None = None
        self._active_kind = SourceKind.NONE
        self._start_in_progress = False
        self._fallen_back = False
        self._announced = False
        self._pending_fallback: str | None = None
        self._attempt: object | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active_kind(self) -> SourceKind:
        """Return the kind of the running source, or ``NONE``."""
        return self._active_kind

    @property
    def fallen_back(self) -> bool:
        """Return ``True`` once the cloud source has been demoted this session."""
        return self._fallen_back

    @property
    def start_in_progress(self) -> bool:
        """Return ``True`` between :meth:`start` and a confirmed start or terminal failure."""
        return self._start_in_progress

    async def start(self) -> None:
        """Start a source; a no-op while a start is in progress or a source runs."""
        if self._start_in_progress or self._source is not None:
            logger.debug("Start ignored; a transcription source is already active")
            return
        self._start_in_progress = True
        self._fallen_back = False
        self._announced = False
        self._pending_fallback = None
        attempt = object()
        self._attempt = attempt

        cloud: ProbedSource | None = None
        cloud_token = object()
        if self._cloud_factory is not None and self._preference != "local":
            cloud = self._cloud_factory(self._bind(cloud_token))
            cloud_available = await cloud.is_available()
            if attempt is not self._attempt:
                logger.info("Start abandoned; recording was stopped during the availability probe")
                cloud.abort()
                return
        else:
            cloud_available = False
        kind = select_source_kind(
            cloud_available=cloud_available,
            fallen_back=self._fallen_back,
            local_available=self._local_factory is not None and self._preference != "cloud",
        )

        if kind is SourceKind.CLOUD and cloud is not None:
            logger.info("Starting cloud transcription")
            self._activate(cloud, cloud_token)
            await cloud.start()
        elif kind is SourceKind.LOCAL:
            if cloud is not None:
                logger.info("Cloud transcription unavailable; using local recognizer")
            await self._start_local(attempt)
        else:
            self._start_in_progress = False
            self._callbacks.on_error(
                SourceError(
                    kind=ErrorKind.FATAL,
                    code="unavailable",
                    message="No speech recognition available",
                )
            )
            return

        while self._pending_fallback is not None and attempt is self._attempt:
            self._pending_fallback = None
            await self._start_local(attempt)

    async def stop(self) -> None:
        """Stop the running source gracefully."""
        source = self._source
        self._pending_fallback = None
        self._attempt = None
        if source is None:
            self._start_in_progress = False
            return
        await source.stop()
        if self._source is source:
            self._deactivate()

    def abort(self) -> None:
        """Tear the running source down immediately; emits nothing."""
        source = self._source
        self._attempt = None
        self._deactivate()
        self._pending_fallback = None
        for task in list(self._tasks):
            task.cancel()
        if source is not None:
            source.abort()

    def clear_interim(self) -> None:
        """Discard the running source's unfinalized hypothesis."""
        if self._source is not None:
            self._source.clear_interim()

    async def _start_local(self, attempt: object) -> None:
        if attempt is not self._attempt:
            return
        factory = self._local_factory
        if factory is None:
            self._start_in_progress = False
            return
        token = object()
        try:
            source = factory(self._bind(token))
        except SermonScribeError as exc:
            logger.error("Local transcription unavailable: %s", exc)
            self._start_in_progress = False
            self._callbacks.on_error(
                SourceError(kind=ErrorKind.FATAL, code="unavailable", message=str(exc))
            )
            return
        logger.info("Starting local transcription")
        self._activate(source, token)
        await source.start()

    def _activate(self, source: TranscriptionSource, token: object) -> None:
        self._source = source
        self._token = token
        self._active_kind = source.kind

    def _deactivate(self) -> None:
        self._source = None
        self._token = None
        self._active_kind = SourceKind.NONE
        self._start_in_progress = False

    def _bind(self, token: object) -> TranscriptionCallbacks:
        def current() -> bool:
            return token is self._token

        def on_interim(text: str) -> None:
            if current():
                self._callbacks.on_interim(text)

        def on_final(text: str) -> None:
            if current():
                self._callbacks.on_final(text)

        def on_error(error: SourceError) -> None:
            if current():
                self._handle_error(error)

        def on_session_started() -> None:
            if current():
                self._handle_started()

        def on_session_ended(explicit: bool) -> None:
            if current():
                self._deactivate()
                self._callbacks.on_session_ended(explicit)

        return TranscriptionCallbacks(
            on_interim=on_interim,
            on_final=on_final,
            on_error=on_error,
            on_session_started=on_session_started,
            on_session_ended=on_session_ended,
        )

    def _handle_started(self) -> None:
        self._start_in_progress = False
        if self._announced:
            logger.debug("Suppressing repeated session start from %s", self._active_kind.value)
            return
        self._announced = True
        self._callbacks.on_session_started()

    def _handle_error(self, error: SourceError) -> None:
        source = self._source
        if (
            error.kind is ErrorKind.UNAVAILABLE
            and source is not None
            and source.kind is SourceKind.CLOUD
            and self._preference == "auto"
            and self._local_factory is not None
        ):
            self._fall_back(source, error)
            return
        if error.surfaced:
            self._callbacks.on_error(error)

    def _fall_back(self, cloud: TranscriptionSource, error: SourceError) -> None:
        logger.warning("Falling back to local transcription: %s", error.message)
        self._token = None
        self._source = None
        self._active_kind = SourceKind.NONE
        self._fallen_back = True
        cloud.abort()
        self._telemetry.record_event(
            SourceFallbackEvent(
                from_kind=SourceKind.CLOUD, to_kind=SourceKind.LOCAL, reason=error.message
            )
        )
        if self._start_in_progress:
            self._pending_fallback = error.message
            return
        self._start_in_progress = True
        task = asyncio.get_running_loop().create_task(self._start_local(self._attempt))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
