"""Local transcription source wrapping a continuous, interim-enabled recognizer.

The recognizer shipped here runs faster-whisper on-device; any object satisfying
:class:`ContinuousRecognizer` can be used instead.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol, cast

from .audio_capture import AudioCapture, frame_duration, pcm16_to_float32, rms_dbfs
from .backoff import MAX_RETRIES_REASON, SessionBackoffController
from .config import BackoffConfig, LocalRecognizerConfig
from .errors import AudioCaptureError, TranscriptionError
from .models import (
    ErrorKind,
    RecognitionBatch,
    RecognitionResult,
    SessionState,
    SessionStatus,
    SourceError,
    SourceKind,
)
from .telemetry import TelemetrySink
from .transcription import InterimSlot, TranscriptionCallbacks, classify_recognizer_error

logger = logging.getLogger(__name__)


class RecognizerListener(Protocol):
    """Callbacks a continuous recognizer invokes on the event loop."""

    def on_start(self) -> None:  # pragma: no cover - protocol
        ...

    def on_result(self, batch: RecognitionBatch) -> None:  # pragma: no cover - protocol
        ...

    def on_error(self, code: str) -> None:  # pragma: no cover - protocol
        ...

    def on_end(self) -> None:  # pragma: no cover - protocol
        ...


class ContinuousRecognizer(Protocol):
    """Platform recognizer producing result batches until its session ends.

    ``start`` raises when a session is already running. Every started session
    ends with exactly one ``on_end`` call, whatever the cause.
    """

    async def start(self, listener: RecognizerListener) -> None:  # pragma: no cover - protocol
        ...

    async def stop(self) -> None:  # pragma: no cover - protocol
        ...

    def abort(self) -> None:  # pragma: no cover - protocol
        ...


class LocalRecognizerSource(RecognizerListener):
    """Transcription source driving a :class:`ContinuousRecognizer` with auto-restart."""

    def __init__(
        self,
        recognizer: ContinuousRecognizer,
        callbacks: TranscriptionCallbacks,
        *,
        restart_policy: BackoffConfig | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Wire *recognizer* to *callbacks* using *restart_policy* for silent ends."""
        self._recognizer = recognizer
        self._callbacks = callbacks
        self._backoff = SessionBackoffController(
            restart_policy or BackoffConfig(),
            restart=self._restart,
            on_end=self._handle_session_end,
            name="local",
            telemetry=telemetry,
        )
        self._interim = InterimSlot()
        self._recognizer_active = False
        self._stopping = False
        self._aborted = False
        self._announced = False
        self._fatal: SourceError | None = None
        self._last_transient: str | None = None

    @property
    def kind(self) -> SourceKind:
        """Return :attr:`SourceKind.LOCAL`."""
        return SourceKind.LOCAL

    @property
    def state(self) -> SessionState:
        """Return the session state tracked by the backoff controller."""
        return self._backoff.state

    @property
    def interim_text(self) -> str:
        """Return the latest unfinalized hypothesis."""
        return self._interim.text

    async def start(self) -> None:
        """Start a recognition session; a start while active is ignored."""
        if not self._backoff.begin():
            logger.debug("Local source start ignored; session is %s", self._backoff.state.value)
            return
        self._stopping = False
        self._aborted = False
        self._announced = False
        self._fatal = None
        self._last_transient = None
        self._interim.clear()
        try:
            await self._recognizer.start(self)
        except Exception as exc:  # noqa: BLE001 - surfaced as a source error
            logger.error("Failed to start local recognizer: %s", exc)
            error = SourceError(
                kind=ErrorKind.FATAL, code="start-failed", message=f"Failed to start: {exc}"
            )
            self._fatal = error
            self._callbacks.on_error(error)
            self._backoff.fail(error.message)

    async def stop(self) -> None:
        """Stop after the recognizer delivers its final results."""
        if self._backoff.state not in (
            SessionState.STARTING,
            SessionState.LISTENING,
            SessionState.RESTARTING,
        ):
            return
        self._stopping = True
        if self._backoff.stop():
            return
        await self._recognizer.stop()
        # Recognizers that never reported a start will not report an end either.
        self._backoff.on_session_ended(True)

    def abort(self) -> None:
        """Tear the session down immediately without emitting further callbacks."""
        self._aborted = True
        self._stopping = True
        self._backoff.cancel()
        self._interim.clear()
        self._recognizer_active = False
        self._recognizer.abort()

    def clear_interim(self) -> None:
        """Drop the pending hypothesis without emitting it."""
        self._interim.clear()

    def on_start(self) -> None:
        """Record a confirmed recognizer session."""
        if self._aborted:
            return
        self._recognizer_active = True
        self._backoff.on_session_started()
        if not self._announced:
            self._announced = True
            logger.info("Local recognition started")
            self._callbacks.on_session_started()
        else:
            logger.debug("Local recognition restarted")

    def on_result(self, batch: RecognitionBatch) -> None:
        """Forward finalized pieces once and overwrite the interim slot."""
        if self._aborted:
            return
        finals: list[str] = []
        interims: list[str] = []
        for result in batch.results[batch.result_index :]:
            (finals if result.is_final else interims).append(result.text)

        final_text = "".join(finals).strip()
        if final_text:
            self._interim.clear()
            self._callbacks.on_final(final_text)

        interim_text = "".join(interims)
        if interim_text.strip():
            self._interim.overwrite(interim_text)
            self._callbacks.on_interim(interim_text)

    def on_error(self, code: str) -> None:
        """Classify a recognizer error; transient errors only feed the restart loop."""
        if self._aborted:
            return
        error = classify_recognizer_error(code)
        if error.kind is ErrorKind.TRANSIENT:
            logger.debug("Transient recognizer error %s; session will restart", code)
            self._last_transient = code
            return
        if error.kind is ErrorKind.FATAL:
            logger.error("Fatal recognizer error %s: %s", code, error.message)
            self._fatal = error
        else:
            logger.warning("Recognizer error %s: %s", code, error.message)
        self._callbacks.on_error(error)

    def on_end(self) -> None:
        """Emit any unfinalized interim text as final, then decide on a restart."""
        if self._aborted:
            return
        self._recognizer_active = False
        pending = self._interim.take()
        if pending:
            logger.info("Emitting unfinalized interim text as final before session end")
            self._callbacks.on_final(pending)

        if self._fatal is not None:
            self._backoff.fail(self._fatal.message)
        elif self._stopping:
            self._backoff.on_session_ended(True)
        else:
            self._backoff.on_session_ended(False, error=self._last_transient)
        self._last_transient = None

    async def _restart(self) -> None:
        if self._aborted or self._stopping:
            return
        await self._recognizer.start(self)

    def _handle_session_end(self, status: SessionStatus) -> None:
        if status.state is SessionState.FAILED and status.reason == MAX_RETRIES_REASON:
            self._callbacks.on_error(
                SourceError(
                    kind=ErrorKind.FATAL,
                    code="max-retries",
                    message="Speech recognition stopped: max retries exceeded",
                )
            )
        self._callbacks.on_session_ended(status.state is SessionState.STOPPED)


class WhisperStreamRecognizer(ContinuousRecognizer):
    """Continuous recognizer running faster-whisper over captured PCM frames.

    Speech is tracked with an RMS level gate. The growing utterance is
    re-transcribed every ``interim_interval`` seconds of speech (interim result)
    and once more when trailing silence reaches ``endpoint_silence_ms`` or the
    utterance reaches ``max_utterance_seconds`` (final result). A session that
    hears nothing for ``no_speech_timeout`` reports ``no-speech`` and ends, like
    platform recognizers do.
    """

    def __init__(self, capture: AudioCapture, config: LocalRecognizerConfig) -> None:
        """Validate the faster-whisper dependency and bind *capture*."""
        try:
            module = importlib.import_module("faster_whisper")
        except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency missing
            raise TranscriptionError(
                "faster-whisper package not installed. "
                "Install with the 'transcription-local' extra."
            ) from exc
        self._whisper_model_cls = getattr(module, "WhisperModel", None)
        if self._whisper_model_cls is None:  # pragma: no cover - unexpected API surface
            raise TranscriptionError("faster_whisper.WhisperModel not found in installed package")
        self._capture = capture
        self._config = config
        self._frames: AsyncIterator[bytes] | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._model: object | None = None
        self._load_lock = asyncio.Lock()
        self._model_lock = asyncio.Lock()

    async def start(self, listener: RecognizerListener) -> None:
        """Start a session reading from the shared capture stream."""
        if self._task is not None and not self._task.done():
            raise TranscriptionError("Recognizer session already running")
        await self._ensure_model()
        if self._frames is None:
            self._frames = aiter(self._capture.frames())
        self._stopping = False
        self._task = asyncio.create_task(self._run(listener))

    async def stop(self) -> None:
        """Finish the current utterance and end the session."""
        self._stopping = True
        task = self._task
        if task is not None and not task.done():
            await task

    def abort(self) -> None:
        """Cancel the session task without finalizing."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()

    async def _run(self, listener: RecognizerListener) -> None:
        assert self._frames is not None
        config = self._config
        endpoint_seconds = config.endpoint_silence_ms / 1000.0
        utterance = bytearray()
        speech_seen = False
        silence_run = 0.0
        since_interim = 0.0
        idle = 0.0
        listener.on_start()
        try:
            while not self._stopping:
                try:
                    frame = await anext(self._frames)
                except StopAsyncIteration:
                    listener.on_error("audio-ended")
                    break
                duration = frame_duration(frame, config.sample_rate)
                if rms_dbfs(frame) > config.silence_threshold_db:
                    speech_seen = True
                    silence_run = 0.0
                    idle = 0.0
                else:
                    silence_run += duration
                    if not speech_seen:
                        idle += duration

                if speech_seen:
                    utterance.extend(frame)
                    since_interim += duration
                    spoken = frame_duration(bytes(utterance), config.sample_rate)
                    if silence_run >= endpoint_seconds or spoken >= config.max_utterance_seconds:
                        await self._emit(listener, bytes(utterance), is_final=True)
                        utterance.clear()
                        speech_seen = False
                        silence_run = 0.0
                        since_interim = 0.0
                    elif since_interim >= config.interim_interval:
                        since_interim = 0.0
                        await self._emit(listener, bytes(utterance), is_final=False)
                elif idle >= config.no_speech_timeout:
                    listener.on_error("no-speech")
                    return

            if utterance:
                await self._emit(listener, bytes(utterance), is_final=True)
        except AudioCaptureError as exc:
            logger.error("Audio capture failed: %s", exc)
            listener.on_error("audio-capture")
        except TranscriptionError as exc:
            logger.warning("Local transcription failed: %s", exc)
            listener.on_error("network")
        finally:
            listener.on_end()

    async def _emit(self, listener: RecognizerListener, pcm: bytes, *, is_final: bool) -> None:
        text = await self._transcribe(pcm)
        if not text:
            return
        listener.on_result(
            RecognitionBatch(results=(RecognitionResult(text=text, is_final=is_final),))
        )

    async def _ensure_model(self) -> object:
        if self._model is not None:
            return self._model
        async with self._load_lock:
            if self._model is None:
                try:
                    model_cls = cast(Any, self._whisper_model_cls)
                    self._model = await asyncio.to_thread(
                        model_cls,
                        self._config.model,
                        device=self._config.device,
                        compute_type=self._config.compute_type,
                    )
                except Exception as exc:  # pragma: no cover - propagate load errors
                    raise TranscriptionError(
                        f"Unable to load Whisper model '{self._config.model}': {exc}"
                    ) from exc
        return self._model

    async def _transcribe(self, pcm: bytes) -> str:
        if not pcm:
            return ""
        model = await self._ensure_model()
        async with self._model_lock:
            try:
                return await asyncio.to_thread(self._transcribe_sync, model, pcm)
            except TranscriptionError:
                raise
            except Exception as exc:  # pragma: no cover - defensive
                raise TranscriptionError(f"Local Whisper transcription failed: {exc}") from exc

    def _transcribe_sync(self, model: object, pcm: bytes) -> str:
        samples = pcm16_to_float32(pcm)
        try:
            segments, _info = model.transcribe(  # type: ignore[attr-defined]
                samples,
                language=self._config.language,
                condition_on_previous_text=False,
            )
        except AttributeError as exc:  # pragma: no cover - unexpected API surface
            raise TranscriptionError("Local Whisper model does not expose transcribe()") from exc
        parts: list[str] = []
        for seg in cast(list[Any], segments):
            seg_text = getattr(seg, "text", None)
            if isinstance(seg_text, str):
                cleaned = seg_text.strip()
                if cleaned:
                    parts.append(cleaned)
        return " ".join(parts).strip()
