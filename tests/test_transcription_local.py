"""Tests for the local transcription source and the faster-whisper recognizer."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any

import numpy as np
import pytest

from sermon_scribe.config import BackoffConfig, LocalRecognizerConfig
from sermon_scribe.models import (
    ErrorKind,
    RecognitionBatch,
    RecognitionResult,
    SessionState,
    SourceError,
)
from sermon_scribe.transcription import TranscriptionCallbacks
from sermon_scribe.transcription_local import (
    LocalRecognizerSource,
    RecognizerListener,
    WhisperStreamRecognizer,
)

FAST = BackoffConfig(base_delay=0.001, max_delay=0.001, max_attempts=3)
FRAME_SAMPLES = 1600  # 0.1s at 16 kHz


class CallbackRecorder:
    """Collect everything a source reports."""

    def __init__(self) -> None:
        self.interims: list[str] = []
        self.finals: list[str] = []
        self.errors: list[SourceError] = []
        self.started = 0
        self.ended: list[bool] = []

    def callbacks(self) -> TranscriptionCallbacks:
        return TranscriptionCallbacks(
            on_interim=self.interims.append,
            on_final=self.finals.append,
            on_error=self.errors.append,
            on_session_started=self._started,
            on_session_ended=self.ended.append,
        )

    def _started(self) -> None:
        self.started += 1


class FakeRecognizer:
    """Recognizer double driven explicitly by the test."""

    def __init__(self) -> None:
        self.listener: RecognizerListener | None = None
        self.running = False
        self.fail_start = False
        self.starts = 0
        self.stops = 0
        self.aborts = 0

    async def start(self, listener: RecognizerListener) -> None:
        if self.fail_start:
            raise RuntimeError("recognizer busy")
        if self.running:
            raise RuntimeError("already started")
        self.starts += 1
        self.running = True
        self.listener = listener
        listener.on_start()

    async def stop(self) -> None:
        self.stops += 1
        if self.running:
            self.end()

    def abort(self) -> None:
        self.aborts += 1
        self.running = False

    def result(self, *results: RecognitionResult, index: int = 0) -> None:
        assert self.listener is not None
        self.listener.on_result(RecognitionBatch(results=results, result_index=index))

    def end(self, error: str | None = None) -> None:
        assert self.listener is not None
        if error is not None:
            self.listener.on_error(error)
        self.running = False
        self.listener.on_end()


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


def _source(
    recognizer: FakeRecognizer, recorder: CallbackRecorder, policy: BackoffConfig = FAST
) -> LocalRecognizerSource:
    return LocalRecognizerSource(recognizer, recorder.callbacks(), restart_policy=policy)


@pytest.mark.asyncio
async def test_silent_end_restarts_without_second_announcement() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)

    await source.start()
    assert recorder.started == 1
    assert source.state is SessionState.LISTENING

    recognizer.end()
    await _until(lambda: recognizer.starts == 2)

    assert recorder.started == 1
    assert recorder.ended == []
    assert source.state is SessionState.LISTENING


@pytest.mark.asyncio
async def test_finals_emitted_once_and_interim_overwritten() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)
    await source.start()

    first = RecognitionResult(text="In the beginning", is_final=True)
    recognizer.result(first, RecognitionResult(text=" was the", is_final=False))
    recognizer.result(first, RecognitionResult(text=" was the Word", is_final=False), index=1)
    recognizer.result(
        first, RecognitionResult(text="was the Word.", is_final=True), index=1
    )

    assert recorder.finals == ["In the beginning", "was the Word."]
    assert recorder.interims == [" was the", " was the Word"]
    assert source.interim_text == ""


@pytest.mark.asyncio
async def test_unfinalized_interim_is_emitted_as_final_on_stop() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)
    await source.start()
    recognizer.result(RecognitionResult(text="grace upon grace ", is_final=False))

    await source.stop()

    assert recorder.finals == ["grace upon grace"]
    assert recorder.ended == [True]
    assert source.state is SessionState.STOPPED
    assert recognizer.stops == 1


@pytest.mark.asyncio
async def test_cleared_interim_is_not_finalized_on_stop() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)
    await source.start()
    recognizer.result(RecognitionResult(text="text said before clearing", is_final=False))

    source.clear_interim()
    await source.stop()

    assert source.interim_text == ""
    assert recorder.finals == []
    assert recorder.ended == [True]


@pytest.mark.asyncio
async def test_transient_error_is_not_surfaced() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)
    await source.start()

    recognizer.end("no-speech")
    await _until(lambda: recognizer.starts == 2)

    assert recorder.errors == []
    assert recorder.ended == []
    await source.stop()
    assert recorder.ended == [True]


@pytest.mark.asyncio
async def test_fatal_error_surfaces_and_suppresses_restart() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)
    await source.start()

    recognizer.end("not-allowed")
    await asyncio.sleep(0.02)

    assert recognizer.starts == 1
    assert [e.code for e in recorder.errors] == ["not-allowed"]
    assert recorder.errors[0].kind is ErrorKind.FATAL
    assert recorder.errors[0].message == "Microphone permission denied. Please allow access."
    assert recorder.ended == [False]
    assert source.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_unknown_error_is_a_warning_that_keeps_restarting() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)
    await source.start()

    recognizer.end("bad-grammar")
    await _until(lambda: recognizer.starts == 2)

    assert recorder.errors == [
        SourceError(
            kind=ErrorKind.WARNING,
            code="bad-grammar",
            message="Speech recognition error: bad-grammar",
        )
    ]
    assert recorder.ended == []
    source.abort()


@pytest.mark.asyncio
async def test_restart_budget_exhaustion_reports_max_retries() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)
    await source.start()

    recognizer.fail_start = True
    recognizer.end()
    await _until(lambda: bool(recorder.ended))

    assert recorder.ended == [False]
    assert [e.code for e in recorder.errors] == ["max-retries"]
    assert source.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_start_failure_is_fatal() -> None:
    recognizer = FakeRecognizer()
    recognizer.fail_start = True
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)

    await source.start()

    assert recorder.started == 0
    assert [e.code for e in recorder.errors] == ["start-failed"]
    assert recorder.ended == [False]
    assert source.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_stop_during_restart_delay_cancels_restart() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder, BackoffConfig(base_delay=0.2, max_delay=0.2))
    await source.start()

    recognizer.end()
    await source.stop()
    await asyncio.sleep(0.25)

    assert recognizer.starts == 1
    assert recognizer.stops == 0
    assert recorder.ended == [True]


@pytest.mark.asyncio
async def test_abort_emits_nothing_further() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)
    await source.start()
    recognizer.result(RecognitionResult(text="pending", is_final=False))

    source.abort()
    recognizer.end("network")

    assert recognizer.aborts == 1
    assert recorder.finals == []
    assert recorder.ended == []
    assert source.state is SessionState.STOPPED


@pytest.mark.asyncio
async def test_second_start_while_active_is_ignored() -> None:
    recognizer = FakeRecognizer()
    recorder = CallbackRecorder()
    source = _source(recognizer, recorder)

    await source.start()
    await source.start()

    assert recognizer.starts == 1
    assert recorder.started == 1


# --- faster-whisper recognizer -------------------------------------------------------


class DummySegment:
    """Transcription segment exposing text."""

    def __init__(self, text: str) -> None:
        self.text = text


@dataclass(slots=True)
class DummyModel:
    """Return a canned transcript and count calls."""

    text: str = "amazing grace"
    calls: int = 0
    last_kwargs: dict[str, object] | None = None

    def transcribe(self, samples: Any, **kwargs: object) -> tuple[list[Any], SimpleNamespace]:
        _ = samples
        self.calls += 1
        self.last_kwargs = dict(kwargs)
        return [DummySegment(f" {self.text} ")], SimpleNamespace()


def _install_dummy_module(monkeypatch: pytest.MonkeyPatch, model: DummyModel) -> None:
    """Install a fake faster-whisper module returning *model*."""

    def factory(*args: object, **kwargs: object) -> DummyModel:
        _ = args, kwargs
        return model

    dummy_module = SimpleNamespace(WhisperModel=factory)

    def import_module(_: str) -> SimpleNamespace:
        return dummy_module

    monkeypatch.setattr(
        "sermon_scribe.transcription_local.importlib.import_module",
        import_module,
    )


class ListCapture:
    """Capture yielding a fixed list of frames."""

    sample_rate = 16000

    def __init__(self, frames: Iterable[bytes]) -> None:
        self._frames = list(frames)

    async def frames(self) -> AsyncIterator[bytes]:
        for frame in self._frames:
            yield frame

    async def close(self) -> None:
        return None


class ListenerRecorder:
    """Record listener calls in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []
        self.ended = asyncio.Event()

    def on_start(self) -> None:
        self.calls.append(("start", None))

    def on_result(self, batch: RecognitionBatch) -> None:
        for result in batch.results[batch.result_index :]:
            self.calls.append(("final" if result.is_final else "interim", result.text))

    def on_error(self, code: str) -> None:
        self.calls.append(("error", code))

    def on_end(self) -> None:
        self.calls.append(("end", None))
        self.ended.set()


def _loud(count: int) -> list[bytes]:
    return [np.full(FRAME_SAMPLES, 8000, dtype="<i2").tobytes() for _ in range(count)]


def _silent(count: int) -> list[bytes]:
    return [np.zeros(FRAME_SAMPLES, dtype="<i2").tobytes() for _ in range(count)]


def _config(**overrides: Any) -> LocalRecognizerConfig:
    defaults: dict[str, Any] = {
        "interim_interval": 0.2,
        "endpoint_silence_ms": 300,
        "no_speech_timeout": 1.0,
    }
    defaults.update(overrides)
    return LocalRecognizerConfig(**defaults)


@pytest.mark.asyncio
async def test_whisper_recognizer_emits_interims_then_final(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    model = DummyModel()
    _install_dummy_module(monkeypatch, model)
    capture = ListCapture([*_loud(5), *_silent(4)])
    recognizer = WhisperStreamRecognizer(capture, _config())
    listener = ListenerRecorder()

    await recognizer.start(listener)
    await asyncio.wait_for(listener.ended.wait(), timeout=2.0)

    kinds = [kind for kind, _ in listener.calls]
    assert kinds[0] == "start"
    assert "interim" in kinds
    assert kinds.count("final") == 1
    assert kinds.index("final") > kinds.index("interim")
    assert ("final", "amazing grace") in listener.calls
    assert listener.calls[-2:] == [("error", "audio-ended"), ("end", None)]
    assert model.last_kwargs is not None
    assert model.last_kwargs.get("language") == "en"


@pytest.mark.asyncio
async def test_whisper_recognizer_reports_no_speech(monkeypatch: pytest.MonkeyPatch) -> None:
    model = DummyModel()
    _install_dummy_module(monkeypatch, model)
    capture = ListCapture(_silent(15))
    recognizer = WhisperStreamRecognizer(capture, _config())
    listener = ListenerRecorder()

    await recognizer.start(listener)
    await asyncio.wait_for(listener.ended.wait(), timeout=2.0)

    assert listener.calls == [("start", None), ("error", "no-speech"), ("end", None)]
    assert model.calls == 0


@pytest.mark.asyncio
async def test_whisper_recognizer_resumes_shared_stream(monkeypatch: pytest.MonkeyPatch) -> None:
    """A restarted session continues from the frame where the last one ended."""
    model = DummyModel()
    _install_dummy_module(monkeypatch, model)
    capture = ListCapture([*_silent(11), *_loud(3), *_silent(4)])
    recognizer = WhisperStreamRecognizer(capture, _config())

    first = ListenerRecorder()
    await recognizer.start(first)
    await asyncio.wait_for(first.ended.wait(), timeout=2.0)
    assert ("error", "no-speech") in first.calls

    second = ListenerRecorder()
    await recognizer.start(second)
    await asyncio.wait_for(second.ended.wait(), timeout=2.0)

    assert ("final", "amazing grace") in second.calls
    assert second.calls[-2:] == [("error", "audio-ended"), ("end", None)]


@pytest.mark.asyncio
async def test_whisper_recognizer_stop_finalizes_current_utterance(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    model = DummyModel()
    _install_dummy_module(monkeypatch, model)

    class EndlessCapture(ListCapture):
        async def frames(self) -> AsyncIterator[bytes]:
            frame = _loud(1)[0]
            while True:
                yield frame
                await asyncio.sleep(0.001)

    recognizer = WhisperStreamRecognizer(
        EndlessCapture([]), _config(interim_interval=100.0, max_utterance_seconds=100.0)
    )
    listener = ListenerRecorder()
    await recognizer.start(listener)
    await asyncio.sleep(0.02)

    await recognizer.stop()

    assert listener.calls[-2:] == [("final", "amazing grace"), ("end", None)]
