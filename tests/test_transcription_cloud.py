"""Tests for the cloud relay transcription source."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest
from websockets.exceptions import ConnectionClosedOK

from sermon_scribe.audio_capture import SharedCapture
from sermon_scribe.config import BackoffConfig, CloudRelayConfig
from sermon_scribe.models import ErrorKind, SessionState, SourceError
from sermon_scribe.transcription import TranscriptionCallbacks
from sermon_scribe.transcription_cloud import (
    CLOSE_STREAM_MESSAGE,
    CONNECTION_ERROR_MESSAGE,
    CONNECTION_LOST_MESSAGE,
    CloudRelaySource,
    parse_transcript_event,
)

PROXY_CONNECTED = json.dumps({"type": "proxy_connected"})


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


class FakeRelayConnection:
    """In-memory stand-in for a relay WebSocket connection."""

    def __init__(self, *greeting: str, on_close_stream: Callable[[], None] | None = None) -> None:
        self.incoming: asyncio.Queue[str | None] = asyncio.Queue()
        for message in greeting:
            self.incoming.put_nowait(message)
        self.sent: list[str | bytes] = []
        self.close_code: int | None = None
        self.close_reason = ""
        self._on_close_stream = on_close_stream

    async def send(self, message: str | bytes) -> None:
        self.sent.append(message)
        if message == CLOSE_STREAM_MESSAGE and self._on_close_stream is not None:
            self._on_close_stream()

    async def recv(self) -> str | bytes:
        message = await self.incoming.get()
        if message is None:
            raise ConnectionClosedOK(None, None)
        return message

    def __aiter__(self) -> AsyncIterator[str | bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str | bytes]:
        while True:
            message = await self.incoming.get()
            if message is None:
                return
            yield message

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.server_close(code, reason)

    def server_close(self, code: int, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
            self.incoming.put_nowait(None)

    def push(self, payload: dict[str, Any]) -> None:
        self.incoming.put_nowait(json.dumps(payload))


class Connector:
    """Hand out prepared connections; raise ``OSError`` once they run out."""

    def __init__(self, *connections: FakeRelayConnection | BaseException) -> None:
        self._connections = list(connections)
        self.urls: list[str] = []

    async def __call__(self, url: str) -> FakeRelayConnection:
        self.urls.append(url)
        if not self._connections:
            raise OSError("connection refused")
        item = self._connections.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class QueueCapture:
    """Capture whose frames are pushed by the test; ``None`` ends the stream."""

    sample_rate = 16000

    def __init__(self) -> None:
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue()

    async def frames(self) -> AsyncIterator[bytes]:
        while True:
            frame = await self.queue.get()
            if frame is None:
                return
            yield frame

    async def close(self) -> None:
        return None


def _results(transcript: str, *, final: bool = False) -> dict[str, Any]:
    return {
        "type": "Results",
        "is_final": final,
        "speech_final": final,
        "channel": {"alternatives": [{"transcript": transcript, "confidence": 0.9}]},
    }


def _config(**overrides: Any) -> CloudRelayConfig:
    defaults: dict[str, Any] = {
        "relay_url": "ws://relay.test/api/deepgram-ws",
        "status_url": None,
        "connect_timeout": 0.5,
        "stop_grace": 0.2,
        "reconnect": BackoffConfig(base_delay=0.001, max_delay=0.001, max_attempts=2),
    }
    defaults.update(overrides)
    return CloudRelayConfig(**defaults)


def _source(
    connector: Connector,
    recorder: CallbackRecorder,
    capture: QueueCapture | None = None,
    **overrides: Any,
) -> tuple[CloudRelaySource, QueueCapture]:
    raw = capture or QueueCapture()
    source = CloudRelaySource(
        _config(**overrides), SharedCapture(raw), recorder.callbacks(), connector=connector
    )
    return source, raw


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


def test_parse_transcript_event_reads_first_alternative() -> None:
    event = parse_transcript_event(
        {
            "type": "Results",
            "is_final": False,
            "speech_final": True,
            "channel": {"alternatives": [{"transcript": "Amen", "confidence": 0.5}, {}]},
        }
    )

    assert event is not None
    assert event.text == "Amen"
    assert event.is_final is True
    assert event.confidence == pytest.approx(0.5)


def test_parse_transcript_event_ignores_other_messages() -> None:
    assert parse_transcript_event({"type": "UtteranceEnd"}) is None
    assert parse_transcript_event(_results("")) is None
    assert parse_transcript_event({"type": "Results", "channel": {"alternatives": []}}) is None


@pytest.mark.asyncio
async def test_start_confirms_session_and_streams_audio() -> None:
    conn = FakeRelayConnection(PROXY_CONNECTED)
    connector = Connector(conn)
    recorder = CallbackRecorder()
    source, capture = _source(connector, recorder)

    await source.start()
    await capture.queue.put(b"\x01\x02")
    await _until(lambda: b"\x01\x02" in conn.sent)

    assert recorder.started == 1
    assert source.state is SessionState.LISTENING
    assert connector.urls == ["ws://relay.test/api/deepgram-ws"]
    source.abort()


@pytest.mark.asyncio
async def test_interim_overwrites_and_final_is_emitted_once() -> None:
    conn = FakeRelayConnection(PROXY_CONNECTED)
    recorder = CallbackRecorder()
    source, _capture = _source(Connector(conn), recorder)
    await source.start()

    conn.push(_results("for God so"))
    conn.push(_results("for God so loved"))
    conn.push(_results(" For God so loved the world. ", final=True))
    conn.push({"type": "Metadata"})
    await _until(lambda: bool(recorder.finals))

    assert recorder.interims == ["for God so", "for God so loved"]
    assert recorder.finals == ["For God so loved the world."]
    assert source.interim_text == ""
    source.abort()


@pytest.mark.asyncio
async def test_not_configured_relay_is_unavailable() -> None:
    conn = FakeRelayConnection(json.dumps({"error": "DEEPGRAM_API_KEY not configured"}))
    recorder = CallbackRecorder()
    source, _capture = _source(Connector(conn), recorder)

    await source.start()

    assert recorder.started == 0
    assert recorder.errors == [
        SourceError(
            kind=ErrorKind.UNAVAILABLE, code="relay", message="DEEPGRAM_API_KEY not configured"
        )
    ]
    assert recorder.ended == [False]
    assert source.state is SessionState.FAILED
    assert conn.close_code is not None


@pytest.mark.asyncio
async def test_connection_refused_is_unavailable() -> None:
    recorder = CallbackRecorder()
    source, _capture = _source(Connector(OSError("refused")), recorder)

    await source.start()

    assert [e.message for e in recorder.errors] == [CONNECTION_ERROR_MESSAGE]
    assert recorder.errors[0].kind is ErrorKind.UNAVAILABLE
    assert recorder.ended == [False]


@pytest.mark.asyncio
async def test_unconfirmed_connection_times_out() -> None:
    conn = FakeRelayConnection()
    recorder = CallbackRecorder()
    source, _capture = _source(Connector(conn), recorder, connect_timeout=0.05)

    await source.start()

    assert len(recorder.errors) == 1
    assert recorder.errors[0].kind is ErrorKind.UNAVAILABLE
    assert "did not confirm" in recorder.errors[0].message
    assert conn.close_code is not None
    assert recorder.ended == [False]


@pytest.mark.asyncio
async def test_abnormal_close_reconnects_and_keeps_streaming() -> None:
    first = FakeRelayConnection(PROXY_CONNECTED)
    second = FakeRelayConnection(PROXY_CONNECTED)
    connector = Connector(first, second)
    recorder = CallbackRecorder()
    source, capture = _source(connector, recorder)
    await source.start()

    first.push(_results("the Lord is my"))
    await _until(lambda: bool(recorder.interims))
    first.server_close(1006)
    await _until(lambda: len(connector.urls) == 2 and source.state is SessionState.LISTENING)
    await capture.queue.put(b"frame")
    await _until(lambda: b"frame" in second.sent)

    assert recorder.finals == ["the Lord is my"]
    assert recorder.started == 1
    assert recorder.ended == []
    assert b"frame" not in first.sent
    source.abort()


@pytest.mark.asyncio
async def test_reconnect_exhaustion_reports_lost_connection() -> None:
    conn = FakeRelayConnection(PROXY_CONNECTED)
    connector = Connector(conn)
    recorder = CallbackRecorder()
    source, _capture = _source(connector, recorder)
    await source.start()

    conn.server_close(1011)
    await _until(lambda: bool(recorder.ended))

    assert len(connector.urls) == 3
    assert recorder.errors == [
        SourceError(kind=ErrorKind.UNAVAILABLE, code="relay", message=CONNECTION_LOST_MESSAGE)
    ]
    assert recorder.ended == [False]
    assert source.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_normal_close_ends_session_and_flushes_interim() -> None:
    conn = FakeRelayConnection(PROXY_CONNECTED)
    connector = Connector(conn)
    recorder = CallbackRecorder()
    source, _capture = _source(connector, recorder)
    await source.start()

    conn.push(_results("blessed are the meek"))
    conn.server_close(1000)
    await _until(lambda: bool(recorder.ended))

    assert recorder.finals == ["blessed are the meek"]
    assert recorder.ended == [True]
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_cleared_interim_is_not_flushed_on_close() -> None:
    conn = FakeRelayConnection(PROXY_CONNECTED)
    recorder = CallbackRecorder()
    source, _capture = _source(Connector(conn), recorder)
    await source.start()

    conn.push(_results("text said before clearing"))
    await _until(lambda: bool(recorder.interims))
    source.clear_interim()
    conn.server_close(1000)
    await _until(lambda: bool(recorder.ended))

    assert source.interim_text == ""
    assert recorder.finals == []
    assert recorder.ended == [True]


@pytest.mark.asyncio
async def test_stop_sends_close_stream_and_waits_for_final_results() -> None:
    holder: dict[str, FakeRelayConnection] = {}

    def finalize() -> None:
        conn = holder["conn"]
        conn.push(_results("and the truth shall make you free.", final=True))
        conn.server_close(1000)

    conn = FakeRelayConnection(PROXY_CONNECTED, on_close_stream=finalize)
    holder["conn"] = conn
    recorder = CallbackRecorder()
    source, _capture = _source(Connector(conn), recorder)
    await source.start()

    await source.stop()

    assert CLOSE_STREAM_MESSAGE in conn.sent
    assert recorder.finals == ["and the truth shall make you free."]
    assert recorder.ended == [True]
    assert source.state is SessionState.STOPPED


@pytest.mark.asyncio
async def test_stop_closes_connection_after_grace_period() -> None:
    conn = FakeRelayConnection(PROXY_CONNECTED)
    recorder = CallbackRecorder()
    source, _capture = _source(Connector(conn), recorder, stop_grace=0.05)
    await source.start()

    await source.stop()

    assert conn.close_code == 1000
    assert conn.close_reason == "User stopped recording"
    assert recorder.ended == [True]


@pytest.mark.asyncio
async def test_relay_error_during_session_is_fatal() -> None:
    conn = FakeRelayConnection(PROXY_CONNECTED)
    connector = Connector(conn)
    recorder = CallbackRecorder()
    source, _capture = _source(connector, recorder)
    await source.start()

    conn.push({"error": "Deepgram HTTP 402: insufficient credit"})
    conn.server_close(1011)
    await _until(lambda: bool(recorder.ended))

    assert [e.kind for e in recorder.errors] == [ErrorKind.FATAL]
    assert recorder.ended == [False]
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_end_of_audio_asks_provider_to_finalize() -> None:
    conn = FakeRelayConnection(PROXY_CONNECTED)
    recorder = CallbackRecorder()
    source, capture = _source(Connector(conn), recorder)
    await source.start()

    await capture.queue.put(b"last")
    await capture.queue.put(None)
    await _until(lambda: CLOSE_STREAM_MESSAGE in conn.sent)

    assert conn.sent == [b"last", CLOSE_STREAM_MESSAGE]
    source.abort()


@pytest.mark.asyncio
async def test_abort_closes_connection_without_callbacks() -> None:
    conn = FakeRelayConnection(PROXY_CONNECTED)
    recorder = CallbackRecorder()
    source, _capture = _source(Connector(conn), recorder)
    await source.start()
    conn.push(_results("unfinished thought"))
    await _until(lambda: bool(recorder.interims))

    source.abort()
    await _until(lambda: conn.close_code is not None)
    await asyncio.sleep(0.01)

    assert recorder.finals == []
    assert recorder.ended == []
    assert source.state is SessionState.STOPPED


def _probe_source(handler: Callable[[httpx.Request], httpx.Response]) -> CloudRelaySource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CloudRelaySource(
        _config(status_url="http://relay.test/api/deepgram"),
        QueueCapture(),
        CallbackRecorder().callbacks(),
        connector=Connector(),
        http_client=client,
    )


@pytest.mark.asyncio
async def test_probe_reports_configured_relay_available() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"configured": True, "model": "nova-3"})

    assert await _probe_source(handler).is_available() is True
    assert seen == ["http://relay.test/api/deepgram"]


@pytest.mark.asyncio
async def test_probe_treats_503_as_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        _ = request
        return httpx.Response(503, json={"error": "DEEPGRAM_API_KEY not configured"})

    assert await _probe_source(handler).is_available() is False


@pytest.mark.asyncio
async def test_probe_treats_transport_failure_as_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    assert await _probe_source(handler).is_available() is False


@pytest.mark.asyncio
async def test_probe_skipped_without_status_url() -> None:
    source = CloudRelaySource(
        _config(), QueueCapture(), CallbackRecorder().callbacks(), connector=Connector()
    )

    assert await source.is_available() is True
