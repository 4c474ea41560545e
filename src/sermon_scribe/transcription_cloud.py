"""Cloud transcription source streaming audio through the relay server."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any, Protocol

import httpx
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI

from .audio_capture import AudioCapture
from .backoff import MAX_RETRIES_REASON, SessionBackoffController
from .config import CloudRelayConfig
from .errors import AudioCaptureError, ProviderUnavailableError
from .models import (
    ErrorKind,
    SessionState,
    SessionStatus,
    SourceError,
    SourceKind,
    TranscriptEvent,
)
from .telemetry import TelemetrySink
from .transcription import InterimSlot, TranscriptionCallbacks, classify_cloud_error

logger = logging.getLogger(__name__)

PROXY_CONNECTED = "proxy_connected"
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})
CONNECTION_ERROR_MESSAGE = "Connection error - check your internet"
CONNECTION_LOST_MESSAGE = "Connection error - relay connection lost"
NORMAL_CLOSURE = 1000


class RelayConnection(Protocol):
    """Subset of a websockets client connection used by :class:`CloudRelaySource`."""

    @property
    def close_code(self) -> int | None:  # pragma: no cover - protocol
        ...

    async def send(self, message: str | bytes) -> None:  # pragma: no cover - protocol
        ...

    async def recv(self) -> str | bytes:  # pragma: no cover - protocol
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:  # pragma: no cover
        ...

    def __aiter__(self) -> AsyncIterator[str | bytes]:  # pragma: no cover - protocol
        ...


RelayConnector = Callable[[str], Awaitable[RelayConnection]]


async def connect_relay(url: str) -> RelayConnection:
    """Open a WebSocket connection to the relay server."""
    return await connect(url, max_size=None)


def parse_transcript_event(payload: Mapping[str, Any]) -> TranscriptEvent | None:
    """Extract the transcript carried by a provider ``Results`` event.

    Returns ``None`` for other event types, malformed payloads and empty text.
    """
    if payload.get("type") != "Results":
        return None
    channel = payload.get("channel")
    if not isinstance(channel, Mapping):
        return None
    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, list) or not alternatives:
        return None
    best = alternatives[0]
    if not isinstance(best, Mapping):
        return None
    transcript = best.get("transcript")
    if not isinstance(transcript, str) or not transcript:
        return None
    confidence = best.get("confidence")
    return TranscriptEvent(
        text=transcript,
        is_final=bool(payload.get("speech_final") or payload.get("is_final")),
        confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
    )


class CloudRelaySource:
    """Transcription source backed by the relay WebSocket.

    A session is confirmed when the relay reports ``proxy_connected``. Abnormal
    closes of a confirmed session are reconnected on the configured policy;
    the shared audio stream keeps flowing into whichever connection is current.
    """

    def __init__(
        self,
        config: CloudRelayConfig,
        capture: AudioCapture,
        callbacks: TranscriptionCallbacks,
        *,
        connector: RelayConnector | None = None,
        http_client: httpx.AsyncClient | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Bind the source to *capture* and report through *callbacks*."""
        self._config = config
        self._capture = capture
        self._callbacks = callbacks
        self._connector = connector or connect_relay
        self._http_client = http_client
        self._backoff = SessionBackoffController(
            config.reconnect,
            restart=self._reconnect,
            on_end=self._handle_session_end,
            name="cloud",
            telemetry=telemetry,
        )
        self._interim = InterimSlot()
        self._frames: AsyncIterator[bytes] | None = None
        self._ws: RelayConnection | None = None
        self._session_task: asyncio.Task[None] | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._stopping = False
        self._aborted = False
        self._announced = False
        self._fatal: SourceError | None = None

    @property
    def kind(self) -> SourceKind:
        """Return :attr:`SourceKind.CLOUD`."""
        return SourceKind.CLOUD

    @property
    def state(self) -> SessionState:
        """Return the session state tracked by the reconnect controller."""
        return self._backoff.state

    @property
    def interim_text(self) -> str:
        """Return the latest unfinalized hypothesis."""
        return self._interim.text

    async def is_available(self) -> bool:
        """Probe the relay status endpoint; ``True`` when the provider is configured."""
        status_url = self._config.status_url
        if status_url is None:
            return True
        try:
            if self._http_client is not None:
                response = await self._http_client.get(
                    str(status_url), timeout=self._config.probe_timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._config.probe_timeout) as client:
                    response = await client.get(str(status_url))
        except httpx.HTTPError as exc:
            logger.info("Relay status probe failed: %s", exc)
            return False
        if response.status_code != httpx.codes.OK:
            logger.info("Relay reports provider unavailable (HTTP %d)", response.status_code)
            return False
        return True

    async def start(self) -> None:
        """Connect to the relay and wait for the provider session to open."""
        if not self._backoff.begin():
            logger.debug("Cloud source start ignored; session is %s", self._backoff.state.value)
            return
        self._stopping = False
        self._aborted = False
        self._announced = False
        self._fatal = None
        self._interim.clear()
        if self._frames is None:
            self._frames = aiter(self._capture.frames())
        try:
            ws = await self._open()
        except ProviderUnavailableError as exc:
            error = classify_cloud_error(str(exc))
            logger.warning("Cloud transcription unavailable: %s", exc)
            self._callbacks.on_error(error)
            if not self._aborted:
                self._backoff.fail(str(exc))
            return
        if self._aborted or self._stopping:
            await ws.close()
            self._backoff.on_session_ended(True)
            return
        self._attach(ws)

    async def stop(self) -> None:
        """Send ``CloseStream`` and give the provider a moment to deliver final results."""
        if self._backoff.state not in (
            SessionState.STARTING,
            SessionState.LISTENING,
            SessionState.RESTARTING,
        ):
            return
        self._stopping = True
        if self._backoff.stop():
            return
        ws = self._ws
        task = self._session_task
        if ws is not None:
            with contextlib.suppress(ConnectionClosed):
                await ws.send(CLOSE_STREAM_MESSAGE)
        if task is not None and not task.done():
            try:
                async with asyncio.timeout(self._config.stop_grace):
                    await asyncio.shield(task)
            except TimeoutError:
                logger.debug("Relay did not close within %.1fs; closing", self._config.stop_grace)
                if ws is not None:
                    await ws.close(NORMAL_CLOSURE, "User stopped recording")
                await task
        self._backoff.on_session_ended(True)

    def clear_interim(self) -> None:
        """Drop the pending hypothesis without emitting it."""
        self._interim.clear()

    def abort(self) -> None:
        """Drop the connection immediately; no further callbacks are emitted."""
        self._aborted = True
        self._stopping = True
        self._backoff.cancel()
        self._interim.clear()
        for task in (self._pump_task, self._session_task):
            if task is not None and not task.done():
                task.cancel()
        ws = self._ws
        self._ws = None
        if ws is not None:
            closer = asyncio.get_running_loop().create_task(self._close_quietly(ws))
            self._background.add(closer)
            closer.add_done_callback(self._background.discard)

    async def _open(self) -> RelayConnection:
        """Connect and wait for ``proxy_connected`` within the connect timeout."""
        timeout = self._config.connect_timeout
        ws: RelayConnection | None = None
        try:
            async with asyncio.timeout(timeout):
                ws = await self._connector(self._config.relay_url)
                await self._await_proxy_connected(ws)
        except TimeoutError as exc:
            if ws is not None:
                await self._close_quietly(ws)
            raise ProviderUnavailableError(
                f"Connection error - relay did not confirm the provider within {timeout:.1f}s"
            ) from exc
        except InvalidStatus as exc:
            status = exc.response.status_code
            raise ProviderUnavailableError(
                f"Relay connection failed: HTTP {status}", status_code=status
            ) from exc
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            logger.debug("Relay connection to %s failed: %s", self._config.relay_url, exc)
            raise ProviderUnavailableError(CONNECTION_ERROR_MESSAGE) from exc
        except ConnectionClosed as exc:
            raise ProviderUnavailableError("Relay connection failed before confirmation") from exc
        return ws

    async def _await_proxy_connected(self, ws: RelayConnection) -> None:
        while True:
            raw = await ws.recv()
            payload = _decode(raw)
            if payload is None:
                continue
            if payload.get("type") == PROXY_CONNECTED:
                logger.info("Relay confirmed the provider connection")
                return
            error = payload.get("error")
            if error is not None:
                await self._close_quietly(ws)
                raise ProviderUnavailableError(str(error))

    def _attach(self, ws: RelayConnection) -> None:
        self._ws = ws
        self._backoff.on_session_started()
        loop = asyncio.get_running_loop()
        self._pump_task = loop.create_task(self._pump_audio(ws))
        self._session_task = loop.create_task(self._run_session(ws))
        if not self._announced:
            self._announced = True
            self._callbacks.on_session_started()

    async def _reconnect(self) -> None:
        if self._aborted or self._stopping:
            return
        ws = await self._open()
        if self._aborted or self._stopping:
            await self._close_quietly(ws)
            return
        logger.info("Reconnected to relay")
        self._attach(ws)

    async def _run_session(self, ws: RelayConnection) -> None:
        try:
            async for message in ws:
                self._handle_message(message)
        except ConnectionClosed:
            pass
        finally:
            pump = self._pump_task
            if pump is not None and not pump.done():
                pump.cancel()
        if self._ws is ws:
            self._ws = None
        self._on_closed(ws.close_code)

    async def _pump_audio(self, ws: RelayConnection) -> None:
        frames = self._frames
        if frames is None:
            return
        try:
            async for frame in frames:
                if self._stopping:
                    return
                await ws.send(frame)
        except ConnectionClosed:
            return
        except AudioCaptureError as exc:
            logger.error("Audio capture failed: %s", exc)
            self._fatal = SourceError(kind=ErrorKind.FATAL, code="audio-capture", message=str(exc))
            self._callbacks.on_error(self._fatal)
            await self._close_quietly(ws)
            return
        logger.info("Audio input ended; asking the provider to finalize")
        with contextlib.suppress(ConnectionClosed):
            await ws.send(CLOSE_STREAM_MESSAGE)

    def _handle_message(self, raw: str | bytes) -> None:
        if self._aborted:
            return
        payload = _decode(raw)
        if payload is None:
            return
        error = payload.get("error")
        if error is not None:
            source_error = classify_cloud_error(str(error))
            logger.warning("Relay error: %s", error)
            self._fatal = source_error
            self._callbacks.on_error(source_error)
            return
        result = parse_transcript_event(payload)
        if result is None:
            return
        if result.is_final:
            self._interim.clear()
            text = result.text.strip()
            if text:
                self._callbacks.on_final(text)
        else:
            self._interim.overwrite(result.text)
            self._callbacks.on_interim(result.text)

    def _on_closed(self, code: int | None) -> None:
        if self._aborted:
            return
        pending = self._interim.take()
        if pending:
            logger.info("Emitting unfinalized interim text as final before session end")
            self._callbacks.on_final(pending)
        if self._fatal is not None:
            self._backoff.fail(self._fatal.message)
        elif self._stopping or code == NORMAL_CLOSURE:
            logger.info("Relay session closed (code=%s)", code)
            self._backoff.on_session_ended(True)
        else:
            logger.warning("Relay session closed abnormally (code=%s)", code)
            self._backoff.on_session_ended(False, error=f"close code {code}")

    def _handle_session_end(self, status: SessionStatus) -> None:
        if self._aborted:
            return
        if status.state is SessionState.FAILED and status.reason == MAX_RETRIES_REASON:
            self._callbacks.on_error(classify_cloud_error(CONNECTION_LOST_MESSAGE))
            if self._aborted:
                return
        self._callbacks.on_session_ended(status.state is SessionState.STOPPED)

    @staticmethod
    async def _close_quietly(ws: RelayConnection) -> None:
        try:
            await ws.close()
        except (OSError, ConnectionClosed) as exc:
            logger.debug("Ignoring error while closing relay connection: %s", exc)


def _decode(raw: str | bytes) -> dict[str, Any] | None:
    if isinstance(raw, bytes):
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed relay message: %.80s", raw)
        return None
    if not isinstance(payload, dict):
        return None
    return payload
