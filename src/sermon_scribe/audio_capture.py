"""Audio capture sources producing 16-bit mono PCM frames."""

from __future__ import annotations

import asyncio
import importlib
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Protocol

import numpy as np

from .errors import AudioCaptureError

logger = logging.getLogger(__name__)

PCM16_MAX = 32768.0
_RMS_EPSILON = 1e-12


class AudioCapture(Protocol):
    """Protocol for live audio producers."""

    @property
    def sample_rate(self) -> int:  # pragma: no cover - protocol
        """Return the sample rate of emitted frames."""
        ...

    def frames(self) -> AsyncIterator[bytes]:  # pragma: no cover - protocol
        """Yield little-endian PCM16 mono frames until the capture ends."""
        ...

    async def close(self) -> None:  # pragma: no cover - protocol
        """Release the capture device or file."""
        ...


def pcm16_to_float32(payload: bytes) -> np.ndarray:
    """Convert PCM16 bytes to float32 samples in ``[-1.0, 1.0)``."""
    usable = len(payload) - (len(payload) % 2)
    samples = np.frombuffer(payload[:usable], dtype="<i2")
    return samples.astype(np.float32) / PCM16_MAX


def rms_dbfs(payload: bytes) -> float:
    """Return the RMS level of a PCM16 frame in dBFS (``-inf`` for empty input)."""
    samples = pcm16_to_float32(payload)
    if samples.size == 0:
        return float("-inf")
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    return 20.0 * float(np.log10(max(rms, _RMS_EPSILON)))


def frame_duration(payload: bytes, sample_rate: int) -> float:
    """Return the playback duration (seconds) of a PCM16 mono frame."""
    return (len(payload) // 2) / float(sample_rate)


class PyAvFileCapture:
    """Decode an audio file with PyAV and emit it as paced PCM16 frames.

    Any container/codec PyAV understands is resampled to mono s16 at
    ``sample_rate``. With ``realtime`` enabled frames are released at playback
    speed, so downstream components see the same cadence as a microphone.
    """

    def __init__(
        self,
        path: Path,
        *,
        sample_rate: int = 16000,
        frame_samples: int = 4096,
        realtime: bool = True,
    ) -> None:
        """Validate the PyAV dependency and remember decoding parameters."""
        try:
            self._av: Any = importlib.import_module("av")
        except ImportError as exc:  # pragma: no cover - environment dependent
            raise AudioCaptureError(
                "PyAV is not installed; install the 'audio-file' extra to decode audio files"
            ) from exc
        self._path = path
        self._sample_rate = sample_rate
        self._frame_bytes = frame_samples * 2
        self._realtime = realtime
        self._closed = asyncio.Event()

    @property
    def sample_rate(self) -> int:
        """Return the output sample rate."""
        return self._sample_rate

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield PCM16 frames of ``frame_samples`` samples (the last may be shorter)."""
        pcm = await asyncio.to_thread(self._decode_sync)
        logger.info(
            "Decoded %s: %.1fs of audio at %d Hz",
            self._path,
            frame_duration(pcm, self._sample_rate),
            self._sample_rate,
        )
        for offset in range(0, len(pcm), self._frame_bytes):
            if self._closed.is_set():
                return
            chunk = pcm[offset : offset + self._frame_bytes]
            yield chunk
            if self._realtime:
                await asyncio.sleep(frame_duration(chunk, self._sample_rate))

    async def close(self) -> None:
        """Stop emitting frames."""
        self._closed.set()

    def _decode_sync(self) -> bytes:
        if not self._path.exists():
            raise AudioCaptureError(f"Audio file not found: {self._path}")
        try:
            container = self._av.open(str(self._path), mode="r")
        except Exception as exc:  # noqa: BLE001 - PyAV raises a family of error types
            raise AudioCaptureError(
                f"Failed to open audio file ({exc.__class__.__name__}: {exc})"
            ) from exc

        with container:
            streams = [stream for stream in container.streams if stream.type == "audio"]
            if not streams:
                raise AudioCaptureError(f"No audio stream in {self._path}")
            resampler = self._av.AudioResampler(
                format="s16", layout="mono", rate=self._sample_rate
            )
            parts: list[bytes] = []
            try:
                for frame in container.decode(streams[0]):
                    for resampled in resampler.resample(frame):
                        parts.append(_frame_bytes(resampled))
                for resampled in resampler.resample(None):
                    parts.append(_frame_bytes(resampled))
            except Exception as exc:  # noqa: BLE001 - PyAV raises a family of error types
                raise AudioCaptureError(
                    f"Failed to decode audio ({exc.__class__.__name__}: {exc})"
                ) from exc
        return b"".join(parts)


def _frame_bytes(frame: Any) -> bytes:
    array = frame.to_ndarray()
    return np.ascontiguousarray(array.reshape(-1), dtype="<i2").tobytes()


class SharedCapture:
    """Expose one cursor over a capture to every consumer that asks for frames.

    A live stream cannot be rewound, so a source that takes over from another
    (fallback or reconnect) continues where the previous one stopped. Each frame
    is read by a task of its own: a consumer cancelled mid-read leaves the frame
    to the next consumer and the underlying generator untouched.
    """

    def __init__(self, capture: AudioCapture) -> None:
        self._capture = capture
        self._source: AsyncIterator[bytes] | None = None
        self._pending: asyncio.Task[bytes] | None = None

    @property
    def sample_rate(self) -> int:
        return self._capture.sample_rate

    def frames(self) -> AsyncIterator[bytes]:
        return self

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        if self._source is None:
            self._source = aiter(self._capture.frames())
        if self._pending is None:
            self._pending = asyncio.get_running_loop().create_task(self._read(self._source))
        pending = self._pending
        frame = await asyncio.shield(pending)
        if self._pending is pending:
            self._pending = None
        return frame

    async def close(self) -> None:
        pending = self._pending
        self._pending = None
        if pending is not None and not pending.done():
            pending.cancel()
        await self._capture.close()

    @staticmethod
    async def _read(source: AsyncIterator[bytes]) -> bytes:
        return await anext(source)
