"""Transcription source contract shared by the local and cloud variants."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Protocol

from .models import ErrorKind, SourceError, SourceKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TranscriptionCallbacks:
    """Callback set through which a source reports text and lifecycle changes.

    ``on_session_started`` fires once per ``start()`` when the provider session is
    confirmed; internal restarts do not repeat it. ``on_session_ended`` receives
    ``True`` when the end follows an explicit ``stop()``.
    """

    on_interim: Callable[[str], None]
    on_final: Callable[[str], None]
    on_error: Callable[[SourceError], None]
    on_session_started: Callable[[], None]
    on_session_ended: Callable[[bool], None]


class TranscriptionSource(Protocol):
    """Polymorphic producer of interim and final transcript text."""

    @property
    def kind(self) -> SourceKind:  # pragma: no cover - protocol
        """Return which variant this source implements."""
        ...

    async def start(self) -> None:  # pragma: no cover - protocol
        """Begin a session; failures are reported through ``on_error``."""
        ...

    async def stop(self) -> None:  # pragma: no cover - protocol
        """Stop gracefully, letting the provider deliver final results."""
        ...

    def abort(self) -> None:  # pragma: no cover - protocol
        """Tear down immediately without waiting for the provider; emits nothing."""
        ...

    def clear_interim(self) -> None:  # pragma: no cover - protocol
        """Forget the pending hypothesis so it is never promoted to a final."""
        ...


class InterimSlot:
    """Single-slot holder for the latest unfinalized hypothesis.

    Newer interim text overwrites older text; it is never concatenated. Providers
    may end a session without finalizing the last hypothesis, so owners call
    :meth:`take` on session end and emit the remainder as final text.
    """

    __slots__ = ("_text",)

    def __init__(self) -> None:
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def overwrite(self, text: str) -> None:
        self._text = text

    def clear(self) -> None:
        self._text = ""

    def take(self) -> str:
        """Return the stripped pending text (possibly empty) and clear the slot."""
        text = self._text.strip()
        self._text = ""
        return text


TRANSIENT_RECOGNIZER_ERRORS: frozenset[str] = frozenset({"no-speech", "aborted", "network"})
FATAL_RECOGNIZER_ERRORS: frozenset[str] = frozenset(
    {"not-allowed", "service-not-allowed", "audio-capture", "audio-ended"}
)

RECOGNIZER_ERROR_MESSAGES: Mapping[str, str] = MappingProxyType(
    {
        "no-speech": "Listening...",
        "audio-capture": "No microphone found. Please check your audio settings.",
        "audio-ended": "Audio input ended.",
        "not-allowed": "Microphone permission denied. Please allow access.",
        "network": "Network issue, reconnecting...",
        "aborted": "Reconnecting...",
        "language-not-supported": "Language not supported.",
        "service-not-allowed": "Speech recognition service not allowed.",
    }
)

_UNAVAILABLE_MARKERS: tuple[str, ...] = ("not configured", "connection error", "failed")


def classify_recognizer_error(code: str) -> SourceError:
    """Classify a local recognizer error code.

    Transient codes only drive the restart loop; fatal codes stop it and are shown
    to the user; anything else is shown without suppressing restarts.
    """
    message = RECOGNIZER_ERROR_MESSAGES.get(code, f"Speech recognition error: {code}")
    if code in TRANSIENT_RECOGNIZER_ERRORS:
        kind = ErrorKind.TRANSIENT
    elif code in FATAL_RECOGNIZER_ERRORS:
        kind = ErrorKind.FATAL
    else:
        kind = ErrorKind.WARNING
    return SourceError(kind=kind, code=code, message=message)


def classify_cloud_error(message: str, *, code: str = "relay") -> SourceError:
    """Classify a cloud relay error message.

    Missing configuration and connection failures mark the provider unavailable,
    which the selector answers by falling back to the local source.
    """
    lowered = message.lower()
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        kind = ErrorKind.UNAVAILABLE
    else:
        kind = ErrorKind.FATAL
    return SourceError(kind=kind, code=code, message=message)
