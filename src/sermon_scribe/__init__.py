"""Live sermon transcription with cloud relay, local fallback and incremental notes."""

from __future__ import annotations

from .audio_capture import AudioCapture, PyAvFileCapture, SharedCapture
from .backoff import SessionBackoffController
from .config import (
    BackoffConfig,
    CloudRelayConfig,
    DeepgramConfig,
    FlushConfig,
    LocalRecognizerConfig,
    NotesConfig,
    RelayServerConfig,
    SessionSettings,
    load_session_settings,
    save_session_settings,
)
from .errors import (
    AudioCaptureError,
    ConfigurationError,
    NoteGenerationError,
    NotEnoughNotesError,
    ProviderUnavailableError,
    RelayError,
    SermonScribeError,
    TranscriptionError,
)
from .eventbus import ConsumerCallback, EventBus
from .flush import FlushScheduler, NoteExtractor, TranscriptOnlyExtractor
from .models import (
    ConnectionStatus,
    ErrorKind,
    FlushBuffer,
    KeyPoint,
    RecognitionBatch,
    RecognitionResult,
    SermonNote,
    SermonSummary,
    SessionState,
    SourceError,
    SourceKind,
    TranscriptEvent,
    TranscriptSegment,
)
from .notes_openai import OpenAINoteExtractor
from .recording import RecordingSession
from .relay import RelayBridge, RelayServer
from .selector import SourceSelector, select_source_kind
from .transcription import TranscriptionCallbacks, TranscriptionSource
from .transcription_cloud import CloudRelaySource
from .transcription_local import LocalRecognizerSource, WhisperStreamRecognizer

__all__ = [
    "AudioCapture",
    "AudioCaptureError",
    "BackoffConfig",
    "CloudRelayConfig",
    "CloudRelaySource",
    "ConfigurationError",
    "ConnectionStatus",
    "ConsumerCallback",
    "DeepgramConfig",
    "ErrorKind",
    "EventBus",
    "FlushBuffer",
    "FlushConfig",
    "FlushScheduler",
    "KeyPoint",
    "LocalRecognizerConfig",
    "LocalRecognizerSource",
    "NotEnoughNotesError",
    "NoteExtractor",
    "NoteGenerationError",
    "NotesConfig",
    "OpenAINoteExtractor",
    "ProviderUnavailableError",
    "PyAvFileCapture",
    "RecognitionBatch",
    "RecognitionResult",
    "RecordingSession",
    "RelayBridge",
    "RelayError",
    "RelayServer",
    "RelayServerConfig",
    "SermonNote",
    "SermonScribeError",
    "SermonSummary",
    "SessionBackoffController",
    "SessionSettings",
    "SessionState",
    "SharedCapture",
    "SourceError",
    "SourceKind",
    "SourceSelector",
    "TranscriptEvent",
    "TranscriptOnlyExtractor",
    "TranscriptSegment",
    "TranscriptionCallbacks",
    "TranscriptionError",
    "TranscriptionSource",
    "WhisperStreamRecognizer",
    "load_session_settings",
    "save_session_settings",
    "select_source_kind",
]
