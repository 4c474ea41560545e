"""Exception hierarchy for the sermon-scribe library."""

from __future__ import annotations


class SermonScribeError(Exception):
    """Base exception for all sermon-scribe errors."""


class ConfigurationError(SermonScribeError):
    """Raised when a required setting or optional dependency is missing."""


class TranscriptionError(SermonScribeError):
    """Raised when a transcription source cannot produce text."""


class AudioCaptureError(SermonScribeError):
    """Raised when audio frames cannot be captured or decoded."""


class RelayError(SermonScribeError):
    """Raised when the relay cannot pair a client with the upstream provider."""


class ProviderUnavailableError(RelayError):
    """Raised when the upstream speech provider is unreachable or rejects the session."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Store the optional HTTP *status_code* alongside *message*."""
        super().__init__(message)
        self.status_code = status_code


class NoteGenerationError(SermonScribeError):
    """Raised when the downstream note extractor fails."""


class NotEnoughNotesError(NoteGenerationError):
    """Raised when a summary is requested with fewer notes than required."""
