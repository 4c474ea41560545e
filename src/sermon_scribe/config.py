"""Configuration schemas for the sermon-scribe pipeline."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal
from urllib.parse import urlencode

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    model_validator,
)

logger = logging.getLogger(__name__)

DEFAULT_KEYTERMS: tuple[str, ...] = (
    "Genesis",
    "Exodus",
    "Psalms",
    "Proverbs",
    "Isaiah",
    "Matthew",
    "Mark",
    "Luke",
    "John",
    "Acts",
    "Romans",
    "Corinthians",
    "Galatians",
    "Ephesians",
    "Hebrews",
    "Revelation",
    "Jesus",
    "Christ",
    "scripture",
)


class BackoffConfig(BaseModel):
    """Restart timing for a transcription source whose session ends unexpectedly."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_delay: PositiveFloat = Field(
        default=0.05, description="Delay (seconds) before the first restart attempt"
    )
    max_delay: PositiveFloat = Field(
        default=0.5, description="Upper bound on the restart delay (seconds)"
    )
    multiplier: float = Field(
        default=1.5, ge=1.0, description="Growth factor applied per consecutive attempt"
    )
    max_attempts: NonNegativeInt = Field(
        default=10,
        description="Consecutive restart attempts allowed before the session fails",
    )

    @model_validator(mode="after")
    def _ensure_delay_bounds(self) -> BackoffConfig:
        """Reject a cap below the base delay."""
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self

    def delay_for(self, attempt: int) -> float:
        """Return the delay before restart *attempt* (1-based)."""
        exponent = max(0, attempt - 1)
        return min(self.base_delay * (self.multiplier**exponent), self.max_delay)


class FlushConfig(BaseModel):
    """Word thresholds and timers deciding when buffered text reaches the extractor."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    soft_threshold_words: PositiveInt = Field(
        default=200,
        description="Words after which a flush happens at the next sentence boundary",
    )
    hard_cap_words: PositiveInt = Field(
        default=250, description="Words after which a flush happens unconditionally"
    )
    backup_interval: PositiveFloat = Field(
        default=60.0, description="Seconds before the backup timer forces a flush"
    )
    backup_min_words: NonNegativeInt = Field(
        default=30,
        description="The backup timer flushes only when more words than this are buffered",
    )
    min_flush_chars: NonNegativeInt = Field(
        default=50, description="Buffers shorter than this (stripped) are never flushed"
    )

    @model_validator(mode="after")
    def _ensure_threshold_order(self) -> FlushConfig:
        """The hard cap must not be below the soft threshold."""
        if self.hard_cap_words < self.soft_threshold_words:
            raise ValueError("hard_cap_words must be >= soft_threshold_words")
        return self


class DeepgramConfig(BaseModel):
    """Server-side settings for the upstream Deepgram streaming connection."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key: str | None = Field(
        default=None, description="Provider API key; stays on the relay server"
    )
    listen_url: str = Field(
        default="wss://api.deepgram.com/v1/listen",
        description="Streaming endpoint of the provider",
    )
    model: str = Field(default="nova-3", description="Provider speech model")
    language: str = Field(default="en", description="Spoken language code")
    encoding: str = Field(default="linear16", description="Audio encoding of client frames")
    sample_rate: PositiveInt = Field(default=16000, description="Audio sample rate (Hz)")
    channels: PositiveInt = Field(default=1, description="Audio channel count")
    interim_results: bool = Field(default=True, description="Request interim hypotheses")
    smart_format: bool = Field(default=True, description="Enable provider smart formatting")
    punctuate: bool = Field(default=True, description="Enable punctuation")
    paragraphs: bool = Field(default=True, description="Enable paragraph detection")
    vad_events: bool = Field(default=True, description="Emit voice-activity events")
    utterance_end_ms: NonNegativeInt = Field(
        default=1000, description="Silence (ms) that closes an utterance"
    )
    endpointing: NonNegativeInt = Field(
        default=300, description="Endpointing silence (ms) for final results"
    )
    keyterms: tuple[str, ...] = Field(
        default=DEFAULT_KEYTERMS, description="Terms boosted by the provider"
    )

    @property
    def configured(self) -> bool:
        """Return ``True`` when an API key is available."""
        return bool(self.api_key)

    def upstream_url(self) -> str:
        """Return the provider URL carrying the stream configuration."""
        params: list[tuple[str, str]] = [
            ("model", self.model),
            ("language", self.language),
            ("smart_format", _flag(self.smart_format)),
            ("punctuate", _flag(self.punctuate)),
            ("paragraphs", _flag(self.paragraphs)),
            ("interim_results", _flag(self.interim_results)),
            ("utterance_end_ms", str(self.utterance_end_ms)),
            ("vad_events", _flag(self.vad_events)),
            ("endpointing", str(self.endpointing)),
            ("encoding", self.encoding),
            ("sample_rate", str(self.sample_rate)),
            ("channels", str(self.channels)),
        ]
        params.extend(("keyterm", term) for term in self.keyterms)
        return f"{self.listen_url}?{urlencode(params)}"

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> DeepgramConfig:
        """Build a configuration from ``DEEPGRAM_API_KEY`` and ``DEEPGRAM_MODEL``."""
        source = dict(os.environ if env is None else env)
        updates: dict[str, str] = {}
        api_key = source.get("DEEPGRAM_API_KEY")
        if api_key:
            updates["api_key"] = api_key
        model = source.get("DEEPGRAM_MODEL")
        if model:
            updates["model"] = model
        return cls(**updates)


class RelayServerConfig(BaseModel):
    """Listening address and routes of the relay server."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = Field(default="0.0.0.0", description="Interface to bind")  # noqa: S104
    port: int = Field(default=3000, ge=0, le=65535, description="TCP port to bind")
    ws_path: str = Field(default="/api/deepgram-ws", description="WebSocket relay route")
    status_path: str = Field(default="/api/deepgram", description="Provider status route")
    upstream_open_timeout: PositiveFloat = Field(
        default=10.0, description="Seconds allowed for the upstream handshake"
    )
    provider: DeepgramConfig = Field(default_factory=DeepgramConfig)

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> RelayServerConfig:
        """Build a configuration from ``HOSTNAME``, ``PORT`` and provider variables."""
        source = dict(os.environ if env is None else env)
        host = source.get("HOSTNAME", "0.0.0.0")  # noqa: S104
        raw_port = source.get("PORT", "3000")
        try:
            port = int(raw_port)
        except ValueError as exc:
            raise ValueError("PORT must be an integer") from exc
        return cls(host=host, port=port, provider=DeepgramConfig.from_environment(env=source))


def _cloud_reconnect_policy() -> BackoffConfig:
    return BackoffConfig(base_delay=1.0, max_delay=1.0, multiplier=1.0, max_attempts=3)


class CloudRelayConfig(BaseModel):
    """Client-side settings for the cloud relay transcription source."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    relay_url: str = Field(
        default="ws://localhost:3000/api/deepgram-ws",
        description="WebSocket URL of the relay server",
    )
    status_url: HttpUrl | None = Field(
        default=HttpUrl("http://localhost:3000/api/deepgram"),
        description="Relay status endpoint probed before starting (None skips the probe)",
    )
    connect_timeout: PositiveFloat = Field(
        default=3.0, description="Seconds to wait for the relay's proxy_connected message"
    )
    probe_timeout: PositiveFloat = Field(
        default=2.0, description="Seconds allowed for the availability probe"
    )
    stop_grace: PositiveFloat = Field(
        default=2.0,
        description="Seconds stop() waits for final results after sending CloseStream",
    )
    reconnect: BackoffConfig = Field(
        default_factory=_cloud_reconnect_policy,
        description="Reconnect policy after an abnormal close of an established session",
    )


class LocalRecognizerConfig(BaseModel):
    """Settings for the on-device faster-whisper recognizer."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    model: str = Field(default="base.en", description="faster-whisper model name or path")
    device: str = Field(default="auto", description="Inference device (cpu/cuda/auto)")
    compute_type: str = Field(default="int8", description="Quantisation/precision")
    language: str | None = Field(default="en", description="Spoken language code")
    sample_rate: PositiveInt = Field(default=16000, description="PCM sample rate (Hz)")
    interim_interval: PositiveFloat = Field(
        default=1.0, description="Seconds of new speech between interim hypotheses"
    )
    endpoint_silence_ms: PositiveInt = Field(
        default=800, description="Trailing silence (ms) that finalizes an utterance"
    )
    silence_threshold_db: float = Field(
        default=-45.0, le=0.0, description="RMS level (dBFS) below which a frame is silence"
    )
    max_utterance_seconds: PositiveFloat = Field(
        default=15.0, description="Utterances are finalized once they reach this length"
    )
    no_speech_timeout: PositiveFloat = Field(
        default=8.0, description="Seconds of silence after which the session ends"
    )
    restart: BackoffConfig = Field(default_factory=BackoffConfig)


class NotesConfig(BaseModel):
    """Settings for the OpenAI-compatible note and summary extractor."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key: str | None = Field(default=None, description="API key for the provider")
    endpoint: HttpUrl | None = Field(default=None, description="Optional base URL override")
    notes_model: str = Field(default="gpt-4o-mini", description="Model for incremental notes")
    notes_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    notes_max_tokens: PositiveInt = Field(default=1000)
    summary_model: str = Field(default="gpt-4o", description="Model for the final summary")
    summary_temperature: float = Field(default=0.4, ge=0.0, le=2.0)
    summary_max_tokens: PositiveInt = Field(default=2000)
    min_text_chars: NonNegativeInt = Field(
        default=50, description="Shorter text returns no notes without calling the model"
    )

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> NotesConfig:
        """Build a configuration from environment variables.

        Recognised variables:
            - ``OPENAI_API_KEY`` → ``api_key``
            - ``OPENAI_BASE_URL`` → ``endpoint``
            - ``OPENAI_NOTES_MODEL`` → ``notes_model``
            - ``OPENAI_SUMMARY_MODEL`` → ``summary_model``
        """
        source = dict(os.environ if env is None else env)
        endpoint = source.get("OPENAI_BASE_URL")
        return cls(
            api_key=source.get("OPENAI_API_KEY") or None,
            endpoint=HttpUrl(endpoint) if endpoint else None,
            notes_model=source.get("OPENAI_NOTES_MODEL", "gpt-4o-mini"),
            summary_model=source.get("OPENAI_SUMMARY_MODEL", "gpt-4o"),
        )


class SessionSettings(BaseModel):
    """User settings persisted between sessions and injected at start-up."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    preferred_source: Literal["auto", "cloud", "local"] = Field(
        default="auto", description="'auto' tries the cloud relay first"
    )
    language: str = Field(default="en", description="Spoken language code")
    relay_url: str = Field(default="ws://localhost:3000/api/deepgram-ws")
    status_url: str | None = Field(default="http://localhost:3000/api/deepgram")
    local_model: str = Field(default="base.en")


def load_session_settings(path: Path) -> SessionSettings:
    """Load settings from *path*, returning defaults when missing or unreadable."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return SessionSettings()
    except OSError as exc:
        logger.warning("Unable to read settings from %s: %s", path, exc)
        return SessionSettings()
    try:
        return SessionSettings.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Ignoring invalid settings file %s: %s", path, exc)
        return SessionSettings()


def save_session_settings(path: Path, settings: SessionSettings) -> None:
    """Persist *settings* to *path* as JSON, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")


def _flag(value: bool) -> str:
    return "true" if value else "false"
