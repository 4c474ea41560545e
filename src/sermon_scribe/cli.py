"""Command-line interface for the sermon transcription relay and recorder."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import traceback
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Literal, cast

from dotenv import find_dotenv, load_dotenv
from pydantic import ValidationError

from .audio_capture import PyAvFileCapture, SharedCapture
from .config import (
    CloudRelayConfig,
    LocalRecognizerConfig,
    NotesConfig,
    RelayServerConfig,
    SessionSettings,
    load_session_settings,
)
from .errors import ConfigurationError, NoteGenerationError, SermonScribeError
from .eventbus import ConsumerCallback
from .flush import NoteExtractor, TranscriptOnlyExtractor
from .models import ConnectionStatus, SermonNote, SermonSummary, SourceError, TranscriptSegment
from .notes_openai import OpenAINoteExtractor
from .recording import (
    TOPIC_ERROR,
    TOPIC_FINAL,
    TOPIC_NOTES,
    TOPIC_STATUS,
    RecordingSession,
)
from .relay import RelayServer
from .selector import SourceSelector
from .telemetry import NullTelemetrySink, TelemetrySink
from .transcription import TranscriptionCallbacks
from .transcription_cloud import CloudRelaySource
from .transcription_local import LocalRecognizerSource, WhisperStreamRecognizer
from .ui.runtime import run_ui
from .ui.telemetry_sink import UiTelemetrySink

LOG_LEVELS: Final[dict[str, int]] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

SourceChoice = Literal["auto", "cloud", "local"]

# Fatal code reported by the local recognizer when a file has been fully read.
AUDIO_ENDED_CODE = "audio-ended"


@dataclass(frozen=True, slots=True)
class CliOptions:
    """Parsed command-line options for the ``sermon-scribe`` CLI."""

    command: Literal["relay", "transcribe"]
    dotenv_path: Path | None
    log_level: int
    host: str | None = field(default=None)
    port: int | None = field(default=None)
    audio_file: Path | None = field(default=None)
    settings_path: Path | None = field(default=None)
    source: SourceChoice | None = field(default=None)
    relay_url: str | None = field(default=None)
    ui: bool = field(default=True)
    summary: bool = field(default=False)
    realtime: bool = field(default=True)


async def run_async(options: CliOptions) -> int:
    """Execute the selected command and return the process exit code."""
    logger = _setup_logging(options.log_level)

    # .env values take precedence over the inherited environment.
    dotenv_file = (
        str(options.dotenv_path) if options.dotenv_path is not None else find_dotenv(usecwd=True)
    )
    if dotenv_file:
        load_dotenv(dotenv_file, override=True)
        logger.info("Loaded environment from %s (override=True)", dotenv_file)
    else:
        logger.debug("No .env file found; relying on process environment only")

    logger.debug(
        "Env resolution: DEEPGRAM_API_KEY=%s, OPENAI_API_KEY=%s, OPENAI_BASE_URL=%s",
        "set" if os.environ.get("DEEPGRAM_API_KEY") else "unset",
        "set" if os.environ.get("OPENAI_API_KEY") else "unset",
        os.environ.get("OPENAI_BASE_URL") or "unset",
    )

    try:
        if options.command == "relay":
            return await _run_relay(options, logger)
        return await _run_transcribe(options, logger)
    except (ValueError, ValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except SermonScribeError as exc:
        logger.error("sermon-scribe error: %s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    return 0


def _setup_logging(log_level: int) -> logging.Logger:
    """Configure logging and return the CLI logger.

    Reduces noise from network libraries at non-DEBUG levels.
    """
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("websockets").setLevel(logging.WARNING)
    return logging.getLogger("sermon_scribe.cli")


def parse_cli_args(argv: Sequence[str] | None = None) -> CliOptions:
    """Parse command-line arguments into :class:`CliOptions`."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional path to a .env file (DEEPGRAM_API_KEY, OPENAI_API_KEY, ...)",
    )
    common.add_argument(
        "--log-level",
        choices=tuple(LOG_LEVELS.keys()),
        default="INFO",
        help="Log level for diagnostic output",
    )

    parser = argparse.ArgumentParser(
        prog="sermon-scribe",
        description="Live sermon transcription with incremental note taking.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    relay = commands.add_parser(
        "relay",
        parents=[common],
        help="Run the WebSocket relay that keeps the speech provider key server-side",
    )
    relay.add_argument("--host", default=None, help="Interface to bind (default: $HOSTNAME)")
    relay.add_argument("--port", type=int, default=None, help="TCP port (default: $PORT or 3000)")

    transcribe = commands.add_parser(
        "transcribe",
        parents=[common],
        help="Transcribe an audio file as if it were a live recording",
    )
    transcribe.add_argument("audio_file", type=Path, help="Audio file decoded with PyAV")
    transcribe.add_argument(
        "--settings",
        type=Path,
        default=None,
        help="JSON settings file (preferred source, language, relay URLs)",
    )
    transcribe.add_argument(
        "--source",
        choices=("auto", "cloud", "local"),
        default=None,
        help="Transcription source; 'auto' tries the cloud relay first",
    )
    transcribe.add_argument("--relay-url", default=None, help="WebSocket URL of the relay")
    transcribe.add_argument(
        "--no-ui", action="store_true", help="Print plain lines instead of the live view"
    )
    transcribe.add_argument(
        "--summary", action="store_true", help="Generate a sermon summary when finished"
    )
    transcribe.add_argument(
        "--no-realtime",
        action="store_true",
        help="Feed audio as fast as it decodes instead of at playback speed",
    )

    namespace = parser.parse_args(argv)
    log_level = LOG_LEVELS[namespace.log_level]
    if namespace.command == "relay":
        if namespace.port is not None and not 0 <= namespace.port <= 65535:
            parser.error("--port must be between 0 and 65535")
        return CliOptions(
            command="relay",
            dotenv_path=namespace.dotenv,
            log_level=log_level,
            host=namespace.host,
            port=namespace.port,
        )
    return CliOptions(
        command="transcribe",
        dotenv_path=namespace.dotenv,
        log_level=log_level,
        audio_file=namespace.audio_file,
        settings_path=namespace.settings,
        source=cast(SourceChoice | None, namespace.source),
        relay_url=namespace.relay_url,
        ui=not namespace.no_ui,
        summary=bool(namespace.summary),
        realtime=not namespace.no_realtime,
    )


async def _run_relay(options: CliOptions, logger: logging.Logger) -> int:
    config = RelayServerConfig.from_environment()
    updates: dict[str, object] = {}
    if options.host is not None:
        updates["host"] = options.host
    if options.port is not None:
        updates["port"] = options.port
    if updates:
        config = config.model_copy(update=updates)
    if not config.provider.configured:
        logger.warning("DEEPGRAM_API_KEY is not set; clients will be rejected")

    server = RelayServer(config)
    try:
        await server.start()
    except OSError as exc:
        print(f"error: unable to bind {config.host}:{config.port}: {exc}", file=sys.stderr)
        return 1
    try:
        await _wait_for_shutdown_signal()
        logger.info("Shutdown signal received; stopping relay")
    finally:
        await server.close()
    return 0


async def _run_transcribe(options: CliOptions, logger: logging.Logger) -> int:
    assert options.audio_file is not None
    settings = (
        load_session_settings(options.settings_path)
        if options.settings_path is not None
        else SessionSettings()
    )
    preference: SourceChoice = options.source or settings.preferred_source
    telemetry: TelemetrySink = UiTelemetrySink() if options.ui else NullTelemetrySink()
    extractor = _build_extractor(logger)
    capture = SharedCapture(PyAvFileCapture(options.audio_file, realtime=options.realtime))
    cloud_config = CloudRelayConfig(
        relay_url=options.relay_url or settings.relay_url,
        status_url=settings.status_url,
    )
    local_config = LocalRecognizerConfig(model=settings.local_model, language=settings.language)

    def _local(callbacks: TranscriptionCallbacks) -> LocalRecognizerSource:
        return LocalRecognizerSource(
            WhisperStreamRecognizer(capture, local_config),
            callbacks,
            restart_policy=local_config.restart,
            telemetry=telemetry,
        )

    def _cloud(callbacks: TranscriptionCallbacks) -> CloudRelaySource:
        return CloudRelaySource(cloud_config, capture, callbacks, telemetry=telemetry)

    def _selector(callbacks: TranscriptionCallbacks) -> SourceSelector:
        return SourceSelector(
            callbacks,
            local_factory=_local,
            cloud_factory=_cloud,
            preference=preference,
            telemetry=telemetry,
        )

    session = RecordingSession(_selector, extractor, telemetry=telemetry)
    if not options.ui:
        await _register_line_printers(session)

    stop_event = asyncio.Event()
    watchers: list[asyncio.Task[None]] = []
    try:
        await session.start_recording()
        watchers.append(asyncio.create_task(_set_when(session.wait_ended(), stop_event)))
        watchers.append(asyncio.create_task(_set_when(_wait_for_shutdown_signal(), stop_event)))
        if options.ui:
            assert isinstance(telemetry, UiTelemetrySink)
            await run_ui(
                session,
                header=f"{options.audio_file.name} ({preference})",
                stop_event=stop_event,
                telemetry=telemetry,
            )
        else:
            await stop_event.wait()
        await session.stop_recording()
        summary = await _finish(session, summarize=options.summary, logger=logger)
        await session.flush_events()
        _print_report(session, summary)
    finally:
        for watcher in watchers:
            watcher.cancel()
        await session.close()
        await capture.close()
    return 0


def _build_extractor(logger: logging.Logger) -> NoteExtractor:
    try:
        return OpenAINoteExtractor(NotesConfig.from_environment())
    except ConfigurationError as exc:
        logger.warning("Note generation disabled: %s", exc)
        return TranscriptOnlyExtractor()


async def _finish(
    session: RecordingSession, *, summarize: bool, logger: logging.Logger
) -> SermonSummary | None:
    try:
        return await session.finish(summarize=summarize)
    except NoteGenerationError as exc:
        logger.warning("Summary not generated: %s", exc)
        print(f"Summary not generated: {exc}", file=sys.stderr)
        return None


async def _set_when(waiter: Awaitable[None], event: asyncio.Event) -> None:
    await waiter
    event.set()


async def _register_line_printers(session: RecordingSession) -> None:
    """Subscribe plain-text printers used when the live view is disabled."""
    printers: dict[str, ConsumerCallback] = {
        TOPIC_FINAL: _print_final,
        TOPIC_STATUS: _print_status,
        TOPIC_ERROR: _print_error,
        TOPIC_NOTES: _print_notes,
    }
    for topic, printer in printers.items():
        await session.bus.subscribe(topic, printer)


async def _print_final(event: object) -> None:
    if isinstance(event, TranscriptSegment):
        print(format_segment(event), flush=True)


async def _print_status(event: object) -> None:
    if isinstance(event, ConnectionStatus):
        print(f"-- {event.value}", file=sys.stderr, flush=True)


async def _print_error(event: object) -> None:
    if isinstance(event, SourceError) and event.code != AUDIO_ENDED_CODE:
        print(f"error: {event.message}", file=sys.stderr, flush=True)


async def _print_notes(event: object) -> None:
    if isinstance(event, tuple) and event:
        latest = event[-1]
        if isinstance(latest, SermonNote):
            print(f"note {len(event)}: {latest.main_point}", file=sys.stderr, flush=True)


def format_segment(segment: TranscriptSegment) -> str:
    """Return a transcript line prefixed with the local wall-clock time."""
    stamp = segment.created_at.astimezone().strftime("%H:%M:%S")
    return f"[{stamp}] {segment.text}"


def format_note(note: SermonNote) -> str:
    """Return a multi-line plain-text rendering of *note*."""
    lines = [f"* {note.main_point}"]
    lines.extend(f"    - {point}" for point in note.sub_points)
    if note.scripture_references:
        lines.append(f"    refs: {', '.join(note.scripture_references)}")
    if note.key_quote:
        lines.append(f'    "{note.key_quote}"')
    return "\n".join(lines)


def format_summary(summary: SermonSummary) -> str:
    """Return a plain-text rendering of *summary*."""
    lines = [summary.title, "", summary.overview]
    if summary.main_themes:
        lines.append("")
        lines.append("Themes: " + ", ".join(summary.main_themes))
    if summary.key_points:
        lines.append("")
        for key_point in summary.key_points:
            suffix = f" ({key_point.scripture})" if key_point.scripture else ""
            lines.append(f"- {key_point.point}{suffix}")
    if summary.key_quotes:
        lines.append("")
        lines.extend(f'"{quote}"' for quote in summary.key_quotes)
    if summary.closing_thought:
        lines.append("")
        lines.append(summary.closing_thought)
    return "\n".join(lines)


def _print_report(session: RecordingSession, summary: SermonSummary | None) -> None:
    notes = session.notes
    if notes:
        print(f"\nNotes ({len(notes)})")
        for note in notes:
            print(format_note(note))
    if summary is not None:
        print()
        print(format_summary(summary))


async def _wait_for_shutdown_signal() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    registered: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            continue
        registered.append(signum)
    try:
        await stop_event.wait()
    finally:
        for signum in registered:
            loop.remove_signal_handler(signum)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for the ``sermon-scribe`` console script."""
    options = parse_cli_args(argv)
    try:
        exit_code = asyncio.run(run_async(options))
    except KeyboardInterrupt:
        exit_code = 130
    except Exception:  # noqa: BLE001
        traceback.print_exc(limit=1)
        exit_code = 1
    raise SystemExit(exit_code)
