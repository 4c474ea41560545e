"""Live view runtime wiring Rich Live with a recording session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
import termios
import tty
from typing import Any

from rich.console import Console
from rich.live import Live

from ..recording import (
    TOPIC_CLEARED,
    TOPIC_ERROR,
    TOPIC_FINAL,
    TOPIC_INTERIM,
    TOPIC_NOTES,
    TOPIC_STATUS,
    TOPIC_SUMMARY,
    RecordingSession,
)
from .renderer import render_layout
from .telemetry_sink import UiTelemetrySink, summarize_telemetry
from .view_model import UiStateBuilder

logger = logging.getLogger(__name__)

SESSION_TOPICS = (
    TOPIC_INTERIM,
    TOPIC_FINAL,
    TOPIC_CLEARED,
    TOPIC_STATUS,
    TOPIC_ERROR,
    TOPIC_NOTES,
    TOPIC_SUMMARY,
)

KEY_QUIT = "QUIT"
KEY_CLEAR = "CLEAR"
KEY_NOTES = "NOTES"


async def run_ui(
    session: RecordingSession,
    *,
    header: str,
    stop_event: asyncio.Event,
    telemetry: UiTelemetrySink | None = None,
    refresh_hz: float = 8.0,
) -> None:
    """Render the live view until *stop_event* is set or the user quits."""
    vm = UiStateBuilder()

    def _consumer(topic: str) -> Any:
        async def _apply(event: object) -> None:
            await vm.apply(topic, event)

        return _apply

    consumers = {topic: _consumer(topic) for topic in SESSION_TOPICS}
    for topic, callback in consumers.items():
        await session.bus.subscribe(topic, callback)

    console = Console()
    key_queue: asyncio.Queue[str] = asyncio.Queue()
    kb = _KeyboardReader(key_queue)
    kb.start()
    actions: set[asyncio.Task[Any]] = set()
    try:
        with Live(console=console, refresh_per_second=int(refresh_hz), screen=True) as live:
            while not stop_event.is_set():
                while not key_queue.empty():
                    key = key_queue.get_nowait()
                    if key == KEY_QUIT:
                        stop_event.set()
                        break
                    if key == KEY_CLEAR:
                        session.clear_transcript()
                    elif key == KEY_NOTES:
                        task = asyncio.create_task(session.scheduler.flush_now())
                        actions.add(task)
                        task.add_done_callback(actions.discard)
                snapshot = await vm.snapshot(header_text=header)
                diagnostics = (
                    summarize_telemetry(telemetry.snapshot()) if telemetry is not None else None
                )
                live.update(
                    render_layout(
                        snapshot,
                        now_monotonic=asyncio.get_running_loop().time(),
                        max_lines=max(5, console.size.height - 8),
                        diagnostics=diagnostics,
                    )
                )
                await asyncio.sleep(1.0 / refresh_hz)
    finally:
        kb.stop()
        for task in actions:
            task.cancel()
        for topic, callback in consumers.items():
            await session.bus.unsubscribe(topic, callback)


class _KeyboardReader:
    """Minimal cbreak-mode keyboard reader that emits key tokens to a queue."""

    def __init__(self, queue: asyncio.Queue[str]) -> None:
        self._queue = queue
        self._orig_attrs: Any | None = None
        self._loop = asyncio.get_running_loop()
        self._fd = sys.stdin.fileno() if sys.stdin is not None else -1
        self._running = False

    def start(self) -> None:
        if self._fd < 0 or not sys.stdin.isatty():
            return
        self._orig_attrs = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)
        self._running = True
        self._loop.add_reader(self._fd, self._on_readable)

    def stop(self) -> None:
        if self._running:
            self._loop.remove_reader(self._fd)
            self._running = False
        if self._orig_attrs is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._orig_attrs)
            self._orig_attrs = None

    def _on_readable(self) -> None:
        try:
            data = os.read(self._fd, 8)
        except OSError:
            return
        for token in parse_keys(data):
            with contextlib.suppress(asyncio.QueueFull):
                self._queue.put_nowait(token)


_KEY_TOKENS = {ord("q"): KEY_QUIT, ord("c"): KEY_CLEAR, ord("n"): KEY_NOTES}


def parse_keys(data: bytes) -> list[str]:
    """Map raw key bytes to tokens; unknown keys are ignored."""
    return [_KEY_TOKENS[b] for b in data if b in _KEY_TOKENS]
