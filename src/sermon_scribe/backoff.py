"""Restart state machine for transcription sessions that end without a user stop.

Speech providers routinely end sessions on silence or transport hiccups. The
controller restarts such sessions on an exponential schedule, resets the budget
whenever a session reaches ``LISTENING`` and gives up with
``FAILED("max retries exceeded")`` once the attempt cap is passed. All state
changes go through one transition table; moves missing from it are ignored.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from types import MappingProxyType

from .config import BackoffConfig
from .models import RestartAttempt, SessionState, SessionStatus
from .telemetry import (
    NullTelemetrySink,
    RestartScheduledEvent,
    SessionTerminatedEvent,
    TelemetrySink,
)

logger = logging.getLogger(__name__)

MAX_RETRIES_REASON = "max retries exceeded"


class SessionEvent(str, Enum):
    """Inputs accepted by the session state machine."""

    START = "start"
    STARTED = "started"
    ENDED = "ended"
    EXHAUSTED = "exhausted"
    RESTART_DUE = "restart_due"
    STOP = "stop"
    FAIL = "fail"


_ACTIVE: tuple[SessionState, ...] = (
    SessionState.STARTING,
    SessionState.LISTENING,
    SessionState.RESTARTING,
)
_STARTABLE: tuple[SessionState, ...] = (
    SessionState.IDLE,
    SessionState.STOPPED,
    SessionState.FAILED,
)


def _build_transitions() -> Mapping[tuple[SessionState, SessionEvent], SessionState]:
    table: dict[tuple[SessionState, SessionEvent], SessionState] = {}
    for state in _STARTABLE:
        table[(state, SessionEvent.START)] = SessionState.STARTING
    for state in (SessionState.STARTING, SessionState.LISTENING):
        table[(state, SessionEvent.ENDED)] = SessionState.RESTARTING
        table[(state, SessionEvent.EXHAUSTED)] = SessionState.FAILED
    table[(SessionState.STARTING, SessionEvent.STARTED)] = SessionState.LISTENING
    table[(SessionState.RESTARTING, SessionEvent.RESTART_DUE)] = SessionState.STARTING
    for state in _ACTIVE:
        table[(state, SessionEvent.STOP)] = SessionState.STOPPED
        table[(state, SessionEvent.FAIL)] = SessionState.FAILED
    return MappingProxyType(table)


TRANSITIONS: Mapping[tuple[SessionState, SessionEvent], SessionState] = _build_transitions()

EndCallback = Callable[[SessionStatus], None]
RestartCallback = Callable[[], Awaitable[None]]


class SessionBackoffController:
    """Owns restart timing for one transcription source."""

    def __init__(
        self,
        config: BackoffConfig,
        *,
        restart: RestartCallback,
        on_end: EndCallback | None = None,
        name: str = "session",
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create a controller invoking *restart* after each scheduled delay."""
        self._config = config
        self._restart = restart
        self._on_end = on_end
        self._name = name
        self._telemetry = telemetry or NullTelemetrySink()
        self._state = SessionState.IDLE
        self._reason: str | None = None
        self._count = 0
        self._next_delay: float | None = None
        self._last_error: str | None = None
        self._restart_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> SessionState:
        """Return the current session state."""
        return self._state

    @property
    def status(self) -> SessionStatus:
        """Return the state together with the failure reason, if any."""
        return SessionStatus(state=self._state, reason=self._reason)

    @property
    def attempt(self) -> RestartAttempt:
        """Return a snapshot of the restart bookkeeping."""
        return RestartAttempt(
            count=self._count, next_delay=self._next_delay, last_error=self._last_error
        )

    @property
    def restart_pending(self) -> bool:
        """Return ``True`` while a restart is scheduled or executing."""
        return self._restart_task is not None

    def begin(self) -> bool:
        """Enter ``STARTING`` for a fresh session; returns ``False`` when already active."""
        if not self._fire(SessionEvent.START):
            return False
        self._reason = None
        self._reset_attempts()
        return True

    def on_session_started(self) -> None:
        """Record a successful (re)start and reset the attempt budget."""
        if self._fire(SessionEvent.STARTED):
            self._reset_attempts()

    def on_session_ended(self, was_explicit_stop: bool, *, error: str | None = None) -> None:
        """Decide between stopping, restarting and failing after a session ends."""
        if was_explicit_stop:
            self._cancel_restart()
            if self._fire(SessionEvent.STOP):
                self._reset_attempts()
                self._terminate()
            return

        if self._state not in (SessionState.STARTING, SessionState.LISTENING):
            logger.debug("Ignoring end of %s session in state %s", self._name, self._state.value)
            return
        if error is not None:
            self._last_error = error
        attempt = self._count + 1
        if attempt > self._config.max_attempts:
            logger.error("%s session exceeded %d restart attempts", self._name, self._count)
            self._fire(SessionEvent.EXHAUSTED)
            self._reason = MAX_RETRIES_REASON
            self._next_delay = None
            self._terminate()
            return

        delay = self._config.delay_for(attempt)
        self._count = attempt
        self._next_delay = delay
        self._fire(SessionEvent.ENDED)
        logger.info(
            "%s session ended; restart %d/%d in %.3fs",
            self._name,
            attempt,
            self._config.max_attempts,
            delay,
        )
        self._telemetry.record_event(
            RestartScheduledEvent(
                source=self._name, attempt=attempt, delay=delay, last_error=self._last_error
            )
        )
        loop = asyncio.get_running_loop()
        self._restart_task = loop.create_task(self._restart_after(delay))

    def fail(self, reason: str) -> None:
        """Terminate with ``FAILED(reason)`` and suppress any pending restart."""
        self._cancel_restart()
        if self._fire(SessionEvent.FAIL):
            self._reason = reason
            self._terminate()

    def stop(self) -> bool:
        """Cancel a pending restart.

        Returns ``True`` when the stop completed the session here (no underlying
        provider session was alive), ``False`` when the owner must still stop its
        running session and report the explicit end.
        """
        if self._restart_task is None:
            return False
        self._cancel_restart()
        if self._fire(SessionEvent.STOP):
            self._reset_attempts()
            self._terminate()
        return True

    def cancel(self) -> None:
        """Tear down immediately without emitting the end callback."""
        self._cancel_restart()
        if self._state in _ACTIVE:
            self._state = SessionState.STOPPED
            self._reset_attempts()

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._fire(SessionEvent.RESTART_DUE):
            self._release_current_task()
            return
        try:
            await self._restart()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - any start failure counts as an attempt
            logger.warning("%s restart attempt %d failed: %s", self._name, self._count, exc)
            self._release_current_task()
            self.on_session_ended(False, error=str(exc))
            return
        self._release_current_task()

    def _release_current_task(self) -> None:
        if self._restart_task is asyncio.current_task():
            self._restart_task = None

    def _fire(self, event: SessionEvent) -> bool:
        target = TRANSITIONS.get((self._state, event))
        if target is None:
            logger.debug(
                "%s: no transition from %s on %s", self._name, self._state.value, event.value
            )
            return False
        logger.debug("%s: %s -> %s (%s)", self._name, self._state.value, target.value, event.value)
        self._state = target
        return True

    def _terminate(self) -> None:
        self._telemetry.record_event(
            SessionTerminatedEvent(source=self._name, state=self._state, reason=self._reason)
        )
        if self._on_end is not None:
            self._on_end(self.status)

    def _reset_attempts(self) -> None:
        self._count = 0
        self._next_delay = None
        self._last_error = None

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
