"""WebSocket relay pairing each client connection with its own provider connection.

The provider key stays on the server. Clients stream raw PCM frames to the
relay, the relay forwards them upstream once the provider session is open and
passes provider JSON events back verbatim.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from http import HTTPStatus
from typing import Protocol
from urllib.parse import urlsplit

from websockets.asyncio.client import connect
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus
from websockets.http11 import Request, Response

from .config import DeepgramConfig, RelayServerConfig
from .errors import ProviderUnavailableError, RelayError
from .telemetry import NullTelemetrySink, RelayClosedEvent, RelayRejectedEvent, TelemetrySink

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "DEEPGRAM_API_KEY not configured"
PROXY_CONNECTED_MESSAGE = json.dumps({"type": "proxy_connected"})
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})

# Close codes that may be observed but never sent in a close frame.
_RESERVED_CLOSE_CODES = frozenset({1005, 1006, 1015})
_INTERNAL_ERROR = 1011


class RelayEndpoint(Protocol):
    """WebSocket connection as seen by the bridge (client or upstream leg)."""

    @property
    def close_code(self) -> int | None:  # pragma: no cover - protocol
        ...

    @property
    def close_reason(self) -> str | None:  # pragma: no cover - protocol
        ...

    async def send(self, message: str | bytes) -> None:  # pragma: no cover - protocol
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:  # pragma: no cover
        ...

    def __aiter__(self) -> AsyncIterator[str | bytes]:  # pragma: no cover - protocol
        ...


UpstreamConnector = Callable[[str, Mapping[str, str], float], Awaitable[RelayEndpoint]]


async def connect_upstream(
    url: str, headers: Mapping[str, str], open_timeout: float
) -> RelayEndpoint:
    """Open the provider WebSocket with server-side credentials."""
    return await connect(
        url, additional_headers=dict(headers), open_timeout=open_timeout, max_size=None
    )


@dataclass(slots=True)
class RelayPair:
    """Both legs of one relayed session; ``upstream_open`` gates audio forwarding."""

    client: RelayEndpoint
    upstream: RelayEndpoint | None = None
    upstream_open: bool = False
    frames_forwarded: int = 0
    frames_dropped: int = 0


class RelayBridge:
    """Relays one client connection to one dedicated provider connection."""

    def __init__(
        self,
        client: RelayEndpoint,
        provider: DeepgramConfig,
        *,
        open_timeout: float = 10.0,
        connector: UpstreamConnector | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Prepare a bridge for *client*; nothing is opened until :meth:`run`."""
        self._pair = RelayPair(client=client)
        self._provider = provider
        self._open_timeout = open_timeout
        self._connector = connector or connect_upstream
        self._telemetry = telemetry or NullTelemetrySink()

    @property
    def pair(self) -> RelayPair:
        """Return the live connection pair."""
        return self._pair

    async def run(self) -> None:
        """Relay until either leg closes, then close the other one."""
        pair = self._pair
        if not self._provider.configured:
            logger.warning("Rejecting relay client: %s", NOT_CONFIGURED_MESSAGE)
            await self._reject(NOT_CONFIGURED_MESSAGE)
            return

        logger.info("Client connected; opening provider connection")
        client_task = asyncio.create_task(self._pump_client())
        try:
            upstream = await self._open_upstream()
        except ProviderUnavailableError as exc:
            self._telemetry.record_event(
                RelayRejectedEvent(message=str(exc), status_code=exc.status_code)
            )
            await self._reject(str(exc))
            await _finish(client_task)
            self._record_closed("upstream", None, str(exc))
            return
        except asyncio.CancelledError:
            client_task.cancel()
            raise

        pair.upstream = upstream
        if client_task.done():
            # The client left while the provider handshake was in flight.
            await self._close_upstream()
            self._record_closed("client", pair.client.close_code, "client closed before open")
            return

        pair.upstream_open = True
        logger.info("Provider connection open")
        with contextlib.suppress(ConnectionClosed):
            await pair.client.send(PROXY_CONNECTED_MESSAGE)

        upstream_task = asyncio.create_task(self._pump_upstream(upstream))
        done, _pending = await asyncio.wait(
            {client_task, upstream_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if client_task in done:
            logger.info("Client disconnected; ending provider stream")
            pair.upstream_open = False
            await self._close_upstream()
            await _finish(upstream_task)
            self._record_closed("client", pair.client.close_code, pair.client.close_reason or "")
        else:
            pair.upstream_open = False
            code, reason = upstream.close_code, upstream.close_reason or ""
            logger.info("Provider closed (code=%s reason=%s); closing client", code, reason)
            await pair.client.close(_sendable_code(code), reason)
            await _finish(client_task)
            self._record_closed("upstream", code, reason)

    async def _open_upstream(self) -> RelayEndpoint:
        headers = {"Authorization": f"Token {self._provider.api_key}"}
        try:
            return await self._connector(
                self._provider.upstream_url(), headers, self._open_timeout
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            body = (exc.response.body or b"").decode("utf-8", errors="replace")
            logger.error("Provider rejected the connection: HTTP %d - %s", status, body)
            raise ProviderUnavailableError(
                f"Deepgram HTTP {status}: {body}", status_code=status
            ) from exc
        except TimeoutError as exc:
            logger.error("Provider handshake timed out after %.1fs", self._open_timeout)
            raise ProviderUnavailableError(
                f"Deepgram connection timed out after {self._open_timeout:.1f}s"
            ) from exc
        except (OSError, InvalidHandshake) as exc:
            logger.error("Provider connection failed: %s", exc)
            raise ProviderUnavailableError(str(exc) or exc.__class__.__name__) from exc

    async def _pump_client(self) -> None:
        pair = self._pair
        try:
            async for message in pair.client:
                upstream = pair.upstream
                if not pair.upstream_open or upstream is None:
                    pair.frames_dropped += 1
                    continue
                try:
                    await upstream.send(message)
                except ConnectionClosed:
                    pair.frames_dropped += 1
                    continue
                pair.frames_forwarded += 1
        except ConnectionClosed:
            pass

    async def _pump_upstream(self, upstream: RelayEndpoint) -> None:
        client = self._pair.client
        try:
            async for message in upstream:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                try:
                    await client.send(message)
                except ConnectionClosed:
                    logger.debug("Dropping provider message; client already closed")
        except ConnectionClosed:
            pass

    async def _close_upstream(self) -> None:
        upstream = self._pair.upstream
        if upstream is None:
            return
        with contextlib.suppress(ConnectionClosed):
            await upstream.send(CLOSE_STREAM_MESSAGE)
        with contextlib.suppress(ConnectionClosed, OSError):
            await upstream.close()

    async def _reject(self, message: str) -> None:
        client = self._pair.client
        with contextlib.suppress(ConnectionClosed):
            await client.send(json.dumps({"error": message}))
        with contextlib.suppress(ConnectionClosed, OSError):
            await client.close()

    def _record_closed(self, initiator: str, code: int | None, reason: str) -> None:
        pair = self._pair
        self._telemetry.record_event(
            RelayClosedEvent(
                initiator=initiator,
                code=code,
                reason=reason,
                frames_forwarded=pair.frames_forwarded,
                frames_dropped=pair.frames_dropped,
            )
        )
        logger.debug(
            "Relay closed by %s: forwarded=%d dropped=%d",
            initiator,
            pair.frames_forwarded,
            pair.frames_dropped,
        )


class RelayServer:
    """Hosts one :class:`RelayBridge` per accepted WebSocket client."""

    def __init__(
        self,
        config: RelayServerConfig,
        *,
        connector: UpstreamConnector | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create a server for *config*; call :meth:`start` to bind it."""
        self._config = config
        self._connector = connector
        self._telemetry = telemetry or NullTelemetrySink()
        self._server: Server | None = None
        self._active: set[RelayBridge] = set()

    @property
    def port(self) -> int:
        """Return the bound TCP port (useful when configured with port 0)."""
        if self._server is None:
            raise RelayError("Relay server is not running")
        return int(next(iter(self._server.sockets)).getsockname()[1])

    @property
    def active_bridges(self) -> int:
        """Return the number of clients currently being relayed."""
        return len(self._active)

    async def start(self) -> None:
        """Bind the listening socket."""
        if self._server is not None:
            return
        self._server = await serve(
            self._handle,
            self._config.host,
            self._config.port,
            process_request=self._process_request,
            max_size=None,
        )
        logger.info(
            "Relay ready on ws://%s:%d%s (provider key %s)",
            self._config.host,
            self.port,
            self._config.ws_path,
            "set" if self._config.provider.configured else "unset",
        )

    async def serve_forever(self) -> None:
        """Start (if needed) and serve until cancelled."""
        await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def close(self) -> None:
        """Stop accepting clients and close open connections."""
        server = self._server
        if server is None:
            return
        self._server = None
        server.close()
        await server.wait_closed()
        logger.info("Relay stopped")

    def status_payload(self) -> tuple[HTTPStatus, dict[str, object]]:
        """Return the status route response; the key itself is never included."""
        provider = self._config.provider
        if not provider.configured:
            return HTTPStatus.SERVICE_UNAVAILABLE, {"error": NOT_CONFIGURED_MESSAGE}
        return HTTPStatus.OK, {
            "configured": True,
            "model": provider.model,
            "keyterms": list(provider.keyterms),
        }

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        path = urlsplit(request.path).path
        if path == self._config.ws_path:
            return None
        if path == self._config.status_path:
            status, payload = self.status_payload()
            return _json_response(status, payload)
        logger.debug("Rejecting request for unknown path %s", path)
        return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")

    async def _handle(self, connection: ServerConnection) -> None:
        bridge = RelayBridge(
            connection,
            self._config.provider,
            open_timeout=self._config.upstream_open_timeout,
            connector=self._connector,
            telemetry=self._telemetry,
        )
        self._active.add(bridge)
        try:
            await bridge.run()
        finally:
            self._active.discard(bridge)


def _json_response(status: HTTPStatus, payload: Mapping[str, object]) -> Response:
    body = json.dumps(payload).encode("utf-8")
    headers = Headers(
        [
            ("Content-Type", "application/json"),
            ("Content-Length", str(len(body))),
            ("Connection", "close"),
        ]
    )
    return Response(status.value, status.phrase, headers, body)


def _sendable_code(code: int | None) -> int:
    if code is None or code in _RESERVED_CLOSE_CODES:
        return 1000 if code in (None, 1005) else _INTERNAL_ERROR
    return code


async def _finish(task: asyncio.Task[None]) -> None:
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        # Only the helper task's cancellation is absorbed; our own propagates.
        if current is not None and current.cancelling():
            raise
