"""Relay transports: event framing, the transport protocol and the Socket.IO relay."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

import aiohttp
import socketio

from phonebackend._constants import INBOUND_EVENTS
from phonebackend.exceptions import TransportError

_logger = logging.getLogger(__name__)


class TransportEventKind(StrEnum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    MESSAGE = "message"


@dataclass(frozen=True)
class TransportEvent:
    """Something that happened on the relay connection."""

    kind: TransportEventKind
    name: str = ""
    payload: Any = field(default_factory=dict)

    @classmethod
    def connected(cls) -> TransportEvent:
        return cls(TransportEventKind.CONNECT)

    @classmethod
    def disconnected(cls, reason: str = "") -> TransportEvent:
        return cls(TransportEventKind.DISCONNECT, payload={"reason": reason})

    @classmethod
    def message(cls, name: str, payload: Any) -> TransportEvent:
        return cls(TransportEventKind.MESSAGE, name=name, payload=payload)


#: Receives transport events. Always invoked on the event loop thread.
EventSink = Callable[[TransportEvent], None]


class RelayTransport(Protocol):
    """Structural interface the session drives.

    Implementations own their reconnection policy and report every
    (re)connect and disconnect through the sink.
    """

    @property
    def is_connected(self) -> bool: ...

    async def start(self) -> None: ...

    async def emit(self, event: str, payload: Any) -> None: ...

    async def close(self) -> None: ...


def encode_frame(event: str, payload: Any) -> str:
    """Serialize an event as ``{"event": ..., "data": ...}`` JSON (MQTT relay framing)."""
    return json.dumps({"event": event, "data": payload}, separators=(",", ":"))


def decode_frame(raw: str | bytes) -> tuple[str, Any]:
    """Parse a relay frame into ``(event, payload)``."""
    try:
        frame = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TransportError(f"Frame is not JSON: {exc}") from exc
    if not isinstance(frame, dict):
        raise TransportError("Frame is not a JSON object")
    event = frame.get("event")
    if not isinstance(event, str) or not event:
        raise TransportError("Frame has no event name")
    payload = frame.get("data")
    return event, payload if payload is not None else {}


class SocketIOTransport:
    """Socket.IO client for the routing service.

    python-socketio owns reconnection (``reconnection_delay`` up to
    ``reconnection_delay_max``, randomized); each (re)connect and
    disconnect is reported through the sink.
    """

    def __init__(
        self,
        url: str,
        sink: EventSink,
        *,
        events: Sequence[str] = INBOUND_EVENTS,
        transports: Sequence[str] = ("websocket", "polling"),
        min_delay: float = 1.0,
        max_delay: float = 30.0,
        connect_timeout: float = 10.0,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._sink = sink
        self._events = tuple(events)
        self._transports = list(transports)
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._connect_timeout = connect_timeout
        self._external_session = http_session is not None
        self._http = http_session
        self._sio: socketio.AsyncClient | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._sio is not None and self._sio.connected

    def _build_client(self) -> socketio.AsyncClient:
        sio = socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=0,
            reconnection_delay=self._min_delay,
            reconnection_delay_max=self._max_delay,
            handle_sigint=False,
            http_session=self._http,
        )
        sio.on("connect", self._on_connect)
        sio.on("disconnect", self._on_disconnect)
        for name in self._events:
            sio.on(name, self._forwarder(name))
        return sio

    async def _on_connect(self) -> None:
        _logger.debug("Socket.IO connected to %s", self._url)
        self._sink(TransportEvent.connected())

    async def _on_disconnect(self, *args: Any) -> None:
        reason = str(args[0]) if args else ""
        _logger.debug("Socket.IO disconnected from %s %s", self._url, reason)
        self._sink(TransportEvent.disconnected(reason))

    def _forwarder(self, name: str) -> Callable[..., Awaitable[None]]:
        async def forward(data: Any = None) -> None:
            _logger.debug("Relay event received: %s", name)
            self._sink(TransportEvent.message(name, data if data is not None else {}))

        return forward

    async def start(self) -> None:
        if self._task is not None:
            return
        if self._http is None:
            self._http = aiohttp.ClientSession()
        self._sio = self._build_client()
        self._task = asyncio.create_task(self._connect(self._sio), name="phonebackend-socketio")

    async def _connect(self, sio: socketio.AsyncClient) -> None:
        _logger.debug("Connecting to routing service %s", self._url)
        try:
            await sio.connect(
                self._url,
                transports=self._transports,
                wait_timeout=self._connect_timeout,
                retry=True,
            )
        except socketio.exceptions.ConnectionError as exc:
            _logger.error("Could not connect to routing service %s: %s", self._url, exc)

    async def emit(self, event: str, payload: Any) -> None:
        sio = self._sio
        if sio is None or not sio.connected:
            raise TransportError(f"Cannot send {event!r}: relay not connected", url=self._url)
        try:
            await sio.emit(event, payload)
        except socketio.exceptions.SocketIOError as exc:
            raise TransportError(f"Sending {event!r} failed: {exc}", url=self._url) from exc

    async def close(self) -> None:
        sio = self._sio
        self._sio = None
        if sio is not None:
            await sio.shutdown()
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if not self._external_session and self._http is not None:
            await self._http.close()
            self._http = None
