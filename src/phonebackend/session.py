"""Relay session: handshake, heartbeat and event dispatch.

Transports push :class:`TransportEvent` objects into a bounded queue; a
single consumer in :meth:`ConnectionSession.run` handles each event to
completion before taking the next one.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from phonebackend._constants import (
    EVENT_API_REQUEST,
    EVENT_API_RESPONSE,
    EVENT_AUTH_ERROR,
    EVENT_AUTHENTICATE,
    EVENT_AUTHENTICATED,
    EVENT_DATA_SNAPSHOT,
    EVENT_GET_DATA_SNAPSHOT,
    EVENT_HEARTBEAT,
    HEARTBEAT_INTERVAL_SECONDS,
)
from phonebackend._transport import RelayTransport, TransportEvent, TransportEventKind
from phonebackend.dispatcher import RequestDispatcher
from phonebackend.exceptions import AuthenticationError, PhoneBackendError, TransportError
from phonebackend.models.messages import AuthenticatePayload, AuthErrorPayload, DataSnapshot, SnapshotRequest
from phonebackend.store import PathStore

_logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ConnectionSession:
    """Authenticated, heartbeat-carrying connection to the routing service.

    Parameters
    ----------
    username : str
        Identity sent in the ``authenticate`` handshake.
    store : PathStore
        Store answering ``get_data_snapshot``.
    dispatcher : RequestDispatcher
        Serves ``api_request`` events.
    heartbeat_interval : float
        Seconds between ``heartbeat`` events while connected.
    queue_size : int
        Capacity of the inbound event queue.
    on_authenticated : callable, optional
        Called after every successful handshake.
    """

    def __init__(
        self,
        *,
        username: str,
        store: PathStore,
        dispatcher: RequestDispatcher,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        queue_size: int = 256,
        on_authenticated: Callable[[], None] | None = None,
    ) -> None:
        self._username = username
        self._store = store
        self._dispatcher = dispatcher
        self._heartbeat_interval = heartbeat_interval
        self._queue: asyncio.Queue[TransportEvent | None] = asyncio.Queue(maxsize=queue_size)
        self._on_authenticated = on_authenticated
        self._transport: RelayTransport | None = None
        self._state = SessionState.DISCONNECTED
        self._closing = False
        self._handlers: dict[str, Callable[[Any], Awaitable[None]]] = {
            EVENT_AUTHENTICATED: self._on_authenticated_event,
            EVENT_AUTH_ERROR: self._on_auth_error,
            EVENT_API_REQUEST: self._on_api_request,
            EVENT_GET_DATA_SNAPSHOT: self._on_snapshot_request,
        }

    @property
    def username(self) -> str:
        return self._username

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    def attach(self, transport: RelayTransport) -> None:
        """Bind the transport whose sink is :meth:`deliver`."""
        self._transport = transport

    def _require_transport(self) -> RelayTransport:
        if self._transport is None:
            raise PhoneBackendError("No transport attached. Call attach() before run().")
        return self._transport

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            _logger.debug("Session state %s -> %s", self._state, state)
            self._state = state

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def deliver(self, event: TransportEvent) -> None:
        """Transport sink. Must be called on the event loop thread."""
        if self._closing:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            _logger.warning("Event queue full, dropping %s %s", event.kind, event.name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start the transport and process events until :meth:`close`.

        Raises :class:`AuthenticationError` when the router rejects the
        identity.
        """
        transport = self._require_transport()
        self._set_state(SessionState.CONNECTING)
        heartbeat = asyncio.create_task(self._heartbeat_loop(), name="phonebackend-heartbeat")
        try:
            await transport.start()
            while True:
                event = await self._queue.get()
                if event is None:
                    break
                await self._process(event)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            await self._shutdown_transport()

    async def close(self) -> None:
        """Close the relay connection and stop :meth:`run`.

        Queued events are discarded; in-flight work is not awaited.
        """
        if self._closing:
            return
        self._closing = True
        _logger.info("Closing relay session")
        try:
            await self._shutdown_transport()
        finally:
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(None)

    async def _shutdown_transport(self) -> None:
        if self._state is SessionState.CLOSED:
            return
        self._closing = True
        self._set_state(SessionState.CLOSED)
        if self._transport is not None:
            await self._transport.close()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            transport = self._transport
            if transport is None or not transport.is_connected:
                continue
            if self._state in (SessionState.CONNECTED, SessionState.AUTHENTICATED):
                await self._emit(EVENT_HEARTBEAT, {})

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _process(self, event: TransportEvent) -> None:
        if event.kind is TransportEventKind.CONNECT:
            _logger.info("Connected to routing service")
            self._set_state(SessionState.CONNECTED)
            handshake = AuthenticatePayload(username=self._username, user_id=self._username)
            await self._emit(EVENT_AUTHENTICATE, handshake.to_wire())
            return

        if event.kind is TransportEventKind.DISCONNECT:
            _logger.info("Disconnected from routing service")
            self._set_state(SessionState.DISCONNECTED)
            # The transport reconnects on its own.
            if not self._closing:
                self._set_state(SessionState.CONNECTING)
            return

        handler = self._handlers.get(event.name)
        if handler is None:
            _logger.debug("Ignoring relay event %s", event.name)
            return
        try:
            await handler(event.payload)
        except ValidationError as exc:
            _logger.warning("Malformed %s event: %s", event.name, exc)

    async def _on_authenticated_event(self, _payload: Any) -> None:
        _logger.info("Authenticated as %s", self._username)
        self._set_state(SessionState.AUTHENTICATED)
        if self._on_authenticated is not None:
            try:
                self._on_authenticated()
            except Exception:
                _logger.debug("on_authenticated callback failed", exc_info=True)

    async def _on_auth_error(self, payload: Any) -> None:
        try:
            message = AuthErrorPayload.model_validate(payload if isinstance(payload, dict) else {}).message
        except ValidationError:
            message = AuthErrorPayload().message
        _logger.error("Authentication failed: %s", message)
        raise AuthenticationError(message)

    async def _on_api_request(self, payload: Any) -> None:
        if not self.is_authenticated:
            _logger.warning("Ignoring api_request before authentication")
            return
        response = self._dispatcher.handle_raw(payload)
        if response is not None:
            await self._emit(EVENT_API_RESPONSE, response.to_wire())

    async def _on_snapshot_request(self, payload: Any) -> None:
        if not self.is_authenticated:
            _logger.warning("Ignoring get_data_snapshot before authentication")
            return
        request = SnapshotRequest.model_validate(payload if isinstance(payload, dict) else {})
        snapshot = DataSnapshot(request_id=request.request_id, snapshot=self._store.snapshot())
        await self._emit(EVENT_DATA_SNAPSHOT, snapshot.to_wire())
        _logger.info("Sent data snapshot")

    async def _emit(self, event: str, payload: Any) -> None:
        transport = self._require_transport()
        try:
            await transport.emit(event, payload)
        except TransportError as exc:
            _logger.warning("Could not send %s: %s", event, exc)
