"""Agent wiring: store, dispatcher, transport and session for one identity."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit

from phonebackend._mqtt import MqttRelayTransport, parse_mqtt_target
from phonebackend._transport import EventSink, RelayTransport, SocketIOTransport
from phonebackend.config import PhoneBackendConfig
from phonebackend.dispatcher import RequestDispatcher
from phonebackend.exceptions import ConfigError, PhoneBackendError
from phonebackend.session import ConnectionSession
from phonebackend.store import PathStore

_logger = logging.getLogger(__name__)


def build_transport(
    config: PhoneBackendConfig,
    username: str,
    sink: EventSink,
    *,
    loop: asyncio.AbstractEventLoop,
) -> RelayTransport:
    """Pick the relay transport for ``config.routing_url``'s scheme."""
    scheme = urlsplit(config.routing_url).scheme
    if scheme in {"http", "https"}:
        return SocketIOTransport(
            config.routing_url,
            sink,
            min_delay=config.reconnect_min_delay,
            max_delay=config.reconnect_max_delay,
        )
    if scheme in {"mqtt", "mqtts"}:
        target = parse_mqtt_target(config.routing_url, username, topic_prefix=config.mqtt_topic_prefix)
        return MqttRelayTransport(
            target,
            sink,
            loop=loop,
            keepalive=config.mqtt_keepalive,
            min_delay=config.reconnect_min_delay,
            max_delay=config.reconnect_max_delay,
        )
    raise ConfigError(f"Unsupported routing URL scheme: {config.routing_url!r}")


class PhoneBackendAgent:
    """Serve the local store through the routing service.

    Usage::

        async with PhoneBackendAgent(config, "alice") as agent:
            await agent.run()
    """

    def __init__(
        self,
        config: PhoneBackendConfig,
        username: str,
        *,
        store: PathStore | None = None,
        transport_factory: Callable[[EventSink], RelayTransport] | None = None,
        on_authenticated: Callable[[], None] | None = None,
    ) -> None:
        self._config = config
        self._username = username
        if store is None:
            store = PathStore(config.data_file, coercion=config.coercion_policy)
        self._store = store
        self._dispatcher = RequestDispatcher(self._store)
        self._transport_factory = transport_factory
        self._on_authenticated = on_authenticated
        self._session: ConnectionSession | None = None
        self._shutdown_task: asyncio.Task[None] | None = None

    @property
    def store(self) -> PathStore:
        return self._store

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    @property
    def session(self) -> ConnectionSession:
        if self._session is None:
            raise PhoneBackendError("Agent not started. Use 'async with PhoneBackendAgent(...) as agent:'")
        return self._session

    async def __aenter__(self) -> PhoneBackendAgent:
        loop = asyncio.get_running_loop()
        session = ConnectionSession(
            username=self._username,
            store=self._store,
            dispatcher=self._dispatcher,
            heartbeat_interval=self._config.heartbeat_interval,
            queue_size=self._config.event_queue_size,
            on_authenticated=self._on_authenticated,
        )
        if self._transport_factory is not None:
            transport = self._transport_factory(session.deliver)
        else:
            transport = build_transport(self._config, self._username, session.deliver, loop=loop)
        session.attach(transport)
        self._session = session
        return self

    async def __aexit__(self, *exc: Any) -> None:
        session = self._session
        self._session = None
        if session is not None:
            await session.close()

    async def run(self, *, handle_signals: bool = True) -> None:
        """Run the session until shutdown.

        With ``handle_signals`` SIGINT/SIGTERM close the connection and
        make this return; an error raised while closing propagates here.
        """
        session = self.session
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        if handle_signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self._request_shutdown)
                except (NotImplementedError, RuntimeError):
                    _logger.debug("Signal handler for %s unavailable", sig)
                    continue
                installed.append(sig)
        try:
            await session.run()
        finally:
            for sig in installed:
                with contextlib.suppress(ValueError, RuntimeError):
                    loop.remove_signal_handler(sig)
            shutdown = self._shutdown_task
            self._shutdown_task = None
            if shutdown is not None:
                await shutdown

    def _request_shutdown(self) -> None:
        _logger.info("Shutdown requested")
        if self._session is not None and self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._session.close())
