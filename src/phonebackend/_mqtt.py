"""MQTT relay transport on a threaded paho-mqtt runtime."""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any, cast
from urllib.parse import unquote, urlsplit

import paho.mqtt.client as mqtt

from phonebackend._transport import EventSink, TransportEvent, decode_frame, encode_frame
from phonebackend.exceptions import TransportError


@dataclass(frozen=True)
class MqttRelayTarget:
    """Broker and topics for one agent."""

    host: str
    port: int
    tls: bool
    inbound_topic: str
    outbound_topic: str
    client_id: str
    username: str | None = None
    password: str | None = None


def parse_mqtt_target(routing_url: str, agent_username: str, *, topic_prefix: str) -> MqttRelayTarget:
    """Build broker details from an ``mqtt://`` or ``mqtts://`` routing URL.

    Broker credentials may be embedded in the URL (``mqtt://user:pw@host``).
    """
    parts = urlsplit(routing_url)
    if parts.scheme not in {"mqtt", "mqtts"}:
        raise TransportError(f"Not an MQTT URL: {routing_url!r}", url=routing_url)
    if not parts.hostname:
        raise TransportError(f"MQTT URL has no host: {routing_url!r}", url=routing_url)

    tls = parts.scheme == "mqtts"
    base = f"{topic_prefix.strip('/')}/{agent_username}"
    return MqttRelayTarget(
        host=parts.hostname,
        port=parts.port or (8883 if tls else 1883),
        tls=tls,
        inbound_topic=f"{base}/in",
        outbound_topic=f"{base}/out",
        client_id=f"phone-backend-{agent_username}-{secrets.token_hex(4)}",
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
    )


class MqttRelayTransport:
    """Threaded paho-mqtt relay that hands events to an asyncio loop.

    paho reconnects on its own (``reconnect_delay_set``); each reconnect is
    reported through the sink so the session re-authenticates.
    """

    def __init__(
        self,
        target: MqttRelayTarget,
        sink: EventSink,
        *,
        loop: asyncio.AbstractEventLoop,
        keepalive: int = 60,
        min_delay: float = 1.0,
        max_delay: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._target = target
        self._sink = sink
        self._loop = loop
        self._keepalive = keepalive
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _deliver(self, event: TransportEvent) -> None:
        self._loop.call_soon_threadsafe(self._sink, event)

    def _build_client(self) -> mqtt.Client:
        target = self._target
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=target.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if target.username:
            client.username_pw_set(target.username, target.password)
        if target.tls:
            client.tls_set()
        client.reconnect_delay_set(min_delay=max(1, int(self._min_delay)), max_delay=max(1, int(self._max_delay)))

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected, subscribing topic=%s", target.inbound_topic)
            c.subscribe(target.inbound_topic, qos=1)
            self._connected = True
            self._deliver(TransportEvent.connected())

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                name, payload = decode_frame(msg.payload)
            except TransportError as exc:
                self._logger.warning("Dropping MQTT frame on %s: %s", msg.topic, exc)
                return
            self._logger.debug("MQTT event received: %s", name)
            self._deliver(TransportEvent.message(name, payload))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            was_connected = self._connected
            self._connected = False
            if was_connected:
                self._logger.debug("MQTT disconnected: %s", reason_code)
                self._deliver(TransportEvent.disconnected(str(reason_code)))

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect
        return client

    def _start_blocking(self) -> None:
        client = self._build_client()
        self._logger.debug(
            "MQTT relay start host=%s port=%s client_id=%s",
            self._target.host,
            self._target.port,
            self._target.client_id,
        )
        client.connect_async(self._target.host, self._target.port, keepalive=self._keepalive)
        client.loop_start()
        self._client = client

    def _stop_blocking(self) -> None:
        client = self._client
        self._client = None
        self._connected = False
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    async def start(self) -> None:
        if self._client is not None:
            return
        await self._loop.run_in_executor(None, self._start_blocking)

    async def emit(self, event: str, payload: Any) -> None:
        client = self._client
        if client is None or not self._connected:
            raise TransportError(f"Cannot send {event!r}: relay not connected")
        info = client.publish(self._target.outbound_topic, encode_frame(event, payload), qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Publishing {event!r} failed: {mqtt.error_string(info.rc)}")

    async def close(self) -> None:
        await self._loop.run_in_executor(None, self._stop_blocking)
