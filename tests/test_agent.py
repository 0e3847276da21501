from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest
import socketio
from aiohttp import web
from aiohttp.test_utils import TestServer

from fakes import FakeTransport, wait_for
from phonebackend._mqtt import MqttRelayTransport
from phonebackend._transport import SocketIOTransport
from phonebackend.agent import PhoneBackendAgent, build_transport
from phonebackend.config import PhoneBackendConfig
from phonebackend.exceptions import AuthenticationError, PhoneBackendError, TransportError
from phonebackend.session import SessionState


def _noop(_event: Any) -> None:
    return None


@pytest.mark.asyncio
async def test_build_transport_socketio(tmp_path: Path) -> None:
    config = PhoneBackendConfig(routing_url="https://relay.example.com", config_dir=tmp_path)
    transport = build_transport(config, "alice", _noop, loop=asyncio.get_running_loop())
    assert isinstance(transport, SocketIOTransport)
    assert transport.url == "https://relay.example.com"
    await transport.close()


@pytest.mark.asyncio
async def test_build_transport_mqtt(tmp_path: Path) -> None:
    config = PhoneBackendConfig(routing_url="mqtt://broker.local", config_dir=tmp_path)
    transport = build_transport(config, "alice", _noop, loop=asyncio.get_running_loop())
    assert isinstance(transport, MqttRelayTransport)
    await transport.close()


def test_session_requires_context(tmp_path: Path) -> None:
    agent = PhoneBackendAgent(PhoneBackendConfig(config_dir=tmp_path), "alice")
    with pytest.raises(PhoneBackendError, match="not started"):
        _ = agent.session


def _fake_factory(transports: list[FakeTransport]) -> Any:
    def factory(sink: Any) -> FakeTransport:
        transport = FakeTransport(sink)
        transports.append(transport)
        return transport

    return factory


@pytest.mark.asyncio
async def test_agent_with_injected_transport(tmp_path: Path) -> None:
    transports: list[FakeTransport] = []
    authenticated: list[bool] = []
    config = PhoneBackendConfig(config_dir=tmp_path)
    agent = PhoneBackendAgent(
        config,
        "alice",
        transport_factory=_fake_factory(transports),
        on_authenticated=lambda: authenticated.append(True),
    )

    async with agent:
        task = asyncio.create_task(agent.run(handle_signals=False))
        transport = transports[0]
        await wait_for(lambda: transport.started)
        transport.connect()
        transport.push("authenticated", {})
        transport.push("api_request", {"id": 7, "method": "GET", "path": "/"})
        await wait_for(lambda: bool(transport.events("api_response")))

        assert authenticated == [True]
        assert transport.events("api_response") == [{"requestId": 7, "statusCode": 200, "body": {}}]
        session = agent.session

    await asyncio.wait_for(task, 2.0)
    assert session.state is SessionState.CLOSED
    assert transport.closed


@pytest.mark.asyncio
async def test_requested_shutdown_stops_run(tmp_path: Path) -> None:
    transports: list[FakeTransport] = []
    agent = PhoneBackendAgent(PhoneBackendConfig(config_dir=tmp_path), "alice", transport_factory=_fake_factory(transports))

    async with agent:
        task = asyncio.create_task(agent.run(handle_signals=False))
        await wait_for(lambda: transports[0].started)
        agent._request_shutdown()
        await asyncio.wait_for(task, 2.0)

    assert transports[0].closed


@pytest.mark.asyncio
async def test_requested_shutdown_error_reaches_run(tmp_path: Path) -> None:
    class FailingClose(FakeTransport):
        async def close(self) -> None:
            raise TransportError("close failed")

    agent = PhoneBackendAgent(PhoneBackendConfig(config_dir=tmp_path), "alice", transport_factory=FailingClose)

    async with agent:
        task = asyncio.create_task(agent.run(handle_signals=False))
        await asyncio.sleep(0)
        agent._request_shutdown()
        with pytest.raises(TransportError, match="close failed"):
            await asyncio.wait_for(task, 2.0)


# ------------------------------------------------------------------
# Against a Socket.IO routing server
# ------------------------------------------------------------------


async def _serve(sio: socketio.AsyncServer) -> TestServer:
    app = web.Application()
    sio.attach(app)
    server = TestServer(app)
    await server.start_server()
    return server


def _config(server: TestServer, tmp_path: Path) -> PhoneBackendConfig:
    return PhoneBackendConfig(
        routing_url=str(server.make_url("/")),
        config_dir=tmp_path,
        reconnect_min_delay=0.1,
        reconnect_max_delay=0.5,
    )


@pytest.mark.asyncio
async def test_end_to_end_over_socketio(tmp_path: Path) -> None:
    received: list[tuple[str, Any]] = []
    done = asyncio.Event()
    sio = socketio.AsyncServer(async_mode="aiohttp")

    @sio.on("authenticate")
    async def authenticate(sid: str, data: Any) -> None:
        received.append(("authenticate", data))
        await sio.emit("authenticated", {}, to=sid)
        await sio.emit(
            "api_request",
            {"id": "r1", "method": "POST", "path": "/notes", "body": {"text": "hi"}},
            to=sid,
        )

    @sio.on("api_response")
    async def api_response(sid: str, data: Any) -> None:
        received.append(("api_response", data))
        await sio.emit("get_data_snapshot", {"requestId": "s1"}, to=sid)

    @sio.on("data_snapshot")
    async def data_snapshot(_sid: str, data: Any) -> None:
        received.append(("data_snapshot", data))
        done.set()

    server = await _serve(sio)
    try:
        config = _config(server, tmp_path)
        async with PhoneBackendAgent(config, "alice") as agent:
            task = asyncio.create_task(agent.run(handle_signals=False))
            await asyncio.wait_for(done.wait(), 10.0)
            await agent.session.close()
            await asyncio.wait_for(task, 5.0)
    finally:
        await server.close()

    assert [name for name, _data in received] == ["authenticate", "api_response", "data_snapshot"]
    assert received[0][1] == {"username": "alice", "userId": "alice"}

    response = received[1][1]
    assert response["requestId"] == "r1"
    assert response["statusCode"] == 201
    note_id = response["body"]["id"]
    assert response["body"] == {"id": note_id, "text": "hi"}

    assert received[2][1] == {"requestId": "s1", "snapshot": {"notes": {note_id: {"id": note_id, "text": "hi"}}}}
    persisted = json.loads(config.data_file.read_text(encoding="utf-8"))
    assert persisted == {"notes": {note_id: {"id": note_id, "text": "hi"}}}


@pytest.mark.asyncio
async def test_auth_error_from_router_ends_run(tmp_path: Path) -> None:
    sio = socketio.AsyncServer(async_mode="aiohttp")

    @sio.on("authenticate")
    async def authenticate(sid: str, _data: Any) -> None:
        await sio.emit("auth_error", {"message": "unknown user"}, to=sid)

    server = await _serve(sio)
    try:
        async with PhoneBackendAgent(_config(server, tmp_path), "mallory") as agent:
            with pytest.raises(AuthenticationError, match="unknown user"):
                await asyncio.wait_for(agent.run(handle_signals=False), 10.0)
    finally:
        await server.close()
