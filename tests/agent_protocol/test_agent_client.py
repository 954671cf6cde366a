"""
Tests for the agent gateway WebSocket client.

A small aiohttp server plays the gateway side of the protocol:
challenge, connect/response handshake, then request/response
frames and pushed events.
"""

import asyncio
import json

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from agent_protocol.client import AgentClient
from agent_protocol.exceptions import (
    AgentAuthError,
    AgentConnectionError,
    AgentRpcError,
    AgentTimeoutError,
)
from agent_protocol.models import PROTOCOL_VERSION, AgentAuth, AuthMode, ConnectionOptions


GATEWAY_TOKEN = "gateway-secret"

HEALTH_PAYLOAD = {
    "ok": True,
    "channels": [
        {"name": "whatsapp", "type": "whatsapp", "ok": True},
        {"name": "discord", "type": "discord", "ok": False},
    ],
    "uptime": 120,
}


def make_gateway_app(hang_methods=(), push_events=(), bare_failure_methods=()):
    """
    Gateway stub. Methods in hang_methods never answer; methods in
    bare_failure_methods answer ok:false with no error object.
    """
    app = web.Application()
    app["connect_frames"] = []

    async def handler(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        await ws.send_json({"type": "event", "event": "connect.challenge", "payload": {"nonce": "abc"}})
        connect = await ws.receive_json()
        request.app["connect_frames"].append(connect)

        if connect.get("auth", {}).get("token") != GATEWAY_TOKEN:
            await ws.send_json({
                "type": "res",
                "ok": False,
                "error": {"code": "UNAVAILABLE", "message": "auth token rejected"},
            })
            await ws.close()
            return ws

        await ws.send_json({"type": "res", "ok": True, "payload": {"type": "hello-ok"}})
        for event in push_events:
            await ws.send_json(event)

        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                break
            frame = json.loads(msg.data)
            method = frame.get("method")
            if method in hang_methods:
                continue
            if method in bare_failure_methods:
                response = {"type": "res", "id": frame["id"], "ok": False}
            elif method == "health":
                response = {"type": "res", "id": frame["id"], "ok": True, "payload": HEALTH_PAYLOAD}
            elif method == "status":
                response = {
                    "type": "res",
                    "id": frame["id"],
                    "ok": True,
                    "payload": {"state": "running", "version": "2.1.0", "configHash": "cfg-9"},
                }
            else:
                response = {
                    "type": "res",
                    "id": frame["id"],
                    "ok": False,
                    "error": {"code": "METHOD_NOT_FOUND", "message": f"unknown method {method}"},
                }
            await ws.send_json(response)
        return ws

    app.router.add_get("/", handler)
    return app


def options_for(server, token=GATEWAY_TOKEN, timeout_ms=2000):
    return ConnectionOptions(
        host=server.host,
        port=server.port,
        auth=AgentAuth(mode=AuthMode.TOKEN, secret=token),
        timeout_ms=timeout_ms,
    )


class TestHandshake:

    @pytest.mark.asyncio
    async def test_connect_sends_auth_and_protocol_version(self):
        app = make_gateway_app()
        async with TestServer(app) as server:
            async with AgentClient(options_for(server)) as client:
                assert client.is_connected

            frame = app["connect_frames"][0]
            assert frame["type"] == "connect"
            assert frame["auth"] == {"mode": "token", "token": GATEWAY_TOKEN}
            assert frame["protocolVersion"] == {"min": PROTOCOL_VERSION, "max": PROTOCOL_VERSION}
            assert frame["clientMetadata"]["name"] == "bot-fleet-monitor"

        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_rejected_credentials_raise_auth_error(self):
        async with TestServer(make_gateway_app()) as server:
            with pytest.raises(AgentAuthError):
                async with AgentClient(options_for(server, token="wrong")):
                    pass

    @pytest.mark.asyncio
    async def test_refused_connection_raises_connection_error(self):
        options = ConnectionOptions(
            host="127.0.0.1",
            port=1,
            auth=AgentAuth(mode=AuthMode.TOKEN, secret=GATEWAY_TOKEN),
            timeout_ms=2000,
        )
        with pytest.raises(AgentConnectionError):
            async with AgentClient(options):
                pass


class TestRequests:

    @pytest.mark.asyncio
    async def test_health_parses_channels(self):
        async with TestServer(make_gateway_app()) as server:
            async with AgentClient(options_for(server)) as client:
                health = await client.health()

        assert health.ok is True
        assert health.channels_linked == 2
        assert health.channels_degraded == 1
        assert health.is_healthy is False
        assert health.raw == HEALTH_PAYLOAD

    @pytest.mark.asyncio
    async def test_status(self):
        async with TestServer(make_gateway_app()) as server:
            async with AgentClient(options_for(server)) as client:
                status = await client.status()

        assert status.state == "running"
        assert status.config_hash == "cfg-9"

    @pytest.mark.asyncio
    async def test_error_payload_raises_rpc_error(self):
        async with TestServer(make_gateway_app()) as server:
            async with AgentClient(options_for(server)) as client:
                with pytest.raises(AgentRpcError) as exc_info:
                    await client.request("config.apply")

        assert exc_info.value.code == "METHOD_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_not_ok_without_error_object_raises_rpc_error(self):
        async with TestServer(make_gateway_app(bare_failure_methods=("config.apply",))) as server:
            async with AgentClient(options_for(server)) as client:
                with pytest.raises(AgentRpcError) as exc_info:
                    await client.request("config.apply")

                # the connection stays usable after the failed call
                health = await client.health()

        assert exc_info.value.code == "UNKNOWN"
        assert "Unknown error" in str(exc_info.value)
        assert health.ok is True

    @pytest.mark.asyncio
    async def test_unanswered_request_times_out(self):
        async with TestServer(make_gateway_app(hang_methods=("health",))) as server:
            async with AgentClient(options_for(server, timeout_ms=200)) as client:
                with pytest.raises(AgentTimeoutError):
                    await client.health()

    @pytest.mark.asyncio
    async def test_request_without_connection_fails(self):
        client = AgentClient(
            ConnectionOptions(host="127.0.0.1", port=1, auth=AgentAuth(mode=AuthMode.TOKEN))
        )
        with pytest.raises(AgentConnectionError):
            await client.health()


class TestEvents:

    @pytest.mark.asyncio
    async def test_pushed_event_is_normalized(self):
        push = [{"type": "event", "event": "agentOutput", "payload": {"requestId": "r1", "seq": 1, "chunk": "hi"}}]
        received = []
        got_event = asyncio.Event()

        def on_event(event):
            received.append(event)
            got_event.set()

        async with TestServer(make_gateway_app(push_events=push)) as server:
            client = AgentClient(options_for(server))
            client.on_event(on_event)
            async with client:
                await asyncio.wait_for(got_event.wait(), timeout=2)

        assert received == [{"type": "agentOutput", "requestId": "r1", "seq": 1, "chunk": "hi"}]
