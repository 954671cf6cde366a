"""
Agent Protocol Client.

============================================================
PURPOSE
============================================================
Short-lived authenticated WebSocket client for one agent gateway.

============================================================
HANDSHAKE
============================================================
1. Gateway sends a challenge frame
2. Client answers with a connect frame (protocol version, auth,
   client metadata)
3. Gateway answers; ``{type: "res", ok: false}`` is a rejection

Requests are ``{type: "req", id, method, params}``. Responses are
``{type: "res", id, ok, payload | error}`` or the legacy
``{id, result | error}``. Events are ``{type: "event", event, payload}``.

============================================================
USAGE
============================================================
    async with AgentClient(options) as client:
        health = await client.health()

Leaving the ``async with`` block always disconnects, including on
RPC error and timeout.

============================================================
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from agent_protocol.exceptions import (
    AgentAuthError,
    AgentConnectionError,
    AgentProtocolError,
    AgentRpcError,
    AgentTimeoutError,
)
from agent_protocol.models import (
    AgentHealth,
    AgentStatus,
    ConnectionOptions,
    build_connect_frame,
)


logger = logging.getLogger(__name__)


EventCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
DisconnectCallback = Callable[[], Union[None, Awaitable[None]]]


class AgentClient:
    """
    WebSocket client for the agent gateway.

    Holds no persistent connection between uses and never reconnects.
    """

    def __init__(
        self,
        options: ConnectionOptions,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._options = options
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._event_callbacks: List[EventCallback] = []
        self._disconnect_callbacks: List[DisconnectCallback] = []
        self._connected = False
        self._closing = False

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def options(self) -> ConnectionOptions:
        return self._options

    @property
    def is_connected(self) -> bool:
        return self._connected and self._ws is not None and not self._ws.closed

    # --------------------------------------------------------
    # CONTEXT MANAGER
    # --------------------------------------------------------

    async def __aenter__(self) -> "AgentClient":
        try:
            await self.connect()
        except BaseException:
            await self.disconnect()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> Dict[str, Any]:
        """
        Open the socket and complete the handshake.

        Returns:
            The gateway's connect response

        Raises:
            AgentTimeoutError: Handshake exceeded timeout_ms
            AgentAuthError: Credentials rejected
            AgentConnectionError: Any other connect failure
        """
        try:
            result = await asyncio.wait_for(self._handshake(), timeout=self._options.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise AgentTimeoutError("Connect handshake timed out") from e
        except AgentProtocolError:
            raise
        except aiohttp.ClientError as e:
            raise AgentConnectionError(f"Failed to connect to {self._options.url}: {e}", cause=e) from e
        except OSError as e:
            raise AgentConnectionError(f"Failed to connect to {self._options.url}: {e}", cause=e) from e

        self._connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.debug(f"Connected to agent gateway {self._options.url}")
        return result

    async def _handshake(self) -> Dict[str, Any]:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        self._ws = await self._session.ws_connect(self._options.url)

        await self._receive_json("Invalid challenge message")
        await self._ws.send_json(build_connect_frame(self._options))
        data = await self._receive_json("Invalid connect response")

        if data.get("type") == "res" and data.get("ok") is False:
            error = data.get("error") or {}
            message = error.get("message") or "Connection rejected"
            code = error.get("code") or ""
            if code == "UNAVAILABLE" or "auth" in message.lower():
                raise AgentAuthError(message, code=code or None)
            raise AgentConnectionError(message, code=code or None)

        return data

    async def _receive_json(self, invalid_message: str) -> Dict[str, Any]:
        msg = await self._ws.receive()
        if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.CLOSING):
            raise AgentConnectionError("Connection closed before handshake completed")
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise AgentConnectionError(f"WebSocket error: {self._ws.exception()}")
        try:
            data = json.loads(msg.data)
        except (TypeError, ValueError) as e:
            raise AgentConnectionError(invalid_message) from e
        if not isinstance(data, dict):
            raise AgentConnectionError(invalid_message)
        return data

    async def disconnect(self) -> None:
        """Close the socket. Safe to call repeatedly and after failures."""
        self._closing = True
        self._connected = False

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        self._fail_pending(AgentConnectionError("Client disconnected"))

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # --------------------------------------------------------
    # RPC
    # --------------------------------------------------------

    async def health(self) -> AgentHealth:
        return AgentHealth.from_wire(await self.request("health"))

    async def status(self) -> AgentStatus:
        return AgentStatus.from_wire(await self.request("status"))

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Issue one RPC and wait for its response.

        Raises:
            AgentConnectionError: Not connected, or closed mid-request
            AgentTimeoutError: No response within timeout_ms
            AgentRpcError: Gateway returned an error payload
        """
        if not self.is_connected:
            raise AgentConnectionError("Not connected to gateway")

        request_id = str(uuid.uuid4())
        frame: Dict[str, Any] = {"type": "req", "id": request_id, "method": method}
        if params is not None:
            frame["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send_json(frame)
            return await asyncio.wait_for(future, timeout=self._options.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise AgentTimeoutError(f'Request "{method}" timed out') from e
        finally:
            self._pending.pop(request_id, None)

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    def on_event(self, callback: EventCallback) -> None:
        """Register a callback for gateway events (normalized to ``{type, ...payload}``)."""
        self._event_callbacks.append(callback)

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        """Register a callback for an unrequested close."""
        self._disconnect_callbacks.append(callback)

    # --------------------------------------------------------
    # MESSAGE HANDLING
    # --------------------------------------------------------

    async def _receive_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Agent gateway socket error: {self._ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in agent receive loop: {e}")

        self._connected = False
        self._fail_pending(AgentConnectionError("Connection closed"))
        if not self._closing:
            for callback in list(self._disconnect_callbacks):
                await self._invoke(callback)

    async def _handle_message(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            return  # unparseable frames are dropped
        if not isinstance(data, dict):
            return

        request_id = data.get("id")
        if isinstance(request_id, str) and request_id in self._pending:
            self._resolve(request_id, data)
            return

        if data.get("type") == "event" and isinstance(data.get("event"), str):
            payload = data.get("payload")
            event = {"type": data["event"]}
            if isinstance(payload, dict):
                event.update(payload)
            await self._dispatch_event(event)
            return

        if isinstance(data.get("type"), str) and data["type"] != "res":
            await self._dispatch_event(data)

    def _resolve(self, request_id: str, response: Dict[str, Any]) -> None:
        future = self._pending.get(request_id)
        if future is None or future.done():
            return

        error = response.get("error")
        if "ok" in response:
            is_ok = response.get("ok") is True
        else:
            is_ok = not error

        if not is_ok:
            if not error:
                error = {}
            elif not isinstance(error, dict):
                error = {"message": str(error)}
            future.set_exception(
                AgentRpcError(
                    error.get("message") or "Unknown error",
                    code=error.get("code") or "UNKNOWN",
                )
            )
        else:
            future.set_result(response.get("payload", response.get("result")))

    async def _dispatch_event(self, event: Dict[str, Any]) -> None:
        for callback in list(self._event_callbacks):
            await self._invoke(callback, event)

    async def _invoke(self, callback: Callable, *args: Any) -> None:
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Agent client callback error: {e}")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()


ClientFactory = Callable[[ConnectionOptions], AgentClient]
"""Builds a client for one connection; injected so tests can substitute fakes."""


def default_client_factory(options: ConnectionOptions) -> AgentClient:
    return AgentClient(options)


__all__ = [
    "AgentClient",
    "ClientFactory",
    "default_client_factory",
]
