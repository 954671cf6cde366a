"""
Log Streaming Hub.

============================================================
PURPOSE
============================================================
Fans agent gateway events out to log subscribers.

Each instance has at most one upstream AgentClient, shared by all
of that instance's subscribers:
- Opened lazily by the first subscribe
- Closed when the last subscriber leaves
- Dropped when the gateway closes it; the next subscribe reopens

Every subscriber has its own minimum level
(debug < info < warn < error) and only receives entries at or
above it.

============================================================
EVENT MAPPING
============================================================
- agentOutput -> info, the output chunk
- presence    -> info, "Presence change detected"
- shutdown    -> error, "Gateway shutting down: <reason>"
- keepalive   -> debug
- error       -> error, "Gateway error: <message>"
- close       -> warn, "Gateway connection lost"

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from agent_protocol.client import AgentClient, ClientFactory, default_client_factory
from core.clock import ClockFactory, ClockProtocol, to_iso8601
from monitoring.health_poller import connection_options
from storage.database import Database
from storage.models.fleet import AgentConnection
from storage.repositories.instances import ConnectionRepository


logger = logging.getLogger(__name__)


LOG_LEVEL_ORDER = {
    "debug": 0,
    "info": 1,
    "warn": 2,
    "error": 3,
}

DEFAULT_LEVEL = "info"
STREAM_TIMEOUT_MS = 10_000

LogSink = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def level_order(level: Optional[str]) -> int:
    return LOG_LEVEL_ORDER.get(level or DEFAULT_LEVEL, LOG_LEVEL_ORDER[DEFAULT_LEVEL])


@dataclass
class Subscription:
    sink: LogSink
    level: str = DEFAULT_LEVEL


@dataclass
class InstanceLogStream:
    instance_id: str
    client: AgentClient
    subscribers: Dict[str, Subscription] = field(default_factory=dict)


@dataclass
class SubscribeResult:
    success: bool
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.message is not None:
            result["message"] = self.message
        return result


class LogStreamHub:

    def __init__(
        self,
        database: Database,
        client_factory: ClientFactory = default_client_factory,
        clock: Optional[ClockProtocol] = None,
        timeout_ms: int = STREAM_TIMEOUT_MS,
    ) -> None:
        self._db = database
        self._client_factory = client_factory
        self._clock = clock or ClockFactory.get_clock()
        self._timeout_ms = timeout_ms
        self._streams: Dict[str, InstanceLogStream] = {}
        self._subscriber_index: Dict[str, Set[str]] = {}
        self._open_lock = asyncio.Lock()

    @property
    def active_instances(self) -> Set[str]:
        return set(self._streams)

    def subscriber_count(self, instance_id: str) -> int:
        stream = self._streams.get(instance_id)
        return len(stream.subscribers) if stream else 0

    # --------------------------------------------------------
    # SUBSCRIPTIONS
    # --------------------------------------------------------

    async def subscribe(
        self,
        subscriber_id: str,
        instance_id: str,
        sink: LogSink,
        level: str = DEFAULT_LEVEL,
    ) -> SubscribeResult:
        """Attach a subscriber, opening the upstream stream if needed."""
        if not instance_id:
            return SubscribeResult(success=False, message="instance_id is required")

        logger.debug(f"Subscriber {subscriber_id} subscribing to logs of {instance_id} (level>={level})")

        async with self._open_lock:
            stream = self._streams.get(instance_id)
            if stream is None:
                try:
                    stream = await self._open_stream(instance_id)
                except Exception as e:
                    logger.warning(f"Failed to create log stream for {instance_id}: {e}")
                    return SubscribeResult(success=False, message=f"Failed to connect: {e}")

            stream.subscribers[subscriber_id] = Subscription(sink=sink, level=level or DEFAULT_LEVEL)
            self._subscriber_index.setdefault(subscriber_id, set()).add(instance_id)

        return SubscribeResult(success=True)

    async def unsubscribe(self, subscriber_id: str, instance_id: str) -> SubscribeResult:
        await self._remove_subscriber(instance_id, subscriber_id)
        instances = self._subscriber_index.get(subscriber_id)
        if instances is not None:
            instances.discard(instance_id)
            if not instances:
                del self._subscriber_index[subscriber_id]
        return SubscribeResult(success=True)

    def update_level(self, subscriber_id: str, instance_id: str, level: str = DEFAULT_LEVEL) -> SubscribeResult:
        stream = self._streams.get(instance_id)
        if stream is not None and subscriber_id in stream.subscribers:
            stream.subscribers[subscriber_id].level = level or DEFAULT_LEVEL
        return SubscribeResult(success=True)

    async def disconnect_subscriber(self, subscriber_id: str) -> None:
        """Drop every subscription a subscriber holds."""
        instances = self._subscriber_index.pop(subscriber_id, set())
        for instance_id in instances:
            await self._remove_subscriber(instance_id, subscriber_id)
        if instances:
            logger.debug(f"Subscriber {subscriber_id} disconnected, cleaned up {len(instances)} subscription(s)")

    async def close(self) -> None:
        """Close every upstream stream."""
        streams = list(self._streams.values())
        self._streams.clear()
        self._subscriber_index.clear()
        for stream in streams:
            await self._close_client(stream)

    # --------------------------------------------------------
    # UPSTREAM
    # --------------------------------------------------------

    def _load_connection(self, instance_id: str) -> Optional[AgentConnection]:
        with self._db.session_scope() as session:
            return ConnectionRepository(session).get_for_instance(instance_id)

    async def _open_stream(self, instance_id: str) -> InstanceLogStream:
        connection = await self._db.run_in_thread(self._load_connection, instance_id)
        if connection is None:
            raise LookupError("No gateway connection configured for this instance")

        client = self._client_factory(connection_options(connection, self._timeout_ms))
        stream = InstanceLogStream(instance_id=instance_id, client=client)
        client.on_event(lambda event: self._handle_event(instance_id, event))
        client.on_disconnect(lambda: self._handle_disconnect(stream))

        try:
            await client.connect()
        except BaseException:
            await client.disconnect()
            raise

        self._streams[instance_id] = stream
        logger.info(f"Opened log stream for instance {instance_id}")
        return stream

    async def _remove_subscriber(self, instance_id: str, subscriber_id: str) -> None:
        stream = self._streams.get(instance_id)
        if stream is None:
            return
        stream.subscribers.pop(subscriber_id, None)
        if not stream.subscribers:
            logger.debug(f"No more subscribers for instance {instance_id}, closing log stream")
            del self._streams[instance_id]
            await self._close_client(stream)

    @staticmethod
    async def _close_client(stream: InstanceLogStream) -> None:
        try:
            await stream.client.disconnect()
        except Exception as e:
            logger.debug(f"Error closing log stream for {stream.instance_id}: {e}")

    async def _handle_disconnect(self, stream: InstanceLogStream) -> None:
        logger.warning(f"Gateway disconnected for instance {stream.instance_id}")
        await self._broadcast(stream, "warn", "Gateway connection lost", source="system")
        if self._streams.get(stream.instance_id) is stream:
            del self._streams[stream.instance_id]

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    async def _handle_event(self, instance_id: str, event: Dict[str, Any]) -> None:
        stream = self._streams.get(instance_id)
        if stream is None:
            return

        event_type = event.get("type")
        if event_type == "agentOutput":
            await self._broadcast(
                stream, "info", str(event.get("chunk", "")),
                source="agent", requestId=event.get("requestId"), seq=event.get("seq"),
            )
        elif event_type == "presence":
            data = {k: v for k, v in event.items() if k != "type"}
            await self._broadcast(stream, "info", "Presence change detected", source="presence", data=data)
        elif event_type == "shutdown":
            await self._broadcast(
                stream, "error", f"Gateway shutting down: {event.get('reason', 'unknown')}",
                source="gateway", gracePeriodMs=event.get("gracePeriodMs"),
            )
        elif event_type == "keepalive":
            await self._broadcast(stream, "debug", "Gateway keepalive received", source="gateway")
        elif event_type == "error":
            await self._broadcast(
                stream, "error", f"Gateway error: {event.get('message', 'unknown')}", source="system",
            )

    async def _broadcast(self, stream: InstanceLogStream, level: str, message: str, **fields: Any) -> None:
        entry: Dict[str, Any] = {
            "instanceId": stream.instance_id,
            "level": level,
            "message": message,
            "timestamp": to_iso8601(self._clock.now()),
        }
        entry.update(fields)

        entry_order = level_order(level)
        for subscriber_id, subscription in list(stream.subscribers.items()):
            if entry_order < level_order(subscription.level):
                continue
            try:
                result = subscription.sink(dict(entry))
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Failed to deliver log entry to subscriber {subscriber_id}: {e}")


__all__ = [
    "LOG_LEVEL_ORDER",
    "LogSink",
    "LogStreamHub",
    "SubscribeResult",
]
