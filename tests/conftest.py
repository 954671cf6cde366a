"""
Shared test fixtures.

============================================================
PURPOSE
============================================================
- In-memory SQLite database with the full schema, plus a
  file-backed one for tests that need real concurrent sessions
- MockClock pinned to a fixed instant
- FleetSeeder for inserting fleets, instances and related rows
- FakeClientFactory: scriptable agent clients that record
  connects, disconnects and the peak number of open connections

============================================================
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import pytest

from agent_protocol.exceptions import AgentConnectionError
from agent_protocol.models import AgentHealth, AgentStatus, ConnectionOptions
from core.clock import ClockFactory, MockClock
from storage.database import Database
from storage.models.base import new_id
from storage.models.costs import BudgetConfig, CostEvent
from storage.models.enums import (
    ChannelAuthState,
    ConnectionStatus,
    HealthState,
    InstanceStatus,
)
from storage.models.fleet import (
    AgentConnection,
    BotInstance,
    ChannelAuthSession,
    Fleet,
    ServiceProfile,
)
from storage.models.monitoring import HealthAlert, HealthSnapshot, NotificationChannel


FIXED_NOW = datetime(2026, 3, 15, 12, 0, 0)

_NOW = object()


# ============================================================
# CLOCK & DATABASE
# ============================================================

@pytest.fixture
def clock():
    """Mock clock pinned to FIXED_NOW, installed as the global clock."""
    mock = MockClock(FIXED_NOW)
    ClockFactory.set_clock(mock)
    yield mock
    ClockFactory.reset()


@pytest.fixture
def database():
    """Fresh in-memory database per test."""
    db = Database("sqlite://")
    db.init_schema()
    yield db
    db.dispose()


@pytest.fixture
def file_database(tmp_path):
    """SQLite file database; every session gets its own connection."""
    db = Database(f"sqlite:///{tmp_path / 'fleet.db'}")
    db.init_schema()
    yield db
    db.dispose()


# ============================================================
# SEEDING
# ============================================================

class FleetSeeder:
    """Inserts rows directly, bypassing the services under test."""

    def __init__(self, database: Database, clock: MockClock) -> None:
        self.db = database
        self.clock = clock

    def _save(self, entity: Any) -> Any:
        with self.db.transaction_scope() as session:
            session.add(entity)
        return entity

    def fleet(self, name: str = "production") -> str:
        return self._save(Fleet(id=new_id(), name=name)).id

    def instance(
        self,
        name: str,
        fleet_id: Optional[str] = None,
        status: InstanceStatus = InstanceStatus.RUNNING,
        health: HealthState = HealthState.HEALTHY,
        connection: bool = True,
        connection_status: ConnectionStatus = ConnectionStatus.CONNECTED,
        last_heartbeat: Any = _NOW,
        host: Optional[str] = None,
        auth_token: Optional[str] = "secret-token",
        applied_config_hash: Optional[str] = None,
        **fields: Any,
    ) -> str:
        instance = self._save(
            BotInstance(
                id=new_id(),
                name=name,
                fleet_id=fleet_id,
                status=InstanceStatus(status).value,
                health=HealthState(health).value,
                **fields,
            )
        )
        if connection:
            self._save(
                AgentConnection(
                    id=new_id(),
                    instance_id=instance.id,
                    host=host or f"{name}.agents.local",
                    port=18789,
                    auth_mode="token",
                    auth_token=auth_token,
                    status=ConnectionStatus(connection_status).value,
                    last_heartbeat=self.clock.now() if last_heartbeat is _NOW else last_heartbeat,
                    config_hash=applied_config_hash,
                )
            )
        return instance.id

    def auth_session(
        self,
        instance_id: str,
        channel_type: str,
        state: ChannelAuthState,
        expires_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
        attempt_count: int = 0,
    ) -> str:
        return self._save(
            ChannelAuthSession(
                id=new_id(),
                instance_id=instance_id,
                channel_type=channel_type,
                state=ChannelAuthState(state).value,
                expires_at=expires_at,
                last_error=last_error,
                attempt_count=attempt_count,
            )
        ).id

    def profile(self, instance_id: str, service_name: Optional[str], service_type: Optional[str] = None) -> str:
        return self._save(
            ServiceProfile(
                id=new_id(),
                instance_id=instance_id,
                service_name=service_name,
                service_type=service_type,
            )
        ).id

    def budget(
        self,
        monthly_limit_cents: int,
        instance_id: Optional[str] = None,
        fleet_id: Optional[str] = None,
        name: Optional[str] = None,
        warn_threshold_pct: int = 75,
        critical_threshold_pct: int = 90,
    ) -> str:
        return self._save(
            BudgetConfig(
                id=new_id(),
                name=name,
                instance_id=instance_id,
                fleet_id=fleet_id,
                monthly_limit_cents=monthly_limit_cents,
                warn_threshold_pct=warn_threshold_pct,
                critical_threshold_pct=critical_threshold_pct,
            )
        ).id

    def cost_event(
        self,
        instance_id: str,
        minutes_ago: float,
        tokens: int = 0,
        cost_cents: int = 0,
    ) -> str:
        return self._save(
            CostEvent(
                id=new_id(),
                instance_id=instance_id,
                input_tokens=tokens,
                output_tokens=0,
                cost_cents=cost_cents,
                occurred_at=self.clock.now() - timedelta(minutes=minutes_ago),
            )
        ).id

    def snapshot(self, instance_id: str, data: Dict[str, Any], minutes_ago: float = 0) -> str:
        health = AgentHealth.from_wire(data)
        return self._save(
            HealthSnapshot(
                id=new_id(),
                instance_id=instance_id,
                data=data,
                is_healthy=health.is_healthy,
                channels_linked=health.channels_linked,
                channels_degraded=health.channels_degraded,
                gateway_latency_ms=5,
                captured_at=self.clock.now() - timedelta(minutes=minutes_ago),
            )
        ).id

    def channel(
        self,
        name: str,
        type: str,
        config: Dict[str, Any],
        min_severity: Optional[str] = None,
        rules: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> str:
        return self._save(
            NotificationChannel(
                id=new_id(),
                name=name,
                type=type,
                config=config,
                min_severity=min_severity,
                rules=rules,
                is_active=is_active,
            )
        ).id

    def alert(self, **fields: Any) -> str:
        now = self.clock.now()
        fields.setdefault("first_triggered_at", now)
        fields.setdefault("last_triggered_at", now)
        fields.setdefault("title", "Test alert")
        fields.setdefault("message", "Test alert message")
        return self._save(HealthAlert(id=new_id(), **fields)).id

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    def get(self, model: Any, record_id: str) -> Any:
        with self.db.session_scope() as session:
            return session.get(model, record_id)

    def connection_of(self, instance_id: str) -> Optional[AgentConnection]:
        with self.db.session_scope() as session:
            return session.query(AgentConnection).filter_by(instance_id=instance_id).one_or_none()

    def snapshots_of(self, instance_id: str) -> List[HealthSnapshot]:
        with self.db.session_scope() as session:
            return session.query(HealthSnapshot).filter_by(instance_id=instance_id).all()

    def auth_sessions_of(self, instance_id: str) -> List[ChannelAuthSession]:
        with self.db.session_scope() as session:
            return session.query(ChannelAuthSession).filter_by(instance_id=instance_id).all()


@pytest.fixture
def seed(database, clock) -> FleetSeeder:
    return FleetSeeder(database, clock)


@pytest.fixture
def file_seed(file_database, clock) -> FleetSeeder:
    return FleetSeeder(file_database, clock)


# ============================================================
# FAKE AGENT CLIENTS
# ============================================================

HEALTHY_PAYLOAD = {
    "ok": True,
    "channels": [
        {"name": "whatsapp", "type": "whatsapp", "ok": True},
        {"name": "telegram", "type": "telegram", "ok": True},
    ],
    "uptime": 3600,
}


class FakeAgentClient:
    """Scriptable stand-in for AgentClient."""

    def __init__(self, factory: "FakeClientFactory", options: ConnectionOptions) -> None:
        self.factory = factory
        self.options = options
        self.connected = False
        self._event_callbacks: List[Callable] = []
        self._disconnect_callbacks: List[Callable] = []

    @property
    def behavior(self) -> Dict[str, Any]:
        return self.factory.behaviors.get(self.options.host, {})

    async def __aenter__(self) -> "FakeAgentClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def connect(self) -> Dict[str, Any]:
        self.factory.connects += 1
        if self.behavior.get("unreachable"):
            raise AgentConnectionError(f"Failed to connect to ws://{self.options.host}:{self.options.port}")
        self.connected = True
        self.factory.in_flight += 1
        self.factory.max_in_flight = max(self.factory.max_in_flight, self.factory.in_flight)
        return {"type": "hello-ok"}

    async def disconnect(self) -> None:
        if self.connected:
            self.factory.in_flight -= 1
            self.factory.disconnects += 1
        self.connected = False

    async def health(self) -> AgentHealth:
        if self.factory.delay:
            await asyncio.sleep(self.factory.delay)
        error = self.behavior.get("health_error")
        if error is not None:
            raise error
        return AgentHealth.from_wire(self.behavior.get("health", HEALTHY_PAYLOAD))

    async def status(self) -> AgentStatus:
        return AgentStatus.from_wire(
            self.behavior.get("status", {"state": "running", "version": "2.1.0", "configHash": "cfg-1"})
        )

    def on_event(self, callback: Callable) -> None:
        self._event_callbacks.append(callback)

    def on_disconnect(self, callback: Callable) -> None:
        self._disconnect_callbacks.append(callback)

    async def emit(self, event: Dict[str, Any]) -> None:
        for callback in list(self._event_callbacks):
            result = callback(event)
            if asyncio.iscoroutine(result):
                await result

    async def drop(self) -> None:
        """Simulate the gateway closing the socket."""
        self.connected = False
        self.factory.in_flight -= 1
        for callback in list(self._disconnect_callbacks):
            result = callback()
            if asyncio.iscoroutine(result):
                await result


class FakeClientFactory:
    """
    ClientFactory whose clients follow per-host behaviors:

    - unreachable: connect raises AgentConnectionError
    - health_error: health() raises the given exception
    - health / status: wire payloads to return
    """

    def __init__(self, delay: float = 0) -> None:
        self.delay = delay
        self.behaviors: Dict[str, Dict[str, Any]] = {}
        self.clients: List[FakeAgentClient] = []
        self.connects = 0
        self.disconnects = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def __call__(self, options: ConnectionOptions) -> FakeAgentClient:
        client = FakeAgentClient(self, options)
        self.clients.append(client)
        return client

    def set_behavior(self, instance_name: str, **behavior: Any) -> None:
        self.behaviors[f"{instance_name}.agents.local"] = behavior


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()
