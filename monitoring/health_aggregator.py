"""
Health Aggregator.

============================================================
PURPOSE
============================================================
Read-only roll-ups of instance health per fleet and for the
whole workspace, plus per-instance snapshot history.

============================================================
BUCKETS
============================================================
Every instance lands in exactly one bucket:
- unreachable: connection ERROR/DISCONNECTED, or status STOPPED/ERROR
- healthy / degraded: from instance health
- unhealthy: anything else (including UNKNOWN)

============================================================
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from agent_protocol.models import AgentHealth
from core.clock import ClockFactory, ClockProtocol
from core.exceptions import FleetNotFoundError
from monitoring.models import ComponentHealth, FleetHealth, HealthHistoryPoint, WorkspaceHealth
from storage.database import Database
from storage.models.enums import ConnectionStatus, HealthState, InstanceStatus
from storage.models.fleet import AgentConnection, BotInstance
from storage.models.monitoring import HealthSnapshot
from storage.repositories.instances import ConnectionRepository, FleetRepository, InstanceRepository
from storage.repositories.monitoring import HealthSnapshotRepository


logger = logging.getLogger(__name__)


UNREACHABLE_CONNECTION = (ConnectionStatus.ERROR.value, ConnectionStatus.DISCONNECTED.value)
UNREACHABLE_STATUS = (InstanceStatus.STOPPED.value, InstanceStatus.ERROR.value)


def classify_instance(instance: BotInstance, connection: Optional[AgentConnection]) -> str:
    """Bucket name for one instance."""
    if connection is not None and connection.status in UNREACHABLE_CONNECTION:
        return "unreachable"
    if instance.status in UNREACHABLE_STATUS:
        return "unreachable"
    if instance.health == HealthState.HEALTHY.value:
        return "healthy"
    if instance.health == HealthState.DEGRADED.value:
        return "degraded"
    return "unhealthy"


def build_component_breakdown(snapshots: Iterable[HealthSnapshot]) -> List[ComponentHealth]:
    """Union channels of the given snapshots by (type, name)."""
    components: Dict[str, ComponentHealth] = {}
    for snapshot in snapshots:
        if not snapshot.data:
            continue
        for channel in AgentHealth.from_wire(snapshot.data).channels:
            key = f"{channel.type}:{channel.name}"
            entry = components.get(key)
            if entry is None:
                entry = components[key] = ComponentHealth(component=channel.name, type=channel.type)
            if channel.ok:
                entry.healthy += 1
            else:
                entry.degraded += 1
    return list(components.values())


class HealthAggregator:

    def __init__(self, database: Database, clock: Optional[ClockProtocol] = None) -> None:
        self._db = database
        self._clock = clock or ClockFactory.get_clock()

    def get_fleet_health(self, fleet_id: str) -> FleetHealth:
        """
        Aggregate health for every instance of a fleet.

        Raises:
            FleetNotFoundError: Unknown fleet id
        """
        with self._db.session_scope() as session:
            fleet = FleetRepository(session).get(fleet_id)
            if fleet is None:
                raise FleetNotFoundError(fleet_id)

            instances = InstanceRepository(session).list_by_fleet(fleet_id)
            instance_ids = [instance.id for instance in instances]
            connections = {
                connection.instance_id: connection
                for connection in ConnectionRepository(session).get_for_instances(instance_ids)
            }
            snapshots = HealthSnapshotRepository(session).latest_for_instances(instance_ids)

        summary = FleetHealth(fleet_id=fleet.id, fleet_name=fleet.name, total=len(instances))
        for instance in instances:
            bucket = classify_instance(instance, connections.get(instance.id))
            setattr(summary, bucket, getattr(summary, bucket) + 1)

        summary.components = build_component_breakdown(snapshots.values())
        return summary

    def get_workspace_health(self) -> WorkspaceHealth:
        """Sum of every fleet; a fleet that fails to aggregate is left out."""
        with self._db.session_scope() as session:
            fleet_ids = [fleet.id for fleet in FleetRepository(session).list_all()]

        fleets: List[FleetHealth] = []
        for fleet_id in fleet_ids:
            try:
                fleets.append(self.get_fleet_health(fleet_id))
            except Exception as e:
                logger.warning(f"Failed to aggregate fleet {fleet_id}: {e}")

        overview = WorkspaceHealth(
            overall_status=HealthState.UNKNOWN,
            total_instances=sum(f.total for f in fleets),
            healthy=sum(f.healthy for f in fleets),
            degraded=sum(f.degraded for f in fleets),
            unhealthy=sum(f.unhealthy for f in fleets),
            unreachable=sum(f.unreachable for f in fleets),
            fleets=fleets,
            last_updated=self._clock.now(),
        )

        if overview.total_instances == 0:
            overview.overall_status = HealthState.UNKNOWN
        elif overview.unhealthy > 0 or overview.unreachable > 0:
            overview.overall_status = HealthState.UNHEALTHY
        elif overview.degraded > 0:
            overview.overall_status = HealthState.DEGRADED
        else:
            overview.overall_status = HealthState.HEALTHY

        return overview

    def get_health_history(
        self,
        instance_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[HealthHistoryPoint]:
        """Snapshots of one instance between start and end, oldest first."""
        with self._db.session_scope() as session:
            snapshots = HealthSnapshotRepository(session).history(instance_id, start, end)

        return [
            HealthHistoryPoint(
                captured_at=s.captured_at,
                is_healthy=s.is_healthy,
                channels_linked=s.channels_linked,
                channels_degraded=s.channels_degraded,
                gateway_latency_ms=s.gateway_latency_ms,
                data=s.data or {},
            )
            for s in snapshots
        ]


__all__ = [
    "HealthAggregator",
    "classify_instance",
    "build_component_breakdown",
]
