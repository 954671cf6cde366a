"""
Fleet & Instance Repositories.

============================================================
PURPOSE
============================================================
Data access for fleets, bot instances, agent connections,
channel auth sessions and service profiles.

============================================================
REPOSITORIES
============================================================
- FleetRepository
- InstanceRepository: Poll/evaluate selection, health bookkeeping
- ConnectionRepository: One connection per instance
- ChannelAuthRepository: Pairing sessions, bulk reset
- ServiceProfileRepository

============================================================
"""

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models.enums import ChannelAuthState, ConnectionStatus, HealthState, InstanceStatus
from storage.models.fleet import (
    AgentConnection,
    BotInstance,
    ChannelAuthSession,
    Fleet,
    ServiceProfile,
)
from storage.repositories.base import BaseRepository


POLLABLE_STATUSES = (InstanceStatus.RUNNING.value, InstanceStatus.DEGRADED.value)
EXCLUDED_FROM_EVALUATION = (InstanceStatus.DELETING.value, InstanceStatus.CREATING.value)


class FleetRepository(BaseRepository[Fleet]):

    def __init__(self, session: Session) -> None:
        super().__init__(session, Fleet, "FleetRepository")

    def list_all(self) -> List[Fleet]:
        return self._execute_query(select(Fleet).order_by(Fleet.name))


class InstanceRepository(BaseRepository[BotInstance]):
    """Bot instances and the health fields the poller owns."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, BotInstance, "InstanceRepository")

    def list_pollable(self) -> List[BotInstance]:
        """Instances in RUNNING/DEGRADED that have a connection."""
        stmt = (
            select(BotInstance)
            .join(AgentConnection, AgentConnection.instance_id == BotInstance.id)
            .where(BotInstance.status.in_(POLLABLE_STATUSES))
            .order_by(BotInstance.name)
        )
        return self._execute_query(stmt)

    def list_evaluable(self) -> List[BotInstance]:
        """Instances the alert engine evaluates (not CREATING/DELETING)."""
        stmt = (
            select(BotInstance)
            .where(BotInstance.status.not_in(EXCLUDED_FROM_EVALUATION))
            .order_by(BotInstance.name)
        )
        return self._execute_query(stmt)

    def list_by_fleet(self, fleet_id: str) -> List[BotInstance]:
        stmt = select(BotInstance).where(BotInstance.fleet_id == fleet_id).order_by(BotInstance.name)
        return self._execute_query(stmt)

    def list_all(self) -> List[BotInstance]:
        return self._execute_query(select(BotInstance).order_by(BotInstance.name))

    def record_poll_success(self, instance_id: str, health: HealthState, checked_at: datetime) -> None:
        self._update(
            instance_id,
            "record_poll_success",
            health=health.value,
            error_count=0,
            last_error=None,
            last_health_check_at=checked_at,
        )

    def record_poll_failure(self, instance_id: str, error_message: str, checked_at: datetime) -> None:
        """Mark UNHEALTHY and increment error_count atomically in SQL."""
        self._update(
            instance_id,
            "record_poll_failure",
            health=HealthState.UNHEALTHY.value,
            error_count=BotInstance.error_count + 1,
            last_error=error_message,
            last_health_check_at=checked_at,
        )

    def set_status(self, instance_id: str, status: InstanceStatus) -> None:
        self._update(instance_id, "set_status", status=status.value)

    def _update(self, instance_id: str, operation: str, **values) -> None:
        try:
            self._session.execute(
                update(BotInstance)
                .where(BotInstance.id == instance_id)
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, {"instance_id": instance_id})
            raise


class ConnectionRepository(BaseRepository[AgentConnection]):

    def __init__(self, session: Session) -> None:
        super().__init__(session, AgentConnection, "ConnectionRepository")

    def get_for_instance(self, instance_id: str) -> Optional[AgentConnection]:
        return self._execute_scalar(
            select(AgentConnection).where(AgentConnection.instance_id == instance_id)
        )

    def get_for_instances(self, instance_ids: Sequence[str]) -> List[AgentConnection]:
        if not instance_ids:
            return []
        return self._execute_query(
            select(AgentConnection).where(AgentConnection.instance_id.in_(list(instance_ids)))
        )

    def mark_connected(self, instance_id: str, heartbeat_at: datetime, latency_ms: int) -> None:
        self._update(
            instance_id,
            "mark_connected",
            status=ConnectionStatus.CONNECTED.value,
            last_heartbeat=heartbeat_at,
            latency_ms=latency_ms,
        )

    def mark_error(self, instance_id: str, heartbeat_at: datetime) -> None:
        self._update(
            instance_id,
            "mark_error",
            status=ConnectionStatus.ERROR.value,
            last_heartbeat=heartbeat_at,
        )

    def _update(self, instance_id: str, operation: str, **values) -> None:
        try:
            self._session.execute(
                update(AgentConnection)
                .where(AgentConnection.instance_id == instance_id)
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, {"instance_id": instance_id})
            raise


class ChannelAuthRepository(BaseRepository[ChannelAuthSession]):

    FAILED_STATES = (ChannelAuthState.EXPIRED.value, ChannelAuthState.ERROR.value)

    def __init__(self, session: Session) -> None:
        super().__init__(session, ChannelAuthSession, "ChannelAuthRepository")

    def list_for_instance(self, instance_id: str) -> List[ChannelAuthSession]:
        stmt = (
            select(ChannelAuthSession)
            .where(ChannelAuthSession.instance_id == instance_id)
            .order_by(ChannelAuthSession.channel_type)
        )
        return self._execute_query(stmt)

    def list_failed(self, instance_id: str) -> List[ChannelAuthSession]:
        stmt = select(ChannelAuthSession).where(
            ChannelAuthSession.instance_id == instance_id,
            ChannelAuthSession.state.in_(self.FAILED_STATES),
        )
        return self._execute_query(stmt)

    def reset_failed_to_pending(self, instance_id: str) -> int:
        """
        Reset every EXPIRED/ERROR session of an instance to PENDING.

        Returns:
            Number of sessions reset
        """
        try:
            result = self._session.execute(
                update(ChannelAuthSession)
                .where(
                    ChannelAuthSession.instance_id == instance_id,
                    ChannelAuthSession.state.in_(self.FAILED_STATES),
                )
                .values(
                    state=ChannelAuthState.PENDING.value,
                    last_error=None,
                    attempt_count=0,
                )
                .execution_options(synchronize_session="fetch")
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, "reset_failed_to_pending", {"instance_id": instance_id})
            raise


class ServiceProfileRepository(BaseRepository[ServiceProfile]):

    def __init__(self, session: Session) -> None:
        super().__init__(session, ServiceProfile, "ServiceProfileRepository")

    def get_for_instance(self, instance_id: str) -> Optional[ServiceProfile]:
        return self._execute_scalar(
            select(ServiceProfile).where(ServiceProfile.instance_id == instance_id)
        )
