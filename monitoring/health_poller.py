"""
Health Poller.

============================================================
PURPOSE
============================================================
Polls every live instance through its agent gateway and records
the result as instance/connection state plus a health snapshot.

============================================================
FAILURE MODEL
============================================================
- A poll failure never propagates: it becomes connection ERROR,
  instance UNHEALTHY, error_count+1 and last_error
- A database error while loading the connection counts as a
  failed poll too
- Each bookkeeping write on the failure path is guarded on its own
- ``get_deep_health`` never raises; unreachable is a normal result

============================================================
CONCURRENCY
============================================================
At most ``concurrency_limit`` agent connections are open at once.
Each poll is bounded by ``timeout_ms``, so one stuck instance
cannot hold the tick longer than that.
Database work runs on worker threads via ``Database.run_in_thread``
so a slow write never blocks the event loop.

============================================================
"""

import asyncio
import logging
import time
from typing import List, Optional

from agent_protocol.client import ClientFactory, default_client_factory
from agent_protocol.models import AgentAuth, AgentHealth, AgentStatus, ConnectionOptions
from core.clock import ClockFactory, ClockProtocol
from monitoring.config import PollerSettings
from monitoring.models import DeepHealthResult, PollSummary
from storage.database import Database
from storage.models.enums import HealthState
from storage.models.fleet import AgentConnection
from storage.models.monitoring import HealthSnapshot
from storage.repositories.instances import ConnectionRepository, InstanceRepository
from storage.repositories.monitoring import HealthSnapshotRepository


logger = logging.getLogger(__name__)


def connection_options(connection: AgentConnection, timeout_ms: int) -> ConnectionOptions:
    """Client options for one stored connection."""
    return ConnectionOptions(
        host=connection.host,
        port=connection.port,
        auth=AgentAuth.from_connection(connection.auth_mode, connection.auth_token),
        timeout_ms=timeout_ms,
    )


class HealthPoller:
    """Bounded-concurrency health polling of the fleet."""

    def __init__(
        self,
        database: Database,
        client_factory: ClientFactory = default_client_factory,
        clock: Optional[ClockProtocol] = None,
        settings: Optional[PollerSettings] = None,
    ) -> None:
        self._db = database
        self._client_factory = client_factory
        self._clock = clock or ClockFactory.get_clock()
        self._settings = settings or PollerSettings()

    @property
    def settings(self) -> PollerSettings:
        return self._settings

    # --------------------------------------------------------
    # POLLING
    # --------------------------------------------------------

    async def poll_all(self) -> PollSummary:
        """Poll every RUNNING/DEGRADED instance that has a connection."""
        started = time.monotonic()
        instance_ids = await self._db.run_in_thread(self.list_pollable_ids)
        semaphore = asyncio.Semaphore(self._settings.concurrency_limit)

        async def run(instance_id: str) -> Optional[AgentHealth]:
            async with semaphore:
                return await self.poll_one(instance_id)

        results = await asyncio.gather(*(run(i) for i in instance_ids), return_exceptions=True)

        summary = PollSummary(polled=len(instance_ids))
        for instance_id, result in zip(instance_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected poll error for instance {instance_id}: {result}")
                summary.failed += 1
            elif result is None:
                summary.failed += 1
            else:
                summary.succeeded += 1

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            f"Health poll: {summary.polled} polled, {summary.succeeded} ok, "
            f"{summary.failed} failed in {summary.duration_ms}ms"
        )
        return summary

    async def poll_one(self, instance_id: str) -> Optional[AgentHealth]:
        """
        Poll one instance.

        Returns:
            The snapshot, or None if the instance has no connection or
            the poll failed (failure is recorded, not raised)
        """
        try:
            connection = await self._db.run_in_thread(self._load_connection, instance_id)
        except Exception as e:
            message = f"Failed to load connection: {e}"
            logger.error(f"Health poll aborted for instance {instance_id}: {message}")
            await self._db.run_in_thread(self._mark_unreachable, instance_id, message)
            return None

        if connection is None:
            logger.warning(f"No agent connection for instance {instance_id}, skipping poll")
            return None

        options = connection_options(connection, self._settings.timeout_ms)
        started = time.monotonic()
        try:
            snapshot = await asyncio.wait_for(self._fetch_health(options), timeout=options.timeout_seconds)
            latency_ms = int((time.monotonic() - started) * 1000)
            await self._db.run_in_thread(self._record_success, instance_id, snapshot, latency_ms)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"Health poll failed for instance {instance_id}: {message}")
            await self._db.run_in_thread(self._mark_unreachable, instance_id, message)
            return None

        logger.debug(f"Health poll ok for instance {instance_id} ({latency_ms}ms)")
        return snapshot

    async def _fetch_health(self, options: ConnectionOptions) -> AgentHealth:
        async with self._client_factory(options) as client:
            return await client.health()

    def _load_connection(self, instance_id: str) -> Optional[AgentConnection]:
        with self._db.session_scope() as session:
            return ConnectionRepository(session).get_for_instance(instance_id)

    def _record_success(self, instance_id: str, snapshot: AgentHealth, latency_ms: int) -> None:
        now = self._clock.now()
        # Machine health follows the gateway's own ok flag; degraded
        # channels are a readiness signal, not machine health
        health = HealthState.HEALTHY if snapshot.ok else HealthState.UNHEALTHY

        with self._db.transaction_scope() as session:
            self._add_snapshot(session, instance_id, snapshot, latency_ms, now)
            ConnectionRepository(session).mark_connected(instance_id, now, latency_ms)
            InstanceRepository(session).record_poll_success(instance_id, health, now)

    def _mark_unreachable(self, instance_id: str, error_message: str) -> None:
        now = self._clock.now()

        try:
            with self._db.transaction_scope() as session:
                ConnectionRepository(session).mark_error(instance_id, now)
        except Exception as e:
            logger.error(f"Failed to mark connection error for instance {instance_id}: {e}")

        try:
            with self._db.transaction_scope() as session:
                InstanceRepository(session).record_poll_failure(instance_id, error_message, now)
        except Exception as e:
            logger.error(f"Failed to record poll failure for instance {instance_id}: {e}")

    def _store_snapshot(self, instance_id: str, snapshot: AgentHealth, latency_ms: int) -> None:
        with self._db.transaction_scope() as session:
            self._add_snapshot(session, instance_id, snapshot, latency_ms, self._clock.now())

    @staticmethod
    def _add_snapshot(session, instance_id: str, snapshot: AgentHealth, latency_ms: int, now) -> HealthSnapshot:
        return HealthSnapshotRepository(session).add(
            HealthSnapshot(
                instance_id=instance_id,
                data=snapshot.raw or snapshot.to_dict(),
                is_healthy=snapshot.is_healthy,
                channels_linked=snapshot.channels_linked,
                channels_degraded=snapshot.channels_degraded,
                gateway_latency_ms=latency_ms,
                captured_at=now,
            )
        )

    # --------------------------------------------------------
    # DEEP HEALTH
    # --------------------------------------------------------

    async def get_deep_health(self, instance_id: str) -> DeepHealthResult:
        """
        Live health and status, bypassing cached snapshots.

        Never raises. An instance without a connection or whose gateway
        cannot be reached yields ``reachable=False``.
        """
        try:
            connection = await self._db.run_in_thread(self._load_connection, instance_id)
        except Exception as e:
            logger.error(f"Failed to load connection for instance {instance_id}: {e}")
            return self._unreachable(str(e), state="unknown")

        if connection is None:
            return self._unreachable("No agent connection configured", state="unknown")

        options = connection_options(connection, self._settings.timeout_ms)
        started = time.monotonic()
        try:
            snapshot, status = await asyncio.wait_for(
                self._fetch_deep(options),
                timeout=options.timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"Deep health check failed for instance {instance_id}: {message}")
            return self._unreachable(message, state="unreachable")

        latency_ms = int((time.monotonic() - started) * 1000)
        try:
            await self._db.run_in_thread(self._store_snapshot, instance_id, snapshot, latency_ms)
        except Exception as e:
            logger.error(f"Failed to record deep health snapshot for instance {instance_id}: {e}")

        return DeepHealthResult(snapshot=snapshot, status=status, latency_ms=latency_ms, reachable=True)

    async def _fetch_deep(self, options: ConnectionOptions):
        async with self._client_factory(options) as client:
            snapshot, status = await asyncio.gather(client.health(), client.status())
            return snapshot, status

    @staticmethod
    def _unreachable(error: str, state: str) -> DeepHealthResult:
        return DeepHealthResult(
            snapshot=AgentHealth.unknown(),
            status=AgentStatus.unknown(state),
            latency_ms=-1,
            reachable=False,
            error=error,
        )

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def get_latest_snapshot(self, instance_id: str) -> Optional[HealthSnapshot]:
        with self._db.session_scope() as session:
            return HealthSnapshotRepository(session).latest_for_instance(instance_id)

    def list_pollable_ids(self) -> List[str]:
        with self._db.session_scope() as session:
            return [instance.id for instance in InstanceRepository(session).list_pollable()]


__all__ = ["HealthPoller", "connection_options"]
