"""
Instance Diagnostics.

============================================================
PURPOSE
============================================================
Structured troubleshooting of a single instance.

``run_diagnostics`` walks five checks and returns findings with
a severity (info / warning / error / critical) and, where one
exists, a repair hint:

1. Gateway: connection configured, auth token, live reachability
2. Config: desired manifest, hash drift, applied manifest version
3. Channels: pairing state and upcoming expiry
4. Service: service profile completeness, deployment type
5. Instance: lifecycle status and error streak

``run_doctor`` condenses the same inputs into a pass/fail report.

============================================================
"""

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from agent_protocol.client import ClientFactory, default_client_factory
from core.clock import ClockFactory, ClockProtocol
from core.exceptions import InstanceNotFoundError
from monitoring.config import DiagnosticsSettings
from monitoring.health_poller import connection_options
from monitoring.models import AuthCheck, DiagnosticFinding, DiagnosticsReport, DoctorReport
from storage.database import Database
from storage.models.enums import ChannelAuthState, InstanceStatus
from storage.models.fleet import AgentConnection, BotInstance, ChannelAuthSession, ServiceProfile
from storage.repositories.instances import (
    ChannelAuthRepository,
    ConnectionRepository,
    InstanceRepository,
    ServiceProfileRepository,
)


logger = logging.getLogger(__name__)


@dataclass
class _InstanceBundle:
    instance: BotInstance
    connection: Optional[AgentConnection]
    profile: Optional[ServiceProfile]
    sessions: List[ChannelAuthSession]


class DiagnosticsService:

    def __init__(
        self,
        database: Database,
        client_factory: ClientFactory = default_client_factory,
        clock: Optional[ClockProtocol] = None,
        settings: Optional[DiagnosticsSettings] = None,
    ) -> None:
        self._db = database
        self._client_factory = client_factory
        self._clock = clock or ClockFactory.get_clock()
        self._settings = settings or DiagnosticsSettings()

    # --------------------------------------------------------
    # PUBLIC
    # --------------------------------------------------------

    async def run_diagnostics(self, instance_id: str) -> DiagnosticsReport:
        """
        Run every diagnostic check against one instance.

        Raises:
            InstanceNotFoundError: Unknown instance id
        """
        started = time.monotonic()
        bundle = await self._db.run_in_thread(self._load, instance_id)
        findings: List[DiagnosticFinding] = []

        await self._check_gateway(bundle.connection, findings)
        self._check_config(bundle.instance, bundle.connection, findings)
        self._check_channel_auth(bundle.sessions, findings)
        self._check_service(bundle.instance, bundle.profile, findings)
        self._check_instance_status(bundle.instance, findings)

        report = DiagnosticsReport(
            instance_id=instance_id,
            instance_name=bundle.instance.name,
            ran_at=self._clock.now(),
            duration_ms=int((time.monotonic() - started) * 1000),
            findings=findings,
        )
        logger.info(f"Diagnostics for {bundle.instance.name}: {report.summary}")
        return report

    async def run_doctor(self, instance_id: str) -> DoctorReport:
        """
        Pass/fail check of config, service, channel auth and gateway.

        PENDING channel sessions do not fail the check.

        Raises:
            InstanceNotFoundError: Unknown instance id
        """
        bundle = await self._db.run_in_thread(self._load, instance_id)
        connection = bundle.connection

        config_errors: List[str] = []
        if not bundle.instance.desired_manifest:
            config_errors.append("No desired manifest configured")
        if connection is None:
            config_errors.append("No gateway connection configured")
        elif not connection.auth_token:
            config_errors.append("Gateway auth token is missing")

        profile = bundle.profile
        if profile is None:
            service_status = "no_profile"
        elif profile.service_name:
            service_status = "configured"
        else:
            service_status = "not_configured"

        auth_checks = [
            AuthCheck(
                channel_type=s.channel_type,
                state=s.state,
                passed=s.state == ChannelAuthState.PAIRED.value,
            )
            for s in bundle.sessions
        ]

        gateway_reachable = False
        if connection is not None:
            gateway_reachable = await self._is_reachable(connection)

        auth_ok = all(c.passed or c.state == ChannelAuthState.PENDING.value for c in auth_checks)
        return DoctorReport(
            instance_id=instance_id,
            ran_at=self._clock.now(),
            config_valid=not config_errors,
            config_errors=config_errors,
            service_status=service_status,
            service_type=profile.service_type if profile else None,
            auth_checks=auth_checks,
            gateway_reachable=gateway_reachable,
            overall_pass=not config_errors and gateway_reachable and auth_ok,
        )

    # --------------------------------------------------------
    # CHECKS
    # --------------------------------------------------------

    async def _check_gateway(
        self,
        connection: Optional[AgentConnection],
        findings: List[DiagnosticFinding],
    ) -> None:
        if connection is None:
            findings.append(DiagnosticFinding(
                category="gateway",
                severity="critical",
                message="No gateway connection configured",
                repair_action="Configure a gateway connection for this instance with host, port, and auth credentials.",
            ))
            return

        if not connection.auth_token:
            findings.append(DiagnosticFinding(
                category="gateway",
                severity="error",
                message="Gateway auth token is missing",
                repair_action="Set the gateway auth token in the connection configuration.",
            ))

        endpoint = f"{connection.host}:{connection.port}"
        if await self._is_reachable(connection):
            findings.append(DiagnosticFinding(
                category="gateway",
                severity="info",
                message=f"Gateway at {endpoint} is reachable",
            ))
        else:
            findings.append(DiagnosticFinding(
                category="gateway",
                severity="critical",
                message=f"Gateway at {endpoint} is unreachable",
                detail="Could not establish a WebSocket connection within the timeout period.",
                repair_action="Verify the gateway process is running, check host and port, "
                              "and make sure the network allows connections.",
            ))

    def _check_config(
        self,
        instance: BotInstance,
        connection: Optional[AgentConnection],
        findings: List[DiagnosticFinding],
    ) -> None:
        if not instance.desired_manifest:
            findings.append(DiagnosticFinding(
                category="config",
                severity="warning",
                message="No desired manifest set for this instance",
                repair_action="Assign a manifest or template to this instance.",
            ))
            return

        applied_hash = connection.config_hash if connection else None
        desired_hash = instance.config_hash
        if applied_hash and desired_hash and applied_hash != desired_hash:
            findings.append(DiagnosticFinding(
                category="config",
                severity="error",
                message="Configuration drift detected",
                detail=f"Instance config hash: {desired_hash}, Gateway config hash: {applied_hash}",
                repair_action="Re-apply the desired configuration to the gateway.",
            ))
        elif not desired_hash:
            findings.append(DiagnosticFinding(
                category="config",
                severity="warning",
                message="Instance config hash not set; cannot verify drift",
                repair_action="Run a config apply to establish a baseline config hash.",
            ))
        else:
            findings.append(DiagnosticFinding(
                category="config",
                severity="info",
                message="Configuration hashes match; no drift detected",
            ))

        if not instance.applied_manifest_version:
            findings.append(DiagnosticFinding(
                category="config",
                severity="warning",
                message="No applied manifest version recorded",
                repair_action="Deploy the desired manifest to this instance.",
            ))

    def _check_channel_auth(
        self,
        sessions: List[ChannelAuthSession],
        findings: List[DiagnosticFinding],
    ) -> None:
        if not sessions:
            findings.append(DiagnosticFinding(
                category="channels",
                severity="info",
                message="No channel auth sessions found",
            ))
            return

        expiry_cutoff = self._clock.now() + timedelta(hours=self._settings.auth_expiry_warning_hours)
        for s in sessions:
            channel = s.channel_type
            if s.state == ChannelAuthState.EXPIRED.value:
                findings.append(DiagnosticFinding(
                    category="channels",
                    severity="error",
                    message=f"{channel} auth has expired",
                    repair_action=f"Re-pair the {channel} channel by initiating a new auth flow.",
                ))
            elif s.state == ChannelAuthState.ERROR.value:
                findings.append(DiagnosticFinding(
                    category="channels",
                    severity="error",
                    message=f"{channel} auth is in ERROR state",
                    detail=s.last_error,
                    repair_action=f"Reset and re-pair the {channel} channel.",
                ))
            elif s.state == ChannelAuthState.PENDING.value:
                findings.append(DiagnosticFinding(
                    category="channels",
                    severity="warning",
                    message=f"{channel} auth is pending; pairing not completed",
                    repair_action=f"Complete the {channel} pairing flow.",
                ))
            elif s.expires_at is not None and s.expires_at < expiry_cutoff:
                findings.append(DiagnosticFinding(
                    category="channels",
                    severity="warning",
                    message=f"{channel} auth expires within {self._settings.auth_expiry_warning_hours:g} hours",
                    repair_action=f"Renew the {channel} auth before it expires.",
                ))
            else:
                findings.append(DiagnosticFinding(
                    category="channels",
                    severity="info",
                    message=f"{channel} auth is valid and paired",
                ))

    @staticmethod
    def _check_service(
        instance: BotInstance,
        profile: Optional[ServiceProfile],
        findings: List[DiagnosticFinding],
    ) -> None:
        if profile is None:
            findings.append(DiagnosticFinding(
                category="service",
                severity="warning",
                message="No service profile configured for this instance",
                repair_action="Create a service profile to enable service management.",
            ))
            return

        if not profile.service_name:
            findings.append(DiagnosticFinding(
                category="service",
                severity="warning",
                message="No service name configured in the service profile",
                detail=f"Service type: {profile.service_type or 'not set'}",
                repair_action="Configure the service name in the service profile for process management.",
            ))
        else:
            findings.append(DiagnosticFinding(
                category="service",
                severity="info",
                message=f"Service configured: {profile.service_name} ({profile.service_type or 'unknown type'})",
            ))

        if not instance.deployment_type:
            findings.append(DiagnosticFinding(
                category="service",
                severity="info",
                message="No deployment type set; assuming local deployment",
            ))

    def _check_instance_status(self, instance: BotInstance, findings: List[DiagnosticFinding]) -> None:
        if instance.status == InstanceStatus.ERROR.value:
            findings.append(DiagnosticFinding(
                category="instance",
                severity="critical",
                message="Instance is in ERROR state",
                detail=instance.last_error,
                repair_action="Investigate the error and reconcile the instance.",
            ))
        elif instance.status == InstanceStatus.STOPPED.value:
            findings.append(DiagnosticFinding(
                category="instance",
                severity="warning",
                message="Instance is stopped",
                repair_action="Start the instance if it should be running.",
            ))

        if (instance.error_count or 0) > self._settings.error_count_warning:
            findings.append(DiagnosticFinding(
                category="instance",
                severity="error",
                message=f"Instance has {instance.error_count} consecutive errors",
                repair_action="Review recent logs and health snapshots. Consider restarting the instance.",
            ))

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _load(self, instance_id: str) -> _InstanceBundle:
        with self._db.session_scope() as session:
            instance = InstanceRepository(session).get(instance_id)
            if instance is None:
                raise InstanceNotFoundError(instance_id)
            return _InstanceBundle(
                instance=instance,
                connection=ConnectionRepository(session).get_for_instance(instance_id),
                profile=ServiceProfileRepository(session).get_for_instance(instance_id),
                sessions=ChannelAuthRepository(session).list_for_instance(instance_id),
            )

    async def _is_reachable(self, connection: AgentConnection) -> bool:
        """Connect-and-disconnect probe; any failure means unreachable."""
        options = connection_options(connection, self._settings.timeout_ms)
        try:
            async with self._client_factory(options):
                return True
        except Exception as e:
            logger.debug(f"Gateway {connection.host}:{connection.port} unreachable: {e}")
            return False


__all__ = ["DiagnosticsService"]
