"""
Monitoring Data Models.

============================================================
PURPOSE
============================================================
Plain data containers returned by the monitoring services.

Persistent state lives in ``storage.models``; these types only
carry results between the poller, alert engine, aggregator,
remediation dispatcher, diagnostics and the CLI.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from agent_protocol.models import AgentHealth, AgentStatus
from storage.models.enums import (
    AlertRule,
    AlertSeverity,
    AlertStatus,
    HealthState,
    RemediationAction,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================
# ALERT PAYLOAD
# ============================================================

@dataclass
class AlertPayload:
    """Everything a rule reports about a breach."""
    rule: AlertRule
    instance_id: Optional[str]
    severity: AlertSeverity
    title: str
    message: str
    fleet_id: Optional[str] = None
    detail: Optional[str] = None
    remediation_action: Optional[RemediationAction] = None


@dataclass
class AlertNotification:
    """Input to notification delivery."""
    severity: AlertSeverity
    rule: str
    message: str
    bot_instance_id: Optional[str] = None
    details: Optional[str] = None


@dataclass
class AlertSummary:
    """Alert counts for dashboards."""
    by_severity: Dict[str, int] = field(default_factory=dict)
    by_status: Dict[str, int] = field(default_factory=dict)
    total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "by_severity": dict(self.by_severity),
            "by_status": dict(self.by_status),
            "total": self.total,
        }


@dataclass
class EvaluationSummary:
    """Outcome counts of one alert-evaluation tick."""
    instances: int = 0
    fired: int = 0
    resolved: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instances": self.instances,
            "fired": self.fired,
            "resolved": self.resolved,
            "skipped": self.skipped,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


# ============================================================
# POLLING
# ============================================================

@dataclass
class PollSummary:
    """Outcome counts of one health-poll tick."""
    polled: int = 0
    succeeded: int = 0
    failed: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "polled": self.polled,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
        }


@dataclass
class DeepHealthResult:
    """
    Live health and status of one instance.

    ``reachable=False`` is a normal outcome, carrying synthetic
    unknown payloads and ``latency_ms=-1`` when nothing was measured.
    """
    snapshot: AgentHealth
    status: AgentStatus
    latency_ms: int
    reachable: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict(),
            "status": self.status.to_dict(),
            "latency_ms": self.latency_ms,
            "reachable": self.reachable,
            "error": self.error,
        }


# ============================================================
# AGGREGATION
# ============================================================

@dataclass
class ComponentHealth:
    """One channel across a fleet."""
    component: str
    type: str
    healthy: int = 0
    degraded: int = 0

    @property
    def total(self) -> int:
        return self.healthy + self.degraded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component,
            "type": self.type,
            "healthy": self.healthy,
            "degraded": self.degraded,
            "total": self.total,
        }


@dataclass
class FleetHealth:
    fleet_id: str
    fleet_name: str
    total: int = 0
    healthy: int = 0
    degraded: int = 0
    unhealthy: int = 0
    unreachable: int = 0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fleet_id": self.fleet_id,
            "fleet_name": self.fleet_name,
            "total": self.total,
            "healthy": self.healthy,
            "degraded": self.degraded,
            "unhealthy": self.unhealthy,
            "unreachable": self.unreachable,
            "components": [component.to_dict() for component in self.components],
        }


@dataclass
class WorkspaceHealth:
    overall_status: HealthState
    total_instances: int = 0
    healthy: int = 0
    degraded: int = 0
    unhealthy: int = 0
    unreachable: int = 0
    fleets: List[FleetHealth] = field(default_factory=list)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_status": self.overall_status.value,
            "total_instances": self.total_instances,
            "healthy": self.healthy,
            "degraded": self.degraded,
            "unhealthy": self.unhealthy,
            "unreachable": self.unreachable,
            "fleets": [fleet.to_dict() for fleet in self.fleets],
            "last_updated": _iso(self.last_updated),
        }


@dataclass
class HealthHistoryPoint:
    captured_at: datetime
    is_healthy: bool
    channels_linked: int
    channels_degraded: int
    gateway_latency_ms: Optional[int]
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "captured_at": _iso(self.captured_at),
            "is_healthy": self.is_healthy,
            "channels_linked": self.channels_linked,
            "channels_degraded": self.channels_degraded,
            "gateway_latency_ms": self.gateway_latency_ms,
            "data": self.data,
        }


# ============================================================
# REMEDIATION
# ============================================================

@dataclass
class RemediationResult:
    """Outcome of one remediation attempt. Never an exception."""
    success: bool
    action: str
    message: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "message": self.message,
            "detail": self.detail,
        }


# ============================================================
# DIAGNOSTICS
# ============================================================

FINDING_SEVERITIES = ("info", "warning", "error", "critical")


@dataclass
class DiagnosticFinding:
    category: str
    severity: str
    message: str
    detail: Optional[str] = None
    repair_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "category": self.category,
            "severity": self.severity,
            "message": self.message,
        }
        if self.detail is not None:
            result["detail"] = self.detail
        if self.repair_action is not None:
            result["repair_action"] = self.repair_action
        return result


@dataclass
class DiagnosticsReport:
    instance_id: str
    instance_name: str
    ran_at: datetime
    duration_ms: int
    findings: List[DiagnosticFinding] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        counts = {severity: 0 for severity in FINDING_SEVERITIES}
        for finding in self.findings:
            counts[finding.severity] = counts.get(finding.severity, 0) + 1
        counts["total"] = len(self.findings)
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "instance_name": self.instance_name,
            "ran_at": _iso(self.ran_at),
            "duration_ms": self.duration_ms,
            "findings": [finding.to_dict() for finding in self.findings],
            "summary": self.summary,
        }


@dataclass
class AuthCheck:
    channel_type: str
    state: str
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"channel_type": self.channel_type, "state": self.state, "passed": self.passed}


@dataclass
class DoctorReport:
    """Pass/fail summary for programmatic gating."""
    instance_id: str
    ran_at: datetime
    config_valid: bool
    config_errors: List[str]
    service_status: str
    service_type: Optional[str]
    auth_checks: List[AuthCheck]
    gateway_reachable: bool
    overall_pass: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "ran_at": _iso(self.ran_at),
            "config_valid": self.config_valid,
            "config_errors": list(self.config_errors),
            "service_status": self.service_status,
            "service_type": self.service_type,
            "auth_checks": [check.to_dict() for check in self.auth_checks],
            "gateway_reachable": self.gateway_reachable,
            "overall_pass": self.overall_pass,
        }


__all__ = [
    "AlertRule",
    "AlertSeverity",
    "AlertStatus",
    "HealthState",
    "RemediationAction",
    "AlertPayload",
    "AlertNotification",
    "AlertSummary",
    "EvaluationSummary",
    "PollSummary",
    "DeepHealthResult",
    "ComponentHealth",
    "FleetHealth",
    "WorkspaceHealth",
    "HealthHistoryPoint",
    "RemediationResult",
    "FINDING_SEVERITIES",
    "DiagnosticFinding",
    "DiagnosticsReport",
    "AuthCheck",
    "DoctorReport",
]
