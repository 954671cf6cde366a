"""
Monitoring Domain ORM Models.

============================================================
PURPOSE
============================================================
Models for storing monitoring and alerting data: health snapshots,
alerts and notification channels.

============================================================
DATA LIFECYCLE ROLE
============================================================
- HealthSnapshot: IMMUTABLE (append-only)
- HealthAlert: MUTABLE (upserted by rule evaluation, at most one
  non-resolved row per (rule, instance_id))
- NotificationChannel: MUTABLE (delivery counters)

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, TimestampMixin, new_id, utcnow
from storage.models.enums import AlertStatus


class HealthSnapshot(Base):
    """
    Point-in-time health payload of one instance.

    Written once per successful or deep-check poll, never mutated.
    Queried most-recent-first per instance.
    """

    __tablename__ = "health_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    instance_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bot_instances.id", ondelete="CASCADE"),
        nullable=False,
    )

    data: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="Raw health payload from the agent"
    )

    is_healthy: Mapped[bool] = mapped_column(Boolean, nullable=False)

    channels_linked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    channels_degraded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    gateway_latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    captured_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_health_snapshots_instance_time", "instance_id", "captured_at"),
    )


class HealthAlert(Base, TimestampMixin):
    """
    Alert raised by a rule against an instance.

    ============================================================
    IDENTITY
    ============================================================
    Composite key (rule, instance_id). The partial unique index
    guarantees at most one non-resolved alert per key, so two
    concurrent creates for the same key cannot both succeed.

    ============================================================
    """

    __tablename__ = "health_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    rule: Mapped[str] = mapped_column(String(40), nullable=False)

    instance_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("bot_instances.id", ondelete="SET NULL"),
        nullable=True,
    )

    fleet_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    severity: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="CRITICAL, ERROR, WARNING, INFO"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AlertStatus.ACTIVE.value,
        comment="ACTIVE, ACKNOWLEDGED, RESOLVED, SUPPRESSED"
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    message: Mapped[str] = mapped_column(Text, nullable=False)

    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    remediation_action: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    remediation_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    first_triggered_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)

    last_triggered_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)

    consecutive_hits: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    __table_args__ = (
        Index(
            "uq_health_alerts_open_key",
            "rule",
            "instance_id",
            unique=True,
            sqlite_where=text("status != 'RESOLVED'"),
            postgresql_where=text("status != 'RESOLVED'"),
        ),
        Index("idx_health_alerts_status", "status"),
        Index("idx_health_alerts_last_triggered", "last_triggered_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON output."""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "rule": self.rule,
            "instance_id": self.instance_id,
            "fleet_id": self.fleet_id,
            "severity": self.severity,
            "status": self.status,
            "title": self.title,
            "message": self.message,
            "detail": self.detail,
            "remediation_action": self.remediation_action,
            "remediation_note": self.remediation_note,
            "first_triggered_at": iso(self.first_triggered_at),
            "last_triggered_at": iso(self.last_triggered_at),
            "consecutive_hits": self.consecutive_hits,
            "acknowledged_at": iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": iso(self.resolved_at),
        }

    def __repr__(self) -> str:
        return f"<HealthAlert {self.rule} instance={self.instance_id} status={self.status}>"


class NotificationChannel(Base, TimestampMixin):
    """
    Configured alert delivery target.

    ``config`` holds type-specific settings: ``url`` for
    SLACK_WEBHOOK, ``url`` and optional ``headers`` for WEBHOOK,
    ``bot_token`` and ``chat_id`` for TELEGRAM.
    """

    __tablename__ = "notification_channels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="SLACK_WEBHOOK, WEBHOOK, TELEGRAM"
    )

    config: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    min_severity: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="Deliver only alerts at or above this severity"
    )

    rules: Mapped[Optional[List[str]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Deliver only these rules; null means all"
    )

    last_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
