"""
Monitoring - Configuration.

============================================================
CONFIGURABLE CONTROL LOOP
============================================================

All intervals, limits and rule thresholds are configurable:
- Health poll interval, concurrency ceiling and call timeout
- Alert evaluation interval and per-rule enable/thresholds
- Diagnostics probe timeout and warning limits
- Notification delivery timeout
- Database URL

Configuration can be loaded from:
- Default values
- Environment variables (.env honoured)
- YAML config file

Invalid values raise ConfigurationError at load time.

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

from core.exceptions import ConfigurationError
from monitoring.alerts.definitions import ALERT_RULE_DEFINITIONS
from storage.models.enums import AlertRule


logger = logging.getLogger(__name__)


# =============================================================
# HELPERS
# =============================================================


def _require_positive(name: str, value: Union[int, float]) -> None:
    if value is None or value <= 0:
        raise ConfigurationError(f"{name} must be positive", config_key=name, actual_value=value)


def _env_number(name: str, cast=int) -> Optional[Union[int, float]]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} is not a number", config_key=name, actual_value=raw) from e


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} is not a boolean", config_key=name, actual_value=raw)


# =============================================================
# SECTIONS
# =============================================================


@dataclass
class PollerSettings:
    """Health poller settings."""
    interval_seconds: float = 30
    concurrency_limit: int = 10
    timeout_ms: int = 10_000

    def __post_init__(self) -> None:
        _require_positive("poller.interval_seconds", self.interval_seconds)
        _require_positive("poller.concurrency_limit", self.concurrency_limit)
        _require_positive("poller.timeout_ms", self.timeout_ms)


@dataclass
class RuleSettings:
    """Enable flag and thresholds of one alert rule."""
    enabled: bool = True
    thresholds: Dict[str, float] = field(default_factory=dict)


def _default_rule_settings() -> Dict[AlertRule, RuleSettings]:
    return {
        rule: RuleSettings(
            enabled=definition.default_enabled,
            thresholds=dict(definition.default_thresholds),
        )
        for rule, definition in ALERT_RULE_DEFINITIONS.items()
    }


@dataclass
class AlertSettings:
    """Alert engine settings."""
    interval_seconds: float = 60
    evaluation_concurrency: int = 10
    rules: Dict[AlertRule, RuleSettings] = field(default_factory=_default_rule_settings)

    def __post_init__(self) -> None:
        _require_positive("alerts.interval_seconds", self.interval_seconds)
        _require_positive("alerts.evaluation_concurrency", self.evaluation_concurrency)
        for rule, definition in ALERT_RULE_DEFINITIONS.items():
            settings = self.rules.setdefault(rule, RuleSettings(thresholds=dict(definition.default_thresholds)))
            for key, default in definition.default_thresholds.items():
                settings.thresholds.setdefault(key, default)
            self._validate_thresholds(rule, settings)

    @staticmethod
    def _validate_thresholds(rule: AlertRule, settings: RuleSettings) -> None:
        minimums = ALERT_RULE_DEFINITIONS[rule].threshold_minimums
        for key, value in settings.thresholds.items():
            minimum = minimums.get(key)
            if minimum is not None and value < minimum:
                raise ConfigurationError(
                    f"{rule.value}.{key} must be >= {minimum}",
                    config_key=f"alerts.rules.{rule.value}.{key}",
                    actual_value=value,
                )

    def rule(self, rule: AlertRule) -> RuleSettings:
        return self.rules[rule]

    def is_enabled(self, rule: AlertRule) -> bool:
        return self.rules[rule].enabled

    def threshold(self, rule: AlertRule, key: str) -> float:
        return self.rules[rule].thresholds[key]


@dataclass
class DiagnosticsSettings:
    """Diagnostics/doctor settings."""
    timeout_ms: int = 15_000
    auth_expiry_warning_hours: float = 24
    error_count_warning: int = 5

    def __post_init__(self) -> None:
        _require_positive("diagnostics.timeout_ms", self.timeout_ms)
        _require_positive("diagnostics.auth_expiry_warning_hours", self.auth_expiry_warning_hours)


@dataclass
class NotificationSettings:
    """Notification delivery settings."""
    enabled: bool = True
    http_timeout_seconds: float = 10

    def __post_init__(self) -> None:
        _require_positive("notifications.http_timeout_seconds", self.http_timeout_seconds)


@dataclass
class DatabaseSettings:
    """Database settings. A missing URL falls back to DATABASE_URL or local SQLite."""
    url: Optional[str] = None
    echo: bool = False


# =============================================================
# ROOT CONFIG
# =============================================================


@dataclass
class MonitoringConfig:
    """
    Complete monitor configuration.

    Environment variables:
    - DATABASE_URL
    - HEALTH_POLL_INTERVAL, HEALTH_POLL_CONCURRENCY, HEALTH_POLL_TIMEOUT_MS
    - ALERT_EVAL_INTERVAL
    - ALERT_RULE_<RULE>_ENABLED (e.g. ALERT_RULE_TOKEN_SPIKE_ENABLED=false)
    - LOG_LEVEL, LOG_FORMAT
    """
    poller: PollerSettings = field(default_factory=PollerSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    diagnostics: DiagnosticsSettings = field(default_factory=DiagnosticsSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    log_level: str = "INFO"
    log_format: str = "text"

    def __post_init__(self) -> None:
        if self.log_format not in ("text", "json"):
            raise ConfigurationError(
                "log_format must be 'text' or 'json'",
                config_key="log_format",
                actual_value=self.log_format,
            )

    @classmethod
    def from_env(cls) -> "MonitoringConfig":
        """Load configuration from environment variables."""
        load_dotenv()

        poller = PollerSettings()
        interval = _env_number("HEALTH_POLL_INTERVAL", float)
        if interval is not None:
            poller.interval_seconds = interval
        concurrency = _env_number("HEALTH_POLL_CONCURRENCY")
        if concurrency is not None:
            poller.concurrency_limit = concurrency
        timeout_ms = _env_number("HEALTH_POLL_TIMEOUT_MS")
        if timeout_ms is not None:
            poller.timeout_ms = timeout_ms
        # Re-validate after overrides
        poller.__post_init__()

        alerts = AlertSettings()
        eval_interval = _env_number("ALERT_EVAL_INTERVAL", float)
        if eval_interval is not None:
            alerts.interval_seconds = eval_interval
        for rule in AlertRule:
            enabled = _env_bool(f"ALERT_RULE_{rule.value.upper()}_ENABLED")
            if enabled is not None:
                alerts.rules[rule].enabled = enabled
        alerts.__post_init__()

        return cls(
            poller=poller,
            alerts=alerts,
            database=DatabaseSettings(url=os.getenv("DATABASE_URL") or None),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "text").lower(),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "MonitoringConfig":
        """
        Load configuration from a YAML file.

        Raises:
            ConfigurationError: File unreadable or values invalid
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load YAML config from {path}: {e}", cause=e) from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"YAML config {path} must be a mapping")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoringConfig":
        alerts_data = dict(data.get("alerts") or {})
        rules: Dict[AlertRule, RuleSettings] = {}
        for name, rule_data in (alerts_data.pop("rules", None) or {}).items():
            try:
                rule = AlertRule(name)
            except ValueError as e:
                raise ConfigurationError(f"Unknown alert rule: {name}", config_key="alerts.rules") from e
            rule_data = rule_data or {}
            rules[rule] = RuleSettings(
                enabled=bool(rule_data.get("enabled", True)),
                thresholds=dict(rule_data.get("thresholds") or {}),
            )

        try:
            return cls(
                poller=PollerSettings(**(data.get("poller") or {})),
                alerts=AlertSettings(rules=rules, **alerts_data),
                diagnostics=DiagnosticsSettings(**(data.get("diagnostics") or {})),
                notifications=NotificationSettings(**(data.get("notifications") or {})),
                database=DatabaseSettings(**(data.get("database") or {})),
                log_level=str(data.get("log_level", "INFO")).upper(),
                log_format=str(data.get("log_format", "text")).lower(),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration key: {e}", cause=e) from e

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "poller": {
                "interval_seconds": self.poller.interval_seconds,
                "concurrency_limit": self.poller.concurrency_limit,
                "timeout_ms": self.poller.timeout_ms,
            },
            "alerts": {
                "interval_seconds": self.alerts.interval_seconds,
                "evaluation_concurrency": self.alerts.evaluation_concurrency,
                "rules": {
                    rule.value: {"enabled": settings.enabled, "thresholds": dict(settings.thresholds)}
                    for rule, settings in self.alerts.rules.items()
                },
            },
            "diagnostics": {
                "timeout_ms": self.diagnostics.timeout_ms,
                "auth_expiry_warning_hours": self.diagnostics.auth_expiry_warning_hours,
                "error_count_warning": self.diagnostics.error_count_warning,
            },
            "notifications": {
                "enabled": self.notifications.enabled,
                "http_timeout_seconds": self.notifications.http_timeout_seconds,
            },
            "database": {"url": self.database.url, "echo": self.database.echo},
            "log_level": self.log_level,
            "log_format": self.log_format,
        }


# =============================================================
# GLOBAL CONFIG SINGLETON
# =============================================================


_default_config: Optional[MonitoringConfig] = None


def get_config() -> MonitoringConfig:
    """Get the global monitor configuration."""
    global _default_config
    if _default_config is None:
        _default_config = MonitoringConfig.from_env()
    return _default_config


def set_config(config: Optional[MonitoringConfig]) -> None:
    """Set (or clear, with None) the global monitor configuration."""
    global _default_config
    _default_config = config
