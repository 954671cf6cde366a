"""
Bot Fleet Monitor - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the monitoring control loop.

- Provides argparse-based CLI
- Loads configuration from a YAML file or the environment
- Wires the poller, alert engine, notifications and remediation
- Prints JSON results

============================================================
USAGE
============================================================
bot-fleet-monitor run
bot-fleet-monitor poll
bot-fleet-monitor evaluate
bot-fleet-monitor alerts --status ACTIVE
bot-fleet-monitor remediate <alert-id>
bot-fleet-monitor doctor <instance-id>

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, List, Optional

from core.exceptions import MonitoringError
from monitoring.alerts.engine import AlertEngine
from monitoring.alerts.store import AlertStore
from monitoring.config import MonitoringConfig, set_config
from monitoring.diagnostics import DiagnosticsService
from monitoring.health_aggregator import HealthAggregator
from monitoring.health_poller import HealthPoller
from monitoring.notifications.dispatcher import NotificationDispatcher
from monitoring.remediation import RemediationDispatcher
from monitoring.scheduler import MonitoringScheduler
from storage.database import Database
from storage.models.enums import AlertRule, AlertSeverity, AlertStatus
from storage.repositories.monitoring import AlertFilter


logger = logging.getLogger(__name__)


# ============================================================
# LOGGING
# ============================================================

class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", log_format: str = "text") -> None:
    """
    Install the root log handler.

    Args:
        level: Log level name
        log_format: Output format (json or text)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    # Results go to stdout, logs to stderr
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]


# ============================================================
# SERVICE WIRING
# ============================================================

@dataclass
class MonitorServices:
    database: Database
    store: AlertStore
    notifier: NotificationDispatcher
    poller: HealthPoller
    engine: AlertEngine
    aggregator: HealthAggregator
    remediation: RemediationDispatcher
    diagnostics: DiagnosticsService


def build_services(config: MonitoringConfig, database: Optional[Database] = None) -> MonitorServices:
    database = database or Database(url=config.database.url, echo=config.database.echo)
    store = AlertStore(database)
    notifier = NotificationDispatcher(database, settings=config.notifications)
    poller = HealthPoller(database, settings=config.poller)
    engine = AlertEngine(database, store=store, settings=config.alerts, notifier=notifier)
    return MonitorServices(
        database=database,
        store=store,
        notifier=notifier,
        poller=poller,
        engine=engine,
        aggregator=HealthAggregator(database),
        remediation=RemediationDispatcher(database, store, poller),
        diagnostics=DiagnosticsService(database, settings=config.diagnostics),
    )


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="bot-fleet-monitor",
        description="Health monitoring, alerting and remediation for a bot-agent fleet",
    )

    parser.add_argument("--config", "-c", type=str, default=None, help="YAML config file (default: environment)")
    parser.add_argument("--database-url", type=str, default=None, help="Override DATABASE_URL")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (default: from config)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default=None,
        help="Log format (default: from config)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Run the poll and alert loops until interrupted")
    commands.add_parser("poll", help="Run one health-poll tick")
    commands.add_parser("evaluate", help="Run one alert-evaluation tick")
    commands.add_parser("init-db", help="Create database tables")

    doctor = commands.add_parser("doctor", help="Pass/fail check of one instance")
    doctor.add_argument("instance_id")

    diagnose = commands.add_parser("diagnose", help="Full diagnostic findings for one instance")
    diagnose.add_argument("instance_id")

    remediate = commands.add_parser("remediate", help="Execute the remediation action of an alert")
    remediate.add_argument("alert_id")

    alerts = commands.add_parser("alerts", help="List alerts")
    alerts.add_argument("--status", choices=[s.value for s in AlertStatus])
    alerts.add_argument("--severity", choices=[s.value for s in AlertSeverity])
    alerts.add_argument("--rule", choices=[r.value for r in AlertRule])
    alerts.add_argument("--instance", dest="instance_id")
    alerts.add_argument("--fleet", dest="fleet_id")
    alerts.add_argument("--page", type=int, default=1)
    alerts.add_argument("--limit", type=int, default=50)
    alerts.add_argument("--summary", action="store_true", help="Print counts instead of a page of alerts")

    ack = commands.add_parser("ack", help="Acknowledge an alert")
    ack.add_argument("alert_id")
    ack.add_argument("--by", dest="acknowledged_by", default="cli")

    health = commands.add_parser("health", help="Workspace or fleet health")
    health.add_argument("--fleet", dest="fleet_id", help="Only this fleet")
    health.add_argument("--history", dest="history_instance_id", help="Snapshot history of one instance")

    return parser


def load_config(args: argparse.Namespace) -> MonitoringConfig:
    config = MonitoringConfig.from_yaml(args.config) if args.config else MonitoringConfig.from_env()
    if args.database_url:
        config.database.url = args.database_url
    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format
    return config


def emit(result: Any) -> None:
    """Print a result as JSON on stdout."""
    if hasattr(result, "to_dict"):
        result = result.to_dict()
    print(json.dumps(result, indent=2, default=str))


# ============================================================
# COMMANDS
# ============================================================

async def run_forever(services: MonitorServices, config: MonitoringConfig) -> int:
    scheduler = MonitoringScheduler.for_services(services.poller, services.engine, config)
    await scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await services.notifier.drain()
    return 0


async def async_main(args: argparse.Namespace, services: MonitorServices, config: MonitoringConfig) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    command = args.command

    if command == "run":
        return await run_forever(services, config)

    if command == "poll":
        emit(await services.poller.poll_all())
        return 0

    if command == "evaluate":
        summary = await services.engine.evaluate_all()
        await services.notifier.drain()
        emit(summary)
        return 0

    if command == "doctor":
        report = await services.diagnostics.run_doctor(args.instance_id)
        emit(report)
        return 0 if report.overall_pass else 1

    if command == "diagnose":
        emit(await services.diagnostics.run_diagnostics(args.instance_id))
        return 0

    if command == "remediate":
        result = await services.remediation.execute_remediation(args.alert_id)
        emit(result)
        return 0 if result.success else 1

    if command == "alerts":
        if args.summary:
            emit(services.store.get_alert_summary())
            return 0
        page = services.store.list_alerts(AlertFilter(
            instance_id=args.instance_id,
            fleet_id=args.fleet_id,
            severity=args.severity,
            status=args.status,
            rule=args.rule,
            page=args.page,
            limit=args.limit,
        ))
        page["data"] = [alert.to_dict() for alert in page["data"]]
        emit(page)
        return 0

    if command == "ack":
        emit(services.store.acknowledge_alert(args.alert_id, acknowledged_by=args.acknowledged_by))
        return 0

    if command == "health":
        if args.history_instance_id:
            history = services.aggregator.get_health_history(args.history_instance_id)
            emit([point.to_dict() for point in history])
        elif args.fleet_id:
            emit(services.aggregator.get_fleet_health(args.fleet_id))
        else:
            emit(services.aggregator.get_workspace_health())
        return 0

    if command == "init-db":
        services.database.init_schema()
        emit({"initialized": True, "url": services.database.url})
        return 0

    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except MonitoringError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 2

    setup_logging(config.log_level, config.log_format)
    set_config(config)

    services = build_services(config)
    try:
        return asyncio.run(async_main(args, services, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except MonitoringError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        services.database.dispose()


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
