"""
Monitoring Scheduler.

============================================================
PURPOSE
============================================================
Drives the two periodic ticks of the control loop:

- health-poll:    HealthPoller.poll_all, every poller interval
- alert-evaluate: AlertEngine.evaluate_all, every alert interval

Each tick runs in its own task. A slow or failing tick never
delays the other, and a tick error is logged without stopping
later ticks.

============================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from monitoring.alerts.engine import AlertEngine
from monitoring.config import MonitoringConfig
from monitoring.health_poller import HealthPoller


logger = logging.getLogger(__name__)


HEALTH_POLL = "health-poll"
ALERT_EVALUATE = "alert-evaluate"

TickFunction = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """Runs one coroutine function on a fixed interval as a background task."""

    def __init__(self, name: str, interval_seconds: float, func: TickFunction) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"Scheduled task {self.name} started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info(f"Scheduled task {self.name} stopped")

    async def run_once(self) -> Any:
        """Run one tick; errors are logged and swallowed."""
        self.ticks += 1
        try:
            return await self._func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(f"Scheduled task {self.name} failed: {e}", exc_info=True)
            return None

    async def _run(self) -> None:
        while self._running:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)


class MonitoringScheduler:

    def __init__(self, tasks: List[PeriodicTask]) -> None:
        self._tasks: Dict[str, PeriodicTask] = {task.name: task for task in tasks}

    @classmethod
    def for_services(
        cls,
        poller: HealthPoller,
        engine: AlertEngine,
        config: MonitoringConfig,
    ) -> "MonitoringScheduler":
        return cls([
            PeriodicTask(HEALTH_POLL, config.poller.interval_seconds, poller.poll_all),
            PeriodicTask(ALERT_EVALUATE, config.alerts.interval_seconds, engine.evaluate_all),
        ])

    @property
    def tasks(self) -> Dict[str, PeriodicTask]:
        return dict(self._tasks)

    async def start(self) -> None:
        for task in self._tasks.values():
            await task.start()
        logger.info("Monitoring scheduler started")

    async def stop(self) -> None:
        for task in self._tasks.values():
            await task.stop()
        logger.info("Monitoring scheduler stopped")

    async def trigger(self, name: str) -> Any:
        """Run one tick of a named task immediately."""
        task = self._tasks.get(name)
        if task is None:
            raise KeyError(f"Unknown scheduled task: {name}")
        return await task.run_once()


__all__ = [
    "ALERT_EVALUATE",
    "HEALTH_POLL",
    "MonitoringScheduler",
    "PeriodicTask",
]
