"""
Alert Engine.

============================================================
PURPOSE
============================================================
Runs every enabled rule evaluator against every evaluable
instance once per tick and applies the decisions to the
alert store.

============================================================
ISOLATION
============================================================
- Instances are evaluated concurrently under a semaphore
- Rules of one instance run concurrently and independently
- A failing rule is logged and counted; the others still run
- Notifications are spawned, never awaited by the tick
- Context loading and alert writes run on worker threads

============================================================
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from core.clock import ClockFactory, ClockProtocol
from monitoring.alerts.rules import (
    InstanceContext,
    Outcome,
    RuleDecision,
    RuleEvaluator,
    get_default_evaluators,
)
from monitoring.alerts.store import AlertStore
from monitoring.config import AlertSettings
from monitoring.models import AlertNotification, EvaluationSummary
from monitoring.notifications.dispatcher import NotificationDispatcher
from storage.database import Database
from storage.models.enums import AlertRule, AlertSeverity
from storage.models.fleet import BotInstance
from storage.models.monitoring import HealthAlert
from storage.repositories.costs import BudgetConfigRepository, CostEventRepository
from storage.repositories.instances import (
    ChannelAuthRepository,
    ConnectionRepository,
    InstanceRepository,
)


logger = logging.getLogger(__name__)


class AlertEngine:
    """
    Evaluates alert rules for the whole fleet.

    Only one tick runs at a time; a trigger that arrives while a
    tick is in progress waits for it.
    """

    def __init__(
        self,
        database: Database,
        store: Optional[AlertStore] = None,
        settings: Optional[AlertSettings] = None,
        clock: Optional[ClockProtocol] = None,
        notifier: Optional[NotificationDispatcher] = None,
        evaluators: Optional[List[RuleEvaluator]] = None,
    ) -> None:
        self._db = database
        self._clock = clock or ClockFactory.get_clock()
        self._store = store or AlertStore(database, self._clock)
        self._settings = settings or AlertSettings()
        self._notifier = notifier
        self._evaluators = evaluators if evaluators is not None else get_default_evaluators()
        self._eval_lock = asyncio.Lock()

    @property
    def store(self) -> AlertStore:
        return self._store

    # --------------------------------------------------------
    # TICK
    # --------------------------------------------------------

    async def evaluate_all(self) -> EvaluationSummary:
        """Evaluate every instance whose status is not CREATING/DELETING."""
        async with self._eval_lock:
            started = time.monotonic()
            summary = EvaluationSummary()

            contexts = await self._db.run_in_thread(self._load_contexts, summary)
            summary.instances = len(contexts)

            semaphore = asyncio.Semaphore(self._settings.evaluation_concurrency)

            async def run(ctx: InstanceContext) -> None:
                async with semaphore:
                    await self.evaluate_instance(ctx, summary)

            results = await asyncio.gather(*(run(ctx) for ctx in contexts), return_exceptions=True)
            for ctx, result in zip(contexts, results):
                if isinstance(result, Exception):
                    summary.errors += 1
                    logger.error(f"Alert evaluation failed for instance {ctx.instance.id}: {result}")

            summary.duration_ms = int((time.monotonic() - started) * 1000)
            logger.debug(
                f"Alert evaluation: {summary.instances} instances, {summary.fired} fired, "
                f"{summary.resolved} resolved, {summary.errors} errors"
            )
            return summary

    async def evaluate_instance(
        self,
        ctx: InstanceContext,
        summary: Optional[EvaluationSummary] = None,
    ) -> EvaluationSummary:
        """Run every enabled evaluator for one instance."""
        summary = summary if summary is not None else EvaluationSummary()
        active = [e for e in self._evaluators if any(self._settings.is_enabled(r) for r in e.rules)]
        await asyncio.gather(*(self._run_evaluator(evaluator, ctx, summary) for evaluator in active))
        return summary

    async def _run_evaluator(
        self,
        evaluator: RuleEvaluator,
        ctx: InstanceContext,
        summary: EvaluationSummary,
    ) -> None:
        try:
            thresholds = self._settings.rule(evaluator.rules[0]).thresholds
            decisions = evaluator.evaluate(ctx, thresholds)
            for decision in decisions:
                if self._settings.is_enabled(decision.rule):
                    await self._apply(decision, ctx, summary)
        except Exception as e:
            summary.errors += 1
            logger.error(f"Error evaluating rule {evaluator.name} for instance {ctx.instance.id}: {e}")

    async def _apply(self, decision: RuleDecision, ctx: InstanceContext, summary: EvaluationSummary) -> None:
        if decision.outcome is Outcome.FIRE:
            result = await self._db.run_in_thread(self._store.upsert_alert, decision.payload)
            summary.fired += 1
            if result.should_notify:
                self._notify(result.alert, ctx.instance.id)
        elif decision.outcome is Outcome.RESOLVE:
            resolved = await self._db.run_in_thread(
                self._store.resolve_alert_by_key, decision.rule.value, ctx.instance.id
            )
            if resolved is not None:
                summary.resolved += 1
        else:
            summary.skipped += 1

    def _notify(self, alert: HealthAlert, instance_id: str) -> None:
        if self._notifier is None:
            return
        self._notifier.dispatch(
            AlertNotification(
                severity=AlertSeverity(alert.severity),
                rule=alert.rule,
                bot_instance_id=instance_id,
                message=alert.message,
                details=alert.detail,
            )
        )

    # --------------------------------------------------------
    # CONTEXT LOADING
    # --------------------------------------------------------

    def _load_contexts(self, summary: EvaluationSummary) -> List[InstanceContext]:
        now = self._clock.now()
        contexts: List[InstanceContext] = []

        with self._db.session_scope() as session:
            instances = InstanceRepository(session).list_evaluable()
            for instance in instances:
                try:
                    contexts.append(self._load_context(session, instance, now))
                except Exception as e:
                    summary.errors += 1
                    logger.error(f"Failed to load alert context for instance {instance.id}: {e}")

        return contexts

    def _load_context(self, session: Session, instance: BotInstance, now) -> InstanceContext:
        ctx = InstanceContext(
            instance=instance,
            now=now,
            connection=ConnectionRepository(session).get_for_instance(instance.id),
            budget_critical_enabled=self._settings.is_enabled(AlertRule.BUDGET_CRITICAL),
        )

        if self._settings.is_enabled(AlertRule.CHANNEL_AUTH_EXPIRED):
            ctx.auth_sessions = ChannelAuthRepository(session).list_for_instance(instance.id)

        costs = CostEventRepository(session)
        if self._settings.is_enabled(AlertRule.BUDGET_WARNING) or self._settings.is_enabled(AlertRule.BUDGET_CRITICAL):
            ctx.budgets = BudgetConfigRepository(session).active_for_instance(instance.id, instance.fleet_id)
            if ctx.budgets:
                ctx.month_spend_cents = costs.spend_since(instance.id, self._clock.month_start(), now)

        if self._settings.is_enabled(AlertRule.TOKEN_SPIKE):
            thresholds: Dict[str, float] = self._settings.rule(AlertRule.TOKEN_SPIKE).thresholds
            recent_start = now - timedelta(minutes=thresholds["recent_window_min"])
            baseline_start = recent_start - timedelta(minutes=thresholds["baseline_window_min"])
            ctx.recent_tokens = costs.token_window(instance.id, recent_start, now, include_end=True)
            ctx.baseline_tokens = costs.token_window(instance.id, baseline_start, recent_start, include_end=False)

        return ctx


__all__ = ["AlertEngine"]
