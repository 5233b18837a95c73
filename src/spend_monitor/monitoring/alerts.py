"""
Alert evaluation for multi-cloud spend monitoring.

Evaluates every enabled alert rule against fresh provider data, records
triggers in the alert store and notifies rule owners.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..providers.base import ProviderId, ProviderScope, TimeGranularity
from ..services.aggregator import MultiCloudAggregator, PartialFailure
from ..utils.data_normalizer import CombinedView
from ..utils.periods import (
    month_to_date_window,
    previous_day_window,
    prior_month_to_date_window,
    prior_month_window,
    trailing_week_windows,
)
from .models import AlertHistoryEntry, AlertRule, AlertType, RuleConfigurationError, as_utc
from .notifications import (
    NOTIFICATION_TITLES,
    DispatchError,
    NotificationDispatcher,
    budget_threshold_message,
    daily_summary_message,
    spike_message,
    weekly_summary_message,
)
from .store import AlertStore, PersistenceError

logger = logging.getLogger(__name__)

__all__ = [
    "AlertEvaluator",
    "AlertHistoryEntry",
    "AlertRule",
    "AlertType",
    "EvaluationReport",
    "RuleConfigurationError",
    "RuleOutcome",
    "RuleStatus",
]

DEFAULT_COOLDOWN = timedelta(hours=6)
SPIKE_BASELINE_MODES = ("full_month", "month_to_date")


class RuleStatus(Enum):
    """Result of evaluating one rule in one pass."""

    TRIGGERED = "triggered"
    NOT_TRIGGERED = "not_triggered"
    COOLDOWN = "cooldown"
    INVALID = "invalid"
    CONFLICT = "conflict"
    PERSISTENCE_FAILED = "persistence_failed"
    DEFERRED = "deferred"
    ERROR = "error"


@dataclass
class RuleOutcome:
    """What happened to one rule during a pass."""

    rule_id: str
    status: RuleStatus
    entries: List[AlertHistoryEntry] = field(default_factory=list)
    failures: List[PartialFailure] = field(default_factory=list)
    detail: Optional[str] = None
    notifications_sent: int = 0
    notification_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "status": self.status.value,
            "entries": [entry.to_dict() for entry in self.entries],
            "failures": [failure.to_dict() for failure in self.failures],
            "detail": self.detail,
            "notifications_sent": self.notifications_sent,
            "notification_errors": self.notification_errors,
        }


@dataclass
class EvaluationReport:
    """Summary of one evaluation pass."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    outcomes: List[RuleOutcome] = field(default_factory=list)

    @property
    def triggered(self) -> List[RuleOutcome]:
        return [o for o in self.outcomes if o.status == RuleStatus.TRIGGERED]

    def outcome_for(self, rule_id: str) -> Optional[RuleOutcome]:
        for outcome in self.outcomes:
            if outcome.rule_id == rule_id:
                return outcome
        return None

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.status.value] = counts.get(outcome.status.value, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "counts": self.counts(),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class _PassFetchCache:
    """Shares provider reads between the rules of one pass."""

    def __init__(self, aggregator: MultiCloudAggregator):
        self.aggregator = aggregator
        self._tasks: Dict[Tuple, asyncio.Future] = {}

    def fetch(
        self, scope: ProviderScope, window: Tuple[date, date]
    ) -> Awaitable[Tuple[CombinedView, List[PartialFailure]]]:
        key = (scope, window[0], window[1])
        if key not in self._tasks:
            self._tasks[key] = asyncio.ensure_future(
                self.aggregator.fetch_range(scope, window[0], window[1], TimeGranularity.MONTHLY)
            )
        return self._tasks[key]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _merge_failures(*groups: List[PartialFailure]) -> List[PartialFailure]:
    seen = set()
    merged = []
    for group in groups:
        for failure in group:
            if failure.provider not in seen:
                seen.add(failure.provider)
                merged.append(failure)
    return merged


def _healthy_providers(scope: ProviderScope, *views: CombinedView) -> List[ProviderId]:
    """Providers in scope, in scope order, that returned data for every view."""
    return [p for p in scope.providers() if all(p in view.per_provider for view in views)]


class AlertEvaluator:
    """Evaluates enabled alert rules against current provider data."""

    def __init__(
        self,
        store: AlertStore,
        aggregator: MultiCloudAggregator,
        dispatcher: NotificationDispatcher,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        max_concurrent_rules: int = 10,
        spike_baseline: str = "full_month",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            store: Rule and history storage
            aggregator: Multi-cloud data source
            dispatcher: Notification channel for rule owners
            cooldown: Minimum time between two triggers of the same rule
            max_concurrent_rules: Rules evaluated at the same time
            spike_baseline: ``full_month`` compares month-to-date against the
                whole prior month; ``month_to_date`` against the same number
                of days at the start of the prior month
            clock: Returns the current UTC time
        """
        if spike_baseline not in SPIKE_BASELINE_MODES:
            raise ValueError(f"Unknown spike baseline mode: {spike_baseline}")
        if max_concurrent_rules < 1:
            raise ValueError("max_concurrent_rules must be at least 1")

        self.store = store
        self.aggregator = aggregator
        self.dispatcher = dispatcher
        self.cooldown = cooldown
        self.max_concurrent_rules = max_concurrent_rules
        self.spike_baseline = spike_baseline
        self._clock = lambda: as_utc((clock or _utc_now)())
        self._running = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    async def run_evaluation_pass(self, deadline_seconds: Optional[float] = None) -> EvaluationReport:
        """
        Evaluate every enabled rule once.

        Args:
            deadline_seconds: Rules not started within this many seconds are
                deferred to the next pass

        Returns:
            Per-rule outcomes; flagged ``skipped`` if a pass was already running

        Raises:
            PersistenceError: If the enabled rules cannot be listed
        """
        if self._running.locked():
            logger.warning("Evaluation pass already running; skipping this one")
            now = self._clock()
            return EvaluationReport(started_at=now, finished_at=now, skipped=True)

        async with self._running:
            return await self._run_pass(deadline_seconds)

    async def _run_pass(self, deadline_seconds: Optional[float]) -> EvaluationReport:
        report = EvaluationReport(started_at=self._clock())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + deadline_seconds if deadline_seconds is not None else None

        try:
            rules = await self.store.list_enabled_rules()
        except PersistenceError as e:
            logger.error(f"Could not list alert rules: {e}")
            raise

        logger.info(f"Evaluating {len(rules)} alert rules")
        cache = _PassFetchCache(self.aggregator)
        semaphore = asyncio.Semaphore(self.max_concurrent_rules)

        async def evaluate(rule: AlertRule) -> RuleOutcome:
            async with semaphore:
                if deadline is not None and loop.time() >= deadline:
                    logger.warning(f"Pass deadline reached; deferring rule {rule.id}")
                    return RuleOutcome(rule.id, RuleStatus.DEFERRED, detail="pass deadline reached")
                try:
                    return await self._evaluate_rule(rule, cache)
                except Exception as e:
                    logger.exception(f"Unexpected error evaluating rule {rule.id}: {e}")
                    return RuleOutcome(rule.id, RuleStatus.ERROR, detail=str(e))

        report.outcomes = list(await asyncio.gather(*(evaluate(rule) for rule in rules)))
        report.finished_at = self._clock()

        logger.info(f"Evaluation pass finished: {report.counts()}")
        return report

    def _effective_cooldown(self, rule: AlertRule) -> timedelta:
        period = rule.alert_type.period
        if period is not None:
            return max(self.cooldown, period)
        return self.cooldown

    def _in_cooldown(self, rule: AlertRule, now: datetime) -> bool:
        if rule.last_triggered_at is None:
            return False
        return now - rule.last_triggered_at < self._effective_cooldown(rule)

    async def _evaluate_rule(self, rule: AlertRule, cache: _PassFetchCache) -> RuleOutcome:
        now = self._clock()
        if self._in_cooldown(rule, now):
            logger.debug(f"Rule {rule.id} is in cooldown since {rule.last_triggered_at}")
            return RuleOutcome(rule.id, RuleStatus.COOLDOWN)

        evaluators = {
            AlertType.BUDGET_THRESHOLD: self._evaluate_budget,
            AlertType.SPIKE_DETECTION: self._evaluate_spike,
            AlertType.DAILY_SUMMARY: self._evaluate_daily_summary,
            AlertType.WEEKLY_SUMMARY: self._evaluate_weekly_summary,
        }

        try:
            entries, failures, detail = await evaluators[rule.alert_type](rule, now, cache)
        except RuleConfigurationError as e:
            logger.warning(f"Invalid alert rule configuration: {e}")
            return RuleOutcome(rule.id, RuleStatus.INVALID, detail=str(e))

        if not entries:
            return RuleOutcome(rule.id, RuleStatus.NOT_TRIGGERED, failures=failures, detail=detail)

        return await self._commit_and_dispatch(rule, now, entries, failures)

    def _entry(
        self,
        rule: AlertRule,
        now: datetime,
        provider: str,
        current: Decimal,
        comparison: Optional[Decimal],
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AlertHistoryEntry:
        return AlertHistoryEntry(
            rule_id=rule.id,
            owner_id=rule.owner_id,
            triggered_at=now,
            current_value=current,
            comparison_value=comparison,
            provider=provider,
            message=message,
            notification_channels=rule.notification_channels,
            metadata=metadata or {},
        )

    async def _evaluate_budget(self, rule: AlertRule, now: datetime, cache: _PassFetchCache):
        threshold = rule.require_threshold()
        view, failures = await cache.fetch(rule.provider_scope, month_to_date_window(now.date()))

        entries = []
        for provider in _healthy_providers(rule.provider_scope, view):
            current = view.provider_total(provider)
            if current >= threshold:
                entries.append(
                    self._entry(
                        rule,
                        now,
                        provider.value,
                        current,
                        threshold,
                        budget_threshold_message(provider, current, threshold),
                    )
                )
        return entries, failures, None

    def _baseline_window(self, today: date) -> Tuple[date, date]:
        if self.spike_baseline == "month_to_date":
            return prior_month_to_date_window(today)
        return prior_month_window(today)

    async def _evaluate_spike(self, rule: AlertRule, now: datetime, cache: _PassFetchCache):
        percentage = rule.spike_percentage
        today = now.date()
        baseline_window = self._baseline_window(today)
        (current_view, current_failures), (baseline_view, baseline_failures) = await asyncio.gather(
            cache.fetch(rule.provider_scope, month_to_date_window(today)),
            cache.fetch(rule.provider_scope, baseline_window),
        )
        failures = _merge_failures(current_failures, baseline_failures)

        entries = []
        for provider in _healthy_providers(rule.provider_scope, current_view, baseline_view):
            current = current_view.provider_total(provider)
            baseline = baseline_view.provider_total(provider)
            # No baseline means no spike, whatever the current spend
            if baseline <= 0:
                continue
            change = float((current - baseline) / baseline * 100)
            if change >= percentage:
                entries.append(
                    self._entry(
                        rule,
                        now,
                        provider.value,
                        current,
                        baseline,
                        spike_message(provider, current, baseline, change),
                        metadata={
                            "percentage_increase": round(change, 2),
                            "baseline_value": str(baseline),
                            "baseline_window": [d.isoformat() for d in baseline_window],
                        },
                    )
                )
        return entries, failures, None

    async def _evaluate_daily_summary(self, rule: AlertRule, now: datetime, cache: _PassFetchCache):
        view, failures = await cache.fetch(rule.provider_scope, previous_day_window(now.date()))
        providers = _healthy_providers(rule.provider_scope, view)
        if not providers:
            return [], failures, "no provider returned data"

        total = sum((view.provider_total(p) for p in providers), Decimal("0"))
        entry = self._entry(
            rule,
            now,
            rule.provider_scope.value,
            total,
            None,
            daily_summary_message(total, len(providers)),
            metadata={
                "providers": {p.value: str(view.provider_total(p)) for p in providers},
                "failed_providers": [f.provider.value for f in failures],
            },
        )
        return [entry], failures, None

    async def _evaluate_weekly_summary(self, rule: AlertRule, now: datetime, cache: _PassFetchCache):
        this_week, last_week = trailing_week_windows(now.date())
        (current_view, current_failures), (previous_view, previous_failures) = await asyncio.gather(
            cache.fetch(rule.provider_scope, this_week),
            cache.fetch(rule.provider_scope, last_week),
        )
        failures = _merge_failures(current_failures, previous_failures)
        providers = _healthy_providers(rule.provider_scope, current_view, previous_view)
        if not providers:
            return [], failures, "no provider returned data"

        total = sum((current_view.provider_total(p) for p in providers), Decimal("0"))
        previous = sum((previous_view.provider_total(p) for p in providers), Decimal("0"))
        change = float((total - previous) / previous * 100) if previous > 0 else 0.0

        entry = self._entry(
            rule,
            now,
            rule.provider_scope.value,
            total,
            previous,
            weekly_summary_message(total, change),
            metadata={
                "change_percent": round(change, 2),
                "providers": [p.value for p in providers],
                "failed_providers": [f.provider.value for f in failures],
            },
        )
        return [entry], failures, None

    async def _commit_and_dispatch(
        self,
        rule: AlertRule,
        now: datetime,
        entries: List[AlertHistoryEntry],
        failures: List[PartialFailure],
    ) -> RuleOutcome:
        try:
            committed = await self.store.commit_trigger(rule.id, rule.last_triggered_at, now, entries)
        except PersistenceError as e:
            logger.error(f"Could not record trigger of rule {rule.id}: {e}")
            return RuleOutcome(rule.id, RuleStatus.PERSISTENCE_FAILED, failures=failures, detail=str(e))

        if not committed:
            logger.info(f"Rule {rule.id} was triggered concurrently elsewhere; not notifying")
            return RuleOutcome(rule.id, RuleStatus.CONFLICT, failures=failures)

        outcome = RuleOutcome(rule.id, RuleStatus.TRIGGERED, entries=entries, failures=failures)
        title = NOTIFICATION_TITLES[rule.alert_type.value]

        for entry in entries:
            data = {
                "type": rule.alert_type.value,
                "rule_id": rule.id,
                "history_id": entry.id,
                "provider": entry.provider,
                "current_value": str(entry.current_value),
                "comparison_value": (
                    str(entry.comparison_value) if entry.comparison_value is not None else None
                ),
            }
            try:
                delivered = await self.dispatcher.send(rule.owner_id, title, entry.message, data)
            except DispatchError as e:
                logger.error(f"Notification for rule {rule.id} failed: {e}")
                outcome.notification_errors.append(str(e))
                continue
            except Exception as e:
                logger.exception(f"Unexpected error sending notification for rule {rule.id}: {e}")
                outcome.notification_errors.append(f"{type(e).__name__}: {e}")
                continue

            if delivered:
                outcome.notifications_sent += 1
            else:
                logger.warning(f"Notification for rule {rule.id} was not delivered")
                outcome.notification_errors.append("not delivered")

        logger.info(f"Rule {rule.id} ({rule.alert_type.value}) triggered: {len(entries)} entries")
        return outcome
