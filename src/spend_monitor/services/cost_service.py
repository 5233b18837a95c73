"""
Cost monitoring service.

Exposes the operations used by the CLI and any outer surface: the combined
month-to-date summary, trend statistics, and an alert evaluation pass.
"""

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ..analysis.trends import TrendAnalyzer, TrendPoint, TrendStats
from ..config.settings import MonitorConfig
from ..monitoring.alerts import AlertEvaluator, EvaluationReport
from ..monitoring.models import AlertRule
from ..monitoring.notifications import NotificationDispatcher, build_dispatcher
from ..monitoring.store import AlertStore, InMemoryAlertStore, PostgresAlertStore
from ..providers import ProviderCostReader, ProviderId, ProviderScope, ReaderFactory, TimeGranularity
from ..providers.base import CloudProviderError
from ..utils.data_normalizer import CombinedView
from ..utils.periods import zero_fill
from .aggregator import MultiCloudAggregator

logger = logging.getLogger(__name__)


class CostMonitorService:
    """Facade over the aggregator, the trend analyzer and the alert evaluator."""

    def __init__(
        self,
        aggregator: MultiCloudAggregator,
        evaluator: Optional[AlertEvaluator] = None,
        analyzer: Optional[TrendAnalyzer] = None,
        store: Optional[AlertStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.aggregator = aggregator
        self.evaluator = evaluator
        self.analyzer = analyzer or TrendAnalyzer()
        self.store = store
        self.dispatcher = dispatcher

    async def get_combined_summary(self, scope: ProviderScope = ProviderScope.ALL) -> CombinedView:
        """Month-to-date combined view; failed providers are flagged in ``provider_status``."""
        view, failures = await self.aggregator.fetch_current(scope)
        if failures:
            logger.warning(
                f"Combined summary is partial: {', '.join(f.provider.value for f in failures)} failed"
            )
        return view

    async def get_trend_stats(
        self,
        scope: ProviderScope,
        start_date: date,
        end_date: date,
        granularity: TimeGranularity = TimeGranularity.DAILY,
    ) -> Tuple[List[TrendPoint], TrendStats]:
        """
        Combined cost series over ``[start_date, end_date)`` and its statistics.

        Per-provider series are summed by date and zero-filled across the
        window before analysis, so missing days count as zero spend.
        """
        per_provider, failures = await self.aggregator.fetch_trend_series(
            scope, start_date, end_date, granularity
        )
        if failures:
            logger.warning(
                f"Trend series is partial: {', '.join(f.provider.value for f in failures)} failed"
            )

        totals: Dict[date, Decimal] = defaultdict(Decimal)
        for points in per_provider.values():
            for point in points:
                totals[point.date] += point.cost

        summed = [TrendPoint(date=day, cost=cost) for day, cost in sorted(totals.items())]
        series = zero_fill(summed, start_date, end_date, granularity)
        return series, self.analyzer.analyze(series)

    async def run_evaluation_pass(self, deadline_seconds: Optional[float] = None) -> EvaluationReport:
        if self.evaluator is None:
            raise RuntimeError("Alert evaluation is not configured for this service")
        return await self.evaluator.run_evaluation_pass(deadline_seconds=deadline_seconds)

    async def close(self) -> None:
        await self.aggregator.close()
        if self.dispatcher is not None:
            await self.dispatcher.close()
        if self.store is not None:
            await self.store.close()


def build_readers(config: MonitorConfig) -> Dict[ProviderId, ProviderCostReader]:
    """Create a reader for every enabled provider; misconfigured ones are left out."""
    readers = {}
    for provider in config.enabled_providers:
        try:
            readers[provider] = ReaderFactory.create_reader(
                provider, config.get_provider_config(provider)
            )
        except CloudProviderError as e:
            logger.error(f"Skipping {provider.label}: {e}")
    return readers


async def build_store(config: MonitorConfig) -> AlertStore:
    """PostgreSQL store when a database is configured, else rules from the config file."""
    if config.database_url:
        store = await PostgresAlertStore.connect(config.database_url)
        await store.ensure_schema()
        return store

    rules = []
    for raw_rule in config.alert_rules:
        try:
            rules.append(AlertRule(**raw_rule))
        except ValueError as e:
            logger.error(f"Ignoring invalid alert rule {raw_rule.get('id', '?')}: {e}")
    return InMemoryAlertStore(rules)


async def build_service(config: MonitorConfig, store: Optional[AlertStore] = None) -> CostMonitorService:
    """Assemble the service and its collaborators from configuration."""
    aggregator = MultiCloudAggregator(build_readers(config), timeout=config.provider_timeout)
    store = store or await build_store(config)
    dispatcher = build_dispatcher(config.notifications)
    evaluator = AlertEvaluator(
        store,
        aggregator,
        dispatcher,
        cooldown=config.cooldown,
        max_concurrent_rules=config.max_concurrent_rules,
        spike_baseline=config.spike_baseline,
    )
    return CostMonitorService(
        aggregator, evaluator=evaluator, store=store, dispatcher=dispatcher
    )
