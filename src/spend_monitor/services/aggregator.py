"""
Multi-cloud aggregation.

Fans out to every billing reader in scope concurrently, normalizes what comes
back and merges it into a combined view. A provider that fails or times out
is reported as a partial failure; it never fails the whole fetch.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from ..analysis.trends import TrendPoint
from ..providers.base import (
    ConfigurationError,
    ProviderCostReader,
    ProviderId,
    ProviderScope,
    TimeGranularity,
)
from ..utils.data_normalizer import (
    STATUS_ERROR,
    CombinedView,
    CostNormalizer,
    CostSnapshot,
    combine_multi_cloud_data,
)
from ..utils.periods import month_to_date_window, utc_today

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT = 10.0


class FailureKind(Enum):
    TIMEOUT = "timeout"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class PartialFailure:
    """A provider that could not contribute to a fetch."""

    provider: ProviderId
    kind: FailureKind
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"provider": self.provider.value, "kind": self.kind.value, "message": self.message}


class MultiCloudAggregator:
    """Concurrent fan-out over the configured billing readers."""

    def __init__(
        self,
        readers: Mapping[ProviderId, ProviderCostReader],
        normalizer: Optional[CostNormalizer] = None,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT,
    ):
        """
        Args:
            readers: One reader per configured provider
            normalizer: Normalizer applied to every raw payload
            timeout: Per-provider call timeout in seconds
        """
        self.readers = dict(readers)
        self.normalizer = normalizer or CostNormalizer()
        self.timeout = timeout

    async def _call(
        self,
        provider: ProviderId,
        call: Callable[[ProviderCostReader], Awaitable[Any]],
    ) -> Tuple[ProviderId, Any, Optional[PartialFailure]]:
        reader = self.readers.get(provider)
        if reader is None:
            return provider, None, PartialFailure(
                provider, FailureKind.NOT_CONFIGURED, f"{provider.label} is not configured"
            )

        try:
            raw = await asyncio.wait_for(call(reader), timeout=self.timeout)
            return provider, raw, None
        except asyncio.TimeoutError:
            logger.warning(f"{provider.label} billing read timed out after {self.timeout}s")
            return provider, None, PartialFailure(
                provider, FailureKind.TIMEOUT, f"no response within {self.timeout}s"
            )
        except ConfigurationError as e:
            logger.error(f"{provider.label} reader is misconfigured: {e}")
            return provider, None, PartialFailure(provider, FailureKind.NOT_CONFIGURED, str(e))
        except Exception as e:
            logger.warning(f"{provider.label} billing read failed: {e}")
            return provider, None, PartialFailure(
                provider, FailureKind.PROVIDER_UNAVAILABLE, str(e) or type(e).__name__
            )

    async def _fan_out(
        self,
        scope: ProviderScope,
        call: Callable[[ProviderCostReader], Awaitable[Any]],
    ) -> Tuple[Dict[ProviderId, Any], List[PartialFailure]]:
        results = await asyncio.gather(*(self._call(p, call) for p in scope.providers()))

        payloads: Dict[ProviderId, Any] = {}
        failures: List[PartialFailure] = []
        for provider, raw, failure in results:
            if failure:
                failures.append(failure)
            else:
                payloads[provider] = raw
        return payloads, failures

    def _combine(
        self, snapshots: List[CostSnapshot], failures: List[PartialFailure]
    ) -> CombinedView:
        view = combine_multi_cloud_data(snapshots)
        for failure in failures:
            view.provider_status[failure.provider] = STATUS_ERROR
        if failures:
            view.metadata["failed_providers"] = [f.to_dict() for f in failures]
        return view

    async def fetch_current(
        self, scope: ProviderScope = ProviderScope.ALL, today: Optional[date] = None
    ) -> Tuple[CombinedView, List[PartialFailure]]:
        """Month-to-date combined view for ``scope``, keyed on the UTC date unless ``today`` is given."""
        today = today or utc_today()
        period = month_to_date_window(today)
        payloads, failures = await self._fan_out(
            scope, lambda reader: reader.get_current_period_cost(today)
        )
        snapshots = [
            self.normalizer.normalize(raw, provider, period) for provider, raw in payloads.items()
        ]
        return self._combine(snapshots, failures), failures

    async def fetch_range(
        self,
        scope: ProviderScope,
        start_date: date,
        end_date: date,
        granularity: TimeGranularity = TimeGranularity.DAILY,
    ) -> Tuple[CombinedView, List[PartialFailure]]:
        """Combined view for ``[start_date, end_date)``."""
        if start_date >= end_date:
            raise ValueError(f"Start date {start_date} must be before end date {end_date}")

        payloads, failures = await self._fan_out(
            scope, lambda reader: reader.get_range(start_date, end_date, granularity)
        )
        snapshots = [
            self.normalizer.normalize(raw, provider, (start_date, end_date))
            for provider, raw in payloads.items()
        ]
        return self._combine(snapshots, failures), failures

    async def fetch_trend_series(
        self,
        scope: ProviderScope,
        start_date: date,
        end_date: date,
        granularity: TimeGranularity = TimeGranularity.DAILY,
    ) -> Tuple[Dict[ProviderId, List[TrendPoint]], List[PartialFailure]]:
        """Per-provider trend series for ``[start_date, end_date)``."""
        if start_date >= end_date:
            raise ValueError(f"Start date {start_date} must be before end date {end_date}")

        payloads, failures = await self._fan_out(
            scope, lambda reader: reader.get_range(start_date, end_date, granularity)
        )
        series = {
            provider: self.normalizer.normalize_trends(raw, provider)
            for provider, raw in payloads.items()
        }
        return series, failures

    async def close(self):
        """Close every reader."""
        for reader in self.readers.values():
            try:
                await reader.close()
            except Exception as e:
                logger.warning(f"Error closing {reader!r}: {e}")
