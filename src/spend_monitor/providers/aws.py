"""
AWS Cost Explorer billing reader.

Reads month-to-date and ranged spend from the Cost Explorer API, grouped by
service, and returns it in the raw payload shape the normalizer expects.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .base import (
    ConfigurationError,
    MalformedResponseError,
    ProviderCostReader,
    ProviderId,
    ProviderUnavailableError,
    RawCostData,
    ReaderFactory,
    TimeGranularity,
)

logger = logging.getLogger(__name__)

# Cost Explorer is only served from us-east-1
COST_EXPLORER_REGION = "us-east-1"


class AWSCostReader(ProviderCostReader):
    """AWS Cost Explorer reader."""

    granularity_mapping = {
        TimeGranularity.DAILY: "DAILY",
        TimeGranularity.MONTHLY: "MONTHLY",
    }

    def __init__(self, config: dict[str, Any] | None = None):
        super().__init__(config)
        self.session = None
        self.cost_explorer_client = None
        self.metric = self.config.get("metric", "UnblendedCost")
        self.max_retries = int(self.config.get("max_retries", 3))
        self.retry_delay = float(self.config.get("retry_delay", 1.0))

    def _get_provider_id(self) -> ProviderId:
        return ProviderId.AWS

    def _create_session(self):
        """Build a boto3 session from access keys, a named profile, or the default chain."""
        access_key = self.config.get("access_key_id")
        secret_key = self.config.get("secret_access_key")
        profile = self.config.get("profile")

        if bool(access_key) != bool(secret_key):
            raise ConfigurationError(
                "AWS access_key_id and secret_access_key must be set together",
                provider=self.provider,
            )

        if access_key:
            return boto3.Session(
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                aws_session_token=self.config.get("session_token"),
                region_name=self.config.get("region"),
            )
        if profile:
            return boto3.Session(profile_name=profile)
        return boto3.Session()

    def _get_client(self):
        if self.cost_explorer_client is None:
            self.session = self._create_session()
            config = Config(
                region_name=COST_EXPLORER_REGION,
                retries={"max_attempts": 3, "mode": "adaptive"},
            )
            self.cost_explorer_client = self.session.client("ce", config=config)
        return self.cost_explorer_client

    def _prepare_request_params(
        self, start_date: date, end_date: date, granularity: TimeGranularity
    ) -> dict[str, Any]:
        """Cost Explorer treats ``End`` as exclusive, matching our windows."""
        return {
            "TimePeriod": {
                "Start": start_date.strftime("%Y-%m-%d"),
                "End": end_date.strftime("%Y-%m-%d"),
            },
            "Granularity": self.granularity_mapping.get(granularity, "DAILY"),
            "Metrics": [self.metric],
            "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
        }

    def _fetch_all_pages(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Blocking paginated fetch, run in a worker thread."""
        client = self._get_client()
        results: list[dict[str, Any]] = []
        request = dict(params)

        while True:
            response = client.get_cost_and_usage(**request)
            results.extend(response.get("ResultsByTime", []))
            token = response.get("NextPageToken")
            if not token:
                break
            request["NextPageToken"] = token

        return results

    async def _make_cost_explorer_request(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Make a request to the Cost Explorer API with retry on throttling."""
        for attempt in range(self.max_retries):
            try:
                return await asyncio.to_thread(self._fetch_all_pages, params)
            except ClientError as e:
                error_code = e.response["Error"]["Code"]
                if error_code == "Throttling" and attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay * (2**attempt))
                    continue
                self._handle_client_error(e)
            except BotoCoreError as e:
                raise ProviderUnavailableError(
                    f"AWS Cost Explorer request failed: {e}", provider=self.provider
                ) from e

        raise ProviderUnavailableError(
            "Max retries exceeded for AWS Cost Explorer API", provider=self.provider
        )

    def _extract_cost_from_metrics(self, metrics_data: dict[str, Any]) -> tuple[Decimal, str]:
        """Extract cost amount and currency from Cost Explorer metrics data."""
        metric_data = metrics_data.get(self.metric)
        if metric_data is None and metrics_data:
            metric_data = next(iter(metrics_data.values()))
        if not metric_data:
            return Decimal("0"), "USD"
        return Decimal(str(metric_data.get("Amount", "0"))), metric_data.get("Unit", "USD")

    def _parse_results(
        self, results: list[dict[str, Any]], start_date: date, end_date: date
    ) -> RawCostData:
        """Fold Cost Explorer result pages into a raw payload."""
        service_costs: defaultdict[str, Decimal] = defaultdict(Decimal)
        trend_costs: defaultdict[str, Decimal] = defaultdict(Decimal)
        currency = "USD"

        try:
            for result in results:
                period_start = result["TimePeriod"]["Start"]
                for group in result.get("Groups", []):
                    keys = group.get("Keys") or ["Unknown"]
                    amount, currency = self._extract_cost_from_metrics(group.get("Metrics", {}))
                    service_costs[keys[0]] += amount
                    trend_costs[period_start] += amount
                if not result.get("Groups"):
                    amount, currency = self._extract_cost_from_metrics(result.get("Total", {}))
                    trend_costs[period_start] += amount
        except (KeyError, TypeError, ArithmeticError) as e:
            raise MalformedResponseError(
                f"Unexpected Cost Explorer response: {e}", provider=self.provider
            ) from e

        return {
            "totalCost": str(sum(trend_costs.values(), Decimal("0"))),
            "currency": currency,
            "period": {"start": start_date.isoformat(), "end": end_date.isoformat()},
            "services": [
                {"name": name, "cost": str(cost)} for name, cost in service_costs.items()
            ],
            "trends": [{"date": day, "cost": str(cost)} for day, cost in sorted(trend_costs.items())],
        }

    async def get_range(
        self,
        start_date: date,
        end_date: date,
        granularity: TimeGranularity = TimeGranularity.DAILY,
    ) -> RawCostData:
        """Retrieve cost data from AWS Cost Explorer for ``[start_date, end_date)``."""
        if isinstance(start_date, datetime):
            start_date = start_date.date()
        if isinstance(end_date, datetime):
            end_date = end_date.date()
        if start_date >= end_date:
            raise ValueError(f"Start date {start_date} must be before end date {end_date}")

        params = self._prepare_request_params(start_date, end_date, granularity)
        logger.debug(f"AWS: requesting {params['TimePeriod']} at {params['Granularity']}")

        results = await self._make_cost_explorer_request(params)
        return self._parse_results(results, start_date, end_date)

    def _handle_client_error(self, error: ClientError):
        """Translate AWS client errors into reader errors."""
        error_code = error.response["Error"]["Code"]
        error_message = error.response["Error"].get("Message", "")

        if error_code in ("UnrecognizedClientException", "AccessDeniedException"):
            raise ConfigurationError(
                f"AWS credentials rejected ({error_code}): {error_message}",
                provider=self.provider,
            ) from error

        raise ProviderUnavailableError(
            f"AWS Cost Explorer API error ({error_code}): {error_message}",
            provider=self.provider,
            status_code=error.response.get("ResponseMetadata", {}).get("HTTPStatusCode"),
        ) from error


# Register the AWS reader with the factory
ReaderFactory.register_reader(ProviderId.AWS, AWSCostReader)
