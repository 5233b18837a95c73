"""
Billing-export HTTP reader.

Azure and GCP spend is read from a billing-export proxy (a service sitting in
front of the Cost Management export or the BigQuery billing table) that
answers ``GET {endpoint}/costs`` with the raw payload shape.
"""

import logging
from datetime import date
from typing import Any

import httpx

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


class HttpCostReader(ProviderCostReader):
    """Reads raw cost payloads from a billing-export endpoint."""

    def __init__(self, config: dict[str, Any] | None = None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(config)
        endpoint = self.config.get("endpoint")
        if not endpoint:
            raise ConfigurationError(
                f"{self.provider.label} billing export endpoint is not configured",
                provider=self.provider,
            )
        self.endpoint = str(endpoint).rstrip("/")
        self.request_timeout = float(self.config.get("request_timeout", 10))

        headers = {"Accept": "application/json"}
        token = self.config.get("api_token")
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=self.endpoint,
            headers=headers,
            timeout=self.request_timeout,
            transport=transport,
        )

    def _get_provider_id(self) -> ProviderId:
        provider = self.config.get("provider")
        if not provider:
            raise ConfigurationError("HttpCostReader requires a provider id in its config")
        return ProviderId(provider)

    async def get_range(
        self,
        start_date: date,
        end_date: date,
        granularity: TimeGranularity = TimeGranularity.DAILY,
    ) -> RawCostData:
        """Fetch ``[start_date, end_date)`` from the export endpoint."""
        params = {
            "start": start_date.isoformat(),
            "end": end_date.isoformat(),
            "granularity": granularity.value,
        }

        try:
            resp = await self._client.get("/costs", params=params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderUnavailableError(
                f"{self.provider.label} billing export returned {e.response.status_code}",
                provider=self.provider,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(
                f"{self.provider.label} billing export request failed: {e}",
                provider=self.provider,
            ) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.provider.label} billing export returned invalid JSON",
                provider=self.provider,
            ) from e

        logger.debug(f"{self.provider.label}: fetched costs for {start_date}..{end_date}")
        return data

    async def close(self) -> None:
        await self._client.aclose()


ReaderFactory.register_endpoint_reader(HttpCostReader)
