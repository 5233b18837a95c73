"""
Abstract billing reader interface for multi-cloud spend monitoring.

Defines the provider identifiers, the raw payload shape and the interface
that every cloud billing reader must implement.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date
from enum import Enum
from typing import Any

from ..utils.periods import month_to_date_window, utc_today

logger = logging.getLogger(__name__)

# Raw provider payload. Readers are expected to return the shape below, but the
# normalizer tolerates anything, so this stays a plain mapping:
#
#     {
#         "totalCost": "120.00",
#         "currency": "USD",
#         "period": {"start": "2024-01-01", "end": "2024-02-01"},
#         "services": [{"name": "Amazon EC2", "cost": "80.00"}],
#         "trends": [{"date": "2024-01-01", "cost": "4.00"}],
#     }
RawCostData = dict[str, Any]


class ProviderId(Enum):
    """Supported cloud billing backends."""

    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"

    @property
    def label(self) -> str:
        return self.value.upper()


class ProviderScope(Enum):
    """Provider selection used by alert rules and summary queries."""

    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"
    ALL = "all"

    def providers(self) -> list[ProviderId]:
        """Resolve the scope into the provider ids it covers."""
        if self is ProviderScope.ALL:
            return list(ProviderId)
        return [ProviderId(self.value)]

    @classmethod
    def for_provider(cls, provider: ProviderId) -> "ProviderScope":
        return cls(provider.value)


class TimeGranularity(Enum):
    """Supported time granularities for cost queries."""

    DAILY = "daily"
    MONTHLY = "monthly"


class CloudProviderError(Exception):
    """Base exception for cloud provider errors."""

    def __init__(self, message: str, provider: ProviderId | None = None):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailableError(CloudProviderError):
    """Timeout, network or upstream API failure. Retried on the next cycle."""

    def __init__(
        self,
        message: str,
        provider: ProviderId | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, provider=provider)
        self.status_code = status_code


class MalformedResponseError(CloudProviderError):
    """Upstream returned a payload that cannot be interpreted."""

    pass


class ConfigurationError(CloudProviderError):
    """Configuration-related errors."""

    pass


class ProviderCostReader(ABC):
    """Abstract base class for per-provider billing readers.

    Implementations must be safe for concurrent use: the aggregator calls the
    same reader from several rule evaluations at once.
    """

    def __init__(self, config: dict[str, Any] | None = None):
        """
        Initialize the reader with configuration.

        Args:
            config: Provider-specific configuration dictionary
        """
        self.config = dict(config or {})
        self.provider = self._get_provider_id()

    @abstractmethod
    def _get_provider_id(self) -> ProviderId:
        """Return the provider this reader serves."""
        pass

    @abstractmethod
    async def get_range(
        self,
        start_date: date,
        end_date: date,
        granularity: TimeGranularity = TimeGranularity.DAILY,
    ) -> RawCostData:
        """
        Retrieve raw cost data for ``[start_date, end_date)``.

        Args:
            start_date: First day included
            end_date: First day excluded
            granularity: Time granularity for the ``trends`` entries

        Returns:
            Raw cost payload

        Raises:
            ProviderUnavailableError: If the upstream call fails
        """
        pass

    async def get_current_period_cost(self, today: date | None = None) -> RawCostData:
        """Get the raw month-to-date cost for the billing period containing ``today`` (UTC)."""
        start_date, end_date = month_to_date_window(today or utc_today())
        return await self.get_range(start_date, end_date, TimeGranularity.MONTHLY)

    async def close(self) -> None:
        """Release any client resources held by the reader."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider={self.provider.value})"


class ReaderFactory:
    """Factory class for creating billing reader instances by provider id."""

    _readers: dict[ProviderId, type[ProviderCostReader]] = {}
    _endpoint_reader: type[ProviderCostReader] | None = None

    @classmethod
    def register_reader(cls, provider: ProviderId, reader_class: type[ProviderCostReader]):
        """Register the native reader class for a provider."""
        cls._readers[provider] = reader_class

    @classmethod
    def register_endpoint_reader(cls, reader_class: type[ProviderCostReader]):
        """Register the reader used for providers configured with an ``endpoint``."""
        cls._endpoint_reader = reader_class

    @classmethod
    def create_reader(cls, provider: ProviderId, config: dict[str, Any]) -> ProviderCostReader:
        """
        Create a reader instance.

        Providers configured with an ``endpoint`` use the endpoint reader
        (billing-export proxy); the others use their native reader.

        Raises:
            ConfigurationError: If no reader is available for the provider
        """
        config = dict(config or {})
        config["provider"] = provider.value

        if config.get("endpoint"):
            if cls._endpoint_reader is None:
                raise ConfigurationError("No endpoint reader registered", provider=provider)
            return cls._endpoint_reader(config)

        reader_class = cls._readers.get(provider)
        if reader_class is None:
            raise ConfigurationError(
                f"No native reader for {provider.label}; configure an endpoint",
                provider=provider,
            )
        return reader_class(config)

    @classmethod
    def get_available_providers(cls) -> list[ProviderId]:
        """Get the providers with a native reader."""
        return list(cls._readers.keys())
