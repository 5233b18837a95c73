"""Cloud billing readers."""

from .base import (
    CloudProviderError,
    ConfigurationError,
    MalformedResponseError,
    ProviderCostReader,
    ProviderId,
    ProviderScope,
    ProviderUnavailableError,
    RawCostData,
    ReaderFactory,
    TimeGranularity,
)

# Import readers so they register with the factory
from . import aws, http  # noqa: E402,F401

__all__ = [
    "CloudProviderError",
    "ConfigurationError",
    "MalformedResponseError",
    "ProviderCostReader",
    "ProviderId",
    "ProviderScope",
    "ProviderUnavailableError",
    "RawCostData",
    "ReaderFactory",
    "TimeGranularity",
]
