"""
Data normalization utilities for multi-cloud spend monitoring.

Provides the canonical cost model and the functions that map raw billing
payloads from AWS, Azure, and GCP into it, then merge several providers into
one combined view.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from ..analysis.trends import TrendPoint
from ..providers.base import ProviderId, RawCostData
from .periods import utc_today

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
SUM_TOLERANCE = Decimal("0.01")
DEFAULT_CURRENCY = "USD"
UNKNOWN_SERVICE = "Unknown Service"

CANONICAL_SERVICES = (
    "Compute",
    "Storage",
    "Database",
    "Networking",
    "CDN",
    "Analytics",
    "Containers",
    "Serverless",
    "Other",
)


class ServiceCost(BaseModel):
    """Cost of one canonical service within a provider snapshot."""

    canonical_name: str = Field(..., min_length=1)
    cost: Decimal = Field(..., ge=0)
    currency: str = Field(DEFAULT_CURRENCY, min_length=3, max_length=3)
    original_name: str | None = Field(None, description="Provider's raw label, kept for audit")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper().strip()


class CostSnapshot(BaseModel):
    """Normalized cost result for one provider over one period."""

    provider: ProviderId
    total_cost: Decimal = Field(..., ge=0, description="Authoritative total for the period")
    currency: str = Field(DEFAULT_CURRENCY, min_length=3, max_length=3)
    period_start: date
    period_end: date
    services: list[ServiceCost] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate and normalize currency code."""
        if not v or not v.strip():
            raise ValueError("Currency must be specified")
        return v.upper().strip()

    @model_validator(mode="after")
    def validate_snapshot(self):
        """Check the period ordering and the services/total invariant."""
        if self.period_start >= self.period_end:
            raise ValueError(
                f"Start date {self.period_start} must be before end date {self.period_end}"
            )

        if self.services:
            service_total = sum((s.cost for s in self.services), ZERO)
            if abs(service_total - self.total_cost) > SUM_TOLERANCE:
                raise ValueError(
                    f"Total cost {self.total_cost} doesn't match sum of services {service_total}"
                )

        return self

    @property
    def degraded(self) -> bool:
        return bool(self.metadata.get("degraded", False))


class ProviderTotals(BaseModel):
    """Per-provider line of a combined view."""

    total_cost: Decimal = Field(..., ge=0)
    currency: str
    service_count: int = Field(0, ge=0)


class ServiceContribution(BaseModel):
    """One provider's share of a combined service."""

    provider: ProviderId
    cost: Decimal = Field(..., ge=0)
    original_name: str | None = None


class CombinedService(BaseModel):
    """A canonical service summed across providers."""

    canonical_name: str
    total_cost: Decimal = Field(..., ge=0)
    currency: str = DEFAULT_CURRENCY
    contributors: list[ServiceContribution] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_partition(self):
        """Contributors must partition the total exactly."""
        contributed = sum((c.cost for c in self.contributors), ZERO)
        if contributed != self.total_cost:
            raise ValueError(
                f"Contributors of {self.canonical_name} sum to {contributed}, not {self.total_cost}"
            )
        return self


STATUS_ACTIVE = "active"
STATUS_ERROR = "error"


class CombinedView(BaseModel):
    """Merged multi-cloud cost model."""

    total_cost: Decimal = Field(ZERO, ge=0)
    currency: str = DEFAULT_CURRENCY
    per_provider: dict[ProviderId, ProviderTotals] = Field(default_factory=dict)
    provider_status: dict[ProviderId, str] = Field(
        default_factory=dict, description="active or error for every provider in scope"
    )
    combined_services: list[CombinedService] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def provider_total(self, provider: ProviderId) -> Decimal | None:
        """Total for one healthy provider, or None if it is not part of the view."""
        totals = self.per_provider.get(provider)
        return totals.total_cost if totals else None

    def service(self, canonical_name: str) -> CombinedService | None:
        for service in self.combined_services:
            if service.canonical_name == canonical_name:
                return service
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return self.model_dump(mode="json")


class ServiceNameNormalizer:
    """Maps provider service labels into the canonical service taxonomy."""

    SERVICE_MAPPINGS = {
        # Compute services
        "Amazon Elastic Compute Cloud - Compute": "Compute",
        "Amazon Elastic Compute Cloud": "Compute",
        "Amazon EC2-Instance": "Compute",
        "EC2 - Other": "Compute",
        "Virtual Machines": "Compute",
        "App Service": "Compute",
        "Compute Engine": "Compute",
        "Google Compute Engine": "Compute",
        # Storage services
        "Amazon Simple Storage Service": "Storage",
        "Amazon S3": "Storage",
        "Amazon Elastic Block Store": "Storage",
        "Storage Accounts": "Storage",
        "Cloud Storage": "Storage",
        "Google Cloud Storage": "Storage",
        # Database services
        "Amazon Relational Database Service": "Database",
        "Amazon RDS": "Database",
        "Amazon DynamoDB": "Database",
        "Azure Database": "Database",
        "SQL Database": "Database",
        "Azure Cosmos DB": "Database",
        "Cloud SQL": "Database",
        "Google Cloud SQL": "Database",
        "Cloud Spanner": "Database",
        # Networking services
        "Amazon CloudFront": "CDN",
        "Content Delivery Network": "CDN",
        "Azure Front Door": "CDN",
        "Cloud CDN": "CDN",
        "Amazon Virtual Private Cloud": "Networking",
        "AWS Data Transfer": "Networking",
        "Virtual Network": "Networking",
        "Bandwidth": "Networking",
        "VPC Network": "Networking",
        "Networking": "Networking",
        # Analytics/Big Data
        "Amazon Redshift": "Analytics",
        "Amazon Athena": "Analytics",
        "Azure Synapse Analytics": "Analytics",
        "BigQuery": "Analytics",
        "Google BigQuery": "Analytics",
        # Container services
        "Amazon Elastic Container Service": "Containers",
        "Amazon Elastic Kubernetes Service": "Containers",
        "Amazon ECS": "Containers",
        "Amazon EKS": "Containers",
        "Container Instances": "Containers",
        "Azure Kubernetes Service": "Containers",
        "Google Kubernetes Engine": "Containers",
        "Kubernetes Engine": "Containers",
        "Cloud Run": "Containers",
        # Serverless/Functions
        "AWS Lambda": "Serverless",
        "Azure Functions": "Serverless",
        "Cloud Functions": "Serverless",
        "Google Cloud Functions": "Serverless",
    }

    VENDOR_PREFIXES = ("amazon", "aws", "azure", "google", "cloud")

    # Taxonomy names are their own canonical form
    _EXACT = {**SERVICE_MAPPINGS, **{name: name for name in CANONICAL_SERVICES}}
    _LOWERED_EXACT = {key.lower(): value for key, value in _EXACT.items()}
    _LOWERED = [(key.lower(), value) for key, value in SERVICE_MAPPINGS.items()]

    @classmethod
    def _lookup(cls, service_name: str) -> str | None:
        """Exact match first, then a case-insensitive substring match either way."""
        if service_name in cls._EXACT:
            return cls._EXACT[service_name]

        lowered = service_name.lower()
        if lowered in cls._LOWERED_EXACT:
            return cls._LOWERED_EXACT[lowered]

        for key, canonical in cls._LOWERED:
            if key in lowered:
                return canonical
            # Very short labels would match almost anything
            if len(lowered) >= 3 and lowered in key:
                return canonical

        return None

    @classmethod
    def clean(cls, service_name: str) -> str:
        """Strip vendor prefixes, trim, and capitalize the first letter."""
        cleaned = service_name.strip()
        stripped = True
        while stripped:
            stripped = False
            lowered = cleaned.lower()
            for prefix in cls.VENDOR_PREFIXES:
                if lowered.startswith(prefix + " ") or lowered.startswith(prefix + "\t"):
                    cleaned = cleaned[len(prefix):].strip()
                    stripped = True
                    break

        if not cleaned:
            return ""
        return cleaned[0].upper() + cleaned[1:]

    @classmethod
    def canonicalize(cls, service_name: Any) -> str:
        """
        Map a provider service label to its canonical name.

        Args:
            service_name: Raw service label from the provider

        Returns:
            A taxonomy name when one matches, otherwise the cleaned label.
            Never empty. Applying it twice gives the same result.
        """
        if service_name is None:
            return UNKNOWN_SERVICE

        raw = str(service_name).strip()
        if not raw:
            return UNKNOWN_SERVICE

        mapped = cls._lookup(raw)
        if mapped:
            return mapped

        cleaned = cls.clean(raw)
        if not cleaned:
            return UNKNOWN_SERVICE

        return cls._lookup(cleaned) or cleaned


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


class CostNormalizer:
    """Main class for normalizing raw provider cost data."""

    def __init__(self, service_normalizer: type[ServiceNameNormalizer] = ServiceNameNormalizer):
        self.service_normalizer = service_normalizer

    def _to_amount(self, value: Any, field: str, issues: list[str]) -> Decimal:
        """Parse a money amount; missing is 0, garbage or negative is 0 with an issue."""
        if value is None:
            return ZERO
        if isinstance(value, bool):
            issues.append(f"{field}: boolean amount")
            return ZERO
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            issues.append(f"{field}: unparseable amount {value!r}")
            return ZERO
        if not amount.is_finite():
            issues.append(f"{field}: non-finite amount {value!r}")
            return ZERO
        if amount < 0:
            issues.append(f"{field}: negative amount {value!r}")
            return ZERO
        return amount

    def _to_currency(self, value: Any, default: str) -> str:
        if isinstance(value, str):
            code = value.strip()
            if len(code) == 3 and code.isascii() and code.isalpha():
                return code.upper()
        return default

    def _normalize_period(
        self, raw_period: Any, fallback: tuple[date, date] | None, issues: list[str]
    ) -> tuple[date, date]:
        start = end = None
        if isinstance(raw_period, dict):
            start = _parse_date(_first(raw_period, "start", "start_date", "startDate"))
            end = _parse_date(_first(raw_period, "end", "end_date", "endDate"))

        if start and end and start < end:
            return start, end
        if start and end and start == end:
            # Single-day periods reported with an inclusive end
            return start, end + timedelta(days=1)

        if fallback and fallback[0] < fallback[1]:
            return fallback

        issues.append("period: missing or invalid")
        today = utc_today()
        return today, today + timedelta(days=1)

    def _normalize_services(
        self, raw_services: Any, currency: str, issues: list[str]
    ) -> list[ServiceCost]:
        if raw_services is None:
            return []
        if not isinstance(raw_services, list):
            issues.append("services: not a list")
            return []

        services = []
        for index, entry in enumerate(raw_services):
            if not isinstance(entry, dict):
                issues.append(f"services[{index}]: not an object")
                continue
            original_name = _first(entry, "name", "serviceName", "service_name", "service")
            original_name = str(original_name).strip() if original_name is not None else None
            services.append(
                ServiceCost(
                    canonical_name=self.service_normalizer.canonicalize(original_name),
                    cost=self._to_amount(
                        _first(entry, "cost", "amount"), f"services[{index}].cost", issues
                    ),
                    currency=self._to_currency(_first(entry, "currency"), currency),
                    original_name=original_name or None,
                )
            )
        return services

    def normalize(
        self,
        raw: RawCostData | Any,
        provider: ProviderId,
        period: tuple[date, date] | None = None,
    ) -> CostSnapshot:
        """
        Normalize one provider's raw payload. Never raises.

        Args:
            raw: Raw payload returned by the provider's reader
            provider: Provider the payload came from
            period: Requested ``(start, end)``, used when the payload has none

        Returns:
            A structurally valid snapshot; unrecoverable input is flagged with
            ``metadata["degraded"] = True``.
        """
        try:
            return self._normalize(raw, provider, period)
        except Exception as e:
            logger.error(f"Error normalizing cost data for {provider.value}: {e}")
            return self.empty_snapshot(provider, period, error=str(e))

    def _normalize(
        self, raw: Any, provider: ProviderId, period: tuple[date, date] | None
    ) -> CostSnapshot:
        if not isinstance(raw, dict):
            logger.warning(f"Malformed {provider.value} payload: {type(raw).__name__}")
            return self.empty_snapshot(provider, period, error="payload is not an object")

        issues: list[str] = []
        currency = self._to_currency(_first(raw, "currency"), DEFAULT_CURRENCY)
        period_start, period_end = self._normalize_period(_first(raw, "period"), period, issues)
        services = self._normalize_services(_first(raw, "services"), currency, issues)

        raw_total = _first(raw, "totalCost", "total_cost", "total")
        service_total = sum((s.cost for s in services), ZERO)
        if raw_total is None and services:
            total_cost = service_total
        else:
            total_cost = self._to_amount(raw_total, "totalCost", issues)

        metadata: dict[str, Any] = {
            "normalized_at": datetime.now(timezone.utc).isoformat(),
            "degraded": bool(issues),
        }
        if services and abs(service_total - total_cost) > SUM_TOLERANCE:
            logger.warning(
                f"{provider.label} service breakdown ({service_total}) doesn't match "
                f"total_cost ({total_cost}); keeping the total only"
            )
            services = []
            metadata["services_dropped"] = True
        if issues:
            logger.warning(f"Degraded {provider.value} snapshot: {'; '.join(issues)}")
            metadata["issues"] = issues

        return CostSnapshot(
            provider=provider,
            total_cost=total_cost,
            currency=currency,
            period_start=period_start,
            period_end=period_end,
            services=services,
            metadata=metadata,
        )

    def empty_snapshot(
        self,
        provider: ProviderId,
        period: tuple[date, date] | None = None,
        error: str | None = None,
    ) -> CostSnapshot:
        """Zero-valued degraded snapshot."""
        if not period or period[0] >= period[1]:
            today = utc_today()
            period = (today, today + timedelta(days=1))
        metadata: dict[str, Any] = {
            "normalized_at": datetime.now(timezone.utc).isoformat(),
            "degraded": True,
            "is_empty": True,
        }
        if error:
            metadata["error"] = error
        return CostSnapshot(
            provider=provider,
            total_cost=ZERO,
            currency=DEFAULT_CURRENCY,
            period_start=period[0],
            period_end=period[1],
            metadata=metadata,
        )

    def normalize_trends(self, raw: RawCostData | Any, provider: ProviderId) -> list[TrendPoint]:
        """
        Extract the daily trend series from a raw payload. Never raises.

        Entries with an unreadable date are skipped; duplicate dates are summed.
        """
        if not isinstance(raw, dict):
            return []
        entries = _first(raw, "trends", "daily", "daily_costs")
        if not isinstance(entries, list):
            return []

        issues: list[str] = []
        totals: defaultdict[date, Decimal] = defaultdict(Decimal)
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                issues.append(f"trends[{index}]: not an object")
                continue
            day = _parse_date(_first(entry, "date", "day"))
            if day is None:
                issues.append(f"trends[{index}]: invalid date")
                continue
            totals[day] += self._to_amount(
                _first(entry, "cost", "amount"), f"trends[{index}].cost", issues
            )

        if issues:
            logger.warning(f"Skipped malformed {provider.value} trend entries: {'; '.join(issues)}")

        return [TrendPoint(date=day, cost=cost) for day, cost in sorted(totals.items())]


def combine_multi_cloud_data(snapshots: list[CostSnapshot]) -> CombinedView:
    """
    Combine normalized snapshots from several providers.

    Args:
        snapshots: One snapshot per provider

    Returns:
        Combined view whose total is the sum of the snapshot totals and whose
        services are sorted by descending cost, then by name.
    """
    if not snapshots:
        return CombinedView()

    currencies = {snapshot.currency for snapshot in snapshots}
    currency = snapshots[0].currency
    if len(currencies) > 1:
        logger.warning(f"Mixed currencies in combined view: {sorted(currencies)}; reporting {currency}")

    total_cost = ZERO
    per_provider: dict[ProviderId, ProviderTotals] = {}
    # canonical name -> (provider, original name) -> cost
    service_map: dict[str, dict[tuple[ProviderId, str | None], Decimal]] = {}

    for snapshot in snapshots:
        total_cost += snapshot.total_cost

        existing = per_provider.get(snapshot.provider)
        if existing:
            logger.warning(f"Duplicate {snapshot.provider.value} snapshot; summing")
            per_provider[snapshot.provider] = ProviderTotals(
                total_cost=existing.total_cost + snapshot.total_cost,
                currency=existing.currency,
                service_count=existing.service_count + len(snapshot.services),
            )
        else:
            per_provider[snapshot.provider] = ProviderTotals(
                total_cost=snapshot.total_cost,
                currency=snapshot.currency,
                service_count=len(snapshot.services),
            )

        for service in snapshot.services:
            contributions = service_map.setdefault(service.canonical_name, {})
            key = (snapshot.provider, service.original_name)
            contributions[key] = contributions.get(key, ZERO) + service.cost

    combined_services = []
    for canonical_name, contributions in service_map.items():
        contributors = [
            ServiceContribution(provider=provider, cost=cost, original_name=original_name)
            for (provider, original_name), cost in contributions.items()
        ]
        combined_services.append(
            CombinedService(
                canonical_name=canonical_name,
                total_cost=sum((c.cost for c in contributors), ZERO),
                currency=currency,
                contributors=contributors,
            )
        )

    combined_services.sort(key=lambda s: (-s.total_cost, s.canonical_name))

    return CombinedView(
        total_cost=total_cost,
        currency=currency,
        per_provider=per_provider,
        provider_status={provider: STATUS_ACTIVE for provider in per_provider},
        combined_services=combined_services,
        metadata={
            "combined_at": datetime.now(timezone.utc).isoformat(),
            "providers_included": [s.provider.value for s in snapshots],
            "degraded_providers": [s.provider.value for s in snapshots if s.degraded],
        },
    )
