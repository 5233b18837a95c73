"""
Alert rule and alert history models.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..providers.base import ProviderScope

DEFAULT_SPIKE_PERCENTAGE = 20


class AlertType(Enum):
    """Types of cost alerts."""

    BUDGET_THRESHOLD = "budget_threshold"
    SPIKE_DETECTION = "spike_detection"
    DAILY_SUMMARY = "daily_summary"
    WEEKLY_SUMMARY = "weekly_summary"

    @property
    def is_summary(self) -> bool:
        return self in (AlertType.DAILY_SUMMARY, AlertType.WEEKLY_SUMMARY)

    @property
    def period(self) -> Optional[timedelta]:
        """Reporting period of summary alerts."""
        if self is AlertType.DAILY_SUMMARY:
            return timedelta(days=1)
        if self is AlertType.WEEKLY_SUMMARY:
            return timedelta(days=7)
        return None


class RuleConfigurationError(ValueError):
    """A rule is missing a parameter its alert type needs."""

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"Rule {rule_id}: {message}")
        self.rule_id = rule_id


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps from the store are UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AlertRule(BaseModel):
    """A user-owned alert rule."""

    id: str
    owner_id: str
    name: str = ""
    alert_type: AlertType
    provider_scope: ProviderScope = ProviderScope.ALL
    threshold_value: Optional[Decimal] = Field(None, ge=0)
    threshold_percentage: Optional[int] = Field(None, ge=1)
    enabled: bool = True
    last_triggered_at: Optional[datetime] = None
    notification_channels: List[str] = Field(default_factory=lambda: ["push"])

    @field_validator("id", "owner_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v):
        return str(v) if v is not None else v

    @field_validator("last_triggered_at")
    @classmethod
    def validate_last_triggered(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def spike_percentage(self) -> int:
        return self.threshold_percentage or DEFAULT_SPIKE_PERCENTAGE

    def require_threshold(self) -> Decimal:
        """Budget threshold of this rule; a missing value is a rule configuration error."""
        if self.threshold_value is None:
            raise RuleConfigurationError(self.id, "budget_threshold rule has no threshold_value")
        return self.threshold_value


class AlertHistoryEntry(BaseModel):
    """Immutable record of one trigger."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    rule_id: str
    owner_id: str
    triggered_at: datetime
    current_value: Decimal
    comparison_value: Optional[Decimal] = None
    provider: str
    message: str
    notification_channels: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("triggered_at")
    @classmethod
    def validate_triggered_at(cls, v: datetime) -> datetime:
        return as_utc(v)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
