"""
Pytest configuration and shared fixtures for spend-monitor tests.

This module provides common fixtures and configurations used across
all test modules in the spend monitoring system.
"""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock

import pytest

from spend_monitor.monitoring.models import AlertRule, AlertType
from spend_monitor.monitoring.notifications import NotificationDispatcher
from spend_monitor.monitoring.store import InMemoryAlertStore
from spend_monitor.providers.base import (
    ProviderCostReader,
    ProviderId,
    ProviderScope,
    ProviderUnavailableError,
    TimeGranularity,
)


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "aws: mark test as AWS-specific")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Fixed evaluation time: 2024-03-15 12:00 UTC
FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def raw_payload(
    total: Any,
    services: Optional[list] = None,
    currency: str = "USD",
    start: str = "2024-03-01",
    end: str = "2024-03-16",
    trends: Optional[list] = None,
) -> dict[str, Any]:
    """Build a raw provider payload in the documented shape."""
    payload = {
        "totalCost": total,
        "currency": currency,
        "period": {"start": start, "end": end},
        "services": [{"name": name, "cost": cost} for name, cost in (services or [])],
    }
    if trends is not None:
        payload["trends"] = [{"date": day, "cost": cost} for day, cost in trends]
    return payload


class StubCostReader(ProviderCostReader):
    """Reader returning canned payloads, optionally per requested window."""

    def __init__(
        self,
        provider: ProviderId,
        payload: Any = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        payload_for: Optional[Callable[[date, date], Any]] = None,
    ):
        self._provider_id = provider
        super().__init__({})
        self.payload = payload
        self.error = error
        self.delay = delay
        self.payload_for = payload_for
        self.calls: list[tuple[date, date, TimeGranularity]] = []

    def _get_provider_id(self) -> ProviderId:
        return self._provider_id

    async def get_range(self, start_date, end_date, granularity=TimeGranularity.DAILY):
        self.calls.append((start_date, end_date, granularity))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if self.payload_for:
            return self.payload_for(start_date, end_date)
        return self.payload


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that keeps every notification it is asked to send."""

    def __init__(self, delivered: bool = True, error: Optional[Exception] = None):
        self.sent: list[dict[str, Any]] = []
        self.delivered = delivered
        self.error = error

    async def send(self, user_id, title, body, data):
        if self.error:
            raise self.error
        self.sent.append({"user_id": user_id, "title": title, "body": body, "data": data})
        return self.delivered


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def clock():
    """Clock pinned to FIXED_NOW; advance it by assigning ``clock.now``."""

    class _Clock:
        now = FIXED_NOW

        def __call__(self):
            return self.now

    return _Clock()


@pytest.fixture
def make_payload():
    return raw_payload


@pytest.fixture
def make_reader():
    return StubCostReader


@pytest.fixture
def windowed_reader():
    """Build a reader that answers each ``(start, end)`` window with its own total.

    Windows missing from the mapping fail like an unavailable provider.
    """

    def _make(provider: ProviderId, totals: dict) -> StubCostReader:
        def payload_for(start_date, end_date):
            total = totals.get((start_date, end_date))
            if total is None:
                raise ProviderUnavailableError(
                    f"no canned data for {start_date}..{end_date}", provider
                )
            return raw_payload(total, start=start_date.isoformat(), end=end_date.isoformat())

        return StubCostReader(provider, payload_for=payload_for)

    return _make


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def make_dispatcher():
    return RecordingDispatcher


@pytest.fixture
def make_rule():
    """Build AlertRule instances with sensible defaults."""

    def _make_rule(rule_id: str = "rule-1", **overrides) -> AlertRule:
        values = {
            "id": rule_id,
            "owner_id": "user-1",
            "name": f"Rule {rule_id}",
            "alert_type": AlertType.BUDGET_THRESHOLD,
            "provider_scope": ProviderScope.ALL,
            "threshold_value": Decimal("100"),
        }
        values.update(overrides)
        return AlertRule(**values)

    return _make_rule


@pytest.fixture
def memory_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


# Database fixtures
@pytest.fixture
def mock_db_pool():
    """Mock asyncpg connection pool for testing."""
    mock_pool = AsyncMock()
    mock_conn = AsyncMock()

    # Set up connection methods
    mock_conn.fetch.return_value = []
    mock_conn.fetchrow.return_value = None
    mock_conn.execute.return_value = "UPDATE 1"
    mock_conn.executemany.return_value = None

    class MockTransaction:
        def __init__(self, connection):
            self.conn = connection
            self.rolled_back = False

        async def __aenter__(self):
            return self.conn

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            self.rolled_back = exc_type is not None
            return None

    # Make transaction() return the context manager directly (not a coroutine)
    mock_conn.transaction = lambda: MockTransaction(mock_conn)

    class MockConnectionContextManager:
        def __init__(self, connection):
            self.conn = connection

        async def __aenter__(self):
            return self.conn

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            return None

    mock_pool.acquire = lambda: MockConnectionContextManager(mock_conn)
    mock_pool.conn = mock_conn

    return mock_pool
