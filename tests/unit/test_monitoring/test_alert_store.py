"""
Tests for alert rule and history persistence.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import asyncpg
import pytest

from spend_monitor.monitoring.models import AlertHistoryEntry, AlertType
from spend_monitor.monitoring.store import (
    INSERT_HISTORY,
    UPDATE_LAST_TRIGGERED,
    InMemoryAlertStore,
    PersistenceError,
    PostgresAlertStore,
)
from spend_monitor.providers.base import ProviderScope

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def history_entry(rule_id="rule-1", triggered_at=NOW, **overrides):
    values = {
        "rule_id": rule_id,
        "owner_id": "user-1",
        "triggered_at": triggered_at,
        "current_value": Decimal("120"),
        "comparison_value": Decimal("100"),
        "provider": "aws",
        "message": "Budget threshold exceeded for AWS.",
    }
    values.update(overrides)
    return AlertHistoryEntry(**values)


class TestInMemoryAlertStore:
    """Test cases for the in-memory store."""

    async def test_lists_only_enabled_rules(self, make_rule):
        store = InMemoryAlertStore([make_rule("a"), make_rule("b", enabled=False)])

        rules = await store.list_enabled_rules()

        assert [rule.id for rule in rules] == ["a"]

    async def test_commit_trigger_records_atomically(self, make_rule):
        """Test that a commit moves last_triggered_at and appends history together."""
        store = InMemoryAlertStore([make_rule()])

        committed = await store.commit_trigger("rule-1", None, NOW, [history_entry()])

        assert committed is True
        assert store.get_rule("rule-1").last_triggered_at == NOW
        assert len(await store.list_history("rule-1")) == 1

    async def test_commit_trigger_detects_stale_read(self, make_rule):
        """Test that a commit against an outdated last_triggered_at writes nothing."""
        store = InMemoryAlertStore([make_rule(last_triggered_at=NOW - timedelta(hours=1))])

        committed = await store.commit_trigger("rule-1", None, NOW, [history_entry()])

        assert committed is False
        assert store.get_rule("rule-1").last_triggered_at == NOW - timedelta(hours=1)
        assert await store.list_history() == []

    async def test_only_one_of_two_racing_commits_wins(self, make_rule):
        store = InMemoryAlertStore([make_rule()])

        first = await store.commit_trigger("rule-1", None, NOW, [history_entry()])
        second = await store.commit_trigger("rule-1", None, NOW + timedelta(seconds=1), [history_entry()])

        assert (first, second) == (True, False)
        assert len(await store.list_history()) == 1

    async def test_unknown_rule_is_a_persistence_error(self):
        store = InMemoryAlertStore()
        with pytest.raises(PersistenceError):
            await store.commit_trigger("missing", None, NOW, [])

    async def test_update_last_triggered(self, make_rule):
        store = InMemoryAlertStore([make_rule()])

        assert await store.update_last_triggered("rule-1", NOW, None) is True
        assert await store.update_last_triggered("rule-1", NOW, None) is False

    async def test_history_is_newest_first_and_filtered(self, make_rule):
        store = InMemoryAlertStore([make_rule()])
        await store.append_history(history_entry(triggered_at=NOW - timedelta(days=2)))
        await store.append_history(history_entry(triggered_at=NOW))
        await store.append_history(history_entry(rule_id="other"))

        history = await store.list_history("rule-1")

        assert [entry.triggered_at for entry in history] == [NOW, NOW - timedelta(days=2)]
        assert len(await store.list_history()) == 3

    async def test_cleanup_history(self, make_rule):
        """Test that entries older than the cutoff are removed."""
        store = InMemoryAlertStore([make_rule()])
        await store.append_history(history_entry(triggered_at=NOW - timedelta(days=100)))
        await store.append_history(history_entry(triggered_at=NOW))

        removed = await store.cleanup_history(NOW - timedelta(days=90))

        assert removed == 1
        assert [entry.triggered_at for entry in await store.list_history()] == [NOW]

    async def test_listed_rules_are_copies(self, make_rule):
        """Test that callers cannot mutate stored rules through the listing."""
        store = InMemoryAlertStore([make_rule()])

        (rule,) = await store.list_enabled_rules()
        rule.enabled = False

        assert store.get_rule("rule-1").enabled is True


class TestPostgresAlertStore:
    """Test cases for the asyncpg-backed store."""

    @pytest.fixture
    def store(self, mock_db_pool):
        return PostgresAlertStore(mock_db_pool)

    async def test_commit_trigger_updates_then_inserts(self, store, mock_db_pool):
        """Test that the conditional update and inserts run in one transaction."""
        entries = [history_entry(), history_entry(provider="gcp")]

        committed = await store.commit_trigger("rule-1", None, NOW, entries)

        assert committed is True
        mock_db_pool.conn.execute.assert_awaited_once_with(UPDATE_LAST_TRIGGERED, NOW, "rule-1", None)
        query, records = mock_db_pool.conn.executemany.await_args.args
        assert query == INSERT_HISTORY
        assert [record[6] for record in records] == ["aws", "gcp"]
        assert json.loads(records[0][9]) == {}

    async def test_commit_trigger_lost_race(self, store, mock_db_pool):
        """Test that no history is written when the rule was updated elsewhere."""
        mock_db_pool.conn.execute.return_value = "UPDATE 0"

        committed = await store.commit_trigger("rule-1", NOW - timedelta(hours=7), NOW, [history_entry()])

        assert committed is False
        mock_db_pool.conn.executemany.assert_not_awaited()

    async def test_commit_trigger_database_error(self, store, mock_db_pool):
        mock_db_pool.conn.executemany.side_effect = asyncpg.PostgresError("insert failed")

        with pytest.raises(PersistenceError):
            await store.commit_trigger("rule-1", None, NOW, [history_entry()])

    async def test_list_enabled_rules_skips_unreadable_rows(self, store, mock_db_pool):
        """Test that a row with an unknown alert type is left out."""
        good = {
            "id": "rule-1",
            "owner_id": "user-1",
            "name": "Monthly budget",
            "alert_type": "budget_threshold",
            "provider_scope": "aws",
            "threshold_value": Decimal("100.00"),
            "threshold_percentage": None,
            "enabled": True,
            "last_triggered_at": datetime(2024, 3, 14, 8, 0),
            "notification_channels": ["push"],
        }
        bad = dict(good, id="rule-2", alert_type="monthly_forecast")
        mock_db_pool.conn.fetch.return_value = [good, bad]

        rules = await store.list_enabled_rules()

        assert [rule.id for rule in rules] == ["rule-1"]
        rule = rules[0]
        assert rule.alert_type == AlertType.BUDGET_THRESHOLD
        assert rule.provider_scope == ProviderScope.AWS
        assert rule.last_triggered_at.tzinfo == timezone.utc

    async def test_list_enabled_rules_connection_error(self, store, mock_db_pool):
        mock_db_pool.conn.fetch.side_effect = OSError("connection refused")

        with pytest.raises(PersistenceError):
            await store.list_enabled_rules()

    async def test_list_history_decodes_metadata(self, store, mock_db_pool):
        mock_db_pool.conn.fetch.return_value = [
            {
                "id": "h-1",
                "rule_id": "rule-1",
                "owner_id": "user-1",
                "triggered_at": NOW,
                "current_value": Decimal("130.00"),
                "comparison_value": Decimal("100.00"),
                "provider": "aws",
                "message": "Cost spike detected for AWS.",
                "notification_channels": ["push"],
                "metadata": '{"percentage_increase": 30.0}',
            }
        ]

        history = await store.list_history("rule-1")

        assert history[0].metadata == {"percentage_increase": 30.0}
        assert mock_db_pool.conn.fetch.await_args.args[1] == "rule-1"

    async def test_cleanup_history_parses_row_count(self, store, mock_db_pool):
        mock_db_pool.conn.execute.return_value = "DELETE 7"

        assert await store.cleanup_history(NOW) == 7

    async def test_update_last_triggered_result(self, store, mock_db_pool):
        mock_db_pool.conn.execute.return_value = "UPDATE 0"

        assert await store.update_last_triggered("rule-1", NOW, None) is False
