"""
Alert rule and alert history persistence.

``commit_trigger`` is the only write the evaluator uses: it appends the history
entries of one trigger and moves ``last_triggered_at`` forward in one step, and
only if nobody else moved it since the rule was read.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import asyncpg

from ..providers.base import ProviderScope
from .models import AlertHistoryEntry, AlertRule, AlertType

logger = logging.getLogger(__name__)

DB_ERRORS = (OSError, asyncpg.PostgresError, asyncpg.InterfaceError)


class PersistenceError(Exception):
    """The alert store could not be read or written."""

    pass


class AlertStore(ABC):
    """Storage for alert rules and their trigger history."""

    @abstractmethod
    async def list_enabled_rules(self) -> List[AlertRule]:
        pass

    @abstractmethod
    async def update_last_triggered(
        self, rule_id: str, timestamp: datetime, expected_previous: Optional[datetime]
    ) -> bool:
        """Set ``last_triggered_at`` if it still equals ``expected_previous``."""
        pass

    @abstractmethod
    async def append_history(self, entry: AlertHistoryEntry) -> None:
        pass

    @abstractmethod
    async def commit_trigger(
        self,
        rule_id: str,
        expected_previous: Optional[datetime],
        triggered_at: datetime,
        entries: List[AlertHistoryEntry],
    ) -> bool:
        """
        Atomically record a trigger.

        Returns:
            False if ``last_triggered_at`` no longer equals ``expected_previous``;
            nothing is written in that case

        Raises:
            PersistenceError: If the store failed; nothing is durable
        """
        pass

    @abstractmethod
    async def list_history(self, rule_id: Optional[str] = None) -> List[AlertHistoryEntry]:
        pass

    @abstractmethod
    async def cleanup_history(self, older_than: datetime) -> int:
        """Delete history entries triggered before ``older_than``."""
        pass

    async def close(self) -> None:
        return None


class InMemoryAlertStore(AlertStore):
    """Process-local store, used when no database is configured."""

    def __init__(self, rules: Optional[List[AlertRule]] = None):
        self._rules: Dict[str, AlertRule] = {}
        self._history: List[AlertHistoryEntry] = []
        self._lock = asyncio.Lock()
        for rule in rules or []:
            self.add_rule(rule)

    def add_rule(self, rule: AlertRule) -> None:
        self._rules[rule.id] = rule

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self._rules.get(rule_id)

    async def list_enabled_rules(self) -> List[AlertRule]:
        async with self._lock:
            return [rule.model_copy() for rule in self._rules.values() if rule.enabled]

    def _swap_last_triggered(
        self, rule_id: str, timestamp: datetime, expected_previous: Optional[datetime]
    ) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise PersistenceError(f"Unknown rule {rule_id}")
        if rule.last_triggered_at != expected_previous:
            return False
        self._rules[rule_id] = rule.model_copy(update={"last_triggered_at": timestamp})
        return True

    async def update_last_triggered(
        self, rule_id: str, timestamp: datetime, expected_previous: Optional[datetime]
    ) -> bool:
        async with self._lock:
            return self._swap_last_triggered(rule_id, timestamp, expected_previous)

    async def append_history(self, entry: AlertHistoryEntry) -> None:
        async with self._lock:
            self._history.append(entry)

    async def commit_trigger(
        self,
        rule_id: str,
        expected_previous: Optional[datetime],
        triggered_at: datetime,
        entries: List[AlertHistoryEntry],
    ) -> bool:
        async with self._lock:
            if not self._swap_last_triggered(rule_id, triggered_at, expected_previous):
                return False
            self._history.extend(entries)
            return True

    async def list_history(self, rule_id: Optional[str] = None) -> List[AlertHistoryEntry]:
        async with self._lock:
            entries = [e for e in self._history if rule_id is None or e.rule_id == rule_id]
        return sorted(entries, key=lambda e: e.triggered_at, reverse=True)

    async def cleanup_history(self, older_than: datetime) -> int:
        async with self._lock:
            kept = [e for e in self._history if e.triggered_at >= older_than]
            removed = len(self._history) - len(kept)
            self._history = kept
        if removed:
            logger.info(f"Cleaned up {removed} alert history entries older than {older_than}")
        return removed


SCHEMA = """
    CREATE TABLE IF NOT EXISTS alert_rules (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        alert_type TEXT NOT NULL,
        provider_scope TEXT NOT NULL DEFAULT 'all',
        threshold_value NUMERIC(14, 2),
        threshold_percentage INTEGER,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        last_triggered_at TIMESTAMPTZ,
        notification_channels TEXT[] NOT NULL DEFAULT ARRAY['push'],
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS alert_history (
        id TEXT PRIMARY KEY,
        rule_id TEXT NOT NULL REFERENCES alert_rules(id) ON DELETE CASCADE,
        owner_id TEXT NOT NULL,
        triggered_at TIMESTAMPTZ NOT NULL,
        current_value NUMERIC(14, 2) NOT NULL,
        comparison_value NUMERIC(14, 2),
        provider TEXT NOT NULL,
        message TEXT NOT NULL,
        notification_channels TEXT[] NOT NULL DEFAULT '{}',
        metadata JSONB NOT NULL DEFAULT '{}'
    );

    CREATE INDEX IF NOT EXISTS idx_alert_history_rule_time
        ON alert_history (rule_id, triggered_at DESC);
"""

INSERT_HISTORY = """
    INSERT INTO alert_history (
        id, rule_id, owner_id, triggered_at, current_value, comparison_value,
        provider, message, notification_channels, metadata
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
"""

UPDATE_LAST_TRIGGERED = """
    UPDATE alert_rules
    SET last_triggered_at = $1
    WHERE id = $2 AND last_triggered_at IS NOT DISTINCT FROM $3
"""


def _history_record(entry: AlertHistoryEntry) -> tuple:
    return (
        entry.id,
        entry.rule_id,
        entry.owner_id,
        entry.triggered_at,
        entry.current_value,
        entry.comparison_value,
        entry.provider,
        entry.message,
        list(entry.notification_channels),
        json.dumps(entry.metadata, default=str),
    )


def _rule_from_row(row) -> AlertRule:
    return AlertRule(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        alert_type=AlertType(row["alert_type"]),
        provider_scope=ProviderScope(row["provider_scope"]),
        threshold_value=row["threshold_value"],
        threshold_percentage=row["threshold_percentage"],
        enabled=row["enabled"],
        last_triggered_at=row["last_triggered_at"],
        notification_channels=list(row["notification_channels"] or []),
    )


def _history_from_row(row) -> AlertHistoryEntry:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return AlertHistoryEntry(
        id=row["id"],
        rule_id=row["rule_id"],
        owner_id=row["owner_id"],
        triggered_at=row["triggered_at"],
        current_value=row["current_value"],
        comparison_value=row["comparison_value"],
        provider=row["provider"],
        message=row["message"],
        notification_channels=list(row["notification_channels"] or []),
        metadata=metadata or {},
    )


class PostgresAlertStore(AlertStore):
    """Alert store backed by PostgreSQL through an asyncpg pool."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    @classmethod
    async def connect(cls, database_url: str, min_size: int = 1, max_size: int = 5):
        try:
            db_pool = await asyncpg.create_pool(database_url, min_size=min_size, max_size=max_size)
        except DB_ERRORS as e:
            raise PersistenceError(f"Could not connect to alert database: {e}") from e
        return cls(db_pool)

    async def ensure_schema(self) -> None:
        try:
            async with self.db_pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to create alert schema: {e}") from e

    async def list_enabled_rules(self) -> List[AlertRule]:
        query = """
            SELECT id, owner_id, name, alert_type, provider_scope, threshold_value,
                   threshold_percentage, enabled, last_triggered_at, notification_channels
            FROM alert_rules
            WHERE enabled = TRUE
            ORDER BY id
        """
        try:
            async with self.db_pool.acquire() as conn:
                rows = await conn.fetch(query)
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to list alert rules: {e}") from e

        rules = []
        for row in rows:
            try:
                rules.append(_rule_from_row(row))
            except ValueError as e:
                # Unreadable rows are left out of the pass rather than failing every rule
                logger.error(f"Skipping unreadable alert rule {row['id']}: {e}")
        return rules

    async def update_last_triggered(
        self, rule_id: str, timestamp: datetime, expected_previous: Optional[datetime]
    ) -> bool:
        try:
            async with self.db_pool.acquire() as conn:
                result = await conn.execute(
                    UPDATE_LAST_TRIGGERED, timestamp, rule_id, expected_previous
                )
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to update rule {rule_id}: {e}") from e
        return result == "UPDATE 1"

    async def append_history(self, entry: AlertHistoryEntry) -> None:
        try:
            async with self.db_pool.acquire() as conn:
                await conn.execute(INSERT_HISTORY, *_history_record(entry))
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to append history for rule {entry.rule_id}: {e}") from e

    async def commit_trigger(
        self,
        rule_id: str,
        expected_previous: Optional[datetime],
        triggered_at: datetime,
        entries: List[AlertHistoryEntry],
    ) -> bool:
        try:
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    result = await conn.execute(
                        UPDATE_LAST_TRIGGERED, triggered_at, rule_id, expected_previous
                    )
                    if result != "UPDATE 1":
                        return False
                    if entries:
                        await conn.executemany(
                            INSERT_HISTORY, [_history_record(entry) for entry in entries]
                        )
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to commit trigger for rule {rule_id}: {e}") from e
        return True

    async def list_history(self, rule_id: Optional[str] = None) -> List[AlertHistoryEntry]:
        query = """
            SELECT id, rule_id, owner_id, triggered_at, current_value, comparison_value,
                   provider, message, notification_channels, metadata
            FROM alert_history
            WHERE $1::text IS NULL OR rule_id = $1
            ORDER BY triggered_at DESC
        """
        try:
            async with self.db_pool.acquire() as conn:
                rows = await conn.fetch(query, rule_id)
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to list alert history: {e}") from e
        return [_history_from_row(row) for row in rows]

    async def cleanup_history(self, older_than: datetime) -> int:
        try:
            async with self.db_pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM alert_history WHERE triggered_at < $1", older_than
                )
        except DB_ERRORS as e:
            raise PersistenceError(f"Failed to clean up alert history: {e}") from e

        # Parse result to get affected rows
        removed = int(result.split()[-1]) if result.startswith("DELETE") else 0
        if removed:
            logger.info(f"Cleaned up {removed} alert history entries older than {older_than}")
        return removed

    async def close(self) -> None:
        await self.db_pool.close()
