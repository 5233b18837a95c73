"""
Notification channels and alert message builders.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..providers.base import ProviderId

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """A notification channel rejected or failed to deliver a message."""

    pass


class NotificationDispatcher(ABC):
    """Delivers alert notifications to a rule owner."""

    @abstractmethod
    async def send(self, user_id: str, title: str, body: str, data: Dict[str, Any]) -> bool:
        """
        Deliver one notification.

        Returns:
            True if delivered, False if the channel accepted nothing to deliver
            (e.g. no registered device)

        Raises:
            DispatchError: If the channel failed
        """
        pass

    async def close(self) -> None:
        return None


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the log. Default channel for the CLI."""

    async def send(self, user_id: str, title: str, body: str, data: Dict[str, Any]) -> bool:
        logger.info(f"[notify {user_id}] {title}: {body}")
        return True


class WebhookNotificationDispatcher(NotificationDispatcher):
    """Posts notifications as JSON to a webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def send(self, user_id: str, title: str, body: str, data: Dict[str, Any]) -> bool:
        payload = {"user_id": user_id, "title": title, "body": body, "data": data}
        try:
            resp = await self._client.post(self.url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DispatchError(f"Webhook delivery failed: {e}") from e

        # 204 means the receiver had nobody to deliver to
        return resp.status_code != 204

    async def close(self) -> None:
        await self._client.aclose()


def format_money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def format_change(change_percent: float) -> str:
    return f"+{change_percent:.1f}%" if change_percent > 0 else f"{change_percent:.1f}%"


def budget_threshold_message(provider: ProviderId, current: Decimal, threshold: Decimal) -> str:
    return (
        f"Budget threshold exceeded for {provider.label}. "
        f"Current spend: {format_money(current)}, Threshold: {format_money(threshold)}"
    )


def spike_message(
    provider: ProviderId, current: Decimal, baseline: Decimal, change_percent: float
) -> str:
    return (
        f"Cost spike detected for {provider.label}. "
        f"Current: {format_money(current)}, Previous: {format_money(baseline)} "
        f"(+{change_percent:.1f}%)"
    )


def daily_summary_message(total: Decimal, provider_count: int) -> str:
    noun = "provider" if provider_count == 1 else "providers"
    return f"Yesterday's cloud spending: {format_money(total)} across {provider_count} {noun}"


def weekly_summary_message(total: Decimal, change_percent: float) -> str:
    return f"This week: {format_money(total)} ({format_change(change_percent)} vs last week)"


NOTIFICATION_TITLES = {
    "budget_threshold": "Budget Threshold Exceeded",
    "spike_detection": "Cost Spike Detected",
    "daily_summary": "Daily Cost Summary",
    "weekly_summary": "Weekly Cost Summary",
}


def build_dispatcher(settings: Dict[str, Any]) -> NotificationDispatcher:
    """Create the dispatcher named by the ``notifications`` config section."""
    channel = settings.get("channel", "log")
    if channel == "webhook":
        headers = {}
        if settings.get("webhook_token"):
            headers["Authorization"] = f"Bearer {settings['webhook_token']}"
        return WebhookNotificationDispatcher(
            settings["webhook_url"],
            timeout=float(settings.get("timeout_seconds", 10)),
            headers=headers,
        )
    return LoggingNotificationDispatcher()
