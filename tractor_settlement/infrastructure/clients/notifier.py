"""Notification webhook client with exponential backoff retry logic"""

import asyncio
import logging
from typing import Any, Dict, Set

import httpx

from tractor_settlement.config import settings
from tractor_settlement.domain.ports import Notifier
from tractor_settlement.infrastructure.observability.metrics import notifier_failure_counter


class WebhookNotifier:
    """Posts settlement events to the notification service in the background"""

    def __init__(self, webhook_url: str | None = None):
        self.webhook_url = webhook_url or settings.notifier_webhook_url
        self.max_retries = settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base
        self._pending: Set[asyncio.Task] = set()

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        """Schedule delivery and return immediately; delivery failures never reach the caller"""
        task = asyncio.create_task(self.deliver(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def deliver(self, event: str, payload: Dict[str, Any]) -> None:
        """
        Send one event with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s (base * 2^attempt)
        - Retries on 5xx errors and network failures
        - Gives up after max_retries and logs the drop
        """
        attempt = 0
        async with httpx.AsyncClient() as client:
            while attempt < self.max_retries:
                try:
                    response = await client.post(
                        self.webhook_url,
                        json={"event": event, **payload},
                        timeout=10.0,
                    )
                    response.raise_for_status()
                    return  # Success

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    notifier_failure_counter.inc()

                    if attempt >= self.max_retries:
                        logging.error(
                            f"Dropping notification after {attempt} attempts: {e}",
                            extra={"event": event},
                        )
                        return

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used on shutdown)"""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


class LoggingNotifier:
    """Notifier used when no webhook is configured"""

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        logging.info("Notification", extra={"event": event, "payload": payload})


def build_notifier() -> Notifier:
    if settings.notifier_webhook_url:
        return WebhookNotifier()
    return LoggingNotifier()


async def notify_quietly(notifier: Notifier, event: str, payload: Dict[str, Any]) -> None:
    """Fire-and-forget wrapper: a failing notifier never blocks a core transition"""
    try:
        await notifier.notify(event, payload)
    except Exception as e:
        notifier_failure_counter.inc()
        logging.error(f"Notifier failed for {event}: {e}", extra={"event": event})
