import logging
from typing import Optional, Protocol

import httpx

from epc_reconciler.db.models import PropertyRecord
from epc_reconciler.utils.config import settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, record: PropertyRecord) -> None: ...


class LoggingNotifier:
    """Notifier used when no webhook is configured."""

    async def notify(self, record: PropertyRecord) -> None:
        logger.info(
            "Property %s reconciled: address=%s (%s), epc=%s (%s)",
            record.property_id,
            record.address.display_address,
            record.address.confidence.value,
            record.epc.rating,
            record.epc.confidence.value,
        )


class WebhookNotifier:
    """Posts each reconciled record as JSON to a downstream webhook.

    Delivery failures are logged and never raised to the caller.
    """

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        self.url = url or settings.notify_webhook_url
        if not self.url:
            raise ValueError("NOTIFY_WEBHOOK_URL is not configured")
        self.client = httpx.AsyncClient(timeout=timeout or settings.http_timeout_seconds)

    async def notify(self, record: PropertyRecord) -> None:
        try:
            response = await self.client.post(self.url, json=record.model_dump(mode="json"))
        except httpx.HTTPError as e:
            logger.warning("Could not notify webhook for %s: %s", record.property_id, e)
            return
        if not 200 <= response.status_code < 300:
            logger.warning(
                "Webhook returned status %d for %s", response.status_code, record.property_id
            )
            return
        logger.info("Notified webhook for %s", record.property_id)

    async def aclose(self):
        await self.client.aclose()


def create_notifier() -> Notifier:
    """Webhook notifier when NOTIFY_WEBHOOK_URL is set, logging otherwise."""
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    return LoggingNotifier()
