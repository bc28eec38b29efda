"""
Discord webhook notifications.

Sent after the background scan extracts a new invoice. Messages are queued
on a single worker thread and delivered in order; the caller never waits.
Delivery is best effort: failures are retried a few times, then logged and
dropped so a Discord outage never fails or delays an extraction.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests

from app.services.invoice_extractor import InvoiceFields

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 5
FIELD_VALUE_LIMIT = 1024  # Discord embed field limit

COLOR_SUCCESS = 0x00FF00
COLOR_ERROR = 0xFF0000


class DiscordNotifier:
    """Posts embeds to a Discord webhook."""

    def __init__(
        self,
        webhook_url: Optional[str],
        frontend_url: str = "http://localhost:5173",
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        executor: Optional[ThreadPoolExecutor] = None
    ):
        self.webhook_url = webhook_url
        self.frontend_url = frontend_url
        self.timeout = timeout
        self._sleep = sleep
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="discord-notify")

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def notify_new_invoice(
        self,
        message_id: str,
        attachment_id: str,
        invoice: InvoiceFields,
        email_subject: Optional[str] = None
    ) -> Optional[Future]:
        """
        Queue an announcement of a newly extracted invoice.

        Returns:
            Future resolving to True once delivered, or None when disabled
        """
        if not self.enabled:
            logger.debug("Discord webhook URL not configured, skipping notification")
            return None

        amount = "N/A"
        if invoice.total_amount is not None:
            amount = f"{invoice.total_amount} {invoice.currency or ''}".strip()

        fields = [
            {"name": "Amount", "value": amount, "inline": True},
            {"name": "Issue date", "value": invoice.issue_date or "N/A", "inline": True},
            {"name": "Due date", "value": invoice.due_date or "N/A", "inline": True},
            {"name": "Supplier", "value": invoice.supplier_name or "N/A", "inline": False},
            {"name": "Link", "value": f"[Open in app]({self.frontend_url})", "inline": False},
        ]
        if invoice.payment_reference:
            fields.insert(3, {"name": "Payment reference", "value": invoice.payment_reference, "inline": True})

        embed = {
            "title": f"New invoice: {invoice.invoice_number or 'N/A'}",
            "color": COLOR_SUCCESS,
            "fields": fields,
            "footer": {"text": f"message {message_id} / attachment {attachment_id[:16]}"},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if email_subject:
            embed["description"] = f"Email: {email_subject}"

        return self._enqueue({"content": "A new invoice was found!", "embeds": [embed]})

    def notify_error(self, error_message: str, details: Optional[str] = None) -> Optional[Future]:
        """Queue a report of a background job failure."""
        if not self.enabled:
            return None

        embed = {
            "title": "Invoice harvester error",
            "description": error_message,
            "color": COLOR_ERROR,
            "fields": [],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if details:
            embed["fields"].append({"name": "Details", "value": details[:FIELD_VALUE_LIMIT], "inline": False})

        return self._enqueue({"embeds": [embed]})

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting notifications. With wait, queued ones are delivered first."""
        self._executor.shutdown(wait=wait)

    def _enqueue(self, payload: Dict[str, Any]) -> Optional[Future]:
        try:
            return self._executor.submit(self._post, payload)
        except RuntimeError:
            logger.warning("Notification queue is shut down, dropping message")
            return None

    def _post(self, payload: Dict[str, Any]) -> bool:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
                response.raise_for_status()
                return True
            except requests.RequestException as e:
                logger.warning("Discord webhook failed (attempt %d/%d): %s", attempt, MAX_ATTEMPTS, e)
                if attempt < MAX_ATTEMPTS:
                    self._sleep(RETRY_DELAY_SECONDS)

        logger.error("Max retries reached for Discord notification, discarding")
        return False
