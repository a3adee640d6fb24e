from __future__ import annotations

import logging
from typing import Any, Callable, List, Sequence

import httpx

from .config import Settings
from .emails import EmailContent, registration_open_email
from .errors import DeliveryError, StoreError
from .models import DeliveryStatus, NotificationBatch
from .store import RaceStore

logger = logging.getLogger(__name__)

RESEND_BATCH_ENDPOINT = "https://api.resend.com/emails/batch"
RESEND_BATCH_LIMIT = 100


class EmailClient:
    """Sends transactional email through the Resend HTTP API.

    Each recipient gets their own copy so addresses are never disclosed to
    other subscribers; copies are submitted in batch requests of up to 100.
    """

    def __init__(self, api_key: str, sender: str, timeout: float = 15.0) -> None:
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailClient":
        return cls(api_key=settings.resend_api_key, sender=settings.email_from)

    def send(self, recipients: Sequence[str], subject: str, html: str, text: str) -> List[str]:
        content = EmailContent(subject=subject, html=html, text=text)
        return self.send_each(recipients, lambda address: content)

    def send_each(self, recipients: Sequence[str], render: Callable[[str], EmailContent]) -> List[str]:
        """Send every recipient the message ``render`` builds for their address."""

        if not self.api_key:
            raise DeliveryError("RESEND_API_KEY is not configured")
        if not recipients:
            return []

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        message_ids: List[str] = []
        for start in range(0, len(recipients), RESEND_BATCH_LIMIT):
            chunk = recipients[start:start + RESEND_BATCH_LIMIT]
            payload = []
            for address in chunk:
                content = render(address)
                payload.append(
                    {
                        "from": self.sender,
                        "to": [address],
                        "subject": content.subject,
                        "html": content.html,
                        "text": content.text,
                    }
                )
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(RESEND_BATCH_ENDPOINT, json=payload, headers=headers)
                    response.raise_for_status()
                    body = response.json()
            except httpx.HTTPStatusError as exc:
                raise DeliveryError(
                    f"Resend rejected batch ({exc.response.status_code}): {exc.response.text[:200]}"
                ) from exc
            except (httpx.HTTPError, ValueError) as exc:
                raise DeliveryError(f"Resend request failed: {exc}") from exc

            message_ids.extend(_message_ids(body))
        return message_ids


def _message_ids(body: Any) -> List[str]:
    items = body.get("data") if isinstance(body, dict) else body
    if not isinstance(items, list):
        return []
    return [str(item["id"]) for item in items if isinstance(item, dict) and item.get("id")]


class NotificationDispatcher:
    """Delivers the emails for one notification batch, best effort.

    The transition behind a batch is already durable when this runs, so
    delivery problems are logged and reported through the records'
    ``delivery_status`` but never raised to the caller.
    """

    def __init__(self, store: RaceStore, email_client: EmailClient, site_url: str) -> None:
        self.store = store
        self.email_client = email_client
        self.site_url = site_url.rstrip("/")

    def dispatch(self, batch: NotificationBatch) -> int:
        if not batch.created:
            return 0

        try:
            race = self.store.get_race(batch.race_id)
            recipients = self.store.fetch_batch_recipients(batch.batch_id)
        except (StoreError, ValueError) as exc:
            logger.error("Could not load notification batch %s: %s", batch.batch_id, exc)
            return 0

        if race is None:
            logger.error("Race %s vanished before batch %s was delivered", batch.race_id, batch.batch_id)
            return 0
        if not recipients:
            logger.warning("Notification batch %s has no recipients", batch.batch_id)
            return 0

        def _render(address: str) -> EmailContent:
            return registration_open_email(race.name, race.url, self.site_url, recipient=address)

        try:
            self.email_client.send_each(recipients, _render)
        except DeliveryError as exc:
            logger.error("Error sending registration emails for %s: %s", race.name, exc)
            self._mark(batch.batch_id, DeliveryStatus.FAILED, str(exc))
            return 0

        logger.info("Sent registration open emails to %d recipients for %s", len(recipients), race.name)
        self._mark(batch.batch_id, DeliveryStatus.SENT)
        return len(recipients)

    def _mark(self, batch_id: str, status: DeliveryStatus, error: str | None = None) -> None:
        try:
            self.store.mark_batch_delivery(batch_id, status, error)
        except (StoreError, ValueError) as exc:
            logger.warning("Failed to record delivery status %s for batch %s: %s", status.value, batch_id, exc)
